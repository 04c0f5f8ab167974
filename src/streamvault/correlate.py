"""Chat correlation: offsets of chat messages from the broadcast start.

``rel_timestamp = abs_timestamp - broadcast_start`` in seconds. Rows are never
dropped for bad data:

- negative offsets are clamped to 0 and flagged ``clock_skew`` (the recorder
  often starts a few seconds before the platform's start marker);
- an unparseable ``abs_timestamp`` reuses the previous row's offset and is
  flagged ``bad_timestamp``;
- a VOD without ``broadcast_start`` uses its earliest chat message as the
  origin and every row is flagged ``no_broadcast_start``. The origin is
  chosen over all of the VOD's chat and stored, so later batches are
  measured from the same point.

Only rows whose ``rel_timestamp`` is still NULL are written, so running the
correlator again is a no-op.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .store.chat import ChatStore
from .store.vods import VodStore
from .utils import format_ts, parse_ts

logger = logging.getLogger(__name__)

FLAG_CLOCK_SKEW = "clock_skew"
FLAG_BAD_TIMESTAMP = "bad_timestamp"
FLAG_NO_BROADCAST_START = "no_broadcast_start"

ORIGIN_KEY = "chat_origin:{vod_id}"


@dataclass
class CorrelationResult:
    vod_id: int
    updated: int = 0
    clamped: int = 0
    bad_timestamps: int = 0
    origin_fallback: bool = False


def _try_parse(value: str) -> Optional[datetime]:
    try:
        return parse_ts(value)
    except ValueError:
        return None


def _merge_flags(existing: str, new: List[str]) -> str:
    flags = [f for f in existing.split(",") if f]
    for flag in new:
        if flag not in flags:
            flags.append(flag)
    return ",".join(flags)


class ChatCorrelator:
    def __init__(
        self,
        *,
        vods: VodStore,
        chat: ChatStore,
        write_retries: int = 3,
        retry_delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.vods = vods
        self.chat = chat
        self.write_retries = max(1, write_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    def __call__(self, vod_id: int) -> CorrelationResult:
        return self.correlate(vod_id)

    def correlate(self, vod_id: int) -> CorrelationResult:
        vod = self.vods.get_vod(vod_id)
        result = CorrelationResult(vod_id=vod_id)
        pending = self.chat.uncorrelated(vod_id)
        if not pending:
            return result

        stamps = [_try_parse(msg.abs_timestamp) for msg in pending]

        origin = _try_parse(vod.broadcast_start) if vod.broadcast_start else None
        base_flags: List[str] = []
        if origin is None:
            origin = self._fallback_origin(vod_id)
            base_flags.append(FLAG_NO_BROADCAST_START)
            result.origin_fallback = True
            logger.warning(
                "vod %d has no usable broadcast_start (%r); using earliest chat message as origin",
                vod_id,
                vod.broadcast_start,
            )

        updates: List[Tuple[float, str, int]] = []
        previous = self.chat.max_rel_timestamp(vod_id) or 0.0
        for msg, stamp in zip(pending, stamps):
            flags = list(base_flags)
            if stamp is None or origin is None:
                rel = previous
                flags.append(FLAG_BAD_TIMESTAMP)
                result.bad_timestamps += 1
            else:
                rel = (stamp - origin).total_seconds()
                if rel < 0:
                    rel = 0.0
                    flags.append(FLAG_CLOCK_SKEW)
                    result.clamped += 1
                previous = rel
            updates.append((rel, _merge_flags(msg.flags, flags), msg.id))

        result.updated = self._write(vod_id, updates)
        if result.clamped or result.bad_timestamps:
            logger.warning(
                "vod %d: clamped %d negative offset(s), %d malformed timestamp(s)",
                vod_id,
                result.clamped,
                result.bad_timestamps,
            )
        logger.info("Correlated %d chat message(s) for vod %d", result.updated, vod_id)
        return result

    def _fallback_origin(self, vod_id: int) -> Optional[datetime]:
        key = ORIGIN_KEY.format(vod_id=vod_id)
        stored = self.vods.get_kv(key)
        if stored:
            return parse_ts(stored)
        valid = [s for s in (_try_parse(raw) for raw in self.chat.abs_timestamps(vod_id)) if s is not None]
        if not valid:
            return None
        origin = min(valid)
        self.vods.set_kv(key, format_ts(origin))
        return origin

    def _write(self, vod_id: int, updates: List[Tuple[float, str, int]]) -> int:
        for attempt in range(1, self.write_retries + 1):
            try:
                return self.chat.set_rel_timestamps(updates)
            except sqlite3.OperationalError as exc:
                if attempt >= self.write_retries:
                    raise
                logger.warning(
                    "Correlation write for vod %d failed (attempt %d/%d): %s",
                    vod_id,
                    attempt,
                    self.write_retries,
                    exc,
                )
                self._sleep(self.retry_delay_seconds * attempt)
        return 0
