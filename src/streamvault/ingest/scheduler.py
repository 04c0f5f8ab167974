from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import List, Optional, Protocol

from ..store.vods import VodStore
from ..utils import format_ts, parse_ts, utc_iso
from .helix import Broadcast, HelixClient

logger = logging.getLogger(__name__)

WATERMARK_KEY = "discovery_watermark"
LAST_RUN_KEY = "job_ingest_last"


class BroadcastSource(Protocol):
    channel: str

    def ended_broadcasts(self, since: Optional[datetime]) -> List[Broadcast]: ...


class TwitchBroadcastSource:
    """Ended archive broadcasts for one channel, newest first."""

    def __init__(self, client: HelixClient, channel: str, *, max_pages: int = 10) -> None:
        self.client = client
        self.channel = channel.strip().lower()
        self.max_pages = max_pages

    def ended_broadcasts(self, since: Optional[datetime]) -> List[Broadcast]:
        user_id = self.client.user_id(self.channel)
        live_since = self.client.live_started_at(user_id)
        out: List[Broadcast] = []
        for broadcast in self.client.archive_videos(user_id, max_pages=self.max_pages):
            start = broadcast.broadcast_start
            if since is not None and start is not None and start < since:
                break
            if live_since is not None and start is not None and start >= live_since:
                logger.debug("Skipping %s: broadcast still live", broadcast.source_vod_id)
                continue
            out.append(broadcast)
        return out


class IngestScheduler:
    """Periodically enqueue newly ended broadcasts.

    Inserts are idempotent on ``source_vod_id``; the watermark only limits how
    far back each pass looks.
    """

    def __init__(self, *, store: VodStore, source: BroadcastSource, interval_seconds: float = 300.0) -> None:
        self.store = store
        self.source = source
        self.interval_seconds = interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_loop, name="ingest-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Discovery pass failed; retrying in %.0fs", self.interval_seconds)
            self._stop.wait(self.interval_seconds)

    def watermark(self) -> Optional[datetime]:
        raw = self.store.get_kv(WATERMARK_KEY)
        if not raw:
            return None
        try:
            return parse_ts(raw)
        except ValueError:
            logger.warning("Ignoring corrupt discovery watermark %r", raw)
            return None

    def run_once(self) -> int:
        """One discovery pass. Returns the number of newly queued VODs."""
        since = self.watermark()
        broadcasts = self.source.ended_broadcasts(since)

        inserted = 0
        newest = since
        for broadcast in broadcasts:
            start = broadcast.broadcast_start
            if since is not None and start is not None and start < since:
                continue
            vod_id = self.store.insert_discovered(
                broadcast.source_vod_id,
                channel=self.source.channel,
                title=broadcast.title,
                broadcast_start=start,
                duration_seconds=broadcast.duration_seconds,
            )
            if vod_id is not None:
                inserted += 1
            if start is not None and (newest is None or start > newest):
                newest = start

        if newest is not None and newest != since:
            self.store.set_kv(WATERMARK_KEY, format_ts(newest))
        self.store.set_kv(LAST_RUN_KEY, utc_iso())
        logger.info("Discovery pass: %d broadcast(s) seen, %d queued", len(broadcasts), inserted)
        return inserted
