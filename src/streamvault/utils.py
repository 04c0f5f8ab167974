"""Small shared helpers: UTC timestamps and retry backoff."""

from __future__ import annotations

import os
import random
import re
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_FRACTION_RE = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Render ``value`` as RFC3339 UTC with fixed microsecond precision.

    Fixed width keeps lexical order equal to chronological order, which the
    stores rely on when comparing lease and backoff deadlines in SQL.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    naive = value.astimezone(timezone.utc).replace(tzinfo=None)
    return naive.isoformat(timespec="microseconds") + "Z"


def utc_iso() -> str:
    return format_ts(utc_now())


def parse_ts(value: str) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z``, explicit offsets and any number of fractional
    digits. Naive input is taken as UTC. Raises ``ValueError`` on garbage.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid timestamp: {value!r}")
    text = value.strip()
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"

    def _pad(match: re.Match) -> str:
        return "." + match.group(1)[:6].ljust(6, "0")

    text = _FRACTION_RE.sub(_pad, text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_ts_or_none(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_ts(value)


def compute_backoff(
    retries: int,
    *,
    base: float = 5.0,
    cap: float = 300.0,
    jitter: float = 0.2,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before attempt number ``retries + 1``.

    ``base * 2**(retries - 1)`` capped at ``cap``, then spread by +/- ``jitter``
    (a fraction of the delay) and capped again.
    """
    exponent = min(max(retries - 1, 0), 16)
    delay = min(cap, base * (2 ** exponent))
    if jitter > 0:
        delay *= 1.0 + jitter * (2.0 * rand() - 1.0)
    return max(0.0, min(cap, delay))


def deadline_after(seconds: float, now: Optional[datetime] = None) -> str:
    return format_ts((now or utc_now()) + timedelta(seconds=seconds))


def default_worker_id(role: str) -> str:
    return f"{role}:{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"
