"""Server-sent event replay of a VOD's chat.

Each connection walks the chat table in ``(rel_timestamp, id)`` order from
its cursor, one bounded page at a time. The next page is only read once the
previous one has been handed to the client, so a slow reader just slows its
own generator down and nothing piles up in memory.

While the VOD is still being acquired (or its chat is still being
correlated) the generator keeps polling for new rows and sends keep-alive
comments when idle. Otherwise it drains what is left, emits ``event: end``
and returns.

A connection is registered by the generator body itself and released in its
``finally``, so a generator that is never started holds no slot.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Optional, Tuple

from ..config import ReplaySettings
from ..models import LIVE_STATES, ChatMessage, ProgressState
from ..store.chat import END_OF_KEY, ChatStore
from ..store.vods import VodStore

logger = logging.getLogger(__name__)

KEEPALIVE = ": keep-alive\n\n"


class ReplayError(Exception):
    pass


class InvalidCursor(ReplayError):
    pass


class TooManyConnections(ReplayError):
    pass


class ServerClosed(ReplayError):
    pass


def format_event(msg: ChatMessage) -> str:
    payload = json.dumps(msg.to_dict(), separators=(",", ":"))
    return f"id: {msg.id}\nevent: chat\ndata: {payload}\n\n"


def format_end(vod_id: int, last_id: Optional[int]) -> str:
    payload = json.dumps({"vod_id": vod_id, "last_id": last_id})
    return f"event: end\ndata: {payload}\n\n"


def format_error(vod_id: int, error: str) -> str:
    payload = json.dumps({"vod_id": vod_id, "error": error})
    return f"event: error\ndata: {payload}\n\n"


@dataclass
class Connection:
    id: int
    vod_id: int
    closed: threading.Event = field(default_factory=threading.Event)
    sent: int = 0


class ReplayServer:
    """Registry of live replay connections plus the per-connection generator."""

    def __init__(
        self,
        *,
        vods: VodStore,
        chat: ChatStore,
        settings: ReplaySettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.vods = vods
        self.chat = chat
        self.settings = settings
        self._clock = clock
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._connections: Dict[int, Connection] = {}
        self._closed = False

    @property
    def active_connections(self) -> int:
        with self._lock:
            return len(self._connections)

    def resolve_cursor(
        self,
        vod_id: int,
        *,
        cursor: Optional[float] = None,
        after_id: Optional[int] = None,
    ) -> Optional[Tuple[float, int]]:
        """Turn a client cursor into a keyset position.

        ``after_id`` (or ``Last-Event-ID``) wins over ``cursor``. An unknown or
        uncorrelated message id raises ``InvalidCursor``.
        """
        if after_id is not None:
            key = self.chat.key_of(vod_id, after_id)
            if key is None:
                raise InvalidCursor(f"unknown message id {after_id} for vod {vod_id}")
            return key
        if cursor is not None:
            if cursor != cursor:
                raise InvalidCursor(f"invalid cursor {cursor}")
            if cursor < 0:
                # offsets are clamped to 0, so this is "from the start"
                return None
            return (float(cursor), END_OF_KEY)
        return None

    def _check_capacity(self) -> None:
        if self._closed:
            raise ServerClosed("replay server is shutting down")
        if len(self._connections) >= self.settings.max_connections:
            raise TooManyConnections(f"{len(self._connections)} streams already open")

    def admit(self) -> None:
        """Raise if a new stream would be refused right now. Registers nothing."""
        with self._lock:
            self._check_capacity()

    def open(self, vod_id: int) -> Connection:
        with self._lock:
            self._check_capacity()
            conn = Connection(id=next(self._ids), vod_id=vod_id)
            self._connections[conn.id] = conn
        logger.debug("Replay connection %d opened for vod %d", conn.id, vod_id)
        return conn

    def release(self, conn: Connection) -> None:
        conn.closed.set()
        with self._lock:
            removed = self._connections.pop(conn.id, None)
        if removed is not None:
            logger.debug("Replay connection %d closed after %d message(s)", conn.id, conn.sent)

    def shutdown(self) -> None:
        """Close every open stream. Safe to call more than once."""
        with self._lock:
            self._closed = True
            connections = list(self._connections.values())
        for conn in connections:
            conn.closed.set()
        if connections:
            logger.info("Closed %d replay stream(s) for shutdown", len(connections))

    def is_live(self, vod_id: int) -> bool:
        progress = self.vods.get_progress(vod_id)
        if progress.state in LIVE_STATES:
            return True
        if progress.state == ProgressState.DOWNLOADED.value:
            return self.chat.pending_count(vod_id) > 0
        return False

    def stream(
        self,
        vod_id: int,
        *,
        start: Optional[Tuple[float, int]] = None,
        speed: float = 0.0,
    ) -> Iterator[str]:
        """Yield SSE frames for ``vod_id`` starting strictly after ``start``.

        ``speed > 0`` spaces events by their ``rel_timestamp`` gap divided by
        ``speed``. The connection is registered on the first ``next()`` and
        released when the generator finishes or is closed. When the stream
        cannot be registered (limit reached or shutting down) a single
        ``event: error`` frame is sent instead.
        """
        try:
            conn = self.open(vod_id)
        except TooManyConnections:
            yield format_error(vod_id, "too_many_streams")
            return
        except ServerClosed:
            yield format_error(vod_id, "shutting_down")
            return
        key = start
        page_size = max(1, self.settings.page_size)
        last_sent = self._clock()
        prev_rel: Optional[float] = None
        last_id: Optional[int] = None
        try:
            while not conn.closed.is_set():
                page = self.chat.page_after(vod_id, key, page_size)
                for msg in page:
                    if speed > 0 and prev_rel is not None:
                        gap = (msg.rel_timestamp - prev_rel) / speed
                        if gap > 0 and conn.closed.wait(gap):
                            return
                    prev_rel = msg.rel_timestamp
                    yield format_event(msg)
                    conn.sent += 1
                    key = (msg.rel_timestamp, msg.id)
                    last_id = msg.id
                    last_sent = self._clock()
                    if conn.closed.is_set():
                        return
                if len(page) == page_size:
                    continue

                if not self.is_live(vod_id):
                    # rows correlated between the read above and the live check
                    if self.chat.page_after(vod_id, key, 1):
                        continue
                    yield format_end(vod_id, last_id)
                    return

                if self._clock() - last_sent >= self.settings.heartbeat_seconds:
                    yield KEEPALIVE
                    last_sent = self._clock()
                if conn.closed.wait(self.settings.poll_interval_seconds):
                    return
        finally:
            self.release(conn)
