"""Chat message storage.

Rows are written by the live chat recorder with ``rel_timestamp`` unset and
filled in later by the correlator. Reads for replay walk the
``(rel_timestamp, id)`` key so a cursor always names an exact position.
"""

from __future__ import annotations

import sys
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models import ChatMessage
from .base import SqliteStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vod_id INTEGER NOT NULL,
    username TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    abs_timestamp TEXT NOT NULL,
    rel_timestamp REAL,
    badges TEXT NOT NULL DEFAULT '',
    emotes TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '',
    flags TEXT NOT NULL DEFAULT '',
    reply_to_username TEXT NOT NULL DEFAULT '',
    reply_to_message TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_chat_vod_rel ON chat_messages(vod_id, rel_timestamp, id);
CREATE INDEX IF NOT EXISTS idx_chat_vod_pending ON chat_messages(vod_id) WHERE rel_timestamp IS NULL;
"""

# Sorts after every real id, so (c, END_OF_KEY) means "strictly after rel c".
END_OF_KEY = sys.maxsize

MAX_RANGE_LIMIT = 5000
DEFAULT_RANGE_LIMIT = 1000

_COLUMNS = (
    "username",
    "message",
    "abs_timestamp",
    "rel_timestamp",
    "badges",
    "emotes",
    "color",
    "flags",
    "reply_to_username",
    "reply_to_message",
)


class ChatStore(SqliteStore):
    SCHEMA = _SCHEMA

    def insert_messages(self, vod_id: int, messages: Iterable[Dict[str, Any]]) -> int:
        """Batch insert raw messages. Missing fields default to empty strings."""
        rows = [
            (
                vod_id,
                str(m.get("username") or ""),
                str(m.get("message") or ""),
                str(m.get("abs_timestamp") or ""),
                m.get("rel_timestamp"),
                str(m.get("badges") or ""),
                str(m.get("emotes") or ""),
                str(m.get("color") or ""),
                str(m.get("flags") or ""),
                str(m.get("reply_to_username") or ""),
                str(m.get("reply_to_message") or ""),
            )
            for m in messages
        ]
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in range(len(_COLUMNS) + 1))
        with self._connect() as conn:
            conn.executemany(
                f"INSERT INTO chat_messages (vod_id, {', '.join(_COLUMNS)}) VALUES ({placeholders})",
                rows,
            )
        return len(rows)

    def uncorrelated(self, vod_id: int) -> List[ChatMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE vod_id = ? AND rel_timestamp IS NULL ORDER BY id",
                (vod_id,),
            ).fetchall()
        return [ChatMessage.from_row(r) for r in rows]

    def set_rel_timestamps(self, updates: Sequence[Tuple[float, str, int]]) -> int:
        """Write ``(rel_timestamp, flags, id)`` tuples in one transaction.

        Rows that already have a ``rel_timestamp`` are left alone.
        """
        if not updates:
            return 0
        with self._connect() as conn:
            cur = conn.executemany(
                "UPDATE chat_messages SET rel_timestamp = ?, flags = ? WHERE id = ? AND rel_timestamp IS NULL",
                updates,
            )
        return max(cur.rowcount, 0)

    def abs_timestamps(self, vod_id: int) -> List[str]:
        """Raw ``abs_timestamp`` of every message of the VOD, correlated or not."""
        with self._connect() as conn:
            rows = conn.execute("SELECT abs_timestamp FROM chat_messages WHERE vod_id = ?", (vod_id,)).fetchall()
        return [row["abs_timestamp"] for row in rows]

    def max_rel_timestamp(self, vod_id: int) -> Optional[float]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(rel_timestamp) AS m FROM chat_messages WHERE vod_id = ?",
                (vod_id,),
            ).fetchone()
        return None if row["m"] is None else float(row["m"])

    def pending_count(self, vod_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM chat_messages WHERE vod_id = ? AND rel_timestamp IS NULL",
                (vod_id,),
            ).fetchone()
        return int(row["n"])

    def count(self, vod_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM chat_messages WHERE vod_id = ?", (vod_id,)).fetchone()
        return int(row["n"])

    def key_of(self, vod_id: int, message_id: int) -> Optional[Tuple[float, int]]:
        """Keyset position of a correlated message, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT rel_timestamp, id FROM chat_messages WHERE vod_id = ? AND id = ? AND rel_timestamp IS NOT NULL",
                (vod_id, message_id),
            ).fetchone()
        if not row:
            return None
        return float(row["rel_timestamp"]), int(row["id"])

    def page_after(self, vod_id: int, after: Optional[Tuple[float, int]], limit: int) -> List[ChatMessage]:
        """Correlated messages strictly after ``after`` in ``(rel_timestamp, id)`` order."""
        if after is None:
            sql = """
                SELECT * FROM chat_messages
                WHERE vod_id = ? AND rel_timestamp IS NOT NULL
                ORDER BY rel_timestamp, id LIMIT ?
            """
            params: Tuple[Any, ...] = (vod_id, int(limit))
        else:
            rel, last_id = after
            sql = """
                SELECT * FROM chat_messages
                WHERE vod_id = ? AND rel_timestamp IS NOT NULL
                  AND (rel_timestamp > ? OR (rel_timestamp = ? AND id > ?))
                ORDER BY rel_timestamp, id LIMIT ?
            """
            params = (vod_id, float(rel), float(rel), int(last_id), int(limit))
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [ChatMessage.from_row(r) for r in rows]

    def range(
        self,
        vod_id: int,
        *,
        start: Optional[float] = None,
        end: Optional[float] = None,
        limit: int = DEFAULT_RANGE_LIMIT,
    ) -> List[ChatMessage]:
        """Correlated messages with ``start <= rel_timestamp <= end``, ordered."""
        limit = max(1, min(int(limit), MAX_RANGE_LIMIT))
        clauses = ["vod_id = ?", "rel_timestamp IS NOT NULL"]
        params: List[Any] = [vod_id]
        if start is not None:
            clauses.append("rel_timestamp >= ?")
            params.append(float(start))
        if end is not None:
            clauses.append("rel_timestamp <= ?")
            params.append(float(end))
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM chat_messages WHERE {' AND '.join(clauses)} ORDER BY rel_timestamp, id LIMIT ?",
                params,
            ).fetchall()
        return [ChatMessage.from_row(r) for r in rows]
