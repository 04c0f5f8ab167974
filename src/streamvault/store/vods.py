"""VOD and Progress persistence.

Every state advance is a conditional ``UPDATE ... WHERE state = ?`` and, for
work in flight, ``AND claimed_by = ?``. A zero rowcount means another worker
got there first; callers get ``False``/``None`` back rather than an exception.

Claims carry a lease (``lease_until``). A worker that dies mid-download leaves
an expired lease behind, and the next claim picks the VOD up again without
touching the retry counters.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, Optional, Tuple

from ..models import Progress, ProgressState, Vod
from ..utils import deadline_after, format_ts, utc_now
from .base import SqliteStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vods (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_vod_id TEXT NOT NULL UNIQUE,
    channel TEXT NOT NULL DEFAULT '',
    title TEXT NOT NULL DEFAULT '',
    broadcast_start TEXT,
    duration_seconds INTEGER NOT NULL DEFAULT 0,
    description TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    published_url TEXT,
    skip_upload INTEGER NOT NULL DEFAULT 0,
    CHECK (
        (processed = 0 AND published_url IS NULL)
        OR (processed = 1 AND published_url IS NOT NULL AND published_url != '')
    )
);

CREATE TABLE IF NOT EXISTS progress (
    vod_id INTEGER PRIMARY KEY REFERENCES vods(id) ON DELETE CASCADE,
    state TEXT NOT NULL,
    percent REAL NOT NULL DEFAULT 0,
    retries INTEGER NOT NULL DEFAULT 0,
    total_bytes INTEGER,
    downloaded_bytes INTEGER NOT NULL DEFAULT 0,
    downloaded_path TEXT,
    updated_at TEXT NOT NULL,
    last_error TEXT,
    error_kind TEXT,
    failed_stage TEXT,
    claimed_by TEXT,
    lease_until TEXT,
    next_attempt_at TEXT,
    upload_retries INTEGER NOT NULL DEFAULT 0,
    upload_percent REAL NOT NULL DEFAULT 0,
    upload_session TEXT
);

CREATE INDEX IF NOT EXISTS idx_progress_state ON progress(state, next_attempt_at);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# (claimable fresh state, in-flight state, retry column, percent column)
_STAGES = {
    "download": (ProgressState.QUEUED.value, ProgressState.DOWNLOADING.value, "retries", "percent"),
    "upload": (ProgressState.DOWNLOADED.value, ProgressState.UPLOADING.value, "upload_retries", "upload_percent"),
}

_JOINED_SELECT = """
    SELECT v.*, p.state, p.percent, p.retries, p.total_bytes, p.downloaded_bytes,
           p.downloaded_path, p.updated_at, p.last_error, p.error_kind,
           p.failed_stage, p.claimed_by, p.lease_until, p.next_attempt_at,
           p.upload_retries, p.upload_percent, p.upload_session, p.vod_id
    FROM vods v JOIN progress p ON p.vod_id = v.id
"""

# Retention and "keep last N" order VODs by when they aired.
_AIRED = "COALESCE(v.broadcast_start, v.created_at)"

_TRANSITION_FIELDS = {
    "percent",
    "retries",
    "total_bytes",
    "downloaded_bytes",
    "downloaded_path",
    "last_error",
    "error_kind",
    "failed_stage",
    "claimed_by",
    "lease_until",
    "next_attempt_at",
    "upload_retries",
    "upload_percent",
    "upload_session",
}


class VodStore(SqliteStore):
    SCHEMA = _SCHEMA

    # ------------------------------------------------------------------ vods

    def insert_discovered(
        self,
        source_vod_id: str,
        *,
        channel: str = "",
        title: str = "",
        broadcast_start: Optional[datetime] = None,
        duration_seconds: int = 0,
        description: Optional[str] = None,
        priority: int = 0,
    ) -> Optional[int]:
        """Insert a VOD plus its ``queued`` Progress row in one transaction.

        Returns the new id, or None when ``source_vod_id`` is already known.
        """
        now = format_ts(utc_now())
        start = format_ts(broadcast_start) if broadcast_start is not None else None
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO vods (
                    source_vod_id, channel, title, broadcast_start, duration_seconds,
                    description, priority, created_at, processed, published_url
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, NULL)
                """,
                (source_vod_id, channel, title, start, int(duration_seconds), description, int(priority), now),
            )
            if cur.rowcount == 0:
                return None
            vod_id = int(cur.lastrowid)
            conn.execute(
                """
                INSERT INTO progress (vod_id, state, percent, retries, downloaded_bytes, updated_at)
                VALUES (?, ?, 0, 0, 0, ?)
                """,
                (vod_id, ProgressState.QUEUED.value, now),
            )
        logger.info("Queued VOD %s (%s) as id=%d", source_vod_id, title, vod_id)
        return vod_id

    def get_vod(self, vod_id: int) -> Vod:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM vods WHERE id = ?", (vod_id,)).fetchone()
        if not row:
            raise KeyError(f"vod_not_found: {vod_id}")
        return Vod.from_row(row)

    def get_vod_by_source(self, source_vod_id: str) -> Optional[Vod]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM vods WHERE source_vod_id = ?", (source_vod_id,)).fetchone()
        return Vod.from_row(row) if row else None

    def get_progress(self, vod_id: int) -> Progress:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM progress WHERE vod_id = ?", (vod_id,)).fetchone()
        if not row:
            raise KeyError(f"vod_not_found: {vod_id}")
        return Progress.from_row(row)

    def get_status(self, vod_id: int) -> Tuple[Vod, Progress]:
        return self.get_vod(vod_id), self.get_progress(vod_id)

    def list_vods(self, *, state: Optional[str] = None, limit: int = 100) -> List[Tuple[Vod, Progress]]:
        sql = _JOINED_SELECT
        params: List[Any] = []
        if state:
            sql += " WHERE p.state = ?"
            params.append(state)
        sql += " ORDER BY v.created_at DESC, v.id DESC LIMIT ?"
        params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(Vod.from_row(row), Progress.from_row(row)) for row in rows]

    def ids_in_state(self, state: str, limit: int = 50, *, uploadable_only: bool = False) -> List[int]:
        skip_clause = "AND v.skip_upload = 0" if uploadable_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT p.vod_id FROM progress p JOIN vods v ON v.id = p.vod_id
                WHERE p.state = ? {skip_clause}
                ORDER BY v.priority DESC, v.created_at ASC, v.id ASC
                LIMIT ?
                """,
                (state, int(limit)),
            ).fetchall()
        return [int(row["vod_id"]) for row in rows]

    # ----------------------------------------------------------- transitions

    def transition(self, vod_id: int, expected: str, new: str, **fields: Any) -> bool:
        """Compare-and-swap ``expected -> new`` on the Progress row.

        Extra keyword arguments are written in the same statement. Returns
        False when the row was not in ``expected`` (someone else moved it).
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"unknown progress fields: {sorted(unknown)}")
        sets = ["state = ?", "updated_at = ?"]
        values: List[Any] = [new, format_ts(utc_now())]
        for name, value in fields.items():
            sets.append(f"{name} = ?")
            values.append(value)
        values.extend([vod_id, expected])
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE progress SET {', '.join(sets)} WHERE vod_id = ? AND state = ?",
                values,
            )
        if cur.rowcount != 1:
            logger.debug("transition %s -> %s lost for vod %d", expected, new, vod_id)
            return False
        return True

    def claim(
        self,
        stage: str,
        worker_id: str,
        lease_seconds: float,
        *,
        include_fresh: bool = True,
    ) -> Optional[Progress]:
        """Claim the next VOD ready for ``stage`` (``download`` or ``upload``).

        Candidates are fresh rows (``queued``/``downloaded``) and in-flight rows
        whose lease expired and whose backoff deadline passed. Highest
        priority first, then oldest. ``include_fresh=False`` only re-claims.
        """
        fresh, active, _, _ = _STAGES[stage]
        if not include_fresh:
            fresh = ""
        skip_clause = "AND v.skip_upload = 0" if stage == "upload" else ""
        now = format_ts(utc_now())
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT p.vod_id, p.state FROM progress p JOIN vods v ON v.id = p.vod_id
                WHERE (p.state = ?
                       OR (p.state = ?
                           AND (p.lease_until IS NULL OR p.lease_until <= ?)
                           AND (p.next_attempt_at IS NULL OR p.next_attempt_at <= ?)))
                  {skip_clause}
                ORDER BY v.priority DESC, v.created_at ASC, v.id ASC
                LIMIT 20
                """,
                (fresh, active, now, now),
            ).fetchall()
        for row in rows:
            vod_id = int(row["vod_id"])
            if self._try_claim(vod_id, row["state"], active, worker_id, lease_seconds):
                return self.get_progress(vod_id)
        return None

    def claim_vod(self, stage: str, vod_id: int, worker_id: str, lease_seconds: float) -> Optional[Progress]:
        """Claim one specific VOD, ignoring backoff deadlines (CLI use)."""
        fresh, active, _, _ = _STAGES[stage]
        if stage == "upload" and self.get_vod(vod_id).skip_upload:
            logger.info("Not claiming vod %d for upload: skip_upload is set", vod_id)
            return None
        progress = self.get_progress(vod_id)
        if progress.state not in (fresh, active):
            return None
        if self._try_claim(vod_id, progress.state, active, worker_id, lease_seconds, ignore_backoff=True):
            return self.get_progress(vod_id)
        return None

    def _try_claim(
        self,
        vod_id: int,
        seen_state: str,
        active: str,
        worker_id: str,
        lease_seconds: float,
        *,
        ignore_backoff: bool = False,
    ) -> bool:
        now = format_ts(utc_now())
        lease = deadline_after(lease_seconds)
        if seen_state != active:
            return self.transition(
                vod_id,
                seen_state,
                active,
                claimed_by=worker_id,
                lease_until=lease,
                next_attempt_at=None,
            )
        backoff_clause = "" if ignore_backoff else "AND (next_attempt_at IS NULL OR next_attempt_at <= ?)"
        params: List[Any] = [worker_id, lease, now, vod_id, active, now]
        if not ignore_backoff:
            params.append(now)
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE progress SET claimed_by = ?, lease_until = ?, updated_at = ?
                WHERE vod_id = ? AND state = ?
                  AND (lease_until IS NULL OR lease_until <= ?)
                  {backoff_clause}
                """,
                params,
            )
        if cur.rowcount != 1:
            logger.debug("re-claim of vod %d lost", vod_id)
            return False
        logger.info("Resuming %s of vod %d after released or expired lease", active, vod_id)
        return True

    def record_progress(
        self,
        vod_id: int,
        worker_id: str,
        *,
        percent: float,
        downloaded_bytes: int,
        total_bytes: Optional[int],
        lease_seconds: float,
    ) -> bool:
        """Persist download progress and renew the lease. ``percent`` never goes down."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE progress SET
                    percent = MAX(percent, ?),
                    downloaded_bytes = ?,
                    total_bytes = COALESCE(?, total_bytes),
                    lease_until = ?,
                    updated_at = ?
                WHERE vod_id = ? AND state = ? AND claimed_by = ?
                """,
                (
                    max(0.0, min(100.0, float(percent))),
                    int(downloaded_bytes),
                    total_bytes,
                    deadline_after(lease_seconds),
                    format_ts(utc_now()),
                    vod_id,
                    ProgressState.DOWNLOADING.value,
                    worker_id,
                ),
            )
        return cur.rowcount == 1

    def record_upload_progress(
        self,
        vod_id: int,
        worker_id: str,
        *,
        percent: Optional[float] = None,
        session_json: Optional[str] = None,
        lease_seconds: float,
    ) -> bool:
        sets = ["lease_until = ?", "updated_at = ?"]
        values: List[Any] = [deadline_after(lease_seconds), format_ts(utc_now())]
        if percent is not None:
            sets.append("upload_percent = MAX(upload_percent, ?)")
            values.append(max(0.0, min(100.0, float(percent))))
        if session_json is not None:
            sets.append("upload_session = ?")
            values.append(session_json)
        values.extend([vod_id, ProgressState.UPLOADING.value, worker_id])
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE progress SET {', '.join(sets)} WHERE vod_id = ? AND state = ? AND claimed_by = ?",
                values,
            )
        return cur.rowcount == 1

    def complete_download(self, vod_id: int, worker_id: str, path: Path, size: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE progress SET
                    state = ?, percent = 100, downloaded_path = ?,
                    downloaded_bytes = ?, total_bytes = ?,
                    claimed_by = NULL, lease_until = NULL, next_attempt_at = NULL,
                    last_error = NULL, error_kind = NULL, failed_stage = NULL,
                    updated_at = ?
                WHERE vod_id = ? AND state = ? AND claimed_by = ?
                """,
                (
                    ProgressState.DOWNLOADED.value,
                    str(path),
                    int(size),
                    int(size),
                    format_ts(utc_now()),
                    vod_id,
                    ProgressState.DOWNLOADING.value,
                    worker_id,
                ),
            )
        return cur.rowcount == 1

    def complete_upload(self, vod_id: int, worker_id: str, published_url: str) -> bool:
        """Finish the pipeline: ``uploaded`` + ``processed`` + URL in one transaction."""
        if not published_url:
            raise ValueError("published_url must not be empty")
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE progress SET
                    state = ?, upload_percent = 100, upload_session = NULL,
                    claimed_by = NULL, lease_until = NULL, next_attempt_at = NULL,
                    last_error = NULL, error_kind = NULL, failed_stage = NULL,
                    updated_at = ?
                WHERE vod_id = ? AND state = ? AND claimed_by = ?
                """,
                (
                    ProgressState.UPLOADED.value,
                    format_ts(utc_now()),
                    vod_id,
                    ProgressState.UPLOADING.value,
                    worker_id,
                ),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                "UPDATE vods SET processed = 1, published_url = ? WHERE id = ?",
                (published_url, vod_id),
            )
        return True

    def record_retry(
        self,
        stage: str,
        vod_id: int,
        worker_id: str,
        *,
        error: str,
        delay_seconds: float,
        max_retries: int,
    ) -> Optional[Progress]:
        """Count a worker-reported transient failure.

        Increments the stage's retry counter and resets its percent. Once the
        counter reaches ``max_retries`` the VOD moves to ``failed`` with
        ``error_kind='retries_exhausted'``; otherwise the lease is dropped and
        the row becomes claimable again after ``delay_seconds``.
        Returns None if this worker no longer owns the VOD.
        """
        _, active, retries_col, percent_col = _STAGES[stage]
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE progress SET
                    {retries_col} = {retries_col} + 1,
                    {percent_col} = 0,
                    state = CASE WHEN {retries_col} + 1 >= ? THEN ? ELSE state END,
                    error_kind = CASE WHEN {retries_col} + 1 >= ? THEN 'retries_exhausted' ELSE NULL END,
                    failed_stage = CASE WHEN {retries_col} + 1 >= ? THEN ? ELSE NULL END,
                    last_error = ?,
                    claimed_by = NULL,
                    lease_until = NULL,
                    next_attempt_at = ?,
                    updated_at = ?
                WHERE vod_id = ? AND state = ? AND claimed_by = ?
                """,
                (
                    int(max_retries),
                    ProgressState.FAILED.value,
                    int(max_retries),
                    int(max_retries),
                    stage,
                    error,
                    deadline_after(delay_seconds),
                    format_ts(utc_now()),
                    vod_id,
                    active,
                    worker_id,
                ),
            )
        if cur.rowcount != 1:
            return None
        return self.get_progress(vod_id)

    def fail(self, stage: str, vod_id: int, worker_id: str, *, kind: str, error: str) -> bool:
        _, active, _, _ = _STAGES[stage]
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE progress SET
                    state = ?, error_kind = ?, failed_stage = ?, last_error = ?,
                    claimed_by = NULL, lease_until = NULL, next_attempt_at = NULL,
                    updated_at = ?
                WHERE vod_id = ? AND state = ? AND claimed_by = ?
                """,
                (
                    ProgressState.FAILED.value,
                    kind,
                    stage,
                    error,
                    format_ts(utc_now()),
                    vod_id,
                    active,
                    worker_id,
                ),
            )
        return cur.rowcount == 1

    def release(self, stage: str, vod_id: int, worker_id: str) -> bool:
        """Give the VOD back without consuming a retry (shutdown checkpoint)."""
        _, active, _, _ = _STAGES[stage]
        now = format_ts(utc_now())
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE progress SET claimed_by = NULL, lease_until = NULL,
                    next_attempt_at = ?, updated_at = ?
                WHERE vod_id = ? AND state = ? AND claimed_by = ?
                """,
                (now, now, vod_id, active, worker_id),
            )
        return cur.rowcount == 1

    def requeue(self, vod_id: int) -> Progress:
        """Manually re-enqueue a ``failed`` VOD.

        Download failures go back to ``downloading`` with a fresh retry budget
        and no lease, so the next claim picks them up. Upload failures go back
        to ``downloaded``; the file and any upload session are kept.
        """
        progress = self.get_progress(vod_id)
        if progress.state != ProgressState.FAILED.value:
            raise ValueError(f"not_failed: {vod_id} is {progress.state}")
        common = dict(last_error=None, error_kind=None, failed_stage=None, claimed_by=None, lease_until=None)
        if progress.failed_stage == "upload":
            ok = self.transition(
                vod_id,
                ProgressState.FAILED.value,
                ProgressState.DOWNLOADED.value,
                upload_retries=0,
                upload_percent=0.0,
                next_attempt_at=None,
                **common,
            )
        else:
            ok = self.transition(
                vod_id,
                ProgressState.FAILED.value,
                ProgressState.DOWNLOADING.value,
                retries=0,
                percent=0.0,
                downloaded_bytes=0,
                next_attempt_at=format_ts(utc_now()),
                **common,
            )
        if not ok:
            raise ValueError(f"not_failed: {vod_id} changed state concurrently")
        logger.info("Re-enqueued failed vod %d (stage=%s)", vod_id, progress.failed_stage or "download")
        return self.get_progress(vod_id)

    def leased_source_ids(self) -> List[str]:
        now = format_ts(utc_now())
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT v.source_vod_id FROM progress p JOIN vods v ON v.id = p.vod_id
                WHERE p.claimed_by IS NOT NULL AND p.lease_until > ?
                """,
                (now,),
            ).fetchall()
        return [row["source_vod_id"] for row in rows]

    def set_skip_upload(self, vod_id: int, skip: bool) -> Vod:
        with self._connect() as conn:
            cur = conn.execute("UPDATE vods SET skip_upload = ? WHERE id = ?", (1 if skip else 0, vod_id))
        if cur.rowcount != 1:
            raise KeyError(f"vod_not_found: {vod_id}")
        logger.info("vod %d skip_upload=%s", vod_id, skip)
        return self.get_vod(vod_id)

    # ------------------------------------------------------------- retention

    def retention_candidates(
        self,
        *,
        keep_days: int,
        keep_count: int,
        now: Optional[datetime] = None,
    ) -> List[Tuple[Vod, Progress]]:
        """Uploaded VODs whose local file falls outside the retention policy.

        A VOD is kept when it aired within ``keep_days`` or is among the
        ``keep_count`` most recent VODs (a rule set to 0 keeps nothing).
        Anything not yet uploaded, or still leased, is never a candidate.
        """
        now = now or utc_now()
        now_ts = format_ts(now)
        with self._connect() as conn:
            rows = conn.execute(
                _JOINED_SELECT
                + f"""
                WHERE p.state = ? AND p.downloaded_path IS NOT NULL AND p.downloaded_path != ''
                  AND (p.claimed_by IS NULL OR p.lease_until IS NULL OR p.lease_until <= ?)
                ORDER BY {_AIRED} ASC, v.id ASC
                """,
                (ProgressState.UPLOADED.value, now_ts),
            ).fetchall()
            newest: set = set()
            if keep_count > 0:
                newest = {
                    int(r["id"])
                    for r in conn.execute(
                        f"SELECT v.id FROM vods v ORDER BY {_AIRED} DESC, v.id DESC LIMIT ?",
                        (int(keep_count),),
                    )
                }
        cutoff = format_ts(now - timedelta(days=keep_days)) if keep_days > 0 else None
        out: List[Tuple[Vod, Progress]] = []
        for row in rows:
            vod = Vod.from_row(row)
            aired = vod.broadcast_start or vod.created_at
            if cutoff is not None and aired >= cutoff:
                continue
            if vod.id in newest:
                continue
            out.append((vod, Progress.from_row(row)))
        return out

    def clear_downloaded_path(self, vod_id: int, path: str) -> bool:
        """Forget a deleted local file. Only applies to an unleased ``uploaded`` VOD still pointing at ``path``."""
        now = format_ts(utc_now())
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE progress SET downloaded_path = NULL, updated_at = ?
                WHERE vod_id = ? AND state = ? AND downloaded_path = ?
                  AND (claimed_by IS NULL OR lease_until IS NULL OR lease_until <= ?)
                """,
                (now, vod_id, ProgressState.UPLOADED.value, path, now),
            )
        return cur.rowcount == 1

    # -------------------------------------------------------------------- kv

    def get_kv(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_kv(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, format_ts(utc_now())),
            )
