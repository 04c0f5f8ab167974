"""Resumable uploads to the YouTube Data API.

The upload session (URL plus next byte) is handed back through ``on_resume``
after every chunk so a later attempt, in this process or another, continues
where the last one stopped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.credentials import Credentials

from ..errors import AuthError, QuotaError, TerminalError, TransientError
from ..models import OAuthToken
from .sanitize import UploadMetadata

logger = logging.getLogger(__name__)

UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024

_QUOTA_REASONS = {"quotaExceeded", "uploadLimitExceeded", "dailyLimitExceeded"}
_RATE_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def published_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class SessionExpired(Exception):
    """The resumable session URL is gone; a new session is needed."""


def _error_reason(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return ""
    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        return ""
    for item in error.get("errors") or []:
        if isinstance(item, dict) and item.get("reason"):
            return str(item["reason"])
    return str(error.get("status") or "")


def _retry_after(resp: requests.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if value and value.strip().isdigit():
        return float(value)
    return None


def raise_for_upload_status(resp: requests.Response, step: str) -> None:
    """Map an unexpected upload API response onto the error taxonomy."""
    code = resp.status_code
    reason = _error_reason(resp)
    detail = f"youtube {step}: HTTP {code} {reason}".strip()
    if code == 429 or code >= 500:
        raise TransientError(detail, retry_after=_retry_after(resp))
    if code == 401:
        raise AuthError(detail)
    if code == 403:
        if reason in _RATE_REASONS:
            raise TransientError(detail, retry_after=_retry_after(resp))
        if reason in _QUOTA_REASONS:
            raise QuotaError(detail)
        raise AuthError(detail)
    raise TerminalError(f"{detail}: {resp.text[:300]}")


def _next_byte(resp: requests.Response, fallback: int) -> int:
    range_header = resp.headers.get("Range")
    if range_header and "-" in range_header:
        return int(range_header.split("-")[-1]) + 1
    return fallback


class YouTubeUploader:
    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 120.0,
        session_factory: Optional[Callable[[OAuthToken], requests.Session]] = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._session_factory = session_factory or self._authorized_session

    @staticmethod
    def _authorized_session(token: OAuthToken) -> requests.Session:
        # refreshing is TokenManager's job; a 401 here must surface as AuthError
        return AuthorizedSession(Credentials(token=token.access_token), refresh_status_codes=())

    def upload(
        self,
        *,
        token: OAuthToken,
        file_path: Path,
        metadata: UploadMetadata,
        resume_state: Dict[str, Any],
        on_progress: Callable[[float], None],
        on_resume: Callable[[Dict[str, Any]], None],
    ) -> str:
        """Upload ``file_path`` and return the new video id."""
        if not file_path.exists():
            raise TerminalError(f"file missing: {file_path}")
        total_bytes = file_path.stat().st_size
        if total_bytes <= 0:
            raise TerminalError(f"file empty: {file_path}")

        session = self._session_factory(token)
        try:
            state = dict(resume_state) if resume_state.get("session_url") else {}
            if state and int(state.get("total_bytes") or 0) != total_bytes:
                logger.info("Discarding upload session for %s: file size changed", file_path.name)
                state = {}
            if state:
                try:
                    video_id = self._query_offset(session, state, total_bytes)
                except SessionExpired:
                    logger.info("Upload session for %s expired; starting a new one", file_path.name)
                    state = {}
                else:
                    if video_id:
                        return video_id
            if not state:
                state = self._create_session(session, metadata, total_bytes)
                on_resume(state)
            return self._send_chunks(session, file_path, state, total_bytes, on_progress, on_resume)
        except requests.RequestException as exc:
            raise TransientError(f"youtube upload: {type(exc).__name__}: {exc}") from exc

    def _create_session(self, session: requests.Session, metadata: UploadMetadata, total_bytes: int) -> Dict[str, Any]:
        resp = session.post(
            UPLOAD_URL,
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                "X-Upload-Content-Type": "video/*",
                "X-Upload-Content-Length": str(total_bytes),
                "Content-Type": "application/json; charset=UTF-8",
            },
            data=json.dumps(metadata.to_body()),
            timeout=self.timeout,
        )
        if resp.status_code not in (200, 201):
            raise_for_upload_status(resp, "init")
        session_url = resp.headers.get("Location")
        if not session_url:
            raise TransientError("youtube init: response had no session Location")
        return {"session_url": session_url, "next_byte": 0, "total_bytes": total_bytes}

    def _query_offset(self, session: requests.Session, state: Dict[str, Any], total_bytes: int) -> Optional[str]:
        """Sync ``state["next_byte"]`` with the server. Returns the video id if it is already done."""
        resp = session.put(
            state["session_url"],
            headers={"Content-Length": "0", "Content-Range": f"bytes */{total_bytes}"},
            timeout=self.timeout,
        )
        if resp.status_code in (200, 201):
            return str(resp.json()["id"])
        if resp.status_code == 308:
            state["next_byte"] = _next_byte(resp, 0)
            return None
        if resp.status_code in (404, 410):
            raise SessionExpired(state["session_url"])
        raise_for_upload_status(resp, "resume")
        return None

    def _send_chunks(
        self,
        session: requests.Session,
        file_path: Path,
        state: Dict[str, Any],
        total_bytes: int,
        on_progress: Callable[[float], None],
        on_resume: Callable[[Dict[str, Any]], None],
    ) -> str:
        start = int(state.get("next_byte") or 0)
        with file_path.open("rb") as handle:
            handle.seek(start)
            while start < total_bytes:
                chunk = handle.read(self.chunk_size)
                if not chunk:
                    break
                end = start + len(chunk) - 1
                resp = session.put(
                    state["session_url"],
                    data=chunk,
                    headers={
                        "Content-Length": str(len(chunk)),
                        "Content-Range": f"bytes {start}-{end}/{total_bytes}",
                    },
                    timeout=self.timeout,
                )
                if resp.status_code in (200, 201):
                    on_progress(1.0)
                    return str(resp.json()["id"])
                if resp.status_code == 308:
                    start = _next_byte(resp, end + 1)
                    handle.seek(start)
                    state["next_byte"] = start
                    on_resume(state)
                    on_progress(min(1.0, start / total_bytes))
                    continue
                if resp.status_code in (404, 410):
                    # session gone mid-upload: forget it so the retry starts over
                    state.clear()
                    on_resume(state)
                    raise TransientError(f"youtube upload session expired (HTTP {resp.status_code})")
                raise_for_upload_status(resp, "upload")
        raise TransientError("youtube upload ended without a video id")
