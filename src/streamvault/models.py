from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .utils import ZERO_TIME, format_ts


class ProgressState(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


LIVE_STATES = (ProgressState.QUEUED.value, ProgressState.DOWNLOADING.value)


@dataclass
class Vod:
    id: int
    source_vod_id: str
    channel: str
    title: str
    broadcast_start: Optional[str]
    duration_seconds: int
    description: Optional[str]
    priority: int
    created_at: str
    processed: bool
    published_url: Optional[str]
    skip_upload: bool = False

    @classmethod
    def from_row(cls, row: Any) -> "Vod":
        data = dict(row)
        data["processed"] = bool(data.get("processed"))
        data["skip_upload"] = bool(data.get("skip_upload"))
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_vod_id": self.source_vod_id,
            "channel": self.channel,
            "title": self.title,
            "broadcast_start": self.broadcast_start,
            "duration_seconds": self.duration_seconds,
            "description": self.description,
            "priority": self.priority,
            "created_at": self.created_at,
            "processed": self.processed,
            "published_url": self.published_url,
            "skip_upload": self.skip_upload,
        }


@dataclass
class Progress:
    vod_id: int
    state: str
    percent: float
    retries: int
    total_bytes: Optional[int]
    downloaded_bytes: int
    downloaded_path: Optional[str]
    updated_at: str
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    failed_stage: Optional[str] = None
    claimed_by: Optional[str] = None
    lease_until: Optional[str] = None
    next_attempt_at: Optional[str] = None
    upload_retries: int = 0
    upload_percent: float = 0.0
    upload_session: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "Progress":
        data = dict(row)
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})

    def upload_resume_state(self) -> Dict[str, Any]:
        if not self.upload_session:
            return {}
        try:
            return json.loads(self.upload_session)
        except json.JSONDecodeError:
            return {}


def progress_view(vod: Vod, progress: Progress) -> Dict[str, Any]:
    """Dashboard payload for one VOD's progress."""
    return {
        "vod_id": vod.id,
        "state": progress.state,
        "percent": float(progress.percent),
        "retries": int(progress.retries),
        "total_bytes": progress.total_bytes,
        "downloaded_bytes": progress.downloaded_bytes,
        "downloaded_path": progress.downloaded_path,
        "processed": vod.processed,
        "published_url": vod.published_url,
        "progress_updated_at": progress.updated_at,
        "upload_percent": float(progress.upload_percent),
        "upload_retries": int(progress.upload_retries),
        "last_error": progress.last_error,
        "error_kind": progress.error_kind,
        "failed_stage": progress.failed_stage,
        "next_attempt_at": progress.next_attempt_at,
    }


@dataclass
class ChatMessage:
    """One persisted chat line. ``rel_timestamp`` stays None until correlated."""

    id: int
    vod_id: int
    username: str
    message: str
    abs_timestamp: str
    rel_timestamp: Optional[float] = None
    badges: str = ""
    emotes: str = ""
    color: str = ""
    flags: str = ""
    reply_to_username: str = ""
    reply_to_message: str = ""

    @classmethod
    def from_row(cls, row: Any) -> "ChatMessage":
        data = dict(row)
        return cls(
            id=data["id"],
            vod_id=data["vod_id"],
            username=data["username"] or "",
            message=data["message"] or "",
            abs_timestamp=data["abs_timestamp"] or "",
            rel_timestamp=data["rel_timestamp"],
            badges=data["badges"] or "",
            emotes=data["emotes"] or "",
            color=data["color"] or "",
            flags=data["flags"] or "",
            reply_to_username=data["reply_to_username"] or "",
            reply_to_message=data["reply_to_message"] or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vod_id": self.vod_id,
            "username": self.username,
            "message": self.message,
            "abs_timestamp": self.abs_timestamp,
            "rel_timestamp": self.rel_timestamp,
            "badges": self.badges,
            "emotes": self.emotes,
            "color": self.color,
            "flags": [f for f in self.flags.split(",") if f],
            "reply_to_username": self.reply_to_username,
            "reply_to_message": self.reply_to_message,
        }


@dataclass
class OAuthToken:
    provider: str
    access_token: str = ""
    refresh_token: str = ""
    expiry: datetime = ZERO_TIME
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.access_token and not self.refresh_token

    def expires_within(self, margin_seconds: float, now: datetime) -> bool:
        """True when the token is unusable within ``margin_seconds`` of ``now``.

        A zero expiry means unknown and is treated as expired.
        """
        if self.expiry == ZERO_TIME:
            return True
        return self.expiry - now <= timedelta(seconds=margin_seconds)

    def to_dict(self) -> Dict[str, Any]:
        # never hand secrets to the dashboard
        return {
            "provider": self.provider,
            "has_access_token": bool(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "expiry": format_ts(self.expiry) if self.expiry != ZERO_TIME else None,
        }
