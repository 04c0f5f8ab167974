from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import Vod
from ..utils import format_ts, parse_ts_or_none

TITLE_LIMIT = 100
DESCRIPTION_LIMIT = 5000
DEFAULT_TITLE = "Twitch VOD"

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_DESCRIPTION_CONTROL_RE = re.compile(r"[\x00-\x09\x0b-\x1f\x7f]")
# YouTube rejects titles and descriptions containing angle brackets
_FORBIDDEN_RE = re.compile(r"[<>]")


def _normalize(text: str) -> str:
    text = _FORBIDDEN_RE.sub("", _CONTROL_RE.sub(" ", text))
    return " ".join(text.strip().split())


def _clean_description(text: str) -> str:
    return _FORBIDDEN_RE.sub("", _DESCRIPTION_CONTROL_RE.sub("", text)).strip()


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


@dataclass
class UploadMetadata:
    title: str
    description: str
    privacy: str = "private"
    category_id: str = "20"
    tags: List[str] = field(default_factory=list)

    def to_body(self) -> Dict[str, Any]:
        return {
            "snippet": {
                "title": self.title,
                "description": self.description,
                "tags": self.tags,
                "categoryId": self.category_id,
            },
            "status": {"privacyStatus": self.privacy},
        }


def _recorded_on(vod: Vod) -> Optional[str]:
    try:
        when = parse_ts_or_none(vod.broadcast_start) or parse_ts_or_none(vod.created_at)
    except ValueError:
        return None
    return format_ts(when) if when else None


def build_title(vod: Vod) -> str:
    """``YYYY-MM-DD <title>``, cleaned and cut to 100 characters."""
    title = _normalize(vod.title or "") or DEFAULT_TITLE
    recorded = _recorded_on(vod)
    if recorded:
        title = f"{recorded[:10]} {title}"
    return _truncate(title, TITLE_LIMIT)


def build_description(vod: Vod) -> str:
    custom = _clean_description(vod.description or "")
    if custom:
        return _truncate(custom, DESCRIPTION_LIMIT)
    recorded = _recorded_on(vod)
    if recorded:
        return f"Uploaded from Twitch VOD on {recorded[:19]}Z"
    return "Uploaded from Twitch VOD"


def build_metadata(vod: Vod, *, privacy: str = "private", category_id: str = "20") -> UploadMetadata:
    tags = [vod.channel] if vod.channel else []
    return UploadMetadata(
        title=build_title(vod),
        description=build_description(vod),
        privacy=privacy,
        category_id=category_id,
        tags=tags,
    )
