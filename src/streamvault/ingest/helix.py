"""Minimal Twitch Helix client for VOD discovery.

Uses an app access token (client-credentials grant) cached until shortly
before it expires. Only the three endpoints discovery needs are wrapped:
``/users``, ``/videos`` and ``/streams``.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests

from ..config import TwitchSettings
from ..errors import AuthError, TerminalError, TransientError
from ..utils import parse_ts

logger = logging.getLogger(__name__)

_TOKEN_BUFFER_SECONDS = 60
_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


def parse_twitch_duration(value: str) -> int:
    """``"1h2m3s"`` -> 3723. Unparseable input gives 0."""
    match = _DURATION_RE.match((value or "").strip())
    if not match or not any(match.groups()):
        return 0
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


@dataclass
class Broadcast:
    source_vod_id: str
    title: str
    broadcast_start: Optional[datetime]
    duration_seconds: int
    url: str
    description: str = ""

    @classmethod
    def from_helix(cls, item: Dict[str, Any]) -> "Broadcast":
        created = item.get("created_at")
        try:
            start = parse_ts(created) if created else None
        except ValueError:
            logger.warning("Video %s has malformed created_at %r", item.get("id"), created)
            start = None
        return cls(
            source_vod_id=str(item["id"]),
            title=str(item.get("title") or ""),
            broadcast_start=start,
            duration_seconds=parse_twitch_duration(str(item.get("duration") or "")),
            url=str(item.get("url") or f"https://www.twitch.tv/videos/{item['id']}"),
            description=str(item.get("description") or ""),
        )


class HelixClient:
    def __init__(self, settings: TwitchSettings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._user_ids: Dict[str, str] = {}

    def _app_token(self, *, force: bool = False) -> str:
        if not force and self._token and time.time() < self._token_expires_at - _TOKEN_BUFFER_SECONDS:
            return self._token
        if not self.settings.client_id or not self.settings.client_secret:
            raise AuthError("twitch client_id/client_secret not configured")
        try:
            resp = self.session.post(
                self.settings.token_url,
                data={
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransientError(f"twitch token request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientError(f"twitch token endpoint {resp.status_code}")
        if resp.status_code != 200:
            raise AuthError(f"twitch token rejected: {resp.status_code} {resp.text[:200]}")
        data = resp.json()
        self._token = str(data["access_token"])
        self._token_expires_at = time.time() + float(data.get("expires_in") or 0)
        logger.debug("Obtained Twitch app token (expires in %ss)", data.get("expires_in"))
        return self._token

    def _get(self, path: str, params: List[Tuple[str, str]]) -> Dict[str, Any]:
        url = f"{self.settings.api_base.rstrip('/')}/{path.lstrip('/')}"
        for attempt in range(2):
            headers = {
                "Client-ID": self.settings.client_id,
                "Authorization": f"Bearer {self._app_token(force=attempt > 0)}",
            }
            try:
                resp = self.session.get(url, headers=headers, params=params, timeout=self.settings.timeout_seconds)
            except requests.RequestException as exc:
                raise TransientError(f"helix {path} failed: {exc}") from exc
            if resp.status_code == 401 and attempt == 0:
                # app token revoked or expired early; fetch a new one once
                continue
            if resp.status_code == 429:
                reset = resp.headers.get("Ratelimit-Reset")
                retry_after = max(0.0, float(reset) - time.time()) if reset and reset.isdigit() else None
                raise TransientError(f"helix {path} rate limited", retry_after=retry_after)
            if resp.status_code >= 500:
                raise TransientError(f"helix {path} {resp.status_code}")
            if resp.status_code == 401:
                raise AuthError(f"helix {path} unauthorized")
            if resp.status_code != 200:
                raise TerminalError(f"helix {path} {resp.status_code}: {resp.text[:200]}")
            return resp.json()
        raise AuthError(f"helix {path} unauthorized")

    def user_id(self, login: str) -> str:
        login = login.strip().lower()
        if login in self._user_ids:
            return self._user_ids[login]
        data = self._get("users", [("login", login)])
        items = data.get("data") or []
        if not items:
            raise TerminalError(f"twitch user not found: {login}")
        self._user_ids[login] = str(items[0]["id"])
        return self._user_ids[login]

    def live_started_at(self, user_id: str) -> Optional[datetime]:
        """Start time of the user's current live stream, or None when offline."""
        data = self._get("streams", [("user_id", user_id)])
        for item in data.get("data") or []:
            if item.get("type", "live") == "live" and item.get("started_at"):
                return parse_ts(item["started_at"])
        return None

    def archive_videos(self, user_id: str, *, max_pages: int = 10) -> Iterator[Broadcast]:
        """Archived broadcasts, newest first, following ``pagination.cursor``."""
        cursor: Optional[str] = None
        for _ in range(max(1, max_pages)):
            params = [("user_id", user_id), ("type", "archive"), ("first", "100")]
            if cursor:
                params.append(("after", cursor))
            data = self._get("videos", params)
            for item in data.get("data") or []:
                yield Broadcast.from_helix(item)
            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                return
