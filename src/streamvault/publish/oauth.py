"""OAuth token lifecycle for the upload platform.

``TokenManager.valid_token()`` is called before every upload attempt. It
refreshes when the stored access token expires within the safety margin and
persists the result, keeping the old refresh token when the provider does not
send a new one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from ..errors import AuthError, TransientError
from ..models import OAuthToken
from ..store.tokens import TokenStore
from ..utils import ZERO_TIME, utc_now

logger = logging.getLogger(__name__)


@dataclass
class RefreshedToken:
    access_token: str
    expiry: datetime
    refresh_token: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


RefreshFn = Callable[[OAuthToken], RefreshedToken]


class GoogleTokenRefresher:
    """Refresh-token grant through google-auth."""

    def __init__(
        self,
        *,
        client_id: str = "",
        client_secret: str = "",
        token_uri: str = "https://oauth2.googleapis.com/token",
        scopes: Optional[List[str]] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri
        self.scopes = scopes

    def __call__(self, token: OAuthToken) -> RefreshedToken:
        creds = Credentials(
            token=token.access_token or None,
            refresh_token=token.refresh_token,
            token_uri=token.raw.get("token_uri") or self.token_uri,
            client_id=self.client_id or token.raw.get("client_id"),
            client_secret=self.client_secret or token.raw.get("client_secret"),
            scopes=self.scopes or token.raw.get("scopes"),
        )
        try:
            creds.refresh(Request())
        except TransportError as exc:
            raise TransientError(f"token refresh transport error: {exc}") from exc
        except RefreshError as exc:
            if getattr(exc, "retryable", False):
                raise TransientError(f"token refresh failed: {exc}") from exc
            raise AuthError(f"token refresh rejected: {exc}") from exc

        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else ZERO_TIME
        return RefreshedToken(
            access_token=creds.token or "",
            expiry=expiry,
            refresh_token=creds.refresh_token or "",
            raw={"scopes": list(creds.scopes or [])},
        )


class TokenManager:
    def __init__(
        self,
        *,
        store: TokenStore,
        provider: str = "youtube",
        refresh_margin_seconds: float = 120.0,
        refresh_fn: RefreshFn,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.provider = provider
        self.refresh_margin_seconds = refresh_margin_seconds
        self.refresh_fn = refresh_fn
        self._clock = clock

    def valid_token(self) -> OAuthToken:
        """Return a token usable for at least the refresh margin.

        Raises ``AuthError`` when nothing is stored or the provider rejects the
        refresh, ``TransientError`` when the refresh could not reach it.
        """
        token = self.store.get_token(self.provider)
        if token.empty:
            raise AuthError(f"no {self.provider} token stored")
        if not token.expires_within(self.refresh_margin_seconds, self._clock()):
            return token
        if not token.refresh_token:
            raise AuthError(f"{self.provider} token expired and no refresh token stored")
        return self.refresh(token)

    def refresh(self, token: OAuthToken) -> OAuthToken:
        logger.info("Refreshing %s access token (expiry %s)", self.provider, token.expiry.isoformat())
        refreshed = self.refresh_fn(token)
        if not refreshed.access_token:
            raise AuthError(f"{self.provider} refresh returned no access token")
        refresh_token = refreshed.refresh_token or token.refresh_token
        raw = dict(token.raw)
        raw.update(refreshed.raw)
        self.store.upsert_token(self.provider, refreshed.access_token, refresh_token, refreshed.expiry, raw)
        return OAuthToken(
            provider=self.provider,
            access_token=refreshed.access_token,
            refresh_token=refresh_token,
            expiry=refreshed.expiry,
            raw=raw,
        )
