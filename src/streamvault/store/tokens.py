"""OAuth token persistence behind a two-method interface.

A provider with nothing stored reads back as an ``OAuthToken`` with empty
strings and ``ZERO_TIME``; absence is not an error.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import keyring

from ..models import OAuthToken
from ..utils import ZERO_TIME, format_ts, parse_ts, utc_iso
from .base import SqliteStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS oauth_tokens (
    provider TEXT PRIMARY KEY,
    access_token TEXT NOT NULL DEFAULT '',
    refresh_token TEXT NOT NULL DEFAULT '',
    expiry TEXT NOT NULL,
    raw TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL
);
"""

_SERVICE_PREFIX = "StreamVault"


class TokenStore(Protocol):
    def upsert_token(
        self,
        provider: str,
        access_token: str,
        refresh_token: str,
        expiry: datetime,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def get_token(self, provider: str) -> OAuthToken: ...


def _decode_raw(text: Optional[str]) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _decode_expiry(text: Optional[str]) -> datetime:
    if not text:
        return ZERO_TIME
    try:
        return parse_ts(text)
    except ValueError:
        return ZERO_TIME


class SqliteTokenStore(SqliteStore):
    SCHEMA = _SCHEMA

    def upsert_token(
        self,
        provider: str,
        access_token: str,
        refresh_token: str,
        expiry: datetime,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_tokens (provider, access_token, refresh_token, expiry, raw, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expiry = excluded.expiry,
                    raw = excluded.raw,
                    updated_at = excluded.updated_at
                """,
                (provider, access_token or "", refresh_token or "", format_ts(expiry), json.dumps(raw or {}), utc_iso()),
            )

    def get_token(self, provider: str) -> OAuthToken:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM oauth_tokens WHERE provider = ?", (provider,)).fetchone()
        if not row:
            return OAuthToken(provider=provider)
        return OAuthToken(
            provider=provider,
            access_token=row["access_token"] or "",
            refresh_token=row["refresh_token"] or "",
            expiry=_decode_expiry(row["expiry"]),
            raw=_decode_raw(row["raw"]),
        )


class KeyringTokenStore:
    """Tokens in the OS keychain, one JSON blob per provider."""

    def __init__(self, service: str = _SERVICE_PREFIX) -> None:
        self.service = service

    def _key(self, provider: str) -> str:
        return f"{self.service}:oauth:{provider}"

    def upsert_token(
        self,
        provider: str,
        access_token: str,
        refresh_token: str,
        expiry: datetime,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {
            "access_token": access_token or "",
            "refresh_token": refresh_token or "",
            "expiry": format_ts(expiry),
            "raw": raw or {},
        }
        keyring.set_password(self.service, self._key(provider), json.dumps(payload))

    def get_token(self, provider: str) -> OAuthToken:
        data = _decode_raw(keyring.get_password(self.service, self._key(provider)))
        if not data:
            return OAuthToken(provider=provider)
        return OAuthToken(
            provider=provider,
            access_token=str(data.get("access_token") or ""),
            refresh_token=str(data.get("refresh_token") or ""),
            expiry=_decode_expiry(data.get("expiry")),
            raw=data.get("raw") if isinstance(data.get("raw"), dict) else {},
        )


class InMemoryTokenStore:
    def __init__(self) -> None:
        self._tokens: Dict[str, OAuthToken] = {}
        self._lock = threading.Lock()
        self.upserts = 0

    def upsert_token(
        self,
        provider: str,
        access_token: str,
        refresh_token: str,
        expiry: datetime,
        raw: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._tokens[provider] = OAuthToken(
                provider=provider,
                access_token=access_token or "",
                refresh_token=refresh_token or "",
                expiry=expiry,
                raw=dict(raw or {}),
            )
            self.upserts += 1

    def get_token(self, provider: str) -> OAuthToken:
        with self._lock:
            token = self._tokens.get(provider)
            if token is None:
                return OAuthToken(provider=provider)
            return OAuthToken(
                provider=token.provider,
                access_token=token.access_token,
                refresh_token=token.refresh_token,
                expiry=token.expiry,
                raw=dict(token.raw),
            )


def open_token_store(kind: str, db_path) -> TokenStore:
    if kind == "sqlite":
        return SqliteTokenStore(db_path)
    if kind == "keyring":
        return KeyringTokenStore()
    if kind == "memory":
        return InMemoryTokenStore()
    raise ValueError(f"unknown token store: {kind}")
