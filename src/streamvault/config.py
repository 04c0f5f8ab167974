"""Configuration: built-in defaults, an optional YAML file, then ``SV_*`` env.

``load_settings()`` is called once at process start and the resulting
``Settings`` object is handed to every component. Nothing below the CLI and
service entry points reads the environment.

Environment overrides use ``SV_<SECTION>__<KEY>`` (double underscore), e.g.
``SV_DOWNLOAD__MAX_RETRIES=3``. Top-level keys use ``SV_<KEY>``. A few common
secrets also have short aliases (``SV_TWITCH_CLIENT_ID`` and friends).
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .state import default_data_dir, default_db_path

_ENV_PREFIX = "SV_"

_ENV_ALIASES = {
    "SV_TWITCH_CLIENT_ID": ("twitch", "client_id"),
    "SV_TWITCH_CLIENT_SECRET": ("twitch", "client_secret"),
    "SV_TWITCH_CHANNEL": ("twitch", "channel"),
    "SV_YOUTUBE_CLIENT_ID": ("oauth", "client_id"),
    "SV_YOUTUBE_CLIENT_SECRET": ("oauth", "client_secret"),
}


def default_settings(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    return {
        "db_path": str(default_db_path(env)),
        "data_dir": str(default_data_dir(env)),
        "log_level": "INFO",
        "log_file": "",
        "twitch": {
            "client_id": "",
            "client_secret": "",
            "channel": "",
            "api_base": "https://api.twitch.tv/helix",
            "token_url": "https://id.twitch.tv/oauth2/token",
            "timeout_seconds": 15.0,
        },
        "ingest": {
            "enabled": True,
            "interval_seconds": 300.0,
            "max_pages": 10,
        },
        "download": {
            "enabled": True,
            "fetcher": "ytdlp",  # "ytdlp" or "http"
            "url_template": "",  # http fetcher only, e.g. "https://cdn.example/{source_vod_id}.mp4"
            "poll_interval_seconds": 5.0,
            "max_retries": 5,
            "backoff_base_seconds": 5.0,
            "backoff_cap_seconds": 300.0,
            "backoff_jitter": 0.2,
            "lease_seconds": 600.0,
            "progress_interval_seconds": 2.0,
            "chunk_size": 1024 * 1024,
            "cleanup_max_age_hours": 24.0,
            "ytdlp_format": "best",
        },
        "retention": {
            # 0 disables a rule; with both at 0 nothing is ever deleted
            "keep_days": 0,
            "keep_count": 0,
            "dry_run": False,
            "interval_seconds": 6 * 3600.0,
        },
        "correlate": {
            "write_retries": 3,
            "retry_delay_seconds": 0.5,
        },
        "upload": {
            "enabled": True,
            "poll_interval_seconds": 10.0,
            "max_retries": 5,
            "backoff_base_seconds": 5.0,
            "backoff_cap_seconds": 300.0,
            "backoff_jitter": 0.2,
            "lease_seconds": 3600.0,
            "chunk_size": 8 * 1024 * 1024,
            "privacy": "private",
            "category_id": "20",
            "delete_after_upload": False,
        },
        "oauth": {
            "provider": "youtube",
            "token_store": "sqlite",  # "sqlite", "keyring" or "memory"
            "refresh_margin_seconds": 120.0,
            "client_id": "",
            "client_secret": "",
            "client_secrets_file": "",
            "token_uri": "https://oauth2.googleapis.com/token",
            "scopes": ["https://www.googleapis.com/auth/youtube.upload"],
        },
        "replay": {
            "poll_interval_seconds": 1.0,
            "heartbeat_seconds": 15.0,
            "page_size": 200,
            "max_connections": 100,
        },
        "api": {
            "host": "127.0.0.1",
            "port": 8080,
        },
    }


@dataclass(frozen=True)
class TwitchSettings:
    client_id: str
    client_secret: str
    channel: str
    api_base: str
    token_url: str
    timeout_seconds: float


@dataclass(frozen=True)
class IngestSettings:
    enabled: bool
    interval_seconds: float
    max_pages: int


@dataclass(frozen=True)
class DownloadSettings:
    enabled: bool
    fetcher: str
    url_template: str
    poll_interval_seconds: float
    max_retries: int
    backoff_base_seconds: float
    backoff_cap_seconds: float
    backoff_jitter: float
    lease_seconds: float
    progress_interval_seconds: float
    chunk_size: int
    cleanup_max_age_hours: float
    ytdlp_format: str


@dataclass(frozen=True)
class RetentionSettings:
    keep_days: int
    keep_count: int
    dry_run: bool
    interval_seconds: float

    @property
    def enabled(self) -> bool:
        return self.keep_days > 0 or self.keep_count > 0


@dataclass(frozen=True)
class CorrelateSettings:
    write_retries: int
    retry_delay_seconds: float


@dataclass(frozen=True)
class UploadSettings:
    enabled: bool
    poll_interval_seconds: float
    max_retries: int
    backoff_base_seconds: float
    backoff_cap_seconds: float
    backoff_jitter: float
    lease_seconds: float
    chunk_size: int
    privacy: str
    category_id: str
    delete_after_upload: bool


@dataclass(frozen=True)
class OAuthSettings:
    provider: str
    token_store: str
    refresh_margin_seconds: float
    client_id: str
    client_secret: str
    client_secrets_file: str
    token_uri: str
    scopes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReplaySettings:
    poll_interval_seconds: float
    heartbeat_seconds: float
    page_size: int
    max_connections: int


@dataclass(frozen=True)
class ApiSettings:
    host: str
    port: int


@dataclass(frozen=True)
class Settings:
    db_path: Path
    data_dir: Path
    log_level: str
    log_file: Optional[Path]
    twitch: TwitchSettings
    ingest: IngestSettings
    download: DownloadSettings
    retention: RetentionSettings
    correlate: CorrelateSettings
    upload: UploadSettings
    oauth: OAuthSettings
    replay: ReplaySettings
    api: ApiSettings


_SECTIONS = {
    "twitch": TwitchSettings,
    "ingest": IngestSettings,
    "download": DownloadSettings,
    "retention": RetentionSettings,
    "correlate": CorrelateSettings,
    "upload": UploadSettings,
    "oauth": OAuthSettings,
    "replay": ReplaySettings,
    "api": ApiSettings,
}


def _parse_bool(raw: str, name: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name}: expected a boolean, got {raw!r}")


def _parse_csv(raw: str) -> List[str]:
    items: List[str] = []
    for token in raw.split(","):
        value = token.strip()
        if value and value not in items:
            items.append(value)
    return items


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Coerce ``value`` to the type of ``default``. Strings come from env vars."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return _parse_bool(value, name)
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name}: expected an integer, got {value!r}") from None
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name}: expected a number, got {value!r}") from None
    if isinstance(default, list):
        if isinstance(value, str):
            return _parse_csv(value)
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        raise ValueError(f"{name}: expected a list, got {value!r}")
    return "" if value is None else str(value)


def _merge(base: Dict[str, Any], overlay: Mapping[str, Any], prefix: str = "") -> None:
    for key, value in overlay.items():
        name = f"{prefix}{key}"
        if key not in base:
            raise ValueError(f"unknown config key: {name}")
        if isinstance(base[key], dict):
            if not isinstance(value, Mapping):
                raise ValueError(f"{name}: expected a mapping")
            _merge(base[key], value, prefix=f"{name}.")
        else:
            base[key] = _coerce(value, base[key], name)


def _env_overrides(env: Mapping[str, str], defaults: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for var, (section, key) in _ENV_ALIASES.items():
        if env.get(var):
            out.setdefault(section, {})[key] = env[var]
    for var, raw in env.items():
        if not var.startswith(_ENV_PREFIX) or var in _ENV_ALIASES:
            continue
        name = var[len(_ENV_PREFIX):].lower()
        if "__" in name:
            section, key = name.split("__", 1)
            if isinstance(defaults.get(section), dict) and key in defaults[section]:
                out.setdefault(section, {})[key] = raw
        elif name in defaults and not isinstance(defaults[name], dict):
            out[name] = raw
    return out


def load_config_file(path: Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")
    return data


def build_settings(data: Dict[str, Any]) -> Settings:
    sections = {name: cls(**data[name]) for name, cls in _SECTIONS.items()}
    log_file = data.get("log_file") or ""
    return Settings(
        db_path=Path(data["db_path"]).expanduser(),
        data_dir=Path(data["data_dir"]).expanduser(),
        log_level=str(data["log_level"]).upper(),
        log_file=Path(log_file).expanduser() if log_file else None,
        **sections,
    )


def load_settings(
    path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """Build the process configuration.

    Precedence, lowest first: defaults, YAML file at ``path`` (or
    ``$SV_CONFIG``), environment, then ``overrides`` (used by tests and CLI
    flags).
    """
    env = os.environ if env is None else env
    data = default_settings(env)
    defaults = copy.deepcopy(data)

    config_path = path or (Path(env["SV_CONFIG"]) if env.get("SV_CONFIG") else None)
    if config_path is not None:
        _merge(data, load_config_file(config_path))
    _merge(data, _env_overrides(env, defaults))
    if overrides:
        _merge(data, overrides)
    return build_settings(data)
