from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional


def state_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    override = env.get("SV_STATE_DIR")
    if override:
        return Path(override).expanduser()
    if os.name == "nt":
        base = env.get("APPDATA")
        if base:
            return Path(base) / "StreamVault"
        return Path.home() / "AppData" / "Roaming" / "StreamVault"
    return Path.home() / ".streamvault"


def default_db_path(env: Optional[Mapping[str, str]] = None) -> Path:
    return state_dir(env) / "streamvault.sqlite"


def default_data_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    return state_dir(env) / "vods"
