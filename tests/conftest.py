from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from streamvault.config import Settings, load_settings
from streamvault.store import ChatStore, VodStore

BROADCAST_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_settings(tmp_path: Path, overrides: Optional[Dict[str, Any]] = None) -> Settings:
    data: Dict[str, Any] = {"db_path": str(tmp_path / "sv.sqlite"), "data_dir": str(tmp_path / "vods")}
    for key, value in (overrides or {}).items():
        data[key] = value
    return load_settings(env={}, overrides=data)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def vods(tmp_path: Path) -> VodStore:
    return VodStore(tmp_path / "sv.sqlite")


@pytest.fixture
def chat(tmp_path: Path) -> ChatStore:
    return ChatStore(tmp_path / "sv.sqlite")


@pytest.fixture
def vod_id(vods: VodStore) -> int:
    new_id = vods.insert_discovered(
        "v100",
        channel="somechannel",
        title="Late night stream",
        broadcast_start=BROADCAST_START,
        duration_seconds=3600,
    )
    assert new_id is not None
    return new_id
