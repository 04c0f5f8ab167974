"""End-to-end wiring: discovery through publish with fake network edges."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import make_settings
from streamvault import cli
from streamvault.download.fetcher import HttpRangeFetcher, YtDlpFetcher
from streamvault.models import ProgressState
from streamvault.service import build_fetcher, build_service
from streamvault.store import InMemoryTokenStore
from streamvault.utils import utc_now
from test_download_worker import ScriptedFetcher
from test_scheduler import FakeSource, _broadcast
from test_upload_worker import FakeUploader


def test_pipeline_end_to_end(tmp_path: Path):
    settings = make_settings(
        tmp_path,
        {"download": {"backoff_base_seconds": 0, "progress_interval_seconds": 0}},
    )
    tokens = InMemoryTokenStore()
    tokens.upsert_token("youtube", "a", "r", utc_now() + timedelta(hours=1))
    uploader = FakeUploader(video_id="pub1")
    service = build_service(
        settings,
        fetcher=ScriptedFetcher(),
        uploader=uploader,
        source=FakeSource([_broadcast("777", 0)]),
        token_store=tokens,
    )

    assert service.scheduler.run_once() == 1
    vod = service.vods.get_vod_by_source("777")
    service.chat.insert_messages(vod.id, [{"username": "a", "message": "hi", "abs_timestamp": "2024-01-01T12:00:42Z"}])

    assert service.downloader.run_once().state == ProgressState.DOWNLOADED.value
    assert service.chat.range(vod.id)[0].rel_timestamp == 42.0

    assert service.uploader.run_once().state == ProgressState.UPLOADED.value
    vod = service.vods.get_vod(vod.id)
    assert vod.processed is True
    assert vod.published_url == "https://www.youtube.com/watch?v=pub1"


def test_build_fetcher(tmp_path: Path):
    assert isinstance(build_fetcher(make_settings(tmp_path)), YtDlpFetcher)
    http = make_settings(tmp_path, {"download": {"fetcher": "http", "url_template": "https://cdn/{source_vod_id}.mp4"}})
    assert isinstance(build_fetcher(http), HttpRangeFetcher)
    with pytest.raises(ValueError):
        build_fetcher(make_settings(tmp_path, {"download": {"fetcher": "http"}}))
    with pytest.raises(ValueError):
        build_fetcher(make_settings(tmp_path, {"download": {"fetcher": "ftp"}}))


def test_no_scheduler_without_channel(tmp_path: Path):
    service = build_service(make_settings(tmp_path), token_store=InMemoryTokenStore())
    assert service.scheduler is None


class TestCli:
    @pytest.fixture(autouse=True)
    def _isolated(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("SV_STATE_DIR", str(tmp_path / "state"))
        monkeypatch.delenv("SV_CONFIG", raising=False)
        self.db = tmp_path / "cli.sqlite"

    def _run(self, *args: str) -> None:
        cli.main(["--db", str(self.db), *args])

    def test_status_empty(self, capsys):
        self._run("status")
        assert "No VODs." in capsys.readouterr().out

    def test_attach_correlate_and_status(self, tmp_path: Path, capsys):
        service = build_service(make_settings(tmp_path, {"db_path": str(self.db)}), token_store=InMemoryTokenStore())
        vod_id = service.vods.insert_discovered("v1", title="hello", broadcast_start=_broadcast("x", 0).broadcast_start)
        chat_file = tmp_path / "chat.json"
        chat_file.write_text(
            json.dumps([{"username": "a", "message": "m", "abs_timestamp": "2024-01-01T12:00:05Z"}]),
            encoding="utf-8",
        )

        self._run("attach-chat", str(vod_id), "--chat", str(chat_file))
        self._run("correlate", str(vod_id))
        self._run("status", str(vod_id))

        out = capsys.readouterr().out
        assert "Attached 1 chat message(s)" in out
        assert "1 row(s) correlated" in out
        assert '"state": "queued"' in out
        assert service.chat.range(vod_id)[0].rel_timestamp == 5.0

    def test_requeue_rejects_non_failed(self, tmp_path: Path, capsys):
        service = build_service(make_settings(tmp_path, {"db_path": str(self.db)}), token_store=InMemoryTokenStore())
        vod_id = service.vods.insert_discovered("v1")
        with pytest.raises(SystemExit) as info:
            self._run("requeue", str(vod_id))
        assert info.value.code == 1
        assert "not_failed" in capsys.readouterr().err

    def test_discover_without_channel(self):
        with pytest.raises(SystemExit) as info:
            self._run("discover")
        assert info.value.code == 2
