from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from conftest import make_settings
from streamvault.errors import AuthError, QuotaError, TransientError
from streamvault.models import OAuthToken, ProgressState
from streamvault.publish.oauth import RefreshedToken, TokenManager
from streamvault.publish.worker import UploadWorker
from streamvault.store import InMemoryTokenStore, VodStore
from streamvault.utils import utc_now

FAST = {"backoff_base_seconds": 0, "backoff_jitter": 0}


class FakeUploader:
    def __init__(self, errors: Optional[List[Exception]] = None, video_id: str = "vid123") -> None:
        self.errors = list(errors or [])
        self.video_id = video_id
        self.calls: List[Dict[str, Any]] = []
        self.session: Optional[Dict[str, Any]] = None

    def upload(self, *, token, file_path, metadata, resume_state, on_progress, on_resume) -> str:
        self.calls.append({"token": token.access_token, "resume_state": dict(resume_state), "title": metadata.title})
        if not resume_state:
            on_resume({"session_url": "https://upload.example/s1", "next_byte": 0, "total_bytes": 4})
        on_progress(0.5)
        if self.errors:
            raise self.errors.pop(0)
        on_progress(1.0)
        return self.video_id


def _downloaded(vods: VodStore, vod_id: int, tmp_path: Path) -> Path:
    path = tmp_path / "vods" / "v100.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"data")
    vods.claim_vod("download", vod_id, "dl", 60)
    assert vods.complete_download(vod_id, "dl", path, 4)
    return path


def _tokens(expired: bool = False, refresh_fn=None) -> TokenManager:
    store = InMemoryTokenStore()
    expiry = utc_now() + (timedelta(minutes=-5) if expired else timedelta(hours=1))
    store.upsert_token("youtube", "access", "refresh", expiry)

    def never(token: OAuthToken) -> RefreshedToken:
        raise AssertionError("unexpected refresh")

    return TokenManager(store=store, refresh_fn=refresh_fn or never)


def _worker(tmp_path, vods, uploader, tokens=None, correlate=None, **upload) -> UploadWorker:
    cfg = dict(FAST)
    cfg.update(upload)
    settings = make_settings(tmp_path, {"upload": cfg})
    return UploadWorker(
        store=vods,
        tokens=tokens or _tokens(),
        uploader=uploader,
        settings=settings.upload,
        correlate=correlate,
        worker_id="up-test",
    )


class TestUploadWorker:
    def test_success_marks_processed(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)
        uploader = FakeUploader()

        progress = _worker(tmp_path, vods, uploader).run_once()

        assert progress.state == ProgressState.UPLOADED.value
        assert progress.upload_percent == 100
        vod = vods.get_vod(vod_id)
        assert vod.processed is True
        assert vod.published_url == "https://www.youtube.com/watch?v=vid123"
        assert uploader.calls[0]["title"] == "2024-01-01 Late night stream"

    def test_rejected_refresh_fails_without_calling_uploader(self, tmp_path: Path, vods: VodStore, vod_id: int):
        """An expired token whose refresh is rejected fails the VOD with error_kind=auth."""
        _downloaded(vods, vod_id, tmp_path)

        def reject(token: OAuthToken) -> RefreshedToken:
            raise AuthError("invalid_grant")

        uploader = FakeUploader()
        progress = _worker(tmp_path, vods, uploader, tokens=_tokens(expired=True, refresh_fn=reject)).run_once()

        assert uploader.calls == []
        assert progress.state == ProgressState.FAILED.value
        assert progress.error_kind == "auth"
        assert progress.failed_stage == "upload"
        vod = vods.get_vod(vod_id)
        assert vod.processed is False
        assert vod.published_url is None

    def test_missing_token_fails_with_auth(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)
        tokens = TokenManager(store=InMemoryTokenStore(), refresh_fn=lambda t: None)
        progress = _worker(tmp_path, vods, FakeUploader(), tokens=tokens).run_once()
        assert progress.error_kind == "auth"

    def test_refreshed_token_is_used(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)

        def refresh(token: OAuthToken) -> RefreshedToken:
            return RefreshedToken(access_token="fresh", expiry=utc_now() + timedelta(hours=1))

        uploader = FakeUploader()
        _worker(tmp_path, vods, uploader, tokens=_tokens(expired=True, refresh_fn=refresh)).run_once()
        assert uploader.calls[0]["token"] == "fresh"

    def test_transient_error_retries_and_resumes_session(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)
        uploader = FakeUploader([TransientError("HTTP 503")])
        worker = _worker(tmp_path, vods, uploader)

        progress = worker.run_once()
        assert progress.state == ProgressState.UPLOADING.value
        assert progress.upload_retries == 1
        assert progress.upload_percent == 0
        assert progress.retries == 0

        progress = worker.run_once()
        assert progress.state == ProgressState.UPLOADED.value
        assert uploader.calls[1]["resume_state"]["session_url"] == "https://upload.example/s1"

    def test_quota_error_fails(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)
        progress = _worker(tmp_path, vods, FakeUploader([QuotaError("quotaExceeded")])).run_once()
        assert progress.state == ProgressState.FAILED.value
        assert progress.error_kind == "quota"

    def test_retries_exhausted(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)
        worker = _worker(tmp_path, vods, FakeUploader([TransientError("x")] * 2), max_retries=2)
        worker.run_once()
        progress = worker.run_once()
        assert progress.state == ProgressState.FAILED.value
        assert progress.error_kind == "retries_exhausted"
        assert progress.upload_retries == 2

    def test_correlation_runs_before_claim(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)
        correlated: List[int] = []
        _worker(tmp_path, vods, FakeUploader(), correlate=correlated.append).run_once()
        assert correlated == [vod_id]

    def test_failed_correlation_defers_upload(self, tmp_path: Path, vods: VodStore, vod_id: int):
        _downloaded(vods, vod_id, tmp_path)

        def broken(vid: int) -> None:
            raise RuntimeError("database is locked")

        uploader = FakeUploader()
        assert _worker(tmp_path, vods, uploader, correlate=broken).run_once() is None
        assert uploader.calls == []
        assert vods.get_progress(vod_id).state == ProgressState.DOWNLOADED.value

    def test_delete_after_upload(self, tmp_path: Path, vods: VodStore, vod_id: int):
        path = _downloaded(vods, vod_id, tmp_path)
        _worker(tmp_path, vods, FakeUploader(), delete_after_upload=True).run_once()
        assert not path.exists()

    def test_queued_vods_are_not_uploaded(self, tmp_path: Path, vods: VodStore, vod_id: int):
        assert _worker(tmp_path, vods, FakeUploader()).run_once() is None
