from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from streamvault.errors import AuthError, QuotaError, TerminalError, TransientError
from streamvault.models import OAuthToken
from streamvault.publish.sanitize import UploadMetadata
from streamvault.publish.youtube import YouTubeUploader, published_url, raise_for_upload_status


class FakeResp:
    def __init__(self, status: int, payload: Any = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses: List[FakeResp]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def _next(self, method: str, url: str, **kwargs) -> FakeResp:
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._next("PUT", url, **kwargs)


def _quota_body(reason: str) -> Dict[str, Any]:
    return {"error": {"errors": [{"reason": reason}], "status": "PERMISSION_DENIED"}}


def _upload(session: FakeSession, path: Path, resume_state=None, progress=None, states=None) -> str:
    uploader = YouTubeUploader(chunk_size=4, session_factory=lambda token: session)
    return uploader.upload(
        token=OAuthToken(provider="youtube", access_token="a"),
        file_path=path,
        metadata=UploadMetadata(title="t", description="d"),
        resume_state=resume_state or {},
        on_progress=(progress if progress is not None else []).append,
        on_resume=lambda s: (states if states is not None else []).append(dict(s)),
    )


@pytest.fixture
def video(tmp_path: Path) -> Path:
    path = tmp_path / "v.mp4"
    path.write_bytes(b"abcdefgh")
    return path


class TestYouTubeUploader:
    def test_fresh_upload_in_chunks(self, video: Path):
        session = FakeSession(
            [
                FakeResp(200, headers={"Location": "https://up/s1"}),
                FakeResp(308, headers={"Range": "bytes=0-3"}),
                FakeResp(200, {"id": "abc"}),
            ]
        )
        progress: List[float] = []
        states: List[Dict[str, Any]] = []

        assert _upload(session, video, progress=progress, states=states) == "abc"

        init = session.calls[0]
        assert init["params"]["uploadType"] == "resumable"
        assert init["headers"]["X-Upload-Content-Length"] == "8"
        assert session.calls[1]["headers"]["Content-Range"] == "bytes 0-3/8"
        assert session.calls[2]["headers"]["Content-Range"] == "bytes 4-7/8"
        assert session.calls[2]["data"] == b"efgh"
        assert progress == [0.5, 1.0]
        assert states[0] == {"session_url": "https://up/s1", "next_byte": 0, "total_bytes": 8}
        assert states[-1]["next_byte"] == 4

    def test_resumes_existing_session(self, video: Path):
        session = FakeSession(
            [
                FakeResp(308, headers={"Range": "bytes=0-3"}),
                FakeResp(200, {"id": "abc"}),
            ]
        )
        state = {"session_url": "https://up/s1", "next_byte": 0, "total_bytes": 8}

        assert _upload(session, video, resume_state=state) == "abc"
        assert [c["method"] for c in session.calls] == ["PUT", "PUT"]
        assert session.calls[0]["headers"]["Content-Range"] == "bytes */8"
        assert session.calls[1]["headers"]["Content-Range"] == "bytes 4-7/8"

    def test_finished_session_returns_video_id(self, video: Path):
        session = FakeSession([FakeResp(201, {"id": "done"})])
        state = {"session_url": "https://up/s1", "next_byte": 8, "total_bytes": 8}
        assert _upload(session, video, resume_state=state) == "done"
        assert len(session.calls) == 1

    def test_expired_session_starts_over(self, video: Path):
        session = FakeSession(
            [
                FakeResp(404),
                FakeResp(200, headers={"Location": "https://up/s2"}),
                FakeResp(308, headers={"Range": "bytes=0-3"}),
                FakeResp(200, {"id": "new"}),
            ]
        )
        state = {"session_url": "https://up/s1", "next_byte": 4, "total_bytes": 8}
        assert _upload(session, video, resume_state=state) == "new"
        assert session.calls[1]["method"] == "POST"
        assert session.calls[2]["url"] == "https://up/s2"

    def test_session_lost_mid_upload_is_transient(self, video: Path):
        session = FakeSession([FakeResp(200, headers={"Location": "https://up/s1"}), FakeResp(410)])
        states: List[Dict[str, Any]] = []
        with pytest.raises(TransientError):
            _upload(session, video, states=states)
        assert states[-1] == {}

    def test_missing_file_is_terminal(self, tmp_path: Path):
        with pytest.raises(TerminalError):
            _upload(FakeSession([]), tmp_path / "missing.mp4")


@pytest.mark.parametrize(
    "status,payload,error",
    [
        (401, None, AuthError),
        (403, _quota_body("quotaExceeded"), QuotaError),
        (403, _quota_body("uploadLimitExceeded"), QuotaError),
        (403, _quota_body("rateLimitExceeded"), TransientError),
        (403, _quota_body("forbidden"), AuthError),
        (429, None, TransientError),
        (503, None, TransientError),
        (400, _quota_body("invalidTitle"), TerminalError),
    ],
)
def test_status_classification(status: int, payload, error):
    with pytest.raises(error):
        raise_for_upload_status(FakeResp(status, payload), "upload")


def test_quota_error_is_not_auth_error():
    with pytest.raises(QuotaError) as info:
        raise_for_upload_status(FakeResp(403, _quota_body("quotaExceeded")), "init")
    assert info.value.kind == "quota"


def test_published_url():
    assert published_url("abc") == "https://www.youtube.com/watch?v=abc"
