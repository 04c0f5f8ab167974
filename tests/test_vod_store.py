from __future__ import annotations

import threading
from pathlib import Path

import pytest

from streamvault.models import ProgressState, progress_view
from streamvault.store import VodStore


def test_insert_discovered_is_idempotent(vods: VodStore):
    first = vods.insert_discovered("v1", channel="c", title="one")
    second = vods.insert_discovered("v1", channel="c", title="one again")
    assert first is not None
    assert second is None
    progress = vods.get_progress(first)
    assert progress.state == ProgressState.QUEUED.value
    assert progress.percent == 0
    assert progress.retries == 0
    vod = vods.get_vod(first)
    assert vod.processed is False
    assert vod.published_url is None


def test_get_missing_vod_raises_key_error(vods: VodStore):
    with pytest.raises(KeyError):
        vods.get_vod(404)
    with pytest.raises(KeyError):
        vods.get_progress(404)


def test_transition_is_compare_and_swap(vods: VodStore, vod_id: int):
    assert vods.transition(vod_id, "queued", "downloading", claimed_by="w1")
    assert not vods.transition(vod_id, "queued", "downloading", claimed_by="w2")
    assert vods.get_progress(vod_id).claimed_by == "w1"


def test_transition_rejects_unknown_fields(vods: VodStore, vod_id: int):
    with pytest.raises(ValueError):
        vods.transition(vod_id, "queued", "downloading", processed=1)


def test_concurrent_claims_have_one_winner(vods: VodStore, vod_id: int):
    winners = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker(n: int) -> None:
        barrier.wait()
        progress = vods.claim("download", f"w{n}", 60)
        if progress is not None:
            with lock:
                winners.append(progress.claimed_by)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    progress = vods.get_progress(vod_id)
    assert progress.state == ProgressState.DOWNLOADING.value
    assert progress.claimed_by == winners[0]


def test_claim_orders_by_priority_then_age(vods: VodStore):
    low = vods.insert_discovered("low", priority=0)
    high = vods.insert_discovered("high", priority=5)
    assert vods.claim("download", "w", 60).vod_id == high
    assert vods.claim("download", "w", 60).vod_id == low
    assert vods.claim("download", "w", 60) is None


def test_expired_lease_is_reclaimed_without_consuming_retry(vods: VodStore, vod_id: int):
    assert vods.claim("download", "dead", lease_seconds=-1) is not None
    progress = vods.claim("download", "alive", 60)
    assert progress is not None
    assert progress.claimed_by == "alive"
    assert progress.retries == 0


def test_progress_percent_never_decreases(vods: VodStore, vod_id: int):
    vods.claim("download", "w", 60)
    assert vods.record_progress(vod_id, "w", percent=40, downloaded_bytes=40, total_bytes=100, lease_seconds=60)
    assert vods.record_progress(vod_id, "w", percent=10, downloaded_bytes=10, total_bytes=100, lease_seconds=60)
    progress = vods.get_progress(vod_id)
    assert progress.percent == 40
    assert progress.downloaded_bytes == 10


def test_progress_from_non_owner_is_rejected(vods: VodStore, vod_id: int):
    vods.claim("download", "w", 60)
    assert not vods.record_progress(vod_id, "other", percent=50, downloaded_bytes=5, total_bytes=10, lease_seconds=60)


def test_record_retry_backs_off_then_exhausts(vods: VodStore, vod_id: int):
    vods.claim("download", "w", 60)
    progress = vods.record_retry("download", vod_id, "w", error="reset", delay_seconds=3600, max_retries=2)
    assert progress.state == ProgressState.DOWNLOADING.value
    assert progress.retries == 1
    assert progress.claimed_by is None
    assert progress.last_error == "reset"
    # still backing off
    assert vods.claim("download", "w", 60) is None

    # CLI claims ignore the backoff deadline
    assert vods.claim_vod("download", vod_id, "w", 60) is not None
    progress = vods.record_retry("download", vod_id, "w", error="reset again", delay_seconds=0, max_retries=2)
    assert progress.state == ProgressState.FAILED.value
    assert progress.error_kind == "retries_exhausted"
    assert progress.failed_stage == "download"
    assert progress.retries == 2


def test_release_keeps_retry_budget(vods: VodStore, vod_id: int):
    vods.claim("download", "w", 60)
    assert vods.release("download", vod_id, "w")
    progress = vods.claim("download", "w2", 60)
    assert progress is not None
    assert progress.retries == 0


def test_complete_upload_sets_processed_and_url_together(vods: VodStore, vod_id: int, tmp_path: Path):
    vods.claim("download", "d", 60)
    assert vods.complete_download(vod_id, "d", tmp_path / "v100.mp4", 10)
    assert vods.claim("upload", "u", 60) is not None

    with pytest.raises(ValueError):
        vods.complete_upload(vod_id, "u", "")
    assert not vods.complete_upload(vod_id, "someone-else", "https://www.youtube.com/watch?v=x")
    assert vods.get_vod(vod_id).processed is False

    assert vods.complete_upload(vod_id, "u", "https://www.youtube.com/watch?v=abc")
    vod, progress = vods.get_status(vod_id)
    assert progress.state == ProgressState.UPLOADED.value
    assert progress.upload_percent == 100
    assert vod.processed is True
    assert vod.published_url == "https://www.youtube.com/watch?v=abc"

    view = progress_view(vod, progress)
    assert view["processed"] is True
    assert view["percent"] == 100.0


def test_requeue_download_failure(vods: VodStore, vod_id: int):
    vods.claim("download", "w", 60)
    vods.fail("download", vod_id, "w", kind="terminal", error="gone")
    progress = vods.requeue(vod_id)
    assert progress.state == ProgressState.DOWNLOADING.value
    assert progress.retries == 0
    assert progress.error_kind is None
    assert vods.claim("download", "w", 60) is not None


def test_requeue_upload_failure_goes_back_to_downloaded(vods: VodStore, vod_id: int, tmp_path: Path):
    vods.claim("download", "d", 60)
    vods.complete_download(vod_id, "d", tmp_path / "v100.mp4", 10)
    vods.claim("upload", "u", 60)
    vods.fail("upload", vod_id, "u", kind="auth", error="no token")
    assert vods.get_progress(vod_id).failed_stage == "upload"

    progress = vods.requeue(vod_id)
    assert progress.state == ProgressState.DOWNLOADED.value
    assert progress.downloaded_path == str(tmp_path / "v100.mp4")


def test_requeue_rejects_non_failed(vods: VodStore, vod_id: int):
    with pytest.raises(ValueError, match="not_failed"):
        vods.requeue(vod_id)


def test_kv_round_trip(vods: VodStore):
    assert vods.get_kv("k") is None
    vods.set_kv("k", "1")
    vods.set_kv("k", "2")
    assert vods.get_kv("k") == "2"


def test_list_vods_filters_by_state(vods: VodStore, vod_id: int):
    other = vods.insert_discovered("v200")
    vods.claim_vod("download", other, "w", 60)
    queued = vods.list_vods(state="queued")
    assert [v.id for v, _ in queued] == [vod_id]
    assert len(vods.list_vods()) == 2


def test_skip_upload_excludes_vod_from_upload_claims(vods: VodStore, vod_id: int, tmp_path: Path):
    vods.claim_vod("download", vod_id, "dl", 60)
    assert vods.complete_download(vod_id, "dl", tmp_path / "v.mp4", 1)

    assert vods.set_skip_upload(vod_id, True).skip_upload is True
    assert vods.claim("upload", "up", 60) is None
    assert vods.claim_vod("upload", vod_id, "up", 60) is None
    assert vods.ids_in_state("downloaded", uploadable_only=True) == []
    assert vods.ids_in_state("downloaded") == [vod_id]
    assert vods.get_progress(vod_id).state == ProgressState.DOWNLOADED.value

    vods.set_skip_upload(vod_id, False)
    assert vods.claim("upload", "up", 60).vod_id == vod_id


def test_skip_upload_does_not_block_downloads(vods: VodStore, vod_id: int):
    vods.set_skip_upload(vod_id, True)
    assert vods.claim("download", "dl", 60).vod_id == vod_id


def test_set_skip_upload_unknown_vod(vods: VodStore):
    with pytest.raises(KeyError):
        vods.set_skip_upload(404, True)
