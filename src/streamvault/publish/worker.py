from __future__ import annotations

import json
import logging
import random
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from ..config import UploadSettings
from ..errors import LeaseLost, StopRequested, TerminalError, TransientError
from ..models import OAuthToken, Progress, ProgressState
from ..store.vods import VodStore
from ..utils import compute_backoff, default_worker_id
from .oauth import TokenManager
from .sanitize import UploadMetadata, build_metadata
from .youtube import published_url

logger = logging.getLogger(__name__)

STAGE = "upload"


class Uploader(Protocol):
    def upload(
        self,
        *,
        token: OAuthToken,
        file_path: Path,
        metadata: UploadMetadata,
        resume_state: Dict[str, Any],
        on_progress: Callable[[float], None],
        on_resume: Callable[[Dict[str, Any]], None],
    ) -> str: ...


class UploadWorker:
    """Publishes downloaded VODs.

    A VOD is only claimed once its chat is correlated. Each attempt starts by
    getting a valid OAuth token; a missing or rejected token fails the VOD
    without touching the upload API.
    """

    def __init__(
        self,
        *,
        store: VodStore,
        tokens: TokenManager,
        uploader: Uploader,
        settings: UploadSettings,
        correlate: Optional[Callable[[int], object]] = None,
        worker_id: Optional[str] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.uploader = uploader
        self.settings = settings
        self.correlate = correlate
        self.worker_id = worker_id or default_worker_id("upload")
        self._rand = rand
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_loop, name="upload-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = self.run_once()
            except Exception:
                logger.exception("Upload loop iteration failed")
                result = None
            if result is None:
                self._stop.wait(self.settings.poll_interval_seconds)

    def run_once(self, vod_id: Optional[int] = None) -> Optional[Progress]:
        progress = self._claim(vod_id)
        if progress is None:
            return None
        self._run(progress)
        return self.store.get_progress(progress.vod_id)

    def _correlated(self, vod_id: int) -> bool:
        if self.correlate is None:
            return True
        try:
            self.correlate(vod_id)
        except Exception:
            logger.exception("Chat correlation failed for vod %d; not uploading yet", vod_id)
            return False
        return True

    def _claim(self, vod_id: Optional[int]) -> Optional[Progress]:
        lease = self.settings.lease_seconds
        if vod_id is not None:
            progress = self.store.get_progress(vod_id)
            if progress.state == ProgressState.DOWNLOADED.value and not self._correlated(vod_id):
                return None
            return self.store.claim_vod(STAGE, vod_id, self.worker_id, lease)

        for candidate in self.store.ids_in_state(ProgressState.DOWNLOADED.value, uploadable_only=True):
            if not self._correlated(candidate):
                continue
            progress = self.store.claim_vod(STAGE, candidate, self.worker_id, lease)
            if progress is not None:
                return progress
        # uploads interrupted by a crash, shutdown or retryable failure
        return self.store.claim(STAGE, self.worker_id, lease, include_fresh=False)

    def _run(self, progress: Progress) -> None:
        vod = self.store.get_vod(progress.vod_id)
        file_path = Path(progress.downloaded_path or "")
        logger.info(
            "Uploading vod %d (%s), attempt %d/%d",
            vod.id,
            vod.source_vod_id,
            progress.upload_retries + 1,
            self.settings.max_retries,
        )

        def on_progress(fraction: float) -> None:
            if fraction < 1.0 and self._stop.is_set():
                raise StopRequested("shutdown requested")
            ok = self.store.record_upload_progress(
                vod.id,
                self.worker_id,
                percent=fraction * 100.0,
                lease_seconds=self.settings.lease_seconds,
            )
            if not ok:
                raise LeaseLost(f"vod {vod.id} no longer owned by {self.worker_id}")

        def on_resume(state: Dict[str, Any]) -> None:
            self.store.record_upload_progress(
                vod.id,
                self.worker_id,
                session_json=json.dumps(state),
                lease_seconds=self.settings.lease_seconds,
            )

        try:
            token = self.tokens.valid_token()
            metadata = build_metadata(vod, privacy=self.settings.privacy, category_id=self.settings.category_id)
            video_id = self.uploader.upload(
                token=token,
                file_path=file_path,
                metadata=metadata,
                resume_state=progress.upload_resume_state(),
                on_progress=on_progress,
                on_resume=on_resume,
            )
        except StopRequested:
            self.store.release(STAGE, vod.id, self.worker_id)
            logger.info("Checkpointed upload of vod %d for shutdown", vod.id)
            return
        except LeaseLost as exc:
            logger.warning("Abandoning upload of vod %d: %s", vod.id, exc)
            return
        except TerminalError as exc:
            if self.store.fail(STAGE, vod.id, self.worker_id, kind=exc.kind, error=str(exc)):
                logger.error("Upload of vod %d failed permanently (%s): %s", vod.id, exc.kind, exc)
            return
        except Exception as exc:
            self._retry(progress, exc)
            return

        url = published_url(video_id)
        if not self.store.complete_upload(vod.id, self.worker_id, url):
            logger.warning("Lost vod %d before recording its upload %s", vod.id, url)
            return
        logger.info("Published vod %d as %s", vod.id, url)
        if self.settings.delete_after_upload:
            file_path.unlink(missing_ok=True)
            logger.info("Deleted local file %s", file_path)

    def _retry(self, progress: Progress, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        retry_after = exc.retry_after if isinstance(exc, TransientError) else None
        delay = retry_after if retry_after is not None else compute_backoff(
            progress.upload_retries + 1,
            base=self.settings.backoff_base_seconds,
            cap=self.settings.backoff_cap_seconds,
            jitter=self.settings.backoff_jitter,
            rand=self._rand,
        )
        updated = self.store.record_retry(
            STAGE,
            progress.vod_id,
            self.worker_id,
            error=error,
            delay_seconds=delay,
            max_retries=self.settings.max_retries,
        )
        if updated is None:
            logger.warning("Lost vod %d while recording upload failure: %s", progress.vod_id, error)
        elif updated.state == ProgressState.FAILED.value:
            logger.error("Upload of vod %d gave up after %d attempts: %s", progress.vod_id, updated.upload_retries, error)
        else:
            logger.warning(
                "Upload of vod %d failed (%d/%d), retrying in %.1fs: %s",
                progress.vod_id,
                updated.upload_retries,
                self.settings.max_retries,
                delay,
                error,
            )
