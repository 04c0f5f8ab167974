from __future__ import annotations

import logging
import random
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..config import DownloadSettings, RetentionSettings
from ..errors import LeaseLost, StopRequested, TerminalError, TransientError, wrap_download_error
from ..models import Progress, ProgressState, Vod
from ..store.vods import VodStore
from ..utils import compute_backoff, default_worker_id
from .fetcher import MediaFetcher, partial_path
from .retention import apply_retention

logger = logging.getLogger(__name__)

STAGE = "download"
CANCELLED = "cancelled"
_CLEANUP_EVERY_SECONDS = 600.0


def cleanup_stale_partials(data_dir: Path, max_age_hours: float, keep: Iterable[str] = ()) -> int:
    """Delete ``.part``/``.tmp``/``.ytdl`` leftovers older than ``max_age_hours``.

    Files whose name starts with a source id in ``keep`` are never touched.
    """
    if not data_dir.exists():
        return 0
    keep = tuple(keep)
    cutoff = time.time() - max_age_hours * 3600
    removed = 0
    for path in data_dir.iterdir():
        if not path.is_file() or not any(s in path.name for s in (".part", ".tmp", ".ytdl")):
            continue
        if any(path.name.startswith(source_id) for source_id in keep):
            continue
        if path.stat().st_mtime >= cutoff:
            continue
        path.unlink(missing_ok=True)
        removed += 1
        logger.info("Removed stale partial file %s", path.name)
    return removed


class DownloadWorker:
    """Claims downloadable VODs and drives them to ``downloaded``.

    Transient failures consume a retry and back off; terminal ones fail the
    VOD at once. A stop request checkpoints the VOD without using a retry;
    an operator cancel fails it with ``error_kind="cancelled"`` so it can be
    requeued later. When ``retention`` is enabled the loop also prunes old
    uploaded files every ``retention.interval_seconds``.
    """

    def __init__(
        self,
        *,
        store: VodStore,
        fetcher: MediaFetcher,
        settings: DownloadSettings,
        data_dir: Path,
        on_downloaded: Optional[Callable[[int], object]] = None,
        retention: Optional[RetentionSettings] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.settings = settings
        self.data_dir = Path(data_dir)
        self.on_downloaded = on_downloaded
        self.retention = retention
        self.worker_id = worker_id or default_worker_id("download")
        self._clock = clock
        self._rand = rand
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._last_cleanup = float("-inf")
        self._last_retention = float("-inf")
        self._lock = threading.Lock()
        self._current: Optional[int] = None
        self._cancel = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_loop, name="download-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._maybe_cleanup()
                self._maybe_apply_retention()
                result = self.run_once()
            except Exception:
                logger.exception("Download loop iteration failed")
                result = None
            if result is None:
                self._stop.wait(self.settings.poll_interval_seconds)

    def _maybe_cleanup(self) -> None:
        now = self._clock()
        if now - self._last_cleanup < _CLEANUP_EVERY_SECONDS:
            return
        self._last_cleanup = now
        cleanup_stale_partials(self.data_dir, self.settings.cleanup_max_age_hours, self.store.leased_source_ids())

    def _maybe_apply_retention(self) -> None:
        if self.retention is None or not self.retention.enabled:
            return
        now = self._clock()
        if now - self._last_retention < self.retention.interval_seconds:
            return
        self._last_retention = now
        apply_retention(self.store, self.retention)

    def cancel(self, vod_id: int) -> bool:
        """Abort the download of ``vod_id`` if this worker is running it."""
        with self._lock:
            if self._current != vod_id:
                return False
            self._cancel.set()
        logger.info("Cancel requested for vod %d", vod_id)
        return True

    def _should_stop(self) -> bool:
        return self._stop.is_set() or self._cancel.is_set()

    def run_once(self, vod_id: Optional[int] = None) -> Optional[Progress]:
        if vod_id is not None:
            progress = self.store.claim_vod(STAGE, vod_id, self.worker_id, self.settings.lease_seconds)
        else:
            progress = self.store.claim(STAGE, self.worker_id, self.settings.lease_seconds)
        if progress is None:
            return None
        with self._lock:
            self._current = progress.vod_id
            self._cancel.clear()
        try:
            self._run(progress)
        finally:
            with self._lock:
                self._current = None
                self._cancel.clear()
        return self.store.get_progress(progress.vod_id)

    def dest_for(self, vod: Vod) -> Path:
        return self.data_dir / f"{vod.source_vod_id}.mp4"

    def _run(self, progress: Progress) -> None:
        vod = self.store.get_vod(progress.vod_id)
        dest = self.dest_for(vod)
        logger.info(
            "Downloading vod %d (%s), attempt %d/%d",
            vod.id,
            vod.source_vod_id,
            progress.retries + 1,
            self.settings.max_retries,
        )

        if dest.exists() and not partial_path(dest).exists():
            # finished on disk before a crash prevented the state write
            self._complete(vod, dest, dest.stat().st_size)
            return

        last_write = float("-inf")

        def on_progress(done: int, total: Optional[int]) -> None:
            nonlocal last_write
            now = self._clock()
            if now - last_write < self.settings.progress_interval_seconds:
                return
            last_write = now
            percent = (done / total * 100.0) if total else 0.0
            ok = self.store.record_progress(
                vod.id,
                self.worker_id,
                percent=percent,
                downloaded_bytes=done,
                total_bytes=total,
                lease_seconds=self.settings.lease_seconds,
            )
            if not ok:
                raise LeaseLost(f"vod {vod.id} no longer owned by {self.worker_id}")

        try:
            size = self.fetcher.fetch(vod, dest, on_progress=on_progress, should_stop=self._should_stop)
        except StopRequested:
            if self._cancel.is_set():
                self._fail_cancelled(vod, dest)
                return
            self.store.release(STAGE, vod.id, self.worker_id)
            logger.info("Checkpointed vod %d for shutdown", vod.id)
            return
        except LeaseLost as exc:
            logger.warning("Abandoning vod %d: %s", vod.id, exc)
            return
        except Exception as exc:
            self._handle_failure(progress, vod, dest, wrap_download_error(exc))
            return
        self._complete(vod, dest, size)

    def _complete(self, vod: Vod, dest: Path, size: int) -> None:
        if not self.store.complete_download(vod.id, self.worker_id, dest, size):
            logger.warning("Lost vod %d before marking it downloaded", vod.id)
            return
        logger.info("Downloaded vod %d to %s (%d bytes)", vod.id, dest, size)
        if self.on_downloaded is not None:
            try:
                self.on_downloaded(vod.id)
            except Exception:
                # the upload worker correlates again before claiming
                logger.exception("Post-download hook failed for vod %d", vod.id)

    def _fail_cancelled(self, vod: Vod, dest: Path) -> None:
        if self.store.fail(STAGE, vod.id, self.worker_id, kind=CANCELLED, error="download cancelled by operator"):
            partial_path(dest).unlink(missing_ok=True)
            logger.warning("Download of vod %d cancelled", vod.id)

    def _handle_failure(self, progress: Progress, vod: Vod, dest: Path, exc: Exception) -> None:
        error = str(exc)
        if isinstance(exc, TerminalError):
            if self.store.fail(STAGE, vod.id, self.worker_id, kind=exc.kind, error=error):
                partial_path(dest).unlink(missing_ok=True)
                logger.error("Download of vod %d failed permanently (%s): %s", vod.id, exc.kind, error)
            return

        retry_after = exc.retry_after if isinstance(exc, TransientError) else None
        delay = retry_after if retry_after is not None else compute_backoff(
            progress.retries + 1,
            base=self.settings.backoff_base_seconds,
            cap=self.settings.backoff_cap_seconds,
            jitter=self.settings.backoff_jitter,
            rand=self._rand,
        )
        updated = self.store.record_retry(
            STAGE,
            vod.id,
            self.worker_id,
            error=error,
            delay_seconds=delay,
            max_retries=self.settings.max_retries,
        )
        if updated is None:
            logger.warning("Lost vod %d while recording failure: %s", vod.id, error)
        elif updated.state == ProgressState.FAILED.value:
            logger.error("Download of vod %d gave up after %d attempts: %s", vod.id, updated.retries, error)
        else:
            logger.warning(
                "Download of vod %d failed (%d/%d), retrying in %.1fs: %s",
                vod.id,
                updated.retries,
                self.settings.max_retries,
                delay,
                error,
            )
