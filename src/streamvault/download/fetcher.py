"""Media fetchers used by the download worker.

A fetcher streams one VOD into ``<dest>.part`` and renames it to ``dest`` when
complete. It reports ``(bytes_so_far, total_bytes)`` through ``on_progress``
and checks ``should_stop`` between chunks, raising ``StopRequested`` when
asked to stop. The ``.part`` file is left in place so the next attempt can
resume from it.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

import requests
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadCancelled as YtDlpCancelled
from yt_dlp.utils import DownloadError

from ..errors import AuthError, StopRequested, TerminalError, TransientError, wrap_download_error
from ..models import Vod

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int, Optional[int]], None]
StopFn = Callable[[], bool]

_CONTENT_RANGE_RE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")


def twitch_vod_url(vod: Vod) -> str:
    return f"https://www.twitch.tv/videos/{vod.source_vod_id}"


def partial_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".part")


class MediaFetcher(Protocol):
    supports_resume: bool

    def fetch(self, vod: Vod, dest: Path, *, on_progress: ProgressFn, should_stop: StopFn) -> int: ...


def _raise_for_status(resp: requests.Response, url: str) -> None:
    code = resp.status_code
    if code in (200, 206):
        return
    if code == 429 or code >= 500:
        retry_after = resp.headers.get("Retry-After")
        raise TransientError(
            f"fetch {url}: HTTP {code}",
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if code in (401, 403):
        raise AuthError(f"fetch {url}: HTTP {code}")
    raise TerminalError(f"fetch {url}: HTTP {code}")


class HttpRangeFetcher:
    """Plain HTTP download that resumes with ``Range: bytes=N-``."""

    supports_resume = True

    def __init__(
        self,
        url_for: Callable[[Vod], str],
        *,
        session: Optional[requests.Session] = None,
        chunk_size: int = 1024 * 1024,
        timeout: float = 30.0,
    ) -> None:
        self.url_for = url_for
        self.session = session or requests.Session()
        self.chunk_size = chunk_size
        self.timeout = timeout

    def fetch(self, vod: Vod, dest: Path, *, on_progress: ProgressFn, should_stop: StopFn) -> int:
        url = self.url_for(vod)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = partial_path(dest)
        offset = part.stat().st_size if part.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        try:
            with self.session.get(url, headers=headers, stream=True, timeout=self.timeout) as resp:
                if resp.status_code == 416 and offset:
                    # server has nothing past our offset: the partial file is complete
                    part.replace(dest)
                    on_progress(offset, offset)
                    return offset
                _raise_for_status(resp, url)

                total: Optional[int] = None
                if resp.status_code == 206:
                    match = _CONTENT_RANGE_RE.match(resp.headers.get("Content-Range", ""))
                    if match and int(match.group(1)) != offset:
                        raise TransientError(f"fetch {url}: server resumed at {match.group(1)}, expected {offset}")
                    if match and match.group(3) != "*":
                        total = int(match.group(3))
                    mode = "ab"
                    logger.info("Resuming %s at byte %d", vod.source_vod_id, offset)
                else:
                    if offset:
                        logger.info("Server ignored Range for %s; restarting from byte 0", vod.source_vod_id)
                    offset = 0
                    length = resp.headers.get("Content-Length")
                    total = int(length) if length and length.isdigit() else None
                    mode = "wb"

                written = offset
                on_progress(written, total)
                with part.open(mode) as handle:
                    for chunk in resp.iter_content(chunk_size=self.chunk_size):
                        if should_stop():
                            raise StopRequested(f"stopped at byte {written}")
                        if not chunk:
                            continue
                        handle.write(chunk)
                        written += len(chunk)
                        on_progress(written, total)
        except requests.RequestException as exc:
            raise TransientError(f"fetch {url}: {type(exc).__name__}: {exc}") from exc

        if total is not None and written < total:
            raise TransientError(f"fetch {url}: incomplete download ({written}/{total} bytes)")
        part.replace(dest)
        return written


class _YtDlpLogger:
    def debug(self, msg: str) -> None:
        logger.debug("yt-dlp: %s", msg)

    def info(self, msg: str) -> None:
        logger.debug("yt-dlp: %s", msg)

    def warning(self, msg: str) -> None:
        logger.debug("yt-dlp warning: %s", msg)

    def error(self, msg: str) -> None:
        logger.debug("yt-dlp error: %s", msg)


class YtDlpFetcher:
    """Twitch HLS VODs through the yt-dlp library.

    yt-dlp keeps its own ``.part``/fragment state next to ``dest`` and picks
    it up again with ``continuedl``.
    """

    supports_resume = True

    def __init__(self, url_for: Callable[[Vod], str] = twitch_vod_url, *, format_selector: str = "best") -> None:
        self.url_for = url_for
        self.format_selector = format_selector

    def _options(self, dest: Path, hook: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        return {
            "outtmpl": str(dest),
            "format": self.format_selector,
            "merge_output_format": "mp4",
            "continuedl": True,
            "noplaylist": True,
            "progress_hooks": [hook],
            "logger": _YtDlpLogger(),
            "quiet": True,
            "no_warnings": True,
            "noprogress": True,
            "hls_prefer_native": True,
        }

    def fetch(self, vod: Vod, dest: Path, *, on_progress: ProgressFn, should_stop: StopFn) -> int:
        url = self.url_for(vod)
        dest.parent.mkdir(parents=True, exist_ok=True)

        def progress_hook(d: Dict[str, Any]) -> None:
            if should_stop():
                raise YtDlpCancelled("shutdown requested")
            if d.get("status") == "downloading":
                total = d.get("total_bytes") or d.get("total_bytes_estimate")
                on_progress(int(d.get("downloaded_bytes") or 0), int(total) if total else None)

        try:
            with YoutubeDL(self._options(dest, progress_hook)) as ydl:
                ydl.download([url])
        except YtDlpCancelled as exc:
            raise StopRequested(str(exc)) from exc
        except DownloadError as exc:
            raise wrap_download_error(exc) from exc

        if not dest.exists():
            raise TransientError(f"yt-dlp finished without producing {dest.name}")
        size = dest.stat().st_size
        on_progress(size, size)
        return size
