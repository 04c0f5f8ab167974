"""Wires every component from one ``Settings`` object.

The CLI builds a ``Service`` per invocation. ``serve`` starts all background
workers with the API; one-shot commands use the same components directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from .api import create_app
from .config import Settings
from .correlate import ChatCorrelator
from .download.fetcher import HttpRangeFetcher, MediaFetcher, YtDlpFetcher
from .download.worker import DownloadWorker
from .ingest.helix import HelixClient
from .ingest.scheduler import BroadcastSource, IngestScheduler, TwitchBroadcastSource
from .models import Vod
from .publish.oauth import GoogleTokenRefresher, RefreshFn, TokenManager
from .publish.worker import Uploader, UploadWorker
from .publish.youtube import YouTubeUploader
from .replay import ReplayServer
from .store import ChatStore, TokenStore, VodStore, open_token_store

logger = logging.getLogger(__name__)


def build_fetcher(settings: Settings) -> MediaFetcher:
    cfg = settings.download
    if cfg.fetcher == "ytdlp":
        return YtDlpFetcher(format_selector=cfg.ytdlp_format)
    if cfg.fetcher == "http":
        if not cfg.url_template:
            raise ValueError("download.url_template is required for the http fetcher")
        template = cfg.url_template

        def url_for(vod: Vod) -> str:
            return template.format(source_vod_id=vod.source_vod_id, id=vod.id, channel=vod.channel)

        return HttpRangeFetcher(url_for, chunk_size=cfg.chunk_size, timeout=settings.twitch.timeout_seconds)
    raise ValueError(f"unknown fetcher: {cfg.fetcher}")


def build_broadcast_source(settings: Settings) -> Optional[BroadcastSource]:
    twitch = settings.twitch
    if not twitch.channel:
        return None
    if not (twitch.client_id and twitch.client_secret):
        logger.warning("twitch.channel is set but client credentials are missing; discovery disabled")
        return None
    return TwitchBroadcastSource(HelixClient(twitch), twitch.channel, max_pages=settings.ingest.max_pages)


@dataclass
class Service:
    settings: Settings
    vods: VodStore
    chat: ChatStore
    token_store: TokenStore
    tokens: TokenManager
    correlator: ChatCorrelator
    downloader: DownloadWorker
    uploader: UploadWorker
    replay: ReplayServer
    scheduler: Optional[IngestScheduler] = None

    def start(self) -> None:
        if self.scheduler is not None and self.settings.ingest.enabled:
            self.scheduler.start()
        if self.settings.download.enabled:
            self.downloader.start()
        if self.settings.upload.enabled:
            self.uploader.start()
        logger.info("Workers started (db %s)", self.settings.db_path)

    def stop(self) -> None:
        self.replay.shutdown()
        if self.scheduler is not None:
            self.scheduler.stop()
        self.downloader.stop()
        self.uploader.stop()
        logger.info("Workers stopped")

    def create_app(self, *, run_workers: bool = True) -> FastAPI:
        if not run_workers:
            return create_app(vods=self.vods, chat=self.chat, replay=self.replay, downloader=self.downloader)
        return create_app(
            vods=self.vods,
            chat=self.chat,
            replay=self.replay,
            downloader=self.downloader,
            on_startup=self.start,
            on_shutdown=self.stop,
        )


def build_service(
    settings: Settings,
    *,
    fetcher: Optional[MediaFetcher] = None,
    uploader: Optional[Uploader] = None,
    source: Optional[BroadcastSource] = None,
    refresh_fn: Optional[RefreshFn] = None,
    token_store: Optional[TokenStore] = None,
) -> Service:
    """Build every component. Injected collaborators replace the network-backed defaults."""
    vods = VodStore(settings.db_path)
    chat = ChatStore(settings.db_path)
    oauth = settings.oauth
    token_store = token_store or open_token_store(oauth.token_store, settings.db_path)

    correlator = ChatCorrelator(
        vods=vods,
        chat=chat,
        write_retries=settings.correlate.write_retries,
        retry_delay_seconds=settings.correlate.retry_delay_seconds,
    )
    tokens = TokenManager(
        store=token_store,
        provider=oauth.provider,
        refresh_margin_seconds=oauth.refresh_margin_seconds,
        refresh_fn=refresh_fn
        or GoogleTokenRefresher(
            client_id=oauth.client_id,
            client_secret=oauth.client_secret,
            token_uri=oauth.token_uri,
            scopes=list(oauth.scopes),
        ),
    )
    downloader = DownloadWorker(
        store=vods,
        fetcher=fetcher or build_fetcher(settings),
        settings=settings.download,
        data_dir=settings.data_dir,
        on_downloaded=correlator,
        retention=settings.retention,
    )
    upload_worker = UploadWorker(
        store=vods,
        tokens=tokens,
        uploader=uploader or YouTubeUploader(chunk_size=settings.upload.chunk_size),
        settings=settings.upload,
        correlate=correlator,
    )
    replay = ReplayServer(vods=vods, chat=chat, settings=settings.replay)

    source = source or build_broadcast_source(settings)
    scheduler = None
    if source is not None:
        scheduler = IngestScheduler(store=vods, source=source, interval_seconds=settings.ingest.interval_seconds)

    return Service(
        settings=settings,
        vods=vods,
        chat=chat,
        token_store=token_store,
        tokens=tokens,
        correlator=correlator,
        downloader=downloader,
        uploader=upload_worker,
        replay=replay,
        scheduler=scheduler,
    )
