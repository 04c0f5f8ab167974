from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import FastAPI

from .. import __version__
from ..download.worker import DownloadWorker
from ..replay import ReplayServer
from ..store.chat import ChatStore
from ..store.vods import VodStore
from .routes import create_vod_router

logger = logging.getLogger(__name__)


def create_app(
    *,
    vods: VodStore,
    chat: ChatStore,
    replay: ReplayServer,
    downloader: Optional[DownloadWorker] = None,
    on_startup: Optional[Callable[[], None]] = None,
    on_shutdown: Optional[Callable[[], None]] = None,
) -> FastAPI:
    app = FastAPI(title="StreamVault", version=__version__)
    app.include_router(create_vod_router(vods=vods, chat=chat, replay=replay, downloader=downloader))

    @app.on_event("startup")
    def _startup() -> None:
        if on_startup is not None:
            on_startup()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        replay.shutdown()
        if on_shutdown is not None:
            on_shutdown()
        logger.info("API shut down")

    return app
