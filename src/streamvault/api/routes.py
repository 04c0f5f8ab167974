"""Dashboard-facing HTTP routes: VOD progress, chat queries and chat replay."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Header, HTTPException, Query, Response
from fastapi.responses import JSONResponse, StreamingResponse

from ..download.worker import DownloadWorker
from ..models import progress_view
from ..replay import InvalidCursor, ReplayServer, ServerClosed, TooManyConnections
from ..store.chat import DEFAULT_RANGE_LIMIT, MAX_RANGE_LIMIT, ChatStore
from ..store.vods import VodStore


def create_vod_router(
    *,
    vods: VodStore,
    chat: ChatStore,
    replay: ReplayServer,
    downloader: Optional[DownloadWorker] = None,
) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["vods"])

    def require_vod(vod_id: int):
        try:
            return vods.get_status(vod_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="vod_not_found")

    @router.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"ok": True, "replay_connections": replay.active_connections})

    @router.get("/vods")
    def list_vods(
        state: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> JSONResponse:
        items = []
        for vod, progress in vods.list_vods(state=state, limit=limit):
            item = vod.to_dict()
            item["progress"] = progress_view(vod, progress)
            items.append(item)
        return JSONResponse({"vods": items})

    @router.get("/vods/{vod_id}/progress")
    def get_progress(vod_id: int) -> JSONResponse:
        vod, progress = require_vod(vod_id)
        return JSONResponse(progress_view(vod, progress))

    @router.post("/vods/{vod_id}/requeue")
    def requeue(vod_id: int) -> JSONResponse:
        require_vod(vod_id)
        try:
            progress = vods.requeue(vod_id)
        except ValueError:
            raise HTTPException(status_code=409, detail="not_failed")
        return JSONResponse(progress_view(vods.get_vod(vod_id), progress))

    @router.post("/vods/{vod_id}/cancel")
    def cancel(vod_id: int) -> Response:
        """202 when an in-flight download was signalled, 204 when nothing was running here."""
        require_vod(vod_id)
        if downloader is not None and downloader.cancel(vod_id):
            return Response(status_code=202)
        return Response(status_code=204)

    @router.post("/vods/{vod_id}/skip-upload")
    def skip_upload(vod_id: int, body: Dict[str, Any] = Body(default={})) -> JSONResponse:
        require_vod(vod_id)
        value = body.get("skip_upload", True)
        if not isinstance(value, bool):
            raise HTTPException(status_code=400, detail="skip_upload_must_be_bool")
        return JSONResponse(vods.set_skip_upload(vod_id, value).to_dict())

    @router.get("/vods/{vod_id}/chat")
    def chat_range(
        vod_id: int,
        start: Optional[float] = Query(None, alias="from", ge=0),
        end: Optional[float] = Query(None, alias="to", ge=0),
        limit: int = Query(DEFAULT_RANGE_LIMIT, ge=1, le=MAX_RANGE_LIMIT),
    ) -> JSONResponse:
        """Correlated messages ordered by ``rel_timestamp``; ``from``/``to`` are inclusive."""
        require_vod(vod_id)
        messages = chat.range(vod_id, start=start, end=end, limit=limit)
        return JSONResponse(
            {
                "vod_id": vod_id,
                "count": len(messages),
                "messages": [m.to_dict() for m in messages],
            }
        )

    @router.get("/vods/{vod_id}/chat/stream")
    def chat_stream(
        vod_id: int,
        cursor: Optional[float] = Query(None),
        after_id: Optional[int] = Query(None),
        speed: float = Query(0.0, ge=0, le=64),
        last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
    ) -> StreamingResponse:
        """SSE stream of chat for one VOD.

        Resume with ``cursor`` (strictly after that ``rel_timestamp``) or with
        ``after_id``/``Last-Event-ID`` (strictly after that message).
        """
        require_vod(vod_id)
        if after_id is None and last_event_id:
            try:
                after_id = int(last_event_id)
            except ValueError:
                raise HTTPException(status_code=400, detail="invalid_cursor")
        try:
            start = replay.resolve_cursor(vod_id, cursor=cursor, after_id=after_id)
            replay.admit()
        except InvalidCursor:
            raise HTTPException(status_code=400, detail="invalid_cursor")
        except TooManyConnections:
            raise HTTPException(status_code=503, detail="too_many_streams")
        except ServerClosed:
            raise HTTPException(status_code=503, detail="shutting_down")

        return StreamingResponse(
            replay.stream(vod_id, start=start, speed=speed),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return router
