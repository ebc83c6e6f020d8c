from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from index_mirror.core.dependencies import get_index_server, get_mirror, get_scheduler
from index_mirror.data.mirror import RepositoryMirror
from index_mirror.data.sync_scheduler import SyncScheduler
from index_mirror.domain.models import MirrorStatus
from index_mirror.services.index_server import IndexFileServer

logger = logging.getLogger(__name__)
router = APIRouter()

# ---------------------------------------------------------------------------
# 1. Operational endpoints
# ---------------------------------------------------------------------------


@router.get("/_mirror/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


@router.get("/_mirror/status")
async def mirror_status(
    mirror: RepositoryMirror = Depends(get_mirror),
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> JSONResponse:
    """
    Current snapshot and sync task. 503 until the first snapshot is ready.
    """
    if not mirror.is_ready:
        body = MirrorStatus(ready=False, task=scheduler.task)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json"),
        )

    body = MirrorStatus(ready=True, state=mirror.current_state(), task=scheduler.task)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# 2. GET /{path}: files of the current snapshot
# ---------------------------------------------------------------------------


@router.get("/{request_path:path}")
async def serve_index_file(
    request_path: str,
    request: Request,
    server: IndexFileServer = Depends(get_index_server),
) -> Response:
    result = await server.handle(request_path, request.headers.get("if-none-match"))

    if isinstance(result.body, bytes):
        return Response(content=result.body, status_code=result.status, headers=result.headers)

    # The stream closes itself when exhausted; the background task covers
    # responses that never start streaming.
    return StreamingResponse(
        result.body,
        status_code=result.status,
        headers=result.headers,
        background=BackgroundTask(result.body.aclose),
    )
