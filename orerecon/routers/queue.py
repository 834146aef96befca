"""Action queue router: /api/queue/*."""

from typing import Optional

from fastapi import APIRouter, Query
from starlette.requests import Request

from orerecon.deps import get_server, http_error
from orerecon.errors import ReconError
from orerecon.models import EnqueueRequest

router = APIRouter()


@router.post("/api/queue/enqueue")
async def enqueue(request: Request, req: EnqueueRequest):
    srv = get_server(request)
    try:
        return await srv.queue.enqueue(
            req.start_round, req.end_round, req.action,
            skip_if_done=req.skip_if_done, only_in_workflow=req.only_in_workflow,
        )
    except ReconError as e:
        raise http_error(e)


@router.get("/api/queue/status")
async def queue_status(request: Request):
    srv = get_server(request)
    return await srv.queue.status()


@router.get("/api/queue/items")
async def queue_items(
    request: Request,
    status: Optional[str] = Query(default=None, pattern="^(pending|processing|completed|failed)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    srv = get_server(request)
    return await srv.storage.action_queue.list_items(status=status, page=page, limit=limit)


@router.post("/api/queue/pause")
async def pause(request: Request):
    srv = get_server(request)
    return await srv.queue.pause()


@router.post("/api/queue/resume")
async def resume(request: Request):
    srv = get_server(request)
    return await srv.queue.resume()


@router.post("/api/queue/clear")
async def clear(request: Request):
    srv = get_server(request)
    return {"cleared": await srv.queue.clear()}


@router.post("/api/queue/retry-failed")
async def retry_failed(request: Request):
    srv = get_server(request)
    return {"requeued": await srv.queue.retry_failed()}


@router.post("/api/queue/process")
async def process_one(request: Request):
    srv = get_server(request)
    item = await srv.queue.process_next()
    return {"processed": item is not None, "item": item}
