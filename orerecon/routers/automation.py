"""Automation router: /api/automation/*."""

from typing import Optional

from fastapi import APIRouter, Query
from starlette.requests import Request

from orerecon.automation import DEFAULT_PROCESS_COUNT, MAX_PROCESS_COUNT
from orerecon.deps import get_server, http_error
from orerecon.errors import DecodeError, ReconError
from orerecon.models import AutomationEnqueueRequest
from orerecon.pda import automation_pda

router = APIRouter()


@router.get("/api/automation/stats")
async def automation_stats(request: Request):
    srv = get_server(request)
    return await srv.automation.stats()


@router.get("/api/automation/items")
async def automation_items(
    request: Request,
    status: Optional[str] = Query(default=None, pattern="^(pending|processing|completed|failed)$"),
    round_id: Optional[int] = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    srv = get_server(request)
    return await srv.storage.automation_queue.list_items(
        status=status, round_id=round_id, page=page, limit=limit,
    )


@router.get("/api/automation/live")
async def automation_live(request: Request):
    srv = get_server(request)
    return srv.automation.live()


@router.get("/api/automation/states/{authority}")
async def automation_states(
    request: Request,
    authority: str,
    limit: int = Query(default=100, ge=1, le=1000),
):
    srv = get_server(request)
    items = await srv.storage.automation_states.list_for_authority(authority, limit=limit)
    return {"authority": authority, "items": items, "total": len(items)}


@router.post("/api/automation/queue")
async def automation_enqueue(request: Request, req: AutomationEnqueueRequest):
    srv = get_server(request)
    item = req.model_dump()
    if not item["automation_pda"]:
        try:
            item["automation_pda"] = automation_pda(req.authority_pubkey)
        except ValueError:
            raise http_error(DecodeError(f"Invalid authority pubkey: {req.authority_pubkey}"))
    queued = await srv.automation.enqueue(item)
    return {"queued": queued, "automation_pda": item["automation_pda"]}


@router.post("/api/automation/queue/round/{round_id}")
async def automation_enqueue_round(request: Request, round_id: int):
    srv = get_server(request)
    try:
        return await srv.automation.enqueue_round(round_id)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/automation/process")
async def automation_process(
    request: Request,
    count: int = Query(default=DEFAULT_PROCESS_COUNT, ge=1, le=MAX_PROCESS_COUNT),
):
    srv = get_server(request)
    results = await srv.automation.process(count)
    return {"processed": len(results), "results": results}


@router.post("/api/automation/retry-failed")
async def automation_retry_failed(request: Request):
    srv = get_server(request)
    return {"requeued": await srv.automation.retry_failed()}
