"""Backfill router: /api/backfill/*."""

from typing import Optional

from fastapi import APIRouter
from starlette.requests import Request

from orerecon.deps import get_server, http_error
from orerecon.errors import ReconError
from orerecon.models import BackfillStartRequest

router = APIRouter()


@router.post("/api/backfill/start")
async def start_backfill(request: Request, req: Optional[BackfillStartRequest] = None):
    srv = get_server(request)
    req = req or BackfillStartRequest()
    try:
        return srv.backfill.start(stop_at_round=req.stop_at_round, max_pages=req.max_pages)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/backfill/cancel")
async def cancel_backfill(request: Request):
    srv = get_server(request)
    return srv.backfill.cancel()


@router.get("/api/backfill/status")
async def backfill_status(request: Request):
    srv = get_server(request)
    return srv.backfill.get_status()
