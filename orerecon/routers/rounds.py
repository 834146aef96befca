"""Rounds router: /api/rounds/* workflow operations and listings, /api/pipeline/stats."""

from typing import Optional

from fastapi import APIRouter, Query
from starlette.requests import Request

from orerecon.deps import get_server, http_error
from orerecon.errors import ReconError
from orerecon.models import (
    AddToWorkflowRequest,
    BulkDeleteRequest,
    BulkVerifyRequest,
    RoundSummary,
    VerifyRequest,
)

router = APIRouter()


# ── Listings ──────────────────────────────────────────────────────────────

@router.get("/api/rounds/pending")
async def pending_rounds(request: Request, limit: int = Query(default=100, ge=1, le=1000)):
    srv = get_server(request)
    items = await srv.storage.workflow.list_pending(limit=limit)
    return {"items": items, "total": len(items)}


@router.get("/api/rounds/data")
async def rounds_data(
    request: Request,
    filter_mode: str = Query(default="all", pattern="^(all|missing_deployments|invalid_deployments)$"),
    limit: int = Query(default=50, ge=1, le=200),
    page: int = Query(default=1, ge=1),
    before: Optional[int] = Query(default=None, ge=0),
    round_id_gte: Optional[int] = Query(default=None, ge=0),
    round_id_lte: Optional[int] = Query(default=None, ge=0),
):
    srv = get_server(request)
    return await srv.storage.rounds.list_page(
        filter_mode=filter_mode, limit=limit, page=page, before=before,
        round_id_gte=round_id_gte, round_id_lte=round_id_lte,
    )


@router.get("/api/rounds/missing")
async def missing_rounds(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=100, ge=1, le=1000),
):
    srv = get_server(request)
    return await srv.storage.rounds.missing_page(page=page, limit=limit)


@router.get("/api/rounds/stats")
async def rounds_stats(request: Request):
    srv = get_server(request)
    return await srv.storage.rounds.stats()


@router.get("/api/pipeline/stats")
async def pipeline_stats(request: Request):
    srv = get_server(request)
    return await srv.storage.workflow.pipeline_stats()


# ── Bulk operations ───────────────────────────────────────────────────────

@router.post("/api/rounds/bulk-verify")
async def bulk_verify(request: Request, req: BulkVerifyRequest):
    srv = get_server(request)
    try:
        return await srv.workflow.bulk_verify(req.start_round, req.end_round, req.notes)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/bulk-delete")
async def bulk_delete(request: Request, req: BulkDeleteRequest):
    srv = get_server(request)
    try:
        return await srv.workflow.bulk_delete(req.round_ids, req.delete_rounds, req.delete_deployments)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/add-to-workflow")
async def add_to_workflow(request: Request, req: AddToWorkflowRequest):
    srv = get_server(request)
    try:
        return await srv.workflow.add_to_workflow(req.round_ids)
    except ReconError as e:
        raise http_error(e)


# ── Per-round workflow ────────────────────────────────────────────────────

@router.get("/api/rounds/{round_id}/status")
async def round_status(request: Request, round_id: int):
    srv = get_server(request)
    try:
        return await srv.workflow.status(round_id)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/{round_id}/fetch-meta")
async def fetch_meta(request: Request, round_id: int, summary: Optional[RoundSummary] = None):
    srv = get_server(request)
    try:
        return await srv.workflow.fetch_meta(round_id, summary.model_dump() if summary else None)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/{round_id}/fetch-txns")
async def fetch_txns(request: Request, round_id: int):
    srv = get_server(request)
    try:
        return await srv.workflow.fetch_transactions(round_id)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/{round_id}/reset-txns")
async def reset_txns(request: Request, round_id: int):
    srv = get_server(request)
    try:
        return await srv.workflow.reset_transactions(round_id)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/{round_id}/reconstruct")
async def reconstruct(request: Request, round_id: int):
    srv = get_server(request)
    try:
        return await srv.workflow.reconstruct(round_id)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/{round_id}/verify")
async def verify(request: Request, round_id: int, req: Optional[VerifyRequest] = None):
    srv = get_server(request)
    req = req or VerifyRequest()
    try:
        return await srv.workflow.verify(round_id, notes=req.notes, override=req.override)
    except ReconError as e:
        raise http_error(e)


@router.post("/api/rounds/{round_id}/finalize")
async def finalize(request: Request, round_id: int, override: bool = Query(default=False)):
    srv = get_server(request)
    try:
        return await srv.workflow.finalize(round_id, override=override)
    except ReconError as e:
        raise http_error(e)


@router.delete("/api/rounds/{round_id}")
async def delete_round(
    request: Request,
    round_id: int,
    delete_round: bool = Query(default=False),
    delete_deployments: bool = Query(default=False),
):
    srv = get_server(request)
    try:
        return await srv.workflow.delete(round_id, delete_round, delete_deployments)
    except ReconError as e:
        raise http_error(e)
