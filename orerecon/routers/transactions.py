"""Transaction viewer router: analyzed and raw stored transactions."""

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Query
from starlette.requests import Request

from orerecon.analyzer import analyze_batch, analyze_transaction, summarize_round
from orerecon.deps import get_server, http_error
from orerecon.errors import DecodeError, RoundNotFound
from orerecon.reconciler import reconcile_transaction

router = APIRouter()


@router.get("/api/rounds/{round_id}/transactions")
async def round_transactions(request: Request, round_id: int):
    srv = get_server(request)
    if not await srv.storage.rounds.exists(round_id):
        raise http_error(RoundNotFound(round_id))
    raw = await srv.storage.raw_transactions.list_for_round(round_id)
    analyses, failures = analyze_batch(raw, round_id)
    return {
        "round_id": round_id,
        "summary": summarize_round(analyses),
        "transactions": [a.to_dict() for a in analyses],
        "failures": [asdict(f) for f in failures],
    }


@router.get("/api/rounds/{round_id}/transactions/raw")
async def round_transactions_raw(
    request: Request,
    round_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    srv = get_server(request)
    return await srv.storage.raw_transactions.list_page(round_id, page=page, limit=limit)


@router.get("/api/transactions/{signature}")
async def transaction_detail(request: Request, signature: str):
    srv = get_server(request)
    stored = await srv.storage.raw_transactions.get(signature)
    if stored is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    try:
        analysis = analyze_transaction(stored["raw"], stored["round_id"])
    except DecodeError as e:
        raise http_error(e)
    return {
        "round_id": stored["round_id"],
        "tx_type": stored["tx_type"],
        "analysis": analysis.to_dict(),
        "reconciliation": reconcile_transaction(analysis).to_dict(),
    }
