"""Analytics router: /api/analytics/stats."""

from fastapi import APIRouter
from starlette.requests import Request

from orerecon.deps import get_server

router = APIRouter()


@router.get("/api/analytics/stats")
async def analytics_stats(request: Request):
    srv = get_server(request)
    return await srv.storage.analytics.stats()
