"""Admin router: / and /api/status."""

from fastapi import APIRouter
from starlette.requests import Request

from orerecon import __version__
from orerecon.deps import get_server

router = APIRouter()


@router.get("/")
async def root(request: Request):
    srv = get_server(request)
    return {
        "service": "ORE Round Reconstruction",
        "version": __version__,
        "api_port": srv.api_port,
        "workers_enabled": srv.enable_workers,
        "finalize_gate": srv.finalize_gate.value,
    }


@router.get("/api/status")
async def server_status(request: Request):
    srv = get_server(request)
    return {
        "rounds": await srv.storage.rounds.count(),
        "pipeline": await srv.storage.workflow.pipeline_stats(),
        "queue": await srv.queue.status(),
        "backfill": srv.backfill.get_status(),
        "automation": await srv.storage.automation_queue.stats(),
        "workers_running": srv.workers_running,
    }
