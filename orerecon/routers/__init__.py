"""Router package: collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from orerecon.routers import (
    admin,
    analytics,
    automation,
    backfill,
    queue,
    rounds,
    transactions,
)


def register_all_routers(app: FastAPI):
    app.include_router(admin.router)
    app.include_router(rounds.router)
    app.include_router(transactions.router)
    app.include_router(queue.router)
    app.include_router(backfill.router)
    app.include_router(automation.router)
    app.include_router(analytics.router)
