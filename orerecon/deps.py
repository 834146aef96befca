"""Dependency helpers for router modules."""

from fastapi import HTTPException
from starlette.requests import Request

from orerecon.errors import (
    ConflictError,
    DecodeError,
    ReconError,
    RoundNotFound,
    UpstreamError,
    WorkflowError,
)


def get_server(request: Request):
    return request.app.state.server


def http_error(e: ReconError) -> HTTPException:
    """Map a pipeline exception to the HTTP status the API reports for it."""
    if isinstance(e, RoundNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (WorkflowError, ConflictError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, UpstreamError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, DecodeError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
