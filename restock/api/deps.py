"""
Shared API dependencies

Endpoints that open their own sessions (recompute, metric repair) take the
session factory; everything else uses get_db. Both read from app.state so
tests can point the app at another database.
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from restock.services.errors import (
    RestockError,
    ConfigurationError,
    TenantNotFoundError,
    RecomputeInProgressError,
    RecomputeCancelledError,
)
from restock.utils.cache import ReadThroughCache


def get_session_factory(request: Request):
    return request.app.state.session_factory


def get_ranked_cache(request: Request) -> ReadThroughCache:
    return request.app.state.ranked_cache


ERROR_STATUS = {
    ConfigurationError: 400,
    TenantNotFoundError: 404,
    RecomputeInProgressError: 409,
    RecomputeCancelledError: 503,
}


def status_for(error: RestockError) -> int:
    for cls, status in ERROR_STATUS.items():
        if isinstance(error, cls):
            return status
    return 500


def error_response(error: RestockError, **extra) -> JSONResponse:
    """Structured failure result with the matching HTTP status."""
    return JSONResponse(
        status_code=status_for(error),
        content={"success": False, "status": "failed", **extra, **error.to_dict()},
    )


def raise_http(error: RestockError):
    raise HTTPException(status_code=status_for(error), detail=error.to_dict())
