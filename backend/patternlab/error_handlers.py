"""
PatternLab — Global Exception Handlers

Every error leaves the API in one shape:

    {"error": true, "status_code", "error_type", "detail", "request_id", ...}

Domain errors carry their own ``error_type`` and status. Request validation
failures become ``invalid_parameter`` (422) and anything unexpected becomes
``internal`` (500) without leaking details.
"""

from __future__ import annotations

import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

import structlog

from patternlab.errors import InternalError, PatternLabError

log = structlog.get_logger(__name__)


def _error_response(request: Request, status_code: int, body: dict) -> JSONResponse:
    content = {
        "error": True,
        "status_code": status_code,
        **body,
        "request_id": getattr(request.state, "request_id", None),
    }
    return JSONResponse(status_code=status_code, content=content)


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {
            "field": ".".join(str(loc) for loc in err.get("loc", [])),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(PatternLabError)
    async def domain_exception_handler(request: Request, exc: PatternLabError):
        log.warning(
            "domain_error",
            path=request.url.path,
            error_type=exc.error_type,
            detail=exc.message,
        )
        return _error_response(request, exc.status_code, exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, {"error_type": "http", "detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies / query strings → 422 with per-field details."""
        errors = _validation_errors(exc)
        log.warning("validation_error", path=request.url.path, errors=errors)
        return _error_response(request, 422, {
            "error_type": "invalid_parameter",
            "detail": "Validation error",
            "errors": errors,
        })

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Anything an engine did not anticipate → 500 with a generic message."""
        log.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        internal = InternalError("Internal server error")
        return _error_response(request, internal.status_code, internal.to_dict())
