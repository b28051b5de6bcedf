"""
PatternLab — Request Logger Middleware

One structured log line per analysis request, via structlog. Every request
gets an ``X-Request-ID`` (taken from the caller or generated) that is echoed
on the response and included in error bodies, so a failing analysis can be
matched to its log lines.
"""

from __future__ import annotations

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

log = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Not worth a log line
_QUIET_PATHS = frozenset({"/health", "/favicon.ico", "/docs", "/openapi.json"})


def _analysis_fields(request: Request) -> dict:
    """Query parameters that identify what was analyzed."""
    fields = {}
    for key in ("timeframe", "limit", "window_days"):
        value = request.query_params.get(key)
        if value is not None:
            fields[key] = value
    return fields


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Attach a request ID and log method, path, status and latency."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        if request.url.path in _QUIET_PATHS:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            log.error(
                "request.failed",
                method=request.method,
                latency_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            raise

        latency_ms = round((time.perf_counter() - started) * 1000, 1)
        emit = log.warning if response.status_code >= 500 else log.info
        emit(
            "request.complete",
            method=request.method,
            status=response.status_code,
            latency_ms=latency_ms,
            **_analysis_fields(request),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
