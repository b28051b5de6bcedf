"""
PatternLab — Observability

Lightweight timing spans for engine calls, emitted through structlog.
Spans nest via structlog contextvars so every log line inside a span
carries the span name.

Usage:
    with trace_span("pattern_engine.classify", pivots=len(pivots)):
        patterns = engine.classify(candles, pivots)

    @traced("backtest.history_stats")
    def history_stats(...):
        ...
"""

from __future__ import annotations

import functools
import inspect
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

# Spans slower than this are logged at warning level
SLOW_SPAN_SECONDS = 2.0


# ──────────────────────────────────────────────
# Manual Tracing
# ──────────────────────────────────────────────

@contextmanager
def trace_span(name: str, **metadata: Any):
    """Context manager timing a block of engine work.

    Args:
        name: Name of the span (e.g., "swing_engine.detect").
        **metadata: Extra key/values attached to the completion log line.
    """
    start = time.perf_counter()
    with structlog.contextvars.bound_contextvars(span=name):
        logger.debug("span.start", **metadata)
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            if elapsed > SLOW_SPAN_SECONDS:
                logger.warning("span.slow", elapsed_s=round(elapsed, 2), **metadata)
            else:
                logger.debug("span.complete", duration_ms=round(elapsed * 1000, 2), **metadata)


def traced(name: Optional[str] = None) -> Callable:
    """Decorator to run a function inside a trace_span.

    Usage:
        @traced("context.classify")
        def classify(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name):
                return func(*args, **kwargs)

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name):
                return await func(*args, **kwargs)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return wrapper

    return decorator
