"""
PatternLab — Retry Decorator

Exponential backoff with jitter for the candle provider. Retries only on
transient errors (timeouts, transport failures, HTTP 429/5xx). The engines
themselves never retry.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
from typing import Any, Callable, Type

import httpx
import structlog

log = structlog.get_logger(__name__)

# Default exception types that warrant a retry
DEFAULT_RETRYABLE: tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def is_retryable(exc: Exception, retry_on: tuple[Type[Exception], ...] = DEFAULT_RETRYABLE) -> bool:
    """Transport-level failures and throttling / server errors are transient."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS
    return isinstance(exc, retry_on)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.2,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[Type[Exception], ...] | None = None,
) -> Callable:
    """Decorator that retries a coroutine function on transient failures.

    Args:
        max_attempts: Maximum number of attempts (including the first).
        base_delay: Initial delay between retries in seconds.
        max_delay: Maximum delay cap in seconds.
        backoff_factor: Multiplier for delay after each retry.
        jitter: Add randomized jitter to the delay.
        retryable_exceptions: Exception types to retry on.
            Defaults to ConnectionError, TimeoutError and httpx transport errors;
            httpx.HTTPStatusError is retried for 429/5xx responses.

    Usage::

        @with_retry(max_attempts=3, base_delay=0.2)
        async def fetch_candles(pair: str):
            ...
    """
    retry_on = retryable_exceptions or DEFAULT_RETRYABLE

    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"with_retry expects a coroutine function, got {func.__qualname__}")

        def _should_stop(attempt: int, exc: Exception) -> bool:
            if not is_retryable(exc, retry_on) or attempt == max_attempts:
                log.error(
                    "retry.exhausted",
                    func=func.__qualname__,
                    attempts=attempt,
                    error=str(exc),
                )
                return True
            return False

        def _next_delay(attempt: int, exc: Exception) -> float:
            delay = _compute_delay(attempt, base_delay, max_delay, backoff_factor, jitter)
            log.warning(
                "retry.attempt",
                func=func.__qualname__,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=round(delay, 2),
                error=str(exc),
            )
            return delay

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except (httpx.HTTPStatusError, *retry_on) as exc:
                    if _should_stop(attempt, exc):
                        raise
                    await asyncio.sleep(_next_delay(attempt, exc))
            raise RuntimeError("unreachable")

        return async_wrapper

    return decorator


def _compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_factor: float,
    jitter: bool,
) -> float:
    """Calculate delay for a given attempt with exponential backoff + jitter."""
    delay = base_delay * (backoff_factor ** (attempt - 1))
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return min(delay, max_delay)
