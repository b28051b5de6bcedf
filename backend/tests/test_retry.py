"""
PatternLab — Retry Decorator Tests

Tests for:
- Transient httpx failures retried within the attempt budget
- Non-retryable responses raised on the first attempt
- Decoration limited to coroutine functions
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest


def _status_error(code):
    request = httpx.Request("GET", "https://public.bitbank.cc/btc_jpy/candlestick/1day/2024")
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=httpx.Response(code, request=request))


class TestWithRetry:

    def test_transport_error_retried_then_succeeds(self):
        from patternlab.utils.retry import with_retry

        calls = []

        @with_retry(max_attempts=3, base_delay=0.01)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("connection refused")
            return "ok"

        with patch("patternlab.utils.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert asyncio.run(flaky()) == "ok"
        assert len(calls) == 3
        assert sleep.await_count == 2

    def test_throttling_retried_until_budget(self):
        from patternlab.utils.retry import with_retry

        calls = []

        @with_retry(max_attempts=3, base_delay=0.01)
        async def throttled():
            calls.append(1)
            raise _status_error(429)

        with patch("patternlab.utils.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.HTTPStatusError):
                asyncio.run(throttled())
        assert len(calls) == 3

    def test_not_found_not_retried(self):
        from patternlab.utils.retry import with_retry

        calls = []

        @with_retry(max_attempts=3, base_delay=0.01)
        async def missing():
            calls.append(1)
            raise _status_error(404)

        with patch("patternlab.utils.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(httpx.HTTPStatusError):
                asyncio.run(missing())
        assert len(calls) == 1
        sleep.assert_not_awaited()

    def test_plain_function_rejected(self):
        from patternlab.utils.retry import with_retry

        def plain():
            return 1

        with pytest.raises(TypeError, match="coroutine"):
            with_retry()(plain)
