"""
PatternLab — bitbank Client Tests

Tests for candle normalization, segment pagination, provisional marking
and upstream error mapping. HTTP is served by httpx.MockTransport.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

_DAY_MS = 86_400_000
_JAN1_2024_MS = 1_704_067_200_000


def _rows(start_ms, n, price=100.0):
    return [
        [str(price + i), str(price + i + 5), str(price + i - 5), str(price + i + 1), "12.5", start_ms + i * _DAY_MS]
        for i in range(n)
    ]


def _ok(rows):
    return {"success": 1, "data": {"candlestick": [{"type": "1day", "ohlcv": rows}]}}


def _run(handler, **kwargs):
    from patternlab.data.bitbank_client import BitbankClient
    from patternlab.models import Timeframe

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = BitbankClient(http_client=http)
            return await client.get_candles("btc_jpy", Timeframe.D1, **kwargs)

    return asyncio.run(go())


class TestGetCandles:

    def test_normalizes_rows(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json=_ok(_rows(_JAN1_2024_MS, 3)))

        candles = _run(handler, date="2024", limit=3, as_of=datetime(2024, 6, 1, tzinfo=timezone.utc))
        assert seen == ["/btc_jpy/candlestick/1day/2024"]
        assert len(candles) == 3
        first = candles[0]
        assert (first.open, first.high, first.low, first.close) == (100.0, 105.0, 95.0, 101.0)
        assert first.volume == 12.5
        assert first.iso_time == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert not any(c.is_provisional for c in candles)

    def test_keeps_most_recent_limit(self):
        def handler(request):
            return httpx.Response(200, json=_ok(_rows(_JAN1_2024_MS, 10)))

        candles = _run(handler, date="2024", limit=4, as_of=datetime(2024, 6, 1, tzinfo=timezone.utc))
        assert len(candles) == 4
        assert candles[0].open == 106.0
        assert candles[-1].open == 109.0

    def test_last_candle_provisional_when_period_open(self):
        def handler(request):
            return httpx.Response(200, json=_ok(_rows(_JAN1_2024_MS, 3)))

        as_of = datetime(2024, 1, 3, 12, tzinfo=timezone.utc)
        candles = _run(handler, date="2024", limit=3, as_of=as_of)
        assert candles[-1].is_provisional
        assert not candles[0].is_provisional

    def test_walks_back_over_segments(self):
        def handler(request):
            if request.url.path.endswith("/2024"):
                return httpx.Response(200, json=_ok(_rows(_JAN1_2024_MS, 2, price=200.0)))
            if request.url.path.endswith("/2023"):
                return httpx.Response(200, json=_ok(_rows(_JAN1_2024_MS - 3 * _DAY_MS, 3)))
            return httpx.Response(404)

        candles = _run(handler, date="2024", limit=4, as_of=datetime(2024, 6, 1, tzinfo=timezone.utc))
        assert [c.open for c in candles] == [101.0, 102.0, 200.0, 201.0]

    def test_missing_older_segment_stops_walk(self):
        def handler(request):
            if request.url.path.endswith("/2024"):
                return httpx.Response(200, json=_ok(_rows(_JAN1_2024_MS, 2)))
            return httpx.Response(404)

        candles = _run(handler, date="2024", limit=50, as_of=datetime(2024, 6, 1, tzinfo=timezone.utc))
        assert len(candles) == 2


class TestUpstreamErrors:

    def test_not_found_without_rows(self):
        from patternlab.errors import UpstreamDataError

        with pytest.raises(UpstreamDataError):
            _run(lambda request: httpx.Response(404), date="2024", limit=5)

    def test_api_error_code(self):
        from patternlab.errors import UpstreamDataError

        def handler(request):
            return httpx.Response(200, json={"success": 0, "data": {"code": 10000}})

        with pytest.raises(UpstreamDataError, match="10000"):
            _run(handler, date="2024", limit=5)

    def test_server_error_retried_then_mapped(self):
        from patternlab.errors import UpstreamDataError

        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(503)

        with patch("patternlab.utils.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(UpstreamDataError, match="503"):
                _run(handler, date="2024", limit=5)
        assert len(calls) == 3

    def test_invalid_pair_never_requests(self):
        from patternlab.data.bitbank_client import BitbankClient
        from patternlab.errors import InvalidParameterError

        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=_ok([]))

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                await BitbankClient(http_client=http).get_candles("not a pair")

        with pytest.raises(InvalidParameterError):
            asyncio.run(go())
        assert calls == []
