"""
PatternLab — bitbank Public API Client

Candlestick data from https://public.bitbank.cc (no API key required).

The candlestick endpoint returns one calendar segment per call: a single
day for sub-4h timeframes (``YYYYMMDD``) or a whole year otherwise
(``YYYY``). ``get_candles`` walks backwards over segments until it has
``limit`` candles, then normalizes rows ``[o, h, l, c, v, ts_ms]`` into
``Candle`` models ordered oldest → newest.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import structlog

from patternlab.config import get_settings
from patternlab.errors import UpstreamDataError
from patternlab.models import Candle, Timeframe
from patternlab.observability import traced
from patternlab.utils.retry import with_retry
from patternlab.utils.validators import (
    YEARLY_TIMEFRAMES,
    apply_as_of,
    validate_date_segment,
    validate_int_range,
    validate_pair,
)

log = structlog.get_logger(__name__)

# Upper bound on segments fetched for one call
MAX_SEGMENTS = 8


class BitbankClient:
    """Async bitbank candlestick client.

    Usage:
        client = BitbankClient()
        candles = await client.get_candles("btc_jpy", Timeframe.D1, limit=200)

    Pass ``http_client`` to share a connection pool (or a mock transport in tests).
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        self._base_url = settings.bitbank_api_base.rstrip("/")
        self._timeout = settings.bitbank_timeout_seconds
        self._http = http_client
        self._fetch = with_retry(
            max_attempts=settings.bitbank_max_attempts,
            base_delay=settings.bitbank_retry_base_delay,
        )(self._fetch_segment)

    @traced("bitbank.get_candles")
    async def get_candles(
        self,
        pair: str,
        timeframe: Timeframe = Timeframe.D1,
        date: Optional[str] = None,
        limit: int = 200,
        as_of: Optional[datetime] = None,
    ) -> list[Candle]:
        """Fetch up to ``limit`` most recent candles ending at ``date``.

        Args:
            pair: Trading pair, e.g. 'btc_jpy'.
            timeframe: Candle timeframe.
            date: Newest segment to fetch (YYYY or YYYYMMDD). Defaults to as_of / now.
            limit: Number of candles to return (1-1000).
            as_of: Reference time; the last candle is marked provisional if
                its period has not closed by then.
        """
        pair = validate_pair(pair)
        validate_int_range("limit", limit, 1, 1000)
        now = as_of or datetime.now(timezone.utc)
        segment = validate_date_segment(date or now.strftime("%Y%m%d"), timeframe)

        rows: list[list] = []
        for _ in range(MAX_SEGMENTS):
            try:
                chunk = await self._fetch(pair, timeframe, segment)
            except httpx.HTTPStatusError as exc:
                # Older segments past the listing date come back as 404
                if rows and exc.response.status_code == 404:
                    break
                raise UpstreamDataError(
                    f"bitbank returned HTTP {exc.response.status_code} for {pair}/{timeframe.value}/{segment}",
                ) from exc
            except httpx.HTTPError as exc:
                raise UpstreamDataError(f"bitbank request failed: {exc}") from exc
            rows = chunk + rows
            if len(rows) >= limit:
                break
            segment = self._previous_segment(segment, timeframe)

        if not rows:
            raise UpstreamDataError(f"No candles for {pair} / {timeframe.value} / {segment}")

        candles = [self._normalize(r) for r in rows[-limit:]]
        candles = apply_as_of(candles, timeframe, now)
        log.info("bitbank.candles", pair=pair, timeframe=timeframe.value, count=len(candles))
        return candles

    # ──────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────

    async def _fetch_segment(self, pair: str, timeframe: Timeframe, segment: str) -> list[list]:
        url = f"{self._base_url}/{pair}/candlestick/{timeframe.value}/{segment}"
        if self._http is not None:
            resp = await self._http.get(url, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(url)
        resp.raise_for_status()

        payload = resp.json()
        if payload.get("success") != 1:
            code = (payload.get("data") or {}).get("code")
            raise UpstreamDataError(f"bitbank error code {code} for {url}")
        sticks = (payload.get("data") or {}).get("candlestick") or []
        return list(sticks[0].get("ohlcv") or []) if sticks else []

    @staticmethod
    def _normalize(row: list) -> Candle:
        o, h, l, c, v, ts = row[:6]
        return Candle(
            open=float(o),
            high=float(h),
            low=float(l),
            close=float(c),
            volume=float(v) if v is not None else None,
            iso_time=datetime.fromtimestamp(int(ts) / 1000, tz=timezone.utc),
        )

    @staticmethod
    def _previous_segment(segment: str, timeframe: Timeframe) -> str:
        if timeframe in YEARLY_TIMEFRAMES:
            return str(int(segment) - 1)
        day = datetime.strptime(segment, "%Y%m%d") - timedelta(days=1)
        return day.strftime("%Y%m%d")
