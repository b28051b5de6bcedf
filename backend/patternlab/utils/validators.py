"""
PatternLab — Input Validators

Reusable validation helpers for pairs, numeric parameters and candle series.
Raise InvalidParameterError (a ValueError) so callers can map to 400
responses before any computation begins.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from patternlab.errors import InvalidParameterError
from patternlab.models import Candle, CandleState, Timeframe

# bitbank pair symbols: base_quote, lowercase alphanumerics
_PAIR_RE = re.compile(r"^[a-z0-9]{2,10}_[a-z0-9]{2,10}$")

# Timeframes whose candlestick endpoint takes a YYYY path segment
YEARLY_TIMEFRAMES = frozenset({Timeframe.H4, Timeframe.H8, Timeframe.H12, Timeframe.D1, Timeframe.W1, Timeframe.MO})


def validate_pair(raw: str) -> str:
    """Normalize and validate a trading pair symbol.

    >>> validate_pair('BTC_JPY')
    'btc_jpy'
    """
    pair = raw.strip().lower()
    if not _PAIR_RE.match(pair):
        raise InvalidParameterError(
            f"Invalid pair '{raw}'. Expected base_quote, e.g. btc_jpy",
            field="pair",
        )
    return pair


def validate_int_range(name: str, value: int, low: int, high: int) -> int:
    """Check an integer parameter lies in [low, high].

    >>> validate_int_range('swing_depth', 3, 1, 10)
    3
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameterError(f"{name} must be an integer", field=name)
    if not low <= value <= high:
        raise InvalidParameterError(
            f"{name} must be between {low} and {high} (got {value})", field=name,
        )
    return value


def validate_float_range(name: str, value: float, low: float, high: float) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
        raise InvalidParameterError(f"{name} must be a finite number", field=name)
    if not low <= value <= high:
        raise InvalidParameterError(
            f"{name} must be between {low} and {high} (got {value})", field=name,
        )
    return float(value)


def validate_horizons(horizons: Iterable[int], low: int = 1, high: int = 10) -> list[int]:
    """Validate forward horizons; returns them de-duplicated in ascending order."""
    values = list(horizons)
    if not values:
        raise InvalidParameterError("history_horizons must not be empty", field="history_horizons")
    for h in values:
        validate_int_range("history_horizons", h, low, high)
    return sorted(set(values))


def validate_date_segment(date: str, timeframe: Timeframe) -> str:
    """Validate the date path segment for the bitbank candlestick endpoint.

    Intraday timeframes below 4h take YYYYMMDD; the rest take YYYY.

    >>> validate_date_segment('20240105', Timeframe.H1)
    '20240105'
    >>> validate_date_segment('20240105', Timeframe.D1)
    '2024'
    """
    digits = date.strip()
    if not digits.isdigit() or len(digits) not in (4, 8):
        raise InvalidParameterError("date must be YYYY or YYYYMMDD", field="date")
    if timeframe in YEARLY_TIMEFRAMES:
        return digits[:4]
    if len(digits) != 8:
        raise InvalidParameterError(
            f"{timeframe.value} candles need a YYYYMMDD date", field="date",
        )
    return digits


# ── Candle Series ──

def is_finite_candle(candle: Candle) -> bool:
    return all(math.isfinite(v) for v in (candle.open, candle.high, candle.low, candle.close))


def sanitize_candles(candles: Sequence[Candle]) -> tuple[list[Candle], int]:
    """Drop candles with non-finite prices.

    Returns (clean_series, skipped_count). The input is never mutated.
    """
    clean = [c for c in candles if is_finite_candle(c)]
    return clean, len(candles) - len(clean)


def ensure_chronological(candles: Sequence[Candle]) -> None:
    """Reject a series whose timestamps are not strictly increasing.

    Candles without a timestamp are not compared. A reversed series would
    silently invert every trend and backtest result, so this is a hard
    precondition.
    """
    prev: Optional[datetime] = None
    for i, c in enumerate(candles):
        if c.iso_time is None:
            continue
        ts = ensure_utc(c.iso_time)
        if prev is not None and ts <= prev:
            raise InvalidParameterError(
                f"candles must be ordered oldest to newest (index {i} at {ts.isoformat()})",
                field="candles",
            )
        prev = ts


def ensure_provisional_last(candles: Sequence[Candle]) -> None:
    """Only the final candle may be provisional."""
    for i, c in enumerate(candles[:-1]):
        if c.is_provisional:
            raise InvalidParameterError(
                f"provisional candle at index {i}; only the latest candle may be provisional",
                field="candles",
            )


# ── Helpers ──

def ensure_utc(dt: datetime) -> datetime:
    """Make a datetime timezone-aware (assume UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ── Candle Periods ──

_PERIOD_SECONDS = {
    Timeframe.M1: 60,
    Timeframe.M5: 300,
    Timeframe.M15: 900,
    Timeframe.M30: 1800,
    Timeframe.H1: 3600,
    Timeframe.H4: 14400,
    Timeframe.H8: 28800,
    Timeframe.H12: 43200,
    Timeframe.D1: 86400,
    Timeframe.W1: 604800,
}


def period_end(opened: datetime, timeframe: Timeframe) -> datetime:
    """When a candle opened at ``opened`` closes.

    >>> period_end(datetime(2024, 1, 31, tzinfo=timezone.utc), Timeframe.MO).isoformat()
    '2024-02-29T00:00:00+00:00'
    """
    opened = ensure_utc(opened)
    if timeframe == Timeframe.MO:
        year, month = (opened.year + 1, 1) if opened.month == 12 else (opened.year, opened.month + 1)
        day = min(opened.day, _days_in_month(year, month))
        return opened.replace(year=year, month=month, day=day)
    return opened + timedelta(seconds=_PERIOD_SECONDS[timeframe])


def _days_in_month(year: int, month: int) -> int:
    nxt = datetime(year + (month == 12), month % 12 + 1, 1)
    return (nxt - timedelta(days=1)).day


def apply_as_of(candles: Sequence[Candle], timeframe: Timeframe, as_of: Optional[datetime]) -> list[Candle]:
    """View the series as it looked at ``as_of``.

    Candles opening after ``as_of`` are dropped and a final candle whose
    period has not closed yet is marked provisional. Without ``as_of`` the
    series is returned unchanged, so results never depend on the wall clock.
    """
    if as_of is None:
        return list(candles)
    cutoff = ensure_utc(as_of)
    visible = [c for c in candles if c.iso_time is None or ensure_utc(c.iso_time) <= cutoff]
    if visible and visible[-1].iso_time is not None and not visible[-1].is_provisional:
        if period_end(visible[-1].iso_time, timeframe) > cutoff:
            visible[-1] = visible[-1].model_copy(update={"state": CandleState.PROVISIONAL})
    return visible
