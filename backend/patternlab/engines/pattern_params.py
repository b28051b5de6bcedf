"""
PatternLab — Timeframe-Aware Detection Parameters

Short timeframes are noisier, so swing depth, pivot spacing, level tolerance
and trendline-fit requirements scale with the candle timeframe. Any value the
caller passes explicitly wins over the timeframe default.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Optional

from patternlab.models import Timeframe


# (swing_depth, min_bars_between_swings)
_SWING_DEFAULTS = MappingProxyType({
    Timeframe.M1: (2, 1),
    Timeframe.M5: (2, 1),
    Timeframe.M15: (3, 2),
    Timeframe.M30: (3, 2),
    Timeframe.H1: (3, 2),
    Timeframe.H4: (5, 3),
    Timeframe.H8: (5, 3),
    Timeframe.H12: (5, 3),
    Timeframe.D1: (6, 4),
    Timeframe.W1: (7, 5),
    Timeframe.MO: (8, 6),
})

_TOLERANCE = MappingProxyType({
    Timeframe.M15: 0.06,
    Timeframe.M30: 0.06,
    Timeframe.H1: 0.05,
    Timeframe.H4: 0.05,
    Timeframe.H8: 0.045,
    Timeframe.H12: 0.045,
    Timeframe.W1: 0.035,
    Timeframe.MO: 0.03,
})
_DEFAULT_TOLERANCE = 0.04

_INTRADAY = frozenset({Timeframe.H1, Timeframe.H4})


@dataclass(frozen=True)
class ResolvedParams:
    """Effective parameters for one detection run."""
    swing_depth: int
    min_bars_between_swings: int
    tolerance_pct: float
    flat_coefficient: float
    min_fit: float
    auto_scaled: bool

    def to_dict(self) -> dict:
        return asdict(self)


def default_tolerance(timeframe: Timeframe) -> float:
    return _TOLERANCE.get(timeframe, _DEFAULT_TOLERANCE)


def triangle_flat_coefficient(timeframe: Timeframe) -> float:
    """Multiplier on tolerance below which a trendline counts as flat."""
    return 1.2 if timeframe in _INTRADAY else 0.8


def min_trendline_fit(timeframe: Timeframe) -> float:
    if timeframe in _INTRADAY:
        return 0.60
    if timeframe == Timeframe.D1:
        return 0.70
    return 0.75


def resolve_params(
    timeframe: Timeframe,
    swing_depth: Optional[int] = None,
    min_bars_between_swings: Optional[int] = None,
    tolerance_pct: Optional[float] = None,
) -> ResolvedParams:
    """Fill unspecified parameters from the timeframe defaults.

    >>> resolve_params(Timeframe.H1).swing_depth
    3
    >>> resolve_params(Timeframe.D1, swing_depth=4).swing_depth
    4
    """
    depth_default, gap_default = _SWING_DEFAULTS.get(timeframe, (6, 4))
    return ResolvedParams(
        swing_depth=swing_depth if swing_depth is not None else depth_default,
        min_bars_between_swings=(
            min_bars_between_swings if min_bars_between_swings is not None else gap_default
        ),
        tolerance_pct=tolerance_pct if tolerance_pct is not None else default_tolerance(timeframe),
        flat_coefficient=triangle_flat_coefficient(timeframe),
        min_fit=min_trendline_fit(timeframe),
        auto_scaled=swing_depth is None and min_bars_between_swings is None,
    )


def default_relevance_bars(timeframe: Timeframe) -> int:
    """How many bars back a pattern may end and still count as current."""
    if timeframe == Timeframe.MO:
        return 2
    if timeframe == Timeframe.W1:
        return 3
    return 7
