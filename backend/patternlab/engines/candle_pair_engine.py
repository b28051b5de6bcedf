"""
PatternLab — Candle-Pair Pattern Engine

Two-candle reversal formations (engulfing, harami, tweezer, dark cloud
cover, piercing line). Each detector is a pure function of two consecutive
candles plus an optional ``PairContext`` and ``Settings`` (the cached
settings when omitted). Detectors are looked up through an immutable
registry keyed by ``CandlePatternType``.

Detectors are total: zero-range or non-finite candles return
``PairDetection(False, 0.0)`` instead of raising.
"""

from __future__ import annotations

import math
from types import MappingProxyType
from typing import NamedTuple, Optional, Protocol, Sequence

import structlog

from patternlab.config import Settings, get_settings
from patternlab.engines.context_engine import ContextClassifier
from patternlab.engines.trendlines import clamp01
from patternlab.models import (
    Candle,
    CandlePairPattern,
    CandlePatternStatus,
    CandlePatternType,
    Direction,
    HistoryStats,
)

log = structlog.get_logger(__name__)


class PairDetection(NamedTuple):
    detected: bool
    strength: float


class PairContext(NamedTuple):
    """Recent-market reference values for context-sensitive detectors."""
    avg_body: float
    range_high: float
    range_low: float


class PairDetector(Protocol):
    def __call__(
        self,
        candle1: Candle,
        candle2: Candle,
        context: Optional[PairContext] = None,
        settings: Optional[Settings] = None,
    ) -> PairDetection: ...


NOT_DETECTED = PairDetection(False, 0.0)


# ──────────────────────────────────────────────
# Candle Geometry
# ──────────────────────────────────────────────

def is_bullish(c: Candle) -> bool:
    return c.close > c.open


def is_bearish(c: Candle) -> bool:
    return c.close < c.open


def body_size(c: Candle) -> float:
    return abs(c.close - c.open)


def body_top(c: Candle) -> float:
    return max(c.open, c.close)


def body_bottom(c: Candle) -> float:
    return min(c.open, c.close)


def _well_formed(*candles: Candle) -> bool:
    for c in candles:
        values = (c.open, c.high, c.low, c.close)
        if not all(math.isfinite(v) for v in values):
            return False
        if c.high <= c.low:
            return False
    return True


def build_context(candles: Sequence[Candle], index: int, bars: int = 10) -> Optional[PairContext]:
    """Context from the ``bars`` candles before ``candles[index - 1]``.

    Returns None when there is no prior bar to learn from.
    """
    first = index - 1
    prior = [c for c in candles[max(0, first - bars):max(0, first)] if _well_formed(c)]
    if not prior:
        return None
    return PairContext(
        avg_body=sum(body_size(c) for c in prior) / len(prior),
        range_high=max(c.high for c in prior),
        range_low=min(c.low for c in prior),
    )


# ──────────────────────────────────────────────
# Detectors
# ──────────────────────────────────────────────

def detect_bullish_engulfing(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Bearish candle followed by a bullish candle whose body covers it."""
    if not _well_formed(candle1, candle2):
        return NOT_DETECTED
    if not is_bearish(candle1) or not is_bullish(candle2):
        return NOT_DETECTED
    if not (candle2.open <= candle1.close and candle2.close >= candle1.open):
        return NOT_DETECTED
    ratio = body_size(candle2) / body_size(candle1)
    return PairDetection(True, clamp01(min(ratio / 2, 1.0)))


def detect_bearish_engulfing(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Bullish candle followed by a bearish candle whose body covers it."""
    if not _well_formed(candle1, candle2):
        return NOT_DETECTED
    if not is_bullish(candle1) or not is_bearish(candle2):
        return NOT_DETECTED
    if not (candle2.open >= candle1.close and candle2.close <= candle1.open):
        return NOT_DETECTED
    ratio = body_size(candle2) / body_size(candle1)
    return PairDetection(True, clamp01(min(ratio / 2, 1.0)))


def _harami(candle1: Candle, candle2: Candle, max_ratio: float) -> PairDetection:
    contained = body_top(candle2) <= body_top(candle1) and body_bottom(candle2) >= body_bottom(candle1)
    if not contained:
        return NOT_DETECTED
    body1 = body_size(candle1)
    if body1 == 0:
        return NOT_DETECTED
    ratio = body_size(candle2) / body1
    # Exactly max_ratio still counts
    if ratio > max_ratio:
        return NOT_DETECTED
    return PairDetection(True, clamp01(1 - ratio))


def detect_bullish_harami(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Large bearish candle followed by a small candle inside its body."""
    if not _well_formed(candle1, candle2) or not is_bearish(candle1):
        return NOT_DETECTED
    return _harami(candle1, candle2, (settings or get_settings()).harami_max_body_ratio)


def detect_bearish_harami(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Large bullish candle followed by a small candle inside its body."""
    if not _well_formed(candle1, candle2) or not is_bullish(candle1):
        return NOT_DETECTED
    return _harami(candle1, candle2, (settings or get_settings()).harami_max_body_ratio)


def _tweezer(a: float, b: float, context: Optional[PairContext], top: bool, s: Settings) -> PairDetection:
    avg = (a + b) / 2
    if avg <= 0:
        return NOT_DETECTED
    diff = abs(a - b) / avg
    if diff > s.tweezer_match_pct:
        return NOT_DETECTED
    if context is not None and context.range_high > context.range_low:
        span = context.range_high - context.range_low
        if top and max(a, b) < context.range_high - span * s.tweezer_zone_pct:
            return NOT_DETECTED
        if not top and min(a, b) > context.range_low + span * s.tweezer_zone_pct:
            return NOT_DETECTED
    return PairDetection(True, clamp01(1 - diff))


def detect_tweezer_top(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Two candles sharing the same high near the top of the recent range."""
    if not _well_formed(candle1, candle2):
        return NOT_DETECTED
    return _tweezer(candle1.high, candle2.high, context, True, settings or get_settings())


def detect_tweezer_bottom(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Two candles sharing the same low near the bottom of the recent range."""
    if not _well_formed(candle1, candle2):
        return NOT_DETECTED
    return _tweezer(candle1.low, candle2.low, context, False, settings or get_settings())


def _long_prior_body(candle1: Candle, context: Optional[PairContext], s: Settings) -> bool:
    if context is None or context.avg_body <= 0:
        return True
    return body_size(candle1) >= context.avg_body * s.piercing_body_multiple


def detect_dark_cloud_cover(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Long bullish candle, then a bearish candle opening at or above its close
    and closing below its midpoint (but not below its open)."""
    if not _well_formed(candle1, candle2):
        return NOT_DETECTED
    s = settings or get_settings()
    if not is_bullish(candle1) or not is_bearish(candle2) or not _long_prior_body(candle1, context, s):
        return NOT_DETECTED
    body1 = body_size(candle1)
    if candle2.open < candle1.close - body1 * s.piercing_gap_tolerance:
        return NOT_DETECTED
    midpoint = (candle1.open + candle1.close) / 2
    if not (candle1.open < candle2.close < midpoint):
        return NOT_DETECTED
    return PairDetection(True, clamp01((candle1.close - candle2.close) / body1))


def detect_piercing_line(
    candle1: Candle,
    candle2: Candle,
    context: Optional[PairContext] = None,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Long bearish candle, then a bullish candle opening at or below its close
    and closing above its midpoint (but not above its open)."""
    if not _well_formed(candle1, candle2):
        return NOT_DETECTED
    s = settings or get_settings()
    if not is_bearish(candle1) or not is_bullish(candle2) or not _long_prior_body(candle1, context, s):
        return NOT_DETECTED
    body1 = body_size(candle1)
    if candle2.open > candle1.close + body1 * s.piercing_gap_tolerance:
        return NOT_DETECTED
    midpoint = (candle1.open + candle1.close) / 2
    if not (midpoint < candle2.close < candle1.open):
        return NOT_DETECTED
    return PairDetection(True, clamp01((candle2.close - candle1.close) / body1))


# ──────────────────────────────────────────────
# Registry & Lookup Tables
# ──────────────────────────────────────────────

CANDLE_PAIR_DETECTORS: MappingProxyType = MappingProxyType({
    CandlePatternType.BULLISH_ENGULFING: detect_bullish_engulfing,
    CandlePatternType.BEARISH_ENGULFING: detect_bearish_engulfing,
    CandlePatternType.BULLISH_HARAMI: detect_bullish_harami,
    CandlePatternType.BEARISH_HARAMI: detect_bearish_harami,
    CandlePatternType.TWEEZER_TOP: detect_tweezer_top,
    CandlePatternType.TWEEZER_BOTTOM: detect_tweezer_bottom,
    CandlePatternType.DARK_CLOUD_COVER: detect_dark_cloud_cover,
    CandlePatternType.PIERCING_LINE: detect_piercing_line,
})

PATTERN_LABELS = MappingProxyType({
    CandlePatternType.BULLISH_ENGULFING: "Bullish Engulfing",
    CandlePatternType.BEARISH_ENGULFING: "Bearish Engulfing",
    CandlePatternType.BULLISH_HARAMI: "Bullish Harami",
    CandlePatternType.BEARISH_HARAMI: "Bearish Harami",
    CandlePatternType.TWEEZER_TOP: "Tweezer Top",
    CandlePatternType.TWEEZER_BOTTOM: "Tweezer Bottom",
    CandlePatternType.DARK_CLOUD_COVER: "Dark Cloud Cover",
    CandlePatternType.PIERCING_LINE: "Piercing Line",
})

PATTERN_DIRECTIONS = MappingProxyType({
    CandlePatternType.BULLISH_ENGULFING: Direction.BULLISH,
    CandlePatternType.BEARISH_ENGULFING: Direction.BEARISH,
    CandlePatternType.BULLISH_HARAMI: Direction.BULLISH,
    CandlePatternType.BEARISH_HARAMI: Direction.BEARISH,
    CandlePatternType.TWEEZER_TOP: Direction.BEARISH,
    CandlePatternType.TWEEZER_BOTTOM: Direction.BULLISH,
    CandlePatternType.DARK_CLOUD_COVER: Direction.BEARISH,
    CandlePatternType.PIERCING_LINE: Direction.BULLISH,
})


def detect_pair(
    pattern: CandlePatternType,
    candles: Sequence[Candle],
    index: int,
    settings: Optional[Settings] = None,
) -> PairDetection:
    """Run one registered detector on (candles[index - 1], candles[index]).

    Thresholds and the context window come from ``settings``.
    """
    if index < 1 or index >= len(candles):
        return NOT_DETECTED
    s = settings or get_settings()
    context = build_context(candles, index, s.pair_context_bars)
    return CANDLE_PAIR_DETECTORS[pattern](candles[index - 1], candles[index], context, s)


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class CandlePairEngine:
    """Scan the most recent candle pairs for registered formations.

    Usage:
        engine = CandlePairEngine()
        found = engine.scan(candles, window_start=len(candles) - 5, focus_last_n=3)
    """

    def __init__(self, settings: Optional[Settings] = None, context: Optional[ContextClassifier] = None):
        self.settings = settings or get_settings()
        self.context = context or ContextClassifier(self.settings)

    def scan(
        self,
        candles: Sequence[Candle],
        window_start: int,
        focus_last_n: int,
        patterns: Optional[Sequence[CandlePatternType]] = None,
        allow_partial: bool = True,
        history=None,
    ) -> list[CandlePairPattern]:
        """Check the last ``focus_last_n`` pairs of the window.

        ``history`` is an optional ``callable(pattern) -> HistoryStats | None``
        attached to every detection. Reported ``candle_range_index`` values
        are relative to ``window_start``.
        """
        targets = list(patterns) if patterns else list(CANDLE_PAIR_DETECTORS)
        last = len(candles) - 1
        first = max(window_start + 1, len(candles) - focus_last_n, 1)

        found: list[CandlePairPattern] = []
        for i in range(first, last + 1):
            partial = candles[i].is_provisional
            if partial and not allow_partial:
                continue
            for pattern in targets:
                result = detect_pair(pattern, candles, i, self.settings)
                if not result.detected:
                    continue
                stats: Optional[HistoryStats] = history(pattern) if history else None
                found.append(CandlePairPattern(
                    pattern=pattern,
                    label=PATTERN_LABELS[pattern],
                    direction=PATTERN_DIRECTIONS[pattern],
                    strength=round(clamp01(result.strength), 2),
                    candle_range_index=(i - 1 - window_start, i - window_start),
                    uses_partial_candle=partial,
                    status=CandlePatternStatus.FORMING if partial else CandlePatternStatus.CONFIRMED,
                    local_context=self.context.classify(candles, i),
                    history_stats=stats,
                ))

        log.debug("candle_pair_engine.scan", pairs=max(0, last + 1 - first), found=len(found))
        return found
