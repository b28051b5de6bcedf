"""
PatternLab — Historical Backtest Engine

Replays a registered candle-pair detector over past candles and measures
the forward returns that followed each occurrence. Purely a function of the
series and parameters: deterministic and reproducible.

The most recent bars are excluded from the scan so that the detection being
evaluated never counts as its own history.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import structlog

from patternlab.config import Settings, get_settings
from patternlab.engines.candle_pair_engine import detect_pair
from patternlab.models import Candle, CandlePatternType, HistoryStats, HorizonStats
from patternlab.observability import traced

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PatternOccurrence:
    """One past firing of a detector. ``index`` is the confirming bar."""
    index: int
    pattern: CandlePatternType
    base_price: float


class HistoricalBacktestEngine:
    """Forward-return statistics for candle-pair patterns.

    Usage:
        engine = HistoricalBacktestEngine()
        stats = engine.history_stats(candles, CandlePatternType.BULLISH_ENGULFING,
                                     horizons=[1, 3, 5], lookback_days=180)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def find_occurrences(
        self,
        candles: Sequence[Candle],
        pattern: CandlePatternType,
        exclude_last_n: int = 1,
    ) -> list[PatternOccurrence]:
        """Every consecutive pair where the detector fires, oldest first."""
        end_index = len(candles) - 1 - exclude_last_n
        occurrences: list[PatternOccurrence] = []
        for i in range(1, end_index + 1):
            if candles[i].is_provisional:
                continue
            if detect_pair(pattern, candles, i, self.settings).detected:
                occurrences.append(PatternOccurrence(index=i, pattern=pattern, base_price=candles[i].close))
        return occurrences

    @traced("backtest.history_stats")
    def history_stats(
        self,
        candles: Sequence[Candle],
        pattern: CandlePatternType,
        horizons: Iterable[int],
        lookback_days: int,
        exclude_last_n: Optional[int] = None,
    ) -> Optional[HistoryStats]:
        """Per-horizon avg return / win rate, or None for an insufficient sample."""
        s = self.settings
        exclude = s.backtest_exclude_last_n if exclude_last_n is None else exclude_last_n
        if len(candles) < lookback_days:
            log.debug("backtest.short_history", pattern=pattern.value, bars=len(candles), lookback=lookback_days)
            return None

        start = len(candles) - lookback_days
        occurrences = self.find_occurrences(candles[start:], pattern, exclude)
        if len(occurrences) < s.backtest_min_occurrences:
            log.debug(
                "backtest.insufficient_sample",
                pattern=pattern.value,
                occurrences=len(occurrences),
                required=s.backtest_min_occurrences,
            )
            return None

        closes = np.array([c.close for c in candles], dtype=float)
        stats: dict[str, HorizonStats] = {}
        for h in horizons:
            returns = [
                (closes[start + occ.index + h] - occ.base_price) / occ.base_price * 100
                for occ in occurrences
                if start + occ.index + h < len(closes) and occ.base_price > 0
            ]
            if not returns:
                continue
            wins = sum(1 for r in returns if r > 0)
            stats[str(h)] = HorizonStats(
                avg_return=round(float(np.mean(returns)), 2),
                win_rate=round(wins / len(returns), 2),
                sample=len(returns),
            )

        return HistoryStats(lookback_days=lookback_days, occurrences=len(occurrences), horizons=stats)


class MemoizedHistory:
    """Per-request cache so each pattern type is backtested at most once."""

    def __init__(
        self,
        engine: HistoricalBacktestEngine,
        candles: Sequence[Candle],
        horizons: Sequence[int],
        lookback_days: int,
    ):
        self._engine = engine
        self._candles = candles
        self._horizons = list(horizons)
        self._lookback = lookback_days
        self._cache: dict[CandlePatternType, Optional[HistoryStats]] = {}

    def __call__(self, pattern: CandlePatternType) -> Optional[HistoryStats]:
        if pattern not in self._cache:
            self._cache[pattern] = self._engine.history_stats(
                self._candles, pattern, self._horizons, self._lookback,
            )
        return self._cache[pattern]
