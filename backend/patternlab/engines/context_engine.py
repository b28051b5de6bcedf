"""
PatternLab — Local Context Classifier

Labels the market regime around a detection: the short trend leading into
it and the volatility level at the pattern bar.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

from patternlab.config import Settings, get_settings
from patternlab.models import Candle, LocalContext, TrendLabel, VolatilityLevel


class ContextClassifier:
    """Usage:
        ctx = ContextClassifier().classify(candles, index)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def classify(self, candles: Sequence[Candle], index: int) -> LocalContext:
        """Context for a pattern whose last bar is ``candles[index]``."""
        return LocalContext(
            trend_before=self.trend_before(candles, index - 1),
            volatility_level=self.volatility_level(candles, index),
        )

    def trend_before(self, candles: Sequence[Candle], end_index: int) -> TrendLabel:
        """Majority vote of up/down closes over the lookback ending at ``end_index``."""
        lookback = self.settings.trend_lookback
        if end_index < lookback or end_index >= len(candles):
            return TrendLabel.NEUTRAL

        up = down = 0
        for i in range(end_index - lookback + 1, end_index + 1):
            prev, cur = candles[i - 1].close, candles[i].close
            if cur > prev:
                up += 1
            elif cur < prev:
                down += 1

        threshold = math.ceil(lookback * self.settings.trend_agreement_ratio)
        if up >= threshold:
            return TrendLabel.UP
        if down >= threshold:
            return TrendLabel.DOWN
        return TrendLabel.NEUTRAL

    def volatility_level(self, candles: Sequence[Candle], end_index: int) -> VolatilityLevel:
        """Mean true range as a percentage of mean close over the lookback."""
        s = self.settings
        lookback = s.volatility_lookback
        if end_index < lookback or end_index >= len(candles):
            return VolatilityLevel.MEDIUM

        window = range(end_index - lookback + 1, end_index + 1)
        ranges = [self._true_range(candles, i) for i in window]
        mean_close = sum(candles[i].close for i in window) / lookback
        if mean_close <= 0:
            return VolatilityLevel.MEDIUM

        range_pct = sum(ranges) / lookback / mean_close * 100
        if range_pct < s.volatility_low_pct:
            return VolatilityLevel.LOW
        if range_pct > s.volatility_high_pct:
            return VolatilityLevel.HIGH
        return VolatilityLevel.MEDIUM

    @staticmethod
    def _true_range(candles: Sequence[Candle], i: int) -> float:
        c = candles[i]
        if i == 0:
            return c.high - c.low
        pc = candles[i - 1].close
        return max(c.high - c.low, abs(c.high - pc), abs(c.low - pc))
