"""
PatternLab — Aftermath Engine

Measures what happened after a completed chart pattern broke out:
forward returns at fixed horizons, the measured-move target and whether
price reached it, and a categorical outcome label. Also rolls those results
up into per-pattern-type success statistics.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import structlog

from patternlab.config import Settings, get_settings
from patternlab.engines.trendlines import line_through, pct_change
from patternlab.models import (
    Aftermath,
    AftermathOutcome,
    Candle,
    DetectedPattern,
    Direction,
    PatternStatus,
    PriceMove,
)

log = structlog.get_logger(__name__)


class AftermathEvaluator:
    """Forward-performance evaluation for completed patterns.

    Usage:
        evaluator = AftermathEvaluator()
        pattern.aftermath = evaluator.evaluate(pattern, candles)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def evaluate(self, pattern: DetectedPattern, candles: Sequence[Candle]) -> Optional[Aftermath]:
        """Return the aftermath of a completed pattern, or None for forming ones."""
        if pattern.status != PatternStatus.COMPLETED or len(pattern.neckline) < 2:
            return None
        if pattern.direction not in (Direction.BULLISH, Direction.BEARISH):
            return None

        s = self.settings
        bullish = pattern.direction == Direction.BULLISH
        a, b = pattern.neckline[0], pattern.neckline[-1]
        neckline = line_through(a.index, a.price, b.index, b.price)
        last = len(candles) - 1

        breakout = None
        for i in range(pattern.range.end + 1, min(last, pattern.range.end + s.breakout_scan_bars) + 1):
            if candles[i].is_provisional:
                break
            nl = neckline.value_at(i)
            if (bullish and candles[i].close > nl) or (not bullish and candles[i].close < nl):
                breakout = i
                break
        if breakout is None:
            return Aftermath(outcome=AftermathOutcome.INSUFFICIENT_DATA)

        nl_at_break = neckline.value_at(breakout)
        margin = s.breakout_margin_pct
        confirmed = any(
            (c.close > neckline.value_at(i) * (1 + margin)) if bullish
            else (c.close < neckline.value_at(i) * (1 - margin))
            for i, c in self._closed(candles, breakout, breakout + s.evaluation_window_bars)
        )

        base = candles[breakout].close
        moves: dict[str, PriceMove] = {}
        for h in s.aftermath_horizons:
            if breakout + h > last:
                continue
            window = candles[breakout + 1:breakout + h + 1]
            moves[str(h)] = PriceMove(
                return_pct=round(pct_change(base, candles[breakout + h].close), 2),
                high=round(max(c.high for c in window), 8),
                low=round(min(c.low for c in window), 8),
            )

        prices = [p.price for p in pattern.pivots]
        extreme = min(prices) if bullish else max(prices)
        height = abs(nl_at_break - extreme)
        target = nl_at_break + height if bullish else nl_at_break - height

        days_to_target = None
        for i in range(breakout + 1, min(last, breakout + s.evaluation_window_bars) + 1):
            c = candles[i]
            if (bullish and c.high >= target) or (not bullish and c.low <= target):
                days_to_target = i - breakout
                break

        outcome = self._outcome(confirmed, days_to_target is not None, moves, bullish)
        return Aftermath(
            breakout_date=candles[breakout].iso_time,
            breakout_index=breakout,
            breakout_confirmed=confirmed,
            price_move=moves,
            target_reached=days_to_target is not None,
            theoretical_target=round(target, 8),
            outcome=outcome,
            days_to_target=days_to_target,
        )

    def summarize(self, patterns: Sequence[DetectedPattern]) -> dict[str, dict]:
        """Per-type statistics over evaluated patterns."""
        stats: dict[str, dict] = {}
        for ptype in sorted({p.type.value for p in patterns}):
            group = [p for p in patterns if p.type.value == ptype]
            evaluated = [p.aftermath for p in group if p.aftermath is not None]
            graded = [a for a in evaluated if a.outcome != AftermathOutcome.INSUFFICIENT_DATA]
            r7 = [a.price_move["7"].return_pct for a in graded if "7" in a.price_move]
            r14 = [a.price_move["14"].return_pct for a in graded if "14" in a.price_move]
            hits = sum(1 for a in graded if a.target_reached)
            stats[ptype] = {
                "detected": len(group),
                "with_aftermath": len(graded),
                "success_rate": round(hits / len(graded), 2) if graded else None,
                "avg_return_7": round(float(np.mean(r7)), 2) if r7 else None,
                "avg_return_14": round(float(np.mean(r14)), 2) if r14 else None,
                "median_return_7": round(float(np.median(r7)), 2) if r7 else None,
            }
        return stats

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _closed(candles: Sequence[Candle], start: int, end: int):
        for i in range(start, min(end, len(candles) - 1) + 1):
            if candles[i].is_provisional:
                return
            yield i, candles[i]

    def _outcome(
        self,
        confirmed: bool,
        reached: bool,
        moves: dict[str, PriceMove],
        bullish: bool,
    ) -> AftermathOutcome:
        if not confirmed:
            return AftermathOutcome.UNCONFIRMED_BREAKOUT
        if reached:
            return AftermathOutcome.TARGET_REACHED
        if not moves:
            return AftermathOutcome.INSUFFICIENT_DATA

        best = max((m.return_pct for m in moves.values()), key=abs)
        expected = best > 0 if bullish else best < 0
        if abs(best) > self.settings.partial_move_pct:
            return AftermathOutcome.PARTIAL_MOVE if expected else AftermathOutcome.FAILED_BREAKOUT
        return AftermathOutcome.NO_FOLLOW_THROUGH
