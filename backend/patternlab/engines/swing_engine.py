"""
PatternLab — Swing Detection Engine

Finds confirmed local price extremes (swing pivots) in a candle series.
A bar is a swing high when its high is >= every high within ``swing_depth``
bars on both sides; a tie with an earlier bar belongs to the earlier bar.
Swing lows mirror this on the lows. The returned pivots always alternate
high / low.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import structlog

from patternlab.models import Candle, SwingKind, SwingPivot

log = structlog.get_logger(__name__)


class SwingDetector:
    """Pivot finder over an ordered candle series.

    Usage:
        detector = SwingDetector()
        pivots = detector.detect(candles, swing_depth=5, min_bars_between_swings=3)
    """

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def detect(
        self,
        candles: Sequence[Candle],
        swing_depth: int,
        min_bars_between_swings: int = 1,
        allow_partial: bool = False,
    ) -> list[SwingPivot]:
        """Return alternating swing pivots, oldest first.

        A series shorter than ``2 * swing_depth + 1`` has no confirmable bar
        and yields an empty list; callers treat that as insufficient data.
        A provisional bar keeps its slot in the window but is masked like a
        non-finite one unless ``allow_partial`` is set.
        """
        n = len(candles)
        if swing_depth < 1 or n < 2 * swing_depth + 1:
            return []

        h = np.array([c.high for c in candles], dtype=float)
        l = np.array([c.low for c in candles], dtype=float)
        usable = np.isfinite(h) & np.isfinite(l)
        if not allow_partial:
            usable &= np.array([not c.is_provisional for c in candles], dtype=bool)
        # Masked bars never win a comparison
        h = np.where(usable, h, -np.inf)
        l = np.where(usable, l, np.inf)

        highs: list[SwingPivot] = []
        lows: list[SwingPivot] = []
        for i in range(swing_depth, n - swing_depth):
            if not usable[i]:
                continue
            left_h, right_h = h[i - swing_depth:i], h[i + 1:i + swing_depth + 1]
            if h[i] > left_h.max() and h[i] >= right_h.max():
                highs.append(self._pivot(candles, i, SwingKind.HIGH))
                continue
            left_l, right_l = l[i - swing_depth:i], l[i + 1:i + swing_depth + 1]
            if l[i] < left_l.min() and l[i] <= right_l.min():
                lows.append(self._pivot(candles, i, SwingKind.LOW))

        highs = self._collapse_close(highs, min_bars_between_swings)
        lows = self._collapse_close(lows, min_bars_between_swings)
        pivots = self._alternate(sorted(highs + lows, key=lambda p: p.index))

        log.debug("swing_engine.detect", bars=n, depth=swing_depth, pivots=len(pivots))
        return pivots

    def confirmed_pivots(self, candles: Sequence[Candle], confirm_bars: int) -> list[SwingPivot]:
        """One-bar pivots that have at least ``confirm_bars`` bars after them.

        Used for partially formed structures, where the deep-window pivots of
        ``detect`` would lag too far behind the latest bar.
        """
        last_idx = len(candles) - 1
        return [
            p for p in self.detect(candles, swing_depth=1, min_bars_between_swings=1)
            if last_idx - p.index >= confirm_bars
        ]

    @staticmethod
    def split(pivots: Sequence[SwingPivot]) -> tuple[list[SwingPivot], list[SwingPivot]]:
        """Separate pivots into (highs, lows)."""
        highs = [p for p in pivots if p.kind == SwingKind.HIGH]
        lows = [p for p in pivots if p.kind == SwingKind.LOW]
        return highs, lows

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _pivot(candles: Sequence[Candle], i: int, kind: SwingKind) -> SwingPivot:
        c = candles[i]
        price = c.high if kind == SwingKind.HIGH else c.low
        return SwingPivot(index=i, price=float(price), kind=kind, iso_time=c.iso_time)

    @staticmethod
    def _more_extreme(a: SwingPivot, b: SwingPivot) -> bool:
        """True if a is strictly more extreme than b (ties keep b)."""
        if a.kind == SwingKind.HIGH:
            return a.price > b.price
        return a.price < b.price

    def _collapse_close(self, pivots: list[SwingPivot], min_gap: int) -> list[SwingPivot]:
        """Merge same-kind pivots closer than min_gap bars, keeping the extreme one."""
        kept: list[SwingPivot] = []
        for p in pivots:
            if kept and p.index - kept[-1].index < min_gap:
                if self._more_extreme(p, kept[-1]):
                    kept[-1] = p
                continue
            kept.append(p)
        return kept

    def _alternate(self, pivots: list[SwingPivot]) -> list[SwingPivot]:
        """Collapse runs of same-kind pivots so the sequence alternates."""
        out: list[SwingPivot] = []
        for p in pivots:
            if out and out[-1].kind == p.kind:
                if self._more_extreme(p, out[-1]):
                    out[-1] = p
                continue
            out.append(p)
        return out
