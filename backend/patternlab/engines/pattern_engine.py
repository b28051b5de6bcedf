"""
PatternLab — Pattern Detection Engine

Rule-based detection of geometric chart patterns from swing pivots.
Deterministic analysis, no ML required.

Chart Patterns (9):
  Double Top/Bottom, Head & Shoulders (& Inverse),
  Ascending/Descending/Symmetrical Triangle, Rising/Falling Wedge

Every match carries a confidence in [0, 1], a neckline and a lifecycle
status: forming → near_completion → completed. A completed pattern is
terminal. Partially built double tops/bottoms and head-and-shoulders
(right side still missing) come from ``detect_emerging_patterns``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Iterable, Optional, Sequence

import numpy as np
import structlog

from patternlab.config import Settings, get_settings
from patternlab.engines.pattern_params import ResolvedParams
from patternlab.engines.swing_engine import SwingDetector
from patternlab.engines.trendlines import (
    Trendline,
    clamp01,
    fit_line,
    fit_quality,
    intersection_x,
    line_through,
    margin_from_rel_dev,
    rel_dev,
)
from patternlab.models import (
    Candle,
    DebugCandidate,
    DetectedPattern,
    Direction,
    NecklinePoint,
    PatternRange,
    PatternStatus,
    PatternType,
    SwingKind,
    SwingPivot,
)
from patternlab.utils.validators import ensure_utc

log = structlog.get_logger(__name__)


PATTERN_DIRECTIONS = MappingProxyType({
    PatternType.DOUBLE_TOP: Direction.BEARISH,
    PatternType.DOUBLE_BOTTOM: Direction.BULLISH,
    PatternType.HEAD_AND_SHOULDERS: Direction.BEARISH,
    PatternType.INVERSE_HEAD_AND_SHOULDERS: Direction.BULLISH,
    PatternType.TRIANGLE_ASCENDING: Direction.BULLISH,
    PatternType.TRIANGLE_DESCENDING: Direction.BEARISH,
    PatternType.TRIANGLE_SYMMETRICAL: Direction.NEUTRAL,
    PatternType.RISING_WEDGE: Direction.BEARISH,
    PatternType.FALLING_WEDGE: Direction.BULLISH,
})

TRIANGLES = frozenset({
    PatternType.TRIANGLE_ASCENDING,
    PatternType.TRIANGLE_DESCENDING,
    PatternType.TRIANGLE_SYMMETRICAL,
})
WEDGES = frozenset({PatternType.RISING_WEDGE, PatternType.FALLING_WEDGE})
HEAD_AND_SHOULDERS = frozenset({
    PatternType.HEAD_AND_SHOULDERS,
    PatternType.INVERSE_HEAD_AND_SHOULDERS,
})


# ──────────────────────────────────────────────
# Result Data Models
# ──────────────────────────────────────────────

@dataclass
class PatternCandidate:
    """A template match before its lifecycle status is resolved."""
    type: PatternType
    direction: Direction
    confidence: float
    pivots: list[SwingPivot]
    neckline: Trendline
    upper: Optional[Trendline] = None    # converging patterns only
    lower: Optional[Trendline] = None
    invalidation: Optional[float] = None
    break_buffer: float = 0.0            # absolute price buffer (wedges)
    fallback: Optional[str] = None

    @property
    def start(self) -> int:
        return self.pivots[0].index

    @property
    def end(self) -> int:
        return self.pivots[-1].index

    @property
    def indices(self) -> list[int]:
        return [p.index for p in self.pivots]

    @property
    def is_converging(self) -> bool:
        return self.upper is not None and self.lower is not None


@dataclass
class ClassificationResult:
    """Patterns plus the trace needed to explain them."""
    patterns: list[DetectedPattern] = field(default_factory=list)
    pivots: list[SwingPivot] = field(default_factory=list)
    candidates: list[DebugCandidate] = field(default_factory=list)


class PatternEngine:
    """Geometric chart-pattern classifier.

    Usage:
        engine = PatternEngine()
        result = engine.classify(candles, resolve_params(Timeframe.D1))
    """

    def __init__(self, settings: Optional[Settings] = None, swing_detector: Optional[SwingDetector] = None):
        self.settings = settings or get_settings()
        self.swings = swing_detector or SwingDetector()

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def classify(
        self,
        candles: Sequence[Candle],
        params: ResolvedParams,
        pattern_types: Optional[Iterable[PatternType]] = None,
        include_forming: bool = True,
        allow_partial: bool = False,
    ) -> ClassificationResult:
        """Match every template against the pivot sequence and resolve status.

        A provisional last candle takes part in swing detection only when
        ``allow_partial`` is set. It never completes a pattern either way.
        """
        pivots = self.swings.detect(
            candles, params.swing_depth, params.min_bars_between_swings, allow_partial=allow_partial,
        )
        result = ClassificationResult(pivots=pivots)
        if len(pivots) < 3:
            return result

        wanted = set(pattern_types) if pattern_types else set(PatternType)
        trace = result.candidates

        candidates: list[PatternCandidate] = []
        candidates.extend(self._detect_double(pivots, params, trace, top=True))
        candidates.extend(self._detect_double(pivots, params, trace, top=False))
        candidates.extend(self._detect_head_and_shoulders(pivots, params, trace, top=True))
        candidates.extend(self._detect_head_and_shoulders(pivots, params, trace, top=False))
        candidates.extend(self._detect_triangles(pivots, params, trace))
        candidates.extend(self._detect_wedges(pivots, candles, params, trace))

        closes = np.array([c.close for c in candles], dtype=float)
        best: dict[tuple, DetectedPattern] = {}
        for cand in candidates:
            if cand.type not in wanted:
                continue
            pattern, reason = self._resolve(cand, candles, closes, include_forming)
            trace.append(DebugCandidate(
                type=cand.type.value,
                accepted=pattern is not None,
                reason=reason or cand.fallback,
                indices=cand.indices,
            ))
            if pattern is None:
                continue
            key = (pattern.type, pattern.range.start, pattern.range.end)
            if key not in best or pattern.confidence > best[key].confidence:
                best[key] = pattern

        result.patterns = sorted(best.values(), key=lambda p: (p.range.end, p.range.start, p.type.value))
        log.debug(
            "pattern_engine.classify",
            pivots=len(pivots),
            candidates=len(candidates),
            patterns=len(result.patterns),
        )
        return result

    def detect_emerging_patterns(
        self,
        candles: Sequence[Candle],
        pattern_types: Optional[Iterable[PatternType]] = None,
        min_completion: Optional[float] = None,
    ) -> list[DetectedPattern]:
        """Double tops/bottoms and (inverse) head-and-shoulders still missing their right side.

        Pivots are one-bar extremes confirmed by ``pivot_confirm_bars`` later
        bars, so the structure can be seen while the last leg is in progress.
        """
        s = self.settings
        floor = s.min_completion if min_completion is None else min_completion
        ref = self._last_closed_index(candles)
        if ref < 2 * s.pivot_confirm_bars + 2:
            return []

        window = candles[:ref + 1]
        closes = np.array([c.close for c in window], dtype=float)
        highs, lows = self.swings.split(self.swings.confirmed_pivots(window, s.pivot_confirm_bars))
        wanted = set(pattern_types) if pattern_types else set(PatternType)

        emerging: list[tuple[DetectedPattern, float]] = []
        for top in (True, False):
            ptype = PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM
            if ptype in wanted:
                found = self._emerging_double(window, closes, highs, lows, top)
                if found:
                    emerging.append(found)
            ptype = PatternType.HEAD_AND_SHOULDERS if top else PatternType.INVERSE_HEAD_AND_SHOULDERS
            if ptype in wanted:
                found = self._emerging_head_and_shoulders(window, closes, highs, lows, top)
                if found:
                    emerging.append(found)

        return [p for p, completion in emerging if completion >= floor]

    # ──────────────────────────────────────────
    # Template Matching
    # ──────────────────────────────────────────

    def _passes(self) -> list[tuple[float, float, Optional[str]]]:
        """(tolerance factor, confidence penalty, tag) for strict then relaxed passes."""
        s = self.settings
        relaxed = [(f, s.relaxed_confidence_penalty, f"relaxed_x{f:g}") for f in s.relaxed_tolerance_factors]
        return [(1.0, 1.0, None)] + relaxed

    def _match_level(
        self,
        ptype: PatternType,
        a: float,
        b: float,
        other_scores: tuple[float, ...],
        params: ResolvedParams,
    ) -> tuple[Optional[float], Optional[str], str]:
        """Try the strict pass, then relaxed tolerances, for two levels that should be equal.

        Returns (confidence, fallback_tag, reject_reason).
        """
        rd = rel_dev(a, b)
        reason = "levels_not_near"
        for factor, penalty, tag in self._passes():
            tol = params.tolerance_pct * factor
            if rd > tol:
                continue
            raw = (margin_from_rel_dev(rd, tol) + sum(other_scores)) / (1 + len(other_scores))
            conf = round(self._finalize(ptype, raw) * penalty, 2)
            if conf >= self._floor(ptype):
                return conf, tag, ""
            reason = "confidence_below_min"
        return None, None, reason

    def _detect_double(
        self,
        pivots: Sequence[SwingPivot],
        params: ResolvedParams,
        trace: list[DebugCandidate],
        top: bool,
    ) -> list[PatternCandidate]:
        """Double top (H,L,H) or double bottom (L,H,L)."""
        s = self.settings
        ptype = PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM
        edge = SwingKind.HIGH if top else SwingKind.LOW
        out: list[PatternCandidate] = []

        for k in range(len(pivots) - 2):
            a, mid, b = pivots[k:k + 3]
            if a.kind != edge:
                continue
            idxs = [a.index, mid.index, b.index]

            if b.index - a.index < s.min_pivot_gap_bars:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="pivots_too_close", indices=idxs))
                continue

            outer = max(a.price, b.price) if top else min(a.price, b.price)
            height = abs(outer - mid.price)
            if outer <= 0 or height / outer < s.min_pattern_height_pct:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="pattern_too_small", indices=idxs))
                continue

            scores = (self._symmetry(a, mid, b), self._period_score(a, b))
            conf, tag, reason = self._match_level(ptype, a.price, b.price, scores, params)
            if conf is None:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason=reason, indices=idxs))
                continue

            buf = s.invalidation_buffer_pct
            out.append(PatternCandidate(
                type=ptype,
                direction=PATTERN_DIRECTIONS[ptype],
                confidence=conf,
                pivots=[a, mid, b],
                neckline=line_through(a.index, mid.price, b.index, mid.price),
                invalidation=outer * (1 + buf) if top else outer * (1 - buf),
                fallback=tag,
            ))
        return out

    def _detect_head_and_shoulders(
        self,
        pivots: Sequence[SwingPivot],
        params: ResolvedParams,
        trace: list[DebugCandidate],
        top: bool,
    ) -> list[PatternCandidate]:
        """H&S (H,L,H,L,H) with a prominent head; inverse mirrors on lows."""
        s = self.settings
        ptype = PatternType.HEAD_AND_SHOULDERS if top else PatternType.INVERSE_HEAD_AND_SHOULDERS
        edge = SwingKind.HIGH if top else SwingKind.LOW
        out: list[PatternCandidate] = []

        for k in range(len(pivots) - 4):
            ls, t1, head, t2, rs = window = pivots[k:k + 5]
            if ls.kind != edge:
                continue
            idxs = [p.index for p in window]

            if any(q.index - p.index < s.min_pivot_gap_bars for p, q in zip(window, window[1:])):
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="pivots_too_close", indices=idxs))
                continue

            if top:
                head_ok = head.price > max(ls.price, rs.price) * (1 + s.head_prominence_pct)
            else:
                head_ok = head.price < min(ls.price, rs.price) * (1 - s.head_prominence_pct)
            if not head_ok:
                reason = "head_not_higher" if top else "head_not_lower"
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason=reason, indices=idxs))
                continue

            scores = (self._symmetry(ls, head, rs), self._period_score(ls, rs))
            conf, tag, reason = self._match_level(ptype, ls.price, rs.price, scores, params)
            if conf is None:
                if reason == "levels_not_near":
                    reason = "shoulders_not_near"
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason=reason, indices=idxs))
                continue

            buf = s.invalidation_buffer_pct
            out.append(PatternCandidate(
                type=ptype,
                direction=PATTERN_DIRECTIONS[ptype],
                confidence=conf,
                pivots=list(window),
                neckline=line_through(t1.index, t1.price, t2.index, t2.price),
                invalidation=head.price * (1 + buf) if top else head.price * (1 - buf),
                fallback=tag,
            ))
        return out

    def _detect_triangles(
        self,
        pivots: Sequence[SwingPivot],
        params: ResolvedParams,
        trace: list[DebugCandidate],
    ) -> list[PatternCandidate]:
        """Ascending, descending and symmetrical triangles over 5 consecutive pivots."""
        s = self.settings
        out: list[PatternCandidate] = []

        for k in range(len(pivots) - 4):
            window = list(pivots[k:k + 5])
            idxs = [p.index for p in window]
            highs, lows = self.swings.split(window)
            upper = fit_line([p.index for p in highs], [p.price for p in highs])
            lower = fit_line([p.index for p in lows], [p.price for p in lows])
            if upper is None or lower is None:
                continue

            start, end = window[0].index, window[-1].index
            span = end - start
            mean_price = float(np.mean([p.price for p in window]))
            if span <= 0 or mean_price <= 0:
                continue
            hi_move = upper.slope * span / mean_price
            lo_move = lower.slope * span / mean_price

            flat_tol = params.tolerance_pct * params.flat_coefficient
            hi_flat, lo_flat = abs(hi_move) <= flat_tol, abs(lo_move) <= flat_tol
            hi_falling, lo_rising = hi_move <= -s.triangle_move_pct, lo_move >= s.triangle_move_pct

            if lo_rising and hi_falling:
                ptype = PatternType.TRIANGLE_SYMMETRICAL
            elif lo_rising and hi_flat:
                ptype = PatternType.TRIANGLE_ASCENDING
            elif hi_falling and lo_flat:
                ptype = PatternType.TRIANGLE_DESCENDING
            else:
                # Same-direction slopes belong to the wedge scanner
                reason = "same_direction_slopes" if hi_move * lo_move > 0 else "no_triangle_shape"
                trace.append(DebugCandidate(type="triangle", accepted=False, reason=reason, indices=idxs))
                continue

            spread_start = upper.value_at(start) - lower.value_at(start)
            spread_end = upper.value_at(end) - lower.value_at(end)
            if spread_start <= 0 or spread_end <= 0 or spread_end >= spread_start * s.triangle_convergence_ratio:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="not_converging", indices=idxs))
                continue

            fit = min(
                fit_quality(upper, [p.index for p in highs], [p.price for p in highs]),
                fit_quality(lower, [p.index for p in lows], [p.price for p in lows]),
            )
            if fit < params.min_fit:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="poor_fit", indices=idxs))
                continue

            if not self._apex_in_range(upper, lower, end, span):
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="apex_out_of_range", indices=idxs))
                continue

            convergence = clamp01(1 - spread_end / spread_start)
            conf = round(self._finalize(ptype, (fit + convergence + min(upper.r2, lower.r2)) / 3), 2)
            if conf < self._floor(ptype):
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="confidence_below_min", indices=idxs))
                continue

            buf = s.invalidation_buffer_pct
            if ptype == PatternType.TRIANGLE_ASCENDING:
                neckline, invalidation = upper, min(p.price for p in lows) * (1 - buf)
            elif ptype == PatternType.TRIANGLE_DESCENDING:
                neckline, invalidation = lower, max(p.price for p in highs) * (1 + buf)
            else:
                neckline, invalidation = upper, None

            out.append(PatternCandidate(
                type=ptype,
                direction=PATTERN_DIRECTIONS[ptype],
                confidence=conf,
                pivots=window,
                neckline=neckline,
                upper=upper,
                lower=lower,
                invalidation=invalidation,
            ))
        return out

    def _detect_wedges(
        self,
        pivots: Sequence[SwingPivot],
        candles: Sequence[Candle],
        params: ResolvedParams,
        trace: list[DebugCandidate],
    ) -> list[PatternCandidate]:
        """Rising and falling wedges over 6 consecutive pivots (3 highs, 3 lows)."""
        s = self.settings
        out: list[PatternCandidate] = []

        for k in range(len(pivots) - 5):
            window = list(pivots[k:k + 6])
            idxs = [p.index for p in window]
            highs, lows = self.swings.split(window)
            upper = fit_line([p.index for p in highs], [p.price for p in highs])
            lower = fit_line([p.index for p in lows], [p.price for p in lows])
            if upper is None or lower is None:
                continue

            if upper.r2 < s.wedge_min_r2 or lower.r2 < s.wedge_min_r2:
                trace.append(DebugCandidate(type="wedge", accepted=False, reason="r2_below_threshold", indices=idxs))
                continue

            if upper.slope > 0 and lower.slope > 0 and lower.slope >= upper.slope * s.wedge_rising_slope_ratio:
                ptype = PatternType.RISING_WEDGE
            elif upper.slope < 0 and lower.slope < 0 and abs(upper.slope) >= abs(lower.slope) * s.wedge_falling_slope_ratio:
                ptype = PatternType.FALLING_WEDGE
            else:
                trace.append(DebugCandidate(type="wedge", accepted=False, reason="slopes_not_wedge", indices=idxs))
                continue

            start, end = window[0].index, window[-1].index
            span = end - start
            spread_start = upper.value_at(start) - lower.value_at(start)
            spread_end = upper.value_at(end) - lower.value_at(end)
            if spread_start <= 0 or spread_end <= 0:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="not_converging", indices=idxs))
                continue
            ratio = spread_end / spread_start
            if ratio >= s.wedge_max_convergence_ratio:
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="not_converging", indices=idxs))
                continue

            if not self._apex_in_range(upper, lower, end, span):
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="apex_out_of_range", indices=idxs))
                continue

            fit = min(
                fit_quality(upper, [p.index for p in highs], [p.price for p in highs]),
                fit_quality(lower, [p.index for p in lows], [p.price for p in lows]),
            )
            raw = ((upper.r2 + lower.r2) / 2 + (1 - ratio) + fit) / 3
            conf = round(self._finalize(ptype, raw), 2)
            if conf < self._floor(ptype):
                trace.append(DebugCandidate(type=ptype.value, accepted=False, reason="confidence_below_min", indices=idxs))
                continue

            buf = s.invalidation_buffer_pct
            rising = ptype == PatternType.RISING_WEDGE
            out.append(PatternCandidate(
                type=ptype,
                direction=PATTERN_DIRECTIONS[ptype],
                confidence=conf,
                pivots=window,
                neckline=lower if rising else upper,
                upper=upper,
                lower=lower,
                invalidation=(
                    max(p.price for p in highs) * (1 + buf) if rising
                    else min(p.price for p in lows) * (1 - buf)
                ),
                break_buffer=self._atr(candles, start, end) * s.wedge_break_atr_factor,
            ))
        return out

    # ──────────────────────────────────────────
    # Lifecycle Status
    # ──────────────────────────────────────────

    def _resolve(
        self,
        cand: PatternCandidate,
        candles: Sequence[Candle],
        closes: np.ndarray,
        include_forming: bool,
    ) -> tuple[Optional[DetectedPattern], Optional[str]]:
        """Decide completed / near_completion / forming, or reject with a reason."""
        s = self.settings
        last = len(candles) - 1
        scan_end = min(last, cand.end + s.breakout_window_bars)

        # Breakout bar is the first close across the line, the margin only confirms it
        first_cross: dict[Direction, int] = {}
        for i in range(cand.end + 1, scan_end + 1):
            # Only a closed bar can complete a pattern
            if candles[i].is_provisional:
                break
            close = float(closes[i])
            if not math.isfinite(close):
                continue
            crossed = self._breakout_direction(cand, i, close, confirmed=False)
            if crossed is not None:
                first_cross.setdefault(crossed, i)
            broke = self._breakout_direction(cand, i, close)
            if broke is not None:
                return self._build(
                    cand, candles, PatternStatus.COMPLETED,
                    direction=broke, breakout_index=first_cross.get(broke, i),
                ), None
            if self._invalidated(cand, close):
                return None, "invalidated"

        if last - cand.end > s.breakout_window_bars:
            return None, "no_breakout"
        if not include_forming:
            return None, "not_completed"

        ref = self._last_closed_index(candles)
        if cand.is_converging:
            apex = intersection_x(cand.upper, cand.lower)
            if apex is None or apex <= ref:
                return None, "apex_passed"
            progress = clamp01((ref - cand.start) / (apex - cand.start))
            near = progress >= s.near_completion_apex_ratio
            bars_to_apex = int(math.ceil(apex - ref))
            return self._build(
                cand, candles,
                PatternStatus.NEAR_COMPLETION if near else PatternStatus.FORMING,
                completion_pct=int(round(progress * 100)),
                apex_date=self._project_time(candles, ref, bars_to_apex),
                days_to_apex=bars_to_apex,
            ), None

        nl = cand.neckline.value_at(ref)
        if nl <= 0:
            return None, "invalid_neckline"
        cur = float(closes[ref])
        bearish = cand.direction == Direction.BEARISH
        extreme = max(p.price for p in cand.pivots) if bearish else min(p.price for p in cand.pivots)
        height = abs(extreme - nl)
        remaining = max(0.0, (cur - nl) / nl if bearish else (nl - cur) / nl)
        progress = clamp01(1 - remaining * nl / height) if height > 0 else 0.0
        near = remaining <= s.near_completion_distance_pct
        return self._build(
            cand, candles,
            PatternStatus.NEAR_COMPLETION if near else PatternStatus.FORMING,
            completion_pct=int(round(progress * 100)),
        ), None

    def _breakout_direction(
        self, cand: PatternCandidate, i: int, close: float, confirmed: bool = True,
    ) -> Optional[Direction]:
        """Direction of a close beyond the neckline at bar i, if any.

        With ``confirmed`` the close must also clear the breakout margin (the
        ATR buffer for wedges). Without it any close across the line counts.
        """
        m = self.settings.breakout_margin_pct if confirmed else 0.0
        if cand.type in WEDGES:
            buffer = cand.break_buffer if confirmed else 0.0
            if cand.direction == Direction.BULLISH and close > cand.upper.value_at(i) + buffer:
                return Direction.BULLISH
            if cand.direction == Direction.BEARISH and close < cand.lower.value_at(i) - buffer:
                return Direction.BEARISH
            return None
        if cand.type == PatternType.TRIANGLE_SYMMETRICAL:
            if close > cand.upper.value_at(i) * (1 + m):
                return Direction.BULLISH
            if close < cand.lower.value_at(i) * (1 - m):
                return Direction.BEARISH
            return None
        nl = cand.neckline.value_at(i)
        if cand.direction == Direction.BULLISH and close > nl * (1 + m):
            return Direction.BULLISH
        if cand.direction == Direction.BEARISH and close < nl * (1 - m):
            return Direction.BEARISH
        return None

    @staticmethod
    def _invalidated(cand: PatternCandidate, close: float) -> bool:
        if cand.invalidation is None:
            return False
        if cand.direction == Direction.BEARISH:
            return close > cand.invalidation
        if cand.direction == Direction.BULLISH:
            return close < cand.invalidation
        return False

    def _build(
        self,
        cand: PatternCandidate,
        candles: Sequence[Candle],
        status: PatternStatus,
        direction: Optional[Direction] = None,
        breakout_index: Optional[int] = None,
        completion_pct: Optional[int] = None,
        apex_date: Optional[datetime] = None,
        days_to_apex: Optional[int] = None,
    ) -> DetectedPattern:
        direction = direction or cand.direction
        neckline = cand.neckline
        # A symmetrical triangle's neckline is whichever side broke
        if cand.type == PatternType.TRIANGLE_SYMMETRICAL and direction == Direction.BEARISH:
            neckline = cand.lower

        completed = status == PatternStatus.COMPLETED
        return DetectedPattern(
            type=cand.type,
            direction=direction,
            confidence=clamp01(cand.confidence),
            range=PatternRange(
                start=cand.start,
                end=cand.end,
                start_time=candles[cand.start].iso_time,
                end_time=candles[cand.end].iso_time,
            ),
            pivots=list(cand.pivots),
            neckline=[
                NecklinePoint(index=cand.start, price=round(neckline.value_at(cand.start), 8)),
                NecklinePoint(index=cand.end, price=round(neckline.value_at(cand.end), 8)),
            ],
            status=status,
            apex_date=None if completed else apex_date,
            days_to_apex=None if completed else days_to_apex,
            completion_pct=None if completed else completion_pct,
            breakout_index=breakout_index if completed else None,
            breakout_date=candles[breakout_index].iso_time if completed else None,
            days_since_breakout=(len(candles) - 1 - breakout_index) if completed else None,
            invalidation_price=None if cand.invalidation is None else round(cand.invalidation, 8),
        )

    # ──────────────────────────────────────────
    # Emerging (partial) Structures
    # ──────────────────────────────────────────

    def _emerging_double(
        self,
        candles: Sequence[Candle],
        closes: np.ndarray,
        highs: list[SwingPivot],
        lows: list[SwingPivot],
        top: bool,
    ) -> Optional[tuple[DetectedPattern, float]]:
        """Left peak + valley confirmed, price climbing back toward the left peak."""
        s = self.settings
        peaks, valleys = (highs, lows) if top else (lows, highs)
        if not peaks or not valleys:
            return None
        left, valley = peaks[-1], valleys[-1]
        ref = len(candles) - 1
        cur = float(closes[ref])
        if valley.index <= left.index or left.price <= 0 or left.price == valley.price:
            return None

        left_pct = cur / left.price
        if abs(left_pct - 1) > s.right_peak_tolerance_pct:
            return None
        if (top and cur <= valley.price) or (not top and cur >= valley.price):
            return None
        invalidation = left.price * (1 + s.invalidation_buffer_pct) if top else left.price * (1 - s.invalidation_buffer_pct)
        if (top and cur > invalidation) or (not top and cur < invalidation):
            return None

        progress = clamp01((cur - valley.price) / (left.price - valley.price))
        if self._reversing(closes, top):
            progress = min(1.0, progress + s.reversal_bonus)
        completion = min(1.0, s.double_completion_base + progress * s.double_completion_span)
        closeness = clamp01(1 - abs(left_pct - 1))
        w = s.forming_closeness_weight
        confidence = round(clamp01(closeness * w + progress * (1 - w)), 2)

        ptype = PatternType.DOUBLE_TOP if top else PatternType.DOUBLE_BOTTOM
        near = abs(left_pct - 1) <= s.near_completion_distance_pct
        pattern = DetectedPattern(
            type=ptype,
            direction=PATTERN_DIRECTIONS[ptype],
            confidence=confidence,
            range=PatternRange(
                start=left.index, end=ref,
                start_time=left.iso_time, end_time=candles[ref].iso_time,
            ),
            pivots=[left, valley],
            neckline=[
                NecklinePoint(index=left.index, price=valley.price),
                NecklinePoint(index=ref, price=valley.price),
            ],
            status=PatternStatus.NEAR_COMPLETION if near else PatternStatus.FORMING,
            completion_pct=int(round(completion * 100)),
            invalidation_price=round(invalidation, 8),
        )
        return pattern, completion

    def _emerging_head_and_shoulders(
        self,
        candles: Sequence[Candle],
        closes: np.ndarray,
        highs: list[SwingPivot],
        lows: list[SwingPivot],
        top: bool,
    ) -> Optional[tuple[DetectedPattern, float]]:
        """Left shoulder, head and post-head valley confirmed; right shoulder building."""
        s = self.settings
        peaks, valleys = (highs, lows) if top else (lows, highs)
        ref = len(candles) - 1
        cur = float(closes[ref])

        # Latest qualifying left shoulder wins
        for i in range(len(peaks) - 2, -1, -1):
            left = peaks[i]
            if left.price <= 0:
                continue
            if top:
                head = next((p for p in peaks[i + 1:] if p.price > left.price * s.head_min_ratio), None)
            else:
                head = next((p for p in peaks[i + 1:] if p.price < left.price / s.head_min_ratio), None)
            if head is None:
                continue
            post = next((v for v in valleys if v.index > head.index), None)
            if post is None:
                continue

            near_left = cur / left.price
            if abs(near_left - 1) > s.right_peak_tolerance_pct:
                continue
            between = post.price < cur < head.price if top else head.price < cur < post.price
            if not between:
                continue

            closeness = clamp01(1 - abs(cur - left.price) / (left.price * s.right_peak_tolerance_pct))
            progress = closeness
            if self._reversing(closes, top):
                progress = min(1.0, progress + s.reversal_bonus)
            completion = min(1.0, s.head_shoulders_completion_base + s.head_shoulders_completion_span * progress)
            w = s.forming_closeness_weight
            confidence = round(clamp01(w * closeness + (1 - w) * progress), 2)

            pre = next((v for v in valleys if left.index < v.index < head.index), None)
            nl_start = NecklinePoint(index=pre.index, price=pre.price) if pre else NecklinePoint(index=left.index, price=post.price)
            buf = s.invalidation_buffer_pct
            invalidation = head.price * (1 + buf) if top else head.price * (1 - buf)
            ptype = PatternType.HEAD_AND_SHOULDERS if top else PatternType.INVERSE_HEAD_AND_SHOULDERS
            near = abs(near_left - 1) <= s.near_completion_distance_pct
            pattern = DetectedPattern(
                type=ptype,
                direction=PATTERN_DIRECTIONS[ptype],
                confidence=confidence,
                range=PatternRange(
                    start=left.index, end=ref,
                    start_time=left.iso_time, end_time=candles[ref].iso_time,
                ),
                pivots=[p for p in (left, pre, head, post) if p is not None],
                neckline=[nl_start, NecklinePoint(index=ref, price=post.price)],
                status=PatternStatus.NEAR_COMPLETION if near else PatternStatus.FORMING,
                completion_pct=int(round(completion * 100)),
                invalidation_price=round(invalidation, 8),
            )
            return pattern, completion
        return None

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    def _finalize(self, ptype: PatternType, raw: float) -> float:
        s = self.settings
        if ptype in HEAD_AND_SHOULDERS:
            raw *= s.head_shoulders_multiplier
        elif ptype in TRIANGLES:
            raw *= s.triangle_multiplier
        return clamp01(raw)

    def _floor(self, ptype: PatternType) -> float:
        s = self.settings
        if ptype in HEAD_AND_SHOULDERS:
            return s.min_confidence_head_shoulders
        if ptype in TRIANGLES:
            return s.min_confidence_triangle
        if ptype in WEDGES:
            return s.min_confidence_wedge
        return s.min_confidence_double

    @staticmethod
    def _symmetry(a: SwingPivot, mid: SwingPivot, b: SwingPivot) -> float:
        """1 when the middle pivot sits halfway (in bars) between a and b."""
        total = b.index - a.index
        if total <= 0:
            return 0.0
        left, right = mid.index - a.index, b.index - mid.index
        return clamp01(1 - abs(left - right) / total)

    @staticmethod
    def _period_score(a: SwingPivot, b: SwingPivot) -> float:
        """Score the calendar span between the outer pivots (unknown → 0.7)."""
        if a.iso_time is None or b.iso_time is None:
            return 0.7
        days = abs((ensure_utc(b.iso_time) - ensure_utc(a.iso_time)).total_seconds()) / 86400
        if days < 5:
            return 0.6
        if days < 15:
            return 0.8
        if days < 30:
            return 0.9
        return 0.7

    def _apex_in_range(self, upper: Trendline, lower: Trendline, end: int, span: int) -> bool:
        apex = intersection_x(upper, lower)
        if apex is None or apex <= end:
            return False
        return apex - end <= self.settings.max_apex_extension_ratio * span

    @staticmethod
    def _atr(candles: Sequence[Candle], start: int, end: int, period: int = 14) -> float:
        """Mean true range over the last ``period`` bars of [start, end]."""
        tr = []
        for i in range(max(1, start), end + 1):
            c, pc = candles[i], candles[i - 1].close
            tr.append(max(c.high - c.low, abs(c.high - pc), abs(c.low - pc)))
        if not tr:
            return 0.0
        return float(np.mean(tr[-period:]))

    @staticmethod
    def _reversing(closes: np.ndarray, top: bool) -> bool:
        """Last three closes moving away from the extreme (down for tops, up for bottoms)."""
        if len(closes) < 4:
            return False
        a, b, c, d = closes[-4:]
        if top:
            return d < c < b < a
        return d > c > b > a

    @staticmethod
    def _last_closed_index(candles: Sequence[Candle]) -> int:
        last = len(candles) - 1
        if last >= 0 and candles[last].is_provisional:
            return last - 1
        return last

    @staticmethod
    def _project_time(candles: Sequence[Candle], ref: int, bars_ahead: int) -> Optional[datetime]:
        """Extrapolate a timestamp ``bars_ahead`` bars after ``ref`` using the median bar interval."""
        times = [ensure_utc(c.iso_time) for c in candles[max(0, ref - 20):ref + 1] if c.iso_time is not None]
        if len(times) < 2 or candles[ref].iso_time is None:
            return None
        step = float(np.median([(b - a).total_seconds() for a, b in zip(times, times[1:])]))
        return ensure_utc(candles[ref].iso_time) + timedelta(seconds=round(step * bars_ahead))
