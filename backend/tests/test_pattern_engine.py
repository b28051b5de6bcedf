"""
PatternLab — Geometric Pattern Engine Tests

Tests for:
- Double top detection, neckline and breakout completion
- Every other template on an engineered series (type, neckline, status)
- Apex projection for converging patterns
- Provisional last candles in swing detection
- Breakout bar agreement with the aftermath evaluator
- Confidence bounds and debug trace reason codes
- Monotonic relaxation in tolerance_pct
- Timeframe-aware parameter resolution
- Emerging (right side missing) double tops
- Trendline helpers
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest


def _interp(anchors):
    closes = []
    for (i0, p0), (i1, p1) in zip(anchors, anchors[1:]):
        for i in range(i0, i1):
            closes.append(p0 + (p1 - p0) * (i - i0) / (i1 - i0))
    closes.append(anchors[-1][1])
    return closes


def _make_candles(closes, spread: float = 0.5):
    from patternlab.models import Candle

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        Candle(open=c, high=c + spread, low=c - spread, close=c, iso_time=base + timedelta(days=i))
        for i, c in enumerate(closes)
    ]


def _double_top_candles():
    # peaks at 10 and 30, valley at 20, breakdown afterwards, flat tail
    closes = _interp([(0, 100), (10, 120), (20, 105), (30, 120.5), (40, 95)]) + [95.0] * 5
    return _make_candles(closes)


def _params(tolerance=0.04):
    from patternlab.engines.pattern_params import resolve_params
    from patternlab.models import Timeframe

    return resolve_params(Timeframe.D1, swing_depth=3, min_bars_between_swings=2, tolerance_pct=tolerance)


# ════════════════════════════════════════════════
#  CLASSIFIER
# ════════════════════════════════════════════════


class TestDoubleTop:

    def test_completed_double_top(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        result = PatternEngine().classify(_double_top_candles(), _params())
        tops = [p for p in result.patterns if p.type == PatternType.DOUBLE_TOP]
        assert len(tops) == 1
        top = tops[0]
        assert top.status == PatternStatus.COMPLETED
        assert top.direction == Direction.BEARISH
        assert (top.range.start, top.range.end) == (10, 30)
        assert top.breakout_index == 37
        assert top.days_since_breakout == 45 - 37
        assert top.completion_pct is None

    def test_neckline_at_valley(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternType

        result = PatternEngine().classify(_double_top_candles(), _params())
        top = next(p for p in result.patterns if p.type == PatternType.DOUBLE_TOP)
        assert [pt.price for pt in top.neckline] == [pytest.approx(104.5), pytest.approx(104.5)]

    def test_confidence_in_unit_interval(self):
        from patternlab.engines.pattern_engine import PatternEngine

        result = PatternEngine().classify(_double_top_candles(), _params())
        assert result.patterns
        for p in result.patterns:
            assert 0.0 <= p.confidence <= 1.0

    def test_forming_before_breakout(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternStatus, PatternType

        # cut the series before the breakdown bar
        candles = _double_top_candles()[:36]
        result = PatternEngine().classify(candles, _params())
        top = next(p for p in result.patterns if p.type == PatternType.DOUBLE_TOP)
        assert top.status in (PatternStatus.FORMING, PatternStatus.NEAR_COMPLETION)
        assert top.breakout_index is None
        assert 0 <= top.completion_pct <= 100

    def test_exclude_forming(self):
        from patternlab.engines.pattern_engine import PatternEngine

        candles = _double_top_candles()[:36]
        result = PatternEngine().classify(candles, _params(), include_forming=False)
        assert result.patterns == []
        assert any(c.reason == "not_completed" for c in result.candidates)

    def test_provisional_bar_never_completes(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import CandleState, PatternStatus, PatternType

        candles = _double_top_candles()[:38]
        candles[-1] = candles[-1].model_copy(update={"state": CandleState.PROVISIONAL})
        result = PatternEngine().classify(candles, _params())
        top = next(p for p in result.patterns if p.type == PatternType.DOUBLE_TOP)
        assert top.status != PatternStatus.COMPLETED

    def test_pattern_type_filter(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternType

        result = PatternEngine().classify(
            _double_top_candles(), _params(), pattern_types=[PatternType.TRIANGLE_ASCENDING],
        )
        assert result.patterns == []

    def test_unequal_peaks_rejected_with_reason(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternType

        closes = _interp([(0, 100), (10, 120), (20, 105), (30, 140), (40, 95)]) + [95.0] * 5
        result = PatternEngine().classify(_make_candles(closes), _params(0.01))
        assert not [p for p in result.patterns if p.type == PatternType.DOUBLE_TOP]
        reasons = {c.reason for c in result.candidates if c.type == "double_top"}
        assert "levels_not_near" in reasons


def _with_provisional_spike(candles, high=200.0):
    from patternlab.models import Candle, CandleState

    last = candles[-1]
    spike = Candle(
        open=last.close, high=high, low=last.close - 1, close=last.close,
        iso_time=last.iso_time + timedelta(days=1), state=CandleState.PROVISIONAL,
    )
    return candles + [spike]


class TestProvisionalCandle:

    def test_spike_cannot_veto_confirmed_pivot(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternStatus, PatternType, SwingKind

        # bar 33 sits inside pivot 30's right-hand window
        candles = _with_provisional_spike(_double_top_candles()[:33])
        result = PatternEngine().classify(candles, _params())
        assert [(p.index, p.kind) for p in result.pivots] == [
            (10, SwingKind.HIGH), (20, SwingKind.LOW), (30, SwingKind.HIGH),
        ]
        top = next(p for p in result.patterns if p.type == PatternType.DOUBLE_TOP)
        assert (top.range.start, top.range.end) == (10, 30)
        assert top.status == PatternStatus.FORMING

    def test_spike_counts_when_partial_allowed(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternType, SwingKind

        candles = _with_provisional_spike(_double_top_candles()[:33])
        result = PatternEngine().classify(candles, _params(), allow_partial=True)
        assert (30, SwingKind.HIGH) not in [(p.index, p.kind) for p in result.pivots]
        assert not [p for p in result.patterns if p.type == PatternType.DOUBLE_TOP]

    def test_completed_pattern_unchanged_by_trailing_spike(self):
        from patternlab.engines.pattern_engine import PatternEngine

        candles = _double_top_candles()
        clean = PatternEngine().classify(candles, _params())
        spiked = PatternEngine().classify(_with_provisional_spike(candles), _params())
        assert [p.model_dump() for p in spiked.pivots] == [p.model_dump() for p in clean.pivots]
        assert [(p.type, p.breakout_index) for p in spiked.patterns] == [
            (p.type, p.breakout_index) for p in clean.patterns
        ]


class TestBreakoutBar:

    def _shallow_first_cross_candles(self):
        # bar 35 closes just under the 104.5 neckline, bar 37 clears the margin
        closes = _interp([
            (0, 100), (10, 120), (20, 105), (30, 120.5), (34, 106),
            (35, 104.0), (36, 105.0), (38, 100), (45, 95),
        ]) + [95.0] * 5
        return _make_candles(closes)

    def test_breakout_bar_is_first_close_across_neckline(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternStatus, PatternType

        candles = self._shallow_first_cross_candles()
        result = PatternEngine().classify(candles, _params(), pattern_types=[PatternType.DOUBLE_TOP])
        top = next(p for p in result.patterns if (p.range.start, p.range.end) == (10, 30))
        assert top.status == PatternStatus.COMPLETED
        assert top.breakout_index == 35
        assert top.breakout_date == candles[35].iso_time
        assert top.days_since_breakout == 50 - 35

    def test_breakout_bar_matches_aftermath(self):
        from patternlab.engines.aftermath_engine import AftermathEvaluator
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternType

        candles = self._shallow_first_cross_candles()
        result = PatternEngine().classify(candles, _params(), pattern_types=[PatternType.DOUBLE_TOP])
        top = next(p for p in result.patterns if (p.range.start, p.range.end) == (10, 30))
        aftermath = AftermathEvaluator().evaluate(top, candles)
        assert aftermath.breakout_confirmed is True
        assert aftermath.breakout_index == top.breakout_index
        assert aftermath.breakout_date == top.breakout_date


# ════════════════════════════════════════════════
#  TEMPLATES
# ════════════════════════════════════════════════


def _only(result, ptype, start, end):
    found = [p for p in result.patterns if p.type == ptype and (p.range.start, p.range.end) == (start, end)]
    assert len(found) == 1
    return found[0]


def _neckline_prices(pattern):
    return [pt.price for pt in pattern.neckline]


class TestTemplates:

    def test_double_bottom(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        closes = _interp([(0, 120), (10, 100), (20, 115), (30, 99.5), (40, 125)]) + [125.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.DOUBLE_BOTTOM],
        )
        bottom = _only(result, PatternType.DOUBLE_BOTTOM, 10, 30)
        assert bottom.status == PatternStatus.COMPLETED
        assert bottom.direction == Direction.BULLISH
        assert _neckline_prices(bottom) == [pytest.approx(115.5), pytest.approx(115.5)]
        assert bottom.breakout_index == 37

    def test_head_and_shoulders(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        closes = _interp([
            (0, 100), (8, 110), (16, 104), (24, 118), (32, 104.5), (40, 110.5), (48, 95),
        ]) + [95.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.HEAD_AND_SHOULDERS],
        )
        hs = _only(result, PatternType.HEAD_AND_SHOULDERS, 8, 40)
        assert hs.status == PatternStatus.COMPLETED
        assert hs.direction == Direction.BEARISH
        # sloped neckline through the troughs at 16 and 32
        assert _neckline_prices(hs) == [pytest.approx(103.25), pytest.approx(104.25)]
        assert hs.breakout_index == 44

    def test_inverse_head_and_shoulders(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        closes = _interp([
            (0, 120), (8, 110), (16, 116), (24, 102), (32, 115.5), (40, 109.5), (48, 125),
        ]) + [125.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.INVERSE_HEAD_AND_SHOULDERS],
        )
        ihs = _only(result, PatternType.INVERSE_HEAD_AND_SHOULDERS, 8, 40)
        assert ihs.status == PatternStatus.COMPLETED
        assert ihs.direction == Direction.BULLISH
        assert _neckline_prices(ihs) == [pytest.approx(116.75), pytest.approx(115.75)]
        assert ihs.breakout_index == 44

    def test_ascending_triangle(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        closes = _interp([
            (0, 100), (6, 120), (12, 104), (18, 120), (24, 108), (30, 120), (36, 112), (42, 126),
        ]) + [126.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.TRIANGLE_ASCENDING],
        )
        tri = _only(result, PatternType.TRIANGLE_ASCENDING, 6, 30)
        assert tri.status == PatternStatus.COMPLETED
        assert tri.direction == Direction.BULLISH
        assert _neckline_prices(tri) == [pytest.approx(120.5), pytest.approx(120.5)]
        assert tri.breakout_index == 40

    def test_descending_triangle(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        closes = _interp([
            (0, 120), (6, 100), (12, 116), (18, 100), (24, 112), (30, 100), (36, 108), (42, 94),
        ]) + [94.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.TRIANGLE_DESCENDING],
        )
        tri = _only(result, PatternType.TRIANGLE_DESCENDING, 6, 30)
        assert tri.status == PatternStatus.COMPLETED
        assert tri.direction == Direction.BEARISH
        assert _neckline_prices(tri) == [pytest.approx(99.5), pytest.approx(99.5)]
        assert tri.breakout_index == 40

    def test_symmetrical_triangle_near_apex(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        # lines meet at bar 55.5; last bar 44 is 77% of the way from bar 6
        closes = _interp([
            (0, 100), (6, 130), (12, 100), (18, 126), (24, 104), (30, 122), (36, 108), (44, 116),
        ])
        candles = _make_candles(closes)
        result = PatternEngine().classify(
            candles, _params(), pattern_types=[PatternType.TRIANGLE_SYMMETRICAL],
        )
        tri = _only(result, PatternType.TRIANGLE_SYMMETRICAL, 6, 30)
        assert tri.status == PatternStatus.NEAR_COMPLETION
        assert tri.direction == Direction.NEUTRAL
        assert _neckline_prices(tri) == [pytest.approx(130.5), pytest.approx(122.5)]
        assert tri.completion_pct == 77
        assert tri.days_to_apex == 12
        assert tri.apex_date == candles[44].iso_time + timedelta(days=12)
        assert tri.breakout_index is None

    def test_later_symmetrical_window_still_forming(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternStatus, PatternType

        closes = _interp([
            (0, 100), (6, 130), (12, 100), (18, 126), (24, 104), (30, 122), (36, 108), (44, 116),
        ])
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.TRIANGLE_SYMMETRICAL],
        )
        tri = _only(result, PatternType.TRIANGLE_SYMMETRICAL, 12, 36)
        assert tri.status == PatternStatus.FORMING
        assert tri.completion_pct == 74

    def test_rising_wedge(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        # lows climb 5/6 per bar against 1/3 for the highs
        closes = _interp([
            (0, 110), (6, 100.5), (12, 119.5), (18, 110.5), (24, 123.5), (30, 120.5), (36, 127.5), (44, 110),
        ]) + [110.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.RISING_WEDGE],
        )
        wedge = _only(result, PatternType.RISING_WEDGE, 6, 36)
        assert wedge.status == PatternStatus.COMPLETED
        assert wedge.direction == Direction.BEARISH
        assert _neckline_prices(wedge) == [pytest.approx(100.0), pytest.approx(125.0)]
        assert wedge.breakout_index == 37

    def test_falling_wedge(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import Direction, PatternStatus, PatternType

        closes = _interp([
            (0, 118), (6, 127.5), (12, 108.5), (18, 117.5), (24, 104.5), (30, 107.5), (36, 100.5), (44, 118),
        ]) + [118.0] * 5
        result = PatternEngine().classify(
            _make_candles(closes), _params(), pattern_types=[PatternType.FALLING_WEDGE],
        )
        wedge = _only(result, PatternType.FALLING_WEDGE, 6, 36)
        assert wedge.status == PatternStatus.COMPLETED
        assert wedge.direction == Direction.BULLISH
        assert _neckline_prices(wedge) == [pytest.approx(128.0), pytest.approx(103.0)]
        assert wedge.breakout_index == 37


class TestMonotonicTolerance:

    @pytest.mark.parametrize("seed", [3, 11, 99])
    def test_count_never_decreases(self, seed):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.engines.pattern_params import resolve_params
        from patternlab.models import Timeframe

        rng = np.random.default_rng(seed)
        closes = (1000 + np.cumsum(rng.normal(0, 12, 250))).tolist()
        candles = _make_candles(closes, spread=4.0)
        engine = PatternEngine()

        counts = []
        for tol in (0.0, 0.01, 0.02, 0.04, 0.06, 0.08, 0.1):
            params = resolve_params(Timeframe.D1, swing_depth=2, min_bars_between_swings=2, tolerance_pct=tol)
            counts.append(len(engine.classify(candles, params).patterns))
        assert counts == sorted(counts)

    def test_idempotent(self):
        from patternlab.engines.pattern_engine import PatternEngine

        candles = _double_top_candles()
        a = PatternEngine().classify(candles, _params())
        b = PatternEngine().classify(candles, _params())
        assert [p.model_dump() for p in a.patterns] == [p.model_dump() for p in b.patterns]


# ════════════════════════════════════════════════
#  EMERGING PATTERNS
# ════════════════════════════════════════════════


class TestEmergingPatterns:

    def test_emerging_double_top(self):
        from patternlab.engines.pattern_engine import PatternEngine
        from patternlab.models import PatternStatus, PatternType

        closes = _interp([(0, 100), (10, 120), (20, 105), (28, 118)])
        found = PatternEngine().detect_emerging_patterns(_make_candles(closes))
        assert [p.type for p in found] == [PatternType.DOUBLE_TOP]
        top = found[0]
        assert top.status == PatternStatus.FORMING
        assert top.completion_pct == 95
        assert top.range.start == 10 and top.range.end == 28
        assert top.neckline[0].price == pytest.approx(104.5)
        assert 0.0 <= top.confidence <= 1.0

    def test_min_completion_filters(self):
        from patternlab.engines.pattern_engine import PatternEngine

        closes = _interp([(0, 100), (10, 120), (20, 105), (28, 118)])
        assert PatternEngine().detect_emerging_patterns(_make_candles(closes), min_completion=0.99) == []

    def test_beyond_invalidation_rejected(self):
        from patternlab.engines.pattern_engine import PatternEngine

        closes = _interp([(0, 100), (10, 120), (20, 105), (28, 124)])
        assert PatternEngine().detect_emerging_patterns(_make_candles(closes)) == []


# ════════════════════════════════════════════════
#  PARAMETERS & TRENDLINES
# ════════════════════════════════════════════════


class TestPatternParams:

    def test_timeframe_defaults(self):
        from patternlab.engines.pattern_params import resolve_params
        from patternlab.models import Timeframe

        p = resolve_params(Timeframe.H1)
        assert (p.swing_depth, p.min_bars_between_swings) == (3, 2)
        assert p.tolerance_pct == 0.05
        assert p.auto_scaled is True

    def test_explicit_values_win(self):
        from patternlab.engines.pattern_params import resolve_params
        from patternlab.models import Timeframe

        p = resolve_params(Timeframe.D1, swing_depth=4, tolerance_pct=0.02)
        assert p.swing_depth == 4
        assert p.tolerance_pct == 0.02
        assert p.min_bars_between_swings == 4
        assert p.auto_scaled is False

    def test_swing_defaults_only_from_timeframe_table(self):
        from patternlab.config import Settings
        from patternlab.engines.pattern_params import resolve_params
        from patternlab.models import Timeframe

        p = resolve_params(Timeframe.D1)
        assert (p.swing_depth, p.min_bars_between_swings, p.tolerance_pct) == (6, 4, 0.04)
        assert not {"swing_depth", "min_bars_between_swings", "tolerance_pct"} & set(Settings.model_fields)

    def test_relevance_bars(self):
        from patternlab.engines.pattern_params import default_relevance_bars
        from patternlab.models import Timeframe

        assert default_relevance_bars(Timeframe.MO) == 2
        assert default_relevance_bars(Timeframe.D1) == 7


class TestTrendlines:

    def test_fit_line_exact(self):
        from patternlab.engines.trendlines import fit_line

        line = fit_line([0, 1, 2], [1, 3, 5])
        assert line.slope == pytest.approx(2.0)
        assert line.intercept == pytest.approx(1.0)
        assert line.r2 == pytest.approx(1.0)

    def test_fit_line_degenerate(self):
        from patternlab.engines.trendlines import fit_line

        assert fit_line([1], [1]) is None
        assert fit_line([2, 2], [1, 3]) is None

    def test_intersection(self):
        from patternlab.engines.trendlines import intersection_x, line_through

        up = line_through(0, 0, 10, 10)
        down = line_through(0, 20, 10, 10)
        assert intersection_x(up, down) == pytest.approx(10.0)
        assert intersection_x(up, up) is None

    def test_near(self):
        from patternlab.engines.trendlines import near

        assert near(100.0, 103.0, 0.04)
        assert not near(100.0, 105.0, 0.04)
        assert near(0.0, 0.0, 0.0)
