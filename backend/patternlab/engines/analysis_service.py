"""
PatternLab — Analysis Service

Entry boundary for every analysis: validates parameters and the candle
series, runs the engines and assembles the response envelope

    {"ok": True, "summary": str, "data": {...}, "meta": {...}}

Routes (and any other caller) go through these functions only; the engines
below never see unvalidated input.
"""

from __future__ import annotations

from typing import Optional, Sequence

import structlog

from patternlab.config import Settings, get_settings
from patternlab.engines.aftermath_engine import AftermathEvaluator
from patternlab.engines.backtest_engine import HistoricalBacktestEngine, MemoizedHistory
from patternlab.engines.candle_pair_engine import CANDLE_PAIR_DETECTORS, CandlePairEngine
from patternlab.engines.pattern_engine import PatternEngine
from patternlab.engines.pattern_params import ResolvedParams, default_relevance_bars, resolve_params
from patternlab.errors import InsufficientDataError
from patternlab.models import (
    Candle,
    CandlePairPattern,
    CandlePatternParams,
    DebugCandidate,
    DetectedPattern,
    DetectPatternsParams,
    FormingPatternsParams,
    PatternStatus,
    Timeframe,
    TrendLabel,
)
from patternlab.observability import trace_span
from patternlab.utils.validators import (
    apply_as_of,
    ensure_chronological,
    ensure_provisional_last,
    sanitize_candles,
    validate_float_range,
    validate_horizons,
    validate_int_range,
)

log = structlog.get_logger(__name__)


# ──────────────────────────────────────────────
# Entry Boundary
# ──────────────────────────────────────────────

def prepare_candles(
    candles: Sequence[Candle],
    timeframe: Timeframe,
    as_of=None,
) -> tuple[list[Candle], int]:
    """Drop malformed bars and enforce ordering. Returns (series, skipped)."""
    clean, skipped = sanitize_candles(candles)
    ensure_chronological(clean)
    ensure_provisional_last(clean)
    clean = apply_as_of(clean, timeframe, as_of)
    if skipped:
        log.warning("analysis.skipped_candles", skipped=skipped, total=len(candles))
    return clean, skipped


def _validate_swing_params(swing_depth, tolerance_pct, min_bars, limit) -> None:
    if swing_depth is not None:
        validate_int_range("swing_depth", swing_depth, 1, 10)
    if tolerance_pct is not None:
        validate_float_range("tolerance_pct", tolerance_pct, 0.0, 0.1)
    if min_bars is not None:
        validate_int_range("min_bars_between_swings", min_bars, 1, 30)
    if limit is not None:
        validate_int_range("limit", limit, 20, 365)


def _require(candles: Sequence[Candle], required: int, what: str) -> None:
    if len(candles) < required:
        raise InsufficientDataError(
            f"{what} needs at least {required} candles, got {len(candles)}",
            required=required,
            available=len(candles),
        )


def _effective_params(params: ResolvedParams, timeframe: Timeframe) -> dict:
    return {"timeframe": timeframe.value, **params.to_dict()}


# ──────────────────────────────────────────────
# Candle-Pair Patterns
# ──────────────────────────────────────────────

def analyze_candle_patterns(
    candles: Sequence[Candle],
    params: CandlePatternParams,
    settings: Optional[Settings] = None,
) -> dict:
    """Recent two-candle formations with context and historical statistics."""
    settings = settings or get_settings()
    validate_int_range("window_days", params.window_days, 3, 10)
    validate_int_range("focus_last_n", params.focus_last_n, 2, 5)
    validate_int_range("history_lookback_days", params.history_lookback_days, 30, 365)
    horizons = validate_horizons(params.history_horizons, 1, 10)

    series, skipped = prepare_candles(candles, params.timeframe, params.as_of)
    _require(series, params.window_days, "candle pattern analysis")

    targets = list(params.patterns) if params.patterns else list(CANDLE_PAIR_DETECTORS)
    window_start = len(series) - params.window_days
    history = MemoizedHistory(
        HistoricalBacktestEngine(settings), series, horizons, params.history_lookback_days,
    )

    with trace_span("analysis.candle_patterns", bars=len(series)):
        found = CandlePairEngine(settings).scan(
            series,
            window_start=window_start,
            focus_last_n=params.focus_last_n,
            patterns=targets,
            allow_partial=params.allow_partial_patterns,
            history=history,
        )

    window = series[window_start:]
    summary = _candle_summary(found, window)
    data = {
        "timeframe": params.timeframe.value,
        "window": {
            "from": _iso(window[0]),
            "to": _iso(window[-1]),
            "candles": [
                {**c.model_dump(mode="json"), "is_partial": c.is_provisional} for c in window
            ],
        },
        "recent_patterns": [p.model_dump(mode="json") for p in found],
    }
    meta = {
        "timeframe": params.timeframe.value,
        "window_days": params.window_days,
        "focus_last_n": params.focus_last_n,
        "patterns_checked": [p.value for p in targets],
        "history_lookback_days": params.history_lookback_days,
        "history_horizons": horizons,
        "bars": len(series),
        "skipped_candles": skipped,
    }
    log.info("analysis.candle_patterns", found=len(found), bars=len(series))
    return {"ok": True, "summary": summary, "data": data, "meta": meta}


def _candle_summary(found: Sequence[CandlePairPattern], window: Sequence[Candle]) -> str:
    if not found:
        if len(window) >= 3:
            trend = "upward" if window[-1].close > window[0].close else "downward"
        else:
            trend = "sideways"
        return (
            f"Price moved {trend} over the last {len(window)} candles; "
            "no two-candle reversal pattern was detected."
        )

    parts = []
    for p in found:
        trend = {TrendLabel.UP: "an uptrend", TrendLabel.DOWN: "a downtrend"}.get(
            p.local_context.trend_before, "a sideways market",
        )
        state = "forming, last candle not closed" if p.uses_partial_candle else "confirmed"
        text = f"{p.label} ({state}) after {trend}, a {p.direction.value} reversal signal."
        stats = p.history_stats
        if stats and "1" in stats.horizons:
            h1 = stats.horizons["1"]
            text += (
                f" Seen {stats.occurrences} times in the last {stats.lookback_days} candles;"
                f" next-candle win rate {h1.win_rate * 100:.0f}%."
            )
        parts.append(text)
    return " ".join(parts)


# ──────────────────────────────────────────────
# Geometric Patterns
# ──────────────────────────────────────────────

def detect_patterns(
    candles: Sequence[Candle],
    params: DetectPatternsParams,
    settings: Optional[Settings] = None,
) -> dict:
    """Completed and in-progress chart patterns with aftermath statistics."""
    settings = settings or get_settings()
    _validate_swing_params(params.swing_depth, params.tolerance_pct, params.min_bars_between_swings, params.limit)
    if params.current_relevance_bars is not None:
        validate_int_range("current_relevance_bars", params.current_relevance_bars, 1, 365)

    series, skipped = prepare_candles(candles, params.timeframe)
    if params.limit:
        series = series[-params.limit:]
    resolved = resolve_params(
        params.timeframe, params.swing_depth, params.min_bars_between_swings, params.tolerance_pct,
    )
    _require(series, 2 * resolved.swing_depth + 1, "swing detection")

    engine = PatternEngine(settings)
    evaluator = AftermathEvaluator(settings)
    with trace_span("analysis.detect_patterns", bars=len(series)):
        result = engine.classify(
            series, resolved, params.pattern_types, params.include_forming,
            allow_partial=params.allow_partial_patterns,
        )
        patterns = [
            p.model_copy(update={"aftermath": evaluator.evaluate(p, series)})
            if p.status == PatternStatus.COMPLETED else p
            for p in result.patterns
        ]

    if params.require_current_in_pattern:
        relevance = params.current_relevance_bars or default_relevance_bars(params.timeframe)
        patterns = [p for p in patterns if _is_current(p, len(series) - 1, relevance)]

    warnings = []
    if len(patterns) <= 1:
        warnings.append({
            "type": "low_detection_count",
            "message": "Few patterns found; try a larger tolerance_pct or a smaller swing_depth.",
            "suggested_params": {
                "tolerance_pct": min(0.1, round(resolved.tolerance_pct * 1.5, 4)),
                "swing_depth": max(1, resolved.swing_depth - 1),
            },
        })

    data = {
        "timeframe": params.timeframe.value,
        "patterns": [p.model_dump(mode="json") for p in patterns],
        "overlays": {
            "ranges": [
                {"type": p.type.value, "status": p.status.value, "start": p.range.start, "end": p.range.end}
                for p in patterns
            ],
        },
        "warnings": warnings,
        "statistics": evaluator.summarize(patterns),
    }
    meta = {
        "bars": len(series),
        "skipped_candles": skipped,
        "effective_params": _effective_params(resolved, params.timeframe),
        "pattern_types": [t.value for t in params.pattern_types] if params.pattern_types else None,
        "include_forming": params.include_forming,
        "allow_partial_patterns": params.allow_partial_patterns,
        "count": len(patterns),
    }
    if params.include_debug:
        meta["debug"] = {
            "swings": [p.model_dump(mode="json") for p in result.pivots],
            "candidates": _cap_debug(result.candidates, settings.debug_cap),
        }

    log.info("analysis.detect_patterns", patterns=len(patterns), pivots=len(result.pivots))
    return {"ok": True, "summary": _pattern_summary(patterns), "data": data, "meta": meta}


def detect_forming_patterns(
    candles: Sequence[Candle],
    params: FormingPatternsParams,
    settings: Optional[Settings] = None,
) -> dict:
    """Only patterns still in progress, ranked by estimated completion."""
    settings = settings or get_settings()
    _validate_swing_params(params.swing_depth, params.tolerance_pct, params.min_bars_between_swings, params.limit)
    floor = settings.min_completion if params.min_completion is None else params.min_completion
    validate_float_range("min_completion", floor, 0.0, 1.0)

    series, skipped = prepare_candles(candles, params.timeframe)
    if params.limit:
        series = series[-params.limit:]
    resolved = resolve_params(
        params.timeframe, params.swing_depth, params.min_bars_between_swings, params.tolerance_pct,
    )
    _require(series, 2 * resolved.swing_depth + 1, "swing detection")

    engine = PatternEngine(settings)
    with trace_span("analysis.detect_forming", bars=len(series)):
        result = engine.classify(
            series, resolved, params.pattern_types, include_forming=True,
            allow_partial=params.allow_partial_patterns,
        )
        emerging = engine.detect_emerging_patterns(series, params.pattern_types, floor)

    best: dict[tuple, DetectedPattern] = {}
    for p in [*result.patterns, *emerging]:
        if p.status == PatternStatus.COMPLETED:
            continue
        if (p.completion_pct or 0) < floor * 100:
            continue
        key = (p.type, p.range.start, p.range.end)
        if key not in best or p.confidence > best[key].confidence:
            best[key] = p
    patterns = sorted(best.values(), key=lambda p: (-(p.completion_pct or 0), -p.confidence, p.type.value))

    data = {
        "timeframe": params.timeframe.value,
        "patterns": [p.model_dump(mode="json") for p in patterns],
    }
    meta = {
        "bars": len(series),
        "skipped_candles": skipped,
        "effective_params": _effective_params(resolved, params.timeframe),
        "min_completion": floor,
        "allow_partial_patterns": params.allow_partial_patterns,
        "count": len(patterns),
    }
    if patterns:
        top = patterns[0]
        summary = (
            f"{len(patterns)} forming pattern(s); most advanced: "
            f"{top.type.value} at {top.completion_pct}% ({top.status.value})."
        )
    else:
        summary = "No forming patterns above the completion threshold."
    return {"ok": True, "summary": summary, "data": data, "meta": meta}


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def _is_current(p: DetectedPattern, last: int, relevance: int) -> bool:
    anchor = p.breakout_index if p.breakout_index is not None else p.range.end
    return last - anchor <= relevance


def _cap_debug(candidates: Sequence[DebugCandidate], cap: int) -> list[dict]:
    ordered = sorted(candidates, key=lambda c: not c.accepted)
    return [c.model_dump(mode="json") for c in ordered[:cap]]


def _pattern_summary(patterns: Sequence[DetectedPattern]) -> str:
    if not patterns:
        return "No chart patterns detected."
    completed = sum(1 for p in patterns if p.status == PatternStatus.COMPLETED)
    types = ", ".join(sorted({p.type.value for p in patterns}))
    return (
        f"Detected {len(patterns)} pattern(s) "
        f"({completed} completed, {len(patterns) - completed} in progress): {types}."
    )


def _iso(candle: Candle) -> Optional[str]:
    return candle.iso_time.isoformat() if candle.iso_time else None
