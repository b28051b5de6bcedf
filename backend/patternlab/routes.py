"""
PatternLab — API Routes

All HTTP endpoints. Thin layer that delegates to the analysis service.

POST endpoints analyze caller-supplied candles; GET endpoints fetch the
candles from bitbank first.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from patternlab.config import get_settings
from patternlab.data.bitbank_client import BitbankClient
from patternlab.engines import analysis_service
from patternlab.models import (
    CandlePatternParams,
    CandlePatternRequest,
    CandlePatternType,
    DetectPatternsParams,
    DetectPatternsRequest,
    FormingPatternsParams,
    FormingPatternsRequest,
    PatternType,
    Timeframe,
)

# Candles fetched beyond the analysis window for candle-pair history
_HISTORY_PADDING = 10


def get_candle_client() -> BitbankClient:
    return BitbankClient()


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

health_router = APIRouter()


@health_router.get("/health")
async def health_check():
    """Liveness check. The engines have no external dependencies to probe."""
    settings = get_settings()
    return {"status": "ok", "env": settings.app_env}


# ──────────────────────────────────────────────
# Geometric Patterns
# ──────────────────────────────────────────────

patterns_router = APIRouter()


@patterns_router.post("/patterns/detect")
async def detect_patterns(body: DetectPatternsRequest):
    """Detect chart patterns in the supplied candles."""
    params = DetectPatternsParams(**body.model_dump(exclude={"candles"}))
    return analysis_service.detect_patterns(body.candles, params)


@patterns_router.post("/patterns/forming")
async def detect_forming_patterns(body: FormingPatternsRequest):
    """Chart patterns still in progress, ranked by completion."""
    params = FormingPatternsParams(**body.model_dump(exclude={"candles"}))
    return analysis_service.detect_forming_patterns(body.candles, params)


@patterns_router.get("/patterns/{pair}")
async def detect_patterns_for_pair(
    pair: str,
    timeframe: Timeframe = Query(Timeframe.D1),
    limit: int = Query(90, ge=20, le=365),
    swing_depth: Optional[int] = Query(None),
    tolerance_pct: Optional[float] = Query(None),
    min_bars_between_swings: Optional[int] = Query(None),
    pattern_types: Optional[list[PatternType]] = Query(None),
    include_forming: bool = Query(True),
    require_current_in_pattern: bool = Query(False),
    include_debug: bool = Query(False),
    allow_partial_patterns: bool = Query(False),
    client: BitbankClient = Depends(get_candle_client),
):
    """Fetch candles for a bitbank pair and detect chart patterns."""
    candles = await client.get_candles(pair, timeframe, limit=limit)
    params = DetectPatternsParams(
        timeframe=timeframe,
        limit=limit,
        swing_depth=swing_depth,
        tolerance_pct=tolerance_pct,
        min_bars_between_swings=min_bars_between_swings,
        pattern_types=pattern_types,
        include_forming=include_forming,
        require_current_in_pattern=require_current_in_pattern,
        include_debug=include_debug,
        allow_partial_patterns=allow_partial_patterns,
    )
    result = analysis_service.detect_patterns(candles, params)
    result["meta"]["pair"] = pair.lower()
    return result


# ──────────────────────────────────────────────
# Candle-Pair Patterns
# ──────────────────────────────────────────────

candles_router = APIRouter()


@candles_router.post("/candles/patterns")
async def analyze_candle_patterns(body: CandlePatternRequest):
    """Two-candle reversal formations in the supplied candles."""
    params = CandlePatternParams(**body.model_dump(exclude={"candles"}))
    return analysis_service.analyze_candle_patterns(body.candles, params)


@candles_router.get("/candles/{pair}/patterns")
async def analyze_candle_patterns_for_pair(
    pair: str,
    timeframe: Timeframe = Query(Timeframe.D1),
    window_days: int = Query(5),
    focus_last_n: int = Query(3),
    patterns: Optional[list[CandlePatternType]] = Query(None),
    history_lookback_days: int = Query(180),
    history_horizons: list[int] = Query([1, 3, 5]),
    allow_partial_patterns: bool = Query(True),
    as_of: Optional[datetime] = Query(None),
    client: BitbankClient = Depends(get_candle_client),
):
    """Fetch candles for a bitbank pair and scan for two-candle formations."""
    params = CandlePatternParams(
        timeframe=timeframe,
        window_days=window_days,
        focus_last_n=focus_last_n,
        patterns=patterns,
        history_lookback_days=history_lookback_days,
        history_horizons=history_horizons,
        allow_partial_patterns=allow_partial_patterns,
        as_of=as_of,
    )
    limit = min(1000, max(window_days, history_lookback_days + _HISTORY_PADDING))
    candles = await client.get_candles(pair, timeframe, limit=limit, as_of=as_of)
    result = analysis_service.analyze_candle_patterns(candles, params)
    result["meta"]["pair"] = pair.lower()
    return result
