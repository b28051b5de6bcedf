"""
PatternLab — Pydantic Models

All I/O schemas for the application. Engines return these, the analysis
service assembles them, API routes serialize them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Timeframe(str, Enum):
    """Candle timeframes offered by the bitbank public API."""
    M1 = "1min"
    M5 = "5min"
    M15 = "15min"
    M30 = "30min"
    H1 = "1hour"
    H4 = "4hour"
    H8 = "8hour"
    H12 = "12hour"
    D1 = "1day"
    W1 = "1week"
    MO = "1month"


class CandleState(str, Enum):
    """Whether a candle's period has closed."""
    CONFIRMED = "confirmed"
    PROVISIONAL = "provisional"


class SwingKind(str, Enum):
    HIGH = "high"
    LOW = "low"


class Direction(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class PatternType(str, Enum):
    """Geometric (multi-pivot) chart patterns."""
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"
    HEAD_AND_SHOULDERS = "head_and_shoulders"
    INVERSE_HEAD_AND_SHOULDERS = "inverse_head_and_shoulders"
    TRIANGLE_ASCENDING = "triangle_ascending"
    TRIANGLE_DESCENDING = "triangle_descending"
    TRIANGLE_SYMMETRICAL = "triangle_symmetrical"
    RISING_WEDGE = "rising_wedge"
    FALLING_WEDGE = "falling_wedge"


class PatternStatus(str, Enum):
    """Lifecycle of a geometric pattern. Completed is terminal."""
    FORMING = "forming"
    NEAR_COMPLETION = "near_completion"
    COMPLETED = "completed"


class CandlePatternType(str, Enum):
    """Two-candle reversal formations."""
    BULLISH_ENGULFING = "bullish_engulfing"
    BEARISH_ENGULFING = "bearish_engulfing"
    BULLISH_HARAMI = "bullish_harami"
    BEARISH_HARAMI = "bearish_harami"
    TWEEZER_TOP = "tweezer_top"
    TWEEZER_BOTTOM = "tweezer_bottom"
    DARK_CLOUD_COVER = "dark_cloud_cover"
    PIERCING_LINE = "piercing_line"


class CandlePatternStatus(str, Enum):
    FORMING = "forming"
    CONFIRMED = "confirmed"


class TrendLabel(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class VolatilityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AftermathOutcome(str, Enum):
    """Categorical result of a completed pattern's follow-through."""
    TARGET_REACHED = "target_reached"
    PARTIAL_MOVE = "partial_move"
    FAILED_BREAKOUT = "failed_breakout"
    NO_FOLLOW_THROUGH = "no_follow_through"
    UNCONFIRMED_BREAKOUT = "unconfirmed_breakout"
    INSUFFICIENT_DATA = "insufficient_data"


# ──────────────────────────────────────────────
# Market Data Models
# ──────────────────────────────────────────────

class Candle(BaseModel):
    """Single OHLCV bar. Series are ordered oldest → newest."""
    model_config = ConfigDict(frozen=True)

    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None
    iso_time: Optional[datetime] = None
    state: CandleState = CandleState.CONFIRMED

    @property
    def is_provisional(self) -> bool:
        return self.state == CandleState.PROVISIONAL


# ──────────────────────────────────────────────
# Geometric Pattern Models
# ──────────────────────────────────────────────

class SwingPivot(BaseModel):
    """A confirmed local price extreme."""
    model_config = ConfigDict(frozen=True)

    index: int
    price: float
    kind: SwingKind
    iso_time: Optional[datetime] = None


class NecklinePoint(BaseModel):
    index: int
    price: float


class PatternRange(BaseModel):
    start: int
    end: int
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @model_validator(mode="after")
    def _ordered(self) -> "PatternRange":
        if self.start > self.end:
            raise ValueError(f"range start {self.start} is after end {self.end}")
        return self


class PriceMove(BaseModel):
    return_pct: float
    high: float
    low: float


class Aftermath(BaseModel):
    """Forward price behaviour after a completed pattern's breakout."""
    breakout_date: Optional[datetime] = None
    breakout_index: Optional[int] = None
    breakout_confirmed: bool = False
    price_move: dict[str, PriceMove] = Field(default_factory=dict)
    target_reached: bool = False
    theoretical_target: Optional[float] = None
    outcome: AftermathOutcome
    days_to_target: Optional[int] = None


class DetectedPattern(BaseModel):
    """A geometric chart pattern matched on the pivot sequence."""
    type: PatternType
    direction: Direction
    confidence: float = Field(ge=0.0, le=1.0)
    range: PatternRange
    pivots: list[SwingPivot]
    neckline: list[NecklinePoint] = Field(default_factory=list)
    status: PatternStatus
    apex_date: Optional[datetime] = None
    days_to_apex: Optional[int] = None
    completion_pct: Optional[int] = None
    breakout_index: Optional[int] = None
    breakout_date: Optional[datetime] = None
    days_since_breakout: Optional[int] = None
    invalidation_price: Optional[float] = None
    aftermath: Optional[Aftermath] = None


class DebugCandidate(BaseModel):
    """A template match attempt, kept for the debug trace."""
    type: str
    accepted: bool
    reason: Optional[str] = None
    indices: list[int] = Field(default_factory=list)


# ──────────────────────────────────────────────
# Candle-Pair Models
# ──────────────────────────────────────────────

class LocalContext(BaseModel):
    trend_before: TrendLabel
    volatility_level: VolatilityLevel


class HorizonStats(BaseModel):
    avg_return: float
    win_rate: float
    sample: int


class HistoryStats(BaseModel):
    """Forward-return statistics of past occurrences of one pattern type."""
    lookback_days: int
    occurrences: int
    horizons: dict[str, HorizonStats] = Field(default_factory=dict)


class CandlePairPattern(BaseModel):
    """A two-candle formation found in the recent window."""
    pattern: CandlePatternType
    label: str
    direction: Direction
    strength: float = Field(ge=0.0, le=1.0)
    candle_range_index: tuple[int, int]
    uses_partial_candle: bool = False
    status: CandlePatternStatus
    local_context: LocalContext
    history_stats: Optional[HistoryStats] = None


# ──────────────────────────────────────────────
# Request Parameters
# ──────────────────────────────────────────────

class DetectPatternsParams(BaseModel):
    """Parameters for geometric pattern detection.

    ``None`` for swing_depth / min_bars_between_swings / tolerance_pct
    means "use the timeframe default".
    """
    timeframe: Timeframe = Timeframe.D1
    limit: Optional[int] = None
    swing_depth: Optional[int] = None
    tolerance_pct: Optional[float] = None
    min_bars_between_swings: Optional[int] = None
    pattern_types: Optional[list[PatternType]] = None
    include_forming: bool = True
    require_current_in_pattern: bool = False
    current_relevance_bars: Optional[int] = None
    include_debug: bool = True
    allow_partial_patterns: bool = False


class FormingPatternsParams(BaseModel):
    timeframe: Timeframe = Timeframe.D1
    limit: Optional[int] = None
    swing_depth: Optional[int] = None
    tolerance_pct: Optional[float] = None
    min_bars_between_swings: Optional[int] = None
    pattern_types: Optional[list[PatternType]] = None
    min_completion: Optional[float] = None
    allow_partial_patterns: bool = False


class CandlePatternParams(BaseModel):
    timeframe: Timeframe = Timeframe.D1
    window_days: int = 5
    focus_last_n: int = 3
    patterns: Optional[list[CandlePatternType]] = None
    history_lookback_days: int = 180
    history_horizons: list[int] = Field(default_factory=lambda: [1, 3, 5])
    allow_partial_patterns: bool = True
    as_of: Optional[datetime] = None


class DetectPatternsRequest(DetectPatternsParams):
    candles: list[Candle]


class FormingPatternsRequest(FormingPatternsParams):
    candles: list[Candle]


class CandlePatternRequest(CandlePatternParams):
    candles: list[Candle]
