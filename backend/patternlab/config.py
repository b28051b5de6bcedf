"""
PatternLab — Configuration Management

Pydantic Settings: loads from .env, validates all configuration at startup.
Detection thresholds live here as named fields so they can be overridden
per deployment (e.g. ``PL_BREAKOUT_MARGIN_PCT=0.02``) and recalibrated
without touching engine code.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PL_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"
    app_debug: bool = True

    # ── Market Data (bitbank public API) ──
    bitbank_api_base: str = "https://public.bitbank.cc"
    bitbank_timeout_seconds: float = 5.0
    bitbank_max_attempts: int = 3
    bitbank_retry_base_delay: float = 0.2

    # ── Geometric Classifier ──
    min_pattern_height_pct: float = 0.03
    min_pivot_gap_bars: int = 3
    head_prominence_pct: float = 0.02
    breakout_margin_pct: float = 0.015
    breakout_window_bars: int = 20
    relaxed_tolerance_factors: tuple[float, ...] = (1.5, 2.0)
    relaxed_confidence_penalty: float = 0.95
    min_confidence_double: float = 0.6
    min_confidence_head_shoulders: float = 0.7
    min_confidence_triangle: float = 0.5
    min_confidence_wedge: float = 0.5
    head_shoulders_multiplier: float = 1.1
    triangle_multiplier: float = 0.95
    triangle_move_pct: float = 0.01
    triangle_convergence_ratio: float = 0.85
    wedge_min_r2: float = 0.25
    wedge_rising_slope_ratio: float = 1.2
    wedge_falling_slope_ratio: float = 1.15
    wedge_max_convergence_ratio: float = 0.38
    wedge_break_atr_factor: float = 0.5
    near_completion_distance_pct: float = 0.02
    near_completion_apex_ratio: float = 0.75
    max_apex_extension_ratio: float = 5.0
    debug_cap: int = 200

    # ── Emerging (partial template) Patterns ──
    pivot_confirm_bars: int = 3
    right_peak_tolerance_pct: float = 0.2
    double_completion_base: float = 0.66
    double_completion_span: float = 0.34
    head_shoulders_completion_base: float = 0.75
    head_shoulders_completion_span: float = 0.25
    forming_closeness_weight: float = 0.6
    head_min_ratio: float = 1.05
    invalidation_buffer_pct: float = 0.012
    reversal_bonus: float = 0.2
    min_completion: float = 0.4

    # ── Aftermath ──
    aftermath_horizons: tuple[int, ...] = (3, 7, 14)
    evaluation_window_bars: int = 14
    breakout_scan_bars: int = 29
    partial_move_pct: float = 3.0

    # ── Candle-Pair Detection ──
    harami_max_body_ratio: float = 0.7
    tweezer_match_pct: float = 0.005
    tweezer_zone_pct: float = 0.2
    piercing_body_multiple: float = 1.5
    piercing_gap_tolerance: float = 0.1
    pair_context_bars: int = 10

    # ── Local Context ──
    trend_lookback: int = 3
    trend_agreement_ratio: float = 0.6
    volatility_lookback: int = 5
    volatility_low_pct: float = 1.5
    volatility_high_pct: float = 3.0

    # ── Backtest ──
    backtest_exclude_last_n: int = 5
    backtest_min_occurrences: int = 5

    # ── CORS ──
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance, created once."""
    return Settings()
