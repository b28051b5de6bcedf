# Shared utilities: validators, retry
from patternlab.utils.retry import with_retry
from patternlab.utils.validators import (
    apply_as_of,
    ensure_chronological,
    ensure_provisional_last,
    sanitize_candles,
    validate_float_range,
    validate_horizons,
    validate_int_range,
    validate_pair,
)

__all__ = [
    "apply_as_of",
    "ensure_chronological",
    "ensure_provisional_last",
    "sanitize_candles",
    "validate_float_range",
    "validate_horizons",
    "validate_int_range",
    "validate_pair",
    "with_retry",
]
