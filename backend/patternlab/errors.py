"""
PatternLab — Domain Exceptions

Every failure the engines can report maps to one ``error_type`` tag and an
HTTP status. Route handlers let these propagate; the global exception
handlers turn them into the standard error payload.
"""

from __future__ import annotations

from typing import Any, Optional


class PatternLabError(Exception):
    """Base class for all reportable analysis failures."""

    error_type: str = "internal"
    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        d = {"error_type": self.error_type, "detail": self.message}
        if self.details:
            d["details"] = self.details
        return d


class InsufficientDataError(PatternLabError):
    """The series is too short for the requested analysis. Never retried."""

    error_type = "insufficient_data"
    status_code = 422

    def __init__(self, message: str, *, required: int, available: int):
        super().__init__(message, details={"required_bars": required, "available_bars": available})
        self.required = required
        self.available = available


class InvalidParameterError(PatternLabError, ValueError):
    """A parameter is out of range; raised before any computation starts."""

    error_type = "invalid_parameter"
    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class UpstreamDataError(PatternLabError):
    """The candle provider failed or returned nothing usable."""

    error_type = "upstream"
    status_code = 502


class InternalError(PatternLabError):
    """Unexpected fault inside an engine."""

    error_type = "internal"
    status_code = 500
