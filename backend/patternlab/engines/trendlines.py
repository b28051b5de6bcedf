"""
PatternLab — Trendline & Tolerance Helpers

Least-squares lines through pivot points plus the small numeric helpers the
classifier uses to compare price levels. All functions are total: degenerate
input returns a neutral value rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class Trendline:
    """y = slope * x + intercept, with goodness of fit."""
    slope: float
    intercept: float
    r2: float

    def value_at(self, x: float) -> float:
        return self.slope * x + self.intercept


def fit_line(xs: Sequence[float], ys: Sequence[float]) -> Optional[Trendline]:
    """Ordinary least squares. Returns None for fewer than two distinct x."""
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if len(x) < 2 or len(x) != len(y) or np.ptp(x) == 0:
        return None

    slope, intercept = np.polyfit(x, y, 1)
    fitted = slope * x + intercept
    ss_res = float(np.sum((y - fitted) ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    r2 = 1.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot
    return Trendline(slope=float(slope), intercept=float(intercept), r2=clamp01(r2))


def fit_quality(line: Trendline, xs: Sequence[float], ys: Sequence[float]) -> float:
    """1 - mean relative deviation of the points from the line, in [0, 1]."""
    if not len(xs):
        return 0.0
    devs = [rel_dev(line.value_at(x), y) for x, y in zip(xs, ys)]
    return clamp01(1.0 - float(np.mean(devs)))


def intersection_x(a: Trendline, b: Trendline) -> Optional[float]:
    """x where two lines cross, or None when they are parallel."""
    ds = a.slope - b.slope
    if abs(ds) < 1e-12:
        return None
    return (b.intercept - a.intercept) / ds


def line_through(x1: float, y1: float, x2: float, y2: float) -> Trendline:
    """Two-point line; vertical input degrades to a horizontal line at y1."""
    if x2 == x1:
        return Trendline(slope=0.0, intercept=y1, r2=1.0)
    slope = (y2 - y1) / (x2 - x1)
    return Trendline(slope=slope, intercept=y1 - slope * x1, r2=1.0)


# ── Level comparison ──

def clamp01(x: float) -> float:
    if not np.isfinite(x):
        return 0.0
    return max(0.0, min(1.0, float(x)))


def rel_dev(a: float, b: float) -> float:
    """|a-b| relative to the larger magnitude (never divides by zero)."""
    denom = max(abs(a), abs(b))
    if denom == 0:
        return 0.0
    return abs(a - b) / denom


def near(a: float, b: float, tolerance_pct: float) -> bool:
    """Two price levels are equal within tolerance: |a-b|/max(a,b) <= tol.

    >>> near(100.0, 103.0, 0.04)
    True
    >>> near(100.0, 105.0, 0.04)
    False
    """
    return rel_dev(a, b) <= tolerance_pct


def margin_from_rel_dev(rd: float, tolerance_pct: float) -> float:
    """How comfortably a deviation fits inside the tolerance (1 = exact match)."""
    if tolerance_pct <= 0:
        return 1.0 if rd == 0 else 0.0
    return clamp01(1.0 - rd / tolerance_pct)


def pct_change(base: float, value: float) -> float:
    if base == 0:
        return 0.0
    return (value - base) / base * 100.0
