"""
Chart Patterns — Confidence Scoring & Line Geometry

Shared scoring terms (tolerance margin, symmetry, duration, fit, touches,
containment) and the converging-line geometry used by triangles, wedges
and pennants. Every term is clamped into [0, 1] before combination.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from chartpatterns.config import get_family_tuning
from chartpatterns.engines.regression import TrendLine
from chartpatterns.models import SwingPoint


def clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


# ──────────────────────────────────────────────
# Scoring Terms
# ──────────────────────────────────────────────

def tolerance_margin(deviation: float, tolerance: float) -> float:
    """1.0 for exact equality, 0.0 at the tolerance limit."""
    return clamp01(1.0 - deviation / max(1e-12, tolerance))


def symmetry_score(left_span: float, right_span: float) -> float:
    """Balance of two legs: 1.0 when equal in length."""
    longest = max(left_span, right_span)
    if longest <= 0:
        return 0.0
    return clamp01(1.0 - abs(left_span - right_span) / longest)


def period_score_days(start: Optional[datetime], end: Optional[datetime]) -> float:
    """Duration score in calendar days: peaks for 15-30 day patterns."""
    if start is None or end is None:
        return 0.7
    days = abs((end - start).total_seconds()) / 86400.0
    if days < 5:
        return 0.6
    if days < 15:
        return 0.8
    if days < 30:
        return 0.9
    return 0.7


def duration_score(bars: int, min_bars: int = 25, max_bars: int = 90) -> float:
    """Triangular score over ``[min_bars, max_bars]`` peaking at the midpoint."""
    if bars < min_bars or bars > max_bars:
        return 0.0
    mid = (min_bars + max_bars) / 2
    dist = abs(bars - mid) / max(1.0, (max_bars - min_bars) / 2)
    return clamp01(1.0 - dist)


def fit_quality(pivots: Sequence[SwingPoint], line: TrendLine, scale: float = 0.02) -> float:
    """Mean relative residual of pivots against a line, mapped to [0, 1].

    A mean residual of ``scale`` (2% of price by default) scores zero.
    """
    if not pivots:
        return 0.0
    residuals = [abs(p.price - line.value_at(p.index)) / max(1e-12, abs(p.price)) for p in pivots]
    return clamp01(1.0 - float(np.mean(residuals)) / scale)


def finalize_confidence(base: float, pattern_type: str) -> float:
    """Apply the family adjustment, clamp, round to two decimals."""
    adjusted = clamp01(base * get_family_tuning(pattern_type).adjustment)
    return round(adjusted, 2)


# ──────────────────────────────────────────────
# Converging-line Geometry
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Apex:
    index: Optional[int]
    price: Optional[float]
    valid: bool
    bars_to_apex: Optional[int]


def calc_apex(upper: TrendLine, lower: TrendLine, end: int) -> Apex:
    """Intersection of two lines; valid only when it lies after ``end``."""
    slope_diff = upper.slope - lower.slope
    if abs(slope_diff) < 1e-15:
        return Apex(index=None, price=None, valid=False, bars_to_apex=None)
    raw = (lower.intercept - upper.intercept) / slope_diff
    if not math.isfinite(raw):
        return Apex(index=None, price=None, valid=False, bars_to_apex=None)
    index = int(round(raw))
    bars_to_apex = index - end
    return Apex(index=index, price=upper.value_at(index), valid=bars_to_apex > 0, bars_to_apex=bars_to_apex)


@dataclass(frozen=True)
class Convergence:
    converging: bool
    gap_start: float
    gap_end: float
    ratio: float
    accelerating: bool = False
    apex: Optional[Apex] = None
    score: float = 0.0


def check_convergence(upper: TrendLine, lower: TrendLine, start: int, end: int,
                      max_ratio: float = 0.70) -> Convergence:
    """Gap at ``end`` must be positive and below ``max_ratio`` of the gap at ``start``.

    Score = 0.4 * narrowing + 0.35 * apex term + 0.25 * acceleration term.
    """
    mid = (start + end) // 2
    gap_start = upper.value_at(start) - lower.value_at(start)
    gap_mid = upper.value_at(mid) - lower.value_at(mid)
    gap_end = upper.value_at(end) - lower.value_at(end)
    ratio = gap_end / max(1e-12, gap_start)

    if not (gap_end > 0) or not (ratio < max_ratio):
        return Convergence(converging=False, gap_start=gap_start, gap_end=gap_end, ratio=ratio)

    apex = calc_apex(upper, lower, end)
    accelerating = (gap_mid - gap_end) > (gap_start - gap_mid) * 1.2
    score = clamp01(
        0.4 * (1 - ratio)
        + 0.35 * (1.0 if apex.valid else 0.3)
        + 0.25 * (1.0 if accelerating else 0.4)
    )
    return Convergence(
        converging=True,
        gap_start=gap_start,
        gap_end=gap_end,
        ratio=ratio,
        accelerating=accelerating,
        apex=apex,
        score=score,
    )


@dataclass(frozen=True)
class Containment:
    inside_ratio: float
    violations: int
    total: int


def check_containment(closes: np.ndarray, upper: TrendLine, lower: TrendLine, start: int, end: int,
                      tolerance_pct: float = 0.003) -> Containment:
    """Share of closes between the lines, with a band-relative tolerance."""
    inside = violations = 0
    for i in range(start, min(end, len(closes) - 1) + 1):
        u, l = upper.value_at(i), lower.value_at(i)
        tol = abs(u - l) * tolerance_pct
        if closes[i] > u + tol or closes[i] < l - tol:
            violations += 1
        else:
            inside += 1
    total = inside + violations
    return Containment(inside_ratio=inside / total if total else 0.0, violations=violations, total=total)


@dataclass
class Touches:
    upper: list[tuple[int, bool]] = field(default_factory=list)
    lower: list[tuple[int, bool]] = field(default_factory=list)

    @property
    def upper_quality(self) -> int:
        return sum(1 for _, broke in self.upper if not broke)

    @property
    def lower_quality(self) -> int:
        return sum(1 for _, broke in self.lower if not broke)

    @property
    def score(self) -> float:
        return clamp01((self.upper_quality + self.lower_quality) / 8)

    def clean_indices(self) -> list[int]:
        return sorted([i for i, broke in self.upper if not broke] + [i for i, broke in self.lower if not broke])


def evaluate_touches(highs: np.ndarray, lows: np.ndarray, upper: TrendLine, lower: TrendLine,
                     start: int, end: int, threshold_pct: float = 0.005) -> Touches:
    """Candle highs/lows within 0.5% of a line count as touches; beyond it as breaks."""
    touches = Touches()
    for i in range(start, min(end, len(highs) - 1) + 1):
        u, l = upper.value_at(i), lower.value_at(i)
        thr_up = abs(u) * threshold_pct
        dist_up = abs(highs[i] - u)
        if dist_up < thr_up and highs[i] <= u + thr_up:
            touches.upper.append((i, False))
        elif highs[i] > u + thr_up:
            touches.upper.append((i, True))

        thr_lo = abs(l) * threshold_pct
        dist_lo = abs(lows[i] - l)
        if dist_lo < thr_lo and lows[i] >= l - thr_lo:
            touches.lower.append((i, False))
        elif lows[i] < l - thr_lo:
            touches.lower.append((i, True))
    return touches


def alternation_score(touches: Touches) -> float:
    """Fraction of consecutive touches that switch sides."""
    tagged = sorted([(i, "u") for i, _ in touches.upper] + [(i, "l") for i, _ in touches.lower])
    if len(tagged) < 2:
        return 0.0
    switches = sum(1 for a, b in zip(tagged, tagged[1:]) if a[1] != b[1])
    return clamp01(switches / max(1, len(tagged) - 1))


def inside_ratio(highs: np.ndarray, lows: np.ndarray, upper: TrendLine, lower: TrendLine,
                 start: int, end: int) -> float:
    """Share of candles whose whole range sits between the lines."""
    inside = total = 0
    for i in range(start, min(end, len(highs) - 1) + 1):
        total += 1
        if highs[i] <= upper.value_at(i) and lows[i] >= lower.value_at(i):
            inside += 1
    return inside / total if total else 0.0


PATTERN_WEIGHTS = {
    "fit": 0.25,
    "converge": 0.25,
    "touch": 0.35,
    "alternation": 0.07,
    "inside": 0.05,
    "duration": 0.03,
}


def pattern_score(components: dict[str, float], weights: Optional[dict[str, float]] = None) -> float:
    """Weighted sum of clamped components keyed like ``PATTERN_WEIGHTS``."""
    w = weights or PATTERN_WEIGHTS
    return sum(w[k] * clamp01(components.get(k, 0.0)) for k in w)


# ──────────────────────────────────────────────
# Wedge Classification
# ──────────────────────────────────────────────

WEDGE_MIN_SLOPE = 0.00005


def determine_wedge_type(
    slope_high: float,
    slope_low: float,
    min_slope: float = WEDGE_MIN_SLOPE,
    ratio_min_rising: float = 1.20,
    ratio_min_falling: float = 1.15,
    min_weaker_ratio: float = 0.3,
) -> Optional[str]:
    """``rising_wedge`` / ``falling_wedge`` / None from two line slopes.

    Rising: both lines up, support steeper. Falling: both down, resistance
    steeper. A near-flat weaker side disqualifies either.
    """
    if slope_high > min_slope and slope_low > min_slope:
        if slope_high < slope_low * min_weaker_ratio:
            return None
        if abs(slope_low) >= abs(slope_high) * ratio_min_rising:
            return "rising_wedge"
    if slope_high < -min_slope and slope_low < -min_slope:
        abs_hi, abs_lo = abs(slope_high), abs(slope_low)
        if min(abs_hi, abs_lo) / max(abs_hi, abs_lo) < min_weaker_ratio:
            return None
        if abs_hi >= abs_lo * ratio_min_falling:
            return "falling_wedge"
    return None
