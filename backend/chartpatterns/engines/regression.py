"""
Chart Patterns — Line Fitting

Ordinary least squares with R², plus the two-point "best anchor pair"
trendlines used by the wedge family.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from chartpatterns.models import SwingPoint


@dataclass(frozen=True)
class TrendLine:
    """Straight line in (bar index, price) space."""
    slope: float
    intercept: float
    r2: Optional[float] = None
    anchors: tuple[tuple[int, float], ...] = ()

    def value_at(self, index: float) -> float:
        return self.slope * index + self.intercept

    def to_dict(self) -> dict:
        return {"slope": self.slope, "intercept": self.intercept, "r2": self.r2}


def linear_fit(points: Sequence[tuple[float, float]]) -> TrendLine:
    """OLS fit of ``(index, price)`` points.

    All points on one index is degenerate: a flat line through the mean
    with ``r2 = 0``. A perfect fit of a flat series reports ``r2 = 1``.
    """
    if not points:
        return TrendLine(slope=0.0, intercept=0.0, r2=0.0)

    x = np.array([p[0] for p in points], dtype=float)
    y = np.array([p[1] for p in points], dtype=float)
    my = y.mean()
    if np.ptp(x) == 0.0:
        return TrendLine(slope=0.0, intercept=float(my), r2=0.0)

    slope, intercept = (float(c) for c in np.polyfit(x, y, 1))
    residuals = y - (slope * x + intercept)
    ss_res = float((residuals ** 2).sum())
    ss_tot = float(((y - my) ** 2).sum())
    if ss_tot > 0:
        r2 = 1.0 - ss_res / ss_tot
    else:
        r2 = 1.0 if ss_res <= 1e-18 else 0.0

    return TrendLine(
        slope=slope,
        intercept=intercept,
        r2=r2,
        anchors=((int(x[0]), float(y[0])), (int(x[-1]), float(y[-1]))),
    )


def fit_pivots(pivots: Sequence[SwingPoint]) -> TrendLine:
    """OLS through swing points."""
    return linear_fit([(p.index, p.price) for p in pivots])


def line_through(p1: tuple[int, float], p2: tuple[int, float]) -> TrendLine:
    """Line through two anchors (index gap floored at 1)."""
    slope = (p2[1] - p1[1]) / max(1, p2[0] - p1[0])
    return TrendLine(slope=slope, intercept=p1[1] - slope * p1[0], anchors=(p1, p2))


# ──────────────────────────────────────────────
# Two-point Trendlines
# ──────────────────────────────────────────────

def _best_two_point_line(
    pivots: Sequence[SwingPoint],
    start: int,
    end: int,
    tolerance: float,
    upper: bool,
    max_touch_gap: int,
    split_ratio: float,
    min_touches: int,
) -> Optional[TrendLine]:
    in_range = [p for p in pivots if start <= p.index <= end]
    if len(in_range) < 2:
        return None

    span = end - start
    head = [p for p in in_range if p.index < start + span * split_ratio]
    tail = [p for p in in_range if p.index > end - span * split_ratio]
    if not head or not tail:
        return None

    best: Optional[TrendLine] = None
    best_score = float("-inf")
    for p1 in head:
        for p2 in tail:
            if p1.index >= p2.index:
                continue
            line = line_through((p1.index, p1.price), (p2.index, p2.price))

            # at most one pivot may pierce the line
            violations = 0
            for p in in_range:
                value = line.value_at(p.index)
                pierced = p.price > value + tolerance if upper else p.price < value - tolerance
                if pierced:
                    violations += 1
                    if violations > 1:
                        break
            if violations > 1:
                continue

            touches = sorted(p.index for p in in_range if abs(p.price - line.value_at(p.index)) <= tolerance)
            if len(touches) < min_touches:
                continue
            if max(b - a for a, b in zip(touches, touches[1:])) > max_touch_gap:
                continue

            score = len(touches) + (1 if line.slope < 0 else 0)
            if score > best_score:
                best_score = score
                best = line
    return best


def fit_upper_trendline(
    highs: Sequence[SwingPoint],
    start: int,
    end: int,
    tolerance: float,
    max_touch_gap: int = 25,
    split_ratio: float = 1 / 3,
    min_touches: int = 2,
) -> Optional[TrendLine]:
    """Resistance line through one early and one late high.

    Anchors come from the first and last ``split_ratio`` of the window;
    the pair with the most touches within ``tolerance`` wins.
    """
    return _best_two_point_line(highs, start, end, tolerance, True, max_touch_gap, split_ratio, min_touches)


def fit_lower_trendline(
    lows: Sequence[SwingPoint],
    start: int,
    end: int,
    tolerance: float,
    max_touch_gap: int = 25,
    split_ratio: float = 1 / 3,
    min_touches: int = 2,
) -> Optional[TrendLine]:
    """Support line through one early and one late low."""
    return _best_two_point_line(lows, start, end, tolerance, False, max_touch_gap, split_ratio, min_touches)
