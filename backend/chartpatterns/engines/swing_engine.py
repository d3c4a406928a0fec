"""
Chart Patterns — Swing Point Detection

Local maxima (peaks) and minima (valleys) over a look-around window.
Strict pivots drive exact multi-point shapes (doubles, head-and-shoulders,
triples); relaxed single-neighbour pivots drive the trendline families.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from chartpatterns.models import Bar, PivotKind, SwingPoint


def bar_arrays(bars: Sequence[Bar]) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """(open, high, low, close) as float arrays."""
    o = np.array([b.open for b in bars], dtype=float)
    h = np.array([b.high for b in bars], dtype=float)
    l = np.array([b.low for b in bars], dtype=float)
    c = np.array([b.close for b in bars], dtype=float)
    return o, h, l, c


def _is_strict_extreme(data: np.ndarray, i: int, depth: int, mode: str) -> bool:
    value = data[i]
    if not math.isfinite(value):
        return False
    for j in range(i - depth, i + depth + 1):
        if j == i:
            continue
        other = data[j]
        if not math.isfinite(other):
            return False
        if mode == "high" and other >= value:
            return False
        if mode == "low" and other <= value:
            return False
    return True


def find_swings(
    bars: Sequence[Bar],
    depth: int,
    strict: bool = True,
    highs: Optional[np.ndarray] = None,
    lows: Optional[np.ndarray] = None,
) -> list[SwingPoint]:
    """Find swing points ordered by index.

    A bar is a peak when its high is the unique maximum within
    ``[i - depth, i + depth]``; valleys mirror this on lows. The first and
    last ``depth`` bars are never pivots. With ``strict=False`` this falls
    back to the single-neighbour scan of ``find_relaxed_swings``.

    ``highs`` / ``lows`` override the bar extremes (e.g. smoothed series)
    while prices reported on the pivots still come from those series.
    """
    if not strict:
        return find_relaxed_swings(bars, highs=highs, lows=lows)

    n = len(bars)
    depth = max(1, int(depth))
    if n < 2 * depth + 1:
        return []

    h = highs if highs is not None else np.array([b.high for b in bars], dtype=float)
    l = lows if lows is not None else np.array([b.low for b in bars], dtype=float)

    swings: list[SwingPoint] = []
    for i in range(depth, n - depth):
        if _is_strict_extreme(h, i, depth, "high"):
            swings.append(SwingPoint(index=i, price=float(h[i]), kind=PivotKind.PEAK, date=bars[i].timestamp))
        if _is_strict_extreme(l, i, depth, "low"):
            swings.append(SwingPoint(index=i, price=float(l[i]), kind=PivotKind.VALLEY, date=bars[i].timestamp))
    return swings


def find_relaxed_swings(
    bars: Sequence[Bar],
    highs: Optional[np.ndarray] = None,
    lows: Optional[np.ndarray] = None,
) -> list[SwingPoint]:
    """Single-neighbour pivots: ``>`` the previous bar and ``>=`` the next.

    Ties on the right side are allowed, so flat tops yield their first bar.
    """
    n = len(bars)
    if n < 3:
        return []

    h = highs if highs is not None else np.array([b.high for b in bars], dtype=float)
    l = lows if lows is not None else np.array([b.low for b in bars], dtype=float)

    swings: list[SwingPoint] = []
    for i in range(1, n - 1):
        if np.isfinite(h[i - 1:i + 2]).all() and h[i] > h[i - 1] and h[i] >= h[i + 1]:
            swings.append(SwingPoint(index=i, price=float(h[i]), kind=PivotKind.PEAK, date=bars[i].timestamp))
        if np.isfinite(l[i - 1:i + 2]).all() and l[i] < l[i - 1] and l[i] <= l[i + 1]:
            swings.append(SwingPoint(index=i, price=float(l[i]), kind=PivotKind.VALLEY, date=bars[i].timestamp))
    return swings


def peaks_of(swings: Sequence[SwingPoint]) -> list[SwingPoint]:
    return [s for s in swings if s.kind == PivotKind.PEAK]


def valleys_of(swings: Sequence[SwingPoint]) -> list[SwingPoint]:
    return [s for s in swings if s.kind == PivotKind.VALLEY]


# ──────────────────────────────────────────────
# Volatility
# ──────────────────────────────────────────────

def average_true_range(
    bars: Sequence[Bar],
    period: int = 14,
    start: int = 0,
    end: Optional[int] = None,
) -> float:
    """Mean true range of the last ``period`` bars in ``[start, end]``.

    Bars with non-finite prices are skipped. Returns 0.0 when no true
    range can be computed.
    """
    n = len(bars)
    if n < 2:
        return 0.0
    end = n - 1 if end is None else end
    lo = max(1, start)
    hi = min(n - 1, max(lo + 1, end))

    ranges: list[float] = []
    for i in range(lo, hi + 1):
        high, low, prev_close = bars[i].high, bars[i].low, bars[i - 1].close
        if not (math.isfinite(high) and math.isfinite(low) and math.isfinite(prev_close)):
            continue
        ranges.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))

    if not ranges:
        return 0.0
    recent = ranges[-min(period, len(ranges)):]
    return float(sum(recent) / len(recent))
