"""
Chart Patterns — Savitzky-Golay Smoothing

Local polynomial regression over a sliding window. Used as a pre-pass on
high/low series so pivot detection sees fewer noise extrema; the raw
candles are never modified.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.signal import savgol_filter

from chartpatterns.models import Bar


def savitzky_golay(values: Sequence[float], window: int = 5, order: int = 2) -> np.ndarray:
    """Smooth a 1-D series, keeping its length.

    The window is forced odd and at least 3 and the polynomial order is
    capped at ``window - 1``. The first and last ``window // 2`` values
    keep their raw value. Series shorter than the window come back
    unchanged.
    """
    data = np.asarray(values, dtype=float)
    n = len(data)
    if n == 0:
        return data.copy()

    ws = max(3, int(window))
    if ws % 2 == 0:
        ws += 1
    po = min(int(order), ws - 1)
    if n < ws:
        return data.copy()

    half = ws // 2
    result = data.copy()
    result[half:n - half] = savgol_filter(data, window_length=ws, polyorder=po)[half:n - half]
    return result


def smooth_bars(bars: Sequence[Bar], window: int = 5, order: int = 2) -> tuple[np.ndarray, np.ndarray]:
    """Smoothed (highs, lows) for a bar sequence."""
    highs = [b.high for b in bars]
    lows = [b.low for b in bars]
    return savitzky_golay(highs, window, order), savitzky_golay(lows, window, order)


def wedge_window(n_bars: int) -> int:
    """Odd SG window sized to the series: between 5 and 11."""
    return max(5, min(11, (n_bars // 20) * 2 + 1))
