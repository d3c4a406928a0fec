"""
Chart Patterns — Swing, Line-Fitting & Smoothing Tests

Pivot extraction on synthetic series, OLS / two-point trendlines, the
Savitzky-Golay pre-pass and ATR.
"""

import math
import sys

import pytest

sys.path.insert(0, "backend")


# ═══════════════════════════════════════════════
#  SWING ENGINE
# ═══════════════════════════════════════════════

class TestSwingEngine:
    """Test strict and relaxed pivot detection."""

    def _make_bars(self, closes: list[float]):
        """Helper: bars with a fixed 0.5 wick around each close."""
        from datetime import datetime, timedelta
        from chartpatterns.models import Bar

        base = datetime(2024, 1, 1)
        return [
            Bar(timestamp=base + timedelta(days=i), open=c, high=c + 0.5, low=c - 0.5, close=c)
            for i, c in enumerate(closes)
        ]

    def test_monotonic_series_has_no_pivots(self):
        from chartpatterns.engines.swing_engine import find_swings, peaks_of, valleys_of
        depth = 3
        bars = self._make_bars([100.0 + i for i in range(2 * depth + 1)])
        swings = find_swings(bars, depth)
        assert peaks_of(swings) == []
        # the only valley candidate is the first bar, which has no look-around
        assert valleys_of(swings) == []

    def test_single_peak_and_valley(self):
        from chartpatterns.engines.swing_engine import find_swings
        from chartpatterns.models import PivotKind
        closes = [100, 101, 102, 103, 104, 103, 102, 101, 100, 99, 98, 99, 100, 101, 102]
        swings = find_swings(self._make_bars(closes), depth=3)
        assert [(s.index, s.kind) for s in swings] == [(4, PivotKind.PEAK), (10, PivotKind.VALLEY)]
        assert swings[0].price == 104.5
        assert swings[1].price == 97.5

    def test_strict_rejects_ties(self):
        from chartpatterns.engines.swing_engine import find_swings
        closes = [100, 101, 102, 105, 105, 102, 101, 100, 99]
        swings = find_swings(self._make_bars(closes), depth=2)
        assert not [s for s in swings if s.kind == "peak"]

    def test_relaxed_allows_right_tie(self):
        from chartpatterns.engines.swing_engine import find_swings
        closes = [100, 101, 102, 105, 105, 102, 101, 100, 99]
        swings = find_swings(self._make_bars(closes), depth=2, strict=False)
        peaks = [s for s in swings if s.kind == "peak"]
        assert [p.index for p in peaks] == [3]

    def test_short_series_is_empty(self):
        from chartpatterns.engines.swing_engine import find_swings, find_relaxed_swings
        bars = self._make_bars([100, 101])
        assert find_swings(bars, depth=3) == []
        assert find_relaxed_swings(bars) == []

    def test_nan_bar_is_skipped(self):
        from chartpatterns.engines.swing_engine import find_swings
        closes = [100, 101, 102, 103, 104, 103, 102, 101, 100]
        bars = self._make_bars(closes)
        from chartpatterns.models import Bar
        bars[3] = Bar(timestamp=bars[3].timestamp, open=math.nan, high=math.nan, low=math.nan, close=math.nan)
        # the NaN sits inside the look-around window of the would-be peak
        assert find_swings(bars, depth=2) == []

    def test_average_true_range_constant_wicks(self):
        from chartpatterns.engines.swing_engine import average_true_range
        bars = self._make_bars([100.0] * 30)
        assert average_true_range(bars, 14) == pytest.approx(1.0)

    def test_average_true_range_gap_dominates(self):
        from chartpatterns.engines.swing_engine import average_true_range
        bars = self._make_bars([100.0, 110.0])
        # |high - prev close| = 10.5 beats the 1.0 candle range
        assert average_true_range(bars, 14) == pytest.approx(10.5)


# ═══════════════════════════════════════════════
#  REGRESSION
# ═══════════════════════════════════════════════

class TestRegression:
    """Test OLS and two-point trendlines."""

    def test_perfect_line(self):
        from chartpatterns.engines.regression import linear_fit
        line = linear_fit([(0, 10.0), (1, 12.0), (2, 14.0), (3, 16.0)])
        assert line.slope == pytest.approx(2.0)
        assert line.intercept == pytest.approx(10.0)
        assert line.r2 == pytest.approx(1.0)
        assert line.value_at(5) == pytest.approx(20.0)

    def test_degenerate_same_index(self):
        from chartpatterns.engines.regression import linear_fit
        line = linear_fit([(4, 10.0), (4, 12.0)])
        assert line.r2 == 0.0
        assert line.slope == 0.0
        assert line.value_at(100) == pytest.approx(11.0)

    def test_flat_series_is_perfect_fit(self):
        from chartpatterns.engines.regression import linear_fit
        line = linear_fit([(0, 5.0), (3, 5.0), (9, 5.0)])
        assert line.slope == pytest.approx(0.0)
        assert line.r2 == 1.0

    def test_noisy_fit_r2_below_one(self):
        from chartpatterns.engines.regression import linear_fit
        line = linear_fit([(0, 10.0), (1, 13.0), (2, 11.0), (3, 15.0)])
        assert 0.0 < line.r2 < 1.0

    def test_empty_points(self):
        from chartpatterns.engines.regression import linear_fit
        assert linear_fit([]).r2 == 0.0

    def test_line_through(self):
        from chartpatterns.engines.regression import line_through
        line = line_through((2, 10.0), (6, 12.0))
        assert line.slope == pytest.approx(0.5)
        assert line.value_at(2) == pytest.approx(10.0)
        assert line.anchors == ((2, 10.0), (6, 12.0))

    def test_upper_trendline_through_collinear_highs(self):
        from chartpatterns.engines.regression import fit_upper_trendline
        from chartpatterns.models import PivotKind, SwingPoint
        highs = [SwingPoint(index=i, price=10.0 + 0.2 * i, kind=PivotKind.PEAK) for i in (0, 5, 10, 15)]
        line = fit_upper_trendline(highs, 0, 15, tolerance=0.1)
        assert line is not None
        assert line.slope == pytest.approx(0.2)

    def test_trendline_needs_early_and_late_anchor(self):
        from chartpatterns.engines.regression import fit_lower_trendline
        from chartpatterns.models import PivotKind, SwingPoint
        lows = [SwingPoint(index=i, price=10.0, kind=PivotKind.VALLEY) for i in (6, 7, 8)]
        assert fit_lower_trendline(lows, 0, 15, tolerance=0.1) is None


# ═══════════════════════════════════════════════
#  SMOOTHING
# ═══════════════════════════════════════════════

class TestSmoothing:
    """Test the Savitzky-Golay filter."""

    def test_quadratic_is_preserved(self):
        import numpy as np
        from chartpatterns.engines.smoothing import savitzky_golay
        x = np.arange(20, dtype=float)
        y = 0.5 * x ** 2 - 3 * x + 7
        assert np.allclose(savitzky_golay(y, window=5, order=2), y)

    def test_noise_is_reduced(self):
        import numpy as np
        from chartpatterns.engines.smoothing import savitzky_golay
        y = np.array([10.0 + (1 if i % 2 else -1) for i in range(30)])
        smoothed = savitzky_golay(y, window=7, order=2)
        assert np.std(smoothed[3:-3]) < np.std(y[3:-3])

    def test_edges_keep_raw_values(self):
        import numpy as np
        from chartpatterns.engines.smoothing import savitzky_golay
        y = np.array([1.0, 5.0, 2.0, 8.0, 3.0, 9.0, 4.0])
        smoothed = savitzky_golay(y, window=5)
        assert smoothed[0] == 1.0 and smoothed[1] == 5.0
        assert smoothed[-1] == 4.0 and smoothed[-2] == 9.0

    def test_short_input_unchanged(self):
        from chartpatterns.engines.smoothing import savitzky_golay
        assert list(savitzky_golay([1.0, 2.0, 3.0], window=5)) == [1.0, 2.0, 3.0]

    def test_even_window_forced_odd(self):
        import numpy as np
        from chartpatterns.engines.smoothing import savitzky_golay
        y = np.arange(12, dtype=float)
        assert np.allclose(savitzky_golay(y, window=4), y)

    def test_wedge_window_bounds(self):
        from chartpatterns.engines.smoothing import wedge_window
        assert wedge_window(40) == 5
        assert wedge_window(100) == 11
        assert wedge_window(1000) == 11
