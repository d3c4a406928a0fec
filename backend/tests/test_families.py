"""
Chart Patterns — Pattern Family Tests

Deterministic synthetic price paths for each family. Paths are built
from (index, close) knots joined by straight lines, with a 0.5 wick on
either side of every close so pivot prices are predictable.
"""

import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, "backend")


def _path_bars(knots: list[tuple[int, float]]):
    """Helper: daily bars whose closes interpolate ``knots``."""
    import numpy as np
    from chartpatterns.models import Bar

    xs = [k[0] for k in knots]
    ys = [k[1] for k in knots]
    closes = np.interp(np.arange(xs[-1] + 1), xs, ys)
    base = datetime(2024, 1, 1)
    return [
        Bar(timestamp=base + timedelta(days=i), open=float(c), high=float(c) + 0.5, low=float(c) - 0.5,
            close=float(c))
        for i, c in enumerate(closes)
    ]


def _context(bars, **config):
    from chartpatterns.engines.context import build_context
    from chartpatterns.models import DetectionConfig
    return build_context(bars, DetectionConfig(**config))


DOUBLE_BOTTOM_KNOTS = [(0, 110.0), (10, 100.0), (20, 110.0), (30, 100.5), (59, 129.5)]


# ═══════════════════════════════════════════════
#  DOUBLE TOP / BOTTOM
# ═══════════════════════════════════════════════

class TestDoubles:
    """Test the double top / bottom classifier."""

    def test_double_bottom_with_breakout(self):
        from chartpatterns.engines.families import DoublesClassifier
        ctx = _context(_path_bars(DOUBLE_BOTTOM_KNOTS), swing_depth=3, tolerance_pct=0.03)
        output = DoublesClassifier().run(ctx)

        assert len(output.entries) == 1
        entry = output.entries[0]
        assert entry.type == "double_bottom"
        assert entry.status == "completed"
        assert entry.outcome == "success"
        assert entry.breakout_direction == "up"
        assert entry.breakout_index == 42
        assert [p.index for p in entry.pivots] == [10, 20, 30]
        # neckline 110.5 plus the 11.0 pattern height
        assert entry.breakout_target == pytest.approx(121.5)
        assert entry.confidence == pytest.approx(0.84)
        assert entry.fallback is None

    def test_unequal_bottoms_are_rejected(self):
        from chartpatterns.engines.families import DoublesClassifier
        knots = [(0, 110.0), (10, 100.0), (20, 110.0), (30, 106.0), (59, 135.0)]
        ctx = _context(_path_bars(knots), swing_depth=3, tolerance_pct=0.03, patterns=["double_bottom"])
        output = DoublesClassifier().run(ctx)
        assert output.entries == []
        reasons = {c.reason for c in output.candidates if not c.accepted}
        assert "valleys_not_equal" in reasons

    def test_relaxed_pass_marks_fallback(self):
        from chartpatterns.engines.families import DoublesClassifier
        # 3.5% apart: outside 3% but inside 3% x 1.3
        knots = [(0, 110.0), (10, 100.0), (20, 110.0), (30, 103.5), (59, 132.5)]
        ctx = _context(_path_bars(knots), swing_depth=3, tolerance_pct=0.03, patterns=["double_bottom"])
        output = DoublesClassifier().run(ctx)
        assert len(output.entries) == 1
        assert output.entries[0].fallback == "relaxed_double_x1.3"

    def test_no_breakout_is_not_reported(self):
        from chartpatterns.engines.families import DoublesClassifier
        knots = [(0, 110.0), (10, 100.0), (20, 110.0), (30, 100.5), (59, 105.0)]
        ctx = _context(_path_bars(knots), swing_depth=3, tolerance_pct=0.03, patterns=["double_bottom"])
        output = DoublesClassifier().run(ctx)
        assert output.entries == []
        assert any(c.reason == "no_breakout" for c in output.candidates)


# ═══════════════════════════════════════════════
#  HEAD AND SHOULDERS
# ═══════════════════════════════════════════════

class TestHeadShoulders:
    """Test the head-and-shoulders classifier."""

    KNOTS = [(0, 95.0), (5, 110.0), (10, 100.0), (16, 120.0), (22, 100.0), (27, 110.0), (40, 85.0)]

    def test_head_and_shoulders_breaks_neckline(self):
        from chartpatterns.engines.families import HeadShouldersClassifier
        ctx = _context(_path_bars(self.KNOTS), swing_depth=3)
        output = HeadShouldersClassifier().run(ctx)

        assert len(output.entries) == 1
        entry = output.entries[0]
        assert entry.type == "head_and_shoulders"
        assert entry.status == "completed"
        assert entry.breakout_direction == "down"
        assert entry.breakout_index == 34
        assert [p.index for p in entry.pivots] == [5, 10, 16, 22, 27]
        assert [n.index for n in entry.neckline] == [10, 22]
        assert entry.breakout_target == pytest.approx(78.5)
        assert 0.0 <= entry.confidence <= 1.0

    def test_low_head_is_rejected(self):
        from chartpatterns.engines.families import HeadShouldersClassifier
        knots = [(0, 95.0), (5, 110.0), (10, 100.0), (16, 111.0), (22, 100.0), (27, 110.0), (40, 85.0)]
        ctx = _context(_path_bars(knots), swing_depth=3, patterns=["head_and_shoulders"])
        output = HeadShouldersClassifier().run(ctx)
        assert output.entries == []
        assert any(c.reason == "head_not_higher" for c in output.candidates)


# ═══════════════════════════════════════════════
#  TRIANGLES
# ═══════════════════════════════════════════════

class TestTriangles:
    """Test the triangle classifier."""

    # flat resistance at 110, rising support, no breakout by the last bar
    KNOTS = [
        (0, 100.0), (5, 110.0), (10, 100.0), (15, 110.0), (20, 103.0), (25, 110.0),
        (30, 106.0), (35, 110.0), (40, 108.0), (44, 109.8),
    ]

    def test_ascending_without_breakout_hidden_by_default(self):
        from chartpatterns.engines.families import TrianglesClassifier
        ctx = _context(_path_bars(self.KNOTS), swing_depth=2)
        output = TrianglesClassifier().run(ctx)
        assert output.entries == []
        assert any(c.type == "triangle_ascending" and c.reason == "no_breakout" for c in output.candidates)

    def test_ascending_without_breakout_is_forming(self):
        from chartpatterns.engines.families import TrianglesClassifier
        ctx = _context(_path_bars(self.KNOTS), swing_depth=2, include_forming=True)
        output = TrianglesClassifier().run(ctx)

        assert [e.type for e in output.entries] == ["triangle_ascending"]
        entry = output.entries[0]
        assert entry.status in ("forming", "near_completion")
        assert entry.end_index == 44
        assert entry.days_to_apex == 6
        assert entry.completion_pct is not None and entry.completion_pct >= 40
        assert entry.apex_date is not None and entry.apex_date > datetime(2024, 1, 1) + timedelta(days=44)

    def test_overlapping_windows_keep_higher_confidence(self):
        """Two symmetrical triangles overlapping 85%: the stronger earlier one survives."""
        from unittest.mock import patch
        from chartpatterns.engines.dedup import deduplicate_within_family, global_dedup
        from chartpatterns.engines.families import DoublesClassifier, TrianglesClassifier
        from chartpatterns.models import PatternEntry, PatternRange

        base = datetime(2024, 1, 1)

        def entry(start, end, confidence):
            return PatternEntry(
                type="triangle_symmetrical",
                confidence=confidence,
                range=PatternRange(start=base + timedelta(days=start), end=base + timedelta(days=end)),
                start_index=start,
                end_index=end,
            )

        strong = entry(0, 40, 0.9)
        weak = entry(6, 46, 0.6)
        ctx = _context(_path_bars(self.KNOTS), swing_depth=2)

        with patch.object(TrianglesClassifier, "scan", return_value=[strong, weak]):
            output = TrianglesClassifier().run(ctx)
        assert len(output.entries) == 2

        survivors = global_dedup(output.entries)
        assert len(survivors) == 1
        assert survivors[0].confidence == 0.9
        assert survivors[0].start_index == 0

        # the latest-ending rule would have kept the weaker one
        assert deduplicate_within_family([strong, weak])[0].confidence == 0.6
        assert TrianglesClassifier.within_family_dedup is False
        assert DoublesClassifier.within_family_dedup is True

    def test_umbrella_name_requests_all_triangles(self):
        from chartpatterns.models import DetectionConfig
        config = DetectionConfig(patterns=["triangle"])
        assert config.patterns == ["triangle_ascending", "triangle_descending", "triangle_symmetrical"]


# ═══════════════════════════════════════════════
#  TRIPLE TOP / BOTTOM
# ═══════════════════════════════════════════════

class TestTriples:
    """Test the triple top / bottom classifier."""

    KNOTS = [(0, 95.0), (5, 110.0), (10, 100.0), (15, 110.0), (20, 100.5), (25, 110.0), (30, 98.0), (35, 90.0)]

    def test_triple_top(self):
        from chartpatterns.engines.families import TriplesClassifier
        ctx = _context(_path_bars(self.KNOTS), swing_depth=3)
        output = TriplesClassifier().run(ctx)

        assert len(output.entries) == 1
        entry = output.entries[0]
        assert entry.type == "triple_top"
        assert entry.status == "completed"
        assert [p.index for p in entry.pivots] == [5, 10, 15, 20, 25]
        assert entry.neckline[0].price == pytest.approx(99.75)
        assert entry.breakout_target == pytest.approx(89.0)
        assert entry.confidence >= 0.5

    def test_uneven_peaks_rejected(self):
        from chartpatterns.engines.families import TriplesClassifier
        knots = [(0, 95.0), (5, 110.0), (10, 100.0), (15, 125.0), (20, 100.5), (25, 110.0), (30, 98.0), (35, 90.0)]
        ctx = _context(_path_bars(knots), swing_depth=3, patterns=["triple_top"])
        output = TriplesClassifier().run(ctx)
        assert output.entries == []
        assert any(c.reason == "peaks_not_equal" for c in output.candidates)


# ═══════════════════════════════════════════════
#  FLAGS / PENNANTS
# ═══════════════════════════════════════════════

class TestFlags:
    """Test pole detection and flag / pennant classification."""

    # flat base, impulsive rise, down-sloping parallel channel, upside break
    KNOTS = [
        (0, 100.0), (10, 100.0), (17, 120.0), (20, 116.0), (23, 119.0), (26, 115.0), (29, 118.0),
        (32, 114.0), (35, 117.0), (38, 113.0), (44, 128.0),
    ]

    def _cons(self, upper_slope: float, lower_slope: float, gap_start: float, gap_end: float, r2: float = 1.0):
        from chartpatterns.engines.families.flags import Consolidation
        from chartpatterns.engines.regression import TrendLine
        return Consolidation(
            start=20, end=30, highs=[], lows=[],
            upper=TrendLine(upper_slope, 110.0, r2=r2),
            lower=TrendLine(lower_slope, 100.0, r2=r2),
            gap_start=gap_start, gap_end=gap_end,
        )

    def test_bull_flag_completes_on_upside_break(self):
        from chartpatterns.engines.families import FlagsClassifier
        ctx = _context(_path_bars(self.KNOTS))
        output = FlagsClassifier().run(ctx)

        assert output.entries
        for entry in output.entries:
            assert entry.type == "flag"
            assert entry.status == "completed"
            assert entry.pole_direction == "up"
            assert entry.breakout_direction == "up"
            assert entry.breakout_index == 40
            assert entry.target_method == "flagpole_projection"
            assert entry.details.family == "flag"

    def test_flag_hidden_from_forming_pass(self):
        from chartpatterns.engines.families import FlagsClassifier
        ctx = _context(_path_bars(self.KNOTS), include_forming=True)
        output = FlagsClassifier().run(ctx)
        assert all(e.status == "completed" for e in output.entries)

    def test_classify_flag(self):
        from chartpatterns.engines.families.flags import FlagsClassifier, Pole
        pole = Pole(start=0, end=10, magnitude=20.0, atr_mult=5.0, atr=1.0)
        assert FlagsClassifier.classify(pole, self._cons(-0.1, -0.1, 4.0, 3.8)) == "flag"

    def test_classify_pennant(self):
        from chartpatterns.engines.families.flags import FlagsClassifier, Pole
        pole = Pole(start=0, end=10, magnitude=20.0, atr_mult=5.0, atr=1.0)
        assert FlagsClassifier.classify(pole, self._cons(-0.2, 0.2, 4.0, 2.0, r2=0.9)) == "pennant"

    def test_classify_channel_with_the_pole_fails(self):
        from chartpatterns.engines.families.flags import FlagsClassifier, Pole
        pole = Pole(start=0, end=10, magnitude=20.0, atr_mult=5.0, atr=1.0)
        assert FlagsClassifier.classify(pole, self._cons(0.1, 0.1, 4.0, 4.0)) is None

    def test_pole_params_scale_with_timeframe(self):
        from chartpatterns.engines.families.flags import PoleParams
        daily = PoleParams.for_context(_context(_path_bars(self.KNOTS)))
        hourly = PoleParams.for_context(_context(_path_bars(self.KNOTS), timeframe="1hour"))
        assert (daily.pole_min_bars, daily.pole_max_bars) == (2, 15)
        assert (daily.cons_min_bars, daily.cons_max_bars) == (3, 30)
        assert hourly.pole_max_bars == 360
        assert hourly.min_atr_mult == 1.5


# ═══════════════════════════════════════════════
#  WEDGES
# ═══════════════════════════════════════════════

class TestWedges:
    """Test the wedge helpers and entry shape."""

    def test_expected_break(self):
        from chartpatterns.engines.families.wedges import expected_break
        assert expected_break("falling_wedge") == "up"
        assert expected_break("rising_wedge") == "down"

    def test_generate_windows(self):
        from chartpatterns.engines.families.wedges import generate_windows
        assert generate_windows(30, 25, 30, 5) == [(0, 25)]
        windows = generate_windows(100, 25, 35, 5)
        assert (0, 25) in windows and (70, 95) in windows and (60, 95) in windows
        assert all(end < 100 for _, end in windows)

    def test_downsample_keeps_endpoints(self):
        from chartpatterns.engines.families.wedges import _downsample
        from chartpatterns.models import PivotKind, SwingPoint
        points = [SwingPoint(index=i, price=100.0, kind=PivotKind.PEAK) for i in range(10)]
        picked = _downsample(points, 6)
        assert len(picked) == 6
        assert picked[0].index == 0 and picked[-1].index == 9

    def test_wedge_entries_are_well_formed(self):
        import math
        from chartpatterns.engines.families import WedgesClassifier
        from chartpatterns.models import Bar

        base = datetime(2024, 1, 1)
        bars = []
        for i in range(160):
            # oscillation with a shrinking amplitude around a falling mid-line
            amp = 8.0 * (1 - i / 200)
            c = 150 - 0.15 * i + amp * math.sin(i / 3.0)
            bars.append(Bar(timestamp=base + timedelta(days=i), open=c, high=c + 0.6, low=c - 0.6, close=c))

        ctx = _context(bars, include_forming=True)
        output = WedgesClassifier().run(ctx)
        for entry in output.entries:
            assert entry.type in ("rising_wedge", "falling_wedge")
            assert entry.start_index < entry.end_index <= ctx.last_index
            assert 0.0 <= entry.confidence <= 1.0
            assert entry.details.family == "wedge"
        assert all(c.type for c in output.candidates)
