"""
Chart Patterns — Aftermath & Statistics Tests

Uses the same double-bottom path as the family tests: neckline 110.5,
breakout close 112.5 at bar 42, then a steady +1.0 per bar rally.
"""

import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, "backend")


def _path_bars(knots):
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


def _double_bottom():
    """Helper: (bars, entry) for a confirmed double bottom."""
    from chartpatterns.engines.context import build_context
    from chartpatterns.engines.families import DoublesClassifier
    from chartpatterns.models import DetectionConfig

    bars = _path_bars([(0, 110.0), (10, 100.0), (20, 110.0), (30, 100.5), (59, 129.5)])
    ctx = build_context(bars, DetectionConfig(swing_depth=3, tolerance_pct=0.03))
    entries = DoublesClassifier().run(ctx).entries
    assert len(entries) == 1
    return bars, entries[0]


def _bare_entry(ptype, **extra):
    """Helper: minimal pattern entry for direction and neckline checks."""
    from chartpatterns.models import PatternEntry, PatternRange
    base = datetime(2024, 1, 1)
    return PatternEntry(
        type=ptype,
        confidence=0.7,
        range=PatternRange(start=base, end=base + timedelta(days=20)),
        start_index=0,
        end_index=20,
        **extra,
    )


# ═══════════════════════════════════════════════
#  EXPECTED DIRECTION / NECKLINE
# ═══════════════════════════════════════════════

class TestDirection:
    """Test the expected-direction table and neckline interpolation."""

    def test_fixed_directions(self):
        from chartpatterns.engines.aftermath import expected_direction
        from chartpatterns.models import BreakoutDirection
        assert expected_direction(_bare_entry("double_bottom")) == BreakoutDirection.UP
        assert expected_direction(_bare_entry("inverse_head_and_shoulders")) == BreakoutDirection.UP
        assert expected_direction(_bare_entry("falling_wedge")) == BreakoutDirection.UP
        assert expected_direction(_bare_entry("triple_top")) == BreakoutDirection.DOWN
        assert expected_direction(_bare_entry("rising_wedge")) == BreakoutDirection.DOWN
        assert expected_direction(_bare_entry("head_and_shoulders")) == BreakoutDirection.DOWN

    def test_flags_follow_pole(self):
        from chartpatterns.engines.aftermath import expected_direction
        from chartpatterns.models import BreakoutDirection
        assert expected_direction(_bare_entry("flag", pole_direction="down")) == BreakoutDirection.DOWN
        assert expected_direction(_bare_entry("pennant", pole_direction="up")) == BreakoutDirection.UP
        assert expected_direction(_bare_entry("flag")) is None

    def test_neckline_value_is_clamped(self):
        from chartpatterns.engines.aftermath import neckline_value
        from chartpatterns.models import NecklinePoint
        entry = _bare_entry("double_top", neckline=[
            NecklinePoint(index=10, price=100.0), NecklinePoint(index=20, price=110.0),
        ])
        assert neckline_value(entry, 15) == pytest.approx(105.0)
        assert neckline_value(entry, 0) == pytest.approx(100.0)
        assert neckline_value(entry, 40) == pytest.approx(110.0)
        assert neckline_value(_bare_entry("double_top"), 15) is None


# ═══════════════════════════════════════════════
#  AFTERMATH
# ═══════════════════════════════════════════════

class TestAftermath:
    """Test the post-pattern analysis."""

    def test_double_bottom_reaches_target(self):
        from chartpatterns.engines.aftermath import AftermathOutcome, analyze_aftermath
        bars, entry = _double_bottom()
        after = analyze_aftermath(entry, bars)

        assert after is not None
        assert after.breakout_confirmed is True
        assert after.breakout_date == datetime(2024, 1, 1) + timedelta(days=43)
        assert after.theoretical_target == pytest.approx(121.5)
        assert after.target_reached is True
        assert after.days_to_target == 9
        assert after.outcome == AftermathOutcome.SUCCESS
        assert after.days3.return_pct == pytest.approx(2.67)
        assert after.days7.return_pct == pytest.approx(6.22)
        assert after.days14.return_pct == pytest.approx(12.44)
        assert after.days7.high == pytest.approx(120.0)

    def test_forming_entry_has_no_aftermath(self):
        from chartpatterns.engines.aftermath import analyze_aftermath
        bars, entry = _double_bottom()
        forming = entry.model_copy(update={"status": "forming"})
        assert analyze_aftermath(forming, bars) is None

    def test_no_bars_after_pattern(self):
        from chartpatterns.engines.aftermath import AftermathOutcome, analyze_aftermath
        bars, entry = _double_bottom()
        after = analyze_aftermath(entry, bars[:43])
        assert after is not None
        assert after.breakout_confirmed is False
        assert after.outcome == AftermathOutcome.NOT_TRIGGERED
        assert after.days3 is None

    def test_outcome_classification(self):
        from chartpatterns.engines.aftermath import AftermathOutcome, _classify
        from chartpatterns.models import PriceMove

        moves = {"days7": PriceMove(return_pct=5.0, high=1, low=1)}
        assert _classify(True, False, moves, bullish=True)[0] == AftermathOutcome.PARTIAL_SUCCESS
        assert _classify(True, False, moves, bullish=False)[0] == AftermathOutcome.FAILURE_OPPOSITE_MOVE
        small = {"days7": PriceMove(return_pct=1.0, high=1, low=1)}
        assert _classify(True, False, small, bullish=True)[0] == AftermathOutcome.FAILURE_NEGLIGIBLE_MOVE
        assert _classify(True, False, {}, bullish=True)[0] == AftermathOutcome.NOT_EVALUABLE


# ═══════════════════════════════════════════════
#  STATISTICS
# ═══════════════════════════════════════════════

class TestStatistics:
    """Test per-type aggregation."""

    def test_statistics_from_annotated_entries(self):
        from chartpatterns.engines.aftermath import analyze_aftermath, compute_statistics
        bars, entry = _double_bottom()
        annotated = entry.model_copy(update={"aftermath": analyze_aftermath(entry, bars)})

        stats = compute_statistics([annotated, _bare_entry("triple_top")])
        assert set(stats) == {"double_bottom", "triple_top"}
        db = stats["double_bottom"]
        assert db.detected == 1
        assert db.with_aftermath == 1
        assert db.success_rate == 1.0
        assert db.avg_return7d == pytest.approx(6.22)
        assert db.avg_return14d == pytest.approx(12.44)
        assert db.median_return7d == pytest.approx(6.22)

        tt = stats["triple_top"]
        assert tt.detected == 1
        assert tt.with_aftermath == 0
        assert tt.success_rate is None

    def test_empty(self):
        from chartpatterns.engines.aftermath import compute_statistics
        assert compute_statistics([]) == {}
