"""
Chart Patterns — Pattern Engine Tests

End-to-end detection: failure boundary, filters, statistics and the
structural guarantees every result must satisfy.
"""

import sys
from datetime import datetime, timedelta
from unittest.mock import patch

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


def _make_bars(n: int = 220):
    """Helper: two overlaid sine waves on a slight uptrend."""
    import math
    from chartpatterns.models import Bar

    base = datetime(2023, 1, 2)
    bars = []
    prev = 100.0
    for i in range(n):
        close = 100 + 8 * math.sin(i / 7) + 3 * math.sin(i / 2.3) + 0.05 * i
        high = max(prev, close) + 0.8
        low = min(prev, close) - 0.8
        bars.append(Bar(timestamp=base + timedelta(days=i), open=prev, high=high, low=low, close=close,
                        volume=1_000_000))
        prev = close
    return bars


DOUBLE_BOTTOM_KNOTS = [(0, 110.0), (10, 100.0), (20, 110.0), (30, 100.5), (59, 129.5)]
DOUBLE_BOTTOM_CONFIG = {"patterns": ["double_bottom"], "swingDepth": 3, "tolerancePct": 0.03}


# ═══════════════════════════════════════════════
#  FAILURE BOUNDARY
# ═══════════════════════════════════════════════

class TestEngineResult:
    """Test the ok / error envelope."""

    def test_short_input_is_empty_success(self):
        from chartpatterns.engines.pattern_engine import detect_patterns
        result = detect_patterns(_make_bars(10))
        assert result.ok is True
        assert result.error is None
        assert result.result.patterns == []
        assert result.result.effective_params["swingDepth"] == 7
        assert result.result.effective_params["timeframe"] == "1day"
        assert "Not enough bars" in result.result.summary

    def test_out_of_range_tolerance(self):
        from chartpatterns.engines.pattern_engine import detect_patterns
        result = detect_patterns(_make_bars(), {"tolerancePct": 1.5})
        assert result.ok is False
        assert result.error.code == "invalid_config"
        assert result.error.status_code == 422
        assert "tolerancePct" in result.error.detail

    def test_unknown_pattern_name(self):
        from chartpatterns.engines.pattern_engine import detect_patterns
        result = detect_patterns(_make_bars(), {"patterns": ["cup_and_handle"]})
        assert result.ok is False
        assert result.error.code == "invalid_config"
        assert "cup_and_handle" in result.error.detail

    def test_classifier_crash_becomes_internal_error(self):
        from chartpatterns.engines.families import DoublesClassifier
        from chartpatterns.engines.pattern_engine import detect_patterns
        with patch.object(DoublesClassifier, "scan", side_effect=RuntimeError("boom")):
            result = detect_patterns(_make_bars())
        assert result.ok is False
        assert result.error.code == "internal_error"
        assert result.error.detail == "RuntimeError: boom"

    def test_serializes_camel_case(self):
        from chartpatterns.engines.pattern_engine import detect_patterns
        payload = detect_patterns(_make_bars()).model_dump(by_alias=True, mode="json")
        assert payload["ok"] is True
        assert "effectiveParams" in payload["result"]
        for pattern in payload["result"]["patterns"]:
            assert "startIndex" in pattern and "endIndex" in pattern


# ═══════════════════════════════════════════════
#  DETECTION FLOW
# ═══════════════════════════════════════════════

class TestPatternEngine:
    """Test the engine on a path with one known double bottom."""

    def test_double_bottom_end_to_end(self):
        from chartpatterns.engines.pattern_engine import PatternEngine
        result = PatternEngine().detect(_path_bars(DOUBLE_BOTTOM_KNOTS), DOUBLE_BOTTOM_CONFIG)

        assert len(result.patterns) == 1
        pattern = result.patterns[0]
        assert pattern.type == "double_bottom"
        assert pattern.timeframe == "1day"
        assert pattern.aftermath is not None
        assert pattern.aftermath.outcome == "success"

        stats = result.statistics["double_bottom"]
        assert stats.detected == 1
        assert stats.with_aftermath == 1
        assert stats.success_rate == 1.0
        assert stats.avg_return7d == pytest.approx(6.22)

        assert [r.label for r in result.overlays.ranges] == ["double_bottom (completed)"]
        assert result.warnings[0].type == "low_detection_count"
        assert result.warnings[0].suggested_params == {"tolerancePct": 0.03, "minBarsBetweenSwings": 2}
        assert "Double Bottom" in result.summary
        assert "bias bullish" in result.summary
        assert result.effective_params["swingDepth"] == 3
        assert result.effective_params["autoScaled"] is False

    def test_low_detection_warning_names_fixed_double_spacing(self):
        """The suggested minBarsBetweenSwings does not loosen double spacing."""
        from chartpatterns.engines.families.doubles import MIN_SPACING
        from chartpatterns.engines.pattern_engine import LOW_DETECTION_SUGGESTION, PatternEngine
        result = PatternEngine().detect(_path_bars(DOUBLE_BOTTOM_KNOTS), DOUBLE_BOTTOM_CONFIG)

        warning = result.warnings[0]
        assert LOW_DETECTION_SUGGESTION["minBarsBetweenSwings"] < MIN_SPACING
        assert "minBarsBetweenSwings" in warning.message
        assert f"fixed {MIN_SPACING}-bar spacing" in warning.message

    def test_require_current_drops_old_patterns(self):
        from chartpatterns.engines.pattern_engine import PatternEngine
        bars = _path_bars(DOUBLE_BOTTOM_KNOTS)
        engine = PatternEngine()

        stale = engine.detect(bars, {**DOUBLE_BOTTOM_CONFIG, "requireCurrentInPattern": True})
        assert stale.patterns == []
        assert stale.statistics == {}
        assert stale.summary.startswith("No chart patterns detected")

        recent = engine.detect(bars, {
            **DOUBLE_BOTTOM_CONFIG, "requireCurrentInPattern": True, "currentRelevanceDays": 30,
        })
        assert len(recent.patterns) == 1

    def test_completed_can_be_hidden_but_still_counted(self):
        from chartpatterns.engines.pattern_engine import PatternEngine
        result = PatternEngine().detect(
            _path_bars(DOUBLE_BOTTOM_KNOTS), {**DOUBLE_BOTTOM_CONFIG, "includeCompleted": False},
        )
        assert result.patterns == []
        assert result.statistics["double_bottom"].detected == 1

    def test_explicit_now_controls_relevance(self):
        from chartpatterns.engines.pattern_engine import PatternEngine
        bars = _path_bars(DOUBLE_BOTTOM_KNOTS)
        now = bars[42].timestamp + timedelta(days=2)
        result = PatternEngine().detect(bars, {**DOUBLE_BOTTOM_CONFIG, "requireCurrentInPattern": True}, now=now)
        assert len(result.patterns) == 1

    def test_debug_is_capped(self):
        from chartpatterns.config import Settings
        from chartpatterns.engines.pattern_engine import PatternEngine
        engine = PatternEngine(settings=Settings(debug_candidate_cap=3))
        result = engine.detect(_make_bars(), {"swingDepth": 3})
        assert len(result.debug.swings) <= 3
        assert len(result.debug.candidates) <= 3


# ═══════════════════════════════════════════════
#  STRUCTURAL GUARANTEES
# ═══════════════════════════════════════════════

class TestResultGuarantees:
    """Properties that hold for every detection result."""

    CONFIG = {"swingDepth": 3, "includeForming": True, "includeInvalid": True}

    @pytest.fixture(scope="class")
    def result(self):
        from chartpatterns.engines.pattern_engine import PatternEngine
        return PatternEngine().detect(_make_bars(), self.CONFIG)

    def test_confidence_and_ordering(self, result):
        for p in result.patterns:
            assert 0.0 <= p.confidence <= 1.0
            assert p.start_index < p.end_index
            assert p.range.start < p.range.end

    def test_neckline_points_ordered(self, result):
        for p in result.patterns:
            if p.neckline:
                assert len(p.neckline) == 2
                assert p.neckline[0].index <= p.neckline[1].index

    def test_no_heavy_overlap_within_category(self, result):
        from chartpatterns.engines.dedup import category_of, overlap_ratio
        patterns = result.patterns
        for i, a in enumerate(patterns):
            for b in patterns[i + 1:]:
                if category_of(a.type) == category_of(b.type):
                    assert overlap_ratio(a, b) < 0.70

    def test_sorted_by_start(self, result):
        starts = [p.range.start for p in result.patterns]
        assert starts == sorted(starts)

    def test_deterministic(self, result):
        from chartpatterns.engines.pattern_engine import PatternEngine
        again = PatternEngine().detect(_make_bars(), self.CONFIG)
        assert again.model_dump() == result.model_dump()

    def test_parallel_matches_sequential(self, result):
        from chartpatterns.config import Settings
        from chartpatterns.engines.pattern_engine import PatternEngine
        parallel = PatternEngine(settings=Settings(parallel_classifiers=True, max_workers=4))
        assert parallel.detect(_make_bars(), self.CONFIG).model_dump() == result.model_dump()

    def test_overlays_match_patterns(self, result):
        assert len(result.overlays.ranges) == len(result.patterns)
        for overlay, p in zip(result.overlays.ranges, result.patterns):
            assert overlay.label == f"{p.type} ({p.status})"
