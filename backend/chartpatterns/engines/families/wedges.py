"""
Chart Patterns — Rising / Falling Wedges

Completed wedges come from a multi-scale window scan: regression lines
through the swing highs and lows of each window (Savitzky-Golay pivots
when there are enough of them), then a chain of acceptance gates:

  R² → slope classification → apex ahead → convergence → containment
  → touches (count, gaps, start gap, balance) → alternation → score

Forming wedges use two-point trendlines over relaxed pivots, including
windows aligned to the latest bar.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from chartpatterns.engines.classifier import PatternClassifier, resolve_outcome, scan_breakout
from chartpatterns.engines.context import DebugCollector, DetectionContext
from chartpatterns.engines.regression import TrendLine, fit_lower_trendline, fit_pivots, fit_upper_trendline
from chartpatterns.engines.scoring import (
    alternation_score,
    calc_apex,
    check_containment,
    check_convergence,
    determine_wedge_type,
    duration_score,
    evaluate_touches,
    finalize_confidence,
    inside_ratio,
    pattern_score,
    WEDGE_MIN_SLOPE,
)
from chartpatterns.engines.smoothing import smooth_bars, wedge_window
from chartpatterns.engines.swing_engine import average_true_range, find_relaxed_swings, find_swings
from chartpatterns.models import (
    BreakoutDirection,
    PatternEntry,
    PatternStatus,
    PatternType,
    PivotKind,
    SwingPoint,
    WedgeDetails,
)

RISING = PatternType.RISING_WEDGE.value
FALLING = PatternType.FALLING_WEDGE.value

WINDOW_MIN, WINDOW_MAX, WINDOW_STEP = 25, 90, 5
MIN_PIVOTS_PER_LINE = 4
MIN_R2 = 0.40
MIN_CONTAINMENT = 0.85
MIN_TOUCHES = 3
MAX_TOUCH_GAP = 25
MAX_START_GAP = 10
MIN_TOUCH_BALANCE = 0.45
MIN_ALTERNATION = 0.25
MIN_SCORE = 0.5
BREAK_ATR_MULT = 0.5
MIN_SMOOTHED_PIVOTS = 6

FORMING_WINDOW_MIN, FORMING_WINDOW_MAX = 20, 120
FORMING_MAX_RATIO = 0.80
FORMING_MIN_CONTAINMENT = 0.75
FORMING_BREAK_PCT = 0.015
FORMING_NEAR_APEX_BARS = 10


def expected_break(wedge_type: str) -> BreakoutDirection:
    """Falling wedges resolve upward, rising wedges downward."""
    return BreakoutDirection.UP if wedge_type == FALLING else BreakoutDirection.DOWN


def generate_windows(total: int, min_size: int, max_size: int, step: int) -> list[tuple[int, int]]:
    """Every ``(start, end)`` window of each size, starts stepped by ``step``."""
    windows = []
    for size in range(min_size, max_size + 1, step):
        for start in range(0, total - size, step):
            windows.append((start, start + size))
    return windows


def _debug_type(upper: TrendLine, lower: TrendLine) -> str:
    if upper.slope < 0 and lower.slope < 0:
        return FALLING
    if upper.slope > 0 and lower.slope > 0:
        return RISING
    return PatternType.TRIANGLE_SYMMETRICAL.value


def _max_gap(indices: Sequence[int]) -> float:
    if len(indices) < 2:
        return float("inf")
    return max(b - a for a, b in zip(indices, indices[1:]))


def _downsample(points: list[SwingPoint], max_points: int = 6) -> list[SwingPoint]:
    if len(points) <= max_points:
        return points
    last = len(points) - 1
    picked = [points[round(i / (max_points - 1) * last)] for i in range(max_points)]
    seen, out = set(), []
    for p in picked:
        if (p.index, p.kind) not in seen:
            seen.add((p.index, p.kind))
            out.append(p)
    return out


class WedgesClassifier(PatternClassifier):
    """Rising / falling wedge detector.

    Usage:
        output = WedgesClassifier().run(ctx)
    """

    family = "wedge"
    pattern_types = (RISING, FALLING)

    # ──────────────────────────────────────────
    # Pivot sources
    # ──────────────────────────────────────────

    @staticmethod
    def _smoothed_series(ctx: DetectionContext) -> tuple[np.ndarray, np.ndarray]:
        if not ctx.params.smoothing:
            return ctx.highs, ctx.lows
        return smooth_bars(ctx.bars, wedge_window(ctx.size), 2)

    def _scan_pivots(self, ctx: DetectionContext) -> tuple[list[SwingPoint], list[SwingPoint], bool]:
        """SG pivots priced at the close when there are enough, else the shared pivots."""
        smooth_high, smooth_low = self._smoothed_series(ctx)
        depth = max(2, ctx.params.swing_depth)
        found = find_swings(ctx.bars, depth, strict=True, highs=smooth_high, lows=smooth_low)

        peaks: list[SwingPoint] = []
        valleys: list[SwingPoint] = []
        taken: set[int] = set()
        for s in found:
            if s.index in taken:
                continue
            taken.add(s.index)
            point = SwingPoint(index=s.index, price=float(ctx.closes[s.index]), kind=s.kind, date=s.date)
            (peaks if s.kind == PivotKind.PEAK else valleys).append(point)

        if len(peaks) >= MIN_SMOOTHED_PIVOTS and len(valleys) >= MIN_SMOOTHED_PIVOTS:
            return peaks, valleys, True
        return list(ctx.peaks), list(ctx.valleys), False

    # ──────────────────────────────────────────
    # Completed
    # ──────────────────────────────────────────

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        highs, lows, smoothed = self._scan_pivots(ctx)
        entries: list[PatternEntry] = []
        for start, end in generate_windows(ctx.size, WINDOW_MIN, WINDOW_MAX, WINDOW_STEP):
            highs_in = [p for p in highs if start <= p.index <= end]
            lows_in = [p for p in lows if start <= p.index <= end]
            if len(highs_in) < MIN_PIVOTS_PER_LINE or len(lows_in) < MIN_PIVOTS_PER_LINE:
                continue
            entry = self._window(ctx, debug, start, end, highs_in, lows_in, smoothed)
            if entry is not None:
                entries.append(entry)
        return entries

    def _window(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        start: int,
        end: int,
        highs_in: list[SwingPoint],
        lows_in: list[SwingPoint],
        smoothed: bool,
    ) -> Optional[PatternEntry]:
        window = [start, end]
        if not ctx.finite(*(p.price for p in (*highs_in, *lows_in))):
            debug.reject(RISING, "nan_value", window)
            return None

        upper, lower = fit_pivots(highs_in), fit_pivots(lows_in)
        if upper.r2 < MIN_R2 or lower.r2 < MIN_R2:
            debug.reject(_debug_type(upper, lower), "r2_below_threshold", window, details={
                "r2High": upper.r2, "r2Low": lower.r2, "r2MinRequired": MIN_R2,
            })
            return None

        if upper.slope > 0 and lower.slope > 0:
            reason = self._rising_sanity(ctx, start, end, upper, highs_in)
            if reason is not None:
                debug.reject(RISING, reason, window, details={"slopeHigh": upper.slope, "slopeLow": lower.slope})
                return None

        wedge_type = determine_wedge_type(upper.slope, lower.slope)
        if wedge_type is None:
            debug.reject(_debug_type(upper, lower), "type_classification_failed", window, details={
                "slopeHigh": upper.slope,
                "slopeLow": lower.slope,
                "failureReason": self._classification_failure(upper.slope, lower.slope),
            })
            return None
        if not ctx.wants(wedge_type):
            debug.reject(wedge_type, "type_not_requested", window)
            return None

        apex = calc_apex(upper, lower, end)
        if not apex.valid:
            debug.reject(wedge_type, "apex_not_in_future", window,
                         details={"apexIndex": apex.index, "barsToApex": apex.bars_to_apex})
            return None

        conv = check_convergence(upper, lower, start, end)
        if not conv.converging:
            debug.reject(wedge_type, "convergence_failed", window,
                         details={"gapStart": conv.gap_start, "gapEnd": conv.gap_end, "ratio": conv.ratio})
            return None

        containment = check_containment(ctx.closes, upper, lower, start, end)
        if containment.inside_ratio < MIN_CONTAINMENT:
            debug.reject(wedge_type, "containment_violated", window, details={
                "closeInsideRatio": round(containment.inside_ratio, 3),
                "violations": containment.violations,
                "minRequired": MIN_CONTAINMENT,
            })
            return None

        touches = evaluate_touches(ctx.highs, ctx.lows, upper, lower, start, end)
        if touches.upper_quality < MIN_TOUCHES or touches.lower_quality < MIN_TOUCHES:
            debug.reject(wedge_type, "insufficient_touches", window, details={
                "upperTouches": touches.upper_quality, "lowerTouches": touches.lower_quality,
            })
            return None

        clean_upper = [i for i, broke in touches.upper if not broke]
        clean_lower = [i for i, broke in touches.lower if not broke]
        gap = max(_max_gap(clean_upper), _max_gap(clean_lower))
        if gap > MAX_TOUCH_GAP:
            debug.reject(wedge_type, "touch_gap_too_large", window, details={"maxGap": gap})
            return None
        if abs(clean_upper[0] - clean_lower[0]) > MAX_START_GAP:
            debug.reject(wedge_type, "start_gap_too_large", window,
                         details={"firstUpper": clean_upper[0], "firstLower": clean_lower[0]})
            return None

        balance = min(touches.upper_quality, touches.lower_quality) / max(touches.upper_quality,
                                                                          touches.lower_quality, 1)
        if balance < MIN_TOUCH_BALANCE:
            debug.reject(wedge_type, "unbalanced_touches", window, details={"balance": round(balance, 3)})
            return None

        alternation = alternation_score(touches)
        if alternation < MIN_ALTERNATION:
            debug.reject(wedge_type, "insufficient_alternation", window,
                         details={"alternation": round(alternation, 3)})
            return None

        components = {
            "fit": (upper.r2 + lower.r2) / 2,
            "converge": conv.score,
            "touch": touches.score,
            "alternation": alternation,
            "inside": inside_ratio(ctx.highs, ctx.lows, upper, lower, start, end),
            "duration": duration_score(end - start),
        }
        score = pattern_score(components)
        if score < MIN_SCORE:
            debug.reject(wedge_type, "score_below_threshold", window, details={
                "score": round(score, 3), "components": {k: round(v, 3) for k, v in components.items()},
            })
            return None

        atr = average_true_range(ctx.bars, 14, start=start, end=end)
        scan_start = start + max(20, int((end - start) * 0.3))
        breakout = scan_breakout(
            ctx.closes, scan_start, ctx.last_index, upper.value_at, lower.value_at,
            atr * BREAK_ATR_MULT, atr * BREAK_ATR_MULT,
        )
        end_index = breakout.index if breakout is not None else end

        update: dict = {}
        status = PatternStatus.COMPLETED
        if breakout is not None:
            status, outcome = resolve_outcome(expected_break(wedge_type), breakout.direction)
            update = dict(
                breakout_direction=breakout.direction,
                breakout_index=breakout.index,
                breakout_date=ctx.date_at(breakout.index),
                outcome=outcome,
            )

        pivots = _downsample(sorted(
            [SwingPoint(index=i, price=float(ctx.closes[i]), kind=PivotKind.PEAK, date=ctx.date_at(i))
             for i in clean_upper]
            + [SwingPoint(index=i, price=float(ctx.closes[i]), kind=PivotKind.VALLEY, date=ctx.date_at(i))
               for i in clean_lower],
            key=lambda p: p.index,
        ))
        line = upper if wedge_type == FALLING else lower
        origin = upper.value_at(start) if wedge_type == FALLING else lower.value_at(start)

        debug.accept(wedge_type, [start, end_index], details={
            "score": round(score, 3),
            "smoothed": smoothed,
            "breakout": breakout.direction if breakout is not None else None,
        })
        return PatternEntry(
            type=wedge_type,
            confidence=finalize_confidence(score, wedge_type),
            range=ctx.pattern_range(start, end_index),
            start_index=start,
            end_index=end_index,
            status=status,
            pivots=pivots,
            neckline=ctx.neckline(start, line.value_at(start), end_index, line.value_at(end_index)),
            breakout_target=round(origin, 4),
            target_method="wedge_origin",
            details=WedgeDetails(
                upper_slope=upper.slope,
                lower_slope=lower.slope,
                upper_r2=round(upper.r2, 3),
                lower_r2=round(lower.r2, 3),
                convergence_ratio=round(conv.ratio, 3),
                apex_index=apex.index,
                bars_to_apex=apex.bars_to_apex,
                upper_touches=touches.upper_quality,
                lower_touches=touches.lower_quality,
                containment=round(containment.inside_ratio, 3),
                score=round(score, 3),
                smoothed=smoothed,
            ),
            **update,
        )

    @staticmethod
    def _rising_sanity(ctx: DetectionContext, start: int, end: int, upper: TrendLine,
                       highs_in: list[SwingPoint]) -> Optional[str]:
        """Reject rising candidates whose resistance barely rises or whose highs decline."""
        hi = ctx.highs[start:end + 1]
        lo = ctx.lows[start:end + 1]
        hi, lo = hi[np.isfinite(hi)], lo[np.isfinite(lo)]
        price_range = float(hi.max() - lo.min()) if len(hi) and len(lo) else 0.0
        if abs(upper.slope) < price_range * 0.01 / max(1, end - start):
            return "upper_line_barely_rising"

        mid = len(highs_in) // 2
        first = np.mean([p.price for p in highs_in[:mid]])
        second = np.mean([p.price for p in highs_in[mid:]])
        if round(second / max(1e-12, first), 4) < 0.99:
            return "declining_highs"
        return None

    @staticmethod
    def _classification_failure(slope_high: float, slope_low: float) -> str:
        abs_hi, abs_lo = abs(slope_high), abs(slope_low)
        same_sign = (slope_high > 0 and slope_low > 0) or (slope_high < 0 and slope_low < 0)
        if not same_sign:
            return "slope_ratio_too_small"
        if abs_hi < WEDGE_MIN_SLOPE or abs_lo < WEDGE_MIN_SLOPE:
            return "slopes_too_flat"
        if slope_high > 0 and not abs_lo > abs_hi:
            return "wrong_side_steeper"
        if slope_high < 0 and not abs_hi > abs_lo:
            return "wrong_side_steeper"
        return "slope_ratio_too_small"

    # ──────────────────────────────────────────
    # Forming
    # ──────────────────────────────────────────

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        smooth_high, smooth_low = self._smoothed_series(ctx)
        relaxed = find_relaxed_swings(ctx.bars, highs=smooth_high, lows=smooth_low)
        # trendlines sit on the real candle extremes
        highs = [SwingPoint(index=s.index, price=float(ctx.highs[s.index]), kind=s.kind, date=s.date)
                 for s in relaxed if s.kind == PivotKind.PEAK]
        lows = [SwingPoint(index=s.index, price=float(ctx.lows[s.index]), kind=s.kind, date=s.date)
                for s in relaxed if s.kind == PivotKind.VALLEY]

        last = ctx.last_index
        windows = generate_windows(ctx.size, FORMING_WINDOW_MIN, FORMING_WINDOW_MAX, WINDOW_STEP)
        windows += [(max(0, last - size), last)
                    for size in range(FORMING_WINDOW_MIN, FORMING_WINDOW_MAX + 1, WINDOW_STEP)]

        entries: list[PatternEntry] = []
        for start, end in windows:
            entry = self._forming_window(ctx, debug, start, end, highs, lows)
            if entry is None:
                continue
            if any(self._same_shape(ctx, entry, other) for other in entries):
                continue
            entries.append(entry)
        return entries

    @staticmethod
    def _same_shape(ctx: DetectionContext, a: PatternEntry, b: PatternEntry) -> bool:
        """Same type with both ends within five days."""
        if a.type != b.type:
            return False
        return (abs((a.range.start - b.range.start).total_seconds()) < 5 * 86400
                and abs((a.range.end - b.range.end).total_seconds()) < 5 * 86400)

    def _forming_window(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        start: int,
        end: int,
        highs: list[SwingPoint],
        lows: list[SwingPoint],
    ) -> Optional[PatternEntry]:
        if end - start < 2:
            return None
        avg_price = (ctx.closes[start] + ctx.closes[end]) / 2
        if not ctx.finite(avg_price):
            return None
        tolerance = float(avg_price) * 0.01
        span = end - start + 1

        upper = fit_upper_trendline(highs, start, end, tolerance, max_touch_gap=span, split_ratio=0.5)
        lower = fit_lower_trendline(lows, start, end, tolerance, max_touch_gap=span, split_ratio=0.5)
        if upper is None or lower is None:
            return None

        both_down = upper.slope < 0 and lower.slope < 0
        both_up = upper.slope > 0 and lower.slope > 0
        if not both_down and not both_up:
            return None
        abs_u, abs_l = abs(upper.slope), abs(lower.slope)
        slope_ratio = min(abs_u, abs_l) / max(abs_u, abs_l)
        if slope_ratio < 0.3:
            return None

        wedge_type = FALLING if both_down else RISING
        if not ctx.wants(wedge_type):
            return None

        gap_start = upper.value_at(start) - lower.value_at(start)
        gap_end = upper.value_at(end) - lower.value_at(end)
        if gap_start <= 0 or gap_end <= 0 or gap_end >= gap_start:
            return None
        ratio = gap_end / gap_start
        if ratio >= FORMING_MAX_RATIO:
            return None

        apex = calc_apex(upper, lower, end)
        if not apex.valid:
            return None
        containment = check_containment(ctx.closes, upper, lower, start, end, tolerance_pct=0.005)
        if containment.inside_ratio < FORMING_MIN_CONTAINMENT:
            return None

        last = ctx.last_index
        breakout = scan_breakout(
            ctx.closes, start + max(15, int((end - start) * 0.3)), last,
            upper=lambda i: upper.value_at(i) * (1 + FORMING_BREAK_PCT),
            lower=lambda i: lower.value_at(i) * (1 - FORMING_BREAK_PCT),
        )

        if breakout is None and apex.index < last:
            debug.reject(wedge_type, "forming_apex_passed", [start, end])
            return None

        end_index = breakout.index if breakout is not None else last
        duration = end_index - start
        score = (1 - ratio) * 0.4 + slope_ratio * 0.3 + (1.0 if 20 <= duration <= 60 else 0.8) * 0.3
        confidence = round(max(0.65, min(0.95, score + 0.3)), 2)

        update: dict = {}
        if breakout is not None:
            status, outcome = resolve_outcome(expected_break(wedge_type), breakout.direction)
            update = dict(
                breakout_direction=breakout.direction,
                breakout_index=breakout.index,
                breakout_date=ctx.date_at(breakout.index),
                outcome=outcome,
            )
        else:
            bars_left = apex.index - last
            status = PatternStatus.NEAR_COMPLETION if bars_left <= FORMING_NEAR_APEX_BARS else PatternStatus.FORMING
            update = dict(
                apex_date=ctx.projected_date(apex.index),
                days_to_apex=max(0, round(ctx.bars_to_days(bars_left))),
                completion_pct=min(100, round(100 * (last - start) / max(1, apex.index - start))),
            )

        line = upper if wedge_type == FALLING else lower
        anchors = [
            SwingPoint(index=i, price=p, kind=PivotKind.PEAK, date=ctx.date_at(i)) for i, p in upper.anchors
        ] + [
            SwingPoint(index=i, price=p, kind=PivotKind.VALLEY, date=ctx.date_at(i)) for i, p in lower.anchors
        ]
        debug.accept(wedge_type, [start, end_index], details={
            "method": "forming_relaxed",
            "status": PatternStatus(status).value,
            "containment": round(containment.inside_ratio, 3),
        })
        return PatternEntry(
            type=wedge_type,
            confidence=confidence,
            range=ctx.pattern_range(start, end_index),
            start_index=start,
            end_index=end_index,
            status=status,
            pivots=sorted(anchors, key=lambda p: p.index),
            neckline=ctx.neckline(start, line.value_at(start), end_index, line.value_at(end_index)),
            breakout_target=round(upper.value_at(start) if wedge_type == FALLING else lower.value_at(start), 4),
            target_method="wedge_origin",
            details=WedgeDetails(
                upper_slope=upper.slope,
                lower_slope=lower.slope,
                convergence_ratio=round(ratio, 3),
                apex_index=apex.index,
                bars_to_apex=apex.bars_to_apex,
                containment=round(containment.inside_ratio, 3),
                score=round(score, 3),
                smoothed=ctx.params.smoothing,
                method="forming_relaxed",
            ),
            **update,
        )
