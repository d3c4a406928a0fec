"""
Chart Patterns — Double Top / Double Bottom

Consecutive strict pivots H-L-H (top) or L-H-L (bottom) with matching
extremes, confirmed by a close through the neckline within 20 bars of
the second extreme. The forming variant pairs the last confirmed
extreme with the current price.
"""

from __future__ import annotations

from typing import Optional

from chartpatterns.engines.classifier import PatternClassifier, resolve_outcome, scan_breakout
from chartpatterns.engines.context import DebugCollector, DetectionContext, relative_deviation
from chartpatterns.engines.scoring import clamp01, finalize_confidence, period_score_days, tolerance_margin
from chartpatterns.models import (
    BreakoutDirection,
    DoubleDetails,
    PatternEntry,
    PatternStatus,
    PatternType,
    PivotKind,
    SwingPoint,
)

MIN_SPACING = 5
MIN_HEIGHT_PCT = 0.03
MIN_DEPTH_PCT = 0.05
BREAKOUT_BUFFER = 0.015
BREAKOUT_WINDOW = 20

FORMING_PEAK_BAND = 0.05
FORMING_MIN_DAYS = 14
FORMING_MAX_DAYS = 90
FORMING_MIN_COMPLETION = 0.4


class DoublesClassifier(PatternClassifier):
    """Double top / double bottom detector.

    Usage:
        output = DoublesClassifier().run(ctx)
    """

    family = "double"
    pattern_types = (PatternType.DOUBLE_TOP.value, PatternType.DOUBLE_BOTTOM.value)

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        tolerance = ctx.tolerance * tolerance_scale
        entries: list[PatternEntry] = []
        swings = ctx.swings

        for i in range(len(swings) - 2):
            a, b, c = swings[i], swings[i + 1], swings[i + 2]
            if b.index - a.index < MIN_SPACING or c.index - b.index < MIN_SPACING:
                continue

            if a.kind == PivotKind.PEAK and b.kind == PivotKind.VALLEY and c.kind == PivotKind.PEAK:
                entry = self._match(ctx, debug, a, b, c, tolerance, top=True)
            elif a.kind == PivotKind.VALLEY and b.kind == PivotKind.PEAK and c.kind == PivotKind.VALLEY:
                entry = self._match(ctx, debug, a, b, c, tolerance, top=False)
            else:
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    def _match(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        a: SwingPoint,
        b: SwingPoint,
        c: SwingPoint,
        tolerance: float,
        top: bool,
    ) -> Optional[PatternEntry]:
        ptype = PatternType.DOUBLE_TOP.value if top else PatternType.DOUBLE_BOTTOM.value
        indices = [a.index, b.index, c.index]
        if not ctx.finite(a.price, b.price, c.price):
            debug.reject(ptype, "nan_value", indices)
            return None

        height_pct = abs(a.price - b.price) / max(a.price, b.price)
        if height_pct < MIN_HEIGHT_PCT:
            debug.reject(ptype, "pattern_too_small", indices)
            return None

        extreme_avg = (a.price + c.price) / 2
        if top:
            depth_pct = (extreme_avg - b.price) / extreme_avg
        else:
            depth_pct = (b.price - extreme_avg) / extreme_avg
        if depth_pct < MIN_DEPTH_PCT:
            debug.reject(ptype, "valley_too_shallow" if top else "peak_too_shallow", indices)
            return None

        deviation = relative_deviation(a.price, c.price)
        if deviation > tolerance:
            debug.reject(
                ptype,
                "peaks_not_equal" if top else "valleys_not_equal",
                indices,
                [ctx.point("first", a.index, a.price), ctx.point("second", c.index, c.price)],
                details={"deviation": round(deviation, 4), "tolerance": tolerance},
            )
            return None

        neckline = b.price
        extreme = max(a.price, c.price) if top else min(a.price, c.price)
        if top:
            breakout = scan_breakout(
                ctx.closes, c.index + 1, c.index + BREAKOUT_WINDOW,
                upper=lambda i: extreme, lower=lambda i: neckline,
                up_buffer=extreme * BREAKOUT_BUFFER, down_buffer=neckline * BREAKOUT_BUFFER,
            )
        else:
            breakout = scan_breakout(
                ctx.closes, c.index + 1, c.index + BREAKOUT_WINDOW,
                upper=lambda i: neckline, lower=lambda i: extreme,
                up_buffer=neckline * BREAKOUT_BUFFER, down_buffer=extreme * BREAKOUT_BUFFER,
            )
        if breakout is None:
            debug.reject(ptype, "no_breakout", indices)
            return None

        expected = BreakoutDirection.DOWN if top else BreakoutDirection.UP
        status, outcome = resolve_outcome(expected, breakout.direction)

        start_date, end_date = ctx.date_at(a.index), ctx.date_at(breakout.index)
        base = (
            tolerance_margin(deviation, tolerance)
            + clamp01(1 - deviation)
            + period_score_days(start_date, end_date)
        ) / 3
        confidence = finalize_confidence(base, ptype)
        height = abs(extreme - neckline)
        target = neckline - height if top else neckline + height

        debug.accept(
            ptype,
            indices + [breakout.index],
            [
                ctx.point("first", a.index, a.price),
                ctx.point("middle", b.index, b.price),
                ctx.point("second", c.index, c.price),
                ctx.point("breakout", breakout.index, breakout.price),
            ],
        )
        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(a.index, breakout.index),
            start_index=a.index,
            end_index=breakout.index,
            status=status,
            pivots=[a, b, c],
            neckline=ctx.neckline(a.index, neckline, breakout.index, neckline),
            breakout_direction=breakout.direction,
            breakout_index=breakout.index,
            breakout_date=end_date,
            breakout_target=round(target, 4),
            target_method="neckline_projection",
            outcome=outcome,
            details=DoubleDetails(height=round(height, 4), extreme_diff_pct=round(deviation * 100, 2)),
        )

    # ──────────────────────────────────────────
    # Forming
    # ──────────────────────────────────────────

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        entries: list[PatternEntry] = []
        if ctx.wants(PatternType.DOUBLE_TOP.value):
            entry = self._forming_top(ctx, debug)
            if entry is not None:
                entries.append(entry)
        if ctx.wants(PatternType.DOUBLE_BOTTOM.value):
            entry = self._forming_bottom(ctx, debug)
            if entry is not None:
                entries.append(entry)
        return entries

    def _forming_top(self, ctx: DetectionContext, debug: DebugCollector) -> Optional[PatternEntry]:
        last = ctx.last_index
        current = float(ctx.closes[last])
        peak = next((p for p in reversed(ctx.peaks) if p.index < last - 2), None)
        if peak is None:
            return None
        valley = next((v for v in ctx.valleys if peak.index < v.index < last - 1), None)
        if valley is None or not ctx.finite(current, peak.price, valley.price):
            return None

        left_pct = current / peak.price
        if not (1 - FORMING_PEAK_BAND <= left_pct <= 1 + FORMING_PEAK_BAND) or current <= valley.price:
            debug.reject(PatternType.DOUBLE_TOP.value, "forming_price_not_near_peak", [peak.index, valley.index, last])
            return None

        progress = clamp01((current - valley.price) / max(1e-12, peak.price - valley.price))
        completion = min(1.0, 0.66 + 0.34 * progress)
        days = ctx.days_between(peak.index, last)
        if completion < FORMING_MIN_COMPLETION or not (FORMING_MIN_DAYS <= days <= FORMING_MAX_DAYS):
            debug.reject(PatternType.DOUBLE_TOP.value, "forming_duration_out_of_range", [peak.index, last])
            return None

        confidence = round(clamp01((1 - abs(left_pct - 1)) * 0.6 + progress * 0.4), 2)
        debug.accept(PatternType.DOUBLE_TOP.value, [peak.index, valley.index, last])
        return PatternEntry(
            type=PatternType.DOUBLE_TOP.value,
            confidence=confidence,
            range=ctx.pattern_range(peak.index, last),
            start_index=peak.index,
            end_index=last,
            status=PatternStatus.FORMING,
            pivots=[peak, valley],
            neckline=ctx.neckline(peak.index, valley.price, last, valley.price),
            completion_pct=round(completion * 100),
            breakout_target=round(valley.price - (peak.price - valley.price), 4),
            target_method="neckline_projection",
            details=DoubleDetails(
                height=round(peak.price - valley.price, 4),
                extreme_diff_pct=round(relative_deviation(peak.price, current) * 100, 2),
            ),
        )

    def _forming_bottom(self, ctx: DetectionContext, debug: DebugCollector) -> Optional[PatternEntry]:
        last = ctx.last_index
        current = float(ctx.closes[last])
        confirmed = [v for v in ctx.valleys if v.index < last - 2]

        # newest qualifying pair wins
        for j in range(len(confirmed) - 1, 0, -1):
            left, right = confirmed[j - 1], confirmed[j]
            if right.index - left.index < MIN_SPACING:
                continue
            between = [p for p in ctx.peaks if left.index < p.index < right.index]
            if not between:
                continue
            mid = max(between, key=lambda p: p.price)
            if not ctx.finite(current, left.price, right.price, mid.price):
                continue

            left_depth = (mid.price - left.price) / mid.price
            right_depth = (mid.price - right.price) / mid.price
            if left_depth < MIN_HEIGHT_PCT or right_depth < MIN_HEIGHT_PCT:
                continue
            if relative_deviation(left.price, right.price) > ctx.tolerance * 1.5:
                continue
            if current < right.price * (1 - 0.02):
                continue

            progress = clamp01((current - right.price) / max(1e-12, mid.price - right.price))
            completion = min(1.0, 0.66 + 0.34 * progress)
            days = ctx.days_between(left.index, last)
            if completion < FORMING_MIN_COMPLETION or not (FORMING_MIN_DAYS <= days <= FORMING_MAX_DAYS):
                continue

            debug.accept(PatternType.DOUBLE_BOTTOM.value, [left.index, mid.index, right.index, last])
            return PatternEntry(
                type=PatternType.DOUBLE_BOTTOM.value,
                confidence=round(min(1.0, 0.5 + 0.5 * progress), 2),
                range=ctx.pattern_range(left.index, last),
                start_index=left.index,
                end_index=last,
                status=PatternStatus.FORMING,
                pivots=[left, mid, right],
                neckline=ctx.neckline(mid.index, mid.price, last, mid.price),
                completion_pct=round(completion * 100),
                breakout_target=round(mid.price + (mid.price - min(left.price, right.price)), 4),
                target_method="neckline_projection",
                details=DoubleDetails(
                    height=round(mid.price - min(left.price, right.price), 4),
                    extreme_diff_pct=round(relative_deviation(left.price, right.price) * 100, 2),
                ),
            )
        return None
