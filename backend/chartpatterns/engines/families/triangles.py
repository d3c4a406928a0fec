"""
Chart Patterns — Triangles (ascending / descending / symmetrical)

Sliding windows over the swing highs and lows, one regression line per
side. The slopes of the two lines, expressed as a relative move over the
window, classify the triangle; fit quality, convergence and a breakout
scan decide whether it is reported.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from chartpatterns.engines.classifier import Breakout, PatternClassifier, resolve_outcome, scan_breakout
from chartpatterns.engines.context import DebugCollector, DetectionContext
from chartpatterns.engines.regression import TrendLine, fit_pivots
from chartpatterns.engines.scoring import calc_apex, clamp01, finalize_confidence, fit_quality, period_score_days
from chartpatterns.engines.swing_engine import average_true_range
from chartpatterns.models import (
    BreakoutDirection,
    PatternEntry,
    PatternOutcome,
    PatternStatus,
    PatternType,
    SwingPoint,
    TriangleDetails,
)

ASCENDING = PatternType.TRIANGLE_ASCENDING.value
DESCENDING = PatternType.TRIANGLE_DESCENDING.value
SYMMETRICAL = PatternType.TRIANGLE_SYMMETRICAL.value

EXPECTED_DIRECTION = {
    ASCENDING: BreakoutDirection.UP,
    DESCENDING: BreakoutDirection.DOWN,
    SYMMETRICAL: None,
}

FALLBACK_FITS = (0.70, 0.60)
REFERENCE_FIT = 0.78
BREAKOUT_ATR_MULT = 0.5
NEAR_APEX_DAYS = 7

FORMING_MIN_DAYS = 14
FORMING_MAX_DAYS = 90
FORMING_MIN_FIT = 0.25
FORMING_MIN_COMPLETION = 0.4


def _pct(a: float, b: float) -> float:
    return (b - a) / a if a else 0.0


class TrianglesClassifier(PatternClassifier):
    """Triangle detector.

    Usage:
        output = TrianglesClassifier().run(ctx)
    """

    family = "triangle"
    pattern_types = (ASCENDING, DESCENDING, SYMMETRICAL)
    within_family_dedup = False

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        win = ctx.params.profile.triangle_window
        step = max(1, win // 4)
        highs, lows = ctx.peaks, ctx.valleys
        limit = max(0, min(len(highs), len(lows)) - max(3, win))

        entries: list[PatternEntry] = []
        for offset in range(0, limit + 1, step):
            hwin, lwin = highs[offset:offset + win], lows[offset:offset + win]
            if len(hwin) < 3 or len(lwin) < 3:
                continue
            entries.extend(self._window(ctx, debug, hwin, lwin, ctx.tolerance * tolerance_scale))
        return entries

    def _window(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        hwin: Sequence[SwingPoint],
        lwin: Sequence[SwingPoint],
        tol: float,
    ) -> list[PatternEntry]:
        profile = ctx.params.profile
        first_h, last_h, first_l, last_l = hwin[0], hwin[-1], lwin[0], lwin[-1]
        start = min(first_h.index, first_l.index)
        end = max(last_h.index, last_l.index)
        if not ctx.finite(*(p.price for p in (*hwin, *lwin))):
            debug.reject(SYMMETRICAL, "nan_value", [start, end])
            return []

        hi_line, lo_line = fit_pivots(hwin), fit_pivots(lwin)
        if hi_line.slope * lo_line.slope > 0:
            debug.reject(SYMMETRICAL, "same_direction_slopes_skip_for_wedge", [start, end],
                         details={"hiSlope": hi_line.slope, "loSlope": lo_line.slope})
            return []

        span = max(1, end - start)
        hi_rel = hi_line.slope * span / max(1e-12, float(np.mean([p.price for p in hwin])))
        lo_rel = lo_line.slope * span / max(1e-12, float(np.mean([p.price for p in lwin])))
        d_h, d_l = _pct(first_h.price, last_h.price), _pct(first_l.price, last_l.price)
        spread_start = first_h.price - first_l.price
        spread_end = last_h.price - last_l.price
        converging = spread_end < spread_start * (1 - tol * profile.convergence_factor)
        fit_h, fit_l = fit_quality(hwin, hi_line), fit_quality(lwin, lo_line)

        flat, move = tol * profile.triangle_flat_coef, tol * profile.triangle_move_coef
        q_conv = clamp01((spread_start - spread_end) / max(1e-12, spread_start * 0.8))
        per = period_score_days(ctx.date_at(start), ctx.date_at(end))

        shapes: dict[str, float] = {}
        if abs(hi_rel) <= flat and lo_rel >= move:
            q_flat = clamp01(1 - abs(d_h) / max(1e-12, flat))
            q_rise = clamp01(d_l / max(1e-12, move))
            shapes[ASCENDING] = (q_flat + q_rise + q_conv + per) / 4
        if abs(lo_rel) <= flat and hi_rel <= -move:
            q_flat = clamp01(1 - abs(d_l) / max(1e-12, flat))
            q_fall = clamp01(-d_h / max(1e-12, move))
            shapes[DESCENDING] = (q_flat + q_fall + q_conv + per) / 4
        if hi_rel <= -move and lo_rel >= move:
            q_fall = clamp01(-d_h / max(1e-12, move))
            q_rise = clamp01(d_l / max(1e-12, move))
            q_sym = clamp01(1 - abs(abs(d_h) - abs(d_l)) / max(1e-12, abs(d_h) + abs(d_l)))
            shapes[SYMMETRICAL] = (q_fall + q_rise + q_sym + q_conv + per) / 5

        if not shapes:
            debug.reject(SYMMETRICAL, "classification_failed", [start, end],
                         details={"hiSlopeRel": round(hi_rel, 5), "loSlopeRel": round(lo_rel, 5)})
            return []

        thresholds = sorted({profile.triangle_min_fit, *FALLBACK_FITS}, reverse=True)
        pivots = sorted([*hwin, *lwin], key=lambda p: p.index)
        entries = []
        for ptype, base in shapes.items():
            if not ctx.wants(ptype):
                continue
            if not converging:
                debug.reject(ptype, "not_converging", [start, end],
                             details={"spreadStart": spread_start, "spreadEnd": spread_end})
                continue
            min_fit = next((f for f in thresholds if fit_h >= f and fit_l >= f), None)
            if min_fit is None:
                debug.reject(ptype, "poor_trendline_fit", [start, end],
                             details={"fitHigh": round(fit_h, 3), "fitLow": round(fit_l, 3)})
                continue

            confidence = round(min(1.0, finalize_confidence(base, ptype) * (min_fit / REFERENCE_FIT)), 2)
            details = TriangleDetails(
                upper_slope=hi_line.slope,
                lower_slope=lo_line.slope,
                upper_fit=round(fit_h, 3),
                lower_fit=round(fit_l, 3),
                convergence_ratio=round(spread_end / spread_start, 3) if spread_start else 0.0,
                min_fit=min_fit,
            )
            entry = self._resolve(ctx, debug, ptype, confidence, start, end, pivots, hi_line, lo_line,
                                  spread_start, details)
            if entry is not None:
                entries.append(entry)
        return entries

    def _resolve(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        ptype: str,
        confidence: float,
        start: int,
        end: int,
        pivots: list[SwingPoint],
        hi_line: TrendLine,
        lo_line: TrendLine,
        height: float,
        details: TriangleDetails,
    ) -> Optional[PatternEntry]:
        span = max(10, end - start)
        scan_end = end + span
        buffer = average_true_range(ctx.bars, 14, end=end) * BREAKOUT_ATR_MULT
        breakout = scan_breakout(ctx.closes, end + 1, scan_end, hi_line.value_at, lo_line.value_at, buffer, buffer)

        if breakout is not None:
            debug.accept(ptype, [start, end, breakout.index])
            return self._completed(ctx, ptype, confidence, start, end, pivots, hi_line, lo_line, height,
                                   details, breakout)

        apex = calc_apex(hi_line, lo_line, end)
        still_open = scan_end >= ctx.last_index and apex.valid and apex.index is not None and apex.index >= ctx.last_index
        if not still_open:
            debug.reject(ptype, "stale_no_breakout", [start, end])
            return None
        if not ctx.include_forming:
            debug.reject(ptype, "no_breakout", [start, end])
            return None

        last = ctx.last_index
        days_to_apex = max(0, round(ctx.bars_to_days(apex.index - last)))
        pattern_days = max(1.0, ctx.days_between(start, last))
        completion_pct = min(100, round((1 - days_to_apex / pattern_days) * 100))
        if completion_pct / 100 < FORMING_MIN_COMPLETION:
            debug.reject(ptype, "forming_completion_too_low", [start, end], details={"completionPct": completion_pct})
            return None

        debug.accept(ptype, [start, end], details={"forming": True})
        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(start, last),
            start_index=start,
            end_index=last,
            status=PatternStatus.NEAR_COMPLETION if days_to_apex <= NEAR_APEX_DAYS else PatternStatus.FORMING,
            pivots=pivots,
            neckline=self._boundary(ctx, ptype, None, hi_line, lo_line, start, last),
            completion_pct=completion_pct,
            apex_date=ctx.projected_date(apex.index),
            days_to_apex=days_to_apex,
            details=details,
        )

    def _completed(
        self,
        ctx: DetectionContext,
        ptype: str,
        confidence: float,
        start: int,
        end: int,
        pivots: list[SwingPoint],
        hi_line: TrendLine,
        lo_line: TrendLine,
        height: float,
        details: TriangleDetails,
        breakout: Breakout,
    ) -> PatternEntry:
        expected = EXPECTED_DIRECTION[ptype]
        if expected is None:
            status, outcome = PatternStatus.COMPLETED, PatternOutcome.SUCCESS
        else:
            status, outcome = resolve_outcome(expected, breakout.direction)

        if breakout.direction == BreakoutDirection.UP:
            target = hi_line.value_at(breakout.index) + height
        else:
            target = lo_line.value_at(breakout.index) - height

        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(start, end),
            start_index=start,
            end_index=end,
            status=status,
            pivots=pivots,
            neckline=self._boundary(ctx, ptype, breakout.direction, hi_line, lo_line, start, end),
            breakout_direction=breakout.direction,
            breakout_index=breakout.index,
            breakout_date=ctx.date_at(breakout.index),
            breakout_target=round(target, 4),
            target_method="pattern_height_projection",
            outcome=outcome,
            details=details,
        )

    @staticmethod
    def _boundary(ctx, ptype, direction, hi_line: TrendLine, lo_line: TrendLine, start: int, end: int):
        """The line price broke through, or the expected breakout side while forming."""
        direction = direction or EXPECTED_DIRECTION[ptype] or BreakoutDirection.UP
        line = hi_line if direction == BreakoutDirection.UP else lo_line
        return ctx.neckline(start, line.value_at(start), end, line.value_at(end))

    # ──────────────────────────────────────────
    # Forming
    # ──────────────────────────────────────────

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        last = ctx.last_index
        highs = [p for p in ctx.peaks if p.index < last - 1][-4:]
        lows = [p for p in ctx.valleys if p.index < last - 1][-4:]
        if len(highs) < 2 or len(lows) < 2:
            return []
        if not ctx.finite(*(p.price for p in (*highs, *lows))):
            return []

        start = min(highs[0].index, lows[0].index)
        end = max(highs[-1].index, lows[-1].index)
        pattern_days = ctx.days_between(start, last)
        if not (FORMING_MIN_DAYS <= pattern_days <= FORMING_MAX_DAYS):
            return []

        hi_line, lo_line = fit_pivots(highs), fit_pivots(lows)
        spread_start = highs[0].price - lows[0].price
        spread_end = highs[-1].price - lows[-1].price
        converging = spread_end < spread_start * 0.9
        if not converging or hi_line.slope * lo_line.slope > 0:
            debug.reject(SYMMETRICAL, "forming_not_converging", [start, end])
            return []

        fit_h, fit_l = fit_quality(highs, hi_line), fit_quality(lows, lo_line)
        if fit_h < FORMING_MIN_FIT or fit_l < FORMING_MIN_FIT:
            debug.reject(SYMMETRICAL, "forming_poor_fit", [start, end])
            return []

        span = max(1, end - start)
        hi_rel = hi_line.slope * span / float(np.mean([p.price for p in highs]))
        lo_rel = lo_line.slope * span / float(np.mean([p.price for p in lows]))
        if abs(hi_rel) < 0.02 and lo_rel > 0.01:
            ptype = ASCENDING
        elif abs(lo_rel) < 0.02 and hi_rel < -0.01:
            ptype = DESCENDING
        elif hi_rel < -0.005 and lo_rel > 0.005:
            ptype = SYMMETRICAL
        else:
            return []
        if not ctx.wants(ptype):
            return []

        # stop at the first close through either line
        atr = average_true_range(ctx.bars, 14, end=end)
        if scan_breakout(ctx.closes, end + 1, last, hi_line.value_at, lo_line.value_at,
                         atr * BREAKOUT_ATR_MULT, atr * BREAKOUT_ATR_MULT) is not None:
            debug.reject(ptype, "forming_already_broken", [start, end])
            return []

        apex = calc_apex(hi_line, lo_line, last)
        days_to_apex: Optional[int] = None
        if apex.index is not None:
            days_to_apex = max(0, round(ctx.bars_to_days(apex.index - last)))
        if days_to_apex is not None:
            completion_pct = min(100, round((1 - days_to_apex / max(1.0, pattern_days)) * 100))
        else:
            completion_pct = 80
        if completion_pct / 100 < FORMING_MIN_COMPLETION:
            debug.reject(ptype, "forming_completion_too_low", [start, end])
            return []

        near_apex = days_to_apex is not None and days_to_apex <= NEAR_APEX_DAYS
        confidence = round(min(0.9, 0.6 + 0.2 + (0.1 if days_to_apex is not None and days_to_apex <= 14 else 0.0)), 2)
        debug.accept(ptype, [start, end], details={"forming": True})
        return [PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(start, last),
            start_index=start,
            end_index=last,
            status=PatternStatus.NEAR_COMPLETION if near_apex else PatternStatus.FORMING,
            pivots=sorted([*highs, *lows], key=lambda p: p.index),
            neckline=self._boundary(ctx, ptype, None, hi_line, lo_line, start, last),
            completion_pct=completion_pct,
            apex_date=ctx.projected_date(apex.index) if apex.index is not None and apex.index > 0 else None,
            days_to_apex=days_to_apex,
            details=TriangleDetails(
                upper_slope=hi_line.slope,
                lower_slope=lo_line.slope,
                upper_fit=round(fit_h, 3),
                lower_fit=round(fit_l, 3),
                convergence_ratio=round(spread_end / spread_start, 3) if spread_start else 0.0,
                min_fit=FORMING_MIN_FIT,
            ),
        )]
