"""
Chart Patterns — Triple Top / Triple Bottom

Three consecutive same-kind strict pivots, pairwise equal within
tolerance, separated by two opposite pivots that form a near-flat
neckline. The forming variant pairs two confirmed extremes with the
current price as a provisional third.
"""

from __future__ import annotations

from typing import Optional, Sequence

from chartpatterns.engines.classifier import PatternClassifier
from chartpatterns.engines.context import DebugCollector, DetectionContext, relative_deviation
from chartpatterns.engines.scoring import clamp01, finalize_confidence, period_score_days
from chartpatterns.models import PatternEntry, PatternStatus, PatternType, PivotKind, SwingPoint, TripleDetails

TOP = PatternType.TRIPLE_TOP.value
BOTTOM = PatternType.TRIPLE_BOTTOM.value

NECKLINE_SLOPE_LIMIT = 0.02
MAX_VALLEY_SPREAD = 0.015

FORMING_TOLERANCE_MULT = 1.2
FORMING_MIN_DAYS = 21
FORMING_MAX_DAYS = 90
FORMING_MIN_COMPLETION = 0.4
FORMING_MIN_CONFIDENCE = 0.5


def _extreme_between(pool: Sequence[SwingPoint], lo: int, hi: int, lowest: bool) -> Optional[SwingPoint]:
    between = [p for p in pool if lo < p.index < hi]
    if not between:
        return None
    return min(between, key=lambda p: p.price) if lowest else max(between, key=lambda p: p.price)


class TriplesClassifier(PatternClassifier):
    """Triple top / triple bottom detector."""

    family = "triple"
    pattern_types = (TOP, BOTTOM)
    within_family_dedup = False

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        tolerance = ctx.tolerance * tolerance_scale
        entries: list[PatternEntry] = []
        for ptype, same, opposite in ((TOP, ctx.peaks, ctx.valleys), (BOTTOM, ctx.valleys, ctx.peaks)):
            if not ctx.wants(ptype):
                continue
            for i in range(len(same) - 2):
                a, b, c = same[i], same[i + 1], same[i + 2]
                if b.index - a.index < ctx.min_distance or c.index - b.index < ctx.min_distance:
                    continue
                entry = self._match(ctx, debug, ptype, a, b, c, opposite, tolerance, strict=tolerance_scale == 1.0)
                if entry is not None:
                    entries.append(entry)
        return entries

    def _match(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        ptype: str,
        a: SwingPoint,
        b: SwingPoint,
        c: SwingPoint,
        opposite: Sequence[SwingPoint],
        tolerance: float,
        strict: bool,
    ) -> Optional[PatternEntry]:
        top = ptype == TOP
        indices = [a.index, b.index, c.index]
        if not ctx.finite(a.price, b.price, c.price):
            debug.reject(ptype, "nan_value", indices)
            return None

        devs = [relative_deviation(a.price, b.price), relative_deviation(b.price, c.price),
                relative_deviation(a.price, c.price)]
        if max(devs) > tolerance:
            debug.reject(ptype, "peaks_not_equal" if top else "valleys_not_equal", indices,
                         details={"deviations": [round(d, 4) for d in devs], "tolerance": tolerance})
            return None

        prices = [a.price, b.price, c.price]
        spread = (max(prices) - min(prices)) / max(1e-12, max(prices))
        if strict and not top and (max(prices) - min(prices)) / max(1e-12, min(prices)) > MAX_VALLEY_SPREAD:
            debug.reject(ptype, "valley_spread_excess", indices)
            return None

        n1 = _extreme_between(opposite, a.index, b.index, lowest=top)
        n2 = _extreme_between(opposite, b.index, c.index, lowest=top)
        if n1 is None or n2 is None:
            debug.reject(ptype, "valleys_missing" if top else "peaks_missing", indices)
            return None

        neck_dev = relative_deviation(n1.price, n2.price)
        if strict and neck_dev > tolerance:
            debug.reject(ptype, "valleys_not_equal" if top else "peaks_not_equal", indices)
            return None
        if neck_dev > NECKLINE_SLOPE_LIMIT:
            debug.reject(ptype, "neckline_slope_excess", indices, details={"necklineSlope": round(neck_dev, 4)})
            return None

        base = (
            clamp01(1 - (sum(devs) / 3) / max(1e-12, tolerance))
            + clamp01(1 - spread)
            + period_score_days(ctx.date_at(a.index), ctx.date_at(c.index))
        ) / 3
        confidence = finalize_confidence(base, ptype)

        neck = (n1.price + n2.price) / 2
        avg_extreme = sum(prices) / 3
        target = neck - (avg_extreme - neck) if top else neck + (neck - avg_extreme)

        role = "peak" if top else "valley"
        debug.accept(ptype, indices, [
            ctx.point(f"{role}1", a.index, a.price),
            ctx.point(f"{role}2", b.index, b.price),
            ctx.point(f"{role}3", c.index, c.price),
        ])
        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(a.index, c.index),
            start_index=a.index,
            end_index=c.index,
            status=PatternStatus.COMPLETED,
            pivots=[a, n1, b, n2, c],
            neckline=ctx.neckline(a.index, neck, c.index, neck),
            breakout_target=round(target, 4),
            target_method="neckline_projection",
            details=TripleDetails(spread_pct=round(spread * 100, 2), neckline_slope_pct=round(neck_dev * 100, 2)),
        )

    # ──────────────────────────────────────────
    # Forming
    # ──────────────────────────────────────────

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        entries = []
        if ctx.wants(TOP):
            entry = self._forming_top(ctx, debug)
            if entry is not None:
                entries.append(entry)
        if ctx.wants(BOTTOM):
            entry = self._forming_bottom(ctx, debug)
            if entry is not None:
                entries.append(entry)
        return entries

    def _forming_top(self, ctx: DetectionContext, debug: DebugCollector) -> Optional[PatternEntry]:
        last = ctx.last_index
        current = float(ctx.closes[last])
        tol = ctx.tolerance * FORMING_TOLERANCE_MULT
        confirmed = [p for p in ctx.peaks if p.index < last - 2]

        # newest qualifying pair wins
        for i in range(len(confirmed) - 1, 0, -1):
            p1, p2 = confirmed[i - 1], confirmed[i]
            if p2.index - p1.index < ctx.min_distance or not ctx.finite(current, p1.price, p2.price):
                continue
            if relative_deviation(p1.price, p2.price) > tol:
                continue
            avg_peak = (p1.price + p2.price) / 2
            current_diff = abs(current - avg_peak) / max(1e-12, avg_peak)
            if current_diff > tol or current < avg_peak * 0.95:
                continue
            days = ctx.days_between(p1.index, last)
            if not (FORMING_MIN_DAYS <= days <= FORMING_MAX_DAYS):
                continue

            completion = min(1.0, 0.66 + min(1.0, current / avg_peak) * 0.34)
            confidence = round(clamp01((1 - current_diff / tol) * 0.8), 2)
            if completion < FORMING_MIN_COMPLETION or confidence < FORMING_MIN_CONFIDENCE:
                debug.reject(TOP, "forming_confidence_too_low", [p1.index, p2.index, last])
                continue

            between = [v for v in ctx.valleys if p1.index < v.index < last]
            neck = (sum(v.price for v in between) / len(between)) if between else min(p1.price, p2.price) * 0.95
            provisional = SwingPoint(index=last, price=current, kind=PivotKind.PEAK, date=ctx.date_at(last))
            debug.accept(TOP, [p1.index, p2.index, last], details={"provisional": True})
            return PatternEntry(
                type=TOP,
                confidence=confidence,
                range=ctx.pattern_range(p1.index, last),
                start_index=p1.index,
                end_index=last,
                status=PatternStatus.FORMING,
                pivots=[p1, p2, provisional],
                neckline=ctx.neckline(p1.index, neck, last, neck),
                breakout_target=round(neck - (avg_peak - neck), 4),
                target_method="neckline_projection",
                completion_pct=round(completion * 100),
                details=TripleDetails(spread_pct=round(relative_deviation(p1.price, p2.price) * 100, 2)),
            )
        return None

    def _forming_bottom(self, ctx: DetectionContext, debug: DebugCollector) -> Optional[PatternEntry]:
        last = ctx.last_index
        current = float(ctx.closes[last])
        tol = ctx.tolerance * FORMING_TOLERANCE_MULT
        confirmed = [v for v in ctx.valleys if v.index < last - 2]

        for i in range(len(confirmed) - 1, 0, -1):
            v1, v2 = confirmed[i - 1], confirmed[i]
            if v2.index - v1.index < ctx.min_distance or not ctx.finite(current, v1.price, v2.price):
                continue
            valley_diff = relative_deviation(v1.price, v2.price)
            if valley_diff > tol:
                continue
            avg_valley = (v1.price + v2.price) / 2
            between = [p for p in ctx.peaks if v1.index < p.index < last]
            if not between:
                continue
            neck = sum(p.price for p in between) / len(between)
            if current < avg_valley * 0.98 or current > neck * 1.02:
                continue
            days = ctx.days_between(v1.index, last)
            if not (FORMING_MIN_DAYS <= days <= FORMING_MAX_DAYS):
                continue

            progress = (current - avg_valley) / max(1e-12, neck - avg_valley)
            completion = min(1.0, 0.66 + min(1.0, progress) * 0.34)
            confidence = round(clamp01((1 - valley_diff / tol) * 0.8), 2)
            if completion < FORMING_MIN_COMPLETION or confidence < FORMING_MIN_CONFIDENCE:
                debug.reject(BOTTOM, "forming_confidence_too_low", [v1.index, v2.index, last])
                continue

            provisional = SwingPoint(index=last, price=current, kind=PivotKind.VALLEY, date=ctx.date_at(last))
            debug.accept(BOTTOM, [v1.index, v2.index, last], details={"provisional": True})
            return PatternEntry(
                type=BOTTOM,
                confidence=confidence,
                range=ctx.pattern_range(v1.index, last),
                start_index=v1.index,
                end_index=last,
                status=PatternStatus.FORMING,
                pivots=[v1, v2, provisional],
                neckline=ctx.neckline(v1.index, neck, last, neck),
                breakout_target=round(neck + (neck - avg_valley), 4),
                target_method="neckline_projection",
                completion_pct=round(completion * 100),
                details=TripleDetails(spread_pct=round(valley_diff * 100, 2)),
            )
        return None
