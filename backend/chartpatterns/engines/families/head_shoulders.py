"""
Chart Patterns — Head & Shoulders / Inverse Head & Shoulders

Five consecutive strict pivots H-L-H-L-H (or the inverse L-H-L-H-L) with
shoulders level within tolerance and a head that stands out beyond both
shoulders. The neckline joins the two inner pivots.
"""

from __future__ import annotations

from typing import Optional, Sequence

from chartpatterns.engines.classifier import PatternClassifier, resolve_outcome, scan_breakout
from chartpatterns.engines.context import DebugCollector, DetectionContext, relative_deviation
from chartpatterns.engines.regression import line_through
from chartpatterns.engines.scoring import clamp01, finalize_confidence, period_score_days, tolerance_margin
from chartpatterns.models import (
    BreakoutDirection,
    HeadShouldersDetails,
    PatternEntry,
    PatternStatus,
    PatternType,
    PivotKind,
    SwingPoint,
)

# shoulder tolerance multiplier -> head prominence multiplier
RELAXED_HEAD_FACTORS = {1.6: 0.6, 2.0: 0.4}

BREAKOUT_BUFFER = 0.015
BREAKOUT_WINDOW = 20

FORMING_SHOULDER_BAND = 0.08
FORMING_HEAD_MARGIN = 0.03
FORMING_MIN_DAYS = 21
FORMING_MAX_DAYS = 90
FORMING_MIN_COMPLETION = 0.4

_TOP = (PivotKind.PEAK, PivotKind.VALLEY, PivotKind.PEAK, PivotKind.VALLEY, PivotKind.PEAK)
_BOTTOM = (PivotKind.VALLEY, PivotKind.PEAK, PivotKind.VALLEY, PivotKind.PEAK, PivotKind.VALLEY)


class HeadShouldersClassifier(PatternClassifier):
    """Head-and-shoulders detector (both orientations).

    Relaxed passes widen the shoulder tolerance and shrink the required
    head prominence together, and anchor the neckline at the most
    extreme inner pivot.
    """

    family = "head_shoulders"
    pattern_types = (PatternType.HEAD_AND_SHOULDERS.value, PatternType.INVERSE_HEAD_AND_SHOULDERS.value)
    within_family_dedup = False

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        relaxed = tolerance_scale != 1.0
        shoulder_tol = ctx.tolerance * tolerance_scale
        head_tol = ctx.tolerance * RELAXED_HEAD_FACTORS.get(tolerance_scale, 1.0)
        entries: list[PatternEntry] = []

        swings = ctx.swings
        for i in range(len(swings) - 4):
            window = swings[i:i + 5]
            kinds = tuple(p.kind for p in window)
            if kinds == _TOP:
                inverse = False
            elif kinds == _BOTTOM:
                inverse = True
            else:
                continue
            if any(b.index - a.index < ctx.min_distance for a, b in zip(window, window[1:])):
                continue

            entry = self._match(ctx, debug, window, shoulder_tol, head_tol, inverse, relaxed)
            if entry is not None:
                entries.append(entry)
        return entries

    def _match(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        pivots: Sequence[SwingPoint],
        shoulder_tol: float,
        head_tol: float,
        inverse: bool,
        relaxed: bool,
    ) -> Optional[PatternEntry]:
        p0, p1, p2, p3, p4 = pivots
        ptype = PatternType.INVERSE_HEAD_AND_SHOULDERS.value if inverse else PatternType.HEAD_AND_SHOULDERS.value
        indices = [p.index for p in pivots]
        if not ctx.finite(*(p.price for p in pivots)):
            debug.reject(ptype, "nan_value", indices)
            return None

        deviation = relative_deviation(p0.price, p4.price)
        shoulders_near = deviation <= shoulder_tol
        if inverse:
            head_stands_out = p2.price < min(p0.price, p4.price) * (1 - head_tol)
        else:
            head_stands_out = p2.price > max(p0.price, p4.price) * (1 + head_tol)
        if not shoulders_near or not head_stands_out:
            reason = "shoulders_not_near" if not shoulders_near else ("head_not_lower" if inverse else "head_not_higher")
            debug.reject(ptype, reason, indices, details={
                "leftShoulder": p0.price,
                "rightShoulder": p4.price,
                "shouldersDiffPct": round(deviation, 4),
                "head": p2.price,
                "thresholdPct": shoulder_tol,
            })
            return None

        if relaxed:
            level = self._relaxed_neckline(ctx, p0, p2, p4, inverse)
            neck = line_through((p1.index, level), (p3.index, level))
        else:
            neck = line_through((p1.index, p1.price), (p3.index, p3.price))
        neck_avg = (neck.value_at(p1.index) + neck.value_at(p3.index)) / 2
        target = neck_avg + (neck_avg - p2.price) if inverse else neck_avg - (p2.price - neck_avg)

        start_date, end_date = ctx.date_at(p0.index), ctx.date_at(p4.index)
        base = (
            tolerance_margin(deviation, shoulder_tol)
            + clamp01(1 - deviation)
            + period_score_days(start_date, end_date)
        ) / 3
        confidence = finalize_confidence(base, ptype)

        # a close through the neckline confirms; a close beyond the head invalidates
        head = p2.price
        if inverse:
            breakout = scan_breakout(
                ctx.closes, p4.index + 1, p4.index + BREAKOUT_WINDOW,
                upper=neck.value_at, lower=lambda i: head,
                up_buffer=abs(neck_avg) * BREAKOUT_BUFFER, down_buffer=abs(head) * BREAKOUT_BUFFER,
            )
            expected = BreakoutDirection.UP
        else:
            breakout = scan_breakout(
                ctx.closes, p4.index + 1, p4.index + BREAKOUT_WINDOW,
                upper=lambda i: head, lower=neck.value_at,
                up_buffer=abs(head) * BREAKOUT_BUFFER, down_buffer=abs(neck_avg) * BREAKOUT_BUFFER,
            )
            expected = BreakoutDirection.DOWN

        update: dict = {}
        status = PatternStatus.COMPLETED
        if breakout is not None:
            status, outcome = resolve_outcome(expected, breakout.direction)
            update = dict(
                breakout_direction=breakout.direction,
                breakout_index=breakout.index,
                breakout_date=ctx.date_at(breakout.index),
                outcome=outcome,
            )

        debug.accept(ptype, indices, [
            ctx.point("left_shoulder", p0.index, p0.price),
            ctx.point("neck1", p1.index, p1.price),
            ctx.point("head", p2.index, p2.price),
            ctx.point("neck2", p3.index, p3.price),
            ctx.point("right_shoulder", p4.index, p4.price),
        ], details={"relaxed": True} if relaxed else None)

        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(p0.index, p4.index),
            start_index=p0.index,
            end_index=p4.index,
            status=status,
            pivots=list(pivots),
            neckline=ctx.neckline(p1.index, neck.value_at(p1.index), p3.index, neck.value_at(p3.index)),
            breakout_target=round(target, 4),
            target_method="neckline_projection",
            details=HeadShouldersDetails(head_price=p2.price, shoulder_diff_pct=round(deviation * 100, 2)),
            **update,
        )

    @staticmethod
    def _relaxed_neckline(ctx: DetectionContext, p0: SwingPoint, p2: SwingPoint, p4: SwingPoint, inverse: bool) -> float:
        """Most extreme inner pivot between the shoulders (or after the head)."""
        pool = ctx.peaks if inverse else ctx.valleys
        between = [p for p in pool if p0.index < p.index < p4.index] or [p for p in pool if p.index > p2.index]
        if not between:
            return max(p0.price, p4.price) if inverse else min(p0.price, p4.price)
        chosen = max(between, key=lambda p: p.price) if inverse else min(between, key=lambda p: p.price)
        return chosen.price

    # ──────────────────────────────────────────
    # Forming
    # ──────────────────────────────────────────

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        entries = []
        for ptype, inverse in (
            (PatternType.HEAD_AND_SHOULDERS.value, False),
            (PatternType.INVERSE_HEAD_AND_SHOULDERS.value, True),
        ):
            if not ctx.wants(ptype):
                continue
            entry = self._forming(ctx, debug, ptype, inverse)
            if entry is not None:
                entries.append(entry)
        return entries

    def _forming(self, ctx: DetectionContext, debug: DebugCollector, ptype: str, inverse: bool) -> Optional[PatternEntry]:
        last = ctx.last_index
        current = float(ctx.closes[last])
        extremes = ctx.valleys if inverse else ctx.peaks
        turns = ctx.peaks if inverse else ctx.valleys

        confirmed = [p for p in extremes if p.index < last - 2]
        if len(confirmed) < 2 or not ctx.finite(current):
            return None
        head = (min if inverse else max)(confirmed, key=lambda p: p.price)

        if inverse:
            lefts = [p for p in confirmed if p.index < head.index and head.price < p.price * (1 - FORMING_HEAD_MARGIN)]
        else:
            lefts = [p for p in confirmed if p.index < head.index and head.price > p.price * (1 + FORMING_HEAD_MARGIN)]
        if not lefts:
            return None
        left = lefts[-1]

        turn = next((t for t in turns if head.index < t.index < last - 1), None)
        if turn is None:
            return None

        def near_left(price: float) -> bool:
            return abs(price - left.price) / max(1e-12, abs(left.price)) <= FORMING_SHOULDER_BAND

        if inverse:
            rights = [v for v in extremes if v.index > turn.index and v.price > head.price and near_left(v.price)]
        else:
            rights = [p for p in extremes if p.index > turn.index and p.price < head.price and near_left(p.price)]

        right: Optional[SwingPoint] = rights[-1] if rights else None
        provisional = False
        if right is None:
            between = head.price < current < turn.price if inverse else turn.price < current < head.price
            if near_left(current) and between:
                right = SwingPoint(index=last, price=current, kind=left.kind, date=ctx.date_at(last))
                provisional = True
        if right is None:
            debug.reject(ptype, "forming_no_right_shoulder", [left.index, head.index, turn.index])
            return None

        closeness = 1 - abs(right.price - left.price) / max(1e-12, abs(left.price) * FORMING_SHOULDER_BAND)
        progress = clamp01(closeness)
        damp = 0.9 if provisional else 1.0
        completion = min(1.0, (0.75 + 0.25 * progress) * damp)
        days = ctx.days_between(left.index, right.index)
        if completion < FORMING_MIN_COMPLETION or not (FORMING_MIN_DAYS <= days <= FORMING_MAX_DAYS):
            debug.reject(ptype, "forming_duration_out_of_range", [left.index, right.index])
            return None

        inner = [t for t in turns if left.index < t.index < head.index]
        if inner:
            pre = (max if inverse else min)(inner, key=lambda t: t.price)
            neckline = ctx.neckline(pre.index, pre.price, turn.index, turn.price)
        else:
            neckline = ctx.neckline(left.index, turn.price, turn.index, turn.price)
        neck_level = neckline[0].price
        target = neck_level + (neck_level - head.price) if inverse else neck_level - (head.price - neck_level)

        confidence = round(clamp01(0.6 * closeness + 0.4 * progress) * damp, 2)
        debug.accept(ptype, [left.index, head.index, turn.index, right.index],
                     details={"provisional": provisional})
        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(left.index, right.index),
            start_index=left.index,
            end_index=right.index,
            status=PatternStatus.FORMING,
            pivots=[left, head, turn, right],
            neckline=neckline,
            breakout_target=round(target, 4),
            target_method="neckline_projection",
            completion_pct=round(completion * 100),
            details=HeadShouldersDetails(
                head_price=head.price,
                shoulder_diff_pct=round(relative_deviation(left.price, right.price) * 100, 2),
                provisional=provisional,
            ),
        )
