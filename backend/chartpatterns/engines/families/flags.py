"""
Chart Patterns — Flags & Pennants

Both shapes start with an impulsive pole measured in ATR multiples,
followed by a consolidation fit with regression lines through relaxed
pivots:

  - flag: roughly parallel channel sloping against the pole
  - pennant: converging lines (end gap ≤ 70% of start gap)

Pole and consolidation windows are defined in days and converted to
bars with the timeframe's bars-per-day.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np

from chartpatterns.engines.classifier import PatternClassifier, resolve_outcome, scan_breakout
from chartpatterns.engines.context import DebugCollector, DetectionContext
from chartpatterns.engines.regression import TrendLine, fit_pivots
from chartpatterns.engines.scoring import calc_apex, clamp01, finalize_confidence
from chartpatterns.engines.swing_engine import find_relaxed_swings, peaks_of, valleys_of
from chartpatterns.models import (
    BreakoutDirection,
    FlagDetails,
    PatternEntry,
    PatternStatus,
    PatternType,
    PennantDetails,
    PivotKind,
    SwingPoint,
)

FLAG = PatternType.FLAG.value
PENNANT = PatternType.PENNANT.value

MIN_SPAN_RATIO = 0.30
MAX_CONSOLIDATION_TO_POLE = 0.90
FLAG_MIN_R2 = 0.65
FLAG_MIN_CONVERGENCE = 0.60
PENNANT_MIN_R2 = 0.50
PENNANT_MAX_CONVERGENCE = 0.70
BREAKOUT_ATR_MULT = 0.3
NEAR_COMPLETION_SHARE = 0.7


@dataclass(frozen=True)
class PoleParams:
    """Pole / consolidation limits in bars for one timeframe."""
    pole_min_bars: int
    pole_max_bars: int
    cons_min_bars: int
    cons_max_bars: int
    min_atr_mult: float
    min_pole_pct: float

    @classmethod
    def for_context(cls, ctx: DetectionContext) -> "PoleParams":
        bpd = ctx.params.profile.bars_per_day
        return cls(
            pole_min_bars=max(2, round(1 * bpd)),
            pole_max_bars=max(5, round(15 * bpd)),
            cons_min_bars=max(3, round(2 * bpd)),
            cons_max_bars=max(10, round(30 * bpd)),
            min_atr_mult=ctx.params.profile.pole_atr_mult,
            min_pole_pct=ctx.params.profile.min_pole_pct,
        )


@dataclass(frozen=True)
class Pole:
    start: int
    end: int
    magnitude: float
    atr_mult: float
    atr: float

    @property
    def up(self) -> bool:
        return self.magnitude > 0

    @property
    def direction(self) -> BreakoutDirection:
        return BreakoutDirection.UP if self.up else BreakoutDirection.DOWN


@dataclass(frozen=True)
class Consolidation:
    start: int
    end: int
    highs: list[SwingPoint]
    lows: list[SwingPoint]
    upper: TrendLine
    lower: TrendLine
    gap_start: float
    gap_end: float

    @property
    def ratio(self) -> float:
        return self.gap_end / self.gap_start


def true_ranges(ctx: DetectionContext) -> np.ndarray:
    """True range per bar; index 0 and non-finite inputs are NaN."""
    tr = np.full(ctx.size, np.nan)
    if ctx.size < 2:
        return tr
    h, l, pc = ctx.highs[1:], ctx.lows[1:], ctx.closes[:-1]
    tr[1:] = np.maximum.reduce([h - l, np.abs(h - pc), np.abs(l - pc)])
    return tr


def window_atr(tr: np.ndarray, start: int, end: int, period: int = 14) -> float:
    """Mean of the last ``period`` finite true ranges in ``[start, end]``."""
    lo = max(1, start)
    hi = min(len(tr) - 1, max(lo + 1, end))
    values = tr[lo:hi + 1]
    values = values[np.isfinite(values)][-period:]
    return float(values.mean()) if len(values) else 0.0


class FlagsClassifier(PatternClassifier):
    """Flag and pennant detector sharing one pole scan.

    Usage:
        output = FlagsClassifier().run(ctx)
    """

    family = "flag"
    pattern_types = (FLAG, PENNANT)

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        return self._detect(ctx, debug, forming=False)

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        return self._detect(ctx, debug, forming=True)

    # ──────────────────────────────────────────
    # Pole scan
    # ──────────────────────────────────────────

    def iter_poles(self, ctx: DetectionContext, params: PoleParams, tr: np.ndarray) -> Iterator[Pole]:
        """Strongest qualifying pole (by ATR multiple) for each pole end."""
        last = ctx.last_index
        outer_step = 2 if params.pole_max_bars > 100 else 1
        inner_step = 2 if params.pole_max_bars > 50 else 1
        closes = ctx.closes

        for pole_end in range(params.pole_min_bars, last - params.cons_min_bars + 1, outer_step):
            best: Optional[Pole] = None
            for length in range(params.pole_min_bars, min(params.pole_max_bars, pole_end) + 1, inner_step):
                ps = pole_end - length
                start_price, end_price = float(closes[ps]), float(closes[pole_end])
                if not ctx.finite(start_price, end_price):
                    continue
                magnitude = end_price - start_price
                change_pct = abs(magnitude) / max(1e-12, start_price)
                atr = window_atr(tr, ps, pole_end)
                if atr <= 0:
                    continue
                atr_mult = abs(magnitude) / atr
                if atr_mult < params.min_atr_mult or change_pct < params.min_pole_pct:
                    continue
                if best is None or atr_mult > best.atr_mult:
                    best = Pole(start=ps, end=pole_end, magnitude=magnitude, atr_mult=atr_mult, atr=atr)
            if best is not None:
                yield best

    # ──────────────────────────────────────────
    # Consolidation
    # ──────────────────────────────────────────

    @staticmethod
    def _consolidation(
        ctx: DetectionContext,
        debug: DebugCollector,
        pole: Pole,
        params: PoleParams,
        peaks: list[SwingPoint],
        valleys: list[SwingPoint],
    ) -> Optional[Consolidation]:
        start = pole.end + 1
        if start > ctx.last_index - 2:
            return None
        max_end = min(ctx.last_index, pole.end + params.cons_max_bars)
        highs = [p for p in peaks if start <= p.index <= max_end]
        lows = [p for p in valleys if start <= p.index <= max_end]
        if len(highs) < 2 or len(lows) < 2:
            debug.reject(FLAG, "insufficient_consolidation_swings", [pole.start, pole.end],
                         details={"highs": len(highs), "lows": len(lows), "poleATRMult": round(pole.atr_mult, 2)})
            return None

        end = max(highs[-1].index, lows[-1].index)
        width = max(1, end - start)
        upper_span = highs[-1].index - highs[0].index
        lower_span = lows[-1].index - lows[0].index
        if upper_span < width * MIN_SPAN_RATIO or lower_span < width * MIN_SPAN_RATIO:
            debug.reject(FLAG, "trendline_span_too_short", [pole.start, pole.end],
                         details={"upperSpan": upper_span, "lowerSpan": lower_span, "width": width})
            return None

        upper, lower = fit_pivots(highs), fit_pivots(lows)
        gap_start = upper.value_at(start) - lower.value_at(start)
        gap_end = upper.value_at(end) - lower.value_at(end)
        if gap_start <= 0 or gap_end <= 0:
            return None
        if gap_start > abs(pole.magnitude) * MAX_CONSOLIDATION_TO_POLE:
            debug.reject(FLAG, "consolidation_too_wide", [pole.start, end], details={
                "consRange": round(gap_start, 4), "poleRange": round(abs(pole.magnitude), 4),
            })
            return None
        return Consolidation(start, end, highs, lows, upper, lower, gap_start, gap_end)

    @staticmethod
    def classify(pole: Pole, cons: Consolidation) -> Optional[str]:
        """``flag`` / ``pennant`` / None for a pole plus consolidation."""
        upper, lower, ratio = cons.upper, cons.lower, cons.ratio
        avg_slope = (upper.slope + lower.slope) / 2
        parallel = abs(upper.slope - lower.slope) < abs(avg_slope) * 0.6 or ratio > 0.70
        against_pole = avg_slope < 0 if pole.up else avg_slope > 0
        if (parallel and against_pole and ratio > FLAG_MIN_CONVERGENCE
                and upper.r2 >= FLAG_MIN_R2 and lower.r2 >= FLAG_MIN_R2):
            return FLAG
        if (ratio <= PENNANT_MAX_CONVERGENCE and upper.slope < 0 < lower.slope
                and upper.r2 >= PENNANT_MIN_R2 and lower.r2 >= PENNANT_MIN_R2):
            return PENNANT
        return None

    # ──────────────────────────────────────────
    # Driver
    # ──────────────────────────────────────────

    def _detect(self, ctx: DetectionContext, debug: DebugCollector, forming: bool) -> list[PatternEntry]:
        if ctx.last_index < 15:
            return []
        params = PoleParams.for_context(ctx)
        tr = true_ranges(ctx)
        relaxed = find_relaxed_swings(ctx.bars)
        peaks, valleys = peaks_of(relaxed), valleys_of(relaxed)

        entries: list[PatternEntry] = []
        for pole in self.iter_poles(ctx, params, tr):
            # reject reasons are logged once, on the completed pass
            sink = DebugCollector() if forming else debug
            cons = self._consolidation(ctx, sink, pole, params, peaks, valleys)
            if cons is None:
                continue

            ptype = self.classify(pole, cons)
            if ptype is None:
                sink.reject(FLAG, "classification_failed", [pole.start, cons.end], details={
                    "convergenceRatio": round(cons.ratio, 3),
                    "upperSlope": round(cons.upper.slope, 6),
                    "lowerSlope": round(cons.lower.slope, 6),
                    "poleDirection": pole.direction.value,
                })
                continue
            if not ctx.wants(ptype):
                continue
            if ptype == PENNANT and not calc_apex(cons.upper, cons.lower, cons.end).valid:
                sink.reject(PENNANT, "apex_not_in_future", [pole.start, cons.end])
                continue

            scan_start = cons.start + max(3, int((cons.end - cons.start) * 0.3))
            buffer = pole.atr * BREAKOUT_ATR_MULT
            breakout = scan_breakout(ctx.closes, scan_start, ctx.last_index,
                                     cons.upper.value_at, cons.lower.value_at, buffer, buffer)
            if (breakout is None) != forming:
                continue
            entries.append(self._entry(ctx, debug, ptype, pole, cons, params, breakout))
        return entries

    def _entry(self, ctx, debug, ptype, pole: Pole, cons: Consolidation, params: PoleParams, breakout) -> PatternEntry:
        pole_range = abs(pole.magnitude)
        if ptype == FLAG:
            conv_score = clamp01(1 - abs(1 - cons.ratio) / 0.5)
        else:
            conv_score = clamp01((1 - cons.ratio) / 0.6)
        base = (
            clamp01(pole.atr_mult / (params.min_atr_mult * 3)) * 0.30
            + conv_score * 0.25
            + (cons.upper.r2 + cons.lower.r2) / 2 * 0.20
            + clamp01((len(cons.highs) + len(cons.lows)) / 6) * 0.25
        )
        confidence = finalize_confidence(base, ptype)

        zone_lows = ctx.lows[cons.start:cons.end + 1]
        zone_highs = ctx.highs[cons.start:cons.end + 1]
        pole_top = float(ctx.closes[pole.end])
        if pole.up:
            retraced = pole_top - float(np.nanmin(zone_lows))
        else:
            retraced = float(np.nanmax(zone_highs)) - pole_top
        retracement = round(max(0.0, retraced) / max(1e-12, pole_range), 3)

        update: dict = {}
        if breakout is not None:
            status, outcome = resolve_outcome(pole.direction, breakout.direction)
            target = breakout.price + pole_range if breakout.direction == BreakoutDirection.UP \
                else breakout.price - pole_range
            end_index = breakout.index
            update = dict(
                breakout_direction=breakout.direction,
                breakout_index=breakout.index,
                breakout_date=ctx.date_at(breakout.index),
                breakout_target=round(target, 4),
                target_method="flagpole_projection",
                outcome=outcome,
            )
        else:
            cons_bars = cons.end - cons.start
            near = cons_bars > params.cons_max_bars * NEAR_COMPLETION_SHARE
            status = PatternStatus.NEAR_COMPLETION if near else PatternStatus.FORMING
            end_index = cons.end
            projected = pole_top + pole_range if pole.up else pole_top - pole_range
            update = dict(
                breakout_target=round(projected, 4),
                target_method="flagpole_projection",
                completion_pct=min(100, round(100 * cons_bars / max(1, params.cons_max_bars))),
            )

        line = cons.upper if pole.up else cons.lower
        pole_kinds = (PivotKind.VALLEY, PivotKind.PEAK) if pole.up else (PivotKind.PEAK, PivotKind.VALLEY)
        pivots = [
            SwingPoint(index=pole.start, price=float(ctx.closes[pole.start]), kind=pole_kinds[0],
                       date=ctx.date_at(pole.start)),
            SwingPoint(index=pole.end, price=pole_top, kind=pole_kinds[1], date=ctx.date_at(pole.end)),
        ] + sorted([*cons.highs, *cons.lows], key=lambda p: p.index)

        if ptype == FLAG:
            details = FlagDetails(
                pole_start_index=pole.start,
                pole_end_index=pole.end,
                pole_atr_multiple=round(pole.atr_mult, 2),
                channel_slope=(cons.upper.slope + cons.lower.slope) / 2,
                convergence_ratio=round(cons.ratio, 3),
                upper_r2=round(cons.upper.r2, 3),
                lower_r2=round(cons.lower.r2, 3),
            )
        else:
            details = PennantDetails(
                pole_start_index=pole.start,
                pole_end_index=pole.end,
                pole_atr_multiple=round(pole.atr_mult, 2),
                convergence_ratio=round(cons.ratio, 3),
                upper_r2=round(cons.upper.r2, 3),
                lower_r2=round(cons.lower.r2, 3),
            )

        debug.accept(ptype, [pole.start, end_index], details={
            "poleATRMult": round(pole.atr_mult, 2),
            "convergenceRatio": round(cons.ratio, 3),
            "status": PatternStatus(status).value,
            "confidence": confidence,
        })
        return PatternEntry(
            type=ptype,
            confidence=confidence,
            range=ctx.pattern_range(pole.start, end_index),
            start_index=pole.start,
            end_index=end_index,
            status=status,
            pivots=pivots,
            neckline=ctx.neckline(cons.start, line.value_at(cons.start), end_index, line.value_at(end_index)),
            pole_direction=pole.direction,
            flagpole_height=round(pole_range, 4),
            retracement_ratio=retracement,
            details=details,
            **update,
        )
