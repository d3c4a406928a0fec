"""
Chart Patterns — Aftermath & Statistics

Post-hoc analysis of completed patterns: did price confirm the neckline
break, how far did it move over fixed horizons, and did it reach the
theoretical target? Results are aggregated per pattern type.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np
import structlog

from chartpatterns.config import Settings, get_settings
from chartpatterns.models import (
    Aftermath,
    Bar,
    BreakoutDirection,
    PatternEntry,
    PatternStatus,
    PatternType,
    PriceMove,
    TypeStatistics,
)
from chartpatterns.utils.formatters import format_pct

log = structlog.get_logger(__name__)

HORIZONS = (3, 7, 14)
MEANINGFUL_MOVE_PCT = 3.0

BULLISH_TYPES = frozenset({
    PatternType.DOUBLE_BOTTOM.value,
    PatternType.INVERSE_HEAD_AND_SHOULDERS.value,
    PatternType.TRIANGLE_ASCENDING.value,
    PatternType.TRIANGLE_SYMMETRICAL.value,
    PatternType.FALLING_WEDGE.value,
    PatternType.TRIPLE_BOTTOM.value,
})
BEARISH_TYPES = frozenset({
    PatternType.DOUBLE_TOP.value,
    PatternType.HEAD_AND_SHOULDERS.value,
    PatternType.TRIANGLE_DESCENDING.value,
    PatternType.RISING_WEDGE.value,
    PatternType.TRIPLE_TOP.value,
})
POLE_TYPES = frozenset({PatternType.FLAG.value, PatternType.PENNANT.value})


class AftermathOutcome:
    """Outcome codes reported in ``Aftermath.outcome``."""
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE_OPPOSITE_MOVE = "failure_opposite_move"
    FAILURE_NEGLIGIBLE_MOVE = "failure_negligible_move"
    NOT_TRIGGERED = "not_triggered"
    NOT_EVALUABLE = "not_evaluable"


def expected_direction(entry: PatternEntry) -> Optional[BreakoutDirection]:
    """Direction a pattern is expected to resolve in.

    Flags and pennants follow their pole; everything else follows the
    fixed bullish / bearish tables.
    """
    ptype = str(entry.type)
    if ptype in POLE_TYPES:
        return BreakoutDirection(entry.pole_direction) if entry.pole_direction else None
    if ptype in BULLISH_TYPES:
        return BreakoutDirection.UP
    if ptype in BEARISH_TYPES:
        return BreakoutDirection.DOWN
    if entry.breakout_direction:
        return BreakoutDirection(entry.breakout_direction)
    return None


def neckline_value(entry: PatternEntry, index: int) -> Optional[float]:
    """Neckline price at ``index``, interpolated and clamped to its two points."""
    if not entry.neckline or len(entry.neckline) != 2:
        return None
    a, b = entry.neckline
    if b.index == a.index:
        return a.price
    t = max(0.0, min(1.0, (index - a.index) / (b.index - a.index)))
    return a.price + (b.price - a.price) * t


def _price_moves(bars: Sequence[Bar], end: int, base_close: float) -> dict[str, PriceMove]:
    moves: dict[str, PriceMove] = {}
    for h in HORIZONS:
        to = min(len(bars) - 1, end + h)
        if to <= end:
            continue
        window = bars[end + 1:to + 1]
        close_to = bars[to].close
        if not math.isfinite(close_to):
            continue
        moves[f"days{h}"] = PriceMove(
            return_pct=round((close_to - base_close) / base_close * 100, 2),
            high=round(max(b.high for b in window), 4),
            low=round(min(b.low for b in window), 4),
        )
    return moves


def analyze_aftermath(
    entry: PatternEntry,
    bars: Sequence[Bar],
    settings: Optional[Settings] = None,
) -> Optional[Aftermath]:
    """Aftermath of one completed pattern, or None when it cannot be evaluated.

    Usage:
        entry.aftermath = analyze_aftermath(entry, bars)
    """
    settings = settings or get_settings()
    if PatternStatus(entry.status) != PatternStatus.COMPLETED:
        return None
    end = entry.end_index
    if end < 0 or end >= len(bars):
        return None
    base_close = bars[end].close
    neck_end = neckline_value(entry, end)
    direction = expected_direction(entry)
    if neck_end is None or direction is None or not math.isfinite(base_close) or base_close == 0:
        return None

    bullish = direction == BreakoutDirection.UP
    buffer = settings.aftermath_breakout_buffer

    breakout_date = None
    for i in range(end + 1, min(len(bars), end + settings.aftermath_lookahead_bars)):
        neck = neckline_value(entry, i)
        close = bars[i].close
        if neck is None or not math.isfinite(close):
            continue
        if (bullish and close > neck * (1 + buffer)) or (not bullish and close < neck * (1 - buffer)):
            breakout_date = bars[i].timestamp
            break

    moves = _price_moves(bars, end, base_close)

    prices = [p.price for p in entry.pivots if math.isfinite(p.price)]
    target: Optional[float] = None
    if prices:
        target = neck_end + (neck_end - min(prices)) if bullish else neck_end - (max(prices) - neck_end)

    days_to_target: Optional[int] = None
    if target is not None:
        for i in range(end + 1, min(len(bars) - 1, end + settings.aftermath_target_window) + 1):
            if (bullish and bars[i].high >= target) or (not bullish and bars[i].low <= target):
                days_to_target = i - end
                break

    outcome, detail = _classify(breakout_date is not None, days_to_target is not None, moves, bullish)
    return Aftermath(
        breakout_date=breakout_date,
        breakout_confirmed=breakout_date is not None,
        days3=moves.get("days3"),
        days7=moves.get("days7"),
        days14=moves.get("days14"),
        target_reached=days_to_target is not None,
        theoretical_target=round(target, 4) if target is not None else None,
        days_to_target=days_to_target,
        outcome=outcome,
        outcome_detail=detail,
    )


def _classify(confirmed: bool, reached: bool, moves: dict[str, PriceMove], bullish: bool) -> tuple[str, str]:
    if not confirmed:
        return AftermathOutcome.NOT_TRIGGERED, "neckline not broken"
    if reached:
        return AftermathOutcome.SUCCESS, "theoretical target reached"
    returns = [moves[k].return_pct for k in ("days3", "days7", "days14") if k in moves]
    if not returns:
        return AftermathOutcome.NOT_EVALUABLE, "not enough bars after the pattern"

    best = 0.0
    for r in returns:
        if abs(r) > abs(best):
            best = r
    moved = format_pct(best, decimals=1)
    same_way = (best > 0) == bullish
    if same_way and abs(best) > MEANINGFUL_MOVE_PCT:
        return AftermathOutcome.PARTIAL_SUCCESS, f"{moved} after breakout, target not reached"
    if not same_way and abs(best) > MEANINGFUL_MOVE_PCT:
        return AftermathOutcome.FAILURE_OPPOSITE_MOVE, f"{moved} after breakout, against the expected direction"
    return AftermathOutcome.FAILURE_NEGLIGIBLE_MOVE, f"{moved} after breakout, negligible move"


# ──────────────────────────────────────────────
# Statistics
# ──────────────────────────────────────────────

def compute_statistics(entries: Sequence[PatternEntry]) -> dict[str, TypeStatistics]:
    """Per-type aggregates over entries already annotated with aftermath."""
    buckets: dict[str, dict] = {}
    for entry in entries:
        bucket = buckets.setdefault(str(entry.type), {"detected": 0, "with": 0, "success": 0, "r7": [], "r14": []})
        bucket["detected"] += 1
        after = entry.aftermath
        if after is None:
            continue
        bucket["with"] += 1
        if after.outcome == AftermathOutcome.SUCCESS:
            bucket["success"] += 1
        if after.days7 is not None:
            bucket["r7"].append(after.days7.return_pct)
        if after.days14 is not None:
            bucket["r14"].append(after.days14.return_pct)

    def _avg(values: list[float]) -> Optional[float]:
        return round(float(np.mean(values)), 2) if values else None

    def _median(values: list[float]) -> Optional[float]:
        return round(float(np.median(values)), 2) if values else None

    stats = {
        ptype: TypeStatistics(
            detected=b["detected"],
            with_aftermath=b["with"],
            success_rate=round(b["success"] / b["with"], 2) if b["with"] else None,
            avg_return7d=_avg(b["r7"]),
            avg_return14d=_avg(b["r14"]),
            median_return7d=_median(b["r7"]),
        )
        for ptype, b in sorted(buckets.items())
    }
    log.debug("aftermath.statistics", types=len(stats))
    return stats
