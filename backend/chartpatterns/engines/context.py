"""
Chart Patterns — Detection Context

One ``DetectionContext`` is built per detection call and handed to every
classifier. It is read-only; the only mutable state a classifier touches
is its own ``DebugCollector``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from chartpatterns.config import DetectionParams, Settings, get_settings, resolve_params
from chartpatterns.engines.swing_engine import bar_arrays, find_swings, peaks_of, valleys_of
from chartpatterns.models import (
    Bar,
    CandidatePoint,
    DebugCandidate,
    DetectionConfig,
    NecklinePoint,
    PatternRange,
    SwingPoint,
)
from chartpatterns.observability import traced


# ──────────────────────────────────────────────
# Debug Collector
# ──────────────────────────────────────────────

class DebugCollector:
    """Append-only audit trail of candidate shapes.

    Usage:
        debug = DebugCollector()
        debug.reject("double_top", "peaks_not_equal", [a.index, c.index])
        debug.accept("double_top", [a.index, b.index, c.index])
    """

    def __init__(self) -> None:
        self._items: list[DebugCandidate] = []

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[DebugCandidate]:
        return list(self._items)

    def record(
        self,
        pattern_type: str,
        accepted: bool,
        reason: Optional[str] = None,
        indices: Iterable[int] = (),
        points: Iterable[CandidatePoint] = (),
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self._items.append(DebugCandidate(
            type=str(pattern_type),
            accepted=accepted,
            reason=reason,
            indices=[int(i) for i in indices],
            points=list(points),
            details=details,
        ))

    def accept(self, pattern_type: str, indices: Iterable[int] = (), points: Iterable[CandidatePoint] = (),
               details: Optional[dict[str, Any]] = None) -> None:
        self.record(pattern_type, True, None, indices, points, details)

    def reject(self, pattern_type: str, reason: str, indices: Iterable[int] = (),
               points: Iterable[CandidatePoint] = (), details: Optional[dict[str, Any]] = None) -> None:
        self.record(pattern_type, False, reason, indices, points, details)

    def merge(self, other: "DebugCollector | Iterable[DebugCandidate]") -> None:
        """Append another collector's records after a join point."""
        items = other.items if isinstance(other, DebugCollector) else list(other)
        self._items.extend(items)

    def trimmed(self, cap: int) -> list[DebugCandidate]:
        """At most ``cap`` records, accepted ones first (each group keeps its order)."""
        accepted = [c for c in self._items if c.accepted]
        rejected = [c for c in self._items if not c.accepted]
        return (accepted + rejected)[:cap]


# ──────────────────────────────────────────────
# Context
# ──────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class DetectionContext:
    """Immutable per-call bundle shared by all classifiers."""
    bars: tuple[Bar, ...]
    opens: np.ndarray
    highs: np.ndarray
    lows: np.ndarray
    closes: np.ndarray
    swings: tuple[SwingPoint, ...]
    peaks: tuple[SwingPoint, ...]
    valleys: tuple[SwingPoint, ...]
    params: DetectionParams
    now: datetime
    settings: Settings = field(default_factory=get_settings)

    # ── Convenience ──

    @property
    def size(self) -> int:
        return len(self.bars)

    @property
    def last_index(self) -> int:
        return len(self.bars) - 1

    @property
    def tolerance(self) -> float:
        return self.params.tolerance_pct

    @property
    def min_distance(self) -> int:
        return self.params.min_bars_between_swings

    @property
    def include_forming(self) -> bool:
        return self.params.include_forming

    def wants(self, pattern_type: str) -> bool:
        return self.params.wants(pattern_type)

    def near(self, a: float, b: float, tolerance: Optional[float] = None) -> bool:
        """Relative price equality within ``tolerance`` (default: the call's)."""
        tol = self.params.tolerance_pct if tolerance is None else tolerance
        return relative_deviation(a, b) <= tol

    def date_at(self, index: int) -> datetime:
        index = max(0, min(self.last_index, int(index)))
        return self.bars[index].timestamp

    def projected_date(self, index: int) -> datetime:
        """Timestamp of ``index``, extrapolated at the median bar spacing past the last bar."""
        if index <= self.last_index or self.size < 2:
            return self.date_at(index)
        spacing = np.median(np.diff([b.timestamp.timestamp() for b in self.bars]))
        return self.bars[-1].timestamp + timedelta(seconds=float(spacing) * (index - self.last_index))

    def days_between(self, start: int, end: int) -> float:
        return (self.date_at(end) - self.date_at(start)).total_seconds() / 86400.0

    def bars_to_days(self, bars: float) -> float:
        return bars / self.params.profile.bars_per_day

    def pattern_range(self, start: int, end: int) -> PatternRange:
        return PatternRange(start=self.date_at(start), end=self.date_at(end))

    def point(self, role: str, index: int, price: float) -> CandidatePoint:
        return CandidatePoint(role=role, index=int(index), price=float(price), date=self.date_at(index))

    def neckline(self, start: int, start_price: float, end: int, end_price: float) -> list[NecklinePoint]:
        return [
            NecklinePoint(index=int(start), price=float(start_price), date=self.date_at(start)),
            NecklinePoint(index=int(end), price=float(end_price), date=self.date_at(end)),
        ]

    def finite(self, *values: float) -> bool:
        return all(math.isfinite(v) for v in values)


def relative_deviation(a: float, b: float) -> float:
    """``|a - b| / max(|a|, |b|)``; 0 when both are zero."""
    denom = max(abs(a), abs(b))
    if denom == 0:
        return 0.0
    return abs(a - b) / denom


@traced("context.build_context")
def build_context(
    bars: Sequence[Bar],
    config: Optional[DetectionConfig] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> DetectionContext:
    """Resolve parameters, extract swings and freeze everything for one call.

    ``now`` defaults to the last bar's timestamp, never the system clock.
    """
    params = resolve_params(config)
    bars = tuple(bars)
    o, h, l, c = bar_arrays(bars)
    swings = tuple(find_swings(bars, params.swing_depth, strict=params.strict_pivots))
    if now is None:
        now = bars[-1].timestamp if bars else datetime.min

    return DetectionContext(
        bars=bars,
        opens=o,
        highs=h,
        lows=l,
        closes=c,
        swings=swings,
        peaks=tuple(peaks_of(swings)),
        valleys=tuple(valleys_of(swings)),
        params=params,
        now=now,
        settings=settings or get_settings(),
    )
