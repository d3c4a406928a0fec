"""
Chart Patterns — Classifier Template

Every pattern family follows the same driver:

  strict scan → relaxed fallback (per type, only when strict found
  nothing) → forming variant (when requested) → minimum-confidence gate
  → within-family dedup (families that opt out leave same-type
  overlaps to the global pass).

Families subclass ``PatternClassifier`` and supply only their geometry:
``scan`` (completed shapes at a tolerance scale) and ``scan_forming``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np
import structlog

from chartpatterns.config import get_family_tuning
from chartpatterns.engines.context import DebugCollector, DetectionContext
from chartpatterns.engines.dedup import deduplicate_within_family
from chartpatterns.engines.scoring import clamp01
from chartpatterns.models import (
    BreakoutDirection,
    DebugCandidate,
    PatternEntry,
    PatternOutcome,
    PatternStatus,
)
from chartpatterns.observability import trace_span

log = structlog.get_logger(__name__)


@dataclass
class ClassifierOutput:
    """Entries plus the classifier's private debug records."""
    family: str
    entries: list[PatternEntry] = field(default_factory=list)
    candidates: list[DebugCandidate] = field(default_factory=list)


# ──────────────────────────────────────────────
# Breakout Scan
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Breakout:
    index: int
    direction: BreakoutDirection
    price: float


def scan_breakout(
    closes: np.ndarray,
    start: int,
    end: int,
    upper: Callable[[int], float],
    lower: Callable[[int], float],
    up_buffer: float = 0.0,
    down_buffer: float = 0.0,
) -> Optional[Breakout]:
    """First close in ``[start, end]`` beyond a boundary plus its buffer.

    The earliest qualifying close wins; there is no search for a "best"
    breakout. Non-finite closes or boundary values are skipped.
    """
    last = min(end, len(closes) - 1)
    for i in range(max(0, start), last + 1):
        close = float(closes[i])
        u, l = upper(i), lower(i)
        if not (math.isfinite(close) and math.isfinite(u) and math.isfinite(l)):
            continue
        if close > u + up_buffer:
            return Breakout(index=i, direction=BreakoutDirection.UP, price=close)
        if close < l - down_buffer:
            return Breakout(index=i, direction=BreakoutDirection.DOWN, price=close)
    return None


def resolve_outcome(expected: BreakoutDirection, actual: BreakoutDirection) -> tuple[PatternStatus, PatternOutcome]:
    """Breakout in the expected direction completes the pattern, otherwise invalidates it."""
    if BreakoutDirection(actual) == BreakoutDirection(expected):
        return PatternStatus.COMPLETED, PatternOutcome.SUCCESS
    return PatternStatus.INVALID, PatternOutcome.FAILURE


# ──────────────────────────────────────────────
# Template
# ──────────────────────────────────────────────

class PatternClassifier:
    """Base driver for one pattern family.

    Usage:
        output = DoublesClassifier().run(ctx)
        output.entries, output.candidates
    """

    family: str = ""
    pattern_types: tuple[str, ...] = ()
    # same-type overlaps left to the global pass when False
    within_family_dedup: bool = True

    # ── Family hooks ──

    def scan(self, ctx: DetectionContext, debug: DebugCollector, tolerance_scale: float = 1.0) -> list[PatternEntry]:
        """Completed / invalid shapes at ``tolerance_pct * tolerance_scale``."""
        raise NotImplementedError

    def scan_forming(self, ctx: DetectionContext, debug: DebugCollector) -> list[PatternEntry]:
        """In-progress shapes ending at the current bar."""
        return []

    def relaxed_steps(self, pattern_type: str) -> tuple[tuple[float, float], ...]:
        return get_family_tuning(pattern_type).relaxed_steps

    # ── Driver ──

    def wanted_types(self, ctx: DetectionContext) -> list[str]:
        return [t for t in self.pattern_types if ctx.wants(t)]

    def run(self, ctx: DetectionContext) -> ClassifierOutput:
        debug = DebugCollector()
        wanted = self.wanted_types(ctx)
        if not wanted:
            return ClassifierOutput(family=self.family)

        with trace_span(f"classifier.{self.family}", metadata={"bars": ctx.size}):
            entries = [e for e in self.scan(ctx, debug, 1.0) if e.type in wanted]
            entries.extend(self._relaxed_pass(ctx, debug, wanted, {e.type for e in entries}))

            if ctx.include_forming:
                entries.extend(e for e in self.scan_forming(ctx, debug) if e.type in wanted)

            entries = self._confidence_gate(entries, debug)
            if self.within_family_dedup:
                entries = deduplicate_within_family(entries)

        log.debug("classifier.done", family=self.family, entries=len(entries), candidates=len(debug))
        return ClassifierOutput(family=self.family, entries=entries, candidates=debug.items)

    def _relaxed_pass(
        self,
        ctx: DetectionContext,
        debug: DebugCollector,
        wanted: list[str],
        found: set[str],
    ) -> list[PatternEntry]:
        missing = [t for t in wanted if t not in found]
        scans: dict[float, list[PatternEntry]] = {}
        out: list[PatternEntry] = []

        for pattern_type in missing:
            for multiplier, penalty in self.relaxed_steps(pattern_type):
                if multiplier not in scans:
                    scans[multiplier] = self.scan(ctx, debug, multiplier)
                hits = [e for e in scans[multiplier] if e.type == pattern_type]
                if not hits:
                    continue
                tag = f"relaxed_{self.family}_x{multiplier:g}"
                for entry in hits:
                    out.append(entry.model_copy(update={
                        "confidence": round(clamp01(entry.confidence * penalty), 2),
                        "fallback": tag,
                    }))
                break
        return out

    def _confidence_gate(self, entries: list[PatternEntry], debug: DebugCollector) -> list[PatternEntry]:
        kept = []
        for entry in entries:
            floor = get_family_tuning(entry.type).min_confidence
            if entry.confidence < floor:
                debug.reject(
                    entry.type,
                    "confidence_below_minimum",
                    [p.index for p in entry.pivots],
                    details={"confidence": entry.confidence, "minimum": floor},
                )
                continue
            kept.append(entry)
        return kept
