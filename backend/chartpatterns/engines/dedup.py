"""
Chart Patterns — Deduplication

Two passes over the detected entries:

  1. Within-family, run by the doubles, wedge and flag classifiers:
     same-type entries overlapping more than half of the shorter duration
     collapse to one (latest end, then confidence, then pattern height
     for doubles).
  2. Global: entries in the same category (all triangles, all wedges,
     otherwise the type itself) overlapping >= 70% collapse to one
     (confidence, then later end).

Both passes are greedy over a priority order, so survivors never overlap
a better-ranked survivor past the threshold, and the result does not
depend on the order classifiers emitted their entries.
"""

from __future__ import annotations

from typing import Callable, Sequence

import structlog

from chartpatterns.models import PatternEntry, PatternType

log = structlog.get_logger(__name__)

WITHIN_FAMILY_THRESHOLD = 0.5
GLOBAL_THRESHOLD = 0.70

_CATEGORIES = {
    PatternType.TRIANGLE_ASCENDING.value: "triangle",
    PatternType.TRIANGLE_DESCENDING.value: "triangle",
    PatternType.TRIANGLE_SYMMETRICAL.value: "triangle",
    PatternType.RISING_WEDGE.value: "wedge",
    PatternType.FALLING_WEDGE.value: "wedge",
}


def category_of(pattern_type: str) -> str:
    """Dedup category: triangle and wedge sub-types share one."""
    return _CATEGORIES.get(str(pattern_type), str(pattern_type))


def overlap_ratio(a: PatternEntry, b: PatternEntry) -> float:
    """Shared duration divided by the shorter of the two durations."""
    a_start, a_end = a.range.start.timestamp(), a.range.end.timestamp()
    b_start, b_end = b.range.start.timestamp(), b.range.end.timestamp()
    shared = max(0.0, min(a_end, b_end) - max(a_start, b_start))
    shorter = min(max(1e-3, a_end - a_start), max(1e-3, b_end - b_start))
    return shared / shorter


def _output_order(entry: PatternEntry) -> tuple:
    return (entry.range.start, entry.range.end, str(entry.type), -entry.confidence)


def _greedy(
    entries: Sequence[PatternEntry],
    priority: Callable[[PatternEntry], tuple],
    is_duplicate: Callable[[PatternEntry, PatternEntry], bool],
) -> list[PatternEntry]:
    kept: list[PatternEntry] = []
    for entry in sorted(entries, key=priority):
        if any(is_duplicate(entry, other) for other in kept):
            continue
        kept.append(entry)
    return sorted(kept, key=_output_order)


def deduplicate_within_family(entries: Sequence[PatternEntry]) -> list[PatternEntry]:
    """Collapse same-type entries overlapping more than 50%."""
    def priority(e: PatternEntry) -> tuple:
        return (-e.range.end.timestamp(), -e.confidence, -e.height, _output_order(e))

    def is_duplicate(e: PatternEntry, kept: PatternEntry) -> bool:
        return e.type == kept.type and overlap_ratio(e, kept) > WITHIN_FAMILY_THRESHOLD

    return _greedy(entries, priority, is_duplicate)


def global_dedup(entries: Sequence[PatternEntry], threshold: float = GLOBAL_THRESHOLD) -> list[PatternEntry]:
    """Collapse same-category entries overlapping at least ``threshold``."""
    def priority(e: PatternEntry) -> tuple:
        return (-e.confidence, -e.range.end.timestamp(), _output_order(e))

    def is_duplicate(e: PatternEntry, kept: PatternEntry) -> bool:
        return category_of(e.type) == category_of(kept.type) and overlap_ratio(e, kept) >= threshold

    result = _greedy(entries, priority, is_duplicate)
    if len(result) != len(entries):
        log.debug("dedup.global", before=len(entries), after=len(result))
    return result
