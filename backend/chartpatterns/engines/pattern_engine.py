"""
Chart Patterns — Pattern Detection Engine

Orchestrates one detection call over an already-fetched bar sequence:

  bars → context (swings, resolved params) → family classifiers
  → global dedup → current-relevance filter → aftermath & statistics
  → status filters → overlays, warnings, debug, summary

Chart Patterns (13):
  Double Top/Bottom, Head & Shoulders (& Inverse),
  Ascending/Descending/Symmetrical Triangle, Rising/Falling Wedge,
  Flag, Pennant, Triple Top/Bottom

Deterministic: "now" is an input (defaulting to the last bar), never the
system clock, so identical input yields identical output.
"""

from __future__ import annotations

import concurrent.futures
import time
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence, Union

import structlog
from pydantic import ValidationError

from chartpatterns.config import Settings, get_settings, resolve_params
from chartpatterns.engines.aftermath import analyze_aftermath, compute_statistics, expected_direction
from chartpatterns.engines.classifier import ClassifierOutput, PatternClassifier
from chartpatterns.engines.context import DebugCollector, DetectionContext, build_context
from chartpatterns.engines.dedup import global_dedup
from chartpatterns.engines.families import default_classifiers
from chartpatterns.engines.families.doubles import MIN_SPACING
from chartpatterns.error_handlers import internal_error_result, validation_error_result
from chartpatterns.models import (
    Bar,
    BreakoutDirection,
    DetectionConfig,
    DetectionDebug,
    DetectionResult,
    DetectionWarning,
    EngineResult,
    OverlayRange,
    Overlays,
    PatternEntry,
    PatternStatus,
)
from chartpatterns.observability import trace_span
from chartpatterns.utils.formatters import format_bar_time, format_pattern_label, format_price

log = structlog.get_logger(__name__)

ConfigInput = Union[DetectionConfig, dict, None]

LOW_DETECTION_SUGGESTION = {"tolerancePct": 0.03, "minBarsBetweenSwings": 2}

_FORMING = (PatternStatus.FORMING.value, PatternStatus.NEAR_COMPLETION.value)


def coerce_config(config: ConfigInput) -> DetectionConfig:
    """Accept a ``DetectionConfig``, a plain dict (snake_case or camelCase) or None."""
    if config is None:
        return DetectionConfig()
    if isinstance(config, DetectionConfig):
        return config
    return DetectionConfig.model_validate(config)


class PatternEngine:
    """Chart-pattern detector over a fixed bar array.

    Usage:
        engine = PatternEngine()
        result = engine.detect(bars, {"patterns": ["double_bottom"], "includeForming": True})
        result.model_dump(by_alias=True, mode="json")
    """

    def __init__(
        self,
        classifiers: Optional[list[PatternClassifier]] = None,
        settings: Optional[Settings] = None,
    ):
        self.classifiers = classifiers if classifiers is not None else default_classifiers()
        self.settings = settings or get_settings()

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def detect(
        self,
        bars: Sequence[Bar],
        config: ConfigInput = None,
        now: Optional[datetime] = None,
    ) -> DetectionResult:
        """Run every requested family and assemble the result.

        Raises:
            pydantic.ValidationError: ``config`` is a dict that fails validation.
        """
        started = time.perf_counter()
        config = coerce_config(config)
        bars = list(bars)

        if len(bars) < self.settings.min_bars:
            log.info("patterns.insufficient_bars", bars=len(bars), required=self.settings.min_bars)
            return DetectionResult(
                summary=f"Not enough bars for detection ({len(bars)} < {self.settings.min_bars}).",
                effective_params=resolve_params(config).effective(),
            )

        with trace_span("pattern_engine.detect", metadata={"bars": len(bars)}):
            ctx = build_context(bars, config, now, self.settings)
            collector = DebugCollector()

            entries: list[PatternEntry] = []
            for output in self._run_classifiers(ctx):
                entries.extend(output.entries)
                collector.merge(output.candidates)

            entries = global_dedup(entries)
            entries = self._current_only(entries, ctx)
            entries = [e.model_copy(update={"timeframe": ctx.params.timeframe}) for e in entries]
            entries = self._with_aftermath(entries, bars)
            statistics = compute_statistics(entries)
            patterns = self._status_filter(entries, ctx)

        cap = self.settings.debug_candidate_cap
        result = DetectionResult(
            patterns=patterns,
            overlays=Overlays(ranges=[
                OverlayRange(start=p.range.start, end=p.range.end, label=f"{p.type} ({p.status})")
                for p in patterns
            ]),
            statistics=statistics,
            warnings=self._warnings(patterns),
            debug=DetectionDebug(swings=list(ctx.swings[:cap]), candidates=collector.trimmed(cap)),
            summary=self._summary(patterns, ctx),
            effective_params=ctx.params.effective(),
        )

        log.info(
            "patterns.detected",
            count=len(patterns),
            before_filters=len(entries),
            candidates=len(collector),
            timeframe=ctx.params.timeframe,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return result

    # ──────────────────────────────────────────
    # Pipeline Stages
    # ──────────────────────────────────────────

    def _run_classifiers(self, ctx: DetectionContext) -> list[ClassifierOutput]:
        """Each classifier reads the shared context and returns its own debug buffer."""
        if self.settings.parallel_classifiers and len(self.classifiers) > 1:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
                return list(pool.map(lambda c: c.run(ctx), self.classifiers))
        return [c.run(ctx) for c in self.classifiers]

    @staticmethod
    def _current_only(entries: list[PatternEntry], ctx: DetectionContext) -> list[PatternEntry]:
        if not ctx.params.require_current_in_pattern:
            return entries
        max_age = timedelta(days=ctx.params.current_relevance_days)
        return [e for e in entries if abs(ctx.now - e.range.end) <= max_age]

    def _with_aftermath(self, entries: list[PatternEntry], bars: list[Bar]) -> list[PatternEntry]:
        out = []
        for entry in entries:
            if entry.status == PatternStatus.COMPLETED.value:
                after = analyze_aftermath(entry, bars, self.settings)
                if after is not None:
                    entry = entry.model_copy(update={"aftermath": after})
            out.append(entry)
        return out

    @staticmethod
    def _status_filter(entries: list[PatternEntry], ctx: DetectionContext) -> list[PatternEntry]:
        params = ctx.params
        kept = []
        for entry in entries:
            if entry.status in _FORMING:
                if params.include_forming:
                    kept.append(entry)
            elif entry.status == PatternStatus.INVALID.value:
                if params.include_completed and params.include_invalid:
                    kept.append(entry)
            elif params.include_completed:
                kept.append(entry)
        return kept

    def _warnings(self, patterns: list[PatternEntry]) -> list[DetectionWarning]:
        if len(patterns) > self.settings.low_detection_threshold:
            return []
        return [DetectionWarning(
            type="low_detection_count",
            message=(
                "Few patterns detected; consider adjusting tolerancePct or minBarsBetweenSwings. "
                f"Double top/bottom keep a fixed {MIN_SPACING}-bar spacing between extremes."
            ),
            suggested_params=dict(LOW_DETECTION_SUGGESTION),
        )]

    # ──────────────────────────────────────────
    # Summary
    # ──────────────────────────────────────────

    @staticmethod
    def _summary(patterns: list[PatternEntry], ctx: DetectionContext) -> str:
        timeframe = ctx.params.timeframe
        if not patterns:
            return f"No chart patterns detected on {ctx.size} bars ({timeframe})."

        intraday = ctx.params.profile.bars_per_day > 1
        bullish = sum(1 for p in patterns if expected_direction(p) == BreakoutDirection.UP)
        bearish = sum(1 for p in patterns if expected_direction(p) == BreakoutDirection.DOWN)
        if bullish > bearish:
            bias = "bullish"
        elif bearish > bullish:
            bias = "bearish"
        else:
            bias = "neutral"

        lines = [f"Detected {len(patterns)} pattern(s) on {ctx.size} bars ({timeframe}), bias {bias}."]
        for n, p in enumerate(patterns, start=1):
            lines.append(f"{n}. {format_pattern_label(p.type)} (confidence {p.confidence:.2f})")
            lines.append(
                f"   - Range: {format_bar_time(p.range.start, intraday)} ~ {format_bar_time(p.range.end, intraday)}"
            )
            lines.append(f"   - Status: {p.status}")
            if p.breakout_direction and p.outcome:
                lines.append(f"   - Breakout: {p.breakout_direction} ({p.outcome})")
            if p.neckline:
                a, b = p.neckline
                lines.append(f"   - Neckline: {format_price(a.price)} → {format_price(b.price)}")
            if p.breakout_target is not None:
                lines.append(f"   - Target: {format_price(p.breakout_target)}")
            if p.completion_pct is not None:
                lines.append(f"   - Completion: {p.completion_pct}%")
        return "\n".join(lines)


# ──────────────────────────────────────────────
# Failure Boundary
# ──────────────────────────────────────────────

def detect_patterns(
    bars: Sequence[Bar],
    config: Any = None,
    now: Optional[datetime] = None,
    engine: Optional[PatternEngine] = None,
) -> EngineResult:
    """Run the engine and wrap the outcome.

    ``ok=True`` with zero patterns means "ran, found nothing"; ``ok=False``
    carries an ``invalid_config`` or ``internal_error`` payload.
    """
    try:
        config = coerce_config(config)
    except ValidationError as e:
        return validation_error_result(e)

    try:
        result = (engine or PatternEngine()).detect(bars, config, now)
    except Exception as e:
        return internal_error_result(e)
    return EngineResult(ok=True, result=result)
