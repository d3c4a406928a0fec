"""
Chart Patterns — Configuration Management

Pydantic Settings for process-wide engine knobs (loaded from .env), plus
the per-timeframe and per-family tuning tables the classifiers read.
The tables are resolved once per detection call by ``resolve_params``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from chartpatterns.models import DetectionConfig, PatternType, Timeframe


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PATTERNS_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    min_bars: int = 20
    debug_candidate_cap: int = 200
    low_detection_threshold: int = 1

    # ── Aftermath ──
    aftermath_lookahead_bars: int = 30
    aftermath_target_window: int = 14
    aftermath_breakout_buffer: float = 0.015

    # ── Execution ──
    parallel_classifiers: bool = False
    max_workers: int = 4
    slow_span_seconds: float = 5.0

    # ── Provider (yfinance) ──
    default_ticker: str = "SPY"
    default_bar_count: int = 250


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


# ──────────────────────────────────────────────
# Timeframe Profiles
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class TimeframeProfile:
    """Defaults that scale with the candle interval."""
    bars_per_day: float
    swing_depth: int
    tolerance_pct: float
    relevance_days: int
    triangle_window: int
    triangle_min_fit: float
    pole_atr_mult: float
    min_pole_pct: float
    triangle_flat_coef: float = 0.5
    triangle_move_coef: float = 0.5
    convergence_factor: float = 2.5


_INTRADAY = dict(triangle_window=6, triangle_min_fit=0.75, pole_atr_mult=1.5)

TIMEFRAME_PROFILES: dict[str, TimeframeProfile] = {
    Timeframe.MIN1.value: TimeframeProfile(1440, 5, 0.02, 7, min_pole_pct=0.01, **_INTRADAY),
    Timeframe.MIN5.value: TimeframeProfile(288, 5, 0.02, 7, min_pole_pct=0.01, **_INTRADAY),
    Timeframe.MIN15.value: TimeframeProfile(96, 5, 0.025, 7, min_pole_pct=0.015, **_INTRADAY),
    Timeframe.MIN30.value: TimeframeProfile(48, 5, 0.025, 7, min_pole_pct=0.015, **_INTRADAY),
    Timeframe.HOUR1.value: TimeframeProfile(
        24, 6, 0.03, 7, triangle_window=5, triangle_min_fit=0.75, pole_atr_mult=1.5, min_pole_pct=0.02,
    ),
    Timeframe.HOUR4.value: TimeframeProfile(
        6, 6, 0.03, 7, triangle_window=5, triangle_min_fit=0.75, pole_atr_mult=1.5, min_pole_pct=0.03,
    ),
    Timeframe.HOUR8.value: TimeframeProfile(
        3, 6, 0.035, 7, triangle_window=5, triangle_min_fit=0.78, pole_atr_mult=1.5, min_pole_pct=0.03,
    ),
    Timeframe.HOUR12.value: TimeframeProfile(
        2, 7, 0.035, 7, triangle_window=5, triangle_min_fit=0.78, pole_atr_mult=1.5, min_pole_pct=0.03,
    ),
    Timeframe.DAY1.value: TimeframeProfile(
        1, 7, 0.04, 7, triangle_window=4, triangle_min_fit=0.78, pole_atr_mult=2.0, min_pole_pct=0.05,
    ),
    Timeframe.WEEK1.value: TimeframeProfile(
        1 / 7, 5, 0.05, 21, triangle_window=4, triangle_min_fit=0.80, pole_atr_mult=2.0, min_pole_pct=0.06,
    ),
    Timeframe.MONTH1.value: TimeframeProfile(
        1 / 30, 3, 0.06, 60, triangle_window=3, triangle_min_fit=0.80, pole_atr_mult=2.5, min_pole_pct=0.08,
    ),
}


def get_timeframe_profile(timeframe: str) -> TimeframeProfile:
    """Profile for a timeframe label, falling back to daily."""
    return TIMEFRAME_PROFILES.get(str(timeframe), TIMEFRAME_PROFILES[Timeframe.DAY1.value])


# ──────────────────────────────────────────────
# Family Tuning
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class FamilyTuning:
    """Per-family confidence adjustment and relaxed-fallback schedule.

    ``relaxed_steps`` holds ``(tolerance multiplier, confidence penalty)``
    pairs tried in order when the strict pass finds nothing.
    """
    adjustment: float = 1.0
    relaxed_steps: tuple[tuple[float, float], ...] = ()
    min_confidence: float = 0.0


FAMILY_TUNING: dict[str, FamilyTuning] = {
    PatternType.DOUBLE_TOP.value: FamilyTuning(relaxed_steps=((1.3, 0.85),)),
    PatternType.DOUBLE_BOTTOM.value: FamilyTuning(relaxed_steps=((1.3, 0.85),)),
    PatternType.HEAD_AND_SHOULDERS.value: FamilyTuning(adjustment=1.1, relaxed_steps=((1.6, 0.95), (2.0, 0.95))),
    PatternType.INVERSE_HEAD_AND_SHOULDERS.value: FamilyTuning(
        adjustment=1.1, relaxed_steps=((1.6, 0.95), (2.0, 0.95)),
    ),
    PatternType.TRIANGLE_ASCENDING.value: FamilyTuning(adjustment=0.95),
    PatternType.TRIANGLE_DESCENDING.value: FamilyTuning(adjustment=0.95),
    PatternType.TRIANGLE_SYMMETRICAL.value: FamilyTuning(adjustment=0.95),
    PatternType.RISING_WEDGE.value: FamilyTuning(),
    PatternType.FALLING_WEDGE.value: FamilyTuning(),
    PatternType.FLAG.value: FamilyTuning(adjustment=0.95),
    PatternType.PENNANT.value: FamilyTuning(adjustment=0.95),
    PatternType.TRIPLE_TOP.value: FamilyTuning(
        adjustment=1.05, relaxed_steps=((1.25, 0.95), (2.0, 0.95)), min_confidence=0.5,
    ),
    PatternType.TRIPLE_BOTTOM.value: FamilyTuning(
        adjustment=1.05, relaxed_steps=((1.25, 0.95), (2.0, 0.95)), min_confidence=0.5,
    ),
}


def get_family_tuning(pattern_type: str) -> FamilyTuning:
    return FAMILY_TUNING.get(str(pattern_type), FamilyTuning())


# ──────────────────────────────────────────────
# Per-call Parameter Resolution
# ──────────────────────────────────────────────

DEFAULT_MIN_BARS_BETWEEN_SWINGS = 5


@dataclass(frozen=True)
class DetectionParams:
    """Fully resolved parameters for one detection call."""
    timeframe: str
    swing_depth: int
    tolerance_pct: float
    min_bars_between_swings: int
    strict_pivots: bool
    include_forming: bool
    include_completed: bool
    include_invalid: bool
    require_current_in_pattern: bool
    current_relevance_days: int
    smoothing: bool
    profile: TimeframeProfile
    requested: frozenset[str] = field(default_factory=frozenset)
    auto_scaled: bool = False

    def wants(self, pattern_type: str) -> bool:
        """Whether a pattern type was requested (empty request means all)."""
        return not self.requested or str(pattern_type) in self.requested

    def effective(self) -> dict:
        return {
            "timeframe": self.timeframe,
            "swingDepth": self.swing_depth,
            "tolerancePct": self.tolerance_pct,
            "minBarsBetweenSwings": self.min_bars_between_swings,
            "autoScaled": self.auto_scaled,
        }


def resolve_params(config: Optional[DetectionConfig] = None) -> DetectionParams:
    """Merge a request with the timeframe profile.

    Usage:
        params = resolve_params(DetectionConfig(timeframe="1week"))
        params.swing_depth  # 5
    """
    config = config or DetectionConfig()
    timeframe = str(config.timeframe)
    profile = get_timeframe_profile(timeframe)
    auto_scaled = config.swing_depth is None or config.tolerance_pct is None

    return DetectionParams(
        timeframe=timeframe,
        swing_depth=config.swing_depth or profile.swing_depth,
        tolerance_pct=config.tolerance_pct or profile.tolerance_pct,
        min_bars_between_swings=config.min_bars_between_swings or DEFAULT_MIN_BARS_BETWEEN_SWINGS,
        strict_pivots=config.strict_pivots,
        include_forming=config.include_forming,
        include_completed=config.include_completed,
        include_invalid=config.include_invalid,
        require_current_in_pattern=config.require_current_in_pattern,
        current_relevance_days=(
            config.current_relevance_days
            if config.current_relevance_days is not None
            else profile.relevance_days
        ),
        smoothing=config.smoothing,
        profile=profile,
        requested=frozenset(config.patterns),
        auto_scaled=auto_scaled,
    )
