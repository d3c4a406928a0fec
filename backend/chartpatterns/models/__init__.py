"""
Chart Patterns — Pydantic Models

All I/O schemas for the detection engine. Classifiers build these,
the deduplication and aftermath stages annotate them, and callers
serialize them with ``model_dump(by_alias=True)``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _Schema(BaseModel):
    """Base for every output schema: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Timeframe(str, Enum):
    """Supported candle timeframes."""
    MIN1 = "1min"
    MIN5 = "5min"
    MIN15 = "15min"
    MIN30 = "30min"
    HOUR1 = "1hour"
    HOUR4 = "4hour"
    HOUR8 = "8hour"
    HOUR12 = "12hour"
    DAY1 = "1day"
    WEEK1 = "1week"
    MONTH1 = "1month"


class PivotKind(str, Enum):
    """Swing point kind."""
    PEAK = "peak"
    VALLEY = "valley"


class PatternType(str, Enum):
    """Fixed chart-pattern taxonomy."""
    DOUBLE_TOP = "double_top"
    DOUBLE_BOTTOM = "double_bottom"
    HEAD_AND_SHOULDERS = "head_and_shoulders"
    INVERSE_HEAD_AND_SHOULDERS = "inverse_head_and_shoulders"
    TRIANGLE_ASCENDING = "triangle_ascending"
    TRIANGLE_DESCENDING = "triangle_descending"
    TRIANGLE_SYMMETRICAL = "triangle_symmetrical"
    RISING_WEDGE = "rising_wedge"
    FALLING_WEDGE = "falling_wedge"
    FLAG = "flag"
    PENNANT = "pennant"
    TRIPLE_TOP = "triple_top"
    TRIPLE_BOTTOM = "triple_bottom"


TRIANGLE_TYPES = (
    PatternType.TRIANGLE_ASCENDING,
    PatternType.TRIANGLE_DESCENDING,
    PatternType.TRIANGLE_SYMMETRICAL,
)


class PatternStatus(str, Enum):
    """Lifecycle status of a detected pattern."""
    COMPLETED = "completed"
    INVALID = "invalid"
    FORMING = "forming"
    NEAR_COMPLETION = "near_completion"


class BreakoutDirection(str, Enum):
    UP = "up"
    DOWN = "down"


class PatternOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# ──────────────────────────────────────────────
# Market Data Models
# ──────────────────────────────────────────────

class Bar(BaseModel):
    """Single OHLC bar. Read-only once fetched."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class SwingPoint(_Schema):
    """A local extremum used as a structural anchor."""

    model_config = ConfigDict(frozen=True)

    index: int
    price: float
    kind: PivotKind
    date: Optional[datetime] = None


# ──────────────────────────────────────────────
# Pattern Geometry
# ──────────────────────────────────────────────

class PatternRange(_Schema):
    start: datetime
    end: datetime


class NecklinePoint(_Schema):
    """One end of a two-point neckline / boundary line."""
    index: int
    price: float
    date: Optional[datetime] = None


class PriceMove(_Schema):
    """Close-to-close return plus the extremes over a fixed horizon."""
    return_pct: float = Field(alias="return")
    high: float
    low: float


class Aftermath(_Schema):
    """What price did after the pattern ended."""
    breakout_date: Optional[datetime] = None
    breakout_confirmed: bool = False
    days3: Optional[PriceMove] = None
    days7: Optional[PriceMove] = None
    days14: Optional[PriceMove] = None
    target_reached: bool = False
    theoretical_target: Optional[float] = None
    days_to_target: Optional[int] = None
    outcome: str
    outcome_detail: str = ""


# ──────────────────────────────────────────────
# Family Payloads (tagged union on ``family``)
# ──────────────────────────────────────────────

class DoubleDetails(_Schema):
    family: Literal["double"] = "double"
    height: float
    extreme_diff_pct: float


class HeadShouldersDetails(_Schema):
    family: Literal["head_shoulders"] = "head_shoulders"
    head_price: float
    shoulder_diff_pct: float
    provisional: bool = False


class TriangleDetails(_Schema):
    family: Literal["triangle"] = "triangle"
    upper_slope: float
    lower_slope: float
    upper_fit: float
    lower_fit: float
    convergence_ratio: float
    min_fit: float


class WedgeDetails(_Schema):
    family: Literal["wedge"] = "wedge"
    upper_slope: float
    lower_slope: float
    upper_r2: Optional[float] = None
    lower_r2: Optional[float] = None
    convergence_ratio: float
    apex_index: Optional[int] = None
    bars_to_apex: Optional[int] = None
    upper_touches: int = 0
    lower_touches: int = 0
    containment: float = 0.0
    score: float = 0.0
    smoothed: bool = False
    method: str = "regression"


class FlagDetails(_Schema):
    family: Literal["flag"] = "flag"
    pole_start_index: int
    pole_end_index: int
    pole_atr_multiple: float
    channel_slope: float
    convergence_ratio: float
    upper_r2: float
    lower_r2: float


class PennantDetails(_Schema):
    family: Literal["pennant"] = "pennant"
    pole_start_index: int
    pole_end_index: int
    pole_atr_multiple: float
    convergence_ratio: float
    upper_r2: float
    lower_r2: float


class TripleDetails(_Schema):
    family: Literal["triple"] = "triple"
    spread_pct: float
    neckline_slope_pct: Optional[float] = None


PatternDetails = Annotated[
    Union[
        DoubleDetails,
        HeadShouldersDetails,
        TriangleDetails,
        WedgeDetails,
        FlagDetails,
        PennantDetails,
        TripleDetails,
    ],
    Field(discriminator="family"),
]


class PatternEntry(_Schema):
    """Central output record: common envelope plus a family payload."""

    type: PatternType
    confidence: float = Field(ge=0.0, le=1.0)
    range: PatternRange
    start_index: int
    end_index: int
    status: PatternStatus = PatternStatus.COMPLETED
    pivots: list[SwingPoint] = Field(default_factory=list)
    neckline: Optional[list[NecklinePoint]] = None
    breakout_direction: Optional[BreakoutDirection] = None
    breakout_index: Optional[int] = None
    breakout_date: Optional[datetime] = None
    breakout_target: Optional[float] = None
    target_method: Optional[str] = None
    outcome: Optional[PatternOutcome] = None
    completion_pct: Optional[int] = None
    apex_date: Optional[datetime] = None
    days_to_apex: Optional[int] = None
    pole_direction: Optional[BreakoutDirection] = None
    flagpole_height: Optional[float] = None
    retracement_ratio: Optional[float] = None
    fallback: Optional[str] = None
    timeframe: Optional[str] = None
    aftermath: Optional[Aftermath] = None
    details: Optional[PatternDetails] = None

    @field_validator("neckline")
    @classmethod
    def _two_point_neckline(cls, v: Optional[list[NecklinePoint]]):
        if v is None:
            return v
        if len(v) != 2:
            raise ValueError("neckline must have exactly two points")
        if v[1].index < v[0].index:
            raise ValueError("neckline points must have non-decreasing index")
        return v

    @model_validator(mode="after")
    def _ordered_range(self):
        if self.end_index <= self.start_index:
            raise ValueError("pattern end must come after its start")
        return self

    @property
    def height(self) -> float:
        """Extreme-to-neckline height of double patterns, 0 for others."""
        if isinstance(self.details, DoubleDetails):
            return self.details.height
        return 0.0


# ──────────────────────────────────────────────
# Debug / Audit Records
# ──────────────────────────────────────────────

class CandidatePoint(_Schema):
    role: str
    index: int
    price: float
    date: Optional[datetime] = None


class DebugCandidate(_Schema):
    """Audit record of one candidate shape, accepted or rejected."""
    type: str
    accepted: bool
    reason: Optional[str] = None
    indices: list[int] = Field(default_factory=list)
    points: list[CandidatePoint] = Field(default_factory=list)
    details: Optional[dict[str, Any]] = None


# ──────────────────────────────────────────────
# Detection Request / Response
# ──────────────────────────────────────────────

_PATTERN_NAMES = {t.value for t in PatternType}


class DetectionConfig(_Schema):
    """Per-call detection options. Unset numeric fields scale with the timeframe."""

    timeframe: Timeframe = Timeframe.DAY1
    swing_depth: Optional[int] = Field(default=None, ge=1, le=50)
    tolerance_pct: Optional[float] = Field(default=None, gt=0.0, lt=1.0)
    min_bars_between_swings: Optional[int] = Field(default=None, ge=1, le=100)
    strict_pivots: bool = True
    patterns: list[str] = Field(default_factory=list)
    include_forming: bool = False
    include_completed: bool = True
    include_invalid: bool = False
    require_current_in_pattern: bool = False
    current_relevance_days: Optional[int] = Field(default=None, ge=0)
    smoothing: bool = True

    @field_validator("patterns")
    @classmethod
    def _expand_pattern_names(cls, v: list[str]) -> list[str]:
        names: list[str] = []
        for raw in v:
            name = raw.strip().lower()
            if name == "triangle":
                names.extend(t.value for t in TRIANGLE_TYPES)
                continue
            if name not in _PATTERN_NAMES:
                raise ValueError(f"Unknown pattern type '{raw}'")
            names.append(name)
        return sorted(set(names))


class TypeStatistics(_Schema):
    detected: int = 0
    with_aftermath: int = 0
    success_rate: Optional[float] = None
    avg_return7d: Optional[float] = Field(default=None, alias="avgReturn7d")
    avg_return14d: Optional[float] = Field(default=None, alias="avgReturn14d")
    median_return7d: Optional[float] = Field(default=None, alias="medianReturn7d")


class OverlayRange(_Schema):
    start: datetime
    end: datetime
    label: str


class Overlays(_Schema):
    ranges: list[OverlayRange] = Field(default_factory=list)


class DetectionWarning(_Schema):
    type: str
    message: str
    suggested_params: Optional[dict[str, Any]] = None


class DetectionDebug(_Schema):
    swings: list[SwingPoint] = Field(default_factory=list)
    candidates: list[DebugCandidate] = Field(default_factory=list)


class DetectionResult(_Schema):
    """Successful engine output (possibly with zero patterns)."""
    patterns: list[PatternEntry] = Field(default_factory=list)
    overlays: Overlays = Field(default_factory=Overlays)
    statistics: dict[str, TypeStatistics] = Field(default_factory=dict)
    warnings: list[DetectionWarning] = Field(default_factory=list)
    debug: DetectionDebug = Field(default_factory=DetectionDebug)
    summary: str = ""
    effective_params: dict[str, Any] = Field(default_factory=dict)


class EngineError(_Schema):
    """Structured failure payload."""
    error: bool = True
    code: str
    detail: str
    status_code: int = 500


class EngineResult(_Schema):
    """Envelope that separates "found nothing" from "failed to run"."""
    ok: bool
    result: Optional[DetectionResult] = None
    error: Optional[EngineError] = None
