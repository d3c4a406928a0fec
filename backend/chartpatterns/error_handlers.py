"""
Chart Patterns — Exceptions & Failure Results

Typed exceptions for the engine and its data provider, plus the builders
that turn an exception into a structured ``EngineResult`` failure so every
failure follows the same schema.
"""

from __future__ import annotations

import traceback

import structlog
from pydantic import ValidationError

from chartpatterns.models import EngineError, EngineResult

log = structlog.get_logger(__name__)


class PatternEngineError(Exception):
    """Base class for all engine errors."""


class InsufficientDataError(PatternEngineError):
    """Raised by callers that require a minimum number of bars.

    The engine itself returns an empty success for short input.
    """

    def __init__(self, count: int, required: int):
        self.count = count
        self.required = required
        super().__init__(f"Need at least {required} bars, got {count}")


class BarProviderError(PatternEngineError):
    """Market-data retrieval failed."""

    def __init__(self, ticker: str, detail: str):
        self.ticker = ticker
        self.detail = detail
        super().__init__(f"{ticker}: {detail}")


def validation_error_result(exc: ValidationError) -> EngineResult:
    """Rejected detection options → ``invalid_config`` failure."""
    errors = []
    for err in exc.errors():
        errors.append(
            "{}: {}".format(" → ".join(str(loc) for loc in err.get("loc", [])), err.get("msg", ""))
        )

    log.warning("validation_error", errors=errors)

    return EngineResult(
        ok=False,
        error=EngineError(code="invalid_config", detail="; ".join(errors), status_code=422),
    )


def internal_error_result(exc: Exception) -> EngineResult:
    """Catch-all for unexpected exceptions → ``internal_error`` with safe details."""
    log.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        traceback=traceback.format_exc(),
    )

    return EngineResult(
        ok=False,
        error=EngineError(code="internal_error", detail=f"{type(exc).__name__}: {exc}", status_code=500),
    )
