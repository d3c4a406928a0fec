"""
Chart Patterns — Observability

Lightweight timing spans for the detection pipeline. Each classifier run
is wrapped in a span so slow families show up in the structured log.

Usage:
    with trace_span("classifier.triangles", tags=["triangle"]):
        entries = classifier.run(ctx)
"""

from __future__ import annotations

import functools
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

import structlog

from chartpatterns.config import get_settings

logger = structlog.get_logger(__name__)


@contextmanager
def trace_span(
    name: str,
    metadata: Optional[dict] = None,
    tags: Optional[list[str]] = None,
):
    """Context manager timing a code block.

    Args:
        name: Name of the span (e.g., "pattern_engine.detect").
        metadata: Optional key/values added to the log events.
        tags: Optional tags for filtering.
    """
    start = time.perf_counter()
    extra = {"span_name": name, **(metadata or {})}
    if tags:
        extra["tags"] = tags

    logger.debug("trace_span_start", **extra)
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        logger.debug("trace_span_end", elapsed_ms=round(elapsed * 1000, 2), **extra)
        if elapsed > get_settings().slow_span_seconds:
            logger.warning("trace_span_slow", elapsed_s=round(elapsed, 2), **extra)


def traced(name: Optional[str] = None, tags: Optional[list[str]] = None):
    """Decorator to time a function as a span.

    Usage:
        @traced("context.build_context")
        def build_context(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name, tags=tags):
                return func(*args, **kwargs)

        return wrapper

    return decorator
