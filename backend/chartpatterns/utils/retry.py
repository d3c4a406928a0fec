"""
Chart Patterns — Retry Decorator

Backoff for bar-provider downloads. yfinance surfaces dropped connections
and read timeouts as plain exceptions; those are retried a few times with
a growing, jittered pause. Anything else (bad ticker, parse errors) is
raised on the first attempt so the provider can report it.
"""

from __future__ import annotations

import functools
import random
import time
from typing import Any, Callable, Type

import requests
import structlog

log = structlog.get_logger(__name__)

TRANSIENT_ERRORS: tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    requests.ConnectionError,
    requests.Timeout,
)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[Type[Exception], ...] | None = None,
) -> Callable:
    """Retry a download on transient network errors.

    ``max_attempts`` counts the first call. The pause before attempt
    ``n + 1`` is ``base_delay * backoff_factor ** (n - 1)``, scaled by a
    random factor in [0.5, 1.5] when ``jitter`` is set and capped at
    ``max_delay``.

    Usage::

        class YFinanceClient:
            @with_retry(max_attempts=3, base_delay=1.0)
            def _history(self, ticker, period, interval):
                return yf.Ticker(ticker).history(period=period, interval=interval)
    """
    transient = retryable_exceptions or TRANSIENT_ERRORS

    def decorator(download: Callable) -> Callable:
        name = download.__qualname__

        @functools.wraps(download)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 1
            while True:
                try:
                    return download(*args, **kwargs)
                except transient as exc:
                    if attempt >= max_attempts:
                        log.error("provider.retry_exhausted", call=name, attempts=attempt, error=str(exc))
                        raise
                    pause = _compute_delay(attempt, base_delay, max_delay, backoff_factor, jitter)
                    log.warning(
                        "provider.retrying",
                        call=name,
                        attempt=attempt,
                        of=max_attempts,
                        pause_s=round(pause, 2),
                        error=str(exc),
                    )
                    time.sleep(pause)
                    attempt += 1

        return wrapper

    return decorator


def _compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_factor: float,
    jitter: bool,
) -> float:
    pause = base_delay * backoff_factor ** (attempt - 1)
    if jitter:
        pause *= random.uniform(0.5, 1.5)
    return min(pause, max_delay)
