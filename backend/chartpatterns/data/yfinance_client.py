"""
Chart Patterns — yfinance Bar Provider

Free OHLC history source for the detection engine. Wraps yfinance and
delivers ``Bar`` models in ascending timestamp order. Timeframes yfinance
does not serve natively (4h / 8h / 12h) are resampled from hourly bars.
"""

from __future__ import annotations

from typing import Protocol

import pandas as pd
import structlog
import yfinance as yf

from chartpatterns.config import get_timeframe_profile
from chartpatterns.error_handlers import BarProviderError
from chartpatterns.models import Bar, Timeframe
from chartpatterns.utils.retry import with_retry

log = structlog.get_logger(__name__)


class BarProvider(Protocol):
    """Anything that can hand the engine an ordered bar sequence."""

    def get_bars(self, ticker: str, timeframe: str, count: int) -> list[Bar]:
        ...


# yfinance interval, resample rule (None = native), max lookback in days
_INTERVALS: dict[str, tuple[str, str | None, int | None]] = {
    Timeframe.MIN1.value: ("1m", None, 7),
    Timeframe.MIN5.value: ("5m", None, 60),
    Timeframe.MIN15.value: ("15m", None, 60),
    Timeframe.MIN30.value: ("30m", None, 60),
    Timeframe.HOUR1.value: ("1h", None, 730),
    Timeframe.HOUR4.value: ("1h", "4h", 730),
    Timeframe.HOUR8.value: ("1h", "8h", 730),
    Timeframe.HOUR12.value: ("1h", "12h", 730),
    Timeframe.DAY1.value: ("1d", None, None),
    Timeframe.WEEK1.value: ("1wk", None, None),
    Timeframe.MONTH1.value: ("1mo", None, None),
}

# Calendar days per trading day, plus slack for holidays
_CALENDAR_FACTOR = 1.5

_OHLC_AGG = {"Open": "first", "High": "max", "Low": "min", "Close": "last", "Volume": "sum"}


def lookback_period(timeframe: str, count: int) -> str:
    """yfinance ``period`` string covering ``count`` bars of ``timeframe``.

    >>> lookback_period("1day", 250)
    '375d'
    >>> lookback_period("1min", 5000)
    '7d'
    """
    _, _, cap = _INTERVALS[timeframe]
    bars_per_day = get_timeframe_profile(timeframe).bars_per_day
    # intraday profiles count 24h days, the market trades ~6.5h
    if bars_per_day > 1:
        bars_per_day = max(1.0, bars_per_day * 6.5 / 24)
    days = max(5, int(round(count / bars_per_day * _CALENDAR_FACTOR)))
    if cap is not None:
        days = min(days, cap)
    return f"{days}d"


class YFinanceClient:
    """yfinance-backed ``BarProvider``.

    Usage:
        bars = YFinanceClient().get_bars("SPY", "1day", 250)
    """

    def get_bars(self, ticker: str, timeframe: str = Timeframe.DAY1.value, count: int = 250) -> list[Bar]:
        """Latest ``count`` bars for ``ticker``, oldest first.

        Raises:
            BarProviderError: unsupported timeframe, download failure or no data.
        """
        timeframe = str(getattr(timeframe, "value", timeframe))
        if timeframe not in _INTERVALS:
            raise BarProviderError(ticker, f"unsupported timeframe '{timeframe}'")
        interval, resample_rule, _ = _INTERVALS[timeframe]
        period = lookback_period(timeframe, count)

        try:
            df = self._history(ticker, period, interval)
        except Exception as e:
            log.warning("yfinance.history_failed", ticker=ticker, interval=interval, error=str(e))
            raise BarProviderError(ticker, f"history download failed: {e}") from e

        if df is None or df.empty:
            log.warning("yfinance.no_data", ticker=ticker, period=period, interval=interval)
            raise BarProviderError(ticker, "no price history returned")

        if resample_rule:
            df = resample_ohlc(df, resample_rule)

        bars = frame_to_bars(df)[-count:]
        log.info("yfinance.bars", ticker=ticker.upper(), timeframe=timeframe, count=len(bars))
        return bars

    @with_retry(max_attempts=3, base_delay=1.0)
    def _history(self, ticker: str, period: str, interval: str) -> pd.DataFrame:
        t = yf.Ticker(ticker)
        return t.history(period=period, interval=interval)


def resample_ohlc(df: pd.DataFrame, rule: str) -> pd.DataFrame:
    """Aggregate a finer OHLCV frame into ``rule`` buckets, dropping empty ones."""
    agg = {col: how for col, how in _OHLC_AGG.items() if col in df.columns}
    return df.resample(rule).agg(agg).dropna(subset=["Open", "High", "Low", "Close"])


def frame_to_bars(df: pd.DataFrame) -> list[Bar]:
    """yfinance history frame → ``Bar`` list, skipping rows without prices."""
    bars = []
    for idx, row in df.sort_index().iterrows():
        if pd.isna(row["Open"]) or pd.isna(row["High"]) or pd.isna(row["Low"]) or pd.isna(row["Close"]):
            continue
        volume = row["Volume"] if "Volume" in row and not pd.isna(row["Volume"]) else 0.0
        bars.append(
            Bar(
                timestamp=idx.to_pydatetime(),
                open=round(float(row["Open"]), 4),
                high=round(float(row["High"]), 4),
                low=round(float(row["Low"]), 4),
                close=round(float(row["Close"]), 4),
                volume=float(volume),
            )
        )
    return bars
