"""
Chart Patterns — Shared Formatters

Human-readable formatting for prices, percentages, pattern labels and
bar timestamps. Used by the engine summary, aftermath details and CLI.
"""

from __future__ import annotations

import math
from datetime import datetime


def format_pct(value: float | int, decimals: int = 2, show_sign: bool = True) -> str:
    """Format a value as a percentage with optional sign.

    >>> format_pct(12.345)
    '+12.35%'
    >>> format_pct(-3.1, decimals=1)
    '-3.1%'
    """
    if show_sign and value > 0:
        return f"+{value:.{decimals}f}%"
    return f"{value:.{decimals}f}%"


def format_price(value: float | int | None, decimals: int = 2) -> str:
    """Format a price, ``N/A`` for missing or NaN values.

    >>> format_price(1234.5)
    '1,234.50'
    >>> format_price(float('nan'))
    'N/A'
    """
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "N/A"
    return f"{value:,.{decimals}f}"


def format_pattern_label(pattern_type: str) -> str:
    """Title-case a pattern tag.

    >>> format_pattern_label('inverse_head_and_shoulders')
    'Inverse Head And Shoulders'
    """
    return " ".join(part.capitalize() for part in str(pattern_type).split("_"))


def format_bar_time(dt: datetime, intraday: bool = False) -> str:
    """Bar timestamp as a date, or date and time for intraday bars.

    >>> format_bar_time(datetime(2024, 3, 1, 14, 30))
    '2024-03-01'
    >>> format_bar_time(datetime(2024, 3, 1, 14, 30), intraday=True)
    '2024-03-01 14:30'
    """
    if intraday:
        return dt.strftime("%Y-%m-%d %H:%M")
    return dt.strftime("%Y-%m-%d")
