# Shared utilities: formatters, retry
from chartpatterns.utils.formatters import (
    format_bar_time,
    format_pattern_label,
    format_pct,
    format_price,
)
from chartpatterns.utils.retry import with_retry

__all__ = [
    "format_bar_time",
    "format_pattern_label",
    "format_pct",
    "format_price",
    "with_retry",
]
