#!/usr/bin/env python3
"""
Chart Patterns — Pattern Scanner

Fetches recent bars for one or more tickers through yfinance, runs the
detection engine and prints the JSON result (camelCase keys) to stdout.

Usage:
    python -m scripts.scan_patterns
    python -m scripts.scan_patterns --tickers AAPL MSFT --timeframe 1week --include-forming
    python -m scripts.scan_patterns --tickers SPY --patterns double_bottom triangle --current
"""

from __future__ import annotations

import argparse
import json
import sys

import structlog

from chartpatterns.config import get_settings
from chartpatterns.data.yfinance_client import YFinanceClient
from chartpatterns.engines.pattern_engine import PatternEngine, detect_patterns
from chartpatterns.error_handlers import BarProviderError
from chartpatterns.models import Timeframe

log = structlog.get_logger("scan_patterns")


def scan(tickers: list[str], timeframe: str, count: int, config: dict) -> dict:
    """Detect patterns per ticker.

    Returns:
        Dict keyed by ticker: the serialized ``EngineResult``, or an
        error payload when bars could not be fetched.
    """
    client = YFinanceClient()
    engine = PatternEngine()
    output = {}

    for i, ticker in enumerate(tickers, 1):
        log.info("scanning", ticker=ticker, progress=f"{i}/{len(tickers)}")
        try:
            bars = client.get_bars(ticker, timeframe, count)
        except BarProviderError as e:
            log.error("bars.unavailable", ticker=ticker, detail=e.detail)
            output[ticker] = {"ok": False, "error": {"error": True, "code": "provider_error", "detail": e.detail}}
            continue

        result = detect_patterns(bars, {**config, "timeframe": timeframe}, engine=engine)
        output[ticker] = result.model_dump(by_alias=True, mode="json", exclude_none=True)

    return output


def main():
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Detect chart patterns on recent price history")
    parser.add_argument(
        "--tickers",
        nargs="+",
        default=[settings.default_ticker],
        help=f"Ticker symbols to scan (default: {settings.default_ticker})",
    )
    parser.add_argument(
        "--timeframe",
        default=Timeframe.DAY1.value,
        choices=[t.value for t in Timeframe],
        help="Candle timeframe (default: 1day)",
    )
    parser.add_argument("--count", type=int, default=settings.default_bar_count, help="Number of bars to fetch")
    parser.add_argument("--patterns", nargs="*", default=[], help="Pattern types to run (default: all)")
    parser.add_argument("--tolerance", type=float, default=None, help="Price-equality tolerance, e.g. 0.03")
    parser.add_argument("--include-forming", action="store_true", help="Include forming patterns")
    parser.add_argument("--include-invalid", action="store_true", help="Include invalidated patterns")
    parser.add_argument("--current", action="store_true", help="Only patterns ending near the last bar")
    parser.add_argument("--no-debug", action="store_true", help="Drop the debug block from the output")
    args = parser.parse_args()

    config = {
        "patterns": args.patterns,
        "include_forming": args.include_forming,
        "include_invalid": args.include_invalid,
        "require_current_in_pattern": args.current,
    }
    if args.tolerance is not None:
        config["tolerance_pct"] = args.tolerance

    log.info("starting", tickers=len(args.tickers), timeframe=args.timeframe, count=args.count)
    output = scan(args.tickers, args.timeframe, args.count, config)

    if args.no_debug:
        for payload in output.values():
            payload.get("result", {}).pop("debug", None)

    json.dump(output, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")

    failed = sum(1 for payload in output.values() if not payload.get("ok"))
    log.info("complete", scanned=len(output), failed=failed)
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
