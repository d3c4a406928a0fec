# Market-data providers
from chartpatterns.data.yfinance_client import BarProvider, YFinanceClient

__all__ = ["BarProvider", "YFinanceClient"]
