"""Data source modules: provider interfaces and their implementations."""

from .base import (
    BenchmarkProvider,
    Holding,
    HoldingsProvider,
    PortfolioSnapshot,
    PriceHistoryProvider,
)
from .fetcher import FetchResult, PriceHistoryFetcher
from .holdings import YamlHoldingsProvider
from .market_data import MarketDataClient
from .synthetic import SyntheticPriceProvider
