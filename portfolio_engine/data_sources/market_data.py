"""Market data client - OHLCV price history and benchmark returns.

Backed by yfinance.  Implements both the price-history and the benchmark
provider interfaces; any failure degrades to an empty frame so the engine can
flag the symbol instead of crashing.
"""

from __future__ import annotations

import pandas as pd
import yfinance as yf

from portfolio_engine.utils.cache import TTLCache
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("market_data")

# yfinance period → approximate number of trading days it covers
_PERIOD_TRADING_DAYS = [
    ("1mo", 21), ("3mo", 63), ("6mo", 126), ("1y", 252),
    ("2y", 504), ("5y", 1260), ("10y", 2520), ("max", 10**9),
]

_OHLCV = ["Open", "High", "Low", "Close", "Volume"]


def _period_for(lookback_days: int) -> str:
    """Smallest yfinance period holding *lookback_days* returns (+1 price)."""
    needed = lookback_days + 1
    for period, days in _PERIOD_TRADING_DAYS:
        if days >= needed:
            return period
    return "max"


def _normalize_history(df: pd.DataFrame) -> pd.DataFrame:
    """Ascending tz-naive index, positive closes only, de-duplicated dates."""
    if df is None or df.empty or "Close" not in df.columns:
        return pd.DataFrame(columns=_OHLCV)
    df = df[[c for c in _OHLCV if c in df.columns]].copy()
    index = pd.DatetimeIndex(df.index)
    if index.tz is not None:
        index = index.tz_localize(None)
    df.index = index.normalize()
    df = df[~df.index.duplicated(keep="last")].sort_index()
    df = df[pd.to_numeric(df["Close"], errors="coerce") > 0]
    return df


class MarketDataClient:
    """Fetch historical market data for portfolio statistics."""

    def __init__(self, cache: TTLCache | None = None) -> None:
        self.cache = cache

    def get_price_history(self, symbol: str, lookback_days: int = 252) -> pd.DataFrame:
        """Get OHLCV price history covering *lookback_days* daily returns.

        Args:
            symbol: Ticker symbol (e.g. "AAPL", "7203.T").
            lookback_days: Number of trading-day returns wanted; one extra
                price row is kept so the first return is defined.

        Returns:
            Ascending OHLCV DataFrame, empty when no history is available.
        """
        cache_key = ("history", symbol, lookback_days)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache hit: %s", cache_key)
                return cached

        period = _period_for(lookback_days)
        logger.info("Fetching price history: %s (period=%s)", symbol, period)
        try:
            raw = yf.Ticker(symbol).history(period=period, interval="1d")
        except Exception as e:
            logger.warning("yfinance history failed for %s: %s", symbol, e)
            raw = pd.DataFrame()

        df = _normalize_history(raw).tail(lookback_days + 1)
        if df.empty:
            logger.warning("No price history for %s", symbol)
        elif self.cache is not None:
            self.cache.set(cache_key, df)
        return df

    def get_latest_price(self, symbol: str) -> float | None:
        """Latest close from a short history window, None if unavailable."""
        df = self.get_price_history(symbol, lookback_days=5)
        if df.empty:
            return None
        return float(df["Close"].iloc[-1])

    def get_benchmark_returns(self, name: str, lookback_days: int = 252) -> pd.Series:
        """Daily simple returns of a benchmark index or ETF."""
        df = self.get_price_history(name, lookback_days=lookback_days)
        if df.empty:
            return pd.Series(dtype=float, name=name)
        return df["Close"].pct_change().dropna().rename(name)
