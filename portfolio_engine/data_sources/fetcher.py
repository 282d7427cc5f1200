"""Bounded parallel fan-out over the price-history provider.

One independent read per symbol, executed on a ThreadPoolExecutor whose size
caps how many requests hit the provider at once.  A shared RateLimiter
additionally throttles the request rate across worker threads.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import pandas as pd

from portfolio_engine.config import Defaults
from portfolio_engine.data_sources.base import PriceHistoryProvider
from portfolio_engine.utils.logger import setup_logger
from portfolio_engine.utils.rate_limiter import RateLimiter

logger = setup_logger("fetcher")


@dataclass
class FetchResult:
    """Price frames keyed by symbol, in request order."""

    frames: dict[str, pd.DataFrame] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    synthetic: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class PriceHistoryFetcher:
    """Fetch price histories for many symbols with bounded concurrency.

    Attributes:
        provider: Primary price-history provider.
        max_workers: Upper bound on concurrent provider reads.
        synthetic_provider: Optional fallback used only for symbols the
            primary provider returned nothing for.  Symbols served by it are
            reported in ``FetchResult.synthetic``.
    """

    def __init__(
        self,
        provider: PriceHistoryProvider,
        max_workers: int = Defaults.FETCH_MAX_WORKERS,
        rate_limiter: RateLimiter | None = None,
        synthetic_provider: PriceHistoryProvider | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.provider = provider
        self.max_workers = max_workers
        self.rate_limiter = rate_limiter
        self.synthetic_provider = synthetic_provider

    def _fetch_one(self, symbol: str, lookback_days: int) -> pd.DataFrame:
        if self.rate_limiter is not None:
            self.rate_limiter.wait()
        df = self.provider.get_price_history(symbol, lookback_days)
        return df if df is not None else pd.DataFrame()

    def fetch(self, symbols: list[str], lookback_days: int) -> FetchResult:
        """Fetch *lookback_days* of history for each symbol.

        Provider exceptions are caught per symbol and recorded in
        ``FetchResult.errors``; the symbol is then treated as missing.
        """
        result = FetchResult()
        if not symbols:
            return result

        fetched: dict[str, pd.DataFrame] = {}
        workers = min(self.max_workers, len(symbols))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_symbol = {
                executor.submit(self._fetch_one, s, lookback_days): s for s in symbols
            }
            for future in as_completed(future_to_symbol):
                symbol = future_to_symbol[future]
                try:
                    fetched[symbol] = future.result()
                except Exception as exc:
                    logger.warning("Price fetch failed for %s: %s", symbol, exc)
                    result.errors[symbol] = str(exc)
                    fetched[symbol] = pd.DataFrame()

        for symbol in symbols:
            df = fetched.get(symbol, pd.DataFrame())
            if df.empty and self.synthetic_provider is not None:
                logger.warning("Using synthetic price history for %s", symbol)
                df = self.synthetic_provider.get_price_history(symbol, lookback_days)
                result.synthetic.append(symbol)
            if df.empty:
                result.missing.append(symbol)
            result.frames[symbol] = df

        logger.info(
            "Fetched %d symbols (%d missing, %d synthetic) with %d workers",
            len(symbols), len(result.missing), len(result.synthetic), workers,
        )
        return result
