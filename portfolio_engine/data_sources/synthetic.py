"""Synthetic price histories for demos and for symbols with no real data.

Kept apart from the optimization core: the engine only consults this
provider when synthetic data is explicitly allowed, and every result built
from it carries ``DataQuality.synthetic_data = True``.
"""

from __future__ import annotations

import zlib

import numpy as np
import pandas as pd

from portfolio_engine.config import Defaults


class SyntheticPriceProvider:
    """Geometric Brownian motion prices, reproducible per (seed, symbol)."""

    is_synthetic = True

    def __init__(
        self,
        seed: int = Defaults.SYNTHETIC_SEED,
        start_price: float = 100.0,
        drift: float = 0.0004,
        volatility: float = 0.015,
        end: str | pd.Timestamp | None = None,
    ) -> None:
        self.seed = seed
        self.start_price = start_price
        self.drift = drift
        self.volatility = volatility
        self.end = pd.Timestamp(end) if end is not None else pd.Timestamp.today().normalize()

    def _rng(self, symbol: str) -> np.random.Generator:
        return np.random.default_rng(self.seed + zlib.crc32(symbol.encode()))

    def get_price_history(self, symbol: str, lookback_days: int = 252) -> pd.DataFrame:
        n = lookback_days + 1
        rng = self._rng(symbol)
        dates = pd.bdate_range(end=self.end, periods=n)
        log_returns = rng.normal(self.drift, self.volatility, n)
        log_returns[0] = 0.0
        close = self.start_price * np.exp(np.cumsum(log_returns))

        high = close * (1 + np.abs(rng.normal(0.002, 0.005, n)))
        low = close * (1 - np.abs(rng.normal(0.002, 0.005, n)))
        open_ = close * (1 + rng.normal(0, 0.003, n))
        volume = rng.integers(1_000_000, 10_000_000, n).astype(float)

        return pd.DataFrame(
            {"Open": open_, "High": high, "Low": low, "Close": close, "Volume": volume},
            index=dates,
        )

    def get_benchmark_returns(self, name: str, lookback_days: int = 252) -> pd.Series:
        df = self.get_price_history(name, lookback_days=lookback_days)
        return df["Close"].pct_change().dropna().rename(name)
