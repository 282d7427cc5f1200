"""Shared pytest fixtures for the portfolio engine test suite.

Provides synthetic price data with fixed random seeds for reproducibility
and in-memory providers, so no fixture touches an external API.
"""

import numpy as np
import pandas as pd
import pytest

from portfolio_engine.data_sources.base import Holding, PortfolioSnapshot
from portfolio_engine.engine import PortfolioEngine
from portfolio_engine.utils.rate_limiter import RateLimiter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_returns_df(
    tickers=("AAA", "BBB", "CCC"),
    n=120,
    means=(0.0006, 0.0004, 0.0002),
    stds=(0.010, 0.015, 0.020),
    corr=0.3,
    seed=42,
):
    """Daily returns with controlled correlation (Cholesky of a flat matrix)."""
    np.random.seed(seed)
    k = len(tickers)
    C = np.full((k, k), corr)
    np.fill_diagonal(C, 1.0)
    L = np.linalg.cholesky(C)
    z = np.random.randn(n, k) @ L.T
    raw = z * np.asarray(stds) + np.asarray(means)
    dates = pd.bdate_range(start="2024-01-02", periods=n)
    return pd.DataFrame(raw, index=dates, columns=list(tickers))


def price_frame(returns: pd.Series, start: float = 100.0) -> pd.DataFrame:
    """OHLCV frame whose closes reproduce *returns* exactly (one extra row)."""
    first = returns.index[0] - pd.tseries.offsets.BDay(1)
    close = pd.concat([
        pd.Series([start], index=[first]),
        start * (1 + returns).cumprod(),
    ])
    return pd.DataFrame({
        "Open": close, "High": close * 1.01, "Low": close * 0.99,
        "Close": close, "Volume": np.ones(len(close)) * 1e6,
    })


class FakePriceProvider:
    """In-memory price and benchmark provider recording every request."""

    def __init__(self, frames: dict, benchmarks: dict | None = None):
        self.frames = frames
        self.benchmarks = benchmarks or {}
        self.calls = []

    def get_price_history(self, symbol, lookback_days=252):
        self.calls.append((symbol, lookback_days))
        df = self.frames.get(symbol)
        if df is None:
            return pd.DataFrame()
        return df.tail(lookback_days + 1)

    def get_benchmark_returns(self, name, lookback_days=252):
        s = self.benchmarks.get(name)
        if s is None:
            return pd.Series(dtype=float, name=name)
        return s.tail(lookback_days)


class FakeHoldingsProvider:
    def __init__(self, portfolios: dict):
        self.portfolios = portfolios

    def get_portfolio(self, portfolio_id):
        return self.portfolios[portfolio_id]


# ---------------------------------------------------------------------------
# Matrix fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cov3():
    """Well-conditioned 3x3 covariance, asset 1 lowest variance."""
    return np.array([
        [0.04, 0.02, 0.01],
        [0.02, 0.09, 0.015],
        [0.01, 0.015, 0.16],
    ])


@pytest.fixture
def mu3():
    return np.array([0.06, 0.10, 0.14])


# ---------------------------------------------------------------------------
# Price / portfolio fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def returns_df():
    return make_returns_df()


@pytest.fixture
def price_frames(returns_df):
    return {sym: price_frame(returns_df[sym]) for sym in returns_df.columns}


@pytest.fixture
def benchmark_returns(returns_df):
    np.random.seed(7)
    noise = np.random.normal(0, 0.004, len(returns_df))
    return (returns_df.mean(axis=1) + noise).rename("BENCH")


@pytest.fixture
def snapshot(price_frames):
    """Three holdings; AAA deliberately overweight at current prices."""
    quantities = {"AAA": 60, "BBB": 25, "CCC": 15}
    holdings = tuple(
        Holding(symbol=s, quantity=q, average_cost=90.0, sector=sec)
        for (s, q), sec in zip(quantities.items(), ("Technology", "Healthcare", "Energy"))
    )
    total = sum(q * float(price_frames[s]["Close"].iloc[-1]) for s, q in quantities.items())
    return PortfolioSnapshot(holdings=holdings, total_value=total, portfolio_id="test")


@pytest.fixture
def price_provider(price_frames, benchmark_returns):
    return FakePriceProvider(price_frames, benchmarks={"BENCH": benchmark_returns})


@pytest.fixture
def engine(price_provider, snapshot):
    return PortfolioEngine(
        price_provider=price_provider,
        holdings_provider=FakeHoldingsProvider({"test": snapshot}),
        cache=None,
        max_workers=4,
        rate_limiter=RateLimiter(calls_per_minute=100_000),
    )


@pytest.fixture
def fake_provider_cls():
    return FakePriceProvider


@pytest.fixture
def fake_holdings_cls():
    return FakeHoldingsProvider
