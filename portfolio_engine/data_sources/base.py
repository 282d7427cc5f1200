"""Holdings value objects and the provider interfaces the engine consumes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import pandas as pd


@dataclass(frozen=True)
class Holding:
    """A single position as reported by the holdings provider."""

    symbol: str
    quantity: float
    average_cost: float
    sector: str | None = None

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.average_cost


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Current positions plus the portfolio's total value.

    The order of ``holdings`` is the stable symbol ordering used by every
    matrix computed for this portfolio within one call.
    """

    holdings: tuple[Holding, ...]
    total_value: float
    portfolio_id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "holdings", tuple(self.holdings))
        symbols = [h.symbol for h in self.holdings]
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"Duplicate symbols in holdings: {symbols}")

    @property
    def symbols(self) -> list[str]:
        return [h.symbol for h in self.holdings]

    def __len__(self) -> int:
        return len(self.holdings)


@runtime_checkable
class PriceHistoryProvider(Protocol):
    """Returns an ascending OHLCV frame (DatetimeIndex, ``Close`` column).

    Must return an empty DataFrame, not raise, when a symbol has no history.
    """

    def get_price_history(self, symbol: str, lookback_days: int) -> pd.DataFrame:
        ...


@runtime_checkable
class HoldingsProvider(Protocol):
    def get_portfolio(self, portfolio_id: str) -> PortfolioSnapshot:
        ...


@runtime_checkable
class BenchmarkProvider(Protocol):
    """Returns daily returns for a named index (empty Series if unavailable)."""

    def get_benchmark_returns(self, name: str, lookback_days: int) -> pd.Series:
        ...
