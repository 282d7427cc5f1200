"""YAML-backed holdings provider (portfolios listed in configs/portfolios.yaml)."""

from __future__ import annotations

from pathlib import Path

import yaml

from portfolio_engine.config import Paths
from portfolio_engine.data_sources.base import Holding, PortfolioSnapshot
from portfolio_engine.errors import InsufficientData
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("holdings")


class YamlHoldingsProvider:
    """Serve portfolio snapshots from a YAML file.

    File layout::

        portfolios:
          <portfolio_id>:
            total_value: 100000        # optional
            holdings:
              - {symbol: AAPL, quantity: 10, average_cost: 150.0, sector: Technology}
    """

    def __init__(self, path: Path | str = Paths.PORTFOLIOS) -> None:
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            logger.warning("Portfolio file not found: %s", self.path)
            return {}
        with open(self.path) as f:
            return (yaml.safe_load(f) or {}).get("portfolios", {}) or {}

    def list_portfolios(self) -> list[str]:
        return list(self._load().keys())

    def get_portfolio(self, portfolio_id: str) -> PortfolioSnapshot:
        conf = self._load().get(portfolio_id)
        if conf is None:
            raise KeyError(f"Unknown portfolio '{portfolio_id}' in {self.path}")

        holdings = tuple(
            Holding(
                symbol=str(h["symbol"]),
                quantity=float(h["quantity"]),
                average_cost=float(h["average_cost"]),
                sector=h.get("sector"),
            )
            for h in conf.get("holdings", [])
        )
        if not holdings:
            raise InsufficientData(f"Portfolio '{portfolio_id}' has no holdings")

        total_value = conf.get("total_value")
        if total_value is None:
            total_value = sum(h.cost_basis for h in holdings)
        return PortfolioSnapshot(
            holdings=holdings, total_value=float(total_value), portfolio_id=portfolio_id,
        )
