"""Rebalancing: current vs target weights into whole-unit trades and costs."""

from __future__ import annotations

import math
from typing import Mapping

from portfolio_engine.analysis.models import (
    Action,
    RebalanceAction,
    RebalancePlan,
    TradingCostEstimate,
)
from portfolio_engine.config import Defaults
from portfolio_engine.data_sources.base import PortfolioSnapshot
from portfolio_engine.errors import InvalidAllocationTargets
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("rebalance")

TARGET_SUM_TOL = 1e-4


def validate_targets(target_weights: Mapping[str, float]) -> None:
    """Raise ``InvalidAllocationTargets`` unless targets are >= 0 and sum to ~1."""
    if not target_weights:
        raise InvalidAllocationTargets("No target weights supplied")
    negative = [s for s, w in target_weights.items() if w < 0]
    if negative:
        raise InvalidAllocationTargets(f"Negative target weights for: {', '.join(negative)}")
    total = float(sum(target_weights.values()))
    if abs(total - 1.0) > TARGET_SUM_TOL:
        raise InvalidAllocationTargets(
            f"Target weights sum to {total:.6f}, expected 1.0 (tolerance {TARGET_SUM_TOL})"
        )


def current_weights(snapshot: PortfolioSnapshot, prices: Mapping[str, float]) -> dict[str, float]:
    """Market-value weight of each holding relative to the portfolio total value.

    A holding without a positive price is valued at its average cost.
    """
    if snapshot.total_value <= 0:
        return {h.symbol: 0.0 for h in snapshot.holdings}
    weights = {}
    for h in snapshot.holdings:
        price = prices.get(h.symbol) or 0.0
        value = h.quantity * (price if price > 0 else h.average_cost)
        weights[h.symbol] = value / snapshot.total_value
    return weights


class RebalancePlanner:
    """Diff current against target weights and size the resulting trades.

    Costs follow ``fixed + variable_rate * turnover + impact_rate * turnover``
    where turnover is the sum of absolute dollar deltas across all assets.
    """

    def __init__(
        self,
        threshold: float = Defaults.REBALANCE_THRESHOLD,
        fixed_cost: float = Defaults.FIXED_COST,
        variable_cost_rate: float = Defaults.VARIABLE_COST_RATE,
        market_impact_rate: float = Defaults.MARKET_IMPACT_RATE,
    ) -> None:
        self.threshold = threshold
        self.fixed_cost = fixed_cost
        self.variable_cost_rate = variable_cost_rate
        self.market_impact_rate = market_impact_rate

    def estimate_costs(self, turnover_value: float) -> TradingCostEstimate:
        fees = self.fixed_cost + self.variable_cost_rate * turnover_value
        impact = self.market_impact_rate * turnover_value
        return TradingCostEstimate(
            trading_fees=fees,
            market_impact=impact,
            total_cost=fees + impact,
            turnover_value=turnover_value,
        )

    def plan(
        self,
        current: Mapping[str, float],
        targets: Mapping[str, float],
        total_value: float,
        prices: Mapping[str, float],
        quantities: Mapping[str, float] | None = None,
        threshold: float | None = None,
    ) -> RebalancePlan:
        """Build the rebalance plan.

        Args:
            current: Current weight per symbol.
            targets: Target weight per symbol; must sum to 1 within 1e-4.
                Held symbols missing here are targeted at 0.
            total_value: Portfolio value the weights refer to.
            prices: Latest price per symbol, used for whole-unit quantities.
            quantities: Optional current share counts, carried into the
                actions for reference.
            threshold: Overrides the planner's HOLD threshold.

        Returns:
            RebalancePlan with one action per symbol (held symbols first, in
            their given order, then target-only symbols).
        """
        validate_targets(targets)
        threshold = self.threshold if threshold is None else threshold
        quantities = quantities or {}

        symbols = list(current.keys()) + [s for s in targets if s not in current]
        actions = []
        turnover = 0.0
        for sym in symbols:
            cur = float(current.get(sym, 0.0))
            tgt = float(targets.get(sym, 0.0))
            delta = tgt - cur
            dollar = delta * total_value
            turnover += abs(dollar)

            if abs(delta) <= threshold:
                action = Action.HOLD
            else:
                action = Action.BUY if delta > 0 else Action.SELL

            price = float(prices.get(sym) or 0.0)
            if action is not Action.HOLD and price > 0:
                quantity = math.floor(abs(dollar) / price)
            else:
                quantity = 0
            target_quantity = tgt * total_value / price if price > 0 else 0.0

            actions.append(RebalanceAction(
                symbol=sym,
                current_weight=cur,
                target_weight=tgt,
                weight_delta=delta,
                action=action,
                quantity=quantity,
                amount=abs(dollar),
                price=price,
                current_quantity=float(quantities.get(sym, 0.0)),
                target_quantity=target_quantity,
            ))

        needed = any(a.action is not Action.HOLD for a in actions)
        costs = self.estimate_costs(turnover) if needed else TradingCostEstimate()
        logger.info(
            "Rebalance plan: %d trades of %d symbols, turnover %.2f, est. cost %.2f",
            sum(a.action is not Action.HOLD for a in actions), len(actions),
            turnover, costs.total_cost,
        )
        return RebalancePlan(actions=tuple(actions), estimated_costs=costs, rebalancing_needed=needed)
