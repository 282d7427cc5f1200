"""Value objects produced and consumed by the analysis modules.

Every result is a frozen dataclass; ``to_dict()`` renders a JSON-serializable
audit record with floats rounded to 6 decimals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import numpy as np
import pandas as pd

from portfolio_engine.config import Defaults
from portfolio_engine.errors import InfeasibleConstraints


def _to_float(val: Any) -> float:
    """Coerce numpy/pandas scalar to plain float for JSON serialization."""
    return round(float(val), 6)


def _opt_float(val: Any) -> float | None:
    return None if val is None else _to_float(val)


def _date_str(val: Any) -> str | None:
    if val is None:
        return None
    if isinstance(val, (int, np.integer)):
        return str(val)  # positional label from an undated series
    return pd.Timestamp(val).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ObjectiveType(str, Enum):
    EQUAL_WEIGHT = "EQUAL_WEIGHT"
    MIN_RISK = "MIN_RISK"
    MAX_RETURN = "MAX_RETURN"
    MAX_SHARPE = "MAX_SHARPE"
    RISK_PARITY = "RISK_PARITY"


class RiskTolerance(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class TimeHorizon(str, Enum):
    SHORT = "SHORT"
    MEDIUM = "MEDIUM"
    LONG = "LONG"


class Action(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Constraints:
    """Per-asset box constraints plus optimizer and rebalance parameters.

    ``max_risk`` is an annualized volatility ceiling used by MAX_RETURN
    (None means no ceiling).  ``target_return`` is carried for callers that
    pin a frontier point; the objectives themselves do not read it.
    """

    min_weight: float = 0.0
    max_weight: float = 1.0
    max_risk: float | None = None
    target_return: float | None = None
    risk_free_rate: float = 0.02
    rebalance_threshold: float = 0.05

    def __post_init__(self) -> None:
        if not (0.0 <= self.min_weight <= self.max_weight <= 1.0):
            raise InfeasibleConstraints(
                f"Weight bounds must satisfy 0 <= min <= max <= 1, "
                f"got min={self.min_weight}, max={self.max_weight}"
            )
        if self.max_risk is not None and self.max_risk < 0:
            raise ValueError(f"max_risk must be non-negative, got {self.max_risk}")
        if self.rebalance_threshold < 0:
            raise ValueError(
                f"rebalance_threshold must be non-negative, got {self.rebalance_threshold}"
            )

    @classmethod
    def from_settings(cls, **overrides) -> "Constraints":
        """Defaults from configs/settings.yaml, with keyword overrides."""
        values = {
            "min_weight": Defaults.MIN_WEIGHT,
            "max_weight": Defaults.MAX_WEIGHT,
            "max_risk": Defaults.MAX_RISK,
            "risk_free_rate": Defaults.RISK_FREE_RATE,
            "rebalance_threshold": Defaults.REBALANCE_THRESHOLD,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def check_feasible(self, n_assets: int) -> None:
        """Raise ``InfeasibleConstraints`` if the box cannot sum to 1."""
        if n_assets < 1:
            raise InfeasibleConstraints("No assets to allocate")
        if n_assets * self.min_weight > 1.0 + 1e-12:
            raise InfeasibleConstraints(
                f"{n_assets} assets x min_weight {self.min_weight} exceeds 100%"
            )
        if n_assets * self.max_weight < 1.0 - 1e-12:
            raise InfeasibleConstraints(
                f"{n_assets} assets x max_weight {self.max_weight} cannot reach 100%"
            )

    def to_dict(self) -> dict:
        return {
            "min_weight": _to_float(self.min_weight),
            "max_weight": _to_float(self.max_weight),
            "max_risk": _opt_float(self.max_risk),
            "target_return": _opt_float(self.target_return),
            "risk_free_rate": _to_float(self.risk_free_rate),
            "rebalance_threshold": _to_float(self.rebalance_threshold),
        }


@dataclass(frozen=True)
class OptimizationObjective:
    type: ObjectiveType
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE
    time_horizon: TimeHorizon = TimeHorizon.MEDIUM

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", ObjectiveType(self.type))
        object.__setattr__(self, "risk_tolerance", RiskTolerance(self.risk_tolerance))
        object.__setattr__(self, "time_horizon", TimeHorizon(self.time_horizon))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "risk_tolerance": self.risk_tolerance.value,
            "time_horizon": self.time_horizon.value,
        }


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReturnSeries:
    """Daily simple returns for one symbol (dates strictly increasing)."""

    symbol: str
    returns: pd.Series
    synthetic: bool = False

    def __len__(self) -> int:
        return len(self.returns)


@dataclass(frozen=True)
class DataQuality:
    """How much the statistics behind a result can be trusted."""

    observations: dict[str, int] = field(default_factory=dict)
    flat_symbols: tuple[str, ...] = ()
    low_confidence_symbols: tuple[str, ...] = ()
    synthetic_symbols: tuple[str, ...] = ()
    aligned_by: str = "date"

    @property
    def synthetic_data(self) -> bool:
        return bool(self.synthetic_symbols)

    @property
    def low_confidence(self) -> bool:
        return bool(
            self.flat_symbols
            or self.low_confidence_symbols
            or self.synthetic_symbols
            or self.aligned_by != "date"
        )

    def to_dict(self) -> dict:
        return {
            "observations": dict(self.observations),
            "flat_symbols": list(self.flat_symbols),
            "low_confidence_symbols": list(self.low_confidence_symbols),
            "synthetic_symbols": list(self.synthetic_symbols),
            "synthetic_data": self.synthetic_data,
            "aligned_by": self.aligned_by,
            "low_confidence": self.low_confidence,
        }


@dataclass(frozen=True, eq=False)
class MarketStatistics:
    """Aligned returns, covariance and expected returns in one symbol order.

    ``covariance`` is the daily sample covariance; ``annual_covariance`` and
    ``expected_returns`` are annualized (x trading days).
    """

    symbols: tuple[str, ...]
    returns: pd.DataFrame
    covariance: np.ndarray
    annual_covariance: np.ndarray
    expected_returns: np.ndarray
    data_quality: DataQuality = field(default_factory=DataQuality)

    def __len__(self) -> int:
        return len(self.symbols)

    @property
    def volatilities(self) -> np.ndarray:
        """Annualized per-asset volatility."""
        return np.sqrt(np.clip(np.diag(self.annual_covariance), 0.0, None))

    @property
    def usable_mask(self) -> np.ndarray:
        """True for symbols with real return history (not flat-filled)."""
        flat = set(self.data_quality.flat_symbols)
        return np.array([s not in flat for s in self.symbols], dtype=bool)

    def series(self, symbol: str) -> ReturnSeries:
        return ReturnSeries(
            symbol=symbol,
            returns=self.returns[symbol],
            synthetic=symbol in self.data_quality.synthetic_symbols,
        )


# ---------------------------------------------------------------------------
# Optimization results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TradingCostEstimate:
    trading_fees: float = 0.0
    market_impact: float = 0.0
    total_cost: float = 0.0
    turnover_value: float = 0.0

    def to_dict(self) -> dict:
        return {
            "trading_fees": _to_float(self.trading_fees),
            "market_impact": _to_float(self.market_impact),
            "total_cost": _to_float(self.total_cost),
            "turnover_value": _to_float(self.turnover_value),
        }


@dataclass(frozen=True)
class AllocationRecommendation:
    symbol: str
    target_weight: float
    current_weight: float
    action: Action
    quantity: int
    amount: float

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "target_weight": _to_float(self.target_weight),
            "current_weight": _to_float(self.current_weight),
            "action": self.action.value,
            "quantity": int(self.quantity),
            "amount": _to_float(self.amount),
        }


@dataclass(frozen=True)
class OptimizationResult:
    """Immutable audit record of one optimization call."""

    objective: OptimizationObjective
    constraints: Constraints
    symbols: tuple[str, ...]
    weights: tuple[float, ...]
    allocations: tuple[AllocationRecommendation, ...]
    expected_return: float
    expected_risk: float
    sharpe_ratio: float
    diversification_ratio: float
    concentration_index: float
    tracking_error: float
    information_ratio: float
    rebalancing_needed: bool
    total_rebalance_amount: float
    estimated_costs: TradingCostEstimate
    data_quality: DataQuality = field(default_factory=DataQuality)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def target_weights(self) -> dict[str, float]:
        return dict(zip(self.symbols, self.weights))

    def to_dict(self) -> dict:
        return {
            "objective": self.objective.to_dict(),
            "constraints": self.constraints.to_dict(),
            "target_weights": {s: _to_float(w) for s, w in self.target_weights.items()},
            "allocations": [a.to_dict() for a in self.allocations],
            "metrics": {
                "expected_return": _to_float(self.expected_return),
                "expected_risk": _to_float(self.expected_risk),
                "sharpe_ratio": _to_float(self.sharpe_ratio),
                "diversification_ratio": _to_float(self.diversification_ratio),
                "concentration_index": _to_float(self.concentration_index),
                "tracking_error": _to_float(self.tracking_error),
                "information_ratio": _to_float(self.information_ratio),
            },
            "rebalancing_needed": self.rebalancing_needed,
            "total_rebalance_amount": _to_float(self.total_rebalance_amount),
            "estimated_costs": self.estimated_costs.to_dict(),
            "data_quality": self.data_quality.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class EfficientFrontierPoint:
    risk: float
    expected_return: float
    sharpe_ratio: float
    symbols: tuple[str, ...]
    weights: tuple[float, ...]

    def to_dict(self) -> dict:
        return {
            "risk": _to_float(self.risk),
            "expected_return": _to_float(self.expected_return),
            "sharpe_ratio": _to_float(self.sharpe_ratio),
            "weights": {s: _to_float(w) for s, w in zip(self.symbols, self.weights)},
        }


@dataclass(frozen=True)
class RiskParityResult:
    symbols: tuple[str, ...]
    weights: tuple[float, ...]
    risk_contributions: tuple[float, ...]
    total_risk: float
    diversification_ratio: float
    iterations: int
    converged: bool

    def to_dict(self) -> dict:
        return {
            "weights": {s: _to_float(w) for s, w in zip(self.symbols, self.weights)},
            "risk_contributions": {
                s: _to_float(rc) for s, rc in zip(self.symbols, self.risk_contributions)
            },
            "total_risk": _to_float(self.total_risk),
            "diversification_ratio": _to_float(self.diversification_ratio),
            "iterations": self.iterations,
            "converged": self.converged,
        }


# ---------------------------------------------------------------------------
# Rebalancing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RebalanceAction:
    symbol: str
    current_weight: float
    target_weight: float
    weight_delta: float
    action: Action
    quantity: int
    amount: float
    price: float
    current_quantity: float = 0.0
    target_quantity: float = 0.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "current_weight": _to_float(self.current_weight),
            "target_weight": _to_float(self.target_weight),
            "weight_delta": _to_float(self.weight_delta),
            "action": self.action.value,
            "quantity": int(self.quantity),
            "amount": _to_float(self.amount),
            "price": _to_float(self.price),
            "current_quantity": _to_float(self.current_quantity),
            "target_quantity": _to_float(self.target_quantity),
        }


@dataclass(frozen=True)
class RebalancePlan:
    actions: tuple[RebalanceAction, ...]
    estimated_costs: TradingCostEstimate
    rebalancing_needed: bool

    @property
    def trades(self) -> list[RebalanceAction]:
        return [a for a in self.actions if a.action is not Action.HOLD]

    @property
    def total_rebalance_amount(self) -> float:
        return float(sum(abs(a.amount) for a in self.trades))

    def to_dict(self) -> dict:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "estimated_costs": self.estimated_costs.to_dict(),
            "rebalancing_needed": self.rebalancing_needed,
            "total_rebalance_amount": _to_float(self.total_rebalance_amount),
        }


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StressScenario:
    """A shock fraction (e.g. -0.20) applied to every holding or per sector."""

    name: str
    shock: float
    sector_shocks: dict[str, float] = field(default_factory=dict)

    def shock_for(self, sector: str | None) -> float:
        if sector is not None and sector in self.sector_shocks:
            return float(self.sector_shocks[sector])
        return float(self.shock)


@dataclass(frozen=True)
class StressTestResult:
    scenario: str
    portfolio_impact: float
    impact_percent: float
    worst_holding: dict[str, Any]
    recovery_days: int

    def to_dict(self) -> dict:
        return {
            "scenario": self.scenario,
            "portfolio_impact": _to_float(self.portfolio_impact),
            "impact_percent": _to_float(self.impact_percent),
            "worst_holding": {
                "symbol": self.worst_holding.get("symbol"),
                "impact": _to_float(self.worst_holding.get("impact", 0.0)),
                "impact_percent": _to_float(self.worst_holding.get("impact_percent", 0.0)),
            },
            "recovery_days": int(self.recovery_days),
        }


@dataclass(frozen=True)
class DrawdownResult:
    max_drawdown: float
    peak_date: Any = None
    trough_date: Any = None

    def to_dict(self) -> dict:
        return {
            "max_drawdown": _to_float(self.max_drawdown),
            "peak_date": _date_str(self.peak_date),
            "trough_date": _date_str(self.trough_date),
        }


@dataclass(frozen=True)
class FactorExposure:
    betas: dict[str, float]
    intercept: float
    r_squared: float
    observations: int

    def to_dict(self) -> dict:
        return {
            "betas": {k: _to_float(v) for k, v in self.betas.items()},
            "intercept": _to_float(self.intercept),
            "r_squared": _to_float(self.r_squared),
            "observations": self.observations,
        }


@dataclass(frozen=True)
class RiskBreakdown:
    """Where the risk comes from.

    ``concentration_risk`` (HHI x 100) and ``liquidity_risk`` are 0-100
    scores.  ``systematic_risk`` and ``unsystematic_risk`` are annualized
    volatilities from the benchmark regression; None without a benchmark.
    """

    concentration_risk: float = 0.0
    liquidity_risk: float = 0.0
    systematic_risk: float | None = None
    unsystematic_risk: float | None = None

    def to_dict(self) -> dict:
        return {
            "concentration_risk": _to_float(self.concentration_risk),
            "liquidity_risk": _to_float(self.liquidity_risk),
            "systematic_risk": _opt_float(self.systematic_risk),
            "unsystematic_risk": _opt_float(self.unsystematic_risk),
        }


@dataclass(frozen=True)
class RiskAssessment:
    """Risk exposure of one portfolio.  Fractions unless noted as amounts.

    ``var`` and ``cvar`` are one-day loss fractions; ``var_amount`` and
    ``cvar_amount`` are currency amounts over ``horizon_days``, scaled by
    the square root of time.
    """

    total_value: float
    var: dict[float, float]
    cvar: dict[float, float]
    var_amount: dict[float, float]
    cvar_amount: dict[float, float]
    parametric_var: dict[float, float]
    volatility: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    max_drawdown: DrawdownResult
    concentration_index: float
    sector_allocation: dict[str, float]
    stress_tests: tuple[StressTestResult, ...] = ()
    benchmark: str | None = None
    beta: float | None = None
    alpha: float | None = None
    correlation: float | None = None
    tracking_error: float | None = None
    information_ratio: float | None = None
    data_quality: DataQuality = field(default_factory=DataQuality)
    horizon_days: int = 1
    correlation_matrix: dict[str, dict[str, float]] = field(default_factory=dict)
    breakdown: RiskBreakdown = field(default_factory=RiskBreakdown)
    recommendations: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        def levels(d: dict[float, float]) -> dict[str, float]:
            return {f"{c:.2f}": _to_float(v) for c, v in d.items()}

        return {
            "total_value": _to_float(self.total_value),
            "var": levels(self.var),
            "cvar": levels(self.cvar),
            "var_amount": levels(self.var_amount),
            "cvar_amount": levels(self.cvar_amount),
            "parametric_var": levels(self.parametric_var),
            "volatility": _to_float(self.volatility),
            "sharpe_ratio": _to_float(self.sharpe_ratio),
            "sortino_ratio": _to_float(self.sortino_ratio),
            "calmar_ratio": _to_float(self.calmar_ratio),
            "max_drawdown": self.max_drawdown.to_dict(),
            "concentration_index": _to_float(self.concentration_index),
            "sector_allocation": {k: _to_float(v) for k, v in self.sector_allocation.items()},
            "stress_tests": [s.to_dict() for s in self.stress_tests],
            "benchmark": {
                "name": self.benchmark,
                "beta": _opt_float(self.beta),
                "alpha": _opt_float(self.alpha),
                "correlation": _opt_float(self.correlation),
                "tracking_error": _opt_float(self.tracking_error),
                "information_ratio": _opt_float(self.information_ratio),
            },
            "data_quality": self.data_quality.to_dict(),
            "horizon_days": self.horizon_days,
            "correlation_matrix": {
                a: {b: _to_float(v) for b, v in row.items()}
                for a, row in self.correlation_matrix.items()
            },
            "breakdown": self.breakdown.to_dict(),
            "recommendations": list(self.recommendations),
        }
