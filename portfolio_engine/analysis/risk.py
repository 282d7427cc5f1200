"""Risk metrics - VaR/CVaR, drawdown, benchmark statistics, ratios, stress tests,
correlation, liquidity and limit-based recommendations.

All ratio metrics guard division by zero.  Degenerate inputs return 0, or
``SATURATED_RATIO`` where the true answer is unbounded (no downside
deviation or no drawdown with a positive excess return), so NaN or infinity
never reaches callers.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
from scipy.stats import norm

from portfolio_engine.analysis.models import (
    DataQuality,
    DrawdownResult,
    FactorExposure,
    RiskAssessment,
    RiskBreakdown,
    StressScenario,
    StressTestResult,
)
from portfolio_engine.config import Defaults, setting
from portfolio_engine.data_sources.base import PortfolioSnapshot
from portfolio_engine.errors import InsufficientData
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("risk")

SATURATED_RATIO = 1e6

_FALLBACK_SCENARIOS = [
    {"name": "Market crash (-20%)", "shock": -0.20},
    {"name": "Financial crisis (-35%)", "shock": -0.35},
    {"name": "Currency shock (strong yen)", "shock": -0.15},
    {"name": "Inflation surge", "shock": -0.10},
    {"name": "Geopolitical risk", "shock": -0.25},
]


def default_scenarios() -> list[StressScenario]:
    """Stress scenarios from ``risk.stress_scenarios`` in settings."""
    raw = setting("risk", "stress_scenarios", None) or _FALLBACK_SCENARIOS
    return [
        StressScenario(
            name=str(s["name"]),
            shock=float(s["shock"]),
            sector_shocks={k: float(v) for k, v in (s.get("sector_shocks") or {}).items()},
        )
        for s in raw
    ]


def _clean(returns) -> np.ndarray:
    arr = np.asarray(returns, dtype=float).ravel()
    return arr[np.isfinite(arr)]


def _align_pair(a: pd.Series, b: pd.Series) -> tuple[np.ndarray, np.ndarray]:
    """Inner-join two return series on their index and drop NaNs."""
    joined = pd.concat([pd.Series(a), pd.Series(b)], axis=1, join="inner").dropna()
    return joined.iloc[:, 0].to_numpy(dtype=float), joined.iloc[:, 1].to_numpy(dtype=float)


def market_values(snapshot: PortfolioSnapshot, prices: Mapping[str, float]) -> dict[str, float]:
    """quantity x latest price per holding (average cost when no price)."""
    values = {}
    for h in snapshot.holdings:
        price = prices.get(h.symbol) or 0.0
        values[h.symbol] = h.quantity * (price if price > 0 else h.average_cost)
    return values


def sector_allocation(snapshot: PortfolioSnapshot, prices: Mapping[str, float]) -> dict[str, float]:
    values = market_values(snapshot, prices)
    total = sum(values.values())
    if total <= 0:
        return {}
    allocation: dict[str, float] = {}
    for h in snapshot.holdings:
        sector = h.sector or "Unknown"
        allocation[sector] = allocation.get(sector, 0.0) + values[h.symbol] / total
    return allocation


# =========================================================================
# RiskMetrics
# =========================================================================


class RiskMetrics:
    """Return-series risk measures.  Inputs are daily simple returns."""

    def __init__(
        self,
        trading_days: int = Defaults.TRADING_DAYS,
        risk_free_rate: float = Defaults.RISK_FREE_RATE,
        confidence_levels: Iterable[float] = Defaults.CONFIDENCE_LEVELS,
        horizon_days: int = Defaults.HORIZON_DAYS,
        limits: Mapping[str, float] | None = None,
    ) -> None:
        self.trading_days = trading_days
        self.risk_free_rate = risk_free_rate
        self.confidence_levels = tuple(confidence_levels)
        self.horizon_days = horizon_days
        self.limits = {**Defaults.RISK_LIMITS, **(limits or {})}

    # ----- VaR / CVaR ------------------------------------------------------

    @staticmethod
    def _cutoff_index(n: int, confidence: float) -> int:
        if not 0.0 < confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {confidence}")
        # round() absorbs float noise such as (1 - 0.95) * 100 = 5.000000000000004
        idx = math.floor(round((1.0 - confidence) * n, 9))
        return min(max(idx, 0), n - 1)

    @classmethod
    def historical_var(cls, returns, confidence: float = 0.95) -> float:
        """Loss at index ``floor((1 - c) * n)`` of the ascending returns.

        Reported as a positive loss fraction; a non-negative quantile (no
        loss at this confidence) gives 0.  Empty input gives 0.
        """
        r = np.sort(_clean(returns))
        if len(r) == 0:
            return 0.0
        return max(-float(r[cls._cutoff_index(len(r), confidence)]), 0.0)

    @classmethod
    def conditional_var(cls, returns, confidence: float = 0.95) -> float:
        """Mean of the returns at or below the VaR cutoff, as a positive loss."""
        r = np.sort(_clean(returns))
        if len(r) == 0:
            return 0.0
        idx = cls._cutoff_index(len(r), confidence)
        return max(-float(r[: idx + 1].mean()), 0.0)

    @staticmethod
    def parametric_var(returns, confidence: float = 0.95) -> float:
        """Normal-distribution VaR ``-(mu + z_{1-c} * sigma)``, floored at 0."""
        r = _clean(returns)
        if len(r) < 2:
            return 0.0
        z = norm.ppf(1.0 - confidence)
        return max(-(float(r.mean()) + z * float(r.std(ddof=1))), 0.0)

    # ----- drawdown --------------------------------------------------------

    @staticmethod
    def max_drawdown(values: pd.Series) -> DrawdownResult:
        """Largest peak-to-trough decline ``(peak - value) / peak`` of a value series."""
        values = pd.Series(values).dropna()
        if len(values) < 2:
            return DrawdownResult(max_drawdown=0.0)
        v = values.to_numpy(dtype=float)
        peaks = np.maximum.accumulate(v)
        with np.errstate(divide="ignore", invalid="ignore"):
            dd = np.where(peaks > 0, (peaks - v) / peaks, 0.0)
        trough = int(np.argmax(dd))
        if dd[trough] <= 0:
            return DrawdownResult(max_drawdown=0.0)
        peak = int(np.flatnonzero(v[: trough + 1] == peaks[trough])[-1])
        return DrawdownResult(
            max_drawdown=float(dd[trough]),
            peak_date=values.index[peak],
            trough_date=values.index[trough],
        )

    @staticmethod
    def wealth_index(returns: pd.Series) -> pd.Series:
        """Cumulative value of 1 invested, ``prod(1 + r)``, starting from the 1.0 base.

        The base is labelled one period before the first return (one day
        for a single dated return), so a loss in the first period counts as
        a drawdown from the initial investment.
        """
        r = pd.Series(returns, dtype=float).fillna(0.0)
        if r.empty:
            return r
        growth = (1.0 + r).cumprod()
        index = r.index
        if isinstance(index, pd.DatetimeIndex):
            step = index[1] - index[0] if len(index) > 1 else pd.Timedelta(days=1)
            base = index[0] - step
        elif pd.api.types.is_integer_dtype(index):
            base = index[0] - 1
        else:
            growth = growth.reset_index(drop=True)
            growth.index = growth.index + 1
            base = 0
        return pd.concat([pd.Series([1.0], index=[base]), growth])

    # ----- benchmark-relative ----------------------------------------------

    @staticmethod
    def beta(portfolio: pd.Series, benchmark: pd.Series) -> float:
        rp, rb = _align_pair(portfolio, benchmark)
        if len(rp) < 2:
            return 0.0
        var_b = float(np.var(rb, ddof=1))
        if var_b == 0:
            return 0.0
        return float(np.cov(rp, rb, ddof=1)[0, 1] / var_b)

    @classmethod
    def alpha(cls, portfolio: pd.Series, benchmark: pd.Series) -> float:
        """Daily alpha ``mean(r_p) - beta * mean(r_b)``."""
        rp, rb = _align_pair(portfolio, benchmark)
        if len(rp) == 0:
            return 0.0
        return float(rp.mean() - cls.beta(portfolio, benchmark) * rb.mean())

    @staticmethod
    def correlation(portfolio: pd.Series, benchmark: pd.Series) -> float:
        rp, rb = _align_pair(portfolio, benchmark)
        if len(rp) < 2 or np.std(rp) == 0 or np.std(rb) == 0:
            return 0.0
        return float(np.corrcoef(rp, rb)[0, 1])

    @staticmethod
    def tracking_error(portfolio: pd.Series, benchmark: pd.Series) -> float:
        """Sample standard deviation of the active return ``r_p - r_b``."""
        rp, rb = _align_pair(portfolio, benchmark)
        if len(rp) < 2:
            return 0.0
        return float(np.std(rp - rb, ddof=1))

    @classmethod
    def information_ratio(cls, portfolio: pd.Series, benchmark: pd.Series) -> float:
        te = cls.tracking_error(portfolio, benchmark)
        if te == 0:
            return 0.0
        return cls.alpha(portfolio, benchmark) / te

    def risk_decomposition(self, portfolio: pd.Series, benchmark: pd.Series) -> tuple[float, float]:
        """Annualized (systematic, unsystematic) volatility.

        Systematic variance is ``beta^2 * Var(r_b)``; the unsystematic part
        is the rest of ``Var(r_p)``, floored at 0.
        """
        rp, rb = _align_pair(portfolio, benchmark)
        if len(rp) < 2:
            return 0.0, 0.0
        systematic = self.beta(portfolio, benchmark) ** 2 * float(np.var(rb, ddof=1))
        residual = max(float(np.var(rp, ddof=1)) - systematic, 0.0)
        return (
            math.sqrt(systematic * self.trading_days),
            math.sqrt(residual * self.trading_days),
        )

    @staticmethod
    def scale_to_horizon(value: float, horizon_days: int) -> float:
        """Square-root-of-time scaling of a one-day figure."""
        if horizon_days < 1:
            raise ValueError(f"horizon_days must be >= 1, got {horizon_days}")
        return float(value) * math.sqrt(horizon_days)

    # ----- ratios ----------------------------------------------------------

    def volatility(self, returns) -> float:
        r = _clean(returns)
        if len(r) < 2:
            return 0.0
        return float(r.std(ddof=1) * np.sqrt(self.trading_days))

    def sharpe_ratio(self, returns) -> float:
        r = _clean(returns)
        if len(r) < 2:
            return 0.0
        excess = r - self.risk_free_rate / self.trading_days
        std = float(excess.std(ddof=1))
        if std < 1e-12:
            return 0.0
        return float(excess.mean() / std * np.sqrt(self.trading_days))

    def sortino_ratio(self, returns) -> float:
        """Annualized excess return over downside deviation.

        Downside deviation is ``sqrt(mean(min(excess, 0)^2))``.  With none,
        a positive mean excess saturates to ``SATURATED_RATIO``.
        """
        r = _clean(returns)
        if len(r) == 0:
            return 0.0
        excess = r - self.risk_free_rate / self.trading_days
        downside = float(np.sqrt(np.mean(np.minimum(excess, 0.0) ** 2)))
        mean_excess = float(excess.mean())
        if downside == 0:
            return SATURATED_RATIO if mean_excess > 0 else 0.0
        return float(mean_excess / downside * np.sqrt(self.trading_days))

    def calmar_ratio(self, returns) -> float:
        """Annualized mean return over max drawdown of the wealth index."""
        r = _clean(returns)
        if len(r) == 0:
            return 0.0
        annual = float(r.mean() * self.trading_days)
        mdd = self.max_drawdown(self.wealth_index(pd.Series(r))).max_drawdown
        if mdd == 0:
            return SATURATED_RATIO if annual > 0 else 0.0
        return annual / mdd

    # ----- assessment ------------------------------------------------------

    def assess(
        self,
        portfolio_returns: pd.Series,
        total_value: float,
        benchmark_returns: pd.Series | None = None,
        benchmark: str | None = None,
        concentration_index: float = 0.0,
        sector_allocation: Mapping[str, float] | None = None,
        stress_tests: Iterable[StressTestResult] = (),
        data_quality: DataQuality | None = None,
        asset_returns: pd.DataFrame | None = None,
        liquidity_risk: float = 0.0,
        horizon_days: int | None = None,
    ) -> RiskAssessment:
        """Assemble a RiskAssessment from a daily portfolio return series.

        *asset_returns* (one column per holding) feeds the correlation
        matrix.  Loss amounts cover *horizon_days*, defaulting to the
        instance horizon.
        """
        horizon = self.horizon_days if horizon_days is None else horizon_days
        scale = self.scale_to_horizon(1.0, horizon)
        returns = pd.Series(portfolio_returns).dropna()
        var = {c: self.historical_var(returns, c) for c in self.confidence_levels}
        cvar = {c: self.conditional_var(returns, c) for c in self.confidence_levels}

        rel: dict[str, float | None] = dict.fromkeys(
            ("beta", "alpha", "correlation", "tracking_error", "information_ratio")
        )
        systematic = unsystematic = None
        if benchmark_returns is not None and len(benchmark_returns) > 0:
            rel = {
                "beta": self.beta(returns, benchmark_returns),
                "alpha": self.alpha(returns, benchmark_returns),
                "correlation": self.correlation(returns, benchmark_returns),
                "tracking_error": self.tracking_error(returns, benchmark_returns),
                "information_ratio": self.information_ratio(returns, benchmark_returns),
            }
            systematic, unsystematic = self.risk_decomposition(returns, benchmark_returns)
        elif benchmark:
            logger.warning("No returns for benchmark %s; relative metrics omitted", benchmark)
            benchmark = None

        breakdown = RiskBreakdown(
            concentration_risk=concentration_index * 100.0,
            liquidity_risk=liquidity_risk,
            systematic_risk=systematic,
            unsystematic_risk=unsystematic,
        )
        assessment = RiskAssessment(
            total_value=total_value,
            var=var,
            cvar=cvar,
            var_amount={c: v * total_value * scale for c, v in var.items()},
            cvar_amount={c: v * total_value * scale for c, v in cvar.items()},
            parametric_var={c: self.parametric_var(returns, c) for c in self.confidence_levels},
            volatility=self.volatility(returns),
            sharpe_ratio=self.sharpe_ratio(returns),
            sortino_ratio=self.sortino_ratio(returns),
            calmar_ratio=self.calmar_ratio(returns),
            max_drawdown=self.max_drawdown(self.wealth_index(returns)),
            concentration_index=concentration_index,
            sector_allocation=dict(sector_allocation or {}),
            stress_tests=tuple(stress_tests),
            benchmark=benchmark,
            data_quality=data_quality or DataQuality(),
            horizon_days=horizon,
            correlation_matrix=correlation_matrix(asset_returns) if asset_returns is not None else {},
            breakdown=breakdown,
            **rel,
        )
        return replace(assessment, recommendations=risk_recommendations(assessment, self.limits))


# ------------------------------------------------------------------
#  Correlation, liquidity and recommendations
# ------------------------------------------------------------------


def correlation_matrix(returns: pd.DataFrame) -> dict[str, dict[str, float]]:
    """Pairwise Pearson correlation of per-asset returns as a nested dict.

    A constant column has no defined correlation; it reads 0 against the
    others and 1 against itself.
    """
    frame = pd.DataFrame(returns)
    if frame.shape[1] == 0:
        return {}
    corr = frame.corr().fillna(0.0).to_numpy(copy=True)
    np.fill_diagonal(corr, 1.0)
    symbols = [str(c) for c in frame.columns]
    return {
        a: {b: float(corr[i, j]) for j, b in enumerate(symbols)}
        for i, a in enumerate(symbols)
    }


def liquidity_risk(
    snapshot: PortfolioSnapshot,
    prices: Mapping[str, float],
    average_volumes: Mapping[str, float],
    participation_rate: float = Defaults.LIQUIDITY_PARTICIPATION,
    liquidation_days: float = Defaults.LIQUIDATION_DAYS,
) -> float:
    """Value-weighted liquidation difficulty on a 0-100 scale.

    Exiting a holding at ``participation_rate`` of its average daily volume
    takes ``quantity / (participation_rate * volume)`` days; that over
    *liquidation_days*, capped at 1, is the holding's score.  Holdings with
    no volume score 1.
    """
    if participation_rate <= 0 or liquidation_days <= 0:
        raise ValueError("participation_rate and liquidation_days must be positive")
    values = market_values(snapshot, prices)
    total = sum(values.values())
    if total <= 0:
        return 0.0
    score = 0.0
    for h in snapshot.holdings:
        volume = float(average_volumes.get(h.symbol) or 0.0)
        if volume > 0:
            days = abs(h.quantity) / (participation_rate * volume)
            difficulty = min(days / liquidation_days, 1.0)
        else:
            difficulty = 1.0
        score += values[h.symbol] / total * difficulty
    return 100.0 * score


def risk_recommendations(
    assessment: RiskAssessment,
    limits: Mapping[str, float] | None = None,
) -> tuple[str, ...]:
    """Plain-language actions for every limit the assessment breaches."""
    limits = {**Defaults.RISK_LIMITS, **(limits or {})}
    out: list[str] = []
    breakdown = assessment.breakdown

    if breakdown.concentration_risk > limits["concentration"]:
        out.append(
            f"Concentration is high (HHI {breakdown.concentration_risk:.1f}); "
            "spread the allocation across more holdings."
        )
    if breakdown.liquidity_risk > limits["liquidity"]:
        out.append(
            f"Liquidity risk is {breakdown.liquidity_risk:.1f}/100; "
            "reduce positions that are large relative to their traded volume."
        )
    if assessment.sector_allocation:
        sector, weight = max(assessment.sector_allocation.items(), key=lambda kv: kv[1])
        if weight > limits["sector"]:
            out.append(f"{sector} is {weight:.0%} of the portfolio; diversify across sectors.")
    if assessment.beta is not None and assessment.beta > limits["beta"]:
        out.append(
            f"Beta of {assessment.beta:.2f} amplifies market moves; "
            "add lower-beta or defensive holdings."
        )
    if assessment.var:
        level = min(assessment.var)
        horizon_var = RiskMetrics.scale_to_horizon(assessment.var[level], assessment.horizon_days)
        if horizon_var > limits["var"]:
            out.append(
                f"{assessment.horizon_days}-day VaR({level:.0%}) of {horizon_var:.1%} exceeds "
                f"the {limits['var']:.0%} limit; cut position sizes or add hedges."
            )
    if assessment.data_quality.low_confidence:
        out.append("Some statistics rest on short or synthetic price history; confirm before acting.")
    if not out:
        out.append("Risk is within limits; keep the current diversification.")
    return tuple(out)


# ------------------------------------------------------------------
#  Stress testing
# ------------------------------------------------------------------


def stress_test(
    snapshot: PortfolioSnapshot,
    prices: Mapping[str, float],
    scenarios: Iterable[StressScenario] | None = None,
    recovery_days_per_unit: float = Defaults.RECOVERY_DAYS_PER_UNIT,
) -> list[StressTestResult]:
    """Apply each scenario's shock to every holding's market value.

    Per-sector shocks override the scenario's uniform shock for holdings in
    that sector.  The worst holding is the one with the largest absolute
    impact (first in holdings order on ties).  Recovery time is
    ``|shock| * recovery_days_per_unit`` trading days.  Percentages are
    relative to the portfolio total value.
    """
    scenarios = list(scenarios) if scenarios is not None else default_scenarios()
    if not snapshot.holdings:
        return []
    values = market_values(snapshot, prices)
    base = snapshot.total_value if snapshot.total_value > 0 else sum(values.values())

    def pct(amount: float) -> float:
        return amount / base * 100.0 if base > 0 else 0.0

    results = []
    for scenario in scenarios:
        total_impact = 0.0
        worst_symbol, worst_impact = "", 0.0
        for h in snapshot.holdings:
            impact = values[h.symbol] * scenario.shock_for(h.sector)
            total_impact += impact
            if abs(impact) > abs(worst_impact) or not worst_symbol:
                worst_symbol, worst_impact = h.symbol, impact
        results.append(StressTestResult(
            scenario=scenario.name,
            portfolio_impact=total_impact,
            impact_percent=pct(total_impact),
            worst_holding={
                "symbol": worst_symbol,
                "impact": worst_impact,
                "impact_percent": pct(worst_impact),
            },
            recovery_days=int(round(abs(scenario.shock) * recovery_days_per_unit)),
        ))
    logger.info("Stress test: %d scenarios over %d holdings", len(results), len(snapshot.holdings))
    return results


# ------------------------------------------------------------------
#  Factor exposure
# ------------------------------------------------------------------


def factor_exposure(
    portfolio_returns: pd.Series,
    factors: Mapping[str, pd.Series] | pd.DataFrame,
) -> FactorExposure:
    """OLS of portfolio returns on factor return series (with intercept).

    Raises:
        InsufficientData: No factors, or fewer overlapping observations than
            regression parameters plus one.
    """
    factor_df = pd.DataFrame(factors)
    if factor_df.shape[1] == 0:
        raise InsufficientData("No factor series supplied")
    names = [str(c) for c in factor_df.columns]
    combined = pd.concat(
        [pd.Series(portfolio_returns).rename("__portfolio__"), factor_df], axis=1, join="inner",
    ).dropna()
    if len(combined) < len(names) + 2:
        raise InsufficientData(
            f"Only {len(combined)} overlapping observations for {len(names)} factors"
        )

    y = combined["__portfolio__"].to_numpy(dtype=float)
    X = np.column_stack([np.ones(len(y)), combined[factor_df.columns].to_numpy(dtype=float)])
    coeffs, _, _, _ = np.linalg.lstsq(X, y, rcond=None)

    y_pred = X @ coeffs
    ss_res = float(np.sum((y - y_pred) ** 2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    r_sq = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return FactorExposure(
        betas={n: float(b) for n, b in zip(names, coeffs[1:])},
        intercept=float(coeffs[0]),
        r_squared=r_sq,
        observations=len(y),
    )
