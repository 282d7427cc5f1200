"""PortfolioEngine: the call contracts a host application wraps.

Fetches price history for a portfolio's holdings (bounded fan-out), builds
statistics in holdings order, and delegates to the Optimizer,
EfficientFrontier, RebalancePlanner and RiskMetrics.  Typed engine failures
are logged here and re-raised to the caller.
"""

from __future__ import annotations

import functools
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from portfolio_engine.analysis.frontier import EfficientFrontier
from portfolio_engine.analysis.linalg import (
    concentration_index,
    diversification_ratio,
    portfolio_volatility,
)
from portfolio_engine.analysis.models import (
    AllocationRecommendation,
    Constraints,
    EfficientFrontierPoint,
    FactorExposure,
    MarketStatistics,
    ObjectiveType,
    OptimizationObjective,
    OptimizationResult,
    RebalancePlan,
    RiskAssessment,
    RiskParityResult,
    StressScenario,
    StressTestResult,
)
from portfolio_engine.analysis.optimizer import Optimizer
from portfolio_engine.analysis.rebalance import RebalancePlanner, current_weights
from portfolio_engine.analysis.risk import (
    RiskMetrics,
    factor_exposure as regress_factors,
    liquidity_risk,
    sector_allocation,
    stress_test as run_stress_test,
)
from portfolio_engine.analysis.statistics import StatisticsBuilder
from portfolio_engine.config import Defaults
from portfolio_engine.data_sources.base import (
    BenchmarkProvider,
    HoldingsProvider,
    PortfolioSnapshot,
    PriceHistoryProvider,
)
from portfolio_engine.data_sources.fetcher import PriceHistoryFetcher
from portfolio_engine.data_sources.holdings import YamlHoldingsProvider
from portfolio_engine.data_sources.market_data import MarketDataClient
from portfolio_engine.data_sources.synthetic import SyntheticPriceProvider
from portfolio_engine.errors import InsufficientData, PortfolioEngineError
from portfolio_engine.utils.cache import TTLCache
from portfolio_engine.utils.logger import setup_logger
from portfolio_engine.utils.rate_limiter import RateLimiter

logger = setup_logger("engine")

_PRICE_LOOKBACK_DAYS = 5


def _logged(method):
    """Log typed engine failures at the boundary, then re-raise."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except PortfolioEngineError as e:
            logger.error("%s failed: %s: %s", method.__name__, type(e).__name__, e)
            raise

    return wrapper


@dataclass
class SnapshotBatch:
    """Per-portfolio risk assessments from :meth:`PortfolioEngine.snapshot_many`."""

    results: dict[str, RiskAssessment] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class PortfolioEngine:
    """Facade over the quant components.

    Args:
        price_provider: Price-history source (yfinance client by default).
        holdings_provider: Resolves portfolio ids (YAML file by default).
        benchmark_provider: Benchmark return source; defaults to the price
            provider when it implements ``get_benchmark_returns``.
        cache: Covariance/price memo; pass None to disable caching.
        allow_synthetic: Fill symbols without history from the synthetic
            provider.  Results built on such data are flagged.
    """

    def __init__(
        self,
        price_provider: PriceHistoryProvider | None = None,
        holdings_provider: HoldingsProvider | None = None,
        benchmark_provider: BenchmarkProvider | None = None,
        cache: TTLCache | None = None,
        allow_synthetic: bool = Defaults.ALLOW_SYNTHETIC,
        synthetic_provider: PriceHistoryProvider | None = None,
        max_workers: int = Defaults.FETCH_MAX_WORKERS,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.cache = cache
        self.price_provider = price_provider or MarketDataClient(cache=cache)
        self.holdings_provider = holdings_provider or YamlHoldingsProvider()
        if benchmark_provider is None and isinstance(self.price_provider, BenchmarkProvider):
            benchmark_provider = self.price_provider
        self.benchmark_provider = benchmark_provider
        self.allow_synthetic = allow_synthetic
        if allow_synthetic and synthetic_provider is None:
            synthetic_provider = SyntheticPriceProvider()
        self.max_workers = max_workers
        self.fetcher = PriceHistoryFetcher(
            self.price_provider,
            max_workers=max_workers,
            rate_limiter=rate_limiter or RateLimiter(),
            synthetic_provider=synthetic_provider if allow_synthetic else None,
        )
        self.statistics = StatisticsBuilder(cache=cache)
        self.optimizer = Optimizer()
        self.frontier = EfficientFrontier(self.optimizer)
        self.planner = RebalancePlanner()
        self.metrics = RiskMetrics()

    # ----- internal helpers ------------------------------------------------

    def load_portfolio(self, portfolio_id: str) -> PortfolioSnapshot:
        return self.holdings_provider.get_portfolio(portfolio_id)

    def _snapshot(self, holdings: PortfolioSnapshot | str) -> PortfolioSnapshot:
        snapshot = self.load_portfolio(holdings) if isinstance(holdings, str) else holdings
        if not snapshot.holdings:
            raise InsufficientData("Portfolio has no holdings")
        return snapshot

    def _market(
        self, snapshot: PortfolioSnapshot, window: int,
    ) -> tuple[MarketStatistics, dict[str, float], dict[str, float]]:
        """Statistics over *window* returns, latest price and average volume per symbol."""
        fetched = self.fetcher.fetch(snapshot.symbols, lookback_days=window)
        stats = self.statistics.build_from_frames(
            fetched.frames, window=window, synthetic_symbols=fetched.synthetic,
        )
        return stats, self._last_closes(fetched.frames), self._average_volumes(fetched.frames, window)

    def _latest_prices(self, symbols: list[str]) -> dict[str, float]:
        fetched = self.fetcher.fetch(symbols, lookback_days=_PRICE_LOOKBACK_DAYS)
        return self._last_closes(fetched.frames)

    @staticmethod
    def _last_closes(frames: Mapping[str, pd.DataFrame]) -> dict[str, float]:
        prices = {}
        for sym, df in frames.items():
            if df is not None and not df.empty and "Close" in df.columns:
                prices[sym] = float(df["Close"].iloc[-1])
        return prices

    @staticmethod
    def _average_volumes(frames: Mapping[str, pd.DataFrame], window: int) -> dict[str, float]:
        volumes = {}
        for sym, df in frames.items():
            if df is not None and not df.empty and "Volume" in df.columns:
                mean = df["Volume"].tail(window).mean()
                if pd.notna(mean):
                    volumes[sym] = float(mean)
        return volumes

    @staticmethod
    def _holding_weights(
        snapshot: PortfolioSnapshot, stats: MarketStatistics, prices: Mapping[str, float],
    ) -> np.ndarray:
        """Current market-value weights normalized to sum to 1."""
        current = current_weights(snapshot, prices)
        raw = np.array([current.get(s, 0.0) for s in stats.symbols])
        if raw.sum() <= 0:
            return np.ones(len(raw)) / len(raw)
        return raw / raw.sum()

    @staticmethod
    def _require_usable(stats: MarketStatistics) -> None:
        """Multi-asset calls need at least two symbols with real history."""
        n = len(stats.symbols)
        usable = int(stats.usable_mask.sum())
        if n > 1 and usable < 2:
            raise InsufficientData(
                f"Only {usable} of {n} symbols have usable price history; at least 2 are required"
            )

    @staticmethod
    def _objective(objective) -> OptimizationObjective:
        if isinstance(objective, OptimizationObjective):
            return objective
        return OptimizationObjective(type=ObjectiveType(objective))

    # ----- call contracts --------------------------------------------------

    @_logged
    def optimize(
        self,
        holdings: PortfolioSnapshot | str,
        objective: OptimizationObjective | ObjectiveType | str,
        constraints: Constraints | None = None,
    ) -> OptimizationResult:
        """Target allocation for *objective* plus the trades to reach it."""
        snapshot = self._snapshot(holdings)
        objective = self._objective(objective)
        constraints = constraints or Constraints.from_settings()

        stats, prices, _ = self._market(snapshot, Defaults.WINDOW_DAYS)
        self._require_usable(stats)
        symbols = list(stats.symbols)
        mu, cov = stats.expected_returns, stats.annual_covariance

        weights = self.optimizer.optimize(
            objective.type, mu, cov, constraints, usable=stats.usable_mask,
        )
        current = current_weights(snapshot, prices)
        plan = self.planner.plan(
            current,
            dict(zip(symbols, weights)),
            snapshot.total_value,
            prices,
            quantities={h.symbol: h.quantity for h in snapshot.holdings},
            threshold=constraints.rebalance_threshold,
        )

        w_cur = np.array([current.get(s, 0.0) for s in symbols])
        exp_ret = float(weights @ mu)
        exp_risk = portfolio_volatility(weights, cov)
        sharpe = (exp_ret - constraints.risk_free_rate) / exp_risk if exp_risk > 0 else 0.0
        te = portfolio_volatility(weights - w_cur, cov)
        info_ratio = (exp_ret - float(w_cur @ mu)) / te if te > 0 else 0.0

        allocations = tuple(
            AllocationRecommendation(
                symbol=a.symbol,
                target_weight=a.target_weight,
                current_weight=a.current_weight,
                action=a.action,
                quantity=a.quantity,
                amount=a.amount,
            )
            for a in plan.actions
        )
        result = OptimizationResult(
            objective=objective,
            constraints=constraints,
            symbols=tuple(symbols),
            weights=tuple(float(x) for x in weights),
            allocations=allocations,
            expected_return=exp_ret,
            expected_risk=exp_risk,
            sharpe_ratio=sharpe,
            diversification_ratio=diversification_ratio(weights, cov),
            concentration_index=concentration_index(weights),
            tracking_error=te,
            information_ratio=info_ratio,
            rebalancing_needed=plan.rebalancing_needed,
            total_rebalance_amount=plan.total_rebalance_amount,
            estimated_costs=plan.estimated_costs,
            data_quality=stats.data_quality,
        )
        logger.info(
            "Optimized %s (%s): return %.4f, risk %.4f, sharpe %.3f, %d trades",
            snapshot.portfolio_id or "portfolio", objective.type.value,
            exp_ret, exp_risk, sharpe, len(plan.trades),
        )
        if stats.data_quality.low_confidence:
            logger.warning("Optimization built on low-confidence data: %s", stats.data_quality.to_dict())
        return result

    @_logged
    def efficient_frontier(
        self,
        holdings: PortfolioSnapshot | str,
        constraints: Constraints | None = None,
        point_count: int = Defaults.FRONTIER_POINTS,
    ) -> list[EfficientFrontierPoint]:
        snapshot = self._snapshot(holdings)
        constraints = constraints or Constraints.from_settings()
        stats, _, _ = self._market(snapshot, Defaults.WINDOW_DAYS)
        self._require_usable(stats)
        return self.frontier.compute(
            stats.expected_returns, stats.annual_covariance, constraints,
            point_count=point_count, symbols=list(stats.symbols), usable=stats.usable_mask,
        )

    @_logged
    def risk_parity(
        self,
        covariance_matrix,
        constraints: Constraints | None = None,
        symbols: list[str] | None = None,
    ) -> RiskParityResult:
        """Risk-parity weights straight from a caller-supplied covariance."""
        constraints = constraints or Constraints.from_settings()
        if isinstance(covariance_matrix, pd.DataFrame):
            symbols = symbols or [str(c) for c in covariance_matrix.columns]
            covariance_matrix = covariance_matrix.to_numpy()
        return self.optimizer.risk_parity(covariance_matrix, constraints, symbols=symbols)

    @_logged
    def rebalance(
        self,
        holdings: PortfolioSnapshot | str,
        target_weights: Mapping[str, float] | OptimizationResult,
        constraints: Constraints | None = None,
    ) -> RebalancePlan:
        """Trades moving the current allocation to *target_weights*."""
        snapshot = self._snapshot(holdings)
        if isinstance(target_weights, OptimizationResult):
            target_weights = target_weights.target_weights
        threshold = constraints.rebalance_threshold if constraints else None

        symbols = snapshot.symbols + [s for s in target_weights if s not in snapshot.symbols]
        prices = self._latest_prices(symbols)
        return self.planner.plan(
            current_weights(snapshot, prices),
            target_weights,
            snapshot.total_value,
            prices,
            quantities={h.symbol: h.quantity for h in snapshot.holdings},
            threshold=threshold,
        )

    @_logged
    def analyze_risk(
        self,
        holdings: PortfolioSnapshot | str,
        benchmark: str | pd.Series | None = None,
        horizon_days: int | None = None,
    ) -> RiskAssessment:
        """VaR/CVaR, ratios, drawdown, benchmark statistics and stress tests,
        plus the correlation matrix, risk breakdown and recommendations.

        *benchmark* is either a benchmark name resolved through the
        benchmark provider or a daily return series.  Loss amounts cover
        *horizon_days* (``risk.horizon_days`` by default).
        """
        snapshot = self._snapshot(holdings)
        window = Defaults.RISK_WINDOW_DAYS
        stats, prices, volumes = self._market(snapshot, window)
        self._require_usable(stats)

        weights = self._holding_weights(snapshot, stats, prices)
        port_returns = self.statistics.portfolio_returns(stats, weights)

        bench_name, bench_returns = None, None
        if isinstance(benchmark, pd.Series):
            bench_name, bench_returns = str(benchmark.name or "benchmark"), benchmark
        elif benchmark:
            bench_name = benchmark
            if self.benchmark_provider is not None:
                bench_returns = self.benchmark_provider.get_benchmark_returns(benchmark, window)

        assessment = self.metrics.assess(
            port_returns,
            snapshot.total_value,
            benchmark_returns=bench_returns,
            benchmark=bench_name,
            concentration_index=concentration_index(weights),
            sector_allocation=sector_allocation(snapshot, prices),
            stress_tests=run_stress_test(snapshot, prices),
            data_quality=stats.data_quality,
            asset_returns=stats.returns,
            liquidity_risk=liquidity_risk(snapshot, prices, volumes),
            horizon_days=horizon_days,
        )
        logger.info(
            "Risk for %s: VaR95 %.4f, vol %.4f, max drawdown %.4f",
            snapshot.portfolio_id or "portfolio",
            assessment.var.get(0.95, 0.0), assessment.volatility,
            assessment.max_drawdown.max_drawdown,
        )
        return assessment

    @_logged
    def stress_test(
        self,
        holdings: PortfolioSnapshot | str,
        scenarios: Iterable[StressScenario] | None = None,
    ) -> list[StressTestResult]:
        snapshot = self._snapshot(holdings)
        prices = self._latest_prices(snapshot.symbols)
        return run_stress_test(snapshot, prices, scenarios)

    @_logged
    def factor_exposure(
        self,
        holdings: PortfolioSnapshot | str,
        factors: Mapping[str, pd.Series] | list[str],
    ) -> FactorExposure:
        """Regress portfolio returns on factor series (or factor tickers)."""
        snapshot = self._snapshot(holdings)
        window = Defaults.RISK_WINDOW_DAYS
        stats, prices, _ = self._market(snapshot, window)
        weights = self._holding_weights(snapshot, stats, prices)
        port_returns = self.statistics.portfolio_returns(stats, weights)

        if not isinstance(factors, Mapping):
            if self.benchmark_provider is None:
                raise InsufficientData("No benchmark provider to resolve factor tickers")
            factors = {
                name: self.benchmark_provider.get_benchmark_returns(name, window)
                for name in factors
            }
        return regress_factors(port_returns, factors)

    def snapshot_many(
        self,
        portfolio_ids: list[str],
        benchmark: str | None = None,
    ) -> SnapshotBatch:
        """Risk assessments for many portfolios, evaluated in parallel.

        Each portfolio is independent; a failure is recorded in
        ``SnapshotBatch.errors`` and does not affect the others.
        """
        batch = SnapshotBatch()
        if not portfolio_ids:
            return batch
        workers = min(self.max_workers, len(portfolio_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_id = {
                executor.submit(self.analyze_risk, pid, benchmark): pid for pid in portfolio_ids
            }
            for future in as_completed(future_to_id):
                pid = future_to_id[future]
                try:
                    batch.results[pid] = future.result()
                except (PortfolioEngineError, KeyError) as e:
                    logger.error("Snapshot failed for %s: %s", pid, e)
                    batch.errors[pid] = str(e)
        logger.info(
            "Snapshot batch: %d ok, %d failed", len(batch.results), len(batch.errors),
        )
        return batch
