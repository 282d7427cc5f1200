"""Tests for portfolio_engine.analysis.risk -- VaR, drawdown, ratios, stress tests, factors,
correlation, liquidity and recommendations."""

from dataclasses import replace

import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from portfolio_engine.analysis.models import DataQuality, RiskBreakdown, StressScenario
from portfolio_engine.analysis.risk import (
    SATURATED_RATIO,
    RiskMetrics,
    correlation_matrix,
    default_scenarios,
    factor_exposure,
    liquidity_risk,
    market_values,
    risk_recommendations,
    sector_allocation,
    stress_test,
)
from portfolio_engine.data_sources.base import Holding, PortfolioSnapshot
from portfolio_engine.errors import InsufficientData


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_return_series(mean=0.0004, std=0.015, n=252, seed=42):
    """Generate a return series with known parameters."""
    np.random.seed(seed)
    dates = pd.bdate_range(start="2023-01-02", periods=n)
    return pd.Series(np.random.normal(mean, std, n), index=dates, name="returns")


@pytest.fixture
def metrics():
    return RiskMetrics(trading_days=252, risk_free_rate=0.02, confidence_levels=(0.95, 0.99))


@pytest.fixture
def two_holdings():
    snap = PortfolioSnapshot(
        holdings=(
            Holding("A", 10, 80.0, sector="Technology"),
            Holding("B", 20, 40.0, sector="Energy"),
        ),
        total_value=2_000.0,
    )
    return snap, {"A": 100.0, "B": 50.0}


# ---------------------------------------------------------------------------
# Historical VaR / CVaR
# ---------------------------------------------------------------------------

class TestHistoricalVaR:

    def test_index_of_sorted_returns(self):
        r = np.linspace(-0.05, 0.049, 100)
        # floor(0.05 * 100) = 5 -> sixth smallest
        assert RiskMetrics.historical_var(r, 0.95) == pytest.approx(0.045)
        assert RiskMetrics.historical_var(r, 0.99) == pytest.approx(0.049)

    def test_single_large_loss_outside_95_cutoff(self):
        r = np.zeros(100)
        r[37] = -0.5
        assert RiskMetrics.historical_var(r, 0.95) == 0.0
        assert RiskMetrics.conditional_var(r, 0.95) == pytest.approx(0.5 / 6)

    def test_order_independent(self):
        r = np.linspace(-0.05, 0.049, 100)
        shuffled = np.random.default_rng(0).permutation(r)
        assert RiskMetrics.historical_var(shuffled, 0.95) == RiskMetrics.historical_var(r, 0.95)

    def test_var99_at_least_var95(self):
        r = _make_return_series()
        assert RiskMetrics.historical_var(r, 0.99) >= RiskMetrics.historical_var(r, 0.95)

    def test_all_gains_gives_zero(self):
        assert RiskMetrics.historical_var([0.01, 0.02, 0.03], 0.95) == 0.0
        assert RiskMetrics.conditional_var([0.01, 0.02, 0.03], 0.95) == 0.0

    def test_empty_gives_zero(self):
        assert RiskMetrics.historical_var([], 0.95) == 0.0
        assert RiskMetrics.conditional_var([], 0.95) == 0.0

    def test_nan_ignored(self):
        r = np.append(np.linspace(-0.05, 0.049, 100), np.nan)
        assert RiskMetrics.historical_var(r, 0.95) == pytest.approx(0.045)

    @pytest.mark.parametrize("c", [0.0, 1.0, 1.5])
    def test_invalid_confidence(self, c):
        with pytest.raises(ValueError):
            RiskMetrics.historical_var([0.01, -0.01], c)

    def test_cvar_mean_of_tail(self):
        r = np.linspace(-0.05, 0.049, 100)
        assert RiskMetrics.conditional_var(r, 0.95) == pytest.approx(0.0475)

    def test_cvar_at_least_var(self):
        r = _make_return_series()
        for c in (0.95, 0.99):
            assert RiskMetrics.conditional_var(r, c) >= RiskMetrics.historical_var(r, c)


class TestParametricVaR:

    def test_normal_formula(self):
        r = _make_return_series(mean=0.001, std=0.02)
        expected = -(r.mean() + norm.ppf(0.05) * r.std(ddof=1))
        assert RiskMetrics.parametric_var(r, 0.95) == pytest.approx(expected)

    def test_floored_at_zero(self):
        r = _make_return_series(mean=0.5, std=0.001)
        assert RiskMetrics.parametric_var(r, 0.95) == 0.0

    def test_short_series(self):
        assert RiskMetrics.parametric_var([0.01], 0.95) == 0.0


# ---------------------------------------------------------------------------
# Drawdown
# ---------------------------------------------------------------------------

class TestMaxDrawdown:

    def test_known_series_with_dates(self):
        dates = pd.bdate_range("2024-01-01", periods=6)
        values = pd.Series([100, 120, 90, 110, 80, 130], index=dates, dtype=float)
        dd = RiskMetrics.max_drawdown(values)
        assert dd.max_drawdown == pytest.approx(40 / 120)
        assert dd.peak_date == dates[1]
        assert dd.trough_date == dates[4]
        assert dd.to_dict()["peak_date"] == dates[1].strftime("%Y-%m-%d")

    def test_monotonic_increasing(self):
        dd = RiskMetrics.max_drawdown(pd.Series([1.0, 2.0, 3.0]))
        assert dd.max_drawdown == 0.0
        assert dd.peak_date is None

    def test_short_series(self):
        assert RiskMetrics.max_drawdown(pd.Series([5.0])).max_drawdown == 0.0

    def test_wealth_index(self):
        wi = RiskMetrics.wealth_index(pd.Series([0.1, -0.5]))
        assert list(wi.round(10)) == [1.0, 1.1, 0.55]
        assert list(wi.index) == [-1, 0, 1]

    def test_wealth_index_dated_base(self):
        dates = pd.bdate_range("2024-01-02", periods=3)
        wi = RiskMetrics.wealth_index(pd.Series([0.01, 0.02, -0.01], index=dates))
        assert wi.iloc[0] == 1.0
        assert wi.index[0] == dates[0] - (dates[1] - dates[0])
        assert wi.index[1:].equals(dates)

    def test_wealth_index_empty(self):
        assert RiskMetrics.wealth_index(pd.Series(dtype=float)).empty

    def test_first_period_loss_counts(self):
        wi = RiskMetrics.wealth_index(pd.Series([-0.5, 0.0, 0.0]))
        assert RiskMetrics.max_drawdown(wi).max_drawdown == pytest.approx(0.5)

    def test_steady_losses_from_initial_investment(self):
        wi = RiskMetrics.wealth_index(pd.Series([-0.1] * 3))
        assert RiskMetrics.max_drawdown(wi).max_drawdown == pytest.approx(1 - 0.9 ** 3)

    def test_single_losing_period(self):
        wi = RiskMetrics.wealth_index(pd.Series([-0.2]))
        assert RiskMetrics.max_drawdown(wi).max_drawdown == pytest.approx(0.2)


# ---------------------------------------------------------------------------
# Benchmark-relative
# ---------------------------------------------------------------------------

class TestBenchmarkRelative:

    def test_double_beta(self):
        bench = _make_return_series(seed=1)
        port = bench * 2
        assert RiskMetrics.beta(port, bench) == pytest.approx(2.0)
        assert RiskMetrics.alpha(port, bench) == pytest.approx(bench.mean() * 2 - 2 * bench.mean())
        assert RiskMetrics.correlation(port, bench) == pytest.approx(1.0)

    def test_constant_benchmark_beta_zero(self):
        port = _make_return_series()
        bench = pd.Series(0.0, index=port.index)
        assert RiskMetrics.beta(port, bench) == 0.0
        assert RiskMetrics.correlation(port, bench) == 0.0

    def test_identical_series(self):
        r = _make_return_series()
        assert RiskMetrics.tracking_error(r, r) == 0.0
        assert RiskMetrics.information_ratio(r, r) == 0.0

    def test_tracking_error_is_std_of_active_return(self):
        port = _make_return_series(seed=1)
        bench = _make_return_series(seed=2)
        assert RiskMetrics.tracking_error(port, bench) == pytest.approx((port - bench).std(ddof=1))

    def test_aligned_on_dates(self):
        port = _make_return_series(n=100)
        bench = port.iloc[50:] * 1.5
        assert RiskMetrics.beta(port, bench) == pytest.approx(1 / 1.5)

    def test_no_overlap(self):
        port = _make_return_series()
        bench = pd.Series([0.01, 0.02], index=pd.bdate_range("1990-01-01", periods=2))
        assert RiskMetrics.beta(port, bench) == 0.0
        assert RiskMetrics.alpha(port, bench) == 0.0
        assert RiskMetrics.tracking_error(port, bench) == 0.0


# ---------------------------------------------------------------------------
# Ratios
# ---------------------------------------------------------------------------

class TestRatios:

    def test_volatility_annualized(self, metrics):
        r = _make_return_series()
        assert metrics.volatility(r) == pytest.approx(r.std(ddof=1) * np.sqrt(252))

    def test_sharpe_known_inputs(self, metrics):
        r = _make_return_series()
        excess = r - 0.02 / 252
        expected = excess.mean() / excess.std(ddof=1) * np.sqrt(252)
        assert metrics.sharpe_ratio(r) == pytest.approx(expected)

    def test_sharpe_zero_std(self, metrics):
        assert metrics.sharpe_ratio([0.001] * 50) == 0.0

    def test_sortino_semideviation(self, metrics):
        r = np.array([0.02, -0.01, 0.015, -0.02, 0.01])
        excess = r - 0.02 / 252
        downside = np.sqrt(np.mean(np.minimum(excess, 0) ** 2))
        assert metrics.sortino_ratio(r) == pytest.approx(excess.mean() / downside * np.sqrt(252))

    def test_sortino_saturates_without_downside(self, metrics):
        assert metrics.sortino_ratio([0.01] * 30) == SATURATED_RATIO

    def test_sortino_zero_when_flat(self):
        assert RiskMetrics(risk_free_rate=0.0).sortino_ratio([0.0] * 30) == 0.0

    def test_calmar_saturates_without_drawdown(self, metrics):
        assert metrics.calmar_ratio([0.01] * 30) == SATURATED_RATIO

    def test_calmar_negative_when_losing(self, metrics):
        assert metrics.calmar_ratio([-0.01] * 30) < 0

    def test_calmar_known(self, metrics):
        r = [0.1, -0.5, 0.2]
        annual = np.mean(r) * 252
        # wealth 1.1 -> 0.55 -> 0.66; drawdown from 1.1 to 0.55
        assert metrics.calmar_ratio(r) == pytest.approx(annual / 0.5)

    def test_calmar_counts_first_period_loss(self, metrics):
        r = [-0.1, -0.1, -0.1]
        assert metrics.calmar_ratio(r) == pytest.approx(-0.1 * 252 / (1 - 0.9 ** 3))

    def test_no_nan_on_empty(self, metrics):
        for fn in (metrics.volatility, metrics.sharpe_ratio, metrics.sortino_ratio, metrics.calmar_ratio):
            assert fn([]) == 0.0


# ---------------------------------------------------------------------------
# assess
# ---------------------------------------------------------------------------

class TestAssess:

    def test_fields(self, metrics):
        r = _make_return_series()
        a = metrics.assess(r, total_value=1_000_000)
        assert set(a.var) == {0.95, 0.99}
        assert a.var[0.99] >= a.var[0.95]
        assert a.var_amount[0.95] == pytest.approx(a.var[0.95] * 1_000_000)
        assert a.cvar_amount[0.99] == pytest.approx(a.cvar[0.99] * 1_000_000)
        assert a.beta is None
        assert a.benchmark is None

    def test_with_benchmark(self, metrics):
        r = _make_return_series(seed=1)
        b = _make_return_series(seed=2)
        a = metrics.assess(r, 1_000.0, benchmark_returns=b, benchmark="IDX")
        assert a.benchmark == "IDX"
        assert a.beta == pytest.approx(RiskMetrics.beta(r, b))
        assert a.tracking_error > 0

    def test_benchmark_without_returns_omitted(self, metrics):
        a = metrics.assess(_make_return_series(), 1_000.0, benchmark_returns=pd.Series(dtype=float),
                           benchmark="IDX")
        assert a.benchmark is None
        assert a.information_ratio is None

    def test_to_dict_json_ready(self, metrics):
        d = metrics.assess(_make_return_series(), 1_000.0).to_dict()
        assert set(d["var"]) == {"0.95", "0.99"}
        assert d["benchmark"]["beta"] is None
        assert isinstance(d["volatility"], float)


# ---------------------------------------------------------------------------
# Holdings valuation and stress tests
# ---------------------------------------------------------------------------

class TestHoldingsValuation:

    def test_market_values(self, two_holdings):
        snap, prices = two_holdings
        assert market_values(snap, prices) == {"A": 1_000.0, "B": 1_000.0}

    def test_market_values_cost_fallback(self, two_holdings):
        snap, _ = two_holdings
        assert market_values(snap, {"A": 100.0}) == {"A": 1_000.0, "B": 800.0}

    def test_sector_allocation(self, two_holdings):
        snap, prices = two_holdings
        assert sector_allocation(snap, prices) == {"Technology": 0.5, "Energy": 0.5}

    def test_unknown_sector(self):
        snap = PortfolioSnapshot(holdings=(Holding("A", 1, 10.0),), total_value=10.0)
        assert sector_allocation(snap, {}) == {"Unknown": 1.0}


class TestStressTest:

    def test_uniform_shock(self, two_holdings):
        snap, prices = two_holdings
        [res] = stress_test(snap, prices, [StressScenario("crash", -0.20)])
        assert res.portfolio_impact == pytest.approx(-400.0)
        assert res.impact_percent == pytest.approx(-20.0)
        assert res.recovery_days == 40

    def test_worst_holding_tie_goes_to_first(self, two_holdings):
        snap, prices = two_holdings
        [res] = stress_test(snap, prices, [StressScenario("crash", -0.20)])
        assert res.worst_holding["symbol"] == "A"
        assert res.worst_holding["impact"] == pytest.approx(-200.0)
        assert res.worst_holding["impact_percent"] == pytest.approx(-10.0)

    def test_sector_shock_overrides(self, two_holdings):
        snap, prices = two_holdings
        scenario = StressScenario("oil", -0.10, sector_shocks={"Energy": -0.5})
        [res] = stress_test(snap, prices, [scenario])
        assert res.portfolio_impact == pytest.approx(-600.0)
        assert res.worst_holding["symbol"] == "B"
        assert res.recovery_days == 20

    def test_default_scenarios(self, two_holdings):
        snap, prices = two_holdings
        results = stress_test(snap, prices)
        assert len(results) == len(default_scenarios()) == 5
        crisis = next(r for r in results if "crisis" in r.scenario.lower())
        assert crisis.impact_percent == pytest.approx(-35.0)
        assert crisis.recovery_days == 70

    def test_empty_holdings(self):
        snap = PortfolioSnapshot(holdings=(), total_value=0.0)
        assert stress_test(snap, {}) == []

    def test_to_dict(self, two_holdings):
        snap, prices = two_holdings
        d = stress_test(snap, prices, [StressScenario("crash", -0.20)])[0].to_dict()
        assert d["scenario"] == "crash"
        assert d["worst_holding"]["symbol"] == "A"


# ---------------------------------------------------------------------------
# Factor exposure
# ---------------------------------------------------------------------------

class TestFactorExposure:

    def test_recovers_known_betas(self):
        f1 = _make_return_series(seed=1)
        f2 = _make_return_series(seed=2)
        port = 0.0001 + 0.5 * f1 + 1.5 * f2
        fe = factor_exposure(port, {"MKT": f1, "SIZE": f2})
        assert fe.betas["MKT"] == pytest.approx(0.5)
        assert fe.betas["SIZE"] == pytest.approx(1.5)
        assert fe.intercept == pytest.approx(0.0001)
        assert fe.r_squared == pytest.approx(1.0)
        assert fe.observations == 252

    def test_accepts_dataframe(self):
        f1 = _make_return_series(seed=1)
        fe = factor_exposure(f1 * 2, pd.DataFrame({"MKT": f1}))
        assert fe.betas["MKT"] == pytest.approx(2.0)

    def test_no_factors(self):
        with pytest.raises(InsufficientData):
            factor_exposure(_make_return_series(), {})

    def test_too_few_observations(self):
        f1 = _make_return_series(n=3)
        with pytest.raises(InsufficientData):
            factor_exposure(f1, {"A": f1, "B": f1 * 2})


# ---------------------------------------------------------------------------
# Horizon scaling and risk breakdown
# ---------------------------------------------------------------------------

class TestHorizon:

    def test_square_root_of_time(self):
        assert RiskMetrics.scale_to_horizon(0.02, 1) == pytest.approx(0.02)
        assert RiskMetrics.scale_to_horizon(0.02, 10) == pytest.approx(0.02 * np.sqrt(10))

    def test_invalid_horizon(self):
        with pytest.raises(ValueError):
            RiskMetrics.scale_to_horizon(0.02, 0)

    def test_assess_scales_amounts_not_fractions(self, metrics):
        r = _make_return_series()
        a = metrics.assess(r, 1_000_000, horizon_days=10)
        assert a.horizon_days == 10
        assert a.var_amount[0.95] == pytest.approx(a.var[0.95] * 1_000_000 * np.sqrt(10))
        assert a.cvar_amount[0.99] == pytest.approx(a.cvar[0.99] * 1_000_000 * np.sqrt(10))

    def test_instance_default_horizon(self):
        m = RiskMetrics(confidence_levels=(0.95,), horizon_days=5)
        a = m.assess(_make_return_series(), 100.0)
        assert a.horizon_days == 5
        assert a.var_amount[0.95] == pytest.approx(a.var[0.95] * 100.0 * np.sqrt(5))


class TestRiskDecomposition:

    def test_parts_add_to_total_variance(self, metrics):
        b = _make_return_series(seed=2)
        noise = _make_return_series(mean=0.0, std=0.005, seed=3)
        p = 1.2 * b + noise
        sys_vol, idio_vol = metrics.risk_decomposition(p, b)
        assert sys_vol ** 2 + idio_vol ** 2 == pytest.approx(metrics.volatility(p) ** 2)
        assert sys_vol > idio_vol > 0

    def test_pure_market_exposure_has_no_residual(self, metrics):
        b = _make_return_series(seed=2)
        sys_vol, idio_vol = metrics.risk_decomposition(2.0 * b, b)
        assert sys_vol == pytest.approx(metrics.volatility(2.0 * b))
        assert idio_vol == pytest.approx(0.0, abs=1e-6)

    def test_no_overlap(self, metrics):
        b = _make_return_series(seed=2)
        p = pd.Series([0.01], index=[pd.Timestamp("1999-01-01")])
        assert metrics.risk_decomposition(p, b) == (0.0, 0.0)

    def test_assess_fills_breakdown(self, metrics):
        b = _make_return_series(seed=2)
        a = metrics.assess(_make_return_series(seed=1), 1_000.0, benchmark_returns=b, benchmark="IDX",
                           concentration_index=0.4, liquidity_risk=12.5)
        assert a.breakdown.concentration_risk == pytest.approx(40.0)
        assert a.breakdown.liquidity_risk == pytest.approx(12.5)
        assert a.breakdown.systematic_risk is not None
        assert a.to_dict()["breakdown"]["unsystematic_risk"] >= 0

    def test_breakdown_without_benchmark(self, metrics):
        a = metrics.assess(_make_return_series(), 1_000.0)
        assert a.breakdown.systematic_risk is None
        assert a.to_dict()["breakdown"]["systematic_risk"] is None


class TestCorrelationMatrix:

    def test_matches_pandas(self):
        np.random.seed(5)
        df = pd.DataFrame(np.random.normal(0, 0.01, (60, 3)), columns=["A", "B", "C"])
        m = correlation_matrix(df)
        assert set(m) == {"A", "B", "C"}
        assert m["A"]["A"] == 1.0
        assert m["A"]["C"] == pytest.approx(df["A"].corr(df["C"]))
        assert m["B"]["C"] == pytest.approx(m["C"]["B"])

    def test_constant_column(self):
        df = pd.DataFrame({"A": [0.01, -0.02, 0.03], "FLAT": [0.0, 0.0, 0.0]})
        m = correlation_matrix(df)
        assert m["A"]["FLAT"] == 0.0
        assert m["FLAT"]["FLAT"] == 1.0

    def test_empty(self):
        assert correlation_matrix(pd.DataFrame()) == {}

    def test_assess_carries_matrix(self, metrics):
        df = pd.DataFrame({"A": _make_return_series(seed=1), "B": _make_return_series(seed=2)})
        a = metrics.assess(df.mean(axis=1), 1_000.0, asset_returns=df)
        assert set(a.correlation_matrix["A"]) == {"A", "B"}
        assert a.to_dict()["correlation_matrix"]["B"]["B"] == 1.0


class TestLiquidityRisk:

    def test_liquid_holdings_score_low(self, two_holdings):
        snap, prices = two_holdings
        assert liquidity_risk(snap, prices, {"A": 1e6, "B": 1e6}) == pytest.approx(0.0, abs=0.01)

    def test_partial_difficulty(self, two_holdings):
        snap, prices = two_holdings
        # A: 10 / (0.1 * 10) = 10 days -> capped at 1; B: 20 / (0.1 * 200) = 1 day -> 0.2
        score = liquidity_risk(snap, prices, {"A": 10, "B": 200}, participation_rate=0.1, liquidation_days=5)
        assert score == pytest.approx(100 * (0.5 * 1.0 + 0.5 * 0.2))

    def test_missing_volume_is_illiquid(self, two_holdings):
        snap, prices = two_holdings
        assert liquidity_risk(snap, prices, {"A": 1e6}) == pytest.approx(50.0, abs=0.01)

    def test_invalid_parameters(self, two_holdings):
        snap, prices = two_holdings
        with pytest.raises(ValueError):
            liquidity_risk(snap, prices, {}, participation_rate=0.0)


class TestRecommendations:

    def _calm(self, metrics):
        r = pd.Series([0.001, -0.001] * 50, index=pd.bdate_range("2024-01-02", periods=100))
        a = metrics.assess(r, 1_000.0, concentration_index=0.1,
                           sector_allocation={"Tech": 0.3, "Energy": 0.3, "Health": 0.4})
        return a

    def test_within_limits(self, metrics):
        recs = self._calm(metrics).recommendations
        assert len(recs) == 1
        assert "within limits" in recs[0]

    def test_concentration_and_sector(self, metrics):
        a = replace(self._calm(metrics), breakdown=RiskBreakdown(concentration_risk=60.0),
                    sector_allocation={"Tech": 0.8, "Energy": 0.2})
        recs = risk_recommendations(a)
        assert any("Concentration" in r for r in recs)
        assert any(r.startswith("Tech is 80%") for r in recs)

    def test_liquidity_and_beta(self, metrics):
        a = replace(self._calm(metrics), breakdown=RiskBreakdown(liquidity_risk=55.0), beta=1.8)
        recs = risk_recommendations(a)
        assert any("Liquidity" in r for r in recs)
        assert any("Beta of 1.80" in r for r in recs)

    def test_horizon_var_limit(self, metrics):
        a = replace(self._calm(metrics), var={0.95: 0.06, 0.99: 0.09}, horizon_days=10)
        recs = risk_recommendations(a)
        # 0.06 * sqrt(10) ~ 19% over a 15% limit
        assert any(r.startswith("10-day VaR(95%)") for r in recs)

    def test_low_confidence_data(self, metrics):
        a = replace(self._calm(metrics), data_quality=DataQuality(flat_symbols=("X",)))
        assert any("synthetic" in r for r in risk_recommendations(a))

    def test_custom_limits(self, metrics):
        a = self._calm(metrics)
        recs = risk_recommendations(a, {"sector": 0.35})
        assert any(r.startswith("Health is 40%") for r in recs)
