"""Target-weight optimization under per-asset box constraints.

Objectives:
    EQUAL_WEIGHT  1/N per asset.
    MIN_RISK      global minimum variance, ``w = Σ⁻¹1 / 1ᵗΣ⁻¹1``.
    MAX_SHARPE    tangency portfolio, ``w ∝ Σ⁻¹(μ - r_f)``.
    MAX_RETURN    greedy fill by expected return under a volatility ceiling.
    RISK_PARITY   fixed-point iteration to equal risk contributions.

Every objective returns weights that sum to 1 and lie inside
``[min_weight, max_weight]``; when the bounds make that impossible
``InfeasibleConstraints`` is raised.  Inputs are index-aligned arrays in the
symbol order established by the StatisticsBuilder, with annualized expected
returns and covariance.
"""

from __future__ import annotations

from dataclasses import replace

import numpy as np
from scipy.optimize import minimize

from portfolio_engine.analysis.linalg import (
    diversification_ratio,
    invert,
    portfolio_variance,
    portfolio_volatility,
    risk_contributions,
    validate_covariance_matrix,
)
from portfolio_engine.analysis.models import (
    Constraints,
    ObjectiveType,
    OptimizationObjective,
    RiskParityResult,
)
from portfolio_engine.config import Defaults
from portfolio_engine.errors import InfeasibleConstraints, InsufficientData
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("optimizer")

_SUM_TOL = 1e-9
_BOUND_TOL = 1e-12
_SLSQP_OPTIONS = {"maxiter": 1000, "ftol": 1e-12}


# ---------------------------------------------------------------------------
# Box constraints
# ---------------------------------------------------------------------------


def apply_box_constraints(
    weights, min_weight: float = 0.0, max_weight: float = 1.0, max_iter: int = 100,
) -> np.ndarray:
    """Project *weights* into ``[min_weight, max_weight]`` summing to 1.

    Weights are clipped to the box and the assets not pinned at a bound are
    rescaled to absorb the difference, repeating until the sum settles.  Any
    residual is spread in proportion to each asset's remaining room.

    Raises:
        InfeasibleConstraints: If no vector in the box sums to 1.
    """
    w = np.nan_to_num(np.asarray(weights, dtype=float), nan=0.0, posinf=0.0, neginf=0.0)
    n = len(w)
    Constraints(min_weight=min_weight, max_weight=max_weight).check_feasible(n)
    lo, hi = min_weight, max_weight

    for _ in range(max_iter):
        w = np.clip(w, lo, hi)
        total = w.sum()
        if abs(total - 1.0) <= _BOUND_TOL:
            return w
        pinned = (w <= lo + _BOUND_TOL) | (w >= hi - _BOUND_TOL)
        free_sum = w[~pinned].sum()
        budget = 1.0 - w[pinned].sum()
        if free_sum <= _BOUND_TOL or budget <= 0:
            break
        w[~pinned] *= budget / free_sum

    w = np.clip(w, lo, hi)
    excess = 1.0 - w.sum()
    room = (hi - w) if excess > 0 else (w - lo)
    if room.sum() > _BOUND_TOL:
        w = np.clip(w + excess * room / room.sum(), lo, hi)
    if abs(w.sum() - 1.0) > _SUM_TOL:
        raise InfeasibleConstraints(
            f"Could not renormalize weights into [{lo}, {hi}] (sum={w.sum():.6f})"
        )
    return w


def reserve_excluded(
    constraints: Constraints, n_usable: int, n_excluded: int,
) -> tuple[Constraints, float, float]:
    """Sub-problem constraints when *n_excluded* assets sit out the optimization.

    Excluded assets hold the lowest weight the box allows: ``min_weight``,
    raised only as far as needed for the usable assets to fill the rest
    under ``max_weight``.  The usable assets share the remaining budget, so
    the sub-problem's bounds, risk ceiling and risk-free rate are divided
    by it to keep their portfolio-level meaning.

    Returns:
        (usable constraints, excluded weight, usable budget)
    """
    lo, hi = constraints.min_weight, constraints.max_weight
    excluded_weight = min(hi, max(lo, (1.0 - n_usable * hi) / n_excluded))
    budget = 1.0 - n_excluded * excluded_weight
    if budget <= _BOUND_TOL:
        raise InfeasibleConstraints(
            f"No weight left for {n_usable} usable assets after {n_excluded} excluded ones"
        )
    usable = replace(
        constraints,
        min_weight=min(lo / budget, 1.0),
        max_weight=min(hi / budget, 1.0),
        max_risk=None if constraints.max_risk is None else constraints.max_risk / budget,
        risk_free_rate=constraints.risk_free_rate / budget,
    )
    return usable, excluded_weight, budget


# =========================================================================
# Optimizer
# =========================================================================


class Optimizer:
    """Pure per-objective weight solvers.

    Attributes:
        max_iterations: Iteration cap for RISK_PARITY.
        tolerance: L1 weight-change threshold at which RISK_PARITY stops.
    """

    def __init__(
        self,
        max_iterations: int = Defaults.RISK_PARITY_MAX_ITER,
        tolerance: float = Defaults.RISK_PARITY_TOL,
    ) -> None:
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    # ----- dispatch --------------------------------------------------------

    def optimize(
        self,
        objective: ObjectiveType | OptimizationObjective | str,
        expected_returns,
        covariance,
        constraints: Constraints | None = None,
        usable=None,
    ) -> np.ndarray:
        """Target weights for *objective*.

        Args:
            objective: Objective type (or a descriptor carrying one).
            expected_returns: Length-N annualized expected returns.
            covariance: N x N annualized covariance.
            constraints: Box bounds, risk ceiling and risk-free rate.
            usable: Optional length-N boolean mask.  Assets marked False
                (no price history) are held at the lowest weight the box
                allows and the objective is solved over the rest.
                EQUAL_WEIGHT reads no statistics and ignores the mask.

        Returns:
            Length-N weight array summing to 1.
        """
        if isinstance(objective, OptimizationObjective):
            objective = objective.type
        objective = ObjectiveType(objective)
        constraints = constraints or Constraints()

        mu = np.asarray(expected_returns, dtype=float).ravel()
        n = len(mu)
        if n == 0:
            raise InsufficientData("Cannot optimize an empty portfolio")
        constraints.check_feasible(n)
        if n == 1:
            return np.array([1.0])

        if objective is ObjectiveType.EQUAL_WEIGHT:
            return self.equal_weight(n, constraints)

        if usable is not None:
            mask = np.asarray(usable, dtype=bool).ravel()
            if mask.shape != (n,):
                raise ValueError(f"usable mask has {mask.size} entries for {n} assets")
            if not mask.all():
                return self._optimize_usable(objective, mu, covariance, constraints, mask)

        cov = validate_covariance_matrix(covariance)
        if cov.shape[0] != n:
            raise ValueError(
                f"Covariance is {cov.shape[0]}x{cov.shape[0]} but {n} expected returns were given"
            )

        if objective is ObjectiveType.MIN_RISK:
            return self.min_risk(cov, constraints)
        if objective is ObjectiveType.MAX_SHARPE:
            return self.max_sharpe(mu, cov, constraints)
        if objective is ObjectiveType.MAX_RETURN:
            return self.max_return(mu, cov, constraints)
        return np.asarray(self.risk_parity(cov, constraints).weights)

    # ----- internal helpers ------------------------------------------------

    def _optimize_usable(
        self, objective: ObjectiveType, mu: np.ndarray, covariance,
        constraints: Constraints, mask: np.ndarray,
    ) -> np.ndarray:
        n_usable, n_excluded = int(mask.sum()), int((~mask).sum())
        if n_usable == 0:
            raise InsufficientData("No asset has usable price history")
        sub, excluded_weight, budget = reserve_excluded(constraints, n_usable, n_excluded)
        cov = np.asarray(covariance, dtype=float).reshape(len(mu), len(mu))
        w = np.full(len(mu), excluded_weight)
        w[mask] = budget * self.optimize(objective, mu[mask], cov[np.ix_(mask, mask)], sub)
        logger.warning(
            "%d assets without price history held at weight %.4f; %s solved over %d assets",
            n_excluded, excluded_weight, objective.value, n_usable,
        )
        return w

    @staticmethod
    def _bounds(n: int, constraints: Constraints) -> tuple:
        return tuple((constraints.min_weight, constraints.max_weight) for _ in range(n))

    def solve_constrained(self, fun, x0: np.ndarray, constraints: Constraints, extra: list | None = None):
        """Run SLSQP under the box and sum-to-one; returns (weights, success)."""
        sum_to_one = {"type": "eq", "fun": lambda w: np.sum(w) - 1.0}
        res = minimize(
            fun, x0, method="SLSQP", bounds=self._bounds(len(x0), constraints),
            constraints=[sum_to_one] + (extra or []), options=_SLSQP_OPTIONS,
        )
        if not res.success:
            logger.debug("SLSQP did not converge: %s", res.message)
        w = apply_box_constraints(res.x, constraints.min_weight, constraints.max_weight)
        return w, bool(res.success)

    # ----- EQUAL_WEIGHT ----------------------------------------------------

    @staticmethod
    def equal_weight(n: int, constraints: Constraints | None = None) -> np.ndarray:
        constraints = constraints or Constraints()
        return apply_box_constraints(np.ones(n) / n, constraints.min_weight, constraints.max_weight)

    # ----- MIN_RISK --------------------------------------------------------

    def min_risk(self, cov: np.ndarray, constraints: Constraints) -> np.ndarray:
        """Global minimum-variance weights.

        The closed form comes from the real inverse of Σ.  When it falls
        outside the box, its projection seeds an SLSQP variance minimization
        and the lower-variance of the two is kept.
        """
        n = cov.shape[0]
        ones = np.ones(n)
        raw = invert(cov) @ ones
        closed = raw / (ones @ raw)
        projected = apply_box_constraints(closed, constraints.min_weight, constraints.max_weight)
        if np.allclose(projected, closed, atol=1e-10):
            return projected

        logger.debug("Minimum-variance closed form violates bounds; refining with SLSQP")
        refined, _ = self.solve_constrained(lambda w: float(w @ cov @ w), projected, constraints)
        if portfolio_variance(refined, cov) < portfolio_variance(projected, cov):
            return refined
        return projected

    # ----- MAX_SHARPE ------------------------------------------------------

    def max_sharpe(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> np.ndarray:
        """Tangency portfolio ``w ∝ Σ⁻¹(μ - r_f)``.

        Falls back to an SLSQP search over the box when no asset's excess
        return supports a long-only tangency (non-positive normalizer) or
        when the closed form breaks the bounds.
        """
        rf = constraints.risk_free_rate
        n = len(mu)

        def sharpe(w: np.ndarray) -> float:
            vol = portfolio_volatility(w, cov)
            return (float(w @ mu) - rf) / vol if vol > 0 else 0.0

        raw = invert(cov) @ (mu - rf)
        denom = raw.sum()
        candidates: list[np.ndarray] = []
        if denom > 0:
            closed = raw / denom
            projected = apply_box_constraints(closed, constraints.min_weight, constraints.max_weight)
            if np.allclose(projected, closed, atol=1e-10):
                return projected
            candidates.append(projected)
        else:
            logger.warning("No tangency portfolio with positive weight sum; using constrained search")

        def neg_sharpe(w: np.ndarray) -> float:
            vol = np.sqrt(max(w @ cov @ w, 0.0))
            if vol < 1e-12:
                return 1e6
            return -(w @ mu - rf) / vol

        x0 = candidates[0] if candidates else self.equal_weight(n, constraints)
        refined, _ = self.solve_constrained(neg_sharpe, x0, constraints)
        candidates.append(refined)
        return max(candidates, key=sharpe)

    # ----- MAX_RETURN ------------------------------------------------------

    def max_return(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> np.ndarray:
        """Greedy fill by descending expected return under ``max_risk``.

        Every asset first receives ``min_weight``.  Assets are then visited
        in descending expected-return order (ties keep input order) and
        topped up to ``max_weight`` while budget remains.  When a full
        top-up would push the volatility of the weights allocated so far
        above ``max_risk``, the largest admissible top-up is found by
        bisection and the greedy pass stops.  Whatever is left is split
        equally among the assets the pass never reached.
        """
        lo, hi = constraints.min_weight, constraints.max_weight
        ceiling = constraints.max_risk
        n = len(mu)
        w = np.full(n, lo)
        remaining = 1.0 - n * lo
        order = np.argsort(-mu, kind="stable")
        touched: set[int] = set()

        for i in order:
            if remaining <= _BOUND_TOL:
                break
            increment = min(hi - lo, remaining)
            candidate = w.copy()
            candidate[i] += increment
            if ceiling is not None and portfolio_volatility(candidate, cov) > ceiling:
                increment = self._max_increment_within(w, i, increment, cov, ceiling)
                w[i] += increment
                remaining -= increment
                touched.add(int(i))
                logger.debug("Risk ceiling %.4f reached at asset index %d", ceiling, i)
                break
            w = candidate
            remaining -= increment
            touched.add(int(i))

        untouched = [i for i in range(n) if i not in touched]
        if remaining > _BOUND_TOL and untouched:
            w[untouched] += remaining / len(untouched)
        return apply_box_constraints(w, lo, hi)

    @staticmethod
    def _max_increment_within(
        w: np.ndarray, i: int, upper: float, cov: np.ndarray, ceiling: float, steps: int = 60,
    ) -> float:
        """Largest ``t`` in ``[0, upper]`` keeping vol(w + t e_i) <= ceiling."""
        if portfolio_volatility(w, cov) > ceiling:
            return 0.0
        low, high = 0.0, upper
        trial = w.copy()
        for _ in range(steps):
            mid = (low + high) / 2.0
            trial[i] = w[i] + mid
            if portfolio_volatility(trial, cov) <= ceiling:
                low = mid
            else:
                high = mid
        return low

    # ----- RISK_PARITY -----------------------------------------------------

    def risk_parity(
        self,
        cov,
        constraints: Constraints | None = None,
        symbols: list[str] | None = None,
    ) -> RiskParityResult:
        """Equal-risk-contribution weights by fixed-point iteration.

        Starting from equal weights, each pass rescales
        ``w_i <- w_i * sqrt(target / RC_i)`` with ``target = σ_p / N``,
        reapplies the box and renormalizes.  Stops when the L1 change drops
        below ``tolerance`` or after ``max_iterations`` passes.
        """
        constraints = constraints or Constraints()
        matrix = np.asarray(cov, dtype=float)
        n = matrix.shape[0] if matrix.ndim == 2 else 0
        if n == 0:
            raise InsufficientData("Cannot compute risk parity for an empty covariance matrix")
        symbols = list(symbols) if symbols is not None else [f"asset_{i}" for i in range(n)]
        if len(symbols) != n:
            raise ValueError(f"Expected {n} symbols, got {len(symbols)}")
        constraints.check_feasible(n)

        if n == 1:
            w = np.array([1.0])
            vol = float(np.sqrt(max(matrix.reshape(-1)[0], 0.0)))
            return RiskParityResult(
                symbols=tuple(symbols), weights=(1.0,), risk_contributions=(vol,),
                total_risk=vol, diversification_ratio=1.0, iterations=0, converged=True,
            )

        matrix = validate_covariance_matrix(matrix)
        lo, hi = constraints.min_weight, constraints.max_weight
        w = apply_box_constraints(np.ones(n) / n, lo, hi)
        converged = False
        iterations = 0

        for iterations in range(1, self.max_iterations + 1):
            sigma_p = portfolio_volatility(w, matrix)
            if sigma_p <= 0:
                break
            rc = w * (matrix @ w) / sigma_p
            target = sigma_p / n
            scale = np.sqrt(target / np.where(rc > 0, rc, np.nan))
            updated = np.where(rc > 0, w * scale, w)
            updated = apply_box_constraints(updated, lo, hi)
            change = float(np.abs(updated - w).sum())
            w = updated
            if change < self.tolerance:
                converged = True
                break

        if not converged:
            logger.warning("Risk parity did not converge after %d iterations", iterations)

        rcs = risk_contributions(w, matrix)
        return RiskParityResult(
            symbols=tuple(symbols),
            weights=tuple(float(x) for x in w),
            risk_contributions=tuple(float(x) for x in rcs),
            total_risk=portfolio_volatility(w, matrix),
            diversification_ratio=diversification_ratio(w, matrix),
            iterations=iterations,
            converged=converged,
        )
