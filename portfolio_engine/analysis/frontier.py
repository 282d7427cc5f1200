"""Efficient frontier between the minimum-risk and maximum-return portfolios."""

from __future__ import annotations

import numpy as np

from portfolio_engine.analysis.linalg import portfolio_volatility, validate_covariance_matrix
from portfolio_engine.analysis.models import Constraints, EfficientFrontierPoint, ObjectiveType
from portfolio_engine.analysis.optimizer import Optimizer, reserve_excluded
from portfolio_engine.config import Defaults
from portfolio_engine.errors import InsufficientData
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("frontier")

_RETURN_TOL = 1e-6


class EfficientFrontier:
    """Discretized frontier of (risk, return, Sharpe, weights) points."""

    def __init__(self, optimizer: Optimizer | None = None) -> None:
        self.optimizer = optimizer or Optimizer()

    def _point(
        self, w: np.ndarray, mu: np.ndarray, cov: np.ndarray, rf: float, symbols: list[str],
    ) -> EfficientFrontierPoint:
        risk = portfolio_volatility(w, cov)
        ret = float(w @ mu)
        sharpe = (ret - rf) / risk if risk > 0 else 0.0
        return EfficientFrontierPoint(
            risk=risk,
            expected_return=ret,
            sharpe_ratio=sharpe,
            symbols=tuple(symbols),
            weights=tuple(float(x) for x in w),
        )

    def _solve_for_target(
        self, target: float, mu: np.ndarray, cov: np.ndarray,
        constraints: Constraints, x0: np.ndarray,
    ) -> np.ndarray:
        """Minimum variance with ``wᵗμ = target``; falls back to *x0*."""
        on_target = {"type": "eq", "fun": lambda w: w @ mu - target}
        w, success = self.optimizer.solve_constrained(
            lambda w: float(w @ cov @ w), x0, constraints, extra=[on_target],
        )
        if success and abs(float(w @ mu) - target) <= _RETURN_TOL:
            return w
        logger.debug("Frontier solve missed target %.6f; using endpoint blend", target)
        return x0

    def compute(
        self,
        expected_returns,
        covariance,
        constraints: Constraints | None = None,
        point_count: int = Defaults.FRONTIER_POINTS,
        symbols: list[str] | None = None,
        usable=None,
    ) -> list[EfficientFrontierPoint]:
        """Sweep *point_count* target returns from MIN_RISK to MAX_RETURN.

        Assets marked False in the optional *usable* mask sit at the lowest
        weight the box allows in every point; the sweep runs over the rest.

        Returns:
            Points sorted ascending by risk.  ``point_count == 1`` yields
            only the minimum-risk portfolio.

        Raises:
            ValueError: If *point_count* is less than 1.
        """
        if point_count < 1:
            raise ValueError(f"point_count must be at least 1, got {point_count}")
        constraints = constraints or Constraints()
        mu = np.asarray(expected_returns, dtype=float).ravel()
        n = len(mu)
        symbols = list(symbols) if symbols is not None else [f"asset_{i}" for i in range(n)]
        rf = constraints.risk_free_rate

        if usable is not None and n > 1:
            mask = np.asarray(usable, dtype=bool).ravel()
            if mask.shape != (n,):
                raise ValueError(f"usable mask has {mask.size} entries for {n} assets")
            if not mask.all():
                return self._compute_usable(mu, covariance, constraints, point_count, symbols, mask)

        w_min = self.optimizer.optimize(ObjectiveType.MIN_RISK, mu, covariance, constraints)
        cov = np.asarray(covariance, dtype=float).reshape(n, n)
        if n > 1:
            cov = validate_covariance_matrix(cov)
        if point_count == 1 or n == 1:
            return [self._point(w_min, mu, cov, rf, symbols)]

        w_max = self.optimizer.optimize(ObjectiveType.MAX_RETURN, mu, cov, constraints)
        r_min, r_max = float(w_min @ mu), float(w_max @ mu)

        points = []
        for k, target in enumerate(np.linspace(r_min, r_max, point_count)):
            t = k / (point_count - 1)
            if k == 0:
                w = w_min
            elif k == point_count - 1:
                w = w_max
            else:
                blend = (1.0 - t) * w_min + t * w_max
                w = self._solve_for_target(float(target), mu, cov, constraints, blend)
            points.append(self._point(w, mu, cov, rf, symbols))

        points.sort(key=lambda p: p.risk)
        logger.info(
            "Efficient frontier: %d points, risk %.4f..%.4f",
            len(points), points[0].risk, points[-1].risk,
        )
        return points

    def _compute_usable(
        self, mu: np.ndarray, covariance, constraints: Constraints,
        point_count: int, symbols: list[str], mask: np.ndarray,
    ) -> list[EfficientFrontierPoint]:
        n = len(mu)
        if not mask.any():
            raise InsufficientData("No asset has usable price history")
        cov = np.asarray(covariance, dtype=float).reshape(n, n)
        sub, excluded_weight, budget = reserve_excluded(constraints, int(mask.sum()), int((~mask).sum()))
        sub_points = self.compute(
            mu[mask], cov[np.ix_(mask, mask)], sub,
            point_count=point_count, symbols=[s for s, keep in zip(symbols, mask) if keep],
        )
        points = []
        for p in sub_points:
            w = np.full(n, excluded_weight)
            w[mask] = budget * np.asarray(p.weights)
            points.append(self._point(w, mu, cov, constraints.risk_free_rate, symbols))
        points.sort(key=lambda p: p.risk)
        return points
