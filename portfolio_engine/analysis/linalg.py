"""Linear algebra shared by every optimization objective and risk metric.

Covariance estimation, covariance validation, a real (Cholesky-based)
inverse with Tikhonov regularization, and the portfolio-level quantities
derived from a covariance matrix: volatility, per-asset risk contributions,
diversification ratio and the Herfindahl concentration index.
"""

from __future__ import annotations

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from portfolio_engine.errors import InvalidCovarianceMatrix, SingularMatrixError
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("linalg")

SYMMETRY_TOL = 1e-10
RCOND_MIN = 1e-12
RCOND_TARGET = 1e-8

# Ridge factors (relative to the mean variance) tried in order by invert()
_RIDGE_STEPS = (0.0, 1e-10, 1e-8, 1e-6, 1e-4)


# ---------------------------------------------------------------------------
# Covariance
# ---------------------------------------------------------------------------


def sample_covariance(returns: np.ndarray, ridge: float = 0.0) -> np.ndarray:
    """Bessel-corrected covariance of a (T x N) return matrix.

    Args:
        returns: One column per asset, one row per period.
        ridge: Added to every diagonal element, keeping flat series strictly
            positive.

    Returns:
        N x N symmetric matrix.  With fewer than 2 rows the covariance is
        undefined and a zero matrix (plus ridge) is returned.
    """
    returns = np.atleast_2d(np.asarray(returns, dtype=float))
    t, n = returns.shape
    if t < 2:
        cov = np.zeros((n, n))
    else:
        demeaned = returns - returns.mean(axis=0)
        cov = demeaned.T @ demeaned / (t - 1)
    cov = (cov + cov.T) / 2.0
    if ridge:
        cov = cov + np.eye(n) * ridge
    return cov


def validate_covariance_matrix(cov) -> np.ndarray:
    """Return *cov* as a float array or raise ``InvalidCovarianceMatrix``.

    Checks: square 2-D shape, symmetry within 1e-10, finite entries and a
    strictly positive diagonal.
    """
    matrix = np.asarray(cov, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise InvalidCovarianceMatrix(f"Covariance matrix must be square, got shape {matrix.shape}")
    if matrix.shape[0] == 0:
        raise InvalidCovarianceMatrix("Covariance matrix is empty")
    if not np.all(np.isfinite(matrix)):
        raise InvalidCovarianceMatrix("Covariance matrix contains NaN or infinite values")
    asym = np.abs(matrix - matrix.T)
    if np.any(asym > SYMMETRY_TOL):
        i, j = np.unravel_index(np.argmax(asym), asym.shape)
        raise InvalidCovarianceMatrix(
            f"Covariance matrix is not symmetric at ({i}, {j}): "
            f"{matrix[i, j]!r} != {matrix[j, i]!r}"
        )
    diag = np.diag(matrix)
    if np.any(diag <= 0):
        bad = int(np.argmax(diag <= 0))
        raise InvalidCovarianceMatrix(
            f"Covariance diagonal must be strictly positive (index {bad}: {diag[bad]!r})"
        )
    return matrix


# ---------------------------------------------------------------------------
# Inversion
# ---------------------------------------------------------------------------


def invert(cov) -> np.ndarray:
    """Inverse of a symmetric positive-definite matrix.

    Matrices whose reciprocal condition number (smallest over largest
    eigenvalue) is below ``RCOND_MIN`` are singular beyond tolerance and
    raise ``SingularMatrixError``; there is no identity or pseudo-inverse
    fallback.  Near-singular matrices (reciprocal condition below
    ``RCOND_TARGET``) get the smallest Tikhonov ridge
    ``lambda * mean(diag) * I`` from the schedule that lifts them to
    ``RCOND_TARGET``.  The inverse comes from a Cholesky factorization,
    retried further along the schedule if round-off makes it fail.
    """
    matrix = np.asarray(cov, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise InvalidCovarianceMatrix(f"Cannot invert non-square matrix of shape {matrix.shape}")
    n = matrix.shape[0]
    if n == 0 or not np.all(np.isfinite(matrix)):
        raise SingularMatrixError("Matrix is empty or non-finite and cannot be inverted")

    matrix = (matrix + matrix.T) / 2.0
    eigvals = np.linalg.eigvalsh(matrix)
    lo, hi = float(eigvals[0]), float(eigvals[-1])
    if hi <= 0 or lo / hi < RCOND_MIN:
        raise SingularMatrixError(
            f"Matrix is singular beyond tolerance "
            f"(eigenvalues {lo:.3e} .. {hi:.3e})"
        )

    scale = float(np.mean(np.diag(matrix)))
    identity = np.eye(n)
    for step in _RIDGE_STEPS:
        ridge = step * scale
        if (lo + ridge) / (hi + ridge) < RCOND_TARGET and step != _RIDGE_STEPS[-1]:
            continue
        try:
            factor = cho_factor(matrix + identity * ridge, lower=True, check_finite=False)
        except LinAlgError:
            continue
        if step:
            logger.warning(
                "Near-singular covariance (rcond %.1e) inverted with ridge %.1e x mean variance",
                lo / hi, step,
            )
        inverse = cho_solve(factor, identity, check_finite=False)
        return (inverse + inverse.T) / 2.0

    raise SingularMatrixError(
        f"Cholesky factorization failed even with ridge {_RIDGE_STEPS[-1]:.0e} x mean variance"
    )


def solve(cov, rhs) -> np.ndarray:
    """``Σ⁻¹ · rhs`` via :func:`invert`."""
    return invert(cov) @ np.asarray(rhs, dtype=float)


# ---------------------------------------------------------------------------
# Portfolio quantities
# ---------------------------------------------------------------------------


def portfolio_variance(weights: np.ndarray, cov: np.ndarray) -> float:
    w = np.asarray(weights, dtype=float)
    return float(max(w @ cov @ w, 0.0))


def portfolio_volatility(weights: np.ndarray, cov: np.ndarray) -> float:
    return float(np.sqrt(portfolio_variance(weights, cov)))


def risk_contributions(weights: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """Per-asset contribution to volatility: ``RC_i = w_i (Σw)_i / σ_p``.

    Contributions sum to σ_p.  A zero-volatility portfolio has all-zero
    contributions.
    """
    w = np.asarray(weights, dtype=float)
    sigma_p = portfolio_volatility(w, cov)
    if sigma_p <= 0:
        return np.zeros_like(w)
    return w * (cov @ w) / sigma_p


def diversification_ratio(weights: np.ndarray, cov: np.ndarray) -> float:
    """Weighted average asset volatility over portfolio volatility.

    Equals 1.0 for a single asset or perfectly correlated assets; returns 1.0
    when portfolio volatility is zero.
    """
    w = np.asarray(weights, dtype=float)
    sigma_p = portfolio_volatility(w, cov)
    if sigma_p <= 0:
        return 1.0
    asset_vols = np.sqrt(np.clip(np.diag(cov), 0.0, None))
    return float(w @ asset_vols / sigma_p)


def concentration_index(weights) -> float:
    """Herfindahl index: sum of squared weights."""
    w = np.asarray(weights, dtype=float)
    return float(np.sum(w ** 2))
