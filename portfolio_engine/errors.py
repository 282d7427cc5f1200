"""Typed failures raised by the portfolio engine.

All of them subclass ``ValueError`` so callers that already guard input
validation with ``except ValueError`` keep working.
"""


class PortfolioEngineError(ValueError):
    """Base class for every engine failure."""


class InsufficientData(PortfolioEngineError):
    """Empty holdings/symbol set, or too few usable symbols."""


class InvalidCovarianceMatrix(PortfolioEngineError):
    """Covariance matrix is non-square, asymmetric or has a non-positive diagonal."""


class SingularMatrixError(InvalidCovarianceMatrix):
    """Matrix could not be inverted even after ridge regularization."""


class InfeasibleConstraints(PortfolioEngineError):
    """Box constraints cannot produce weights that sum to 1."""


class InvalidAllocationTargets(PortfolioEngineError):
    """Target weights supplied to a rebalance do not sum to ~100%."""
