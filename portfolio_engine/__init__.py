"""Portfolio quant engine: statistics, optimization, rebalancing and risk."""

from portfolio_engine.analysis.models import (
    Constraints,
    ObjectiveType,
    OptimizationObjective,
    RiskTolerance,
    StressScenario,
    TimeHorizon,
)
from portfolio_engine.data_sources.base import Holding, PortfolioSnapshot
from portfolio_engine.engine import PortfolioEngine

__version__ = "0.1.0"
