from .statistics import StatisticsBuilder
from .optimizer import Optimizer, apply_box_constraints
from .frontier import EfficientFrontier
from .rebalance import RebalancePlanner
from .risk import RiskMetrics, SATURATED_RATIO
