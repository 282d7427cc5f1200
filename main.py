#!/usr/bin/env python3
"""Portfolio Engine: allocation, risk and rebalancing from the command line.

Usage:
    python main.py optimize core_us --objective MAX_SHARPE     # target weights + trades
    python main.py optimize core_us --preset conservative      # objective/constraints preset
    python main.py frontier core_us --points 15                # efficient frontier
    python main.py risk core_us --benchmark SPY                # VaR, ratios, stress tests
    python main.py stress core_us                              # stress scenarios only
    python main.py rebalance core_us --objective RISK_PARITY   # trades to reach an objective
    python main.py snapshot core_us japan_large_cap            # risk for many portfolios
    python main.py list                                        # configured portfolios

Add --synthetic to fill symbols without price history from the synthetic
generator (results are flagged as built on synthetic data).
"""

import argparse
import json
import sys

import yaml

from portfolio_engine.analysis.models import Constraints, ObjectiveType, OptimizationObjective
from portfolio_engine.config import Defaults, Paths
from portfolio_engine.data_sources.holdings import YamlHoldingsProvider
from portfolio_engine.engine import PortfolioEngine
from portfolio_engine.errors import PortfolioEngineError
from portfolio_engine.utils.cache import TTLCache
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("main", Defaults.LOG_LEVEL)


def _load_presets() -> dict:
    if not Paths.PRESETS.exists():
        return {}
    with open(Paths.PRESETS) as f:
        return (yaml.safe_load(f) or {}).get("presets", {}) or {}


PRESETS = _load_presets()


def _engine(args) -> PortfolioEngine:
    return PortfolioEngine(
        holdings_provider=YamlHoldingsProvider(args.portfolios),
        cache=TTLCache(),
        allow_synthetic=args.synthetic or Defaults.ALLOW_SYNTHETIC,
    )


def _objective_and_constraints(args) -> tuple[OptimizationObjective, Constraints]:
    """Resolve --preset, then let explicit flags override it."""
    preset = {}
    if args.preset:
        preset = PRESETS.get(args.preset)
        if preset is None:
            print(f"Unknown preset: {args.preset}")
            print(f"Available: {', '.join(PRESETS.keys())}")
            sys.exit(1)

    objective = OptimizationObjective(
        type=args.objective or preset.get("objective", ObjectiveType.MAX_SHARPE),
        risk_tolerance=preset.get("risk_tolerance", "MODERATE"),
        time_horizon=preset.get("time_horizon", "MEDIUM"),
    )
    overrides = dict(preset.get("constraints") or {})
    overrides.update({
        "min_weight": args.min_weight,
        "max_weight": args.max_weight,
        "max_risk": args.max_risk,
        "risk_free_rate": args.risk_free_rate,
        "rebalance_threshold": args.threshold,
    })
    return objective, Constraints.from_settings(**overrides)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ============================================================
# COMMANDS
# ============================================================

def cmd_list(args):
    """List configured portfolios."""
    for pid in YamlHoldingsProvider(args.portfolios).list_portfolios():
        print(pid)


def cmd_optimize(args):
    """Target allocation for an objective, with the trades to reach it."""
    objective, constraints = _objective_and_constraints(args)
    result = _engine(args).optimize(args.portfolio, objective, constraints)
    _print(result.to_dict())


def cmd_frontier(args):
    """Efficient frontier points from minimum risk to maximum return."""
    _, constraints = _objective_and_constraints(args)
    points = _engine(args).efficient_frontier(args.portfolio, constraints, point_count=args.points)
    _print([p.to_dict() for p in points])


def cmd_risk(args):
    """Full risk assessment."""
    assessment = _engine(args).analyze_risk(
        args.portfolio, benchmark=args.benchmark or None, horizon_days=args.horizon,
    )
    _print(assessment.to_dict())


def cmd_stress(args):
    """Stress scenarios from configs/settings.yaml."""
    results = _engine(args).stress_test(args.portfolio)
    _print([r.to_dict() for r in results])


def cmd_rebalance(args):
    """Trades moving the portfolio to the optimized target weights."""
    objective, constraints = _objective_and_constraints(args)
    engine = _engine(args)
    result = engine.optimize(args.portfolio, objective, constraints)
    plan = engine.rebalance(args.portfolio, result, constraints)
    _print(plan.to_dict())


def cmd_snapshot(args):
    """Risk assessments for several portfolios in parallel."""
    batch = _engine(args).snapshot_many(args.portfolio_ids, benchmark=args.benchmark or None)
    _print({
        "results": {pid: a.to_dict() for pid, a in batch.results.items()},
        "errors": batch.errors,
    })


def _add_common(p, optimizing: bool = False):
    p.add_argument("--portfolios", default=str(Paths.PORTFOLIOS),
                   help="Portfolio YAML file (default: configs/portfolios.yaml)")
    p.add_argument("--synthetic", action="store_true",
                   help="Fill missing price history with synthetic data")
    if optimizing:
        p.add_argument("--objective", choices=[o.value for o in ObjectiveType],
                       help="Optimization objective (default: MAX_SHARPE or preset)")
        p.add_argument("--preset", default="", help=f"One of: {', '.join(PRESETS.keys())}")
        p.add_argument("--min-weight", type=float, default=None)
        p.add_argument("--max-weight", type=float, default=None)
        p.add_argument("--max-risk", type=float, default=None,
                       help="Annualized volatility ceiling for MAX_RETURN")
        p.add_argument("--risk-free-rate", type=float, default=None)
        p.add_argument("--threshold", type=float, default=None,
                       help="Rebalance threshold (absolute weight drift)")


def main():
    parser = argparse.ArgumentParser(
        description="Portfolio Engine: allocation, risk and rebalancing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", help="Commands")

    # list
    p = sub.add_parser("list", help="List configured portfolios")
    p.add_argument("--portfolios", default=str(Paths.PORTFOLIOS))
    p.set_defaults(func=cmd_list)

    # optimize
    p = sub.add_parser("optimize", help="Optimize target weights")
    p.add_argument("portfolio")
    _add_common(p, optimizing=True)
    p.set_defaults(func=cmd_optimize)

    # frontier
    p = sub.add_parser("frontier", help="Efficient frontier")
    p.add_argument("portfolio")
    p.add_argument("--points", type=int, default=Defaults.FRONTIER_POINTS)
    _add_common(p, optimizing=True)
    p.set_defaults(func=cmd_frontier)

    # risk
    p = sub.add_parser("risk", help="Risk assessment")
    p.add_argument("portfolio")
    p.add_argument("--benchmark", default=Defaults.BENCHMARK)
    p.add_argument("--horizon", type=int, default=Defaults.HORIZON_DAYS,
                   help="Days the VaR/CVaR amounts cover (square-root-of-time scaling)")
    _add_common(p)
    p.set_defaults(func=cmd_risk)

    # stress
    p = sub.add_parser("stress", help="Stress tests")
    p.add_argument("portfolio")
    _add_common(p)
    p.set_defaults(func=cmd_stress)

    # rebalance
    p = sub.add_parser("rebalance", help="Rebalance to an optimized target")
    p.add_argument("portfolio")
    _add_common(p, optimizing=True)
    p.set_defaults(func=cmd_rebalance)

    # snapshot
    p = sub.add_parser("snapshot", help="Risk for many portfolios")
    p.add_argument("portfolio_ids", nargs="+")
    p.add_argument("--benchmark", default=Defaults.BENCHMARK)
    _add_common(p)
    p.set_defaults(func=cmd_snapshot)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(0)
    try:
        args.func(args)
    except (PortfolioEngineError, KeyError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
