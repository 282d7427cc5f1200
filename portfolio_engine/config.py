"""Central configuration loader for the portfolio engine."""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Project root is the parent of the portfolio_engine/ directory
PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(PROJECT_ROOT / ".env")


def load_settings(path: Path | None = None) -> dict:
    """Load settings from configs/settings.yaml (or PORTFOLIO_ENGINE_SETTINGS)."""
    if path is None:
        override = os.getenv("PORTFOLIO_ENGINE_SETTINGS", "")
        path = Path(override) if override else PROJECT_ROOT / "configs" / "settings.yaml"
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


SETTINGS = load_settings()


def setting(section: str, key: str, default):
    """Read ``SETTINGS[section][key]`` falling back to *default*."""
    return (SETTINGS.get(section) or {}).get(key, default)


# --- Paths ---
class Paths:
    ROOT = PROJECT_ROOT
    CONFIGS = PROJECT_ROOT / "configs"
    PORTFOLIOS = PROJECT_ROOT / "configs" / "portfolios.yaml"
    PRESETS = PROJECT_ROOT / "configs" / "presets.yaml"


# --- Engine defaults ---
class Defaults:
    LOG_LEVEL = os.getenv(
        "PORTFOLIO_ENGINE_LOG_LEVEL", setting("app", "log_level", "INFO")
    )

    TRADING_DAYS = int(setting("statistics", "trading_days", 252))
    WINDOW_DAYS = int(setting("statistics", "window_days", 60))
    RISK_WINDOW_DAYS = int(setting("statistics", "risk_window_days", 252))
    MIN_CONFIDENT_POINTS = int(setting("statistics", "min_confident_points", 60))
    RIDGE = float(setting("statistics", "ridge", 1e-10))

    MIN_WEIGHT = float(setting("optimizer", "min_weight", 0.0))
    MAX_WEIGHT = float(setting("optimizer", "max_weight", 1.0))
    MAX_RISK = setting("optimizer", "max_risk", None)
    RISK_FREE_RATE = float(setting("optimizer", "risk_free_rate", 0.02))

    RISK_PARITY_MAX_ITER = int(setting("risk_parity", "max_iterations", 100))
    RISK_PARITY_TOL = float(setting("risk_parity", "tolerance", 1e-6))

    FRONTIER_POINTS = int(setting("frontier", "point_count", 20))

    REBALANCE_THRESHOLD = float(setting("rebalance", "threshold", 0.05))
    FIXED_COST = float(setting("rebalance", "fixed_cost", 10.0))
    VARIABLE_COST_RATE = float(setting("rebalance", "variable_cost_rate", 0.001))
    MARKET_IMPACT_RATE = float(setting("rebalance", "market_impact_rate", 0.0005))

    CONFIDENCE_LEVELS = tuple(setting("risk", "confidence_levels", [0.95, 0.99]))
    BENCHMARK = setting("risk", "benchmark", "SPY")
    RECOVERY_DAYS_PER_UNIT = float(setting("risk", "recovery_days_per_unit_shock", 200))
    HORIZON_DAYS = int(setting("risk", "horizon_days", 1))
    LIQUIDITY_PARTICIPATION = float(setting("risk", "liquidity_participation_rate", 0.10))
    LIQUIDATION_DAYS = float(setting("risk", "liquidation_days", 5))
    RISK_LIMITS = {
        "concentration": 25.0, "liquidity": 30.0, "sector": 0.40, "beta": 1.5, "var": 0.15,
        **(setting("risk", "limits", None) or {}),
    }

    CACHE_TTL_SECONDS = float(setting("cache", "ttl_seconds", 60))
    CACHE_MAX_ENTRIES = int(setting("cache", "max_entries", 128))

    FETCH_MAX_WORKERS = int(setting("fetch", "max_workers", 8))
    FETCH_CALLS_PER_MINUTE = int(setting("fetch", "calls_per_minute", 120))

    ALLOW_SYNTHETIC = bool(setting("data", "allow_synthetic", False))
    SYNTHETIC_SEED = int(setting("data", "synthetic_seed", 42))
