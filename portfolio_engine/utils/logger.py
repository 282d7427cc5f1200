"""Logging configuration for the portfolio engine."""

from __future__ import annotations

import logging
import sys

from portfolio_engine.config import Defaults

_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-7s | %(message)s"


def setup_logger(name: str = "portfolio_engine", level: str | None = None) -> logging.Logger:
    """Create and configure a logger.

    Loggers are namespaced under ``portfolio_engine.`` so a host application
    can tune the whole engine through one parent logger.  *level* defaults to
    ``app.log_level`` (or ``PORTFOLIO_ENGINE_LOG_LEVEL``).
    """
    if not name.startswith("portfolio_engine"):
        name = f"portfolio_engine.{name}"
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    level = level or Defaults.LOG_LEVEL
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return logger
