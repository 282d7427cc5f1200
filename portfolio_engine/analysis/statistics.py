"""Return series, covariance and expected returns from price history.

The StatisticsBuilder establishes the symbol ordering used by every matrix
in one call: columns of the returns frame, rows/columns of the covariance
and entries of the expected-return vector all follow the order in which the
symbols were supplied.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from portfolio_engine.analysis.linalg import sample_covariance
from portfolio_engine.analysis.models import DataQuality, MarketStatistics
from portfolio_engine.config import Defaults
from portfolio_engine.errors import InsufficientData
from portfolio_engine.utils.cache import TTLCache
from portfolio_engine.utils.logger import setup_logger

logger = setup_logger("statistics")


def _clean_prices(prices: pd.Series | None) -> pd.Series:
    """Ascending, de-duplicated, strictly positive prices."""
    if prices is None or len(prices) == 0:
        return pd.Series(dtype=float)
    s = pd.to_numeric(pd.Series(prices), errors="coerce").dropna()
    s = s[s > 0]
    s = s[~s.index.duplicated(keep="last")].sort_index()
    return s.astype(float)


def simple_returns(prices: pd.Series) -> pd.Series:
    """Period-over-period simple returns ``(p[t] - p[t-1]) / p[t-1]``."""
    prices = _clean_prices(prices)
    return (prices / prices.shift(1) - 1.0).iloc[1:]


class StatisticsBuilder:
    """Build MarketStatistics for a set of symbols.

    Args:
        window: Number of most recent returns kept (60 by default; 252 for
            annualized-risk calls).
        cache: Optional TTLCache memoizing covariance matrices keyed by
            (symbol set, window).  Pass None to disable.
    """

    def __init__(
        self,
        window: int = Defaults.WINDOW_DAYS,
        trading_days: int = Defaults.TRADING_DAYS,
        min_confident_points: int = Defaults.MIN_CONFIDENT_POINTS,
        ridge: float = Defaults.RIDGE,
        cache: TTLCache | None = None,
    ) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        self.window = window
        self.trading_days = trading_days
        self.min_confident_points = min_confident_points
        self.ridge = ridge
        self.cache = cache

    # ----- alignment -------------------------------------------------------

    @staticmethod
    def _align(series: dict[str, pd.Series]) -> tuple[pd.DataFrame, str]:
        """Inner-join return series on dates, or by trailing position."""
        if not series:
            return pd.DataFrame(), "date"
        combined = pd.concat(series, axis=1, join="inner")
        if len(series) == 1 or len(combined) >= 2:
            return combined, "date"

        shortest = min(len(s) for s in series.values())
        logger.warning(
            "Fewer than 2 common dates across %d symbols; aligning the last %d returns by position",
            len(series), shortest,
        )
        positional = {
            sym: s.iloc[-shortest:].reset_index(drop=True) for sym, s in series.items()
        }
        return pd.DataFrame(positional), "position"

    # ----- covariance ------------------------------------------------------

    def _covariance(self, returns: pd.DataFrame, symbols: list[str], window: int) -> np.ndarray:
        def compute() -> pd.DataFrame:
            cov = sample_covariance(returns[symbols].to_numpy(), ridge=self.ridge)
            return pd.DataFrame(cov, index=symbols, columns=symbols)

        if self.cache is None:
            return compute().to_numpy()
        key = ("covariance", frozenset(symbols), window)
        cov_df = self.cache.get_or_compute(key, compute)
        return cov_df.loc[symbols, symbols].to_numpy()

    # ----- public API ------------------------------------------------------

    def build(
        self,
        prices: Mapping[str, pd.Series],
        window: int | None = None,
        synthetic_symbols: Iterable[str] = (),
    ) -> MarketStatistics:
        """Compute returns, covariance and expected returns.

        Args:
            prices: Ordered mapping symbol -> price Series (DatetimeIndex).
            window: Overrides the builder's window for this call.
            synthetic_symbols: Symbols whose prices came from the synthetic
                provider; surfaced in ``DataQuality``.

        Raises:
            InsufficientData: When *prices* is empty.
        """
        symbols = list(prices.keys())
        if not symbols:
            raise InsufficientData("Cannot build statistics for an empty symbol set")
        window = window or self.window

        valid: dict[str, pd.Series] = {}
        flat: list[str] = []
        for sym in symbols:
            rets = simple_returns(prices[sym])
            if len(rets) < 1:
                logger.warning("Fewer than 2 prices for %s; using a flat zero return series", sym)
                flat.append(sym)
            else:
                valid[sym] = rets

        aligned, aligned_by = self._align(valid)
        aligned = aligned.tail(window).copy()
        for sym in flat:
            aligned[sym] = 0.0
        returns = aligned.reindex(columns=symbols).astype(float)

        observations = {sym: (0 if sym in flat else len(returns)) for sym in symbols}
        threshold = min(self.min_confident_points, window)
        low_conf = tuple(s for s in symbols if s not in flat and observations[s] < threshold)
        if low_conf:
            logger.warning(
                "Low-confidence statistics (%d < %d returns) for: %s",
                len(returns), threshold, ", ".join(low_conf),
            )

        cov_daily = self._covariance(returns, symbols, window)
        mean_daily = returns.mean().fillna(0.0).to_numpy()

        synthetic = set(synthetic_symbols)
        quality = DataQuality(
            observations=observations,
            flat_symbols=tuple(flat),
            low_confidence_symbols=low_conf,
            synthetic_symbols=tuple(s for s in symbols if s in synthetic),
            aligned_by=aligned_by,
        )
        logger.debug(
            "Built statistics for %d symbols over %d returns (aligned by %s)",
            len(symbols), len(returns), aligned_by,
        )
        return MarketStatistics(
            symbols=tuple(symbols),
            returns=returns,
            covariance=cov_daily,
            annual_covariance=cov_daily * self.trading_days,
            expected_returns=mean_daily * self.trading_days,
            data_quality=quality,
        )

    def build_from_frames(
        self,
        frames: Mapping[str, pd.DataFrame],
        window: int | None = None,
        synthetic_symbols: Iterable[str] = (),
    ) -> MarketStatistics:
        """Same as :meth:`build` but from provider OHLCV frames (``Close``)."""
        prices = {
            sym: (df["Close"] if df is not None and "Close" in df.columns else pd.Series(dtype=float))
            for sym, df in frames.items()
        }
        return self.build(prices, window=window, synthetic_symbols=synthetic_symbols)

    @staticmethod
    def portfolio_returns(stats: MarketStatistics, weights) -> pd.Series:
        """Weighted daily portfolio return series."""
        w = np.asarray(weights, dtype=float)
        if len(w) != len(stats.symbols):
            raise ValueError(
                f"Expected {len(stats.symbols)} weights, got {len(w)}"
            )
        return pd.Series(
            stats.returns.to_numpy() @ w, index=stats.returns.index, name="portfolio", dtype=float,
        )
