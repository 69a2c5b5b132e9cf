"""
Market Regime Detection: turbulence index and fractal dimension.

METHODOLOGY

    1. ALIGNMENT
       Bar timestamps are intersected across all assets and a common-calendar
       log-return matrix R (days x assets) is built from the aligned closes.

    2. TURBULENCE INDEX
       For each return index d with at least W prior returns, the window
       R[d-W:d] supplies a mean vector mu and covariance Sigma. The index is
       the Mahalanobis distance of the day's return vector from the window:

           covariance:  T_d = sqrt(max(0, (r_d - mu)' Sigma^-1 (r_d - mu)))
           diagonal:    T_d = sqrt(sum_i (r_i,d - mu_i)^2 / var_i)

       The covariance method uses the sample covariance (ddof=1) inverted by
       Gauss-Jordan elimination with partial pivoting; a near-singular pivot
       falls back to the identity matrix. The diagonal method uses population
       variances and skips assets whose variance is not positive.

    3. REGIME LABEL
       Fixed cut-offs on the index:
           T > 25   crisis
           T > 15   high_vol
           T > 8    normal
           else     low_vol

    4. FRACTAL DIMENSION
       Single-window rescaled range on the flattened window returns:
           H = ln(R/S) / ln(n),   D = clamp(2 - H, 1, 2)
       Windows shorter than 10 samples or with zero dispersion report 1.5.

    5. BASKET VOLATILITY
       Annualised realised volatility (%) of the equal-weighted basket over
       the window, using the population standard deviation.

Reference:
    Kritzman, M. and Li, Y. (2010). "Skulls, Financial Turbulence, and Risk
    Management." Financial Analysts Journal 66(5).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from regime_engine.config import REGIME, Regime, RegimeSettings, TurbulenceMethod, TurbulenceThresholds
from regime_engine.data_collector import AssetSeries
from regime_engine.bars import compute_log_returns
from regime_engine.market_calendar import US_EQUITY, CalendarParams, timestamp_to_date

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class RegimeSignal:
    """Regime reading for one trading day."""
    timestamp: int                  # ms epoch of the day the return was realised
    turbulence_index: float
    regime: Regime
    fractal_dimension: float
    volatility: float               # Annualised basket volatility, percent

    @property
    def date(self) -> date:
        return timestamp_to_date(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "timestamp": self.timestamp,
            "turbulence_index": round(self.turbulence_index, 4),
            "regime": self.regime.value,
            "fractal_dimension": round(self.fractal_dimension, 4),
            "volatility": round(self.volatility, 2),
        }


@dataclass
class RegimeAnalysis:
    """Signals plus the summary of the inputs they were computed from."""
    signals: List[RegimeSignal] = field(default_factory=list)
    tickers: List[str] = field(default_factory=list)
    trading_days: int = 0
    lookback: int = REGIME.lookback_days
    method: TurbulenceMethod = REGIME.method

    @property
    def current(self) -> Optional[RegimeSignal]:
        return self.signals[-1] if self.signals else None

    @property
    def is_empty(self) -> bool:
        return not self.signals

    def regime_counts(self) -> Dict[Regime, int]:
        counts = {r: 0 for r in Regime}
        for s in self.signals:
            counts[s.regime] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        current = self.current
        return {
            "current_regime": current.to_dict() if current else None,
            "signals": [s.to_dict() for s in self.signals],
            "summary": {
                "assets_analyzed": len(self.tickers),
                "assets": list(self.tickers),
                "trading_days": self.trading_days,
                "lookback_days": self.lookback,
                "method": self.method.value,
            },
        }


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def classify_regime(
    turbulence_index: float,
    thresholds: TurbulenceThresholds = REGIME.thresholds
) -> Regime:
    """Map a turbulence index to its regime label."""
    if turbulence_index > thresholds.crisis:
        return Regime.CRISIS
    elif turbulence_index > thresholds.high_vol:
        return Regime.HIGH_VOL
    elif turbulence_index > thresholds.normal:
        return Regime.NORMAL
    return Regime.LOW_VOL


def fractal_dimension(
    returns: Sequence[float],
    settings: RegimeSettings = REGIME
) -> float:
    """
    Fractal dimension from a single-window R/S Hurst estimate.

    Args:
        returns: Return samples (any shape; flattened)
        settings: Minimum sample count and neutral value

    Returns:
        Dimension in [1, 2]
    """
    x = np.asarray(returns, dtype=float).ravel()
    n = x.size

    if n < settings.fractal_min_samples:
        return settings.neutral_fractal_dimension

    mean = x.mean()
    cumdev = np.cumsum(x - mean)
    r = cumdev.max() - cumdev.min()
    s = np.std(x)

    if s == 0:
        return settings.neutral_fractal_dimension

    rs = r / s
    if rs <= 0:
        # Degenerate range; ln(0) has no Hurst estimate
        return settings.neutral_fractal_dimension

    hurst = np.log(rs) / np.log(n)
    return float(np.clip(2.0 - hurst, 1.0, 2.0))


def invert_matrix(matrix: np.ndarray, pivot_epsilon: float = REGIME.pivot_epsilon) -> np.ndarray:
    """
    Gauss-Jordan inverse with partial pivoting.

    Returns the identity when any pivot falls below ``pivot_epsilon``,
    which turns the Mahalanobis distance into a plain Euclidean one.
    """
    a = np.asarray(matrix, dtype=float)
    n = a.shape[0]
    aug = np.hstack([a.copy(), np.eye(n)])

    for i in range(n):
        max_row = i + int(np.argmax(np.abs(aug[i:, i])))
        if max_row != i:
            aug[[i, max_row]] = aug[[max_row, i]]

        pivot = aug[i, i]
        if abs(pivot) < pivot_epsilon:
            logger.debug("Singular covariance window, using identity inverse")
            return np.eye(n)

        aug[i] /= pivot
        for k in range(n):
            if k != i:
                aug[k] -= aug[k, i] * aug[i]

    return aug[:, n:]


def basket_volatility(window: np.ndarray, calendar: CalendarParams = US_EQUITY) -> float:
    """Annualised volatility (%) of the equal-weighted basket over a window."""
    if window.size == 0:
        return 0.0
    basket = window.mean(axis=1)
    return float(np.std(basket) * calendar.annualization_factor * 100)


def align_returns(
    assets: Mapping[str, AssetSeries]
) -> Tuple[List[str], List[int], np.ndarray]:
    """
    Common-calendar log returns across assets.

    Args:
        assets: Ticker -> AssetSeries

    Returns:
        (tickers, common timestamps, returns matrix of shape
        (len(timestamps) - 1, len(tickers)))
    """
    tickers = list(assets.keys())
    if not tickers:
        return [], [], np.zeros((0, 0))

    closes_by_ticker: List[Dict[int, float]] = [
        {b.timestamp: b.close for b in assets[t].bars} for t in tickers
    ]

    common = set(closes_by_ticker[0])
    for closes in closes_by_ticker[1:]:
        common &= set(closes)
    timestamps = sorted(common)

    if len(timestamps) < 2:
        return tickers, timestamps, np.zeros((0, len(tickers)))

    columns = [
        compute_log_returns([closes[ts] for ts in timestamps])
        for closes in closes_by_ticker
    ]
    return tickers, timestamps, np.column_stack(columns)


# =============================================================================
# CLASSIFIER
# =============================================================================

class RegimeClassifier:
    """
    Rolling-window turbulence regime classifier.

    Usage:
        classifier = RegimeClassifier()
        analysis = classifier.analyze(batch.assets)
        if analysis.current:
            print(analysis.current.regime)
    """

    def __init__(
        self,
        settings: RegimeSettings = REGIME,
        method: Optional[TurbulenceMethod] = None,
        calendar: CalendarParams = US_EQUITY
    ):
        self.settings = settings
        self.method = method or settings.method
        self.calendar = calendar

    @property
    def lookback(self) -> int:
        return self.settings.lookback_days

    def turbulence(self, current: np.ndarray, window: np.ndarray) -> float:
        """Turbulence index of one day's returns against its window."""
        if self.method == TurbulenceMethod.DIAGONAL:
            return self._diagonal_turbulence(current, window)
        return self._covariance_turbulence(current, window)

    def _covariance_turbulence(self, current: np.ndarray, window: np.ndarray) -> float:
        means = window.mean(axis=0)
        cov = np.atleast_2d(np.cov(window, rowvar=False, ddof=1))
        cov_inv = invert_matrix(cov, self.settings.pivot_epsilon)
        diff = current - means
        return float(np.sqrt(max(0.0, diff @ cov_inv @ diff)))

    @staticmethod
    def _diagonal_turbulence(current: np.ndarray, window: np.ndarray) -> float:
        means = window.mean(axis=0)
        variances = window.var(axis=0)
        positive = variances > 0
        dev = current[positive] - means[positive]
        return float(np.sqrt(np.sum(dev * dev / variances[positive])))

    def analyze(self, assets: Mapping[str, AssetSeries]) -> RegimeAnalysis:
        """
        Compute daily regime signals for a set of assets.

        Args:
            assets: Ticker -> AssetSeries (typically ``BatchResult.assets``)

        Returns:
            RegimeAnalysis; empty when fewer than ``min_tickers`` assets are
            supplied or the common history is shorter than the lookback
        """
        empty = RegimeAnalysis(
            tickers=list(assets.keys()), lookback=self.lookback, method=self.method
        )

        if len(assets) < self.settings.min_tickers:
            logger.warning(
                f"Need at least {self.settings.min_tickers} tickers for regime detection, "
                f"got {len(assets)}"
            )
            return empty

        tickers, timestamps, returns = align_returns(assets)
        empty.trading_days = len(timestamps)
        w = self.lookback

        if returns.shape[0] <= w:
            logger.warning(
                f"Need more than {w + 1} common trading days for regime detection, "
                f"found {len(timestamps)}"
            )
            return empty

        logger.info(
            f"Detecting regimes: {len(tickers)} assets, {len(timestamps)} common days, "
            f"lookback {w}, method {self.method.value}"
        )

        signals: List[RegimeSignal] = []
        for d in range(w, returns.shape[0]):
            window = returns[d - w:d]
            turbulence = self.turbulence(returns[d], window)

            signals.append(RegimeSignal(
                timestamp=timestamps[d + 1],
                turbulence_index=turbulence,
                regime=classify_regime(turbulence, self.settings.thresholds),
                # Asset-major flattening, one asset's window after another
                fractal_dimension=fractal_dimension(window.T.ravel(), self.settings),
                volatility=basket_volatility(window, self.calendar),
            ))

        current = signals[-1]
        logger.info(
            f"Current regime: {current.regime.value} "
            f"(turbulence {current.turbulence_index:.2f})"
        )

        return RegimeAnalysis(
            signals=signals,
            tickers=tickers,
            trading_days=len(timestamps),
            lookback=w,
            method=self.method,
        )
