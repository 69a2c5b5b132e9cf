"""
Data quality assessment for price histories and correlation matrices.

Validation never raises. Every check degrades a 0-100 quality score and
appends a human-readable issue; the score is then mapped to a three-tier
quality grade:

    score >= 90   high
    score >= 70   medium
    otherwise     low

A ``low`` series is unreliable for correlation and regime work but is not
rejected here. Callers decide what to do with it.

Checks on a ticker's bars:
    - Price integrity: non-positive prices, negative volume, OHLC ordering
    - Sequencing: timestamps strictly increasing
    - Coverage: bars vs. expected trading days for the requested range
    - Jumps: close-to-close moves beyond a fixed threshold
    - Outliers: robust (median/MAD) z-scores of log returns
    - Staleness: too few distinct closes for the series length
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from regime_engine.bars import Bar, bars_to_frame, compute_log_returns
from regime_engine.config import VALIDATION, DataQuality, ValidationThresholds
from regime_engine.market_calendar import (
    DateLike,
    expected_trading_days,
    timestamp_to_date,
    to_date,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ValidationResult:
    """Outcome of a quality assessment."""
    is_valid: bool
    data_quality: DataQuality
    issues: List[str] = field(default_factory=list)

    @property
    def is_reliable(self) -> bool:
        """Usable for correlation and regime analysis?"""
        return self.data_quality != DataQuality.LOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "data_quality": self.data_quality.value,
            "issues": list(self.issues),
        }


@dataclass
class MatrixValidationResult(ValidationResult):
    """Correlation matrix assessment with per-invariant flags."""
    diagonal_valid: bool = True
    symmetry_valid: bool = True
    range_valid: bool = True

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            "diagonal_valid": self.diagonal_valid,
            "symmetry_valid": self.symmetry_valid,
            "range_valid": self.range_valid,
        })
        return result


@dataclass
class MetricsValidationResult:
    """Range checks on computed portfolio metrics."""
    is_valid: bool
    issues: List[str]
    metrics_in_range: Dict[str, bool]
    weighted_return_match: bool
    discrepancy: Optional[float] = None


# Realistic bounds for portfolio-level metrics (decimal units)
METRIC_RANGES: Dict[str, Tuple[float, float]] = {
    "annual_return": (-0.9, 5.0),
    "annual_volatility": (0.05, 1.0),
    "sharpe_ratio": (-2.0, 4.0),
    "sortino_ratio": (-3.0, 6.0),
    "max_drawdown": (0.0, 1.0),
    "calmar_ratio": (-5.0, 10.0),
    "beta": (-2.0, 3.0),
    "alpha": (-0.5, 0.5),
}

WEIGHTED_RETURN_TOLERANCE: float = 0.001


def score_to_quality(
    score: float,
    thresholds: ValidationThresholds = VALIDATION
) -> DataQuality:
    """Map a 0-100 quality score to its tier."""
    if score >= thresholds.high_quality_score:
        return DataQuality.HIGH
    elif score >= thresholds.medium_quality_score:
        return DataQuality.MEDIUM
    return DataQuality.LOW


# =============================================================================
# TICKER VALIDATION
# =============================================================================

def validate_ticker_data(
    ticker: str,
    bars: Sequence[Bar],
    expected_range: Optional[Tuple[DateLike, DateLike]] = None,
    thresholds: ValidationThresholds = VALIDATION
) -> ValidationResult:
    """
    Assess a ticker's bar history.

    Args:
        ticker: Ticker symbol (for logging)
        bars: Bars in the order they will be used
        expected_range: Optional requested (start, end) dates
        thresholds: Penalties and cut-offs

    Returns:
        ValidationResult with quality tier and ordered issue list
    """
    logger.debug(f"Validating {ticker} with {len(bars) if bars else 0} bars")

    if not bars:
        return ValidationResult(
            is_valid=False,
            data_quality=DataQuality.LOW,
            issues=["No data provided"],
        )

    issues: List[str] = []
    score = 100.0
    df = bars_to_frame(bars)
    n = len(df)

    # Price integrity
    invalid_prices = int((df[["Open", "High", "Low", "Close"]] <= 0).any(axis=1).sum())
    if invalid_prices > 0:
        issues.append(f"{invalid_prices} bars with non-positive prices")
        score -= (invalid_prices / n) * thresholds.non_positive_price_penalty

    invalid_volumes = int((df["Volume"] < 0).sum())
    if invalid_volumes > 0:
        issues.append(f"{invalid_volumes} bars with negative volume")
        score -= (invalid_volumes / n) * thresholds.negative_volume_penalty

    invalid_ohlc = int((
        (df["High"] < df["Low"]) |
        (df["High"] < df[["Open", "Close"]].max(axis=1)) |
        (df["Low"] > df[["Open", "Close"]].min(axis=1))
    ).sum())
    if invalid_ohlc > 0:
        issues.append(f"{invalid_ohlc} bars with invalid OHLC relationships")
        score -= (invalid_ohlc / n) * thresholds.invalid_ohlc_penalty

    # Sequencing
    timestamps = np.array([b.timestamp for b in bars], dtype=np.int64)
    out_of_order = int((np.diff(timestamps) <= 0).sum())
    if out_of_order > 0:
        issues.append(f"{out_of_order} timestamps out of order")
        score -= thresholds.out_of_order_penalty

    # Requested range and coverage
    if expected_range is not None:
        range_start = to_date(expected_range[0])
        range_end = to_date(expected_range[1])
        first_date = timestamp_to_date(bars[0].timestamp)
        last_date = timestamp_to_date(bars[-1].timestamp)

        if first_date < range_start:
            issues.append(f"Data starts before expected range: {first_date.isoformat()}")
        if last_date > range_end:
            issues.append(f"Data ends after expected range: {last_date.isoformat()}")

        expected_days = expected_trading_days(range_start, range_end)
        if expected_days > 0:
            coverage = n / expected_days
            if coverage < thresholds.min_coverage:
                issues.append(
                    f"Low data coverage: {coverage * 100:.1f}% of expected trading days"
                )
                score -= thresholds.low_coverage_penalty

    # Price jumps
    closes = df["Close"]
    prev_closes = closes.shift(1)
    valid_pairs = (closes > 0) & (prev_closes > 0)
    moves = (closes[valid_pairs] / prev_closes[valid_pairs]) - 1
    jumps = int((moves.abs() > thresholds.max_daily_move).sum())
    if jumps > 0:
        issues.append(
            f"{jumps} anomalous price jumps exceeding {thresholds.max_daily_move:.0%}"
        )
        score -= min(thresholds.max_jump_penalty, jumps * thresholds.jump_penalty)

    # Statistical outliers
    outliers = _count_return_outliers(closes.to_numpy(), thresholds)
    if outliers > 0:
        issues.append(f"{outliers} statistical return outliers")
        score -= thresholds.outlier_penalty

    # Stale feed
    unique_closes = closes.nunique()
    if n > thresholds.stale_min_bars and unique_closes < n * thresholds.min_unique_close_ratio:
        issues.append("Suspiciously low price variation - possible stale data")
        score -= thresholds.stale_penalty

    quality = score_to_quality(score, thresholds)
    is_valid = len(issues) == 0

    logger.debug(
        f"{ticker}: is_valid={is_valid}, quality={quality.value}, "
        f"issues={len(issues)}"
    )

    return ValidationResult(is_valid=is_valid, data_quality=quality, issues=issues)


def _count_return_outliers(
    closes: np.ndarray,
    thresholds: ValidationThresholds
) -> int:
    """Count log returns whose robust z-score exceeds the threshold."""
    returns = compute_log_returns(closes)
    if returns.size < thresholds.min_outlier_samples:
        return 0

    mad = stats.median_abs_deviation(returns, scale='normal')
    if not np.isfinite(mad) or mad <= 0:
        return 0

    z = np.abs(returns - np.median(returns)) / mad
    return int((z > thresholds.outlier_zscore).sum())


# =============================================================================
# CORRELATION MATRIX VALIDATION
# =============================================================================

def _invalid_matrix(issue: str) -> MatrixValidationResult:
    return MatrixValidationResult(
        is_valid=False,
        data_quality=DataQuality.LOW,
        issues=[issue],
        diagonal_valid=False,
        symmetry_valid=False,
        range_valid=False,
    )


def validate_correlation_matrix(
    matrix: Sequence[Sequence[float]],
    tickers: Optional[Sequence[str]] = None,
    thresholds: ValidationThresholds = VALIDATION
) -> MatrixValidationResult:
    """
    Check the structural invariants of a correlation matrix.

    Square shape, unit diagonal, symmetry and the [-1, 1] range are each
    checked; violations are reported as issues rather than raised.
    """
    if isinstance(matrix, np.ndarray) and matrix.ndim != 2 and matrix.size > 0:
        return _invalid_matrix("Correlation matrix must be two-dimensional")

    if matrix is None or len(matrix) == 0:
        return _invalid_matrix("Empty correlation matrix")

    n = len(matrix)

    for i, row in enumerate(matrix):
        if row is None or np.ndim(row) != 1 or len(row) != n:
            return _invalid_matrix(f"Row {i} has incorrect length")

    try:
        m = np.asarray(matrix, dtype=float)
    except (TypeError, ValueError):
        return _invalid_matrix("Correlation matrix has non-numeric entries")

    issues: List[str] = []
    non_finite = int((~np.isfinite(m)).sum())
    if non_finite > 0:
        issues.append(f"{non_finite} non-finite correlation entries")

    tol = thresholds.matrix_tolerance

    def label(i: int) -> str:
        return tickers[i] if tickers is not None and i < len(tickers) else f"index {i}"

    diagonal_valid = True
    for i in range(n):
        if abs(m[i, i] - 1.0) > tol:
            diagonal_valid = False
            issues.append(f"Diagonal value at {label(i)} is {m[i, i]:.4f}, expected 1.0")

    symmetry_valid = True
    range_valid = non_finite == 0
    for i in range(n):
        for j in range(i + 1, n):
            if abs(m[i, j] - m[j, i]) > tol:
                symmetry_valid = False
                issues.append(
                    f"Matrix not symmetric at ({label(i)},{label(j)}): "
                    f"{m[i, j]:.4f} vs {m[j, i]:.4f}"
                )
            if m[i, j] < -1 or m[i, j] > 1:
                range_valid = False
                issues.append(
                    f"Correlation at ({label(i)},{label(j)}) = {m[i, j]:.4f} outside [-1, 1]"
                )

    is_valid = diagonal_valid and symmetry_valid and range_valid

    logger.debug(
        f"Correlation matrix {n}x{n}: is_valid={is_valid}, diagonal={diagonal_valid}, "
        f"symmetric={symmetry_valid}, range={range_valid}"
    )

    return MatrixValidationResult(
        is_valid=is_valid,
        data_quality=DataQuality.HIGH if is_valid else DataQuality.LOW,
        issues=issues,
        diagonal_valid=diagonal_valid,
        symmetry_valid=symmetry_valid,
        range_valid=range_valid,
    )


# =============================================================================
# PORTFOLIO METRICS VALIDATION
# =============================================================================

def validate_portfolio_metrics(
    metrics: Dict[str, float],
    asset_returns: Optional[Sequence[Tuple[float, float]]] = None
) -> MetricsValidationResult:
    """
    Check computed portfolio metrics against realistic ranges.

    Args:
        metrics: Metric name -> value, names as in ``METRIC_RANGES``
        asset_returns: Optional (weight, return) pairs; when given, the
            weighted sum must match ``metrics['annual_return']``

    Returns:
        MetricsValidationResult
    """
    issues: List[str] = []
    in_range: Dict[str, bool] = {}

    for name, (low, high) in METRIC_RANGES.items():
        value = metrics.get(name)
        if value is None:
            continue
        ok = low <= value <= high
        in_range[name] = ok
        if not ok:
            issues.append(f"{name} ({value:.4f}) outside realistic range [{low}, {high}]")

    weighted_match = True
    discrepancy = None
    annual_return = metrics.get("annual_return")

    if asset_returns and annual_return is not None:
        weighted = sum(weight * ret for weight, ret in asset_returns)
        discrepancy = abs(weighted - annual_return)
        if discrepancy > WEIGHTED_RETURN_TOLERANCE:
            weighted_match = False
            issues.append(
                f"Portfolio return ({annual_return * 100:.2f}%) doesn't match weighted sum "
                f"({weighted * 100:.2f}%), discrepancy: {discrepancy * 100:.4f}%"
            )

    return MetricsValidationResult(
        is_valid=len(issues) == 0,
        issues=issues,
        metrics_in_range=in_range,
        weighted_return_match=weighted_match,
        discrepancy=discrepancy,
    )
