"""
Cross-asset correlation matrix construction.

Series of different lengths are compared over their overlapping prefix, so
a short history never blocks the rest of the matrix. Only the upper
triangle is computed; the lower triangle is mirrored from it.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Sequence

import numpy as np

from regime_engine.data_collector import AssetSeries
from regime_engine.data_validator import MatrixValidationResult, validate_correlation_matrix

logger = logging.getLogger(__name__)

MIN_CORRELATION_ASSETS: int = 3


@dataclass
class CorrelationMatrix:
    """Pairwise Pearson correlations in ``tickers`` order."""
    tickers: List[str]
    matrix: np.ndarray
    timestamp: datetime
    validation: MatrixValidationResult

    @property
    def is_empty(self) -> bool:
        return len(self.tickers) == 0

    def get(self, a: str, b: str) -> float:
        return float(self.matrix[self.tickers.index(a), self.tickers.index(b)])

    def to_dict(self) -> Dict[str, object]:
        return {
            "tickers": list(self.tickers),
            "matrix": self.matrix.tolist(),
            "timestamp": self.timestamp.isoformat(),
            "validation": self.validation.to_dict(),
        }


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Pearson correlation over the first ``min(len(x), len(y))`` samples.

    Returns 0.0 when either series has zero variance or is empty.
    """
    n = min(len(x), len(y))
    if n == 0:
        return 0.0

    a = np.asarray(x[:n], dtype=float)
    b = np.asarray(y[:n], dtype=float)

    da = a - a.mean()
    db = b - b.mean()
    denom = np.sqrt(np.sum(da * da) * np.sum(db * db))

    if denom == 0:
        return 0.0
    return float(np.sum(da * db) / denom)


def _empty_matrix() -> CorrelationMatrix:
    return CorrelationMatrix(
        tickers=[],
        matrix=np.zeros((0, 0)),
        timestamp=datetime.now(timezone.utc),
        validation=validate_correlation_matrix([]),
    )


def build_correlation_matrix(
    returns_by_ticker: Mapping[str, Sequence[float]],
    min_assets: int = MIN_CORRELATION_ASSETS
) -> CorrelationMatrix:
    """
    Build and validate the correlation matrix for a set of return series.

    Args:
        returns_by_ticker: Ticker -> log returns, in the desired order
        min_assets: Minimum number of series required

    Returns:
        CorrelationMatrix; empty (no tickers) when fewer than
        ``min_assets`` series are supplied
    """
    tickers = list(returns_by_ticker.keys())
    n = len(tickers)

    if n < min_assets:
        logger.warning(f"Need at least {min_assets} assets for correlation, got {n}")
        return _empty_matrix()

    series = [returns_by_ticker[t] for t in tickers]
    matrix = np.eye(n)

    for i in range(n):
        for j in range(i + 1, n):
            rho = float(np.clip(pearson_correlation(series[i], series[j]), -1.0, 1.0))
            matrix[i, j] = rho
            matrix[j, i] = rho

    validation = validate_correlation_matrix(matrix, tickers)
    if not validation.is_valid:
        logger.warning(f"Correlation matrix failed validation: {validation.issues}")

    logger.info(f"Built {n}x{n} correlation matrix")

    return CorrelationMatrix(
        tickers=tickers,
        matrix=matrix,
        timestamp=datetime.now(timezone.utc),
        validation=validation,
    )


def returns_map(assets: Mapping[str, AssetSeries]) -> "OrderedDict[str, np.ndarray]":
    """Ticker -> returns for an asset map, preserving its order."""
    return OrderedDict((ticker, asset.returns) for ticker, asset in assets.items())
