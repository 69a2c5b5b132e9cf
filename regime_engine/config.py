"""
Configuration Module for the Market Data & Regime Engine

This module centralizes all configuration constants, enumerations and
settings used throughout the fetch, validation, regime and stress-test
pipeline.

All "magic numbers" are defined here to ensure:
1. Single source of truth for all constants
2. Easy modification without touching analysis code
3. Transparency in assumptions and thresholds
4. Consistency across all modules

Trading calendar constants live in ``market_calendar`` so they can be
swapped for non-US markets independently of these settings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple


# =============================================================================
# ENUMERATIONS
# =============================================================================

class DataQuality(Enum):
    """Quality tier attached to every validation result."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Regime(Enum):
    """Market turbulence regime."""
    LOW_VOL = "low_vol"
    NORMAL = "normal"
    HIGH_VOL = "high_vol"
    CRISIS = "crisis"


class TurbulenceMethod(Enum):
    """How the turbulence index treats cross-asset covariance."""
    COVARIANCE = "covariance"   # Full Mahalanobis distance
    DIAGONAL = "diagonal"       # Per-asset variances only


class DataSource(Enum):
    """Where a ticker's bars came from."""
    CACHE = "cache"
    NETWORK = "network"
    STORE = "store"


class AuditStatus(Enum):
    """Overall status of an integrity report."""
    VALID = "valid"
    WARNINGS = "warnings"
    ERRORS = "errors"


# =============================================================================
# FETCH SETTINGS
# =============================================================================

@dataclass(frozen=True)
class FetchSettings:
    """Retry, backoff and rate-limit parameters for upstream fetches."""

    max_attempts: int = 3
    retry_delays: Tuple[float, ...] = (0.3, 0.6, 1.2)  # Seconds between attempts
    inter_ticker_delay: float = 0.3                     # Upstream rate limit
    default_timespan: str = "day"
    request_timeout: float = 30.0                       # Seconds

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given zero-based failed attempt."""
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]


# =============================================================================
# CACHE SETTINGS
# =============================================================================

@dataclass(frozen=True)
class CacheSettings:
    """In-process price history cache."""

    history_ttl: float = 60 * 60.0   # 1 hour, in seconds


# =============================================================================
# VALIDATION THRESHOLDS
# =============================================================================

@dataclass(frozen=True)
class ValidationThresholds:
    """Thresholds and penalties for bar-level quality assessment."""

    # Quality tiers (score out of 100)
    high_quality_score: float = 90.0
    medium_quality_score: float = 70.0

    # Per-bar integrity penalties (scaled by share of affected bars)
    non_positive_price_penalty: float = 30.0
    negative_volume_penalty: float = 20.0
    invalid_ohlc_penalty: float = 25.0
    out_of_order_penalty: float = 15.0

    # Coverage
    min_coverage: float = 0.80
    low_coverage_penalty: float = 10.0

    # Price jumps
    max_daily_move: float = 0.40          # 40% close-to-close
    jump_penalty: float = 10.0
    max_jump_penalty: float = 30.0

    # Robust outlier detection on log returns
    outlier_zscore: float = 10.0
    outlier_penalty: float = 5.0
    min_outlier_samples: int = 20

    # Stale feed detection
    min_unique_close_ratio: float = 0.10
    stale_min_bars: int = 10
    stale_penalty: float = 20.0

    # Correlation matrix tolerances
    matrix_tolerance: float = 1e-4


# =============================================================================
# REGIME SETTINGS
# =============================================================================

@dataclass(frozen=True)
class TurbulenceThresholds:
    """
    Turbulence index cut-offs.

    Fixed for compatibility with downstream consumers:
        > 25  crisis
        > 15  high_vol
        > 8   normal
        else  low_vol
    """
    crisis: float = 25.0
    high_vol: float = 15.0
    normal: float = 8.0


@dataclass(frozen=True)
class RegimeSettings:
    """Rolling-window regime detection parameters."""

    lookback_days: int = 60
    min_tickers: int = 3
    thresholds: TurbulenceThresholds = field(default_factory=TurbulenceThresholds)
    method: TurbulenceMethod = TurbulenceMethod.COVARIANCE

    # Fractal dimension (simplified R/S)
    fractal_min_samples: int = 10
    neutral_fractal_dimension: float = 1.5

    # Gauss-Jordan singularity guard
    pivot_epsilon: float = 1e-10


# =============================================================================
# STRESS TEST SETTINGS
# =============================================================================

@dataclass(frozen=True)
class StressTestSettings:
    """Historical replay and liquidity screening parameters."""

    normal_window_days: int = 365
    liquidity_window_days: int = 730
    liquidity_drawdown_threshold: float = 20.0   # Percent
    short_horizon_years: float = 2.0


# =============================================================================
# ENGINE SETTINGS
# =============================================================================

@dataclass(frozen=True)
class EngineSettings:
    """All settings for one engine context."""

    fetch: FetchSettings = field(default_factory=FetchSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    validation: ValidationThresholds = field(default_factory=ValidationThresholds)
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    stress: StressTestSettings = field(default_factory=StressTestSettings)


# =============================================================================
# GLOBAL CONFIGURATION INSTANCES
# =============================================================================

# Immutable defaults shared by callers that do not inject their own
VALIDATION = ValidationThresholds()
REGIME = RegimeSettings()
STRESS = StressTestSettings()
DEFAULT_SETTINGS = EngineSettings()
