"""
Historical stress testing for weighted portfolios.

A fixed allocation is replayed through known crisis windows (and a
trailing twelve-month "normal" window). Each asset's closes are rebased to
its first close and scaled by weight x capital; the contributions are
summed index-wise into a synthetic portfolio curve, truncated to the
shortest asset series.

Scenarios:
    covid-2020   COVID Crash, 2020-02-19 to 2020-03-23
    bear-2022    2022 Bear Market, 2022-01-03 to 2022-10-12
    normal       Trailing 365 days, resolved at run time

Recovery days are catalog constants for the market index, not derived from
the simulated curve.

A ticker with no data for the window (or whose fetch fails) contributes
nothing to the curve and is reported with zero drawdown and return.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from regime_engine.bars import close_prices
from regime_engine.config import STRESS, StressTestSettings
from regime_engine.data_collector import MarketDataHandler
from regime_engine.market_calendar import DateLike, trailing_window
from regime_engine.transports import MarketDataError

logger = logging.getLogger(__name__)


# =============================================================================
# SCENARIO CATALOG
# =============================================================================

@dataclass(frozen=True)
class StressTestPeriod:
    """A named historical window with its market-index drawdown."""
    id: str
    name: str
    description: str
    start_date: str
    end_date: str
    market_drawdown: float              # S&P 500 drawdown, percent
    recovery_days: Optional[int] = None

    @property
    def is_dynamic(self) -> bool:
        return not self.start_date or not self.end_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "market_drawdown": self.market_drawdown,
            "recovery_days": self.recovery_days,
        }


STRESS_TEST_PERIODS: Tuple[StressTestPeriod, ...] = (
    StressTestPeriod(
        id="covid-2020",
        name="COVID Crash (2020)",
        description="Rapid market selloff followed by V-shaped recovery",
        start_date="2020-02-19",    # S&P 500 peak
        end_date="2020-03-23",      # S&P 500 trough
        market_drawdown=-33.9,
        recovery_days=148,
    ),
    StressTestPeriod(
        id="bear-2022",
        name="2022 Bear Market",
        description="Rate hikes caused prolonged decline in growth stocks",
        start_date="2022-01-03",
        end_date="2022-10-12",
        market_drawdown=-25.4,
        recovery_days=None,         # Recovery ongoing at catalog time
    ),
    StressTestPeriod(
        id="normal",
        name="Normal Market",
        description="Average market conditions (last 12 months)",
        start_date="",
        end_date="",
        market_drawdown=0.0,
    ),
)


def get_period(period_id: str) -> StressTestPeriod:
    for period in STRESS_TEST_PERIODS:
        if period.id == period_id:
            return period
    raise KeyError(f"Unknown stress test period: {period_id}")


def resolve_period(
    period: StressTestPeriod,
    today: Optional[DateLike] = None,
    settings: StressTestSettings = STRESS
) -> StressTestPeriod:
    """Fill in the dates of a dynamic period (trailing window ending today)."""
    if not period.is_dynamic:
        return period
    start, end = trailing_window(settings.normal_window_days, today)
    return replace(period, start_date=start, end_date=end)


# =============================================================================
# CURVE METRICS
# =============================================================================

def max_drawdown(values: Sequence[float]) -> float:
    """Largest peak-to-trough decline of a value curve, in percent (<= 0)."""
    if len(values) < 2:
        return 0.0
    curve = pd.Series(values, dtype=float)
    running_max = curve.expanding().max()
    drawdown = (curve - running_max) / running_max
    return float(min(drawdown.min(), 0.0) * 100)


def total_return(values: Sequence[float]) -> float:
    """First-to-last change of a value curve, in percent."""
    if len(values) < 2:
        return 0.0
    return float((values[-1] - values[0]) / values[0] * 100)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class StressTestResult:
    """Portfolio outcome for one stress period."""
    period: StressTestPeriod
    portfolio_drawdown: float           # Percent, <= 0
    portfolio_return: float             # Percent
    dollar_loss: float
    recovery_days: Optional[int]
    asset_breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def outperformed_market(self) -> bool:
        """Shallower drawdown than the market index?"""
        if self.period.market_drawdown < 0:
            return self.portfolio_drawdown > self.period.market_drawdown
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "portfolio_drawdown": self.portfolio_drawdown,
            "portfolio_return": self.portfolio_return,
            "dollar_loss": self.dollar_loss,
            "recovery_days": self.recovery_days,
            "asset_breakdown": {t: dict(v) for t, v in self.asset_breakdown.items()},
        }


@dataclass
class LiquidityRiskResult:
    """Drawdown-based liquidity screen for one ticker."""
    ticker: str
    max_historical_drawdown: float      # Percent, positive magnitude
    is_liquidity_risk: bool
    reason: str


# =============================================================================
# ENGINE
# =============================================================================

class StressTestEngine:
    """
    Replays allocations through the stress catalog.

    Prices are fetched through the shared handler, so repeated runs over the
    same windows are served from its cache.
    """

    def __init__(self, handler: MarketDataHandler, settings: StressTestSettings = STRESS):
        self.handler = handler
        self.settings = settings

    def _closes(self, ticker: str, start: str, end: str) -> np.ndarray:
        result = self.handler.fetch_history(ticker, start, end)
        return close_prices(result.bars)

    def run_stress_test(
        self,
        allocations: Mapping[str, float],
        period: StressTestPeriod,
        capital: float,
        today: Optional[DateLike] = None
    ) -> StressTestResult:
        """
        Simulate a weighted portfolio through one period.

        Args:
            allocations: Ticker -> weight (fractions summing to ~1)
            period: Catalog period (dynamic periods are resolved here)
            capital: Invested capital in dollars
            today: Reference date for dynamic periods (default: today)

        Returns:
            StressTestResult with the resolved period
        """
        period = resolve_period(period, today, self.settings)
        logger.info(f"Stress test: {period.name} ({period.start_date} to {period.end_date})")

        breakdown: Dict[str, Dict[str, float]] = {}
        contributions: List[np.ndarray] = []

        for ticker, weight in allocations.items():
            try:
                prices = self._closes(ticker, period.start_date, period.end_date)
            except MarketDataError as e:
                logger.error(f"Error fetching {ticker} for {period.name}: {e}")
                breakdown[ticker] = {"drawdown": 0.0, "return": 0.0}
                continue

            if prices.size == 0 or prices[0] <= 0:
                logger.warning(f"No data for {ticker} during {period.name}")
                breakdown[ticker] = {"drawdown": 0.0, "return": 0.0}
                continue

            breakdown[ticker] = {
                "drawdown": max_drawdown(prices),
                "return": total_return(prices),
            }
            contributions.append(prices / prices[0] * weight * capital)

        if contributions:
            length = min(c.size for c in contributions)
            curve = np.sum([c[:length] for c in contributions], axis=0)
        else:
            curve = np.array([], dtype=float)

        drawdown = max_drawdown(curve)
        result = StressTestResult(
            period=period,
            portfolio_drawdown=drawdown,
            portfolio_return=total_return(curve),
            dollar_loss=abs(capital * drawdown / 100),
            recovery_days=period.recovery_days,
            asset_breakdown=breakdown,
        )

        logger.info(
            f"{period.name}: drawdown {result.portfolio_drawdown:.2f}%, "
            f"return {result.portfolio_return:.2f}%, loss ${result.dollar_loss:,.0f}"
        )
        return result

    def run_all_stress_tests(
        self,
        allocations: Mapping[str, float],
        capital: float,
        today: Optional[DateLike] = None
    ) -> List[StressTestResult]:
        """Run every catalog period in order."""
        return [
            self.run_stress_test(allocations, period, capital, today)
            for period in STRESS_TEST_PERIODS
        ]

    def check_liquidity_risks(
        self,
        tickers: Sequence[str],
        horizon_years: float,
        threshold: Optional[float] = None,
        today: Optional[DateLike] = None
    ) -> List[LiquidityRiskResult]:
        """
        Flag assets whose two-year drawdown is too deep for a short horizon.

        Args:
            tickers: Tickers to screen
            horizon_years: Investor time horizon
            threshold: Drawdown threshold in percent (default 20)
            today: Reference date (default: today)

        Returns:
            One LiquidityRiskResult per ticker, in input order
        """
        threshold = self.settings.liquidity_drawdown_threshold if threshold is None else threshold
        short_horizon = horizon_years < self.settings.short_horizon_years
        start, end = trailing_window(self.settings.liquidity_window_days, today)

        results: List[LiquidityRiskResult] = []
        for ticker in tickers:
            try:
                prices = self._closes(ticker, start, end)
            except MarketDataError as e:
                logger.error(f"Liquidity check failed for {ticker}: {e}")
                results.append(LiquidityRiskResult(
                    ticker, 0.0, False, "Error fetching historical data"
                ))
                continue

            if prices.size == 0:
                results.append(LiquidityRiskResult(
                    ticker, 0.0, False, "Insufficient historical data"
                ))
                continue

            dd = abs(max_drawdown(prices))
            is_risk = short_horizon and dd > threshold

            if is_risk:
                reason = (
                    f"Historical drawdown of {dd:.1f}% exceeds {threshold:g}% threshold "
                    f"for your {horizon_years:g}-year horizon"
                )
            elif dd > threshold:
                reason = (
                    f"High volatility ({dd:.1f}% drawdown) but acceptable "
                    f"for {horizon_years:g}-year horizon"
                )
            else:
                reason = "Within acceptable volatility range"

            results.append(LiquidityRiskResult(ticker, dd, is_risk, reason))

        return results
