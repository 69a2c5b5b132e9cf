"""
OHLCV bar model, gap repair and return derivation.

Stage 1 of every fetch: provider rows are normalised into immutable ``Bar``
objects, trading-day gaps longer than a weekend are forward-filled with the
previous close, and log returns plus annualised volatility are derived from
the repaired close series.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from regime_engine.market_calendar import (
    MS_PER_DAY,
    US_EQUITY,
    CalendarParams,
    is_weekend,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Bar:
    """
    One OHLCV bar.

    ``synthetic`` marks bars produced by forward-filling; such bars repeat
    the previous close and carry zero volume.
    """
    timestamp: int          # Milliseconds since epoch (UTC)
    open: float
    high: float
    low: float
    close: float
    volume: float
    vwap: float
    synthetic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Provider-style row (``t``, ``o``, ...) for storage round-trips."""
        return {
            "t": self.timestamp,
            "o": self.open,
            "h": self.high,
            "l": self.low,
            "c": self.close,
            "v": self.volume,
            "vw": self.vwap,
        }


# =============================================================================
# NORMALISATION
# =============================================================================

def bar_from_aggregate(row: Dict[str, Any]) -> Bar:
    """Convert one ``{t, o, h, l, c, v, vw?}`` row to a Bar."""
    close = float(row["c"])
    vwap = row.get("vw")
    return Bar(
        timestamp=int(row["t"]),
        open=float(row["o"]),
        high=float(row["h"]),
        low=float(row["l"]),
        close=close,
        volume=float(row.get("v") or 0.0),
        vwap=float(vwap) if vwap else close,
    )


def bars_from_aggregates(rows: Iterable[Dict[str, Any]]) -> List[Bar]:
    """Normalise provider aggregate rows, preserving their order."""
    return [bar_from_aggregate(row) for row in rows]


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    """
    Build a DataFrame view of a bar sequence.

    Columns follow the Open/High/Low/Close/Volume convention with a UTC
    DatetimeIndex, so vectorised checks read the same as for any OHLCV frame.
    """
    if not bars:
        return pd.DataFrame(
            columns=["Open", "High", "Low", "Close", "Volume", "VWAP", "Synthetic"]
        )

    df = pd.DataFrame({
        "Open": [b.open for b in bars],
        "High": [b.high for b in bars],
        "Low": [b.low for b in bars],
        "Close": [b.close for b in bars],
        "Volume": [b.volume for b in bars],
        "VWAP": [b.vwap for b in bars],
        "Synthetic": [b.synthetic for b in bars],
    }, index=pd.to_datetime([b.timestamp for b in bars], unit="ms", utc=True))
    df.index.name = "timestamp"
    return df


# =============================================================================
# GAP REPAIR
# =============================================================================

def forward_fill_gaps(
    bars: Sequence[Bar],
    calendar: CalendarParams = US_EQUITY
) -> List[Bar]:
    """
    Fill trading-day gaps with the previous bar's close.

    When consecutive bars are more than ``calendar.max_gap_days`` whole days
    apart, one synthetic bar is inserted for every intermediate calendar day
    that is not a weekend day. Original bars are never removed or reordered.

    Args:
        bars: Bars in timestamp order
        calendar: Calendar parameters (gap size, weekend days)

    Returns:
        New list containing the original bars plus synthetic fills
    """
    if not bars:
        return []

    filled: List[Bar] = [bars[0]]
    synthesized = 0

    for prev_bar, curr_bar in zip(bars, bars[1:]):
        gap_days = (curr_bar.timestamp - prev_bar.timestamp) // MS_PER_DAY

        if gap_days > calendar.max_gap_days:
            for d in range(1, gap_days):
                fill_ts = prev_bar.timestamp + d * MS_PER_DAY
                if is_weekend(fill_ts, calendar):
                    continue
                filled.append(Bar(
                    timestamp=fill_ts,
                    open=prev_bar.close,
                    high=prev_bar.close,
                    low=prev_bar.close,
                    close=prev_bar.close,
                    volume=0.0,
                    vwap=prev_bar.close,
                    synthetic=True,
                ))
                synthesized += 1

        filled.append(curr_bar)

    if synthesized:
        logger.debug(f"Forward-filled {synthesized} missing trading days")

    return filled


# =============================================================================
# RETURNS AND VOLATILITY
# =============================================================================

def compute_log_returns(prices: Sequence[float]) -> np.ndarray:
    """
    Compute log returns from a close-price series.

    A pair with a non-positive price on either side yields a zero return
    rather than being dropped, so the output always has ``len(prices) - 1``
    entries and stays index-aligned with the bars.

    Args:
        prices: Close prices in time order

    Returns:
        Log return array (length n-1, empty for fewer than two prices)
    """
    arr = np.asarray(prices, dtype=float)
    if arr.size < 2:
        return np.array([], dtype=float)

    prev = arr[:-1]
    curr = arr[1:]
    valid = (prev > 0) & (curr > 0)

    returns = np.zeros(arr.size - 1, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        returns[valid] = np.log(curr[valid] / prev[valid])
    return returns


def annualized_volatility(
    returns: Sequence[float],
    calendar: CalendarParams = US_EQUITY
) -> float:
    """Population standard deviation of returns scaled by sqrt(252)."""
    arr = np.asarray(returns, dtype=float)
    if arr.size == 0:
        return 0.0
    return float(np.std(arr) * calendar.annualization_factor)


def close_prices(bars: Sequence[Bar]) -> np.ndarray:
    return np.array([b.close for b in bars], dtype=float)


def date_range_of(bars: Sequence[Bar]) -> Optional[tuple]:
    """(first, last) ISO dates of a bar sequence, or None when empty."""
    if not bars:
        return None
    index = pd.to_datetime([bars[0].timestamp, bars[-1].timestamp], unit="ms", utc=True)
    return index[0].strftime('%Y-%m-%d'), index[1].strftime('%Y-%m-%d')
