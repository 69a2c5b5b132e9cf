"""
Trading calendar parameters and date helpers.

The engine's numeric coupling to a US-equity calendar (252 trading days,
weekend-sized gaps, 5 trading days out of 7) is kept here so a different
market can swap in its own ``CalendarParams`` without touching the
algorithms that use them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Union

import numpy as np
import pandas as pd


# =============================================================================
# CONSTANTS
# =============================================================================

MS_PER_DAY: int = 24 * 60 * 60 * 1000

DateLike = Union[str, date, datetime, pd.Timestamp]


@dataclass(frozen=True)
class CalendarParams:
    """Calendar assumptions used for annualisation and gap handling."""

    trading_days_year: int = 252
    max_gap_days: int = 3                 # Longer than a weekend = gap
    trading_days_per_week: int = 5
    calendar_days_per_week: int = 7
    weekend_weekdays: tuple = (5, 6)      # Saturday, Sunday

    @property
    def annualization_factor(self) -> float:
        return float(np.sqrt(self.trading_days_year))

    @property
    def trading_day_ratio(self) -> float:
        return self.trading_days_per_week / self.calendar_days_per_week


US_EQUITY = CalendarParams()


# =============================================================================
# DATE HELPERS
# =============================================================================

def to_date(value: DateLike) -> date:
    """Coerce an ISO string, datetime or Timestamp to a calendar date."""
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


def to_iso(value: DateLike) -> str:
    """Format a date-like value as YYYY-MM-DD."""
    return to_date(value).isoformat()


def timestamp_to_date(timestamp_ms: int) -> date:
    """UTC calendar date of a millisecond epoch timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date()


def date_to_timestamp(value: DateLike) -> int:
    """Millisecond epoch timestamp of midnight UTC on the given date."""
    d = to_date(value)
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp() * 1000)


def is_weekend(timestamp_ms: int, calendar: CalendarParams = US_EQUITY) -> bool:
    """True when the timestamp falls on a non-trading weekday (UTC)."""
    return timestamp_to_date(timestamp_ms).weekday() in calendar.weekend_weekdays


def expected_trading_days(
    start: DateLike,
    end: DateLike,
    calendar: CalendarParams = US_EQUITY
) -> int:
    """
    Rough count of trading days between two dates.

    Uses the 5-in-7 ratio rather than a holiday calendar, so it slightly
    overstates the true count; coverage thresholds are set with that in mind.
    """
    days = (to_date(end) - to_date(start)).days
    if days <= 0:
        return 0
    return int(np.floor(days * calendar.trading_day_ratio))


def trailing_window(days: int, today: DateLike = None) -> tuple:
    """(start, end) ISO dates for a window ending today."""
    end = to_date(today) if today is not None else date.today()
    start = end - timedelta(days=days)
    return start.isoformat(), end.isoformat()
