"""Shared pytest fixtures for regime engine tests."""
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import pytest

from regime_engine.bars import Bar, annualized_volatility, compute_log_returns
from regime_engine.config import DataQuality
from regime_engine.data_collector import AssetSeries
from regime_engine.data_validator import ValidationResult
from regime_engine.market_calendar import date_to_timestamp
from regime_engine.transports import MarketDataTransport, TransportError


def business_days(start: str, n: int) -> List[int]:
    """Millisecond timestamps for ``n`` consecutive weekdays from ``start``."""
    return [date_to_timestamp(d) for d in pd.bdate_range(start=start, periods=n)]


def make_rows(closes: Sequence[float], start: str = "2024-01-02") -> List[Dict]:
    """Provider-style aggregate rows with consistent OHLC around each close."""
    rows = []
    for ts, c in zip(business_days(start, len(closes)), closes):
        rows.append({
            "t": ts,
            "o": float(c),
            "h": float(c) * 1.01,
            "l": float(c) * 0.99,
            "c": float(c),
            "v": 1_000_000.0,
            "vw": float(c),
        })
    return rows


def make_bars(closes: Sequence[float], start: str = "2024-01-02") -> List[Bar]:
    return [
        Bar(r["t"], r["o"], r["h"], r["l"], r["c"], r["v"], r["vw"])
        for r in make_rows(closes, start)
    ]


def random_walk(n: int, seed: int, vol: float = 0.01, start_price: float = 100.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return start_price * np.exp(np.cumsum(rng.normal(0.0003, vol, n)))


class FakeTransport(MarketDataTransport):
    """
    In-memory transport.

    ``data`` maps ticker -> rows; ``errors`` maps ticker -> exception raised
    on every call. Every call is recorded in ``calls``.
    """

    source_name = "Fake"

    def __init__(self, data: Optional[Dict[str, List[Dict]]] = None,
                 errors: Optional[Dict[str, Exception]] = None):
        self.data = data or {}
        self.errors = errors or {}
        self.calls: List[tuple] = []

    def fetch_aggregates(self, ticker, start, end, timespan="day"):
        self.calls.append((ticker, start, end, timespan))
        if ticker in self.errors:
            raise self.errors[ticker]
        return list(self.data.get(ticker, []))

    def call_count(self, ticker: str) -> int:
        return sum(1 for c in self.calls if c[0] == ticker)


class FlakyTransport(FakeTransport):
    """Fails ``failures`` times per ticker before succeeding."""

    def __init__(self, data, failures: int):
        super().__init__(data)
        self.failures = failures

    def fetch_aggregates(self, ticker, start, end, timespan="day"):
        self.calls.append((ticker, start, end, timespan))
        if self.call_count(ticker) <= self.failures:
            raise TransportError("HTTP 503", 503)
        return list(self.data.get(ticker, []))


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sleeps():
    """Recorded sleep durations; pass ``sleeps.append`` as the sleep function."""
    return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def universe_rows():
    """Three correlated-enough random walks over 120 weekdays."""
    return {
        "SPY": make_rows(random_walk(120, seed=1)),
        "TLT": make_rows(random_walk(120, seed=2, vol=0.008)),
        "GLD": make_rows(random_walk(120, seed=3, vol=0.009)),
    }


def span(rows: List[Dict]) -> tuple:
    """(first, last) ISO dates covered by aggregate rows."""
    first = pd.Timestamp(rows[0]["t"], unit="ms").date().isoformat()
    last = pd.Timestamp(rows[-1]["t"], unit="ms").date().isoformat()
    return first, last


def make_asset(ticker: str, closes: Sequence[float], start: str = "2024-01-02"):
    """AssetSeries built directly from closes, bypassing the fetch handler."""
    bars = tuple(make_bars(closes, start))
    returns = compute_log_returns([b.close for b in bars])
    return AssetSeries(
        ticker=ticker,
        bars=bars,
        returns=returns,
        volatility=annualized_volatility(returns),
        validation=ValidationResult(True, DataQuality.HIGH, []),
    )
