"""Tests for bar normalisation, gap repair and return derivation."""
import numpy as np
import pytest

from regime_engine.bars import (
    Bar,
    annualized_volatility,
    bar_from_aggregate,
    bars_to_frame,
    compute_log_returns,
    date_range_of,
    forward_fill_gaps,
)
from regime_engine.market_calendar import MS_PER_DAY, date_to_timestamp, timestamp_to_date

from conftest import make_bars


def _bar(day: str, close: float) -> Bar:
    return Bar(date_to_timestamp(day), close, close, close, close, 500.0, close)


class TestBarNormalisation:

    def test_vwap_defaults_to_close(self):
        bar = bar_from_aggregate({"t": 0, "o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 10})
        assert bar.vwap == 1.5
        assert bar.synthetic is False

    def test_missing_volume_is_zero(self):
        bar = bar_from_aggregate({"t": 0, "o": 1, "h": 1, "l": 1, "c": 1, "vw": 1.2})
        assert bar.volume == 0.0
        assert bar.vwap == 1.2

    def test_frame_has_ohlcv_columns(self):
        df = bars_to_frame(make_bars([100, 101, 102]))
        assert list(df.columns[:5]) == ["Open", "High", "Low", "Close", "Volume"]
        assert len(df) == 3
        assert str(df.index.tz) == "UTC"


class TestForwardFill:

    def test_weekend_is_not_a_gap(self):
        bars = [_bar("2024-01-05", 100), _bar("2024-01-08", 101)]   # Fri -> Mon
        assert forward_fill_gaps(bars) == bars

    def test_week_gap_fills_weekdays_only(self):
        bars = [_bar("2024-01-05", 100), _bar("2024-01-12", 105)]   # Fri -> next Fri
        filled = forward_fill_gaps(bars)

        synthetic = [b for b in filled if b.synthetic]
        days = [timestamp_to_date(b.timestamp).isoformat() for b in synthetic]
        assert days == ["2024-01-08", "2024-01-09", "2024-01-10", "2024-01-11"]

        for b in synthetic:
            assert b.close == b.open == b.high == b.low == b.vwap == 100
            assert b.volume == 0.0

    def test_originals_kept_in_order(self):
        bars = [_bar("2024-01-02", 100), _bar("2024-01-16", 90), _bar("2024-01-17", 91)]
        filled = forward_fill_gaps(bars)
        originals = [b for b in filled if not b.synthetic]
        assert originals == bars

    @pytest.mark.parametrize("seed", range(5))
    def test_random_gaps_keep_timestamps_increasing(self, seed):
        rng = np.random.default_rng(seed)
        ts = date_to_timestamp("2023-01-02")
        bars = []
        for _ in range(60):
            ts += int(rng.integers(1, 12)) * MS_PER_DAY
            bars.append(Bar(ts, 10.0, 10.0, 10.0, 10.0, 1.0, 10.0))

        filled = forward_fill_gaps(bars)

        assert len(filled) >= len(bars)
        assert sum(1 for b in filled if not b.synthetic) == len(bars)
        assert all(b.timestamp < a.timestamp for b, a in zip(filled, filled[1:]))

    def test_empty_input(self):
        assert forward_fill_gaps([]) == []


class TestReturns:

    def test_log_returns(self):
        returns = compute_log_returns([100, 110, 121])
        np.testing.assert_allclose(returns, [np.log(1.1), np.log(1.1)])

    def test_non_positive_prices_give_zero_return(self):
        returns = compute_log_returns([100, 110, 0, 50])
        assert len(returns) == 3
        assert returns[0] == pytest.approx(np.log(1.1))
        assert returns[1] == 0.0
        assert returns[2] == 0.0

    def test_short_series(self):
        assert compute_log_returns([100]).size == 0

    def test_annualized_volatility_uses_population_std(self):
        returns = np.array([0.01, -0.01, 0.02, -0.02])
        expected = np.std(returns, ddof=0) * np.sqrt(252)
        assert annualized_volatility(returns) == pytest.approx(expected)

    def test_constant_prices_have_zero_volatility(self):
        assert annualized_volatility(compute_log_returns([50.0] * 30)) == 0.0

    def test_date_range(self):
        bars = make_bars([1, 2, 3], start="2024-03-04")
        assert date_range_of(bars) == ("2024-03-04", "2024-03-06")
        assert date_range_of([]) is None
