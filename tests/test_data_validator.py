"""Tests for ticker, correlation matrix and portfolio metric validation."""
from dataclasses import replace

import numpy as np
import pytest

from regime_engine.config import DataQuality
from regime_engine.data_validator import (
    score_to_quality,
    validate_correlation_matrix,
    validate_portfolio_metrics,
    validate_ticker_data,
)

from conftest import make_bars, make_rows, random_walk, span


class TestTickerValidation:

    def setup_method(self):
        self.closes = random_walk(40, seed=7)
        self.rows = make_rows(self.closes)
        self.bars = make_bars(self.closes)
        self.range = span(self.rows)

    def test_clean_series_is_valid_high(self):
        result = validate_ticker_data("AAA", self.bars, self.range)
        assert result.is_valid
        assert result.issues == []
        assert result.data_quality == DataQuality.HIGH
        assert result.is_reliable

    def test_no_data(self):
        result = validate_ticker_data("AAA", [])
        assert not result.is_valid
        assert result.data_quality == DataQuality.LOW
        assert result.issues == ["No data provided"]

    def test_non_positive_prices(self):
        bars = list(self.bars)
        bars[5] = replace(bars[5], open=0.0, high=0.0, low=0.0, close=0.0, vwap=0.0)
        result = validate_ticker_data("AAA", bars)
        assert "1 bars with non-positive prices" in result.issues
        assert not result.is_valid

    def test_negative_volume(self):
        bars = list(self.bars)
        bars[3] = replace(bars[3], volume=-5.0)
        result = validate_ticker_data("AAA", bars)
        assert result.issues == ["1 bars with negative volume"]
        # 20 x 1/40 penalty keeps the series in the top tier
        assert result.data_quality == DataQuality.HIGH

    def test_invalid_ohlc(self):
        bars = list(self.bars)
        b = bars[10]
        bars[10] = replace(b, high=b.low * 0.5)
        result = validate_ticker_data("AAA", bars)
        assert "1 bars with invalid OHLC relationships" in result.issues

    def test_out_of_order_timestamps(self):
        bars = list(self.bars)
        bars[20], bars[21] = bars[21], bars[20]
        result = validate_ticker_data("AAA", bars)
        assert "1 timestamps out of order" in result.issues
        assert result.data_quality == DataQuality.MEDIUM

    def test_data_outside_requested_range(self):
        start, _ = self.range
        result = validate_ticker_data("AAA", self.bars[:30], ("2024-01-10", "2024-01-31"))
        assert f"Data starts before expected range: {start}" in result.issues
        assert any(i.startswith("Data ends after expected range:") for i in result.issues)

    def test_end_on_same_day_is_inside_range(self):
        result = validate_ticker_data("AAA", self.bars, self.range)
        assert not any("ends after" in i for i in result.issues)

    def test_low_coverage(self):
        start, _ = self.range
        result = validate_ticker_data("AAA", self.bars[:20], (start, "2024-06-28"))
        coverage = [i for i in result.issues if i.startswith("Low data coverage")]
        assert len(coverage) == 1
        assert coverage[0].endswith("% of expected trading days")

    def test_price_jump(self):
        closes = self.closes.copy()
        closes[25:] *= 1.6
        result = validate_ticker_data("AAA", make_bars(closes))
        assert "1 anomalous price jumps exceeding 40%" in result.issues
        assert "1 statistical return outliers" in result.issues
        assert result.data_quality == DataQuality.MEDIUM

    def test_jump_penalty_is_capped(self):
        closes = np.array([100.0, 200.0] * 15)
        result = validate_ticker_data("AAA", make_bars(closes))
        assert any("anomalous price jumps" in i for i in result.issues)
        # 29 jumps capped at 30 points plus the stale-data penalty
        assert result.data_quality == DataQuality.LOW

    def test_stale_prices(self):
        result = validate_ticker_data("AAA", make_bars([50.0] * 20))
        assert result.issues == ["Suspiciously low price variation - possible stale data"]
        assert result.data_quality == DataQuality.MEDIUM

    def test_stale_check_needs_more_than_ten_bars(self):
        result = validate_ticker_data("AAA", make_bars([50.0] * 10))
        assert result.is_valid

    def test_penalties_accumulate_to_low(self):
        bars = make_bars([50.0] * 20)
        bars[5], bars[6] = bars[6], bars[5]
        result = validate_ticker_data("AAA", bars, ("2024-01-02", "2024-06-28"))
        assert result.data_quality == DataQuality.LOW
        assert not result.is_reliable

    def test_validator_never_raises_on_garbage(self):
        bars = make_bars([1.0, -1.0, 0.0, 1e12, 1e-12] * 5)
        result = validate_ticker_data("AAA", bars, ("2024-01-01", "2023-01-01"))
        assert not result.is_valid


@pytest.mark.parametrize("score, expected", [
    (100, DataQuality.HIGH),
    (90, DataQuality.HIGH),
    (89.9, DataQuality.MEDIUM),
    (70, DataQuality.MEDIUM),
    (69.9, DataQuality.LOW),
])
def test_score_to_quality(score, expected):
    assert score_to_quality(score) == expected


class TestCorrelationMatrixValidation:

    def test_identity_is_valid(self):
        result = validate_correlation_matrix(np.eye(3), ["A", "B", "C"])
        assert result.is_valid
        assert result.data_quality == DataQuality.HIGH
        assert result.diagonal_valid and result.symmetry_valid and result.range_valid

    def test_empty(self):
        result = validate_correlation_matrix([])
        assert result.issues == ["Empty correlation matrix"]
        assert result.data_quality == DataQuality.LOW

    def test_ragged_row(self):
        result = validate_correlation_matrix([[1.0, 0.2], [0.2]])
        assert result.issues == ["Row 1 has incorrect length"]
        assert not result.is_valid

    def test_one_dimensional_array(self):
        result = validate_correlation_matrix(np.array([1.0]))
        assert not result.is_valid
        assert result.issues == ["Correlation matrix must be two-dimensional"]

    def test_scalar_row(self):
        result = validate_correlation_matrix([1.0, [0.2, 1.0]])
        assert result.issues == ["Row 0 has incorrect length"]

    def test_nan_entries_fail_range_check(self):
        m = np.eye(2)
        m[0, 1] = m[1, 0] = np.nan
        result = validate_correlation_matrix(m, ["A", "B"])
        assert not result.is_valid
        assert not result.range_valid
        assert "2 non-finite correlation entries" in result.issues

    def test_bad_diagonal(self):
        m = np.eye(2)
        m[1, 1] = 0.9
        result = validate_correlation_matrix(m, ["A", "B"])
        assert not result.diagonal_valid
        assert result.symmetry_valid
        assert "B" in result.issues[0]

    def test_asymmetric(self):
        m = np.array([[1.0, 0.5], [0.4, 1.0]])
        result = validate_correlation_matrix(m)
        assert not result.symmetry_valid
        assert "index 0" in result.issues[0]

    def test_tolerance_absorbs_rounding(self):
        m = np.array([[1.0, 0.5], [0.50005, 1.00005]])
        assert validate_correlation_matrix(m).is_valid

    def test_out_of_range(self):
        m = np.array([[1.0, 1.2], [1.2, 1.0]])
        result = validate_correlation_matrix(m)
        assert not result.range_valid
        assert result.data_quality == DataQuality.LOW


class TestPortfolioMetricsValidation:

    def test_realistic_metrics_pass(self):
        result = validate_portfolio_metrics({
            "annual_return": 0.08,
            "annual_volatility": 0.15,
            "sharpe_ratio": 0.9,
            "max_drawdown": 0.2,
        })
        assert result.is_valid
        assert all(result.metrics_in_range.values())

    def test_out_of_range_metric(self):
        result = validate_portfolio_metrics({"sharpe_ratio": 6.0})
        assert not result.is_valid
        assert result.metrics_in_range["sharpe_ratio"] is False

    def test_weighted_return_mismatch(self):
        result = validate_portfolio_metrics(
            {"annual_return": 0.10},
            asset_returns=[(0.5, 0.08), (0.5, 0.06)],
        )
        assert not result.weighted_return_match
        assert result.discrepancy == pytest.approx(0.03)

    def test_weighted_return_match_within_tolerance(self):
        result = validate_portfolio_metrics(
            {"annual_return": 0.0705},
            asset_returns=[(0.5, 0.08), (0.5, 0.06)],
        )
        assert result.weighted_return_match
        assert result.is_valid
