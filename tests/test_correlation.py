"""Tests for correlation matrix construction."""
from collections import OrderedDict

import numpy as np
import pytest

from regime_engine.correlation import build_correlation_matrix, pearson_correlation, returns_map

from conftest import make_asset, random_walk


def _returns(n: int, seed: int) -> np.ndarray:
    return np.random.default_rng(seed).normal(0, 0.01, n)


class TestPearson:

    def test_perfect_correlation(self):
        x = _returns(50, 1)
        assert pearson_correlation(x, 2 * x + 0.001) == pytest.approx(1.0)
        assert pearson_correlation(x, -x) == pytest.approx(-1.0)

    def test_matches_numpy(self):
        x, y = _returns(80, 1), _returns(80, 2)
        assert pearson_correlation(x, y) == pytest.approx(np.corrcoef(x, y)[0, 1])

    def test_uses_overlapping_prefix(self):
        x, y = _returns(80, 1), _returns(50, 2)
        assert pearson_correlation(x, y) == pytest.approx(np.corrcoef(x[:50], y)[0, 1])

    def test_zero_variance_is_zero(self):
        assert pearson_correlation(np.zeros(20), _returns(20, 3)) == 0.0

    def test_empty(self):
        assert pearson_correlation([], [1.0, 2.0]) == 0.0


class TestBuildMatrix:

    @pytest.mark.parametrize("seed", range(5))
    def test_matrix_invariants(self, seed):
        rng = np.random.default_rng(seed)
        series = OrderedDict(
            (f"T{i}", rng.normal(0, 0.01, int(rng.integers(30, 90)))) for i in range(5)
        )
        result = build_correlation_matrix(series)
        m = result.matrix

        assert result.tickers == list(series)
        np.testing.assert_array_equal(np.diag(m), np.ones(5))
        np.testing.assert_array_equal(m, m.T)
        assert np.all((m >= -1) & (m <= 1))
        assert result.validation.is_valid

    def test_too_few_assets_gives_empty_matrix(self):
        result = build_correlation_matrix({"A": _returns(30, 1), "B": _returns(30, 2)})
        assert result.is_empty
        assert result.matrix.shape == (0, 0)

    def test_min_assets_is_configurable(self):
        result = build_correlation_matrix(
            {"A": _returns(30, 1), "B": _returns(30, 2)}, min_assets=2
        )
        assert result.tickers == ["A", "B"]
        assert result.get("A", "B") == result.get("B", "A")

    def test_from_asset_map(self):
        assets = OrderedDict(
            (t, make_asset(t, random_walk(60, seed=i))) for i, t in enumerate(["X", "Y", "Z"])
        )
        result = build_correlation_matrix(returns_map(assets))
        assert result.tickers == ["X", "Y", "Z"]
        assert result.to_dict()["validation"]["is_valid"] is True
