"""Tests for turbulence regime detection."""
from collections import OrderedDict
from dataclasses import replace

import numpy as np
import pytest

from regime_engine.config import REGIME, Regime, TurbulenceMethod
from regime_engine.regime_detector import (
    RegimeClassifier,
    align_returns,
    classify_regime,
    fractal_dimension,
    invert_matrix,
)

from conftest import make_asset, random_walk


def _universe(n: int = 120, shock: float = None) -> "OrderedDict":
    assets = OrderedDict()
    for i, (ticker, vol) in enumerate([("SPY", 0.01), ("TLT", 0.008), ("GLD", 0.009)]):
        closes = random_walk(n, seed=i + 1, vol=vol)
        if shock is not None:
            closes[-1] = closes[-2] * shock
        assets[ticker] = make_asset(ticker, closes)
    return assets


@pytest.mark.parametrize("index, expected", [
    (30, Regime.CRISIS),
    (25.01, Regime.CRISIS),
    (25, Regime.HIGH_VOL),
    (20, Regime.HIGH_VOL),
    (15, Regime.NORMAL),
    (10, Regime.NORMAL),
    (8, Regime.LOW_VOL),
    (5, Regime.LOW_VOL),
    (0, Regime.LOW_VOL),
])
def test_classify_regime_thresholds(index, expected):
    assert classify_regime(index) == expected


class TestFractalDimension:

    def test_short_window_is_neutral(self):
        assert fractal_dimension(np.arange(9.0)) == 1.5

    def test_constant_window_is_neutral(self):
        assert fractal_dimension(np.full(50, 0.01)) == 1.5

    @pytest.mark.parametrize("seed", range(5))
    def test_bounded(self, seed):
        x = np.random.default_rng(seed).normal(0, 0.01, 180)
        assert 1.0 <= fractal_dimension(x) <= 2.0

    def test_matches_single_window_rs(self):
        x = np.random.default_rng(11).normal(0, 0.01, 60)
        cum = np.cumsum(x - x.mean())
        hurst = np.log((cum.max() - cum.min()) / x.std()) / np.log(60)
        assert fractal_dimension(x) == pytest.approx(np.clip(2 - hurst, 1, 2))

    def test_trending_series_has_low_dimension(self):
        # Persistent increments push H above 0.5
        assert fractal_dimension(np.linspace(0.001, 0.02, 100)) < 1.3


class TestMatrixInverse:

    def test_matches_numpy(self):
        rng = np.random.default_rng(0)
        a = rng.normal(size=(4, 4))
        spd = a @ a.T + 4 * np.eye(4)
        np.testing.assert_allclose(invert_matrix(spd), np.linalg.inv(spd), atol=1e-10)

    def test_needs_pivoting(self):
        m = np.array([[0.0, 1.0], [1.0, 0.0]])
        np.testing.assert_allclose(invert_matrix(m), m)

    def test_singular_falls_back_to_identity(self):
        m = np.ones((3, 3))
        np.testing.assert_array_equal(invert_matrix(m), np.eye(3))


class TestAlignment:

    def test_common_dates_only(self):
        assets = _universe(30)
        short = make_asset("SHORT", random_walk(20, seed=9), start="2024-01-09")
        assets["SHORT"] = short

        tickers, timestamps, returns = align_returns(assets)

        assert tickers == ["SPY", "TLT", "GLD", "SHORT"]
        assert timestamps[0] == short.bars[0].timestamp
        assert len(timestamps) == 20
        assert returns.shape == (19, 4)


class TestRegimeClassifier:

    def test_signal_count_and_timestamps(self):
        assets = _universe(120)
        analysis = RegimeClassifier().analyze(assets)
        _, timestamps, returns = align_returns(assets)

        assert len(analysis.signals) == returns.shape[0] - REGIME.lookback_days
        assert analysis.signals[0].timestamp == timestamps[REGIME.lookback_days + 1]
        assert analysis.signals[-1].timestamp == timestamps[-1]
        assert analysis.current is analysis.signals[-1]
        assert analysis.trading_days == 120
        assert analysis.tickers == ["SPY", "TLT", "GLD"]

    @pytest.mark.parametrize("method", list(TurbulenceMethod))
    def test_signal_invariants(self, method):
        analysis = RegimeClassifier(method=method).analyze(_universe(150))

        assert analysis.method == method
        for s in analysis.signals:
            assert s.turbulence_index >= 0
            assert s.regime == classify_regime(s.turbulence_index)
            assert 1.0 <= s.fractal_dimension <= 2.0
            assert s.volatility >= 0

    def test_covariance_turbulence_is_mahalanobis(self):
        assets = _universe(90)
        _, _, returns = align_returns(assets)
        window, current = returns[-61:-1], returns[-1]

        diff = current - window.mean(axis=0)
        expected = np.sqrt(diff @ np.linalg.inv(np.cov(window, rowvar=False)) @ diff)

        analysis = RegimeClassifier(method=TurbulenceMethod.COVARIANCE).analyze(assets)
        assert analysis.current.turbulence_index == pytest.approx(expected, rel=1e-8)

    def test_diagonal_turbulence(self):
        assets = _universe(90)
        _, _, returns = align_returns(assets)
        window, current = returns[-61:-1], returns[-1]

        expected = np.sqrt(np.sum((current - window.mean(axis=0)) ** 2 / window.var(axis=0)))

        analysis = RegimeClassifier(method=TurbulenceMethod.DIAGONAL).analyze(assets)
        assert analysis.current.turbulence_index == pytest.approx(expected, rel=1e-10)

    def test_market_shock_is_crisis(self):
        analysis = RegimeClassifier().analyze(_universe(120, shock=0.8))
        assert analysis.current.regime == Regime.CRISIS

    def test_basket_volatility(self):
        assets = _universe(90)
        _, _, returns = align_returns(assets)
        basket = returns[-61:-1].mean(axis=1)

        analysis = RegimeClassifier().analyze(assets)
        assert analysis.current.volatility == pytest.approx(np.std(basket) * np.sqrt(252) * 100)

    def test_fewer_than_three_assets_is_empty(self):
        assets = _universe(120)
        del assets["GLD"]
        analysis = RegimeClassifier().analyze(assets)
        assert analysis.is_empty
        assert analysis.current is None

    def test_history_shorter_than_lookback_is_empty(self):
        assert RegimeClassifier().analyze(_universe(61)).is_empty
        assert len(RegimeClassifier().analyze(_universe(62)).signals) == 1

    def test_custom_lookback(self):
        settings = replace(REGIME, lookback_days=20)
        analysis = RegimeClassifier(settings).analyze(_universe(50))
        assert analysis.lookback == 20
        assert len(analysis.signals) == 49 - 20

    def test_to_dict(self):
        payload = RegimeClassifier().analyze(_universe(80)).to_dict()
        assert payload["summary"]["assets_analyzed"] == 3
        assert payload["current_regime"]["regime"] in {r.value for r in Regime}
