"""
Tests for indicator computation and snapshot building.
"""

import pandas as pd
import pytest

from scout.config import IndicatorConfig
from scout.data import InsufficientDataError, build_observation, build_snapshot, required_bars
from scout.data.indicators import (
    adx,
    atr,
    average_price,
    cci,
    rsi,
    spread_estimate,
    tick_frequency,
    volatility_clustering_ratio,
    williams_r,
)


def make_uptrend(bars=60, step=0.001) -> pd.DataFrame:
    """Helper: steady uptrend, each bar opens at the previous close"""
    rows = []
    for i in range(bars):
        close = 1.0 + step * i
        open_ = close - step
        rows.append({
            "timestamp": 1_700_000_000_000 + i * 60_000,
            "open": open_,
            "high": close + 0.0005,
            "low": open_ - 0.0005,
            "close": close,
        })
    return pd.DataFrame(rows)


def make_flat(bars=40, price=1.0) -> pd.DataFrame:
    return pd.DataFrame({
        "open": [price] * bars,
        "high": [price] * bars,
        "low": [price] * bars,
        "close": [price] * bars,
    })


class TestOscillators:
    """RSI, CCI, Williams %R"""

    def test_rsi_rising(self):
        assert rsi(make_uptrend()["close"]) == 100.0

    def test_rsi_balanced(self):
        close = pd.Series([1.0, 1.1] * 10)
        assert rsi(close, 14) == pytest.approx(50.0)

    def test_rsi_needs_period_plus_one(self):
        with pytest.raises(InsufficientDataError):
            rsi(pd.Series([1.0] * 14), 14)

    def test_flat_market_defaults(self):
        flat = make_flat()
        assert williams_r(flat) == -50.0
        assert cci(flat) == 0.0

    def test_uptrend_overbought(self):
        candles = make_uptrend()
        assert williams_r(candles) == pytest.approx(-0.0005 / 0.015 * 100)
        assert cci(candles) > 100


class TestVolatility:
    """ATR, ADX, clustering"""

    def test_atr_constant_range(self):
        candles = pd.DataFrame({
            "open": [1.0] * 20,
            "high": [1.001] * 20,
            "low": [0.999] * 20,
            "close": [1.0] * 20,
        })
        assert atr(candles) == pytest.approx(0.002)

    def test_atr_uses_gaps(self):
        assert atr(make_uptrend()) == pytest.approx(0.002)

    @pytest.mark.parametrize("mode", ["dx", "wilder"])
    def test_adx_pure_trend(self, mode):
        assert adx(make_uptrend(), 14, mode) == pytest.approx(100.0)

    def test_adx_flat(self):
        assert adx(make_flat(), 14) == 0.0

    def test_adx_minimum_bars(self):
        assert adx(make_uptrend(28), 14, "wilder") == pytest.approx(100.0)
        with pytest.raises(InsufficientDataError):
            adx(make_uptrend(27), 14)

    def test_adx_unknown_mode(self):
        with pytest.raises(ValueError):
            adx(make_uptrend(), 14, "ema")

    def test_clustering_flat(self):
        assert volatility_clustering_ratio(make_flat()["close"]) == 1.0

    def test_clustering_detects_burst(self):
        close = [1.0 + 0.0001 * (i % 2) for i in range(30)]
        close += [close[-1] + 0.002 * (1 if i % 2 else -1) for i in range(5)]
        ratio = volatility_clustering_ratio(pd.Series(close))
        assert ratio > 1.5

    def test_average_price(self):
        assert average_price(make_uptrend(20)["close"]) == pytest.approx(1.0095)


class TestMicrostructure:
    """Tick frequency and spread"""

    def test_tick_frequency(self):
        ticks = [{"timestamp": t, "price": 1.0} for t in (0, 1000, 2000)]
        assert tick_frequency(ticks) == pytest.approx(1.0)
        fast = [{"timestamp": t, "price": 1.0} for t in (0, 500, 1000)]
        assert tick_frequency(fast) == pytest.approx(2.0)

    def test_tick_frequency_defaults(self):
        assert tick_frequency(None) == 1.0
        assert tick_frequency([{"timestamp": 0, "price": 1.0}], default=3.0) == 3.0
        same_time = [{"timestamp": 5, "price": 1.0}, {"timestamp": 5, "price": 1.1}]
        assert tick_frequency(same_time) == 1.0

    def test_spread_estimate(self):
        prices = [1.0, 1.0002, 1.0, 1.0002, 1.0002]
        ticks = [{"timestamp": i * 100, "price": p} for i, p in enumerate(prices)]
        assert spread_estimate(ticks) == pytest.approx(0.0002)

    def test_spread_defaults(self):
        assert spread_estimate(None) == 0.0001
        still = [{"timestamp": i, "price": 1.0} for i in range(5)]
        assert spread_estimate(still, default=0.5) == 0.5


class TestSnapshot:
    """Full snapshot and classifier observation"""

    def test_required_bars(self):
        assert required_bars() == 28
        assert required_bars(IndicatorConfig(cci_period=40)) == 40

    def test_snapshot_values(self):
        snapshot = build_snapshot(make_uptrend())
        assert snapshot.rsi == 100.0
        assert snapshot.adx == pytest.approx(100.0)
        assert snapshot.atr == pytest.approx(0.002)
        assert snapshot.close == pytest.approx(1.059)
        assert snapshot.avg_price == pytest.approx(1.0495)
        assert snapshot.atr_ratio == pytest.approx(0.002 / 1.0495)

    def test_snapshot_features_normalised(self):
        features = build_snapshot(make_uptrend()).features()
        assert len(features) == 5
        assert all(0.0 <= f <= 1.0 for f in features)
        assert features[0] == 1.0

    def test_snapshot_needs_bars(self):
        with pytest.raises(InsufficientDataError):
            build_snapshot(make_uptrend(27))

    def test_snapshot_rejects_non_finite(self):
        candles = make_uptrend()
        candles.loc[len(candles) - 1, "close"] = float("inf")
        with pytest.raises(InsufficientDataError):
            build_snapshot(candles)

    def test_observation(self):
        snapshot = build_snapshot(make_uptrend())
        ticks = [{"timestamp": t, "price": 1.0 + 0.0001 * (t % 2)} for t in range(0, 4000, 1000)]
        obs = build_observation(snapshot, ticks)
        assert obs.adx == snapshot.adx
        assert obs.atr == snapshot.atr
        assert obs.tick_frequency == pytest.approx(1.0)
        assert obs.is_valid()

    def test_observation_defaults_without_ticks(self):
        obs = build_observation(build_snapshot(make_uptrend()))
        assert obs.tick_frequency == 1.0
        assert obs.spread_estimate == 0.0001
