"""
Indicator Snapshot Builder

Turns a window of OHLC candles into the indicator values the engine
consumes: an IndicatorSnapshot for fusion and feature extraction, and an
Observation for the regime classifier.

All indicators report the value at the latest bar:
- RSI: simple average gain/loss over `period` changes
- ATR: simple mean of the last `period` true ranges
- ADX: directional index from Wilder-smoothed TR and DM.
  adx_mode "dx" reports the latest DX (single-period), "wilder" smooths
  the DX series once more (classic ADX)
- CCI: typical price vs its SMA over mean absolute deviation
- Williams %R: close within the period's high/low range, -100..0
- Volatility clustering: mean |return| of the short window over the long window
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union

import numpy as np
import pandas as pd

from ..config import IndicatorConfig
from ..learning.predictor import normalize_features
from ..learning.regime import Observation

logger = logging.getLogger(__name__)


class InsufficientDataError(Exception):
    """Raised when there are too few candles to compute an indicator."""
    pass


def _require(length: int, needed: int, name: str):
    if length < needed:
        raise InsufficientDataError(f"{name} needs {needed} bars, got {length}")


def true_range(candles: pd.DataFrame) -> pd.Series:
    """True range for every bar after the first."""
    high, low, close = candles["high"], candles["low"], candles["close"]
    prev_close = close.shift(1)
    tr = pd.concat([
        high - low,
        (high - prev_close).abs(),
        (low - prev_close).abs(),
    ], axis=1).max(axis=1)
    return tr.iloc[1:]


def directional_movement(candles: pd.DataFrame):
    """(+DM, -DM) arrays aligned with true_range()."""
    up = candles["high"].diff().iloc[1:].to_numpy()
    down = -candles["low"].diff().iloc[1:].to_numpy()
    plus_dm = np.where((up > down) & (up > 0), up, 0.0)
    minus_dm = np.where((down > up) & (down > 0), down, 0.0)
    return plus_dm, minus_dm


def wilder_smooth(values: np.ndarray, period: int) -> np.ndarray:
    """
    Wilder smoothing seeded with the simple mean of the first `period` values.

    Output has len(values) - period + 1 entries.
    """
    values = np.asarray(values, dtype=float)
    out = np.empty(len(values) - period + 1)
    out[0] = values[:period].mean()
    for i in range(period, len(values)):
        out[i - period + 1] = (out[i - period] * (period - 1) + values[i]) / period
    return out


def rsi(close: pd.Series, period: int = 14) -> float:
    _require(len(close), period + 1, "RSI")
    changes = close.diff().iloc[-period:]
    avg_gain = changes.clip(lower=0).sum() / period
    avg_loss = -changes.clip(upper=0).sum() / period
    if avg_loss == 0:
        return 100.0
    return float(100 - 100 / (1 + avg_gain / avg_loss))


def atr(candles: pd.DataFrame, period: int = 14) -> float:
    _require(len(candles), period + 1, "ATR")
    return float(true_range(candles).iloc[-period:].mean())


def adx(candles: pd.DataFrame, period: int = 14, mode: str = "dx") -> float:
    """Directional index; see module docstring for the two modes."""
    _require(len(candles), period * 2, "ADX")

    tr = true_range(candles).to_numpy()
    plus_dm, minus_dm = directional_movement(candles)

    tr_s = wilder_smooth(tr, period)
    plus_s = wilder_smooth(plus_dm, period)
    minus_s = wilder_smooth(minus_dm, period)

    plus_di = np.divide(plus_s * 100, tr_s, out=np.zeros_like(tr_s), where=tr_s > 0)
    minus_di = np.divide(minus_s * 100, tr_s, out=np.zeros_like(tr_s), where=tr_s > 0)
    di_sum = plus_di + minus_di
    dx = np.divide(np.abs(plus_di - minus_di) * 100, di_sum,
                   out=np.zeros_like(di_sum), where=di_sum > 0)

    if mode == "dx":
        return float(dx[-1])
    if mode == "wilder":
        return float(wilder_smooth(dx, period)[-1])
    raise ValueError(f"Unknown adx mode: {mode!r}")


def cci(candles: pd.DataFrame, period: int = 20) -> float:
    _require(len(candles), period, "CCI")
    typical = (candles["high"] + candles["low"] + candles["close"]) / 3
    window = typical.iloc[-period:]
    sma = window.mean()
    mean_dev = (window - sma).abs().mean()
    if mean_dev == 0:
        return 0.0
    return float((typical.iloc[-1] - sma) / (0.015 * mean_dev))


def williams_r(candles: pd.DataFrame, period: int = 14) -> float:
    _require(len(candles), period, "Williams %R")
    highest = candles["high"].iloc[-period:].max()
    lowest = candles["low"].iloc[-period:].min()
    if highest == lowest:
        return -50.0
    return float((highest - candles["close"].iloc[-1]) / (highest - lowest) * -100)


def average_price(close: pd.Series, period: int = 20) -> float:
    _require(len(close), period, "Average price")
    return float(close.iloc[-period:].mean())


def volatility_clustering_ratio(close: pd.Series, short: int = 5, long: int = 20) -> float:
    """>1 when recent moves are larger than usual, <1 when calmer."""
    _require(len(close), long + 1, "Volatility clustering")
    returns = close.pct_change().abs().iloc[1:]
    long_mean = returns.iloc[-long:].mean()
    if long_mean == 0:
        return 1.0
    return float(returns.iloc[-short:].mean() / long_mean)


def _tick_frame(ticks) -> Optional[pd.DataFrame]:
    if ticks is None:
        return None
    df = ticks if isinstance(ticks, pd.DataFrame) else pd.DataFrame(ticks)
    if len(df) < 2 or "timestamp" not in df.columns or "price" not in df.columns:
        return None
    return df.sort_values("timestamp")


def tick_frequency(ticks, default: float = 1.0) -> float:
    """Ticks per second over the span of a {timestamp (ms), price} stream."""
    df = _tick_frame(ticks)
    if df is None:
        return default
    span_seconds = (df["timestamp"].iloc[-1] - df["timestamp"].iloc[0]) / 1000
    if span_seconds <= 0:
        return default
    return float((len(df) - 1) / span_seconds)


def spread_estimate(ticks, default: float = 0.0001) -> float:
    """Median absolute tick-to-tick price change."""
    df = _tick_frame(ticks)
    if df is None:
        return default
    changes = df["price"].astype(float).diff().abs().iloc[1:]
    changes = changes[changes > 0]
    if changes.empty:
        return default
    return float(changes.median())


@dataclass
class IndicatorSnapshot:
    """Indicator values at the latest bar"""
    rsi: float
    adx: float
    atr: float
    cci: float
    williams_r: float
    avg_price: float
    close: float
    volatility_clustering: float

    @property
    def atr_ratio(self) -> float:
        if not self.avg_price:
            return 0.0
        return self.atr / self.avg_price

    def features(self) -> List[float]:
        """Normalised predictor input"""
        return normalize_features(self.rsi, self.adx, self.atr, self.williams_r, self.cci)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rsi": round(self.rsi, 2),
            "adx": round(self.adx, 2),
            "atr": self.atr,
            "cci": round(self.cci, 2),
            "williams_r": round(self.williams_r, 2),
            "avg_price": self.avg_price,
            "atr_ratio": round(self.atr_ratio, 6),
            "close": self.close,
            "volatility_clustering": round(self.volatility_clustering, 3),
        }


def required_bars(config: Optional[IndicatorConfig] = None) -> int:
    """Bars needed before every indicator is defined."""
    c = config or IndicatorConfig()
    return max(
        c.rsi_period + 1,
        c.atr_period + 1,
        c.adx_period * 2,
        c.cci_period,
        c.williams_period,
        c.avg_price_period,
        c.clustering_long + 1,
    )


def build_snapshot(
    candles: pd.DataFrame,
    config: Optional[IndicatorConfig] = None,
) -> IndicatorSnapshot:
    """
    Compute every indicator at the latest bar.

    Raises:
        InsufficientDataError: too few bars, or an indicator came out non-finite
    """
    c = config or IndicatorConfig()
    _require(len(candles), required_bars(c), "Indicator snapshot")
    close = candles["close"]

    snapshot = IndicatorSnapshot(
        rsi=rsi(close, c.rsi_period),
        adx=adx(candles, c.adx_period, c.adx_mode),
        atr=atr(candles, c.atr_period),
        cci=cci(candles, c.cci_period),
        williams_r=williams_r(candles, c.williams_period),
        avg_price=average_price(close, c.avg_price_period),
        close=float(close.iloc[-1]),
        volatility_clustering=volatility_clustering_ratio(
            close, c.clustering_short, c.clustering_long
        ),
    )

    bad = [k for k, v in snapshot.to_dict().items() if not math.isfinite(v)]
    if bad:
        raise InsufficientDataError(f"Non-finite indicator values: {bad}")

    return snapshot


def build_observation(
    snapshot: IndicatorSnapshot,
    ticks: Union[pd.DataFrame, List[Dict[str, Any]], None] = None,
    config: Optional[IndicatorConfig] = None,
) -> Observation:
    """Classifier input from a snapshot plus optional tick microstructure."""
    c = config or IndicatorConfig()
    return Observation(
        adx=snapshot.adx,
        atr=snapshot.atr,
        avg_price=snapshot.avg_price,
        tick_frequency=tick_frequency(ticks, c.default_tick_frequency),
        spread_estimate=spread_estimate(ticks, c.default_spread),
    )
