# Data Module - candles in, indicator snapshots out
# Every frame is normalised before an indicator touches it

from .candles import (
    load_candles,
    prepare_candles,
    candles_from_ticks,
    CandleQualityReport,
)

from .indicators import (
    IndicatorSnapshot,
    InsufficientDataError,
    build_snapshot,
    build_observation,
    required_bars,
)

__all__ = [
    "load_candles",
    "prepare_candles",
    "candles_from_ticks",
    "CandleQualityReport",
    "IndicatorSnapshot",
    "InsufficientDataError",
    "build_snapshot",
    "build_observation",
    "required_bars",
]
