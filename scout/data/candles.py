"""
Candle Preparation

Everything downstream (indicators, the signal engine, the simulator)
expects a chronologically sorted OHLC frame with lowercase
`timestamp, open, high, low, close` columns. This module gets data into
that shape from:
- CSV exports (load_candles)
- lists of candle dicts, including compact {t, o, h, l, c} records (prepare_candles)
- a raw price tick stream, aggregated into M1 candles (candles_from_ticks)

Usage:
    from scout.data.candles import load_candles, candles_from_ticks

    df, report = load_candles("data/eurusd_m1.csv")
    m1 = candles_from_ticks(ticks)       # ticks: [{"timestamp": ms, "price": p}, ...]
"""

import logging
from pathlib import Path
from typing import Optional, List, Tuple, Union, Dict, Any

import pandas as pd

logger = logging.getLogger(__name__)

OHLC_COLUMNS = ["open", "high", "low", "close"]

# Standard column mappings for different sources
COLUMN_MAPPINGS = {
    "compact": {
        "t": "timestamp",
        "o": "open",
        "h": "high",
        "l": "low",
        "c": "close",
        "v": "volume",
    },
    "yahoo": {
        "Date": "timestamp",
        "Open": "open",
        "High": "high",
        "Low": "low",
        "Close": "close",
        "Volume": "volume",
    },
    "generic": {
        "timestamp": "timestamp",
        "time": "timestamp",
        "open": "open",
        "high": "high",
        "low": "low",
        "close": "close",
        "volume": "volume",
    },
}


class CandleQualityReport:
    """What had to be repaired while preparing candles."""

    def __init__(self):
        self.original_rows = 0
        self.final_rows = 0
        self.duplicates_removed = 0
        self.ohlc_violations_fixed = 0
        self.warnings: List[str] = []

    def __str__(self) -> str:
        return (
            f"Candle Quality Report:\n"
            f"  Original rows: {self.original_rows}\n"
            f"  Final rows: {self.final_rows}\n"
            f"  Duplicates removed: {self.duplicates_removed}\n"
            f"  OHLC violations fixed: {self.ohlc_violations_fixed}\n"
            f"  Warnings: {len(self.warnings)}"
        )


def detect_format(df: pd.DataFrame) -> str:
    """Detect the column convention of a frame."""
    columns = set(str(c) for c in df.columns)
    if {"o", "h", "l", "c"} <= columns:
        return "compact"
    if "Date" in columns and "Close" in columns:
        return "yahoo"
    return "generic"


def normalize_columns(df: pd.DataFrame, format_type: Optional[str] = None) -> pd.DataFrame:
    """Rename columns to the standard lowercase names."""
    mapping = COLUMN_MAPPINGS.get(format_type or detect_format(df), COLUMN_MAPPINGS["generic"])

    df_columns = {str(c).lower(): c for c in df.columns}
    rename_map = {}
    for source_col, target_col in mapping.items():
        source_lower = source_col.lower()
        if source_lower in df_columns and target_col not in rename_map.values():
            rename_map[df_columns[source_lower]] = target_col

    df = df.rename(columns=rename_map)

    missing = [c for c in OHLC_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns after normalization: {missing}")

    return df


def parse_timestamp(df: pd.DataFrame) -> pd.DataFrame:
    """Epoch-millisecond or string timestamps -> timezone-naive datetimes."""
    if "timestamp" not in df.columns:
        return df

    if pd.api.types.is_numeric_dtype(df["timestamp"]):
        df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms")
    else:
        df["timestamp"] = pd.to_datetime(df["timestamp"])

    if df["timestamp"].dt.tz is not None:
        df["timestamp"] = df["timestamp"].dt.tz_localize(None)

    return df


def fix_ohlc_consistency(df: pd.DataFrame, report: CandleQualityReport) -> pd.DataFrame:
    """Ensure OHLC values are consistent (high >= all, low <= all)."""
    violations = 0

    mask = (df["high"] < df["open"]) | (df["high"] < df["close"])
    if mask.any():
        df.loc[mask, "high"] = df.loc[mask, ["open", "high", "close"]].max(axis=1)
        violations += int(mask.sum())

    mask = (df["low"] > df["open"]) | (df["low"] > df["close"])
    if mask.any():
        df.loc[mask, "low"] = df.loc[mask, ["open", "low", "close"]].min(axis=1)
        violations += int(mask.sum())

    report.ohlc_violations_fixed = violations
    if violations > 0:
        report.warnings.append(f"Fixed {violations} OHLC consistency violations")

    return df


def prepare_candles(
    candles: Union[pd.DataFrame, List[Dict[str, Any]]],
    report: Optional[CandleQualityReport] = None,
) -> pd.DataFrame:
    """
    Normalise any supported candle input into a clean OHLC frame.

    Raises:
        ValueError: if OHLC columns are missing
    """
    report = report or CandleQualityReport()
    df = candles.copy() if isinstance(candles, pd.DataFrame) else pd.DataFrame(candles)
    report.original_rows = len(df)

    if df.empty:
        report.final_rows = 0
        return pd.DataFrame(columns=["timestamp"] + OHLC_COLUMNS)

    df = normalize_columns(df)
    df[OHLC_COLUMNS] = df[OHLC_COLUMNS].astype(float)
    df = parse_timestamp(df)

    if "timestamp" in df.columns:
        df = df.sort_values("timestamp", kind="mergesort")
        before = len(df)
        df = df.drop_duplicates(subset=["timestamp"], keep="last")
        report.duplicates_removed = before - len(df)
        if report.duplicates_removed > 0:
            report.warnings.append(f"Removed {report.duplicates_removed} duplicate timestamps")

    df = df.dropna(subset=OHLC_COLUMNS).reset_index(drop=True)
    df = fix_ohlc_consistency(df, report)
    report.final_rows = len(df)
    return df


def load_candles(filepath: str) -> Tuple[pd.DataFrame, CandleQualityReport]:
    """
    Load and sanitise candles from a CSV file.

    Returns:
        Tuple of (clean DataFrame, CandleQualityReport)
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Candle file not found: {filepath}")

    report = CandleQualityReport()
    df = prepare_candles(pd.read_csv(path), report)

    logger.info(f"Loaded {report.final_rows} candles from {filepath}")
    for warning in report.warnings:
        logger.warning(warning)

    return df, report


def candles_from_ticks(
    ticks: Union[pd.DataFrame, List[Dict[str, Any]]],
    freq: str = "1min",
) -> pd.DataFrame:
    """
    Aggregate a {timestamp (epoch ms), price} tick stream into OHLC candles.

    Buckets without ticks are dropped, not forward-filled.
    """
    df = ticks.copy() if isinstance(ticks, pd.DataFrame) else pd.DataFrame(ticks)
    if df.empty:
        return pd.DataFrame(columns=["timestamp"] + OHLC_COLUMNS)

    df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms")
    series = df.set_index("timestamp")["price"].astype(float).sort_index()

    ohlc = series.resample(freq).ohlc().dropna()
    return ohlc.reset_index()
