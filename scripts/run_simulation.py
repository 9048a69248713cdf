#!/usr/bin/env python3
"""
Scout Replay Simulator

Replays M1 candles bar by bar through the SAME SignalEngine used live:
generate a signal, let it run for its duration, resolve it against the
close at expiry, learn, repeat. Then validates the resulting signal log.

No special simulation logic in the engine. What it learns here, it learns
the same way in production.

Usage:
    python scripts/run_simulation.py                     # synthetic data
    python scripts/run_simulation.py --csv data/m1.csv --db data/sim.db
    python scripts/run_simulation.py --bars 2000 --export signals.json
"""

import sys
import os
import argparse
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dotenv import load_dotenv

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import pandas as pd

from scout.config import ConfigError, load_config
from scout.data.candles import load_candles
from scout.engine.core import create_engine
from scout.backtest.validation import BacktestResult, MonteCarloResult, ValidationEngine

load_dotenv()
logging.basicConfig(
    level=os.getenv("SCOUT_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(message)s"
)
logger = logging.getLogger(__name__)


def generate_synthetic_data(
    bars: int = 600,
    start_price: float = 1.1000,
    volatility: float = 0.0004,
    seed: int = 42,
) -> pd.DataFrame:
    """Generate synthetic M1 FX-style candles with drifting trend phases."""
    rng = np.random.default_rng(seed)
    returns = rng.normal(0, volatility, bars)
    trend = np.zeros(bars)
    trend_strength = 0.0
    for i in range(1, bars):
        trend_strength = 0.95 * trend_strength + 0.05 * returns[i - 1]
        trend[i] = trend_strength * 0.5
    returns = returns + trend

    closes = start_price * np.cumprod(1 + returns)
    base_time = datetime.now(timezone.utc).replace(second=0, microsecond=0) - timedelta(minutes=bars)

    data = []
    prev_close = start_price
    for i, close in enumerate(closes):
        spread = abs(close * volatility * 2)
        open_p = prev_close
        high = max(open_p, close) + rng.uniform(0, spread)
        low = min(open_p, close) - rng.uniform(0, spread)
        data.append({
            "timestamp": base_time + timedelta(minutes=i),
            "open": open_p,
            "high": high,
            "low": low,
            "close": close,
        })
        prev_close = close
    return pd.DataFrame(data)


def _epoch_ms(ts) -> int:
    return int(pd.Timestamp(ts).timestamp() * 1000)


def replay(engine, data: pd.DataFrame, every: int = 3, window: int = 200) -> dict:
    """Feed bars through the engine, emitting a signal every `every` bars."""
    emitted = 0
    for i in range(len(data)):
        bar = data.iloc[i]
        now = _epoch_ms(bar["timestamp"])

        engine.resolve_expired(float(bar["close"]), now=now)

        if i % every != 0:
            continue
        history = data.iloc[max(0, i - window + 1):i + 1]
        if engine.generate_signal(history, now=now) is not None:
            emitted += 1

    return {"bars": len(data), "emitted": emitted, "unresolved": len(engine.pending)}


def print_stats(stats: dict):
    print("\n" + "=" * 80)
    print("ENGINE STATE")
    print("=" * 80)
    win_rate = stats["win_rate"]
    print(f"Signals generated: {stats['signals_generated']} "
          f"(suppressed {stats['signals_suppressed']}, pending {stats['pending']})")
    print(f"Wins: {stats['wins']} | Losses: {stats['losses']} | "
          f"Win Rate: {f'{win_rate:.1f}%' if win_rate is not None else 'N/A'}")
    print(f"Regime: {stats['regime']['current_state']} "
          f"(stability {stats['regime']['stability']:.0f}%)")
    print(f"Predictor: {stats['predictor']['training_samples']} samples, "
          f"{stats['predictor']['retrain_count']} retrains, ready={stats['predictor']['is_ready']}")
    print(f"Policy: {stats['policy']['update_count']} updates, ready={stats['policy']['is_ready']}")
    for regime, q in stats["policy"]["q_table"].items():
        print(f"  Q[{regime:<9}] BUY {q['BUY']:+.3f}  SELL {q['SELL']:+.3f}")


def main():
    parser = argparse.ArgumentParser(description="Scout replay simulator")
    parser.add_argument("--csv", type=str, default=None, help="Path to M1 OHLC CSV (default: synthetic)")
    parser.add_argument("--bars", type=int, default=600, help="Bars of synthetic data")
    parser.add_argument("--every", type=int, default=3, help="Bars between signal attempts")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for data and engine")
    parser.add_argument("--db", type=str, default=None, help="SQLite state file (default: in-memory)")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--export", type=str, default=None, help="Write resolved signals to this JSON file")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    if args.db:
        config.db_path = args.db

    if args.csv:
        if not Path(args.csv).exists():
            print(f"Error: Data file not found: {args.csv}")
            sys.exit(1)
        data, report = load_candles(args.csv)
        print(report)
    else:
        print(f"Generating {args.bars} synthetic M1 bars...")
        data = generate_synthetic_data(bars=args.bars, seed=args.seed)

    engine = create_engine(config, seed=args.seed)
    summary = replay(engine, data, every=max(1, args.every))
    print(f"\nReplayed {summary['bars']} bars: {summary['emitted']} signals, "
          f"{summary['unresolved']} still pending")
    print_stats(engine.get_stats())

    signals = engine.resolved_signals()
    validator = ValidationEngine(config.validation, rng=np.random.default_rng(args.seed))

    result = validator.backtest(signals)
    if isinstance(result, BacktestResult):
        print(result.summary())
    else:
        print(f"\nBacktest skipped: {result.error}")

    mc = validator.monte_carlo(signals)
    if isinstance(mc, MonteCarloResult):
        print(mc.summary())

    forward = validator.forward_test(signals)
    if isinstance(forward, BacktestResult):
        print(forward.summary())
    else:
        print(f"Forward test skipped: {forward.error} "
              f"({forward.available}/{forward.required} signals)")

    if args.export:
        with open(args.export, "w") as f:
            json.dump([s.to_dict() for s in signals], f, indent=2)
        print(f"Exported {len(signals)} resolved signals to {args.export}")


if __name__ == "__main__":
    main()
