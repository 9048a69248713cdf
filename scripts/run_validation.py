#!/usr/bin/env python3
"""
Scout Signal Validator

Runs the three offline checks over a resolved signal log:
backtest, Monte Carlo permutation test, forward test.

The log comes from a JSON export (list of signal dicts) or straight from
an engine state database.

Usage:
    python scripts/run_validation.py --signals signals.json
    python scripts/run_validation.py --db data/scout.db --iterations 500 --seed 7
    python scripts/run_validation.py --signals signals.json --json
"""

import sys
import os
import argparse
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np

from scout.config import ConfigError, load_config
from scout.engine.core import KEY_SIGNAL_HISTORY
from scout.storage.base import SQLiteStorage, StorageError
from scout.backtest.validation import BacktestResult, MonteCarloResult, ValidationEngine

load_dotenv()
logging.basicConfig(
    level=os.getenv("SCOUT_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(message)s"
)
logger = logging.getLogger(__name__)


def load_signals(signals_path: str = None, db_path: str = None) -> list:
    """Signal dicts from a JSON file or an engine state database."""
    if signals_path:
        path = Path(signals_path)
        if not path.exists():
            raise FileNotFoundError(f"Signals file not found: {signals_path}")
        with open(path) as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("signals", [])
        return data

    if db_path:
        if not Path(db_path).exists():
            raise FileNotFoundError(f"Database not found: {db_path}")
        return SQLiteStorage(db_path).load(KEY_SIGNAL_HISTORY, []) or []

    return []


def main():
    parser = argparse.ArgumentParser(description="Scout signal validator")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--signals", type=str, help="JSON file with resolved signals")
    source.add_argument("--db", type=str, help="Engine SQLite state file")
    parser.add_argument("--iterations", type=int, default=None, help="Monte Carlo permutations")
    parser.add_argument("--test-period", type=int, default=None, help="Forward test window")
    parser.add_argument("--seed", type=int, default=None, help="Monte Carlo random seed")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
        signals = load_signals(args.signals, args.db)
    except (ConfigError, FileNotFoundError, json.JSONDecodeError, StorageError) as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Validating {len(signals)} signals")
    seed = args.seed if args.seed is not None else config.seed
    validator = ValidationEngine(config.validation, rng=np.random.default_rng(seed))

    backtest = validator.backtest(signals)
    monte_carlo = validator.monte_carlo(signals, args.iterations)
    forward = validator.forward_test(signals, args.test_period)

    if args.json:
        print(json.dumps({
            "backtest": backtest.to_dict(),
            "monte_carlo": monte_carlo.to_dict(),
            "forward_test": forward.to_dict(),
        }, indent=2))
        return

    for name, result in (("Backtest", backtest), ("Monte Carlo", monte_carlo), ("Forward test", forward)):
        if isinstance(result, (BacktestResult, MonteCarloResult)):
            print(result.summary())
        else:
            detail = ""
            if result.required is not None:
                detail = f" ({result.available}/{result.required} signals)"
            print(f"{name} skipped: {result.error}{detail}")

    if isinstance(backtest, BacktestResult) and not backtest.passed_all_gates():
        sys.exit(2)


if __name__ == "__main__":
    main()
