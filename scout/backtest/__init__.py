# Backtest Module - offline validation of resolved signal logs

from .validation import (
    ValidationEngine,
    ValidationError,
    BacktestResult,
    MonteCarloResult,
    DistributionStats,
    RegimePerformance,
    run_backtest,
    run_monte_carlo,
    run_forward_test,
)

__all__ = [
    "ValidationEngine",
    "ValidationError",
    "BacktestResult",
    "MonteCarloResult",
    "DistributionStats",
    "RegimePerformance",
    "run_backtest",
    "run_monte_carlo",
    "run_forward_test",
]
