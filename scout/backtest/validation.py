"""
Signal Validation Engine

Offline checks over a log of resolved signals, using a fixed-stake
binary-outcome payoff model:

- WIN:  +stake * payout   (default +$8.50)
- LOSS: -stake            (default -$10.00)
- Starting balance $1,000

Three tests:
- backtest: replay the log in order
- monte_carlo: replay random permutations (no resampling) to see how much
  of the result depends on the order of wins and losses
- forward_test: backtest only the most recent `test_period` signals

Invalid input never raises; it returns a ValidationError describing what
was missing.

Usage:
    engine = ValidationEngine()
    result = engine.backtest(signals)
    if isinstance(result, BacktestResult):
        print(result.summary())
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Union, Sequence

import numpy as np
import pandas as pd

from ..config import ValidationConfig
from ..engine.fusion import Signal, SignalResult
from ..learning.regime import REGIMES, parse_regime

logger = logging.getLogger(__name__)

# Profit factor reported when there are wins but no losses
PROFIT_FACTOR_NO_LOSSES = 999.0


@dataclass
class ValidationError:
    """Returned instead of a result when the input can't be validated"""
    error: str
    required: Optional[int] = None
    available: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.error}
        if self.required is not None:
            data["required"] = self.required
        if self.available is not None:
            data["available"] = self.available
        return data


@dataclass
class RegimePerformance:
    wins: int = 0
    losses: int = 0

    @property
    def trades(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> Optional[float]:
        if self.trades == 0:
            return None
        return self.wins / self.trades * 100


@dataclass
class BacktestResult:
    """Complete backtest results with metrics"""
    total_signals: int
    total_trades: int
    wins: int
    losses: int
    win_rate: float
    profit_factor: float
    net_profit: float
    roi: float
    max_drawdown: float                     # percent, peak to trough
    start_balance: float
    end_balance: float
    equity_curve: List[float]
    regime_performance: Dict[str, RegimePerformance]
    test_period: Optional[int] = None
    is_forward_test: bool = False

    # Validation gates
    MIN_WIN_RATE = 55.0
    MIN_PROFIT_FACTOR = 1.0
    MAX_DRAWDOWN = 20.0
    MIN_TRADES = 30

    @property
    def regime_win_rates(self) -> Dict[str, Optional[float]]:
        return {name: perf.win_rate for name, perf in self.regime_performance.items()}

    def passed_all_gates(self) -> bool:
        """Check if all validation gates passed"""
        return (
            self.net_profit > 0 and
            self.win_rate > self.MIN_WIN_RATE and
            self.profit_factor > self.MIN_PROFIT_FACTOR and
            self.max_drawdown < self.MAX_DRAWDOWN and
            self.total_trades >= self.MIN_TRADES
        )

    def summary(self) -> str:
        """Generate human-readable summary"""
        passed_checks = []
        failed_checks = []

        if self.net_profit > 0:
            passed_checks.append(f"Net Profit: ${self.net_profit:.2f}")
        else:
            failed_checks.append(f"Net Profit: ${self.net_profit:.2f} (NEED > $0)")

        if self.win_rate > self.MIN_WIN_RATE:
            passed_checks.append(f"Win Rate: {self.win_rate:.1f}%")
        else:
            failed_checks.append(f"Win Rate: {self.win_rate:.1f}% (NEED > {self.MIN_WIN_RATE:.0f}%)")

        if self.profit_factor > self.MIN_PROFIT_FACTOR:
            passed_checks.append(f"Profit Factor: {self.profit_factor:.2f}")
        else:
            failed_checks.append(
                f"Profit Factor: {self.profit_factor:.2f} (NEED > {self.MIN_PROFIT_FACTOR:.1f})"
            )

        if self.max_drawdown < self.MAX_DRAWDOWN:
            passed_checks.append(f"Max Drawdown: {self.max_drawdown:.1f}%")
        else:
            failed_checks.append(
                f"Max Drawdown: {self.max_drawdown:.1f}% (NEED < {self.MAX_DRAWDOWN:.0f}%)"
            )

        if self.total_trades >= self.MIN_TRADES:
            passed_checks.append(f"Sample Size: {self.total_trades} trades")
        else:
            failed_checks.append(
                f"Sample Size: {self.total_trades} trades (NEED >= {self.MIN_TRADES})"
            )

        status = "PASS" if not failed_checks else "FAIL"
        title = "FORWARD TEST" if self.is_forward_test else "BACKTEST"
        period = f" (last {self.test_period} signals)" if self.test_period else ""

        regime_lines = []
        for name, perf in self.regime_performance.items():
            rate = f"{perf.win_rate:.1f}%" if perf.win_rate is not None else "N/A"
            regime_lines.append(f"  {name:<9} {perf.wins}W / {perf.losses}L  ({rate})")

        return f"""
================================================================================
{title} RESULTS{period} - {status}
================================================================================
Start Balance: ${self.start_balance:,.2f}
End Balance: ${self.end_balance:,.2f}
ROI: {self.roi:.2f}%

--- TRADE STATISTICS ---
Signals: {self.total_signals} | Resolved: {self.total_trades}
Wins: {self.wins} | Losses: {self.losses}
Win Rate: {self.win_rate:.1f}%

--- RISK METRICS ---
Net Profit: ${self.net_profit:,.2f}
Profit Factor: {self.profit_factor:.2f}
Max Drawdown: {self.max_drawdown:.1f}%

--- BY REGIME ---
{chr(10).join(regime_lines)}

--- VALIDATION GATES ---
PASSED:
{chr(10).join('  [+] ' + c for c in passed_checks) if passed_checks else '  (none)'}

FAILED:
{chr(10).join('  [-] ' + c for c in failed_checks) if failed_checks else '  (none)'}

STATUS: {status}
================================================================================
"""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_signals": self.total_signals,
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "profit_factor": self.profit_factor,
            "net_profit": self.net_profit,
            "roi": self.roi,
            "max_drawdown": self.max_drawdown,
            "start_balance": self.start_balance,
            "end_balance": self.end_balance,
            "equity_curve": list(self.equity_curve),
            "regime_performance": {
                name: {"wins": p.wins, "losses": p.losses}
                for name, p in self.regime_performance.items()
            },
            "regime_win_rates": self.regime_win_rates,
            "test_period": self.test_period,
            "is_forward_test": self.is_forward_test,
        }


@dataclass
class DistributionStats:
    mean: float
    median: float
    std_dev: float          # population standard deviation
    min: float
    max: float

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "DistributionStats":
        arr = np.asarray(values, dtype=float)
        return cls(
            mean=float(arr.mean()),
            median=float(np.median(arr)),
            std_dev=float(arr.std()),
            min=float(arr.min()),
            max=float(arr.max()),
        )


@dataclass
class MonteCarloResult:
    """Distribution of backtest metrics over random permutations"""
    iterations: int
    win_rate: DistributionStats
    roi: DistributionStats
    max_drawdown: DistributionStats
    profit_factor: DistributionStats
    profitable_sims: int
    profitable_percent: float

    def summary(self) -> str:
        def row(label, stats, unit=""):
            return (f"{label:<14} mean {stats.mean:8.2f}{unit}  median {stats.median:8.2f}{unit}  "
                    f"sd {stats.std_dev:6.2f}  range [{stats.min:.2f}, {stats.max:.2f}]")

        return f"""
================================================================================
MONTE CARLO ({self.iterations} permutations)
================================================================================
{row("Win Rate", self.win_rate, "%")}
{row("ROI", self.roi, "%")}
{row("Max Drawdown", self.max_drawdown, "%")}
{row("Profit Factor", self.profit_factor)}

Profitable in {self.profitable_sims}/{self.iterations} runs ({self.profitable_percent:.1f}%)
================================================================================
"""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Outcome = Union[Signal, Dict[str, Any]]


def _outcome_of(signal: Outcome):
    """(result, regime name) for a Signal or a signal dict."""
    if isinstance(signal, Signal):
        result = signal.result.value if signal.result else None
        regime = signal.regime.value
    else:
        result = signal.get("result")
        regime = signal.get("regime")
    if isinstance(result, SignalResult):
        result = result.value
    parsed = parse_regime(regime)
    return result, parsed.value if parsed else None


class ValidationEngine:
    """
    Stateless validator over resolved signal logs.

    The Monte Carlo random source is injectable for reproducible runs.
    """

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config or ValidationConfig()
        self.rng = rng or np.random.default_rng()

    def _run(self, outcomes: List[tuple]) -> BacktestResult:
        stake = self.config.stake
        win_amount = stake * self.config.payout
        start = self.config.start_balance

        equity = start
        equity_curve = [start]
        wins = 0
        losses = 0
        regime_performance = {r.value: RegimePerformance() for r in REGIMES}

        for result, regime in outcomes:
            if result == SignalResult.WIN.value:
                wins += 1
                equity += win_amount
                if regime in regime_performance:
                    regime_performance[regime].wins += 1
            elif result == SignalResult.LOSS.value:
                losses += 1
                equity -= stake
                if regime in regime_performance:
                    regime_performance[regime].losses += 1
            equity_curve.append(equity)

        # Drawdown, peak includes the starting balance
        equity_series = pd.Series(equity_curve)
        rolling_max = equity_series.cummax()
        drawdown_pct = (rolling_max - equity_series) / rolling_max * 100
        max_drawdown = float(drawdown_pct.max())

        total_trades = wins + losses
        win_rate = wins / total_trades * 100 if total_trades > 0 else 0.0
        if losses > 0:
            profit_factor = (wins * win_amount) / (losses * stake)
        elif wins > 0:
            profit_factor = PROFIT_FACTOR_NO_LOSSES
        else:
            profit_factor = 0.0

        net_profit = equity - start
        return BacktestResult(
            total_signals=len(outcomes),
            total_trades=total_trades,
            wins=wins,
            losses=losses,
            win_rate=win_rate,
            profit_factor=profit_factor,
            net_profit=net_profit,
            roi=net_profit / start * 100,
            max_drawdown=max_drawdown,
            start_balance=start,
            end_balance=equity,
            equity_curve=equity_curve,
            regime_performance=regime_performance,
        )

    def backtest(self, signals: Sequence[Outcome]) -> Union[BacktestResult, ValidationError]:
        """Replay signals in order."""
        if not signals:
            return ValidationError(error="No signals to backtest", required=1, available=0)

        result = self._run([_outcome_of(s) for s in signals])
        logger.info(
            f"Backtest complete: WR {result.win_rate:.1f}%, ROI {result.roi:.1f}%, "
            f"Max DD {result.max_drawdown:.1f}%"
        )
        return result

    def monte_carlo(
        self,
        signals: Sequence[Outcome],
        iterations: Optional[int] = None,
    ) -> Union[MonteCarloResult, ValidationError]:
        """Backtest `iterations` uniformly random permutations of the signals."""
        if not signals:
            return ValidationError(error="No signals for Monte Carlo simulation", required=1, available=0)

        if iterations is None:
            iterations = self.config.monte_carlo_iterations
        if iterations <= 0:
            return ValidationError(error="Monte Carlo needs at least one iteration", required=1, available=iterations)

        outcomes = [_outcome_of(s) for s in signals]
        runs = []
        for _ in range(iterations):
            order = self.rng.permutation(len(outcomes))
            runs.append(self._run([outcomes[i] for i in order]))

        profitable = sum(1 for r in runs if r.roi > 0)
        result = MonteCarloResult(
            iterations=iterations,
            win_rate=DistributionStats.from_values([r.win_rate for r in runs]),
            roi=DistributionStats.from_values([r.roi for r in runs]),
            max_drawdown=DistributionStats.from_values([r.max_drawdown for r in runs]),
            profit_factor=DistributionStats.from_values([r.profit_factor for r in runs]),
            profitable_sims=profitable,
            profitable_percent=profitable / iterations * 100,
        )
        logger.info(
            f"Monte Carlo complete: avg WR {result.win_rate.mean:.1f}% "
            f"(±{result.win_rate.std_dev:.1f}%), profitable in {result.profitable_percent:.1f}%"
        )
        return result

    def forward_test(
        self,
        signals: Sequence[Outcome],
        test_period: Optional[int] = None,
    ) -> Union[BacktestResult, ValidationError]:
        """Backtest only the most recent `test_period` signals."""
        if test_period is None:
            test_period = self.config.forward_test_period
        if test_period <= 0:
            return ValidationError(error="Forward test needs a positive window", required=1, available=test_period)

        available = len(signals) if signals else 0
        if available < test_period:
            return ValidationError(
                error="Insufficient signals for forward test",
                required=test_period,
                available=available,
            )

        recent = list(signals)[-test_period:]
        result = self._run([_outcome_of(s) for s in recent])
        result.test_period = test_period
        result.is_forward_test = True
        logger.info(f"Forward test complete: WR {result.win_rate:.1f}% over {test_period} signals")
        return result


# Convenience functions
def run_backtest(signals: Sequence[Outcome], **kwargs) -> Union[BacktestResult, ValidationError]:
    """Backtest with default or overridden ValidationConfig values"""
    return ValidationEngine(ValidationConfig(**kwargs)).backtest(signals)


def run_monte_carlo(
    signals: Sequence[Outcome],
    iterations: int = 100,
    seed: Optional[int] = None,
) -> Union[MonteCarloResult, ValidationError]:
    """Monte Carlo permutation test with an optionally seeded random source"""
    engine = ValidationEngine(rng=np.random.default_rng(seed))
    return engine.monte_carlo(signals, iterations)


def run_forward_test(
    signals: Sequence[Outcome],
    test_period: int = 50,
) -> Union[BacktestResult, ValidationError]:
    """Forward test over the most recent signals"""
    return ValidationEngine().forward_test(signals, test_period)
