"""
Indicator Performance Learning

Keeps score of the oscillator votes behind each signal and retunes how much
each oscillator counts in the indicator fallback.

Bookkeeping on every resolved signal:
- Per indicator: wins/losses, counted only when its vote matched the action taken
- Per confidence bucket: wins/losses in 10-point ranges (30-39, 40-49, ...)

Every 30 resolved signals (once there are at least 10 wins and 10 losses),
an indicator with 5+ matching votes is reweighted:
- win rate > 55%  -> weight x 1.1 (capped at 5.0)
- win rate < 45%  -> weight x 0.9 (floored at 0.5)

Regime multipliers then favour mean-reversion oscillators in RANGING and
damp them in TRENDING and VOLATILE markets.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Dict, Any, Mapping, Union

from .actions import Action, parse_action
from .regime import MarketRegime, parse_regime

logger = logging.getLogger(__name__)

INDICATORS = ("rsi", "williams_r", "cci")

REGIME_WEIGHT_MULTIPLIERS: Dict[MarketRegime, Dict[str, float]] = {
    MarketRegime.TRENDING: {"rsi": 0.8, "williams_r": 0.8, "cci": 0.8},
    MarketRegime.RANGING: {"rsi": 1.5, "williams_r": 1.5, "cci": 1.4},
    MarketRegime.VOLATILE: {"rsi": 0.9, "williams_r": 0.9, "cci": 0.9},
    MarketRegime.CHAOTIC: {"rsi": 1.0, "williams_r": 1.0, "cci": 1.0},
}


@dataclass
class PerformanceRecord:
    """Win/loss tally"""
    wins: int = 0
    losses: int = 0

    @property
    def total(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> Optional[float]:
        return self.wins / self.total * 100 if self.total else None

    def record(self, won: bool):
        if won:
            self.wins += 1
        else:
            self.losses += 1

    def to_dict(self) -> Dict[str, int]:
        return {"wins": self.wins, "losses": self.losses}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PerformanceRecord":
        wins = int(data.get("wins", 0))
        losses = int(data.get("losses", 0))
        if wins < 0 or losses < 0:
            raise ValueError(f"Negative tally: {wins} wins, {losses} losses")
        return cls(wins=wins, losses=losses)


def confidence_bucket(confidence: float) -> int:
    """Lower bound of the 10-point range holding `confidence`."""
    return int(confidence // 10 * 10)


class IndicatorLearner:
    """
    Outcome-driven weights for the oscillator votes.

    Usage:
        learner = IndicatorLearner()
        weights = learner.regime_weights(MarketRegime.RANGING)   # for fusion
        learner.record(signal.indicator_signals, signal.action, signal.confidence, won)
    """

    ADJUST_EVERY = 30
    MIN_WINS = 10
    MIN_LOSSES = 10
    MIN_VOTES = 5
    MIN_BUCKET_TRADES = 5

    RAISE_ABOVE = 55.0
    LOWER_BELOW = 45.0
    RAISE_FACTOR = 1.1
    LOWER_FACTOR = 0.9
    MIN_WEIGHT = 0.5
    MAX_WEIGHT = 5.0

    def __init__(self):
        self.weights: Dict[str, float] = {}
        self.performance: Dict[str, PerformanceRecord] = {}
        self.confidence_buckets: Dict[int, PerformanceRecord] = {}
        self.wins = 0
        self.losses = 0
        self.adjustment_count = 0
        self.reset()

    @property
    def resolved_count(self) -> int:
        return self.wins + self.losses

    def record(
        self,
        indicator_signals: Mapping[str, Union[Action, str]],
        action: Action,
        confidence: float,
        won: bool,
    ) -> bool:
        """
        Score one resolved signal.

        Returns:
            True if this outcome triggered a weight adjustment that changed a weight
        """
        for name, vote in (indicator_signals or {}).items():
            record = self.performance.get(name)
            if record is not None and parse_action(vote) is action:
                record.record(won)

        bucket = confidence_bucket(confidence)
        self.confidence_buckets.setdefault(bucket, PerformanceRecord()).record(won)

        if won:
            self.wins += 1
        else:
            self.losses += 1

        if self.resolved_count % self.ADJUST_EVERY == 0:
            return self.adjust_weights()
        return False

    def adjust_weights(self) -> bool:
        """Nudge each indicator's weight toward its track record."""
        if self.wins < self.MIN_WINS or self.losses < self.MIN_LOSSES:
            logger.info(
                f"Not enough outcomes to retune indicator weights "
                f"({self.wins} wins, {self.losses} losses)"
            )
            return False

        changes = []
        for name, record in self.performance.items():
            if record.total < self.MIN_VOTES:
                continue
            old = self.weights[name]
            if record.win_rate > self.RAISE_ABOVE:
                new = min(self.MAX_WEIGHT, old * self.RAISE_FACTOR)
            elif record.win_rate < self.LOWER_BELOW:
                new = max(self.MIN_WEIGHT, old * self.LOWER_FACTOR)
            else:
                continue
            if new != old:
                self.weights[name] = new
                changes.append(f"{name} {old:.2f} -> {new:.2f} (WR {record.win_rate:.1f}%)")

        self.adjustment_count += 1
        if changes:
            logger.info(f"Indicator weights adjusted: {'; '.join(changes)}")
        else:
            logger.info("Indicator weights unchanged")

        best = self.best_confidence_range()
        if best is not None:
            rate = self.confidence_buckets[best].win_rate
            logger.info(f"Best confidence range: {best}-{best + 10}% (WR {rate:.1f}%)")
        return bool(changes)

    def regime_weights(self, regime: Union[MarketRegime, str, None]) -> Dict[str, float]:
        """Learned weights scaled for the regime; unknown regimes get the raw weights."""
        multipliers = REGIME_WEIGHT_MULTIPLIERS.get(parse_regime(regime), {})
        return {name: weight * multipliers.get(name, 1.0) for name, weight in self.weights.items()}

    def best_confidence_range(self) -> Optional[int]:
        """Bucket with the highest win rate among those with enough trades; None if none won."""
        best, best_rate = None, 0.0
        for bucket in sorted(self.confidence_buckets):
            record = self.confidence_buckets[bucket]
            if record.total >= self.MIN_BUCKET_TRADES and record.win_rate > best_rate:
                best, best_rate = bucket, record.win_rate
        return best

    def get_stats(self) -> Dict[str, Any]:
        return {
            "resolved": self.resolved_count,
            "adjustment_count": self.adjustment_count,
            "weights": dict(self.weights),
            "indicators": {
                name: {**record.to_dict(), "win_rate": record.win_rate}
                for name, record in self.performance.items()
            },
            "confidence_ranges": {
                f"{bucket}-{bucket + 9}": {**record.to_dict(), "win_rate": record.win_rate}
                for bucket, record in sorted(self.confidence_buckets.items())
            },
            "best_confidence_range": self.best_confidence_range(),
        }

    def reset(self):
        self.weights = {name: 1.0 for name in INDICATORS}
        self.performance = {name: PerformanceRecord() for name in INDICATORS}
        self.confidence_buckets = {}
        self.wins = 0
        self.losses = 0
        self.adjustment_count = 0

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": dict(self.weights),
            "performance": {name: r.to_dict() for name, r in self.performance.items()},
            "confidence_buckets": {str(b): r.to_dict() for b, r in self.confidence_buckets.items()},
            "wins": self.wins,
            "losses": self.losses,
            "adjustment_count": self.adjustment_count,
        }

    def load(self, data: Optional[Dict[str, Any]]) -> bool:
        """Restore persisted weights and tallies. Unreadable data leaves state untouched."""
        if not data:
            return False
        try:
            weights = {name: 1.0 for name in INDICATORS}
            for name, value in data.get("weights", {}).items():
                if name not in weights:
                    continue
                value = float(value)
                if not math.isfinite(value):
                    raise ValueError(f"non-finite weight for {name}")
                weights[name] = min(self.MAX_WEIGHT, max(self.MIN_WEIGHT, value))

            performance = {name: PerformanceRecord() for name in INDICATORS}
            for name, raw in data.get("performance", {}).items():
                if name in performance:
                    performance[name] = PerformanceRecord.from_dict(raw)

            buckets = {
                int(bucket): PerformanceRecord.from_dict(raw)
                for bucket, raw in data.get("confidence_buckets", {}).items()
            }
            wins = int(data.get("wins", 0))
            losses = int(data.get("losses", 0))
            adjustment_count = int(data.get("adjustment_count", 0))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable indicator performance: {e}")
            return False

        self.weights = weights
        self.performance = performance
        self.confidence_buckets = buckets
        self.wins = max(0, wins)
        self.losses = max(0, losses)
        self.adjustment_count = max(0, adjustment_count)
        logger.info(f"Loaded indicator performance ({self.resolved_count} outcomes)")
        return True
