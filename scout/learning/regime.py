"""
Market Regime Classification Module

Four-state, HMM-flavoured regime estimator. Each observation produces
emission likelihoods for every regime, which are weighted by the transition
row of the currently held regime and renormalised into a posterior:

    posterior[j] ∝ emission[j] * transition[current, j]

The transition matrix starts from a hand-tuned prior and is nudged toward
the empirically observed transitions once enough history exists.

Regimes:
- TRENDING: directional market, ADX high
- RANGING: quiet, mean-reverting market
- VOLATILE: wide ranges without a clean trend
- CHAOTIC: disorderly price action, reduce exposure

"Know what kind of market you are in before deciding what to do in it."
"""

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Union

import numpy as np

from ..config import RegimeConfig

logger = logging.getLogger(__name__)


class MarketRegime(Enum):
    """Market regime classification"""
    TRENDING = "TRENDING"
    RANGING = "RANGING"
    VOLATILE = "VOLATILE"
    CHAOTIC = "CHAOTIC"


# Index order of the transition matrix and probability vectors
REGIMES: List[MarketRegime] = [
    MarketRegime.TRENDING,
    MarketRegime.RANGING,
    MarketRegime.VOLATILE,
    MarketRegime.CHAOTIC,
]
REGIME_INDEX: Dict[MarketRegime, int] = {r: i for i, r in enumerate(REGIMES)}

DEFAULT_REGIME = MarketRegime.RANGING


@dataclass
class RegimeStrategy:
    """How signal generation should lean in a given regime."""
    prefer_trend: bool = False
    prefer_mean_reversion: bool = False
    risk_multiplier: float = 1.0
    confidence_boost: int = 0
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefer_trend": self.prefer_trend,
            "prefer_mean_reversion": self.prefer_mean_reversion,
            "risk_multiplier": self.risk_multiplier,
            "confidence_boost": self.confidence_boost,
            "description": self.description,
        }


REGIME_STRATEGIES: Dict[MarketRegime, RegimeStrategy] = {
    MarketRegime.TRENDING: RegimeStrategy(
        prefer_trend=True,
        risk_multiplier=1.2,
        confidence_boost=15,
        description="Strong trend detected - follow momentum",
    ),
    MarketRegime.RANGING: RegimeStrategy(
        prefer_mean_reversion=True,
        risk_multiplier=1.0,
        confidence_boost=20,
        description="Ranging market - trade reversals at extremes",
    ),
    MarketRegime.VOLATILE: RegimeStrategy(
        risk_multiplier=0.8,
        confidence_boost=-10,
        description="High volatility - reduce exposure",
    ),
    MarketRegime.CHAOTIC: RegimeStrategy(
        risk_multiplier=0.5,
        confidence_boost=-15,
        description="Chaotic market - trade with extreme caution",
    ),
}


def parse_regime(value: Union[MarketRegime, str, None]) -> Optional[MarketRegime]:
    """Map a regime or regime name to MarketRegime. None if unknown."""
    if isinstance(value, MarketRegime):
        return value
    if isinstance(value, str):
        try:
            return MarketRegime(value.upper())
        except ValueError:
            return None
    return None


def strategy_for(regime: Union[MarketRegime, str, None]) -> RegimeStrategy:
    """Strategy profile for a regime; unknown regimes get the RANGING profile."""
    parsed = parse_regime(regime)
    if parsed is None:
        logger.warning(f"Unknown regime {regime!r}, using {DEFAULT_REGIME.value} profile")
        parsed = DEFAULT_REGIME
    return REGIME_STRATEGIES[parsed]


def get_regime_description(regime: Union[MarketRegime, str]) -> str:
    """Get human-readable description of a regime"""
    return strategy_for(regime).description


@dataclass
class Observation:
    """
    Indicator values the classifier needs for one tick.

    tick_frequency and spread_estimate describe microstructure and are
    carried for diagnostics; the emission model uses adx and atr_ratio.
    """
    adx: Optional[float]
    atr: Optional[float]
    avg_price: Optional[float]
    tick_frequency: float = 1.0
    spread_estimate: float = 0.0001

    @property
    def atr_ratio(self) -> float:
        return self.atr / self.avg_price

    def is_valid(self) -> bool:
        for value in (self.adx, self.atr, self.avg_price):
            if value is None:
                return False
            try:
                if not math.isfinite(value) or value <= 0:
                    return False
            except TypeError:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "adx": self.adx,
            "atr": self.atr,
            "avg_price": self.avg_price,
            "tick_frequency": self.tick_frequency,
            "spread_estimate": self.spread_estimate,
        }


@dataclass
class RegimeResult:
    """Outcome of classifying one observation"""
    state: MarketRegime
    confidence: float                      # 0-100, = 100 * max(probabilities)
    probabilities: List[float]             # indexed like REGIMES, sums to 1
    previous_state: MarketRegime
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def changed(self) -> bool:
        return self.state != self.previous_state

    @property
    def strategy(self) -> RegimeStrategy:
        return REGIME_STRATEGIES[self.state]

    def probability_of(self, regime: MarketRegime) -> float:
        return self.probabilities[REGIME_INDEX[regime]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "confidence": round(self.confidence, 2),
            "probabilities": {
                r.value: round(p, 4) for r, p in zip(REGIMES, self.probabilities)
            },
            "previous_state": self.previous_state.value,
            "changed": self.changed,
            "timestamp": self.timestamp,
        }


class RegimeClassifier:
    """
    Bayesian four-state regime estimator.

    Holds the current regime, the transition matrix and a bounded history of
    classifications. The matrix is only changed by learn_transitions().
    """

    # Emission model thresholds
    ADX_TREND = 25.0
    ADX_TREND_SCALE = 50.0
    ADX_QUIET = 20.0
    ADX_CHAOS = 15.0
    ATR_QUIET = 0.015
    ATR_VOLATILE_MAX = 0.03
    ATR_CHAOS_LOW_ADX = 0.025
    ATR_CHAOS_ELEVATED = 0.02
    ATR_CHAOS_EXTREME = 0.035

    def __init__(self, config: Optional[RegimeConfig] = None):
        self.config = config or RegimeConfig()
        self.transition_matrix = np.array(self.config.transition_matrix, dtype=float)
        self.current_state = DEFAULT_REGIME
        self.history: deque = deque(maxlen=self.config.history_size)

        # Hot-path scratch buffers
        self._emission = np.empty(len(REGIMES))
        self._posterior = np.empty(len(REGIMES))

        logger.info("Regime classifier initialized")

    # =========================================================================
    # Emission model
    # =========================================================================

    def emission_probabilities(self, observation: Observation) -> np.ndarray:
        """Normalised emission likelihoods for a valid observation."""
        adx = observation.adx
        atr_ratio = observation.atr_ratio
        e = self._emission

        # TRENDING
        if adx > self.ADX_TREND:
            e[0] = min(1.0, adx / self.ADX_TREND_SCALE) * 0.9
        else:
            e[0] = 0.1

        # RANGING
        if adx < self.ADX_QUIET and atr_ratio < self.ATR_QUIET:
            e[1] = 0.8
        elif adx < self.ADX_TREND:
            e[1] = 0.5
        else:
            e[1] = 0.1

        # VOLATILE
        if self.ATR_QUIET < atr_ratio < self.ATR_VOLATILE_MAX:
            e[2] = min(1.0, atr_ratio / self.ATR_VOLATILE_MAX) * 0.85
        else:
            e[2] = 0.15

        # CHAOTIC
        if (adx < self.ADX_CHAOS and atr_ratio > self.ATR_CHAOS_LOW_ADX) or \
                atr_ratio > self.ATR_CHAOS_EXTREME:
            e[3] = 0.9
        elif atr_ratio > self.ATR_CHAOS_ELEVATED:
            e[3] = 0.4
        else:
            e[3] = 0.05

        e /= e.sum()
        return e

    # =========================================================================
    # Classification
    # =========================================================================

    def evaluate(
        self,
        observation: Observation,
        from_state: Optional[MarketRegime] = None,
    ) -> RegimeResult:
        """
        Compute the posterior for an observation without changing any state.

        Args:
            observation: indicator values for this tick
            from_state: regime to transition from (default: the held regime)

        Returns:
            RegimeResult. Invalid observations yield the held regime with a
            uniform distribution and confidence 50.
        """
        origin = from_state or self.current_state

        if not observation.is_valid():
            logger.debug(f"Invalid observation {observation.to_dict()}, holding {origin.value}")
            return RegimeResult(
                state=origin,
                confidence=50.0,
                probabilities=[0.25] * len(REGIMES),
                previous_state=origin,
            )

        origin_idx = REGIME_INDEX[origin]
        emission = self.emission_probabilities(observation)
        posterior = self._posterior
        np.multiply(emission, self.transition_matrix[origin_idx], out=posterior)

        total = posterior.sum()
        if total <= 0:
            # Transition row rules out every emitting state; fall back to emissions
            posterior[:] = emission
            total = posterior.sum()
        posterior /= total

        # Strict comparison: ties keep the held regime
        best_idx = origin_idx
        best_prob = posterior[origin_idx]
        for i in range(len(REGIMES)):
            if posterior[i] > best_prob:
                best_idx = i
                best_prob = posterior[i]

        return RegimeResult(
            state=REGIMES[best_idx],
            confidence=float(best_prob) * 100,
            probabilities=[float(p) for p in posterior],
            previous_state=origin,
        )

    def classify(self, observation: Observation) -> RegimeResult:
        """
        Classify an observation and advance the held regime.

        Never raises: invalid observations return the held regime with
        uniform probabilities and are not recorded in history.
        """
        result = self.evaluate(observation)
        if not observation.is_valid():
            return result

        if result.changed:
            logger.info(
                f"Regime change: {result.previous_state.value} -> {result.state.value} "
                f"({result.confidence:.1f}%)"
            )

        self.current_state = result.state
        self.history.append({
            "timestamp": result.timestamp,
            "state": result.state.value,
            "confidence": result.confidence,
            "adx": float(observation.adx),
            "atr_ratio": float(observation.atr_ratio),
            "probabilities": result.probabilities,
        })
        return result

    # =========================================================================
    # Transition learning
    # =========================================================================

    def learn_transitions(self) -> bool:
        """
        Blend empirically observed transitions into the matrix.

        new_row = (1 - alpha) * old_row + alpha * observed_row, for every row
        with at least one observed transition.

        Returns:
            True if the matrix was updated
        """
        if len(self.history) < self.config.learn_min_history:
            return False

        n = len(REGIMES)
        counts = np.zeros((n, n))
        states = [REGIME_INDEX[MarketRegime(h["state"])] for h in self.history]
        for prev, nxt in zip(states, states[1:]):
            counts[prev, nxt] += 1

        alpha = self.config.learn_alpha
        updated_rows = 0
        for i in range(n):
            row_total = counts[i].sum()
            if row_total == 0:
                continue
            observed = counts[i] / row_total
            row = (1 - alpha) * self.transition_matrix[i] + alpha * observed
            self.transition_matrix[i] = row / row.sum()
            updated_rows += 1

        logger.debug(f"Transition matrix updated ({updated_rows} rows, {len(states)} samples)")
        return updated_rows > 0

    def transition_row(self, regime: Union[MarketRegime, str]) -> List[float]:
        """Transition distribution out of a regime; uniform for unknown names."""
        parsed = parse_regime(regime)
        if parsed is None:
            logger.warning(f"Unknown regime {regime!r}, returning uniform distribution")
            return [1.0 / len(REGIMES)] * len(REGIMES)
        return [float(p) for p in self.transition_matrix[REGIME_INDEX[parsed]]]

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def stability(self) -> float:
        """Percent of the recent window spent in the held regime (50 if too short)."""
        window = self.config.stability_window
        if len(self.history) < window:
            return 50.0
        recent = list(self.history)[-window:]
        same = sum(1 for h in recent if h["state"] == self.current_state.value)
        return same / window * 100

    def get_stats(self) -> Dict[str, Any]:
        last = self.history[-1] if self.history else None
        return {
            "current_state": self.current_state.value,
            "confidence": round(last["confidence"], 2) if last else None,
            "stability": round(self.stability(), 1),
            "history_size": len(self.history),
            "strategy": REGIME_STRATEGIES[self.current_state].to_dict(),
            "transition_matrix": self.matrix_to_list(),
        }

    def reset(self):
        """Back to the prior matrix, RANGING and an empty history."""
        self.transition_matrix = np.array(self.config.transition_matrix, dtype=float)
        self.current_state = DEFAULT_REGIME
        self.history.clear()
        logger.info("Regime classifier reset")

    # =========================================================================
    # Persistence
    # =========================================================================

    def matrix_to_list(self) -> List[List[float]]:
        return [[float(p) for p in row] for row in self.transition_matrix]

    def history_to_list(self) -> List[Dict[str, Any]]:
        return list(self.history)

    def load_transition_matrix(self, matrix: Optional[List[List[float]]]) -> bool:
        """Adopt a persisted matrix if it is a valid 4x4 row-stochastic matrix."""
        if not matrix:
            return False
        try:
            candidate = np.array(matrix, dtype=float)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable transition matrix: {e}")
            return False

        n = len(REGIMES)
        if candidate.shape != (n, n) or not np.all(np.isfinite(candidate)) \
                or np.any(candidate < 0) \
                or not np.allclose(candidate.sum(axis=1), 1.0, atol=1e-6):
            logger.warning("Ignoring persisted transition matrix: not a 4x4 stochastic matrix")
            return False

        self.transition_matrix = candidate
        return True

    def load_history(self, entries: Optional[List[Dict[str, Any]]]) -> int:
        """Restore history entries; the held regime becomes the latest entry's."""
        if not entries:
            return 0
        if not isinstance(entries, list):
            logger.warning(f"Ignoring persisted regime history: expected a list, got {type(entries).__name__}")
            return 0

        restored = []
        for entry in entries:
            state = parse_regime(entry.get("state")) if isinstance(entry, dict) else None
            if state is None:
                logger.warning(f"Skipping unreadable regime history entry {entry!r}")
                continue
            restored.append({**entry, "state": state.value})

        self.history.clear()
        self.history.extend(restored)
        if self.history:
            self.current_state = MarketRegime(self.history[-1]["state"])
        return len(self.history)


# Convenience function
def detect_regime(
    observation: Observation,
    classifier: Optional[RegimeClassifier] = None,
) -> RegimeResult:
    """Classify a single observation with a fresh or supplied classifier"""
    classifier = classifier or RegimeClassifier()
    return classifier.classify(observation)
