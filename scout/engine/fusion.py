"""
Signal Fusion

Combines the regime classifier, predictor and Q-learning policy (plus
indicator, pattern and microstructure context) into a single Signal.

Decision order is an explicit strategy chain; the first strategy that is
ready produces the base action and confidence:

1. predictor           - network direction, checked against the Q-policy
2. policy              - Q-policy alone, once it has learned enough
3. indicator_fallback  - weighted RSI / Williams %R / CCI threshold votes, else a coin flip

The base confidence is then calibrated:
- Regime boost (TRENDING +15, RANGING +20, VOLATILE -10, CHAOTIC -15)
- Volatility clustering: -10 when > 1.5, +5 when < 0.7
- Patterns: +10 x confidence when agreeing, -5 x confidence when conflicting
- Clamped to [30, 95] and rounded

"A signal is only as good as the honesty of its confidence."
"""

import logging
import math
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Sequence

from ..config import FusionConfig
from ..data.indicators import IndicatorSnapshot
from ..learning.actions import Action, ACTIONS, parse_action
from ..learning.indicator_weights import INDICATORS
from ..learning.policy import QLearningPolicy
from ..learning.predictor import PredictorResult
from ..learning.regime import MarketRegime, RegimeResult, parse_regime, strategy_for

logger = logging.getLogger(__name__)


class SignalResult(Enum):
    """Outcome of a resolved signal"""
    WIN = "WIN"
    LOSS = "LOSS"


class SignalAlreadyResolvedError(Exception):
    """Raised when a signal's result is set a second time."""
    pass


def is_valid_price(price) -> bool:
    """A usable exit price: a positive finite number."""
    if isinstance(price, bool):
        return False
    try:
        value = float(price)
    except (TypeError, ValueError):
        return False
    return math.isfinite(value) and value > 0


@dataclass
class Signal:
    """A directional recommendation with calibrated confidence"""
    action: Action
    confidence: int                 # 30-95
    duration: int                   # minutes until resolution
    regime: MarketRegime
    reasons: List[str]
    entry_price: float
    timestamp: int                  # epoch ms
    strategy: str = ""
    is_fallback: bool = False
    features: List[float] = field(default_factory=list)
    indicator_signals: Dict[str, str] = field(default_factory=dict)
    result: Optional[SignalResult] = None
    exit_price: Optional[float] = None
    signal_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def is_resolved(self) -> bool:
        return self.result is not None

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.duration * 60_000

    def outcome_for(self, exit_price: float) -> SignalResult:
        """WIN if price moved in the signalled direction, LOSS otherwise (ties lose)."""
        if self.action is Action.BUY and exit_price > self.entry_price:
            return SignalResult.WIN
        if self.action is Action.SELL and exit_price < self.entry_price:
            return SignalResult.WIN
        return SignalResult.LOSS

    def mark_result(self, exit_price: float) -> SignalResult:
        """
        Resolve the signal against its exit price. Allowed exactly once.

        Raises:
            SignalAlreadyResolvedError: if already resolved
            ValueError: if exit_price is not a positive finite number
        """
        if self.is_resolved:
            raise SignalAlreadyResolvedError(
                f"Signal {self.signal_id} already resolved as {self.result.value}"
            )
        if not is_valid_price(exit_price):
            raise ValueError(f"Invalid exit price for {self.signal_id}: {exit_price!r}")
        self.result = self.outcome_for(exit_price)
        self.exit_price = float(exit_price)
        return self.result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "action": self.action.value,
            "confidence": self.confidence,
            "duration": self.duration,
            "regime": self.regime.value,
            "reasons": list(self.reasons),
            "entry_price": self.entry_price,
            "timestamp": self.timestamp,
            "result": self.result.value if self.result else None,
            "exit_price": self.exit_price,
            "is_fallback": self.is_fallback,
            "strategy": self.strategy,
            "features": list(self.features),
            "indicator_signals": dict(self.indicator_signals),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        action = parse_action(data["action"])
        regime = parse_regime(data["regime"])
        if action is None or regime is None:
            raise ValueError(f"Unknown action/regime in signal {data.get('signal_id')}")

        result = data.get("result")
        kwargs = {}
        if data.get("signal_id"):
            kwargs["signal_id"] = data["signal_id"]

        return cls(
            action=action,
            confidence=int(data["confidence"]),
            duration=int(data["duration"]),
            regime=regime,
            reasons=list(data.get("reasons", [])),
            entry_price=float(data["entry_price"]),
            timestamp=int(data["timestamp"]),
            strategy=data.get("strategy", ""),
            is_fallback=bool(data.get("is_fallback", False)),
            features=[float(x) for x in data.get("features", [])],
            indicator_signals={str(k): str(v) for k, v in (data.get("indicator_signals") or {}).items()},
            result=SignalResult(result) if result else None,
            exit_price=data.get("exit_price"),
            **kwargs,
        )


class PatternDirection(Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


@dataclass
class PatternVote:
    """A chart pattern reported by an external detector"""
    name: str
    direction: PatternDirection
    confidence: float               # 0-1

    def __post_init__(self):
        if not isinstance(self.direction, PatternDirection):
            self.direction = PatternDirection(str(self.direction).upper())
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    def agrees_with(self, action: Action) -> bool:
        return (self.direction is PatternDirection.BULLISH and action is Action.BUY) or \
            (self.direction is PatternDirection.BEARISH and action is Action.SELL)

    def conflicts_with(self, action: Action) -> bool:
        return (self.direction is PatternDirection.BULLISH and action is Action.SELL) or \
            (self.direction is PatternDirection.BEARISH and action is Action.BUY)


# =============================================================================
# Strategy chain
# =============================================================================

@dataclass
class FusionContext:
    """Everything a strategy may look at"""
    regime_result: RegimeResult
    predictor_result: Optional[PredictorResult]
    policy: QLearningPolicy
    indicators: IndicatorSnapshot
    config: FusionConfig
    rng: random.Random
    indicator_weights: Optional[Dict[str, float]] = None


@dataclass
class StrategyDecision:
    """Base action and confidence chosen by a strategy"""
    strategy: str
    action: Action
    confidence: float
    reasons: List[str] = field(default_factory=list)
    is_fallback: bool = False


class FusionStrategy(ABC):
    """One link of the decision chain"""

    name = ""

    @abstractmethod
    def decide(self, context: FusionContext) -> Optional[StrategyDecision]:
        """Return a decision, or None when this strategy is not ready."""


class PredictorStrategy(FusionStrategy):
    """Network direction, overridden by the Q-policy when they disagree"""

    name = "predictor"

    def decide(self, context: FusionContext) -> Optional[StrategyDecision]:
        prediction = context.predictor_result
        if prediction is None:
            return None

        regime = context.regime_result.state
        action = prediction.action
        confidence = prediction.confidence
        reasons = [f"Predictor: {action.value} ({confidence:.0f}%)"]

        rl_action = context.policy.select_action(regime, action)
        if rl_action is not action:
            reasons.append(f"Q-learning override: {action.value} -> {rl_action.value}")
            action = rl_action
            confidence = context.config.override_confidence

        adjustment = context.policy.confidence_adjustment(regime, action)
        if adjustment:
            confidence += adjustment
            reasons.append(f"Q-learning edge in {regime.value} ({adjustment:+d}%)")

        return StrategyDecision(self.name, action, confidence, reasons)


class PolicyStrategy(FusionStrategy):
    """Q-policy alone, once it has applied enough updates"""

    name = "policy"

    def decide(self, context: FusionContext) -> Optional[StrategyDecision]:
        if not context.policy.is_ready:
            return None
        regime = context.regime_result.state
        action = context.policy.select_action(regime, None)
        return StrategyDecision(
            self.name,
            action,
            context.config.policy_confidence,
            [f"Q-learning policy: {action.value} in {regime.value}"],
        )


RSI_OVERSOLD = 35
RSI_OVERBOUGHT = 65
WILLIAMS_OVERSOLD = -80
WILLIAMS_OVERBOUGHT = -20
CCI_OVERSOLD = -100
CCI_OVERBOUGHT = 100


def indicator_votes(indicators: IndicatorSnapshot) -> Dict[str, Action]:
    """Direction of each oscillator at an extreme; silent oscillators are omitted."""
    bounds = {
        "rsi": (indicators.rsi, RSI_OVERSOLD, RSI_OVERBOUGHT),
        "williams_r": (indicators.williams_r, WILLIAMS_OVERSOLD, WILLIAMS_OVERBOUGHT),
        "cci": (indicators.cci, CCI_OVERSOLD, CCI_OVERBOUGHT),
    }
    votes = {}
    for name in INDICATORS:
        value, oversold, overbought = bounds[name]
        if value < oversold:
            votes[name] = Action.BUY
        elif value > overbought:
            votes[name] = Action.SELL
    return votes


class IndicatorFallbackStrategy(FusionStrategy):
    """Weighted oscillator votes; a random direction when none fire"""

    name = "indicator_fallback"

    def decide(self, context: FusionContext) -> Optional[StrategyDecision]:
        ind = context.indicators
        weights = context.indicator_weights or {}
        votes = indicator_votes(ind)

        buy = sum(weights.get(n, 1.0) for n, a in votes.items() if a is Action.BUY)
        sell = sum(weights.get(n, 1.0) for n, a in votes.items() if a is Action.SELL)

        if not votes:
            action = context.rng.choice(ACTIONS)
            return StrategyDecision(
                self.name, action, context.config.random_confidence,
                [f"No indicator edge, random {action.value}"],
                is_fallback=True,
            )

        # Oversold wins ties
        action = Action.BUY if buy >= sell else Action.SELL
        label = "Oversold" if action is Action.BUY else "Overbought"
        return StrategyDecision(
            self.name, action, context.config.threshold_confidence,
            [f"{label}: RSI {ind.rsi:.1f}, W%R {ind.williams_r:.1f}, CCI {ind.cci:.0f} "
             f"(votes {buy:.2f} buy / {sell:.2f} sell)"],
            is_fallback=True,
        )


STRATEGY_REGISTRY = {
    PredictorStrategy.name: PredictorStrategy,
    PolicyStrategy.name: PolicyStrategy,
    IndicatorFallbackStrategy.name: IndicatorFallbackStrategy,
}


class FusionEngine:
    """
    Runs the strategy chain and calibrates the resulting confidence.

    Usage:
        fusion = FusionEngine()
        signal = fusion.fuse(regime_result, prediction, policy, snapshot)
        if fusion.passes_gate(signal):
            publish(signal)
    """

    DURATION_TREND = 5
    DURATION_VOLATILE = 2
    DURATION_NORMAL = 3
    ADX_STRONG_TREND = 30
    ATR_HIGH_VOLATILITY = 0.015

    CLUSTERING_PENALTY = -10
    CLUSTERING_BONUS = 5
    PATTERN_AGREE_WEIGHT = 10
    PATTERN_CONFLICT_WEIGHT = 5

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or FusionConfig()
        self.rng = rng or random.Random()

        unknown = [n for n in self.config.strategies if n not in STRATEGY_REGISTRY]
        if unknown:
            raise ValueError(f"Unknown fusion strategies: {unknown}")
        self.strategies: List[FusionStrategy] = [
            STRATEGY_REGISTRY[name]() for name in self.config.strategies
        ]

    def select_duration(self, indicators: IndicatorSnapshot):
        """(minutes, reason) from trend strength and volatility."""
        if indicators.adx > self.ADX_STRONG_TREND:
            return self.DURATION_TREND, f"Duration: {self.DURATION_TREND}min (strong trend)"
        if indicators.atr_ratio > self.ATR_HIGH_VOLATILITY:
            return self.DURATION_VOLATILE, f"Duration: {self.DURATION_VOLATILE}min (high volatility)"
        return self.DURATION_NORMAL, f"Duration: {self.DURATION_NORMAL}min (normal)"

    def clamp_confidence(self, confidence: float) -> int:
        bounded = min(self.config.max_output_confidence,
                      max(self.config.min_output_confidence, confidence))
        return int(round(bounded))

    def fuse(
        self,
        regime_result: RegimeResult,
        predictor_result: Optional[PredictorResult],
        policy: QLearningPolicy,
        indicators: IndicatorSnapshot,
        patterns: Optional[Sequence[PatternVote]] = None,
        entry_price: Optional[float] = None,
        timestamp: Optional[int] = None,
        indicator_weights: Optional[Dict[str, float]] = None,
    ) -> Signal:
        """
        Produce a Signal. Always succeeds: the last strategy is always ready.

        indicator_weights scales each oscillator vote in the fallback
        (default 1.0 each).
        """
        context = FusionContext(
            regime_result=regime_result,
            predictor_result=predictor_result,
            policy=policy,
            indicators=indicators,
            config=self.config,
            rng=self.rng,
            indicator_weights=indicator_weights,
        )

        decision = None
        for strategy in self.strategies:
            decision = strategy.decide(context)
            if decision is not None:
                break

        action = decision.action
        confidence = float(decision.confidence)
        reasons = list(decision.reasons)

        regime = regime_result.state
        boost = strategy_for(regime).confidence_boost
        confidence += boost
        reasons.append(f"Regime: {regime.value} ({boost:+d}%)")

        duration, duration_reason = self.select_duration(indicators)
        reasons.append(duration_reason)

        clustering = indicators.volatility_clustering
        if clustering > self.config.high_clustering:
            confidence += self.CLUSTERING_PENALTY
            reasons.append(f"Volatility clustering {clustering:.2f} ({self.CLUSTERING_PENALTY:+d}%)")
        elif clustering < self.config.low_clustering:
            confidence += self.CLUSTERING_BONUS
            reasons.append(f"Calm microstructure {clustering:.2f} ({self.CLUSTERING_BONUS:+d}%)")

        for pattern in patterns or []:
            if pattern.agrees_with(action):
                confidence += pattern.confidence * self.PATTERN_AGREE_WEIGHT
                reasons.append(f"Pattern: {pattern.name} ({pattern.confidence * 100:.0f}%)")
            elif pattern.conflicts_with(action):
                confidence -= pattern.confidence * self.PATTERN_CONFLICT_WEIGHT
                reasons.append(f"Conflicting pattern: {pattern.name} ({pattern.confidence * 100:.0f}%)")

        signal = Signal(
            action=action,
            confidence=self.clamp_confidence(confidence),
            duration=duration,
            regime=regime,
            reasons=reasons[:self.config.max_reasons],
            entry_price=float(entry_price if entry_price is not None else indicators.close),
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
            strategy=decision.strategy,
            is_fallback=decision.is_fallback,
            features=indicators.features(),
            indicator_signals={n: a.value for n, a in indicator_votes(indicators).items()},
        )

        logger.info(
            f"Signal: {signal.action.value} {signal.confidence}% {signal.duration}min "
            f"[{signal.strategy}] regime={regime.value}"
        )
        return signal

    def passes_gate(self, signal: Signal) -> bool:
        """Emission gate; min_confidence 0 lets everything through."""
        return signal.confidence >= self.config.min_confidence
