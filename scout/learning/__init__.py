"""
Scout Learning Module

The three adaptive models behind every signal:
- RegimeClassifier: four-state Bayesian regime estimate with learned transitions
- Predictor: 5-16-8-2 network trained online from resolved signals
- QLearningPolicy: per-regime BUY/SELL action values

The Learning Loop:
1. Signal emitted with the current regime and feature vector
2. Signal resolves after its duration -> WIN or LOSS
3. Predictor stores a labelled sample (retrains every 50)
4. Q-table rewards the action taken in that regime
5. Transition matrix drifts toward observed regime changes

IndicatorLearner keeps score of the oscillator votes and retunes their
weights in the indicator fallback every 30 outcomes.
"""

from .actions import (
    Action,
    ACTIONS,
    parse_action,
)

from .regime import (
    RegimeClassifier,
    RegimeResult,
    RegimeStrategy,
    MarketRegime,
    Observation,
    REGIMES,
    REGIME_STRATEGIES,
    detect_regime,
    get_regime_description,
    parse_regime,
    strategy_for,
)

from .predictor import (
    Predictor,
    PredictorResult,
    TrainingSample,
    NetworkWeights,
    ModelNotReadyError,
    normalize_features,
    create_predictor,
)

from .policy import (
    QLearningPolicy,
    RewardEvent,
    create_policy,
)

from .indicator_weights import (
    IndicatorLearner,
    PerformanceRecord,
    INDICATORS,
    REGIME_WEIGHT_MULTIPLIERS,
    confidence_bucket,
)

__all__ = [
    # Actions
    "Action",
    "ACTIONS",
    "parse_action",
    # Regime
    "RegimeClassifier",
    "RegimeResult",
    "RegimeStrategy",
    "MarketRegime",
    "Observation",
    "REGIMES",
    "REGIME_STRATEGIES",
    "detect_regime",
    "get_regime_description",
    "parse_regime",
    "strategy_for",
    # Predictor
    "Predictor",
    "PredictorResult",
    "TrainingSample",
    "NetworkWeights",
    "ModelNotReadyError",
    "normalize_features",
    "create_predictor",
    # Policy
    "QLearningPolicy",
    "RewardEvent",
    "create_policy",
    # Indicator weights
    "IndicatorLearner",
    "PerformanceRecord",
    "INDICATORS",
    "REGIME_WEIGHT_MULTIPLIERS",
    "confidence_bucket",
]
