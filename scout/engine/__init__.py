"""
Engine Module - signal fusion and the engine that owns all learning state.

    from scout.engine import SignalEngine, FusionEngine, Signal
"""

from .fusion import (
    # Enums
    SignalResult,
    PatternDirection,

    # Dataclasses
    Signal,
    PatternVote,
    StrategyDecision,

    # Strategy chain
    FusionEngine,
    FusionStrategy,
    PredictorStrategy,
    PolicyStrategy,
    IndicatorFallbackStrategy,
    indicator_votes,

    # Errors
    SignalAlreadyResolvedError,
    is_valid_price,
)

from .core import (
    SignalEngine,
    create_engine,
)


__all__ = [
    # Enums
    "SignalResult",
    "PatternDirection",

    # Dataclasses
    "Signal",
    "PatternVote",
    "StrategyDecision",

    # Strategy chain
    "FusionEngine",
    "FusionStrategy",
    "PredictorStrategy",
    "PolicyStrategy",
    "IndicatorFallbackStrategy",
    "indicator_votes",

    # Errors
    "SignalAlreadyResolvedError",
    "is_valid_price",

    # Engine
    "SignalEngine",
    "create_engine",
]
