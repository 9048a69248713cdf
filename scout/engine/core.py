"""
Signal Engine

The one object that owns every piece of mutable learning state:
regime classifier, predictor, Q-policy, fusion chain, pending signals and
signal history. The scheduler talks to it through two calls:

    signal = engine.generate_signal(candles, ticks)      # each tick
    engine.resolve_signal(signal.signal_id, exit_price)  # after signal.duration

Resolution closes the learning loop:
    outcome -> predictor training buffer
            -> Q-table update (reward +1 / -1)
            -> transition matrix learning
            -> indicator vote scores (fallback weights)
            -> persisted via Storage

Nothing here raises into the scheduler. Missing data, unready models and
storage failures are logged and absorbed.
"""

import logging
import random
import time
from collections import OrderedDict, deque
from typing import Optional, Dict, Any, List, Sequence, Union

import numpy as np
import pandas as pd

from ..config import EngineConfig
from ..data.candles import prepare_candles
from ..data.indicators import InsufficientDataError, build_observation, build_snapshot
from ..learning.indicator_weights import IndicatorLearner
from ..learning.policy import QLearningPolicy
from ..learning.predictor import ModelNotReadyError, Predictor
from ..learning.regime import RegimeClassifier
from ..storage.base import MemoryStorage, Storage, StorageError, create_storage
from .fusion import FusionEngine, PatternVote, Signal, SignalResult, is_valid_price

logger = logging.getLogger(__name__)

# Storage keys
KEY_TRANSITION_MATRIX = "transition_matrix"
KEY_REGIME_HISTORY = "regime_history"
KEY_Q_TABLE = "q_table"
KEY_REWARD_EVENTS = "reward_events"
KEY_TRAINING_SAMPLES = "training_samples"
KEY_PREDICTOR_WEIGHTS = "predictor_weights"
KEY_SIGNAL_HISTORY = "signal_history"
KEY_INDICATOR_PERFORMANCE = "indicator_performance"


class SignalEngine:
    """
    Adaptive multi-model signal engine.

    Construct one per instrument; instances share nothing.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        storage: Optional[Storage] = None,
        seed: Optional[int] = None,
    ):
        self.config = config or EngineConfig()
        self.storage = storage or MemoryStorage()

        seed = seed if seed is not None else self.config.seed
        self.classifier = RegimeClassifier(self.config.regime)
        self.predictor = Predictor(self.config.predictor, rng=np.random.default_rng(seed))
        self.policy = QLearningPolicy(self.config.policy, rng=random.Random(seed))
        self.indicator_learner = IndicatorLearner()
        self.fusion = FusionEngine(
            self.config.fusion,
            rng=random.Random(None if seed is None else seed + 1),
        )

        self.pending: "OrderedDict[str, Signal]" = OrderedDict()
        self.signal_history: deque = deque(maxlen=self.config.signal_history_size)

        self.signals_generated = 0
        self.signals_suppressed = 0
        self.wins = 0
        self.losses = 0

        logger.info("Signal engine initialized")

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load_key(self, key: str, default=None):
        try:
            return self.storage.load(key, default)
        except StorageError as e:
            logger.warning(f"Failed to load {key}, keeping defaults: {e}")
            return default

    def _restore(self, key: str, restore, default=None):
        """Hand one stored value to `restore`; malformed values keep the defaults."""
        raw = self._load_key(key, default)
        try:
            return restore(raw)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed stored {key}, keeping defaults: {e}")
            return None

    def _restore_signal_history(self, entries) -> int:
        restored = 0
        for raw in entries or []:
            try:
                self.signal_history.append(Signal.from_dict(raw))
                restored += 1
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed stored signal: {e}")
        return restored

    def load_state(self) -> bool:
        """Restore learned state from storage. Returns True if anything was loaded."""
        loaded = bool(self._restore(KEY_TRANSITION_MATRIX, self.classifier.load_transition_matrix))
        loaded |= bool(self._restore(KEY_REGIME_HISTORY, self.classifier.load_history))
        loaded |= bool(self._restore(KEY_Q_TABLE, self.policy.load_q_table))
        loaded |= bool(self._restore(KEY_REWARD_EVENTS, self.policy.load_rewards))
        loaded |= bool(self._restore(KEY_INDICATOR_PERFORMANCE, self.indicator_learner.load))

        weights_loaded = False
        if self.config.predictor.persist_weights:
            weights_loaded = bool(self._restore(KEY_PREDICTOR_WEIGHTS, self.predictor.load_weights))
            loaded |= weights_loaded

        # Fresh weights are refitted to the restored buffer unless persisted ones were loaded
        loaded |= bool(self._restore(
            KEY_TRAINING_SAMPLES,
            lambda data: self.predictor.load_samples(data, retrain=not weights_loaded),
        ))
        loaded |= bool(self._restore(KEY_SIGNAL_HISTORY, self._restore_signal_history, []))

        if loaded:
            logger.info(
                f"Engine state loaded: regime={self.classifier.current_state.value}, "
                f"samples={len(self.predictor.training_data)}, "
                f"q_updates={self.policy.update_count}, "
                f"signals={len(self.signal_history)}"
            )
        return loaded

    def save_state(self) -> bool:
        """Persist learned state. Returns False if any key failed."""
        payload = {
            KEY_TRANSITION_MATRIX: self.classifier.matrix_to_list(),
            KEY_REGIME_HISTORY: self.classifier.history_to_list(),
            KEY_Q_TABLE: self.policy.q_table_to_dict(),
            KEY_REWARD_EVENTS: self.policy.rewards_to_list(),
            KEY_TRAINING_SAMPLES: self.predictor.samples_to_dict(),
            KEY_SIGNAL_HISTORY: [s.to_dict() for s in self.signal_history],
            KEY_INDICATOR_PERFORMANCE: self.indicator_learner.to_dict(),
        }
        if self.config.predictor.persist_weights:
            payload[KEY_PREDICTOR_WEIGHTS] = self.predictor.weights.to_dict()

        ok = True
        for key, value in payload.items():
            try:
                self.storage.save(key, value)
            except StorageError as e:
                logger.warning(f"Failed to save {key}: {e}")
                ok = False
        return ok

    # =========================================================================
    # Signal generation
    # =========================================================================

    def generate_signal(
        self,
        candles: Union[pd.DataFrame, List[Dict[str, Any]]],
        ticks: Union[pd.DataFrame, List[Dict[str, Any]], None] = None,
        patterns: Optional[Sequence[PatternVote]] = None,
        now: Optional[int] = None,
    ) -> Optional[Signal]:
        """
        Run one tick of the pipeline.

        Args:
            candles: OHLC history, oldest first
            ticks: optional recent {timestamp (ms), price} ticks for microstructure
            patterns: optional externally detected chart patterns
            now: epoch ms timestamp for the signal (default: wall clock)

        Returns:
            The emitted Signal, or None during warm-up, on bad data, or when
            the confidence gate suppresses it
        """
        try:
            frame = prepare_candles(candles)
        except ValueError as e:
            logger.warning(f"Unusable candles: {e}")
            return None

        warmup = self.config.warmup_candles
        if len(frame) < warmup:
            logger.info(f"Warming up: {len(frame)}/{warmup} candles")
            return None

        try:
            snapshot = build_snapshot(frame, self.config.indicators)
        except InsufficientDataError as e:
            logger.warning(f"Skipping tick, insufficient data: {e}")
            return None

        observation = build_observation(snapshot, ticks, self.config.indicators)
        regime_result = self.classifier.classify(observation)

        prediction = None
        try:
            prediction = self.predictor.predict(snapshot.features())
        except ModelNotReadyError as e:
            logger.debug(f"Predictor not ready: {e}")

        signal = self.fusion.fuse(
            regime_result,
            prediction,
            self.policy,
            snapshot,
            patterns=patterns,
            entry_price=snapshot.close,
            timestamp=now if now is not None else int(time.time() * 1000),
            indicator_weights=self.indicator_learner.regime_weights(regime_result.state),
        )

        if not self.fusion.passes_gate(signal):
            self.signals_suppressed += 1
            logger.info(
                f"Signal suppressed: {signal.confidence}% < "
                f"{self.config.fusion.min_confidence}% gate"
            )
            return None

        self.pending[signal.signal_id] = signal
        while len(self.pending) > self.config.signal_history_size:
            stale_id, _ = self.pending.popitem(last=False)
            logger.warning(f"Dropping unresolved signal {stale_id}")

        self.signal_history.append(signal)
        self.signals_generated += 1
        return signal

    # =========================================================================
    # Resolution & learning
    # =========================================================================

    def resolve_signal(
        self,
        signal: Union[Signal, str],
        exit_price: float,
    ) -> Optional[Signal]:
        """
        Resolve a pending signal and feed the outcome to every learner.

        Unknown or already-resolved signals are logged and ignored. A missing
        or non-finite exit price leaves the signal pending.
        """
        signal_id = signal.signal_id if isinstance(signal, Signal) else signal
        if not is_valid_price(exit_price):
            logger.warning(f"Cannot resolve {signal_id}: invalid exit price {exit_price!r}")
            return None

        pending = self.pending.pop(signal_id, None)
        if pending is None:
            logger.warning(f"Cannot resolve {signal_id}: unknown or already resolved")
            return None
        if pending.is_resolved:
            logger.warning(f"Signal {signal_id} already resolved as {pending.result.value}")
            return None

        result = pending.mark_result(exit_price)
        won = result is SignalResult.WIN
        if won:
            self.wins += 1
        else:
            self.losses += 1

        if pending.features:
            self.predictor.add_sample(pending.features, pending.action, won)

        self.policy.update(
            pending.regime,
            pending.action,
            1.0 if won else -1.0,
            self.classifier.current_state,
        )
        self.indicator_learner.record(
            pending.indicator_signals, pending.action, pending.confidence, won
        )
        self.classifier.learn_transitions()

        logger.info(
            f"Resolved {signal_id}: {pending.action.value} {pending.entry_price} -> "
            f"{exit_price} = {result.value}"
        )

        self.save_state()
        return pending

    def resolve_expired(self, price: float, now: Optional[int] = None) -> List[Signal]:
        """Resolve every pending signal whose duration has elapsed at `now`."""
        now = now if now is not None else int(time.time() * 1000)
        due = [s for s in self.pending.values() if s.expires_at <= now]
        resolved = []
        for signal in due:
            outcome = self.resolve_signal(signal.signal_id, price)
            if outcome is not None:
                resolved.append(outcome)
        return resolved

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def resolved_signals(self) -> List[Signal]:
        return [s for s in self.signal_history if s.is_resolved]

    def get_stats(self) -> Dict[str, Any]:
        total = self.wins + self.losses
        return {
            "signals_generated": self.signals_generated,
            "signals_suppressed": self.signals_suppressed,
            "pending": len(self.pending),
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.wins / total * 100 if total else None,
            "regime": self.classifier.get_stats(),
            "predictor": self.predictor.get_stats(),
            "policy": self.policy.get_stats(),
            "indicators": self.indicator_learner.get_stats(),
        }

    def reset(self):
        """Forget everything learned and persist the blank state."""
        self.classifier.reset()
        self.predictor.reset()
        self.policy.reset()
        self.indicator_learner.reset()
        self.pending.clear()
        self.signal_history.clear()
        self.signals_generated = 0
        self.signals_suppressed = 0
        self.wins = 0
        self.losses = 0
        self.save_state()
        logger.info("Signal engine reset")


# Convenience function
def create_engine(
    config: Optional[EngineConfig] = None,
    storage: Optional[Storage] = None,
    seed: Optional[int] = None,
) -> SignalEngine:
    """Create an engine on the configured storage and restore any persisted state"""
    config = config or EngineConfig()
    storage = storage or create_storage(config.db_path)
    engine = SignalEngine(config=config, storage=storage, seed=seed)
    engine.load_state()
    return engine
