"""
Online Direction Predictor

Small feed-forward network trained online from resolved signals:

    5 features -> 16 (ReLU) -> 8 (ReLU) -> 2 (softmax: [BUY, SELL])

Features (each scaled to [0, 1] by normalize_features):
1. RSI / 100
2. ADX / 100
3. ATR * 100, capped at 1
4. (Williams %R + 100) / 100
5. (CCI + 200) / 400

Training:
- Every resolved signal becomes a labelled sample in a bounded ring buffer
- A win teaches the action that was taken, a loss teaches the opposite
- Every `retrain_interval` samples the whole buffer is replayed for
  `epochs` passes of plain per-sample SGD

The network is deliberately tiny: it has to train inside a scheduler tick
on a few hundred samples, not compete with an offline model.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Sequence

import numpy as np

from ..config import PredictorConfig
from .actions import Action, parse_action

logger = logging.getLogger(__name__)

INPUT_SIZE = 5
HIDDEN1_SIZE = 16
HIDDEN2_SIZE = 8
OUTPUT_SIZE = 2

LABEL_BUY = [1.0, 0.0]
LABEL_SELL = [0.0, 1.0]


class ModelNotReadyError(Exception):
    """Raised when the predictor has too few samples to be trusted."""
    pass


def _clamp01(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return 0.5
    return min(1.0, max(0.0, value))


def normalize_features(
    rsi: float,
    adx: float,
    atr: float,
    williams_r: float,
    cci: float,
) -> List[float]:
    """Scale raw indicator values into the [0, 1] feature vector."""
    return [
        _clamp01(rsi / 100 if rsi is not None else None),
        _clamp01(adx / 100 if adx is not None else None),
        _clamp01(atr * 100 if atr is not None else None),
        _clamp01((williams_r + 100) / 100 if williams_r is not None else None),
        _clamp01((cci + 200) / 400 if cci is not None else None),
    ]


def label_for(action: Action, was_win: bool) -> List[float]:
    """One-hot training target: the taken action on a win, its opposite on a loss."""
    if (was_win and action is Action.BUY) or (not was_win and action is Action.SELL):
        return list(LABEL_BUY)
    return list(LABEL_SELL)


@dataclass
class NetworkWeights:
    """Weights and biases of the 5-16-8-2 network"""
    w1: np.ndarray
    b1: np.ndarray
    w2: np.ndarray
    b2: np.ndarray
    w3: np.ndarray
    b3: np.ndarray

    @classmethod
    def initialize(cls, rng: np.random.Generator, scale: float = 0.1) -> "NetworkWeights":
        """Uniform initialisation in [-scale, scale]"""
        def uniform(*shape):
            return rng.uniform(-scale, scale, size=shape)

        return cls(
            w1=uniform(INPUT_SIZE, HIDDEN1_SIZE),
            b1=uniform(HIDDEN1_SIZE),
            w2=uniform(HIDDEN1_SIZE, HIDDEN2_SIZE),
            b2=uniform(HIDDEN2_SIZE),
            w3=uniform(HIDDEN2_SIZE, OUTPUT_SIZE),
            b3=uniform(OUTPUT_SIZE),
        )

    def is_finite(self) -> bool:
        return all(np.all(np.isfinite(getattr(self, name)))
                   for name in ("w1", "b1", "w2", "b2", "w3", "b3"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "w1": self.w1.tolist(),
            "b1": self.b1.tolist(),
            "w2": self.w2.tolist(),
            "b2": self.b2.tolist(),
            "w3": self.w3.tolist(),
            "b3": self.b3.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkWeights":
        weights = cls(
            w1=np.array(data["w1"], dtype=float),
            b1=np.array(data["b1"], dtype=float),
            w2=np.array(data["w2"], dtype=float),
            b2=np.array(data["b2"], dtype=float),
            w3=np.array(data["w3"], dtype=float),
            b3=np.array(data["b3"], dtype=float),
        )
        expected = {
            "w1": (INPUT_SIZE, HIDDEN1_SIZE), "b1": (HIDDEN1_SIZE,),
            "w2": (HIDDEN1_SIZE, HIDDEN2_SIZE), "b2": (HIDDEN2_SIZE,),
            "w3": (HIDDEN2_SIZE, OUTPUT_SIZE), "b3": (OUTPUT_SIZE,),
        }
        for name, shape in expected.items():
            if getattr(weights, name).shape != shape:
                raise ValueError(f"{name} has shape {getattr(weights, name).shape}, expected {shape}")
        return weights


@dataclass
class TrainingSample:
    """One labelled outcome"""
    features: List[float]
    label: List[float]

    def to_dict(self) -> Dict[str, Any]:
        return {"features": self.features, "label": self.label}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingSample":
        features = [float(x) for x in data["features"]]
        label = [float(x) for x in data["label"]]
        if len(features) != INPUT_SIZE or len(label) != OUTPUT_SIZE:
            raise ValueError("sample has wrong dimensions")
        return cls(features=features, label=label)


@dataclass
class PredictorResult:
    """Network output for one feature vector"""
    action: Action
    buy_prob: float
    sell_prob: float
    confidence: float            # 100 * max(buy_prob, sell_prob)
    features: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "buy_prob": round(self.buy_prob, 4),
            "sell_prob": round(self.sell_prob, 4),
            "confidence": round(self.confidence, 2),
        }


class Predictor:
    """
    Online-trained direction classifier.

    Ready once the training buffer holds `min_samples` samples. Weights
    are re-initialised each session and retrained from the persisted buffer
    unless `persist_weights` is enabled.
    """

    def __init__(
        self,
        config: Optional[PredictorConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config or PredictorConfig()
        self.rng = rng or np.random.default_rng()
        self.weights = NetworkWeights.initialize(self.rng, self.config.init_scale)

        self.training_data: deque = deque(maxlen=self.config.buffer_size)
        self.sample_count = 0
        self.retrain_count = 0

        # Pre-allocated activations, reused by every forward pass
        self._h1 = np.zeros(HIDDEN1_SIZE)
        self._h2 = np.zeros(HIDDEN2_SIZE)
        self._logits = np.zeros(OUTPUT_SIZE)
        self._out = np.zeros(OUTPUT_SIZE)

        logger.info("Predictor initialized")

    @property
    def is_ready(self) -> bool:
        return len(self.training_data) >= self.config.min_samples

    # =========================================================================
    # Inference
    # =========================================================================

    def _forward(self, x: np.ndarray) -> np.ndarray:
        w = self.weights

        np.dot(x, w.w1, out=self._h1)
        self._h1 += w.b1
        np.maximum(self._h1, 0.0, out=self._h1)

        np.dot(self._h1, w.w2, out=self._h2)
        self._h2 += w.b2
        np.maximum(self._h2, 0.0, out=self._h2)

        np.dot(self._h2, w.w3, out=self._logits)
        self._logits += w.b3

        # Stable softmax
        self._out[:] = self._logits - self._logits.max()
        np.exp(self._out, out=self._out)
        self._out /= self._out.sum()
        return self._out

    @staticmethod
    def _as_input(features: Sequence[float]) -> np.ndarray:
        x = np.asarray(features, dtype=float)
        if x.shape != (INPUT_SIZE,):
            raise ValueError(f"Expected {INPUT_SIZE} features, got shape {x.shape}")
        if not np.all(np.isfinite(x)):
            raise ValueError(f"Features must be finite, got {x.tolist()}")
        return x

    def probabilities(self, features: Sequence[float]) -> List[float]:
        """[buy_prob, sell_prob] regardless of readiness."""
        out = self._forward(self._as_input(features))
        return [float(out[0]), float(out[1])]

    def predict(self, features: Sequence[float]) -> PredictorResult:
        """
        Predict direction for a feature vector.

        Raises:
            ModelNotReadyError: fewer than min_samples training samples
        """
        if not self.is_ready:
            raise ModelNotReadyError(
                f"Predictor has {len(self.training_data)}/{self.config.min_samples} samples"
            )

        buy_prob, sell_prob = self.probabilities(features)
        action = Action.BUY if buy_prob > sell_prob else Action.SELL
        return PredictorResult(
            action=action,
            buy_prob=buy_prob,
            sell_prob=sell_prob,
            confidence=max(buy_prob, sell_prob) * 100,
            features=[float(f) for f in features],
        )

    # =========================================================================
    # Training
    # =========================================================================

    def add_sample(self, features: Sequence[float], action, was_win: bool) -> bool:
        """
        Record a resolved outcome.

        Returns:
            True if this sample triggered a retrain
        """
        parsed = parse_action(action)
        if parsed is None:
            logger.warning(f"Ignoring training sample with unknown action {action!r}")
            return False

        x = self._as_input(features)
        self.training_data.append(TrainingSample(
            features=[float(f) for f in x],
            label=label_for(parsed, was_win),
        ))
        self.sample_count += 1

        if self.sample_count % self.config.retrain_interval == 0 and self.is_ready:
            self.retrain()
            return True
        return False

    def retrain(self):
        """Replay the buffer for `epochs` passes of per-sample SGD."""
        if not self.training_data:
            return

        lr = self.config.learning_rate
        w = self.weights
        samples = [(np.array(s.features), np.array(s.label)) for s in self.training_data]

        for _ in range(self.config.epochs):
            for x, y in samples:
                out = self._forward(x)

                # Softmax + cross-entropy gradient at the logits
                d3 = out - y
                d2 = (w.w3 @ d3) * (self._h2 > 0)
                d1 = (w.w2 @ d2) * (self._h1 > 0)

                w.w3 -= lr * np.outer(self._h2, d3)
                w.b3 -= lr * d3
                w.w2 -= lr * np.outer(self._h1, d2)
                w.b2 -= lr * d2
                w.w1 -= lr * np.outer(x, d1)
                w.b1 -= lr * d1

        self.retrain_count += 1

        if not w.is_finite():
            logger.error("Predictor weights diverged, re-initialising")
            self.weights = NetworkWeights.initialize(self.rng, self.config.init_scale)
            return

        logger.info(
            f"Predictor retrained #{self.retrain_count} on {len(samples)} samples "
            f"({self.config.epochs} epochs)"
        )

    # =========================================================================
    # State
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        interval = self.config.retrain_interval
        return {
            "is_ready": self.is_ready,
            "training_samples": len(self.training_data),
            "sample_count": self.sample_count,
            "retrain_count": self.retrain_count,
            "next_retrain_in": interval - (self.sample_count % interval),
        }

    def reset(self):
        self.weights = NetworkWeights.initialize(self.rng, self.config.init_scale)
        self.training_data.clear()
        self.sample_count = 0
        self.retrain_count = 0
        logger.info("Predictor reset")

    def samples_to_dict(self) -> Dict[str, Any]:
        return {
            "samples": [s.to_dict() for s in self.training_data],
            "count": self.sample_count,
        }

    def load_samples(self, data: Optional[Dict[str, Any]], retrain: bool = True) -> int:
        """
        Restore the training buffer and counter.

        With retrain=True and enough samples, fresh weights are fitted to
        the restored buffer immediately.
        """
        if not data:
            return 0

        self.training_data.clear()
        for raw in data.get("samples", []):
            try:
                self.training_data.append(TrainingSample.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed training sample: {e}")

        self.sample_count = int(data.get("count", len(self.training_data)))
        logger.info(
            f"Loaded {len(self.training_data)} training samples "
            f"(lifetime count {self.sample_count})"
        )

        if retrain and self.is_ready:
            self.retrain()
        return len(self.training_data)

    def load_weights(self, data: Optional[Dict[str, Any]]) -> bool:
        if not data:
            return False
        try:
            weights = NetworkWeights.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load predictor weights: {e}")
            return False
        if not weights.is_finite():
            logger.warning("Ignoring non-finite persisted predictor weights")
            return False
        self.weights = weights
        return True


# Convenience function
def create_predictor(seed: Optional[int] = None, **kwargs) -> Predictor:
    """Create a predictor with an optionally seeded random source"""
    config = PredictorConfig(**kwargs)
    return Predictor(config=config, rng=np.random.default_rng(seed))
