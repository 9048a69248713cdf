"""
Integration tests for the full learning loop.

Replays a seeded random walk through SignalEngine bar by bar, resolving
each signal when its duration elapses, and checks the invariants that must
hold however the models happen to learn:
- every emitted signal is well-formed and bounded
- every resolution reaches the predictor, the Q-table and the counters
- learned state stays numerically sane and survives a restart
"""

import math

import numpy as np
import pandas as pd
import pytest

from scout.backtest import BacktestResult, ValidationEngine
from scout.config import EngineConfig
from scout.engine import SignalEngine, create_engine
from scout.learning import Action, MarketRegime
from scout.storage import MemoryStorage

START = 1_700_000_000_000


def make_random_walk(bars=400, seed=11, volatility=0.0006) -> pd.DataFrame:
    """Helper to create seeded M1 candles with regime-like volatility shifts"""
    rng = np.random.default_rng(seed)
    scale = np.where((np.arange(bars) // 100) % 2 == 0, volatility, volatility * 4)
    returns = rng.normal(0, 1, bars) * scale
    closes = 1.1 * np.cumprod(1 + returns)

    rows = []
    prev = 1.1
    for i, close in enumerate(closes):
        wick = abs(close * scale[i])
        rows.append({
            "timestamp": START + i * 60_000,
            "open": prev,
            "high": max(prev, close) + wick * rng.uniform(0, 1),
            "low": min(prev, close) - wick * rng.uniform(0, 1),
            "close": close,
        })
        prev = close
    return pd.DataFrame(rows)


def replay(engine: SignalEngine, data: pd.DataFrame, every: int = 3) -> list:
    """Feed bars through the engine; returns every emitted signal"""
    emitted = []
    for i in range(len(data)):
        now = int(data["timestamp"].iloc[i])
        engine.resolve_expired(float(data["close"].iloc[i]), now=now)
        if i % every:
            continue
        signal = engine.generate_signal(data.iloc[max(0, i - 199):i + 1], now=now)
        if signal is not None:
            emitted.append(signal)
    return emitted


@pytest.fixture(scope="module")
def replayed():
    storage = MemoryStorage()
    engine = SignalEngine(EngineConfig(), storage=storage, seed=5)
    emitted = replay(engine, make_random_walk())
    return engine, emitted, storage


class TestLearningLoop:
    """End-to-end invariants"""

    def test_signals_emitted_after_warmup(self, replayed):
        engine, emitted, _ = replayed
        assert len(emitted) > 50
        assert emitted[0].timestamp >= START + 49 * 60_000

    def test_signals_well_formed(self, replayed):
        _, emitted, _ = replayed
        for signal in emitted:
            assert signal.action in (Action.BUY, Action.SELL)
            assert isinstance(signal.confidence, int)
            assert 30 <= signal.confidence <= 95
            assert signal.duration in (2, 3, 5)
            assert isinstance(signal.regime, MarketRegime)
            assert 1 <= len(signal.reasons) <= 10
            assert len(signal.features) == 5
            assert all(0.0 <= f <= 1.0 for f in signal.features)

    def test_every_resolution_reaches_learners(self, replayed):
        engine, emitted, _ = replayed
        resolved = [s for s in emitted if s.is_resolved]

        assert len(resolved) + len(engine.pending) == len(emitted)
        assert engine.wins + engine.losses == len(resolved)
        assert engine.wins == sum(1 for s in resolved if s.result.value == "WIN")
        assert engine.predictor.sample_count == len(resolved)
        assert engine.policy.update_count == len(resolved)
        assert engine.predictor.retrain_count == len(resolved) // 50
        assert engine.indicator_learner.resolved_count == len(resolved)
        assert engine.indicator_learner.adjustment_count <= len(resolved) // 30

    def test_learned_state_is_sane(self, replayed):
        engine, _, _ = replayed

        matrix = engine.classifier.transition_matrix
        assert np.allclose(matrix.sum(axis=1), 1.0, atol=1e-6)
        assert np.all(matrix >= 0)

        for actions in engine.policy.q_table.values():
            for q in actions.values():
                assert math.isfinite(q)
                assert -10.0 <= q <= 10.0

        assert engine.predictor.weights.is_finite()

        for weight in engine.indicator_learner.weights.values():
            assert 0.5 <= weight <= 5.0

    def test_predictor_takes_over(self, replayed):
        """Once the buffer holds min_samples, the network leads the chain"""
        engine, emitted, _ = replayed
        resolved_before = 0
        saw_predictor = False
        for signal in emitted:
            if signal.strategy == "predictor":
                saw_predictor = True
                break
            resolved_before += 1
        assert saw_predictor
        assert resolved_before >= engine.config.predictor.min_samples

    def test_validation_over_replay(self, replayed):
        engine, _, _ = replayed
        signals = engine.resolved_signals()
        validator = ValidationEngine(engine.config.validation, rng=np.random.default_rng(0))

        result = validator.backtest(signals)
        assert isinstance(result, BacktestResult)
        assert result.total_trades == len(signals)
        assert result.end_balance == pytest.approx(
            1000 + result.wins * 8.5 - result.losses * 10.0
        )

        mc = validator.monte_carlo(signals, iterations=20)
        assert mc.win_rate.mean == pytest.approx(result.win_rate)
        assert mc.roi.mean == pytest.approx(result.roi)

    def test_restart_restores_state(self, replayed):
        engine, _, storage = replayed
        # Classifications after the last resolve are not saved yet
        assert engine.save_state()
        restored = create_engine(engine.config, storage=storage, seed=6)

        assert restored.policy.update_count == engine.policy.update_count
        assert restored.policy.q_table == engine.policy.q_table
        assert np.allclose(restored.classifier.transition_matrix, engine.classifier.transition_matrix)
        assert restored.classifier.current_state == engine.classifier.current_state
        assert len(restored.predictor.training_data) == len(engine.predictor.training_data)
        assert restored.predictor.is_ready == engine.predictor.is_ready
        assert restored.indicator_learner.to_dict() == engine.indicator_learner.to_dict()
