"""
Tests for the SignalEngine.

Generation pipeline (warm-up, gate, strategy chain), resolution feeding
every learner, and state persistence through storage.
"""

import pandas as pd
import pytest

from scout.config import EngineConfig, FusionConfig, PolicyConfig, PredictorConfig
from scout.data import build_snapshot, prepare_candles
from scout.engine import SignalEngine, create_engine
from scout.engine.core import (
    KEY_INDICATOR_PERFORMANCE,
    KEY_Q_TABLE,
    KEY_REGIME_HISTORY,
    KEY_REWARD_EVENTS,
    KEY_SIGNAL_HISTORY,
    KEY_TRAINING_SAMPLES,
)
from scout.learning import Action, MarketRegime, PredictorResult
from scout.storage import MemoryStorage, Storage, StorageError

NOW = 1_700_000_000_000


def make_uptrend(bars=60, step=0.001) -> pd.DataFrame:
    """Helper: steady uptrend, RSI 100 and a pure directional ADX"""
    rows = []
    for i in range(bars):
        close = 1.0 + step * i
        open_ = close - step
        rows.append({
            "timestamp": NOW - (bars - i) * 60_000,
            "open": open_,
            "high": close + 0.0005,
            "low": open_ - 0.0005,
            "close": close,
        })
    return pd.DataFrame(rows)


def make_engine(storage=None, **overrides) -> SignalEngine:
    """Greedy, seeded engine for deterministic tests"""
    overrides.setdefault("policy", PolicyConfig(epsilon=0.0))
    return SignalEngine(EngineConfig(**overrides), storage=storage, seed=1)


class FailingStorage(Storage):
    def load(self, key, default=None):
        raise StorageError("disk unavailable")

    def save(self, key, value):
        raise StorageError("disk unavailable")


class TestGeneration:
    """generate_signal pipeline"""

    def test_fallback_signal_on_cold_start(self):
        """Untrained engine: RSI 100 -> threshold SELL 50 + TRENDING 15"""
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)

        assert signal is not None
        assert signal.action == Action.SELL
        assert signal.confidence == 65
        assert signal.duration == 5
        assert signal.regime == MarketRegime.TRENDING
        assert signal.strategy == "indicator_fallback"
        assert signal.is_fallback
        assert signal.timestamp == NOW
        assert signal.entry_price == pytest.approx(1.059)
        assert len(signal.features) == 5
        assert signal.signal_id in engine.pending
        assert engine.signals_generated == 1

    def test_predictor_path(self, monkeypatch):
        """Predictor BUY 70 + Q edge 10 + TRENDING 15 = 95"""
        engine = make_engine()
        engine.policy.q_table[MarketRegime.TRENDING][Action.BUY] = 0.8
        engine.policy.q_table[MarketRegime.TRENDING][Action.SELL] = 0.5
        monkeypatch.setattr(
            engine.predictor, "predict",
            lambda features: PredictorResult(Action.BUY, 0.7, 0.3, 70.0, list(features)),
        )

        signal = engine.generate_signal(make_uptrend(), now=NOW)

        assert signal.action == Action.BUY
        assert signal.confidence == 95
        assert signal.duration == 5
        assert signal.strategy == "predictor"

    def test_trained_predictor_buys_uptrend(self):
        """A network fitted to winning BUYs on these bars leads the chain"""
        engine = make_engine(
            predictor=PredictorConfig(learning_rate=0.01, epochs=50, retrain_interval=20)
        )
        candles = make_uptrend()
        features = build_snapshot(prepare_candles(candles), engine.config.indicators).features()
        for _ in range(20):
            engine.predictor.add_sample(features, Action.BUY, True)
        assert engine.predictor.retrain_count == 1

        signal = engine.generate_signal(candles, now=NOW)

        assert signal.strategy == "predictor"
        assert signal.action == Action.BUY
        assert signal.confidence >= 60
        assert signal.duration == 5
        assert signal.regime == MarketRegime.TRENDING

    def test_learned_indicator_weights_reach_fusion(self, monkeypatch):
        engine = make_engine()
        engine.indicator_learner.weights["rsi"] = 2.0
        seen = {}
        fuse = engine.fusion.fuse

        def spy(*args, **kwargs):
            seen.update(kwargs["indicator_weights"])
            return fuse(*args, **kwargs)

        monkeypatch.setattr(engine.fusion, "fuse", spy)
        signal = engine.generate_signal(make_uptrend(), now=NOW)

        # TRENDING damps oscillators by 0.8
        assert seen == pytest.approx({"rsi": 1.6, "williams_r": 0.8, "cci": 0.8})
        assert signal.indicator_signals == {"rsi": "SELL", "williams_r": "SELL", "cci": "SELL"}

    def test_warmup(self):
        engine = make_engine()
        assert engine.generate_signal(make_uptrend(30), now=NOW) is None
        assert engine.signals_generated == 0
        assert len(engine.classifier.history) == 0

    def test_bad_candles(self):
        engine = make_engine()
        assert engine.generate_signal([{"price": 1.0}] * 60, now=NOW) is None

    def test_accepts_candle_dicts(self):
        engine = make_engine()
        records = make_uptrend().to_dict("records")
        assert engine.generate_signal(records, now=NOW) is not None

    def test_gate_suppresses(self):
        engine = make_engine(fusion=FusionConfig(min_confidence=70))
        assert engine.generate_signal(make_uptrend(), now=NOW) is None
        assert engine.signals_suppressed == 1
        assert len(engine.pending) == 0

    def test_ticks_and_patterns(self):
        from scout.engine import PatternDirection, PatternVote

        engine = make_engine()
        ticks = [{"timestamp": NOW - 3000 + i * 1000, "price": 1.059} for i in range(4)]
        signal = engine.generate_signal(
            make_uptrend(), ticks=ticks,
            patterns=[PatternVote("rising_wedge", PatternDirection.BEARISH, 0.5)],
            now=NOW,
        )
        # SELL 65 + 0.5 * 10
        assert signal.confidence == 70
        assert "Pattern: rising_wedge (50%)" in signal.reasons

    def test_pending_is_bounded(self):
        engine = make_engine(signal_history_size=3)
        for i in range(5):
            engine.generate_signal(make_uptrend(), now=NOW + i)
        assert len(engine.pending) == 3
        assert len(engine.signal_history) == 3


class TestResolution:
    """resolve_signal closes the learning loop"""

    def test_win_feeds_learners(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)

        resolved = engine.resolve_signal(signal.signal_id, 1.050)

        assert resolved is signal
        assert signal.result.value == "WIN"
        assert engine.wins == 1
        assert engine.losses == 0
        assert len(engine.predictor.training_data) == 1
        assert engine.predictor.training_data[0].label == [0.0, 1.0]
        assert engine.policy.update_count == 1
        assert engine.policy.q_table[MarketRegime.TRENDING][Action.SELL] == pytest.approx(0.595)
        assert signal.signal_id not in engine.pending

    def test_loss(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        engine.resolve_signal(signal, signal.entry_price)
        assert engine.losses == 1
        assert engine.policy.q_table[MarketRegime.TRENDING][Action.SELL] == pytest.approx(0.395)

    def test_resolve_twice(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        assert engine.resolve_signal(signal.signal_id, 1.0) is not None
        assert engine.resolve_signal(signal.signal_id, 1.0) is None
        assert engine.policy.update_count == 1

    @pytest.mark.parametrize("price", [None, float("nan"), float("inf"), 0.0, -1.0])
    def test_invalid_exit_price_leaves_signal_pending(self, price):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)

        assert engine.resolve_signal(signal.signal_id, price) is None

        assert signal.signal_id in engine.pending
        assert signal.result is None
        assert engine.wins + engine.losses == 0
        assert engine.policy.update_count == 0
        assert len(engine.predictor.training_data) == 0
        assert engine.indicator_learner.resolved_count == 0

        assert engine.resolve_signal(signal.signal_id, 1.050) is signal
        assert signal.result.value == "WIN"

    def test_resolve_expired_skips_missing_price(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        assert engine.resolve_expired(float("nan"), now=NOW + 600_000) == []
        assert signal.signal_id in engine.pending

    def test_outcome_scores_indicator_votes(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        engine.resolve_signal(signal, 1.050)

        learner = engine.indicator_learner
        assert learner.resolved_count == 1
        assert learner.performance["rsi"].wins == 1
        assert learner.performance["cci"].wins == 1
        assert learner.confidence_buckets[60].wins == 1
        stats = engine.get_stats()["indicators"]
        assert stats["indicators"]["williams_r"]["wins"] == 1
        assert stats["confidence_ranges"]["60-69"]["wins"] == 1

    def test_unknown_signal(self):
        assert make_engine().resolve_signal("deadbeef", 1.0) is None

    def test_resolve_expired(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        assert signal.duration == 5

        assert engine.resolve_expired(1.0, now=NOW + 299_999) == []
        resolved = engine.resolve_expired(1.0, now=NOW + 300_000)
        assert [s.signal_id for s in resolved] == [signal.signal_id]
        assert engine.resolved_signals() == [signal]

    def test_stats(self):
        engine = make_engine()
        assert engine.get_stats()["win_rate"] is None
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        engine.resolve_signal(signal, 1.0)
        stats = engine.get_stats()
        assert stats["win_rate"] == pytest.approx(100.0)
        assert stats["regime"]["current_state"] == "TRENDING"
        assert stats["policy"]["update_count"] == 1

    def test_reset(self):
        engine = make_engine()
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        engine.resolve_signal(signal, 1.0)
        engine.reset()
        assert engine.wins == 0
        assert engine.policy.update_count == 0
        assert len(engine.signal_history) == 0
        assert engine.classifier.current_state == MarketRegime.RANGING
        assert engine.storage.load(KEY_SIGNAL_HISTORY) == []


class TestPersistence:
    """State survives restarts"""

    def test_saved_after_resolve(self):
        storage = MemoryStorage()
        engine = make_engine(storage=storage)
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        engine.resolve_signal(signal, 1.0)

        q_table = storage.load(KEY_Q_TABLE)
        assert q_table["update_count"] == 1
        assert q_table["values"]["TRENDING"]["SELL"] == pytest.approx(0.595)
        assert storage.load(KEY_SIGNAL_HISTORY)[0]["result"] == "WIN"
        assert storage.load(KEY_INDICATOR_PERFORMANCE)["performance"]["rsi"] == {"wins": 1, "losses": 0}

    def test_sqlite_restart(self, tmp_path):
        config = EngineConfig(db_path=str(tmp_path / "scout.db"), policy=PolicyConfig(epsilon=0.0))
        first = create_engine(config, seed=1)
        signal = first.generate_signal(make_uptrend(), now=NOW)
        first.resolve_signal(signal, 1.0)

        second = create_engine(config, seed=2)
        assert second.policy.update_count == 1
        assert second.policy.q_table[MarketRegime.TRENDING][Action.SELL] == pytest.approx(0.595)
        assert second.classifier.current_state == MarketRegime.TRENDING
        assert second.indicator_learner.performance["rsi"].wins == 1
        assert len(second.predictor.training_data) == 1
        assert [s.signal_id for s in second.resolved_signals()] == [signal.signal_id]

    def test_fresh_engine_loads_nothing(self):
        assert make_engine().load_state() is False

    def test_storage_failures_absorbed(self):
        engine = make_engine(storage=FailingStorage())
        assert engine.load_state() is False
        signal = engine.generate_signal(make_uptrend(), now=NOW)
        assert engine.resolve_signal(signal, 1.0) is signal
        assert engine.save_state() is False
        assert engine.policy.update_count == 1

    @pytest.mark.parametrize("key,value", [
        (KEY_Q_TABLE, {"values": {"TRENDING": [0.1, 0.2]}}),
        (KEY_Q_TABLE, ["TRENDING"]),
        (KEY_REGIME_HISTORY, ["TRENDING", "RANGING"]),
        (KEY_REWARD_EVENTS, "TRENDING"),
        (KEY_TRAINING_SAMPLES, [[0.5, 0.5]]),
        (KEY_SIGNAL_HISTORY, 42),
        (KEY_INDICATOR_PERFORMANCE, ["rsi"]),
    ])
    def test_malformed_state_keeps_defaults(self, key, value):
        storage = MemoryStorage()
        storage.save(key, value)

        engine = create_engine(EngineConfig(policy=PolicyConfig(epsilon=0.0)), storage=storage, seed=1)

        assert engine.policy.update_count == 0
        assert all(q == 0.5 for row in engine.policy.q_table.values() for q in row.values())
        assert engine.classifier.current_state == MarketRegime.RANGING
        assert len(engine.predictor.training_data) == 0
        assert len(engine.signal_history) == 0
        assert engine.generate_signal(make_uptrend(), now=NOW) is not None

    def test_non_finite_stored_q_values_ignored(self):
        storage = MemoryStorage()
        storage.save(KEY_Q_TABLE, {"values": {"TRENDING": {"BUY": float("nan"), "SELL": 0.8}}})

        engine = create_engine(storage=storage, seed=1)

        assert engine.policy.q_table[MarketRegime.TRENDING][Action.BUY] == 0.5
        assert engine.policy.q_table[MarketRegime.TRENDING][Action.SELL] == 0.8

    def test_malformed_key_does_not_block_others(self):
        source = make_engine()
        signal = source.generate_signal(make_uptrend(), now=NOW)
        source.resolve_signal(signal, 1.050)

        storage = MemoryStorage()
        storage.save(KEY_Q_TABLE, source.policy.q_table_to_dict())
        storage.save(KEY_REGIME_HISTORY, {"state": "TRENDING"})

        engine = create_engine(storage=storage, seed=1)
        assert engine.policy.update_count == 1
        assert engine.classifier.current_state == MarketRegime.RANGING

    def test_persisted_weights(self, tmp_path):
        from scout.config import PredictorConfig

        config = EngineConfig(
            db_path=str(tmp_path / "scout.db"),
            predictor=PredictorConfig(persist_weights=True),
        )
        first = create_engine(config, seed=1)
        first.save_state()

        second = create_engine(config, seed=99)
        features = [0.5, 0.5, 0.5, 0.5, 0.5]
        assert second.predictor.probabilities(features) == pytest.approx(
            first.predictor.probabilities(features)
        )
