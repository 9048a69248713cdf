"""
Tabular Q-Learning Policy

The policy keeps one Q-value per (regime, action) pair and learns from
binary outcomes:

    Q(s, a) <- Q(s, a) + alpha * (reward + gamma * max_a' Q(s', a') - Q(s, a))

with reward = +1 for a winning signal and -1 for a losing one.

The table is small on purpose (4 regimes x 2 actions): it answers
"in this kind of market, has buying or selling been paying off?" and feeds
that back into the fused signal as an action vote and a confidence nudge.
"""

import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Union

from ..config import PolicyConfig
from .actions import Action, ACTIONS, parse_action
from .regime import MarketRegime, REGIMES, parse_regime

logger = logging.getLogger(__name__)


@dataclass
class RewardEvent:
    """One applied Q update"""
    timestamp: int
    regime: MarketRegime
    action: Action
    reward: float
    old_q: float
    new_q: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "regime": self.regime.value,
            "action": self.action.value,
            "reward": self.reward,
            "old_q": self.old_q,
            "new_q": self.new_q,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RewardEvent":
        regime = parse_regime(data["regime"])
        action = parse_action(data["action"])
        if regime is None or action is None:
            raise ValueError(f"unknown regime/action in {data}")
        return cls(
            timestamp=int(data["timestamp"]),
            regime=regime,
            action=action,
            reward=float(data["reward"]),
            old_q=float(data["old_q"]),
            new_q=float(data["new_q"]),
        )


class QLearningPolicy:
    """
    Epsilon-greedy Q-learning agent over regimes x {BUY, SELL}.

    Randomness comes from an injectable random.Random so tests can pin it.
    """

    # Confidence adjustment bands on Q(a) - Q(other)
    STRONG_EDGE = 0.2
    EDGE = 0.1
    STRONG_EDGE_BONUS = 10
    EDGE_BONUS = 5
    NEGATIVE_EDGE_PENALTY = -5

    def __init__(
        self,
        config: Optional[PolicyConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or PolicyConfig()
        self.rng = rng or random.Random()
        self.q_table: Dict[MarketRegime, Dict[Action, float]] = self._initial_table()
        self.reward_history: deque = deque(maxlen=self.config.history_size)
        self.update_count = 0

        logger.info("Q-learning policy initialized")

    def _initial_table(self) -> Dict[MarketRegime, Dict[Action, float]]:
        return {
            regime: {action: self.config.initial_q for action in ACTIONS}
            for regime in REGIMES
        }

    @property
    def is_ready(self) -> bool:
        return self.update_count >= self.config.min_updates

    def _random_action(self) -> Action:
        return self.rng.choice(ACTIONS)

    # =========================================================================
    # Acting
    # =========================================================================

    def select_action(
        self,
        regime: Union[MarketRegime, str],
        predictor_action: Optional[Action] = None,
    ) -> Action:
        """
        Epsilon-greedy action choice.

        1. Explore with probability epsilon
        2. Unknown regime: defer to the predictor, else random
        3. Near-tie in Q: defer to the predictor when it has a view
        4. Otherwise the greedy action
        """
        if self.rng.random() < self.config.epsilon:
            action = self._random_action()
            logger.debug(f"Exploring: {action.value}")
            return action

        parsed = parse_regime(regime)
        if parsed is None or parsed not in self.q_table:
            logger.debug(f"No Q-values for regime {regime!r}")
            return predictor_action or self._random_action()

        q = self.q_table[parsed]
        if predictor_action is not None and \
                abs(q[Action.BUY] - q[Action.SELL]) < self.config.tie_margin:
            return predictor_action

        return Action.BUY if q[Action.BUY] > q[Action.SELL] else Action.SELL

    def confidence_adjustment(self, regime: Union[MarketRegime, str], action: Action) -> int:
        """Confidence points implied by the learned edge of `action` in `regime`."""
        parsed = parse_regime(regime)
        if parsed is None or parsed not in self.q_table:
            return 0

        q = self.q_table[parsed]
        edge = q[action] - q[action.opposite]
        if edge > self.STRONG_EDGE:
            return self.STRONG_EDGE_BONUS
        if edge > self.EDGE:
            return self.EDGE_BONUS
        if edge < -self.EDGE:
            return self.NEGATIVE_EDGE_PENALTY
        return 0

    # =========================================================================
    # Learning
    # =========================================================================

    def update(
        self,
        regime: Union[MarketRegime, str],
        action: Union[Action, str],
        reward: float,
        next_regime: Union[MarketRegime, str],
    ) -> Optional[RewardEvent]:
        """
        Apply one Q-learning update.

        Returns:
            The recorded RewardEvent, or None if a regime/action is unknown
        """
        state = parse_regime(regime)
        next_state = parse_regime(next_regime)
        parsed_action = parse_action(action)
        if state not in self.q_table or next_state not in self.q_table or parsed_action is None:
            logger.warning(
                f"Skipping Q update for unknown key: regime={regime!r} "
                f"action={action!r} next={next_regime!r}"
            )
            return None

        old_q = self.q_table[state][parsed_action]
        max_next = max(self.q_table[next_state].values())
        new_q = old_q + self.config.alpha * (reward + self.config.gamma * max_next - old_q)
        self.q_table[state][parsed_action] = new_q
        self.update_count += 1

        event = RewardEvent(
            timestamp=int(time.time() * 1000),
            regime=state,
            action=parsed_action,
            reward=float(reward),
            old_q=old_q,
            new_q=new_q,
        )
        self.reward_history.append(event)

        logger.debug(
            f"Q[{state.value}][{parsed_action.value}] {old_q:.3f} -> {new_q:.3f} "
            f"(reward {reward:+.0f})"
        )
        return event

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def regime_win_rate(self, regime: Union[MarketRegime, str]) -> Optional[float]:
        """Percent of rewarded updates in a regime, None without data."""
        parsed = parse_regime(regime)
        events = [e for e in self.reward_history if e.regime == parsed]
        if not events:
            return None
        return sum(1 for e in events if e.reward > 0) / len(events) * 100

    def action_win_rate(
        self,
        regime: Union[MarketRegime, str],
        action: Union[Action, str],
    ) -> Optional[float]:
        parsed = parse_regime(regime)
        parsed_action = parse_action(action)
        events = [e for e in self.reward_history
                  if e.regime == parsed and e.action == parsed_action]
        if not events:
            return None
        return sum(1 for e in events if e.reward > 0) / len(events) * 100

    def performance_stats(self) -> Dict[str, Any]:
        events = list(self.reward_history)
        if not events:
            return {"total_rewards": 0.0, "avg_reward": 0.0, "win_rate": 0.0, "sample_size": 0}

        total = sum(e.reward for e in events)
        wins = sum(1 for e in events if e.reward > 0)
        return {
            "total_rewards": total,
            "avg_reward": total / len(events),
            "win_rate": wins / len(events) * 100,
            "sample_size": len(events),
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "is_ready": self.is_ready,
            "update_count": self.update_count,
            "q_table": self.q_table_to_dict()["values"],
            "performance": self.performance_stats(),
            "regime_win_rates": {r.value: self.regime_win_rate(r) for r in REGIMES},
        }

    def reset(self):
        self.q_table = self._initial_table()
        self.reward_history.clear()
        self.update_count = 0
        logger.info("Q-learning policy reset")

    # =========================================================================
    # Persistence
    # =========================================================================

    def q_table_to_dict(self) -> Dict[str, Any]:
        return {
            "values": {
                regime.value: {action.value: q for action, q in actions.items()}
                for regime, actions in self.q_table.items()
            },
            "update_count": self.update_count,
        }

    def load_q_table(self, data: Optional[Dict[str, Any]]) -> bool:
        """
        Restore persisted Q-values; regimes missing from the data keep their defaults.

        Entries that are not finite numbers are skipped. A table whose
        shape is unreadable is ignored entirely.
        """
        if not data:
            return False
        if not isinstance(data, dict) or not isinstance(data.get("values", {}), dict):
            logger.warning("Ignoring persisted Q-table: not a regime -> action mapping")
            return False

        table = self._initial_table()
        for name, actions in data.get("values", {}).items():
            regime = parse_regime(name)
            if regime is None:
                logger.warning(f"Ignoring Q-values for unknown regime {name!r}")
                continue
            if not isinstance(actions, dict):
                logger.warning(f"Ignoring Q-values for {regime.value}: expected a mapping")
                continue
            for action_name, q in actions.items():
                action = parse_action(action_name)
                if action is None:
                    continue
                try:
                    value = float(q)
                except (TypeError, ValueError):
                    value = math.nan
                if not math.isfinite(value):
                    logger.warning(f"Ignoring Q[{regime.value}][{action.value}] = {q!r}")
                    continue
                table[regime][action] = value

        try:
            update_count = int(data.get("update_count", 0))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable update count {data.get('update_count')!r}")
            update_count = 0

        self.q_table = table
        self.update_count = max(0, update_count)
        logger.info(f"Loaded Q-table ({self.update_count} lifetime updates)")
        return True

    def rewards_to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.reward_history]

    def load_rewards(self, entries: Optional[List[Dict[str, Any]]]) -> int:
        if not entries:
            return 0
        self.reward_history.clear()
        for raw in entries:
            try:
                self.reward_history.append(RewardEvent.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed reward event: {e}")
        return len(self.reward_history)


# Convenience function
def create_policy(seed: Optional[int] = None, **kwargs) -> QLearningPolicy:
    """Create a policy with an optionally seeded random source"""
    config = PolicyConfig(**kwargs)
    return QLearningPolicy(config=config, rng=random.Random(seed))
