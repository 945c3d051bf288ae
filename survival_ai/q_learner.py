"""
Q Learner — Tabular Q-learning with epsilon-greedy action selection.

QTable holds one row of action values per state key. Rows are created on
first write, so the key count only ever grows, and a missing (state, action)
pair reads as 0.0.

The learner is agent-lifetime state: episodes come and go, the table and
epsilon carry over.
"""

import contextlib
import math
import threading
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from survival_ai.config import LearnerConfig
from survival_ai.environment import Action, ACTIONS, NUM_ACTIONS
from survival_ai.errors import LearningInvariantError


class QTable:
    """
    Mapping (StateKey, Action) -> float, insertion ordered.

    A table created with shared=True carries a lock that every mutation
    holds; an unshared table uses a no-op context so single-agent updates
    pay nothing.
    """

    def __init__(self, shared: bool = False):
        self._rows: Dict[str, Dict[Action, float]] = {}
        self.shared = shared
        self._lock = threading.RLock() if shared else None

    def lock(self):
        return self._lock if self._lock is not None else contextlib.nullcontext()

    def get(self, state: str, action: Action) -> float:
        row = self._rows.get(state)
        if row is None:
            return 0.0
        return row.get(action, 0.0)

    def set(self, state: str, action: Action, value: float):
        with self.lock():
            self._rows.setdefault(state, {})[Action(action)] = float(value)

    def values(self, state: str) -> np.ndarray:
        """Action values for a state in enumeration order."""
        row = self._rows.get(state)
        if row is None:
            return np.zeros(NUM_ACTIONS)
        return np.array([row.get(a, 0.0) for a in ACTIONS])

    def max_value(self, state: str) -> float:
        return float(self.values(state).max())

    def row(self, state: str) -> Dict[Action, float]:
        return dict(self._rows.get(state, {}))

    def items(self) -> Iterator[Tuple[str, Dict[Action, float]]]:
        for state, row in list(self._rows.items()):
            yield state, dict(row)

    def merge(self, other: 'QTable'):
        """Copy every entry of other into this table, overwriting clashes."""
        with self.lock():
            for state, row in other.items():
                self._rows.setdefault(state, {}).update(row)

    def __contains__(self, state: str) -> bool:
        return state in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __eq__(self, other) -> bool:
        if not isinstance(other, QTable):
            return NotImplemented
        return self._rows == other._rows

    def num_entries(self) -> int:
        return sum(len(row) for row in self._rows.values())


class QLearner:
    """
    Owns the value table, chooses actions and applies the Bellman update.

    Q(s,a) <- Q(s,a) + alpha * (r + gamma * max_a' Q(s',a') - Q(s,a))
    """

    def __init__(self, config: LearnerConfig = None,
                 table: Optional[QTable] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config or LearnerConfig()
        self.config.validate()

        self.table = table if table is not None else QTable()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

        self.learning_rate = self.config.learning_rate
        self.discount_factor = self.config.discount_factor
        self.epsilon = self.config.epsilon
        self.min_epsilon = self.config.min_epsilon
        self.epsilon_decay = self.config.epsilon_decay

        self.actions: List[Action] = list(ACTIONS)
        self.updates = 0
        self.explorations = 0

    @staticmethod
    def _check_state(state: str):
        if not isinstance(state, str) or not state:
            raise LearningInvariantError(f"malformed state key: {state!r}")

    def best_action(self, state: str) -> Action:
        """Greedy action; np.argmax keeps the first of tied maxima."""
        return self.actions[int(np.argmax(self.table.values(state)))]

    def choose_action(self, state: str) -> Action:
        self._check_state(state)
        if self.rng.random() < self.epsilon:
            self.explorations += 1
            return self.actions[int(self.rng.integers(len(self.actions)))]
        return self.best_action(state)

    def update(self, state: str, action: Action, next_state: str,
               reward: float) -> float:
        """Apply one Q-learning update and decay epsilon. Returns new Q(s,a)."""
        self._check_state(state)
        self._check_state(next_state)
        if not math.isfinite(reward):
            raise LearningInvariantError(f"non-finite reward {reward}")

        with self.table.lock():
            old_q = self.table.get(state, action)
            next_max = self.table.max_value(next_state)
            new_q = old_q + self.learning_rate * (
                reward + self.discount_factor * next_max - old_q)
            self.table.set(state, action, new_q)

        self.epsilon = max(self.min_epsilon, self.epsilon * self.epsilon_decay)
        self.updates += 1
        return new_q

    def get_stats(self) -> Dict:
        return {
            'states': len(self.table),
            'entries': self.table.num_entries(),
            'epsilon': self.epsilon,
            'updates': self.updates,
            'explorations': self.explorations,
        }
