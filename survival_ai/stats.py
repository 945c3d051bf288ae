"""
Stats Tracker — Per-agent survival history and episode summaries.

Collects one EpisodeSummary per closed episode, counts state visits over
the agent's lifetime and derives learning-progress numbers for the external
stats/graph server, which reads stats_<agent>.json.
"""

import json
import logging
import os
from collections import Counter
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class EpisodeSummary:
    """Emitted exactly once when an episode closes."""
    agent_id: str
    episode_index: int
    survival_seconds: float
    total_reward: float
    average_reward: float
    distinct_states_visited: int
    steps: int = 0
    cause: str = ''

    def to_dict(self) -> Dict:
        return asdict(self)


class StatsTracker:
    """
    Survival statistics for one agent.

    Usage:
        tracker = StatsTracker('Learner1', stats_dir='stats')
        supervisor = EpisodeSupervisor(..., summary_sinks=[tracker.record])
    """

    PROGRESS_WINDOW = 5

    def __init__(self, agent_id: str, stats_dir: Optional[str] = None,
                 history_limit: int = 1000):
        self.agent_id = agent_id
        self.stats_dir = stats_dir
        self.history_limit = history_limit

        self.summaries: List[EpisodeSummary] = []
        self.survival_times: List[float] = []
        self.state_visits: Counter = Counter()

    def track_state(self, state_key: str):
        self.state_visits[state_key] += 1

    def record(self, summary: EpisodeSummary):
        self.summaries.append(summary)
        self.survival_times.append(summary.survival_seconds)
        if len(self.summaries) > self.history_limit:
            self.summaries = self.summaries[-self.history_limit:]
            self.survival_times = self.survival_times[-self.history_limit:]

        self._log_summary(summary)
        if self.stats_dir:
            self.save()

    def _log_summary(self, summary: EpisodeSummary):
        progress = self.learning_progress()
        progress_text = f"{progress:.1f}%" if progress is not None else "n/a"
        logger.info(
            f"{self.agent_id} episode {summary.episode_index} ({summary.cause}) | "
            f"Survival: {summary.survival_seconds:.1f}s | "
            f"Steps: {summary.steps} | "
            f"Avg Reward: {summary.average_reward:.3f} | "
            f"Total Reward: {summary.total_reward:.3f} | "
            f"States: {summary.distinct_states_visited} | "
            f"Progress: {progress_text}"
        )

    def learning_progress(self) -> Optional[float]:
        """Percent change of mean survival, last 5 vs previous 5 episodes."""
        w = self.PROGRESS_WINDOW
        if len(self.survival_times) < 2 * w:
            return None
        recent = np.mean(self.survival_times[-w:])
        previous = np.mean(self.survival_times[-2 * w:-w])
        if previous <= 0:
            return None
        return float((recent / previous - 1.0) * 100.0)

    def trend_slope(self) -> float:
        """Least-squares slope of survival time per episode."""
        if len(self.survival_times) < 2:
            return 0.0
        x = np.arange(len(self.survival_times))
        slope, _ = np.polyfit(x, np.asarray(self.survival_times, dtype=float), 1)
        return float(slope)

    def get_stats(self) -> Dict:
        times = self.survival_times
        rewards = [s.average_reward for s in self.summaries]
        return {
            'agent_id': self.agent_id,
            'total_lives': len(times),
            'average_survival': float(np.mean(times)) if times else 0.0,
            'max_survival': float(np.max(times)) if times else 0.0,
            'min_survival': float(np.min(times)) if times else 0.0,
            'last_survival': times[-1] if times else 0.0,
            'states_explored': len(self.state_visits),
            'average_reward': float(np.mean(rewards)) if rewards else 0.0,
            'learning_progress': self.learning_progress(),
            'trend_slope': self.trend_slope(),
            'causes': dict(Counter(s.cause for s in self.summaries)),
        }

    def stats_path(self) -> str:
        return os.path.join(self.stats_dir or '.', f"stats_{self.agent_id}.json")

    def save(self) -> bool:
        """Write stats JSON. Best effort."""
        path = self.stats_path()
        data = self.get_stats()
        data['survival_history'] = self.survival_times
        data['episodes'] = [s.to_dict() for s in self.summaries]
        data['state_visits'] = dict(self.state_visits)
        try:
            os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
            with open(path, 'w') as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"{self.agent_id} error saving stats to {path}: {e}")
            return False
        return True

    def load(self) -> bool:
        """Restore history and state visits from a previous run's stats file."""
        path = self.stats_path()
        if not os.path.exists(path):
            return False
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            summaries = [EpisodeSummary(**e) for e in data.get('episodes', [])]
            visits = Counter({str(k): int(v)
                              for k, v in data.get('state_visits', {}).items()})
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"{self.agent_id} ignoring unreadable stats {path}: {e}")
            return False
        self.summaries = summaries
        self.state_visits = visits
        self.survival_times = [s.survival_seconds for s in self.summaries]
        return True
