"""
Tests for the stats tracker and agent configuration.
"""

import sys
import os
import json
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from survival_ai.config import (
    AgentConfig, ConnectionConfig, EncoderConfig, LearnerConfig, ResetPolicy,
    SupervisorConfig,
)
from survival_ai.stats import EpisodeSummary, StatsTracker


def summary(index: int, seconds: float, reward: float = 0.1, cause: str = 'death') -> EpisodeSummary:
    return EpisodeSummary(
        agent_id='Learner1', episode_index=index, survival_seconds=seconds,
        total_reward=reward * 10, average_reward=reward,
        distinct_states_visited=3, steps=10, cause=cause)


class TestStatsTracker:
    def test_progress_needs_ten_episodes(self):
        tracker = StatsTracker('Learner1')
        for i in range(9):
            tracker.record(summary(i + 1, 5.0))
        assert tracker.learning_progress() is None

    def test_progress_compares_last_two_windows(self):
        tracker = StatsTracker('Learner1')
        for i in range(10):
            tracker.record(summary(i + 1, float(i + 1)))
        assert tracker.learning_progress() == pytest.approx((8.0 / 3.0 - 1.0) * 100.0)

    def test_trend_slope(self):
        tracker = StatsTracker('Learner1')
        assert tracker.trend_slope() == 0.0
        for i in range(6):
            tracker.record(summary(i + 1, 2.0 * i + 1.0))
        assert tracker.trend_slope() == pytest.approx(2.0)

    def test_get_stats(self):
        tracker = StatsTracker('Learner1')
        tracker.track_state('a')
        tracker.track_state('a')
        tracker.track_state('b')
        tracker.record(summary(1, 4.0))
        tracker.record(summary(2, 8.0, cause='kick'))
        stats = tracker.get_stats()
        assert stats['total_lives'] == 2
        assert stats['average_survival'] == 6.0
        assert stats['max_survival'] == 8.0
        assert stats['last_survival'] == 8.0
        assert stats['states_explored'] == 2
        assert stats['causes'] == {'death': 1, 'kick': 1}

    def test_empty_stats(self):
        stats = StatsTracker('Learner1').get_stats()
        assert stats['total_lives'] == 0
        assert stats['average_survival'] == 0.0
        assert stats['learning_progress'] is None

    def test_history_limit(self):
        tracker = StatsTracker('Learner1', history_limit=3)
        for i in range(5):
            tracker.record(summary(i + 1, float(i)))
        assert tracker.survival_times == [2.0, 3.0, 4.0]
        assert [s.episode_index for s in tracker.summaries] == [3, 4, 5]

    def test_record_writes_stats_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            tracker = StatsTracker('Learner1', stats_dir=tmpdir)
            tracker.record(summary(1, 4.0))
            path = os.path.join(tmpdir, 'stats_Learner1.json')
            with open(path) as f:
                data = json.load(f)
            assert data['survival_history'] == [4.0]
            assert data['episodes'][0]['episode_index'] == 1

    def test_load_restores_history(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            first = StatsTracker('Learner1', stats_dir=tmpdir)
            first.record(summary(1, 4.0))
            first.record(summary(2, 6.0))

            second = StatsTracker('Learner1', stats_dir=tmpdir)
            assert second.load()
            assert second.survival_times == [4.0, 6.0]
            assert second.summaries[1].episode_index == 2

    def test_load_restores_state_visits(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            first = StatsTracker('Learner1', stats_dir=tmpdir)
            first.track_state('high|full|day')
            first.track_state('high|full|day')
            first.track_state('low|empty|night')
            first.record(summary(1, 4.0))

            second = StatsTracker('Learner1', stats_dir=tmpdir)
            assert second.load()
            assert second.state_visits == {'high|full|day': 2, 'low|empty|night': 1}
            assert second.get_stats()['states_explored'] == 2
            assert second.get_stats()['total_lives'] == 1

    def test_load_ignores_garbage(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with open(os.path.join(tmpdir, 'stats_Learner1.json'), 'w') as f:
                f.write('{"episodes": [{"nope": 1}]}')
            tracker = StatsTracker('Learner1', stats_dir=tmpdir)
            assert tracker.load() is False
            assert tracker.summaries == []

    def test_load_without_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            assert StatsTracker('Nobody', stats_dir=tmpdir).load() is False


class TestAgentConfig:
    def test_defaults(self):
        config = AgentConfig()
        config.validate()
        assert config.learner.learning_rate == 0.1
        assert config.learner.discount_factor == 0.9
        assert config.learner.epsilon_decay == 0.9999
        assert config.learner.min_epsilon == 0.01
        assert config.encoder.entity_slots == 5
        assert config.reward.death_penalty == -100.0
        assert config.connection.max_attempts == 5
        assert config.supervisor.reset_policy == ResetPolicy.RECONNECT

    def test_dict_round_trip(self):
        config = AgentConfig(
            agent_id='Scout', agent_index=2, shared_table=True,
            encoder=EncoderConfig(entity_slots=3, distance_edges=(1.0, 5.0)),
            supervisor=SupervisorConfig(reset_policy=ResetPolicy.WORLD_RESET),
        )
        restored = AgentConfig.from_dict(json.loads(json.dumps(config.to_dict())))
        assert restored == config

    def test_save_load(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'agent.json')
            config = AgentConfig(connection=ConnectionConfig(max_attempts=9))
            config.save(path)
            assert AgentConfig.load(path) == config

    def test_for_agent_copies(self):
        base = AgentConfig(learner=LearnerConfig(learning_rate=0.2))
        other = base.for_agent('Learner2', 1)
        assert other.agent_id == 'Learner2'
        assert other.agent_index == 1
        assert other.learner.learning_rate == 0.2
        other.learner.learning_rate = 0.5
        assert base.learner.learning_rate == 0.2

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('SURVIVAL_AGENT_ID', 'EnvBot')
        monkeypatch.setenv('SURVIVAL_LEARNING_RATE', '0.25')
        monkeypatch.setenv('SURVIVAL_MAX_ATTEMPTS', '7')
        monkeypatch.setenv('SURVIVAL_RESET_POLICY', 'world_reset')
        monkeypatch.setenv('SURVIVAL_SEED', '11')
        config = AgentConfig.from_env()
        assert config.agent_id == 'EnvBot'
        assert config.learner.learning_rate == 0.25
        assert config.learner.seed == 11
        assert config.connection.max_attempts == 7
        assert config.supervisor.reset_policy == ResetPolicy.WORLD_RESET

    def test_validate_rejects_nonsense(self):
        with pytest.raises(ValueError):
            AgentConfig(connection=ConnectionConfig(max_attempts=0)).validate()
        with pytest.raises(ValueError):
            AgentConfig(supervisor=SupervisorConfig(max_episode_steps=0)).validate()
        with pytest.raises(ValueError):
            AgentConfig(learner=LearnerConfig(epsilon_decay=1.0)).validate()

    def test_validate_rejects_flat_backoff(self):
        with pytest.raises(ValueError):
            AgentConfig(connection=ConnectionConfig(base_delay=0.0, stagger=0.0)).validate()
        with pytest.raises(ValueError):
            AgentConfig(connection=ConnectionConfig(base_delay=-1.0)).validate()
        with pytest.raises(ValueError):
            AgentConfig(connection=ConnectionConfig(stagger=-0.5)).validate()
        with pytest.raises(ValueError):
            AgentConfig(connection=ConnectionConfig(reset_delay=-2.0)).validate()
        AgentConfig(connection=ConnectionConfig(base_delay=0.01, stagger=0.0,
                                                reset_delay=0.0)).validate()
