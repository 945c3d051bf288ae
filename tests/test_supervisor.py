"""
Tests for the episode supervisor.

Tests cover:
- Episode start and idempotent lifecycle events
- One decision per tick, no overlapping action dispatch
- Action timeouts, rejections and errors (step abandoned, no update)
- Death, step cap, kick, disconnect and error closes
- Close ordering: summary, then checkpoint, then reconnect / world reset
- Learning invariant failures
"""

import sys
import os
import asyncio
import math
import shutil
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from survival_ai.config import (
    ConnectionConfig, LearnerConfig, ResetPolicy, SupervisorConfig,
)
from survival_ai.connection import ConnectionManager, ConnectionState
from survival_ai.errors import FatalConnectionError, LearningInvariantError
from survival_ai.persistence import QTableStore
from survival_ai.q_learner import QLearner
from survival_ai.reward import SurvivalReward
from survival_ai.state_encoder import SurvivalStateEncoder
from survival_ai.supervisor import (
    EpisodeSupervisor, SupervisorState, TerminalCause,
)

from fakes import (
    FakeClock, ManualScheduler, RecordingResetter, ScriptedConnector,
    ScriptedEnvironment, snap,
)

ALIVE = snap(health=20, food=10)
HURT = snap(health=12, food=10)
DEAD = snap(health=0, food=10)


class RecordingStore(QTableStore):
    def __init__(self, store_path, events):
        super().__init__(store_path)
        self.events = events

    def write_checkpoint(self, table, agent_id, episode):
        self.events.append('checkpoint')
        return super().write_checkpoint(table, agent_id, episode)


class NanReward(SurvivalReward):
    def __call__(self, prev, action, next_snapshot):
        return math.nan


async def settle():
    for _ in range(3):
        await asyncio.sleep(0)


class TestEpisodeSupervisor:
    def setup_method(self):
        self.tmpdir = tempfile.mkdtemp()
        self.events = []

    def teardown_method(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def make(self, snapshots=None, reward_fn=None, resetter=None,
             autostart=False, env_kwargs=None, **config):
        config.setdefault('checkpoint_every', 1)
        self.clock = FakeClock()
        self.scheduler = ManualScheduler()
        self.encoder = SurvivalStateEncoder()
        self.learner = QLearner(LearnerConfig(seed=1))

        supervisor = EpisodeSupervisor(
            'Tester', self.learner, self.encoder,
            reward_fn or SurvivalReward(),
            RecordingStore(self.tmpdir, self.events),
            config=SupervisorConfig(checkpoint_dir=self.tmpdir, **config),
            resetter=resetter,
            summary_sinks=[lambda summary: self.events.append('summary')],
            clock=self.clock,
            autostart=autostart,
        )
        self.connector = ScriptedConnector(
            lambda: ScriptedEnvironment(list(snapshots or [ALIVE]), **(env_kwargs or {})),
            events=self.events)
        supervisor.connection = ConnectionManager(
            'Tester', self.connector, supervisor,
            config=ConnectionConfig(base_delay=5.0, stagger=2.0, reset_delay=2.0),
            scheduler=self.scheduler)
        return supervisor

    async def start(self, supervisor):
        environment = await supervisor.connection.connect()
        await supervisor.on_spawn()
        return environment

    # ── Starting ─────────────────────────────────────────────────────

    def test_spawn_starts_episode(self):
        sup = self.make()

        async def main():
            await self.start(sup)
            await sup.on_spawn()

        asyncio.run(main())
        assert sup.state == SupervisorState.ACTIVE
        assert sup.episode.index == 1
        assert sup.episodes_started == 1

    def test_tick_while_idle_does_nothing(self):
        sup = self.make()

        async def main():
            environment = await sup.connection.connect()
            await sup.tick()
            return environment

        environment = asyncio.run(main())
        assert environment.sensed == 0
        assert environment.actions == []

    # ── Decision steps ───────────────────────────────────────────────

    def test_first_tick_dispatches_without_update(self):
        sup = self.make()

        async def main():
            environment = await self.start(sup)
            await sup.tick()
            await settle()
            return environment

        environment = asyncio.run(main())
        assert len(environment.actions) == 1
        assert sup.episode.steps == 1
        assert self.learner.updates == 0

    def test_second_tick_updates_previous_pair(self):
        sup = self.make(snapshots=[ALIVE, HURT])

        async def main():
            environment = await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()
            return environment

        environment = asyncio.run(main())
        state = self.encoder.encode(ALIVE)
        assert self.learner.updates == 1
        assert self.learner.table.get(state, environment.actions[0]) < 0
        assert len(sup.episode.rewards) == 1
        assert sup.episode.steps == 2

    def test_no_overlapping_dispatch(self):
        sup = self.make(env_kwargs={'block': True})

        async def main():
            environment = await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()
            await sup.tick()
            assert len(environment.actions) == 1
            assert sup.dispatch_in_flight

            environment.release()
            await settle()
            await sup.tick()
            await settle()
            return environment

        environment = asyncio.run(main())
        assert environment.max_in_flight == 1
        assert len(environment.actions) == 2
        assert sup.episode.skipped_ticks == 2
        assert self.learner.updates == 1

    def test_timed_out_action_is_abandoned(self):
        sup = self.make(env_kwargs={'block': True}, action_timeout=1.0)

        async def main():
            environment = await self.start(sup)
            await sup.tick()
            await settle()
            self.clock.advance(2.0)
            await sup.tick()
            await settle()
            return environment

        environment = asyncio.run(main())
        assert sup.episode.failed_actions == 1
        assert self.learner.updates == 0
        assert len(environment.actions) == 2

    def test_rejected_action_gets_no_update(self):
        sup = self.make(env_kwargs={'reject': True})

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()

        asyncio.run(main())
        assert sup.episode.failed_actions == 1
        assert self.learner.updates == 0
        assert sup.state == SupervisorState.ACTIVE

    def test_action_error_gets_no_update(self):
        sup = self.make(env_kwargs={'fail_actions': True})

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()

        asyncio.run(main())
        assert sup.episode.failed_actions == 1
        assert self.learner.updates == 0

    # ── Closing ──────────────────────────────────────────────────────

    def test_death_seen_by_tick(self):
        sup = self.make(snapshots=[ALIVE, DEAD])

        async def main():
            environment = await self.start(sup)
            await sup.tick()
            await settle()
            self.clock.advance(3.0)
            await sup.tick()
            return environment

        environment = asyncio.run(main())
        state = self.encoder.encode(ALIVE)
        assert self.learner.table.get(state, environment.actions[0]) == pytest.approx(-10.0)
        assert sup.state == SupervisorState.IDLE
        assert len(sup.summaries) == 1
        summary = sup.summaries[0]
        assert summary.cause == 'death'
        assert summary.survival_seconds == pytest.approx(3.0)
        assert summary.total_reward == pytest.approx(-100.0)
        assert summary.distinct_states_visited == 2
        assert environment.closed

    def test_one_summary_then_checkpoint_then_reconnect(self):
        sup = self.make(snapshots=[ALIVE, DEAD])

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()
            assert self.events == ['connect', 'summary', 'checkpoint']
            assert self.scheduler.pending == 1
            assert self.scheduler.last_delay == 2.0

            await sup.on_death()
            await self.scheduler.run_next()

        asyncio.run(main())
        assert self.events == ['connect', 'summary', 'checkpoint', 'connect']
        assert len(sup.summaries) == 1
        assert os.path.exists(os.path.join(self.tmpdir, 'qtable_Tester_1.json'))

    def test_death_event_before_tick_still_learns_penalty(self):
        sup = self.make(snapshots=[ALIVE])

        async def main():
            environment = await self.start(sup)
            await sup.tick()
            await settle()
            await sup.on_death()
            await sup.on_death()
            return environment

        environment = asyncio.run(main())
        state = self.encoder.encode(ALIVE)
        assert self.learner.table.get(state, environment.actions[0]) == pytest.approx(-10.0)
        assert len(sup.summaries) == 1
        assert sup.summaries[0].cause == 'death'

    def test_step_cap_closes_episode(self):
        sup = self.make(max_episode_steps=2)

        async def main():
            await self.start(sup)
            for _ in range(3):
                await sup.tick()
                await settle()

        asyncio.run(main())
        assert self.learner.updates == 2
        assert sup.summaries[0].cause == 'step_cap'
        assert sup.summaries[0].steps == 2
        assert self.scheduler.last_delay == 2.0

    def test_world_reset_instead_of_reconnect(self):
        resetter = RecordingResetter()
        sup = self.make(snapshots=[ALIVE, DEAD], resetter=resetter,
                        reset_policy=ResetPolicy.WORLD_RESET)

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()

        asyncio.run(main())
        assert resetter.calls == ['Tester']
        assert self.scheduler.pending == 0
        assert sup.connection.state == ConnectionState.ACTIVE

    def test_failed_world_reset_falls_back_to_reconnect(self):
        resetter = RecordingResetter(error=RuntimeError("server busy"))
        sup = self.make(snapshots=[ALIVE, DEAD], resetter=resetter,
                        reset_policy=ResetPolicy.WORLD_RESET)

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            await sup.tick()

        asyncio.run(main())
        assert resetter.calls == ['Tester']
        assert self.scheduler.pending == 1

    def test_kick_closes_and_backs_off(self):
        sup = self.make()

        async def main():
            await self.start(sup)
            await sup.tick()
            await sup.on_kick('flying is not enabled')
            await sup.on_kick('again')

        asyncio.run(main())
        assert [s.cause for s in sup.summaries] == ['kick']
        assert self.scheduler.last_delay == 5.0
        assert sup.connection.environment is None

    def test_disconnect_before_spawn_reconnects(self):
        sup = self.make()

        async def main():
            await sup.connection.connect()
            await sup.on_disconnect('socket closed')

        asyncio.run(main())
        assert sup.summaries == []
        assert self.scheduler.pending == 1

    def test_fatal_error_stops_agent(self):
        sup = self.make()

        async def main():
            await self.start(sup)
            await sup.on_error(FatalConnectionError("unsupported protocol"))

        asyncio.run(main())
        assert sup.summaries[0].cause == 'error'
        assert sup.connection.stopped
        assert self.scheduler.pending == 0

    def test_other_errors_reconnect(self):
        sup = self.make()

        async def main():
            await self.start(sup)
            await sup.on_error(RuntimeError("chunk parse failed"))

        asyncio.run(main())
        assert sup.summaries[0].cause == 'error'
        assert self.scheduler.pending == 1

    def test_sense_failure_closes_episode(self):
        sup = self.make(env_kwargs={'sense_error': RuntimeError("entity missing")})

        async def main():
            await self.start(sup)
            await sup.tick()

        asyncio.run(main())
        assert sup.summaries[0].cause == 'error'
        assert self.scheduler.pending == 1

    # ── Failures ─────────────────────────────────────────────────────

    def test_non_finite_reward_raises_from_tick(self):
        sup = self.make(reward_fn=NanReward())

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            with pytest.raises(LearningInvariantError):
                await sup.tick()

        asyncio.run(main())
        assert len(self.learner.table) == 0

    def test_tick_loop_failure_closes_and_reports(self):
        reported = []
        sup = self.make(reward_fn=NanReward(), autostart=True, tick_interval=0.001)
        sup.on_failure = reported.append

        async def main():
            await self.start(sup)
            for _ in range(200):
                if sup.failure is not None:
                    break
                await asyncio.sleep(0.005)

        asyncio.run(main())
        assert isinstance(sup.failure, LearningInvariantError)
        assert reported == [sup.failure]
        assert sup.summaries[0].cause == 'error'
        assert sup.state == SupervisorState.IDLE
        assert self.scheduler.pending == 0

    def test_death_event_learning_failure_closes_and_reports(self):
        reported = []
        sup = self.make(reward_fn=NanReward())
        sup.on_failure = reported.append

        async def main():
            await self.start(sup)
            await sup.tick()
            await settle()
            await sup.on_death()

        asyncio.run(main())
        assert isinstance(sup.failure, LearningInvariantError)
        assert reported == [sup.failure]
        assert len(sup.summaries) == 1
        assert sup.summaries[0].cause == 'error'
        assert sup.state == SupervisorState.IDLE
        assert self.events == ['connect', 'summary', 'checkpoint']
        assert self.scheduler.pending == 0
        assert len(self.learner.table) == 0

    # ── Tick loop ────────────────────────────────────────────────────

    def test_tick_loop_runs_until_death(self):
        sup = self.make(snapshots=[ALIVE] * 5 + [DEAD], autostart=True,
                        tick_interval=0.001)

        async def main():
            await self.start(sup)
            for _ in range(200):
                if sup.summaries:
                    break
                await asyncio.sleep(0.005)

        asyncio.run(main())
        assert sup.summaries[0].cause == 'death'
        assert sup.summaries[0].steps == 5
        assert self.learner.updates == 5

    # ── Shutdown / status ────────────────────────────────────────────

    def test_shutdown_saves_and_stops(self):
        sup = self.make()

        async def main():
            await self.start(sup)
            await sup.tick()
            await sup.shutdown()

        asyncio.run(main())
        assert sup.summaries[0].cause == TerminalCause.SHUTDOWN.value
        assert sup.connection.stopped
        assert self.scheduler.pending == 0
        assert os.path.exists(os.path.join(self.tmpdir, 'qtable_Tester_1.json'))

    def test_status(self):
        sup = self.make()

        async def main():
            await self.start(sup)
            await sup.tick()
            return sup.status()

        status = asyncio.run(main())
        assert status['state'] == 'active'
        assert status['episode'] == 1
        assert status['steps'] == 1
        assert status['current_state']['health_bucket'] == 5
        assert status['learning']['epsilon'] == 1.0
