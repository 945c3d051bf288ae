"""
Episode Supervisor — The tick-driven control loop and episode state machine.

    IDLE --spawn--> ACTIVE --death / step cap / disconnect / kick / error--> CLOSING --> IDLE

While ACTIVE, a fixed-period tick runs one decision step:

    sense -> encode -> (reward + Q update for the previous pair)
          -> choose -> dispatch -> remember (state, action)

A dispatched action runs as its own task and may span several ticks. Ticks
that fire while it is still running only advance bookkeeping; an action
that outlives action_timeout is abandoned without a reward update.

Closing is the single place where episode ordering is enforced: cancel the
tick loop, emit the summary, checkpoint, and only then reconnect or ask for
a world reset.
"""

import asyncio
import dataclasses
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from survival_ai.config import ResetPolicy, SupervisorConfig
from survival_ai.connection import ConnectionManager, ConnectionState
from survival_ai.environment import (
    Action, ActionOutcome, Environment, EnvironmentListener, Snapshot,
    WorldResetter,
)
from survival_ai.errors import FatalConnectionError, LearningInvariantError
from survival_ai.persistence import QTableStore
from survival_ai.q_learner import QLearner
from survival_ai.reward import SurvivalReward
from survival_ai.state_encoder import SurvivalStateEncoder
from survival_ai.stats import EpisodeSummary, StatsTracker

logger = logging.getLogger(__name__)


class SupervisorState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    CLOSING = "closing"


class TerminalCause(Enum):
    DEATH = "death"
    STEP_CAP = "step_cap"
    DISCONNECT = "disconnect"
    KICK = "kick"
    ERROR = "error"
    SHUTDOWN = "shutdown"


@dataclass
class Episode:
    """One continuous attempt at survival."""
    index: int
    started_at: float
    ticks: int = 0
    steps: int = 0
    skipped_ticks: int = 0
    failed_actions: int = 0
    rewards: List[float] = field(default_factory=list)
    visited: Set[str] = field(default_factory=set)
    cause: Optional[TerminalCause] = None

    def summarize(self, agent_id: str, now: float) -> EpisodeSummary:
        total = float(sum(self.rewards))
        return EpisodeSummary(
            agent_id=agent_id,
            episode_index=self.index,
            survival_seconds=max(0.0, now - self.started_at),
            total_reward=total,
            average_reward=total / len(self.rewards) if self.rewards else 0.0,
            distinct_states_visited=len(self.visited),
            steps=self.steps,
            cause=self.cause.value if self.cause else '',
        )


class EpisodeSupervisor(EnvironmentListener):
    """
    Runs one agent's episodes against a connected environment.

    The supervisor is also the environment's event listener; every handler
    is idempotent, so duplicate or late events (a death reported after the
    tick already saw health 0) are ignored.
    """

    def __init__(self, agent_id: str,
                 learner: QLearner,
                 encoder: SurvivalStateEncoder,
                 reward_fn: SurvivalReward,
                 store: QTableStore,
                 config: SupervisorConfig = None,
                 stats: StatsTracker = None,
                 resetter: WorldResetter = None,
                 summary_sinks: List[Callable[[EpisodeSummary], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 autostart: bool = True):
        self.agent_id = agent_id
        self.learner = learner
        self.encoder = encoder
        self.reward_fn = reward_fn
        self.store = store
        self.config = config or SupervisorConfig()
        self.stats = stats
        self.resetter = resetter
        self.summary_sinks = list(summary_sinks or [])
        self.clock = clock
        self.autostart = autostart

        self.connection: Optional[ConnectionManager] = None
        self._environment: Optional[Environment] = None

        self.state = SupervisorState.IDLE
        self.episode: Optional[Episode] = None
        self.episodes_started = 0
        self.episodes_completed = 0
        self.summaries: List[EpisodeSummary] = []
        self.failure: Optional[BaseException] = None
        self.on_failure: Optional[Callable[[BaseException], None]] = None

        self._last_state: Optional[str] = None
        self._last_action: Optional[Action] = None
        self._last_snapshot: Optional[Snapshot] = None
        self._current_state: Optional[str] = None

        self._tick_task: Optional[asyncio.Task] = None
        self._dispatch: Optional[asyncio.Task] = None
        self._dispatch_started = 0.0

    # ── Wiring ───────────────────────────────────────────────────────

    @property
    def environment(self) -> Optional[Environment]:
        if self._environment is not None:
            return self._environment
        return self.connection.environment if self.connection else None

    def attach(self, environment: Optional[Environment]):
        """Use an environment directly instead of the connection's."""
        self._environment = environment

    @property
    def dispatch_in_flight(self) -> bool:
        return self._dispatch is not None and not self._dispatch.done()

    # ── Lifecycle events ─────────────────────────────────────────────

    async def on_spawn(self):
        if self.state != SupervisorState.IDLE:
            logger.debug(f"{self.agent_id} ignoring spawn while {self.state.value}")
            return
        if self.environment is None:
            logger.warning(f"{self.agent_id} spawned without an environment")
            return

        logger.info(f"{self.agent_id} has spawned! Starting episode "
                    f"{self.episodes_started + 1}")
        self._begin_episode()
        if self.autostart:
            self._tick_task = asyncio.get_running_loop().create_task(
                self._tick_loop())

    async def on_death(self):
        if self.state != SupervisorState.ACTIVE:
            return
        try:
            self._learn_from_death()
        except LearningInvariantError as e:
            await self._fail(e)
            return
        await self.close(TerminalCause.DEATH)

    async def on_disconnect(self, reason: str = ''):
        logger.info(f"{self.agent_id} disconnected. Reason: {reason or 'unknown'}")
        await self._connection_lost(TerminalCause.DISCONNECT)

    async def on_kick(self, reason: str = ''):
        logger.warning(f"{self.agent_id} was kicked. Reason: {reason or 'unknown'}")
        await self._connection_lost(TerminalCause.KICK)

    async def on_error(self, err: BaseException):
        logger.error(f"{self.agent_id} error: {err}")
        if isinstance(err, FatalConnectionError):
            await self.close(TerminalCause.ERROR, follow_up=False)
            if self.connection is not None:
                self.connection.stop(f"fatal connection error: {err}")
            return
        await self._connection_lost(TerminalCause.ERROR)

    async def _connection_lost(self, cause: TerminalCause):
        connection = self.connection
        was_live = (connection is not None
                    and connection.state == ConnectionState.ACTIVE)
        if connection is not None:
            connection.mark_disconnected()

        if self.state == SupervisorState.ACTIVE:
            await self.close(cause)
        elif was_live:
            # Lost before spawning: nothing to close, just get back in
            await connection.reconnect()

    # ── Episode boundaries ───────────────────────────────────────────

    def _begin_episode(self):
        self.episodes_started += 1
        self.episode = Episode(index=self.episodes_started, started_at=self.clock())
        self._clear_last()
        self._dispatch = None
        self.state = SupervisorState.ACTIVE

    def _clear_last(self):
        self._last_state = None
        self._last_action = None
        self._last_snapshot = None

    async def close(self, cause: TerminalCause, follow_up: bool = True):
        """
        Close the active episode exactly once.

        Order: stop ticking, emit summary, checkpoint, then follow up
        (reconnect or world reset).
        """
        if self.state != SupervisorState.ACTIVE:
            return
        self.state = SupervisorState.CLOSING
        episode = self.episode
        episode.cause = cause

        self._cancel_tick()
        self._drop_dispatch()

        summary = episode.summarize(self.agent_id, self.clock())
        self.summaries.append(summary)
        self._emit(summary)

        self.episodes_completed += 1
        every = self.config.checkpoint_every
        if every > 0 and episode.index % every == 0:
            self.store.write_checkpoint(self.learner.table, self.agent_id, episode.index)

        self.episode = None
        self._clear_last()
        self.state = SupervisorState.IDLE

        if follow_up:
            await self._follow_up(cause)

    def _emit(self, summary: EpisodeSummary):
        if self.stats is not None:
            self.stats.record(summary)
        for sink in self.summary_sinks:
            try:
                sink(summary)
            except Exception as e:
                logger.error(f"{self.agent_id} summary sink failed: {e}", exc_info=True)

    async def _follow_up(self, cause: TerminalCause):
        connection = self.connection
        if cause in (TerminalCause.DEATH, TerminalCause.STEP_CAP):
            if (self.config.reset_policy == ResetPolicy.WORLD_RESET
                    and self.resetter is not None):
                try:
                    await self.resetter.request_reset(self.agent_id)
                    return
                except Exception as e:
                    logger.error(f"{self.agent_id} error resetting world: {e}; "
                                 f"falling back to reconnection")
            if connection is not None:
                await connection.reconnect(intentional=True)
        elif cause in (TerminalCause.DISCONNECT, TerminalCause.KICK, TerminalCause.ERROR):
            if connection is not None:
                await connection.reconnect()

    # ── Tick loop ────────────────────────────────────────────────────

    async def _tick_loop(self):
        interval = self.config.tick_interval
        try:
            while self.state == SupervisorState.ACTIVE:
                started = self.clock()
                await self.tick()
                if self.state != SupervisorState.ACTIVE:
                    break
                await asyncio.sleep(max(0.0, interval - (self.clock() - started)))
        except LearningInvariantError as e:
            await self._fail(e)
        except Exception as e:
            logger.error(f"{self.agent_id} tick loop error: {e}", exc_info=True)
            await self.close(TerminalCause.ERROR)

    async def _fail(self, err: LearningInvariantError):
        """Close without a follow-up and hand the failure to the owner."""
        logger.error(f"{self.agent_id} learning invariant violated: {err}",
                     exc_info=True)
        self.failure = err
        await self.close(TerminalCause.ERROR, follow_up=False)
        if self.on_failure is not None:
            self.on_failure(err)

    def _cancel_tick(self):
        task, self._tick_task = self._tick_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def tick(self):
        """One tick of the decision loop."""
        if self.state != SupervisorState.ACTIVE:
            return
        episode = self.episode
        episode.ticks += 1

        if self._dispatch is not None:
            if not self._dispatch.done():
                if self.clock() - self._dispatch_started < self.config.action_timeout:
                    episode.skipped_ticks += 1
                    return
                self._dispatch.cancel()
                logger.debug(f"{self.agent_id} action {self._last_action} timed out")
                self._abandon_step()
            else:
                self._collect_dispatch(self._dispatch)
            self._dispatch = None

        await self._decide()

    def _collect_dispatch(self, task: asyncio.Task):
        if task.cancelled():
            self._abandon_step()
            return
        err = task.exception()
        if err is not None:
            logger.debug(f"{self.agent_id} action error: {err}")
            self._abandon_step()
            return
        outcome = task.result()
        if isinstance(outcome, ActionOutcome) and not outcome.success:
            logger.debug(f"{self.agent_id} action {outcome.action.key} rejected: "
                         f"{outcome.detail}")
            self._abandon_step()

    def _drop_dispatch(self):
        task, self._dispatch = self._dispatch, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            task.exception()  # mark retrieved; the step dies with the episode

    def _abandon_step(self):
        self.episode.failed_actions += 1
        self._clear_last()

    async def _decide(self):
        episode = self.episode
        environment = self.environment
        if environment is None:
            await self.close(TerminalCause.DISCONNECT)
            return

        try:
            snapshot = environment.sense()
        except Exception as e:
            logger.warning(f"{self.agent_id} could not sense environment: {e}")
            await self.close(TerminalCause.ERROR)
            return

        state_key = self.encoder.encode(snapshot)
        self._current_state = state_key
        episode.visited.add(state_key)
        if self.stats is not None:
            self.stats.track_state(state_key)

        if self._last_state is not None:
            reward = self.reward_fn(self._last_snapshot, self._last_action, snapshot)
            self._learn(reward, state_key)

        if snapshot.is_dead:
            logger.info(f"{self.agent_id} died after {episode.steps} steps")
            await self.close(TerminalCause.DEATH)
            return
        if episode.steps >= self.config.max_episode_steps:
            logger.info(f"{self.agent_id} episode {episode.index} reached the "
                        f"step cap ({self.config.max_episode_steps})")
            await self.close(TerminalCause.STEP_CAP)
            return

        action = self.learner.choose_action(state_key)
        episode.steps += 1
        self._dispatch = asyncio.get_running_loop().create_task(
            environment.act(action))
        self._dispatch_started = self.clock()

        self._last_state = state_key
        self._last_action = action
        self._last_snapshot = snapshot

    def _learn(self, reward: float, next_state: str):
        if not isinstance(reward, (int, float)) or not math.isfinite(reward):
            raise LearningInvariantError(
                f"reward function produced {reward!r} for {self._last_state} / "
                f"{self._last_action}")
        self.learner.update(self._last_state, self._last_action, next_state, reward)
        self.episode.rewards.append(float(reward))

    def _learn_from_death(self):
        """Teach the death penalty when the event beat the tick to it."""
        if self._last_state is None:
            return
        snapshot = None
        environment = self.environment
        if environment is not None:
            try:
                snapshot = environment.sense()
            except Exception as e:
                logger.debug(f"{self.agent_id} no snapshot at death: {e}")
        terminal = dataclasses.replace(snapshot or self._last_snapshot, health=0.0)
        reward = self.reward_fn(self._last_snapshot, self._last_action, terminal)
        self._learn(reward, self.encoder.encode(terminal))

    # ── Shutdown / status ────────────────────────────────────────────

    async def shutdown(self):
        """Graceful stop: close the episode, save, drop the connection."""
        await self.close(TerminalCause.SHUTDOWN, follow_up=False)
        self.store.write_checkpoint(self.learner.table, self.agent_id,
                                    self.episodes_started)
        if self.stats is not None and self.stats.stats_dir:
            self.stats.save()
        if self.connection is not None:
            await self.connection.shutdown()

    def status(self) -> Dict:
        episode = self.episode
        status = {
            'agent_id': self.agent_id,
            'state': self.state.value,
            'episode': episode.index if episode else None,
            'steps': episode.steps if episode else 0,
            'episodes_completed': self.episodes_completed,
            'learning': self.learner.get_stats(),
        }
        if self._current_state is not None:
            status['current_state'] = self.encoder.describe(self._current_state)
        return status
