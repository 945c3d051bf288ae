"""
Survival Agent - One learning agent, fully wired, plus a team runner.

An agent is an explicit context: its own learner, encoder, reward function,
checkpoint store, stats tracker, supervisor and connection manager. Nothing
is process-global, so several agents can run side by side on one event loop.
They share a value table only when AgentConfig.shared_table asks for it.

Usage:
    agent = SurvivalAgent(AgentConfig(agent_id='Learner1'), connector)
    await agent.run(duration=600)

    agents = await run_team(config, connector, ['Learner1', 'Learner2'])
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from survival_ai.config import AgentConfig
from survival_ai.connection import ConnectionManager
from survival_ai.environment import Connector, WorldResetter
from survival_ai.persistence import QTableStore
from survival_ai.q_learner import QLearner, QTable
from survival_ai.reward import SurvivalReward
from survival_ai.state_encoder import SurvivalStateEncoder
from survival_ai.stats import StatsTracker
from survival_ai.supervisor import EpisodeSupervisor
from survival_ai.timers import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class AgentContext:
    """Everything one agent owns."""
    config: AgentConfig
    learner: QLearner
    encoder: SurvivalStateEncoder
    reward: SurvivalReward
    store: QTableStore
    stats: StatsTracker
    supervisor: EpisodeSupervisor
    connection: ConnectionManager


class SurvivalAgent:
    """
    Builds an AgentContext and drives it.

    run() returns when the agent is shut down, its connection stops for
    good, or the duration runs out. A broken learning invariant closes the
    episode and is re-raised from run().
    """

    def __init__(self, config: AgentConfig, connector: Connector,
                 resetter: Optional[WorldResetter] = None,
                 table: Optional[QTable] = None,
                 scheduler: Optional[Scheduler] = None,
                 clock: Optional[Callable[[], float]] = None,
                 stats_dir: Optional[str] = None):
        config.validate()
        self.config = config
        agent_id = config.agent_id

        if table is None:
            table = QTable(shared=config.shared_table)
        learner = QLearner(config.learner, table)
        encoder = SurvivalStateEncoder(config.encoder)
        reward = SurvivalReward(config.reward)
        store = QTableStore(config.supervisor.checkpoint_dir)
        stats = StatsTracker(agent_id, stats_dir=stats_dir)

        supervisor = EpisodeSupervisor(
            agent_id, learner, encoder, reward, store,
            config=config.supervisor,
            stats=stats,
            resetter=resetter,
            clock=clock or time.monotonic,
        )
        connection = ConnectionManager(
            agent_id, connector, supervisor,
            config=config.connection,
            scheduler=scheduler,
            agent_index=config.agent_index,
            on_stopped=self._on_stopped,
        )
        supervisor.connection = connection
        supervisor.on_failure = self._on_failure

        self.context = AgentContext(
            config=config,
            learner=learner,
            encoder=encoder,
            reward=reward,
            store=store,
            stats=stats,
            supervisor=supervisor,
            connection=connection,
        )

        self.restored_episode: Optional[int] = None
        self._restored = False
        self._shut_down = False
        self._done: Optional[asyncio.Event] = None

    @property
    def agent_id(self) -> str:
        return self.config.agent_id

    @property
    def supervisor(self) -> EpisodeSupervisor:
        return self.context.supervisor

    @property
    def connection(self) -> ConnectionManager:
        return self.context.connection

    # ── Lifecycle ────────────────────────────────────────────────────

    def restore(self) -> Optional[int]:
        """Merge the newest readable checkpoint and stats into this agent."""
        ctx = self.context
        self._restored = True
        episode = ctx.store.restore_latest(self.agent_id, ctx.learner.table)
        if episode is not None:
            self.restored_episode = episode
            ctx.supervisor.episodes_started = episode
            logger.info(f"{self.agent_id} resumed from episode {episode} "
                        f"({len(ctx.learner.table)} states)")
        if ctx.stats.stats_dir:
            ctx.stats.load()
        return episode

    async def start(self):
        """Restore if not done yet and make the first connection attempt."""
        if self._done is None:
            self._done = asyncio.Event()
        if not self._restored:
            self.restore()
        await self.connection.connect()

    async def run(self, duration: Optional[float] = None):
        await self.start()
        try:
            await asyncio.wait_for(self._done.wait(), timeout=duration)
        except asyncio.TimeoutError:
            logger.info(f"{self.agent_id} ran for {duration}s, stopping")
        await self.shutdown()

        if self.supervisor.failure is not None:
            raise self.supervisor.failure

    async def shutdown(self):
        """Close the episode, save everything and disconnect. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        logger.info(f"{self.agent_id} shutting down")
        await self.supervisor.shutdown()
        self._signal_done()

    def _on_stopped(self, reason: str):
        self._signal_done()

    def _on_failure(self, err: BaseException):
        self._signal_done()

    def _signal_done(self):
        if self._done is not None:
            self._done.set()

    def status(self) -> Dict:
        status = self.supervisor.status()
        status['connection'] = self.connection.state.value
        status['stats'] = self.context.stats.get_stats()
        return status


async def run_team(config: AgentConfig, connector: Connector,
                   names: List[str],
                   resetter: Optional[WorldResetter] = None,
                   start_stagger: float = 2.0,
                   duration: Optional[float] = None,
                   stats_dir: Optional[str] = None) -> List[SurvivalAgent]:
    """
    Start one agent per name, agent i after i * start_stagger seconds.

    Runs until every agent has stopped or duration elapses, then saves all
    of them. The first learning failure is re-raised after the saves.
    """
    shared = QTable(shared=True) if config.shared_table else None
    agents = [
        SurvivalAgent(config.for_agent(name, index), connector,
                      resetter=resetter, table=shared, stats_dir=stats_dir)
        for index, name in enumerate(names)
    ]
    logger.info(f"Starting team of {len(agents)} agents "
                f"({'shared' if shared is not None else 'separate'} tables)")

    async def launch(index: int, agent: SurvivalAgent):
        await asyncio.sleep(index * start_stagger)
        await agent.run()

    tasks = [asyncio.create_task(launch(i, a)) for i, a in enumerate(agents)]
    done, pending = await asyncio.wait(tasks, timeout=duration,
                                       return_when=asyncio.FIRST_EXCEPTION)

    for task in pending:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    for agent in agents:
        await agent.shutdown()

    failures = [r for r in results
                if isinstance(r, BaseException) and not isinstance(r, asyncio.CancelledError)]
    for agent, result in zip(agents, results):
        if result in failures:
            logger.error(f"{agent.agent_id} failed: {result}")
    if failures:
        raise failures[0]
    return agents
