"""
Connection Manager - Bounded reconnection to the game environment.

One manager per agent. Only one connect attempt may be in flight; each
failure schedules a retry after a delay that grows linearly with the
attempt number, offset by the agent's team index so a team of agents does
not reconnect in lockstep. Running out of attempts, or a fatal error such
as a protocol mismatch, stops the agent until someone calls resume().
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from survival_ai.config import ConnectionConfig
from survival_ai.environment import Connector, Environment, EnvironmentListener
from survival_ai.errors import FatalConnectionError, TransientConnectionError
from survival_ai.timers import ScheduledCall, Scheduler

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (TransientConnectionError, ConnectionError,
                    TimeoutError, asyncio.TimeoutError, OSError)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STOPPED = "stopped"      # Fatal; needs external intervention


class ConnectionManager:
    """
    Establishes and re-establishes one agent's environment session.

    connector(agent_id, listener) is awaited for every attempt and must
    return a live Environment or raise. Transient failures are retried,
    FatalConnectionError is not.
    """

    def __init__(self, agent_id: str, connector: Connector,
                 listener: EnvironmentListener,
                 config: ConnectionConfig = None,
                 scheduler: Scheduler = None,
                 agent_index: int = 0,
                 on_stopped: Callable[[str], None] = None):
        self.agent_id = agent_id
        self.connector = connector
        self.listener = listener
        self.config = config or ConnectionConfig()
        self.config.validate()
        self.scheduler = scheduler or Scheduler()
        self.agent_index = agent_index
        self.on_stopped = on_stopped

        self.state = ConnectionState.DISCONNECTED
        self.environment: Optional[Environment] = None
        self.attempts = 0
        self.stop_reason: Optional[str] = None
        self.retry_delays: List[float] = []

        self._connecting = False
        self._retry: Optional[ScheduledCall] = None

    # ── Backoff ──────────────────────────────────────────────────────

    def retry_delay(self, attempt: int) -> float:
        """Delay before attempt number `attempt` (1-based)."""
        return (self.config.base_delay * max(attempt, 1)
                + self.config.stagger * self.agent_index)

    @property
    def is_connecting(self) -> bool:
        return self._connecting

    @property
    def retry_pending(self) -> bool:
        return self._retry is not None and not self._retry.cancelled

    @property
    def stopped(self) -> bool:
        return self.state == ConnectionState.STOPPED

    # ── Connecting ───────────────────────────────────────────────────

    async def connect(self) -> Optional[Environment]:
        """
        Make one connection attempt now.

        Returns the Environment on success, None when the attempt was
        skipped or failed (a retry is scheduled unless the agent stopped).
        """
        if self.stopped:
            logger.warning(f"{self.agent_id} is stopped ({self.stop_reason}); "
                           f"not connecting")
            return None
        if self._connecting:
            logger.debug(f"{self.agent_id} connect already in progress")
            return None

        self._cancel_retry()

        if self.attempts >= self.config.max_attempts:
            self.stop("exceeded max reconnection attempts")
            return None

        self._connecting = True
        self.attempts += 1
        self.state = ConnectionState.CONNECTING
        try:
            await self._drop_environment()
            logger.info(f"{self.agent_id} attempting connection "
                        f"(attempt {self.attempts}/{self.config.max_attempts})...")
            try:
                environment = await self.connector(self.agent_id, self.listener)
            except FatalConnectionError as e:
                self.stop(f"fatal connection error: {e}")
                return None
            except TRANSIENT_ERRORS as e:
                self.state = ConnectionState.DISCONNECTED
                logger.warning(f"{self.agent_id} connection attempt "
                               f"{self.attempts} failed: {e}")
                self._schedule_retry(self.retry_delay(self.attempts + 1))
                return None
        finally:
            self._connecting = False
            if self.state == ConnectionState.CONNECTING:
                self.state = ConnectionState.DISCONNECTED

        self.environment = environment
        self.state = ConnectionState.ACTIVE
        self.attempts = 0
        logger.info(f"{self.agent_id} connected")
        return environment

    async def reconnect(self, intentional: bool = False):
        """
        Drop the current session and schedule a fresh connect.

        An intentional reconnect (resetting the world by respawning) starts
        the attempt count over and waits reset_delay; a lost connection
        waits the normal backoff delay.
        """
        if self.stopped:
            return
        self.state = ConnectionState.DISCONNECTED
        await self._drop_environment()

        if intentional:
            self.attempts = 0
            delay = self.config.reset_delay
            logger.info(f"{self.agent_id} resetting through reconnection...")
        else:
            delay = self.retry_delay(self.attempts + 1)
            logger.info(f"{self.agent_id} scheduling reconnection...")
        self._schedule_retry(delay)

    def mark_disconnected(self):
        """Environment reported the session ended."""
        self.environment = None
        if self.state != ConnectionState.STOPPED:
            self.state = ConnectionState.DISCONNECTED

    async def shutdown(self):
        """Graceful stop: no retries, close the session."""
        self._cancel_retry()
        await self._drop_environment()
        self.state = ConnectionState.STOPPED
        self.stop_reason = "shutdown"

    def resume(self):
        """External intervention: clear a stopped state."""
        self.state = ConnectionState.DISCONNECTED
        self.stop_reason = None
        self.attempts = 0

    # ── Internals ────────────────────────────────────────────────────

    def _schedule_retry(self, delay: float):
        if self.attempts >= self.config.max_attempts:
            self.stop("exceeded max reconnection attempts")
            return
        self._cancel_retry()
        self.retry_delays.append(delay)
        logger.info(f"{self.agent_id} retrying connection in {delay:.1f}s")
        self._retry = self.scheduler.call_later(delay, self._retry_connect)

    async def _retry_connect(self):
        self._retry = None
        await self.connect()

    def _cancel_retry(self):
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    def stop(self, reason: str):
        """Enter the permanent STOPPED state."""
        self._cancel_retry()
        self.state = ConnectionState.STOPPED
        self.stop_reason = reason
        logger.error(f"{self.agent_id} {reason}. Stopping; "
                     f"external intervention required.")
        if self.on_stopped is not None:
            self.on_stopped(reason)

    async def _drop_environment(self):
        environment, self.environment = self.environment, None
        if environment is None:
            return
        try:
            await environment.close()
        except Exception as e:
            logger.debug(f"{self.agent_id} ignoring error while closing session: {e}")
