"""
Timers - Cancellable delayed calls on the running asyncio loop.

Every scheduled call carries a CancellationToken. Whoever supersedes a call
(a fresh connect() replacing a pending retry, an episode close replacing a
pending reconnect) cancels the token, and the stale call will never run
even if its sleep has already finished.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class CancellationToken:
    """One-way flag: once cancelled, stays cancelled."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ScheduledCall:
    """A pending coroutine callback and its token."""

    def __init__(self, delay: float, callback: Callback,
                 token: CancellationToken = None):
        self.delay = delay
        self.callback = callback
        self.token = token or CancellationToken()
        self.task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self):
        self.token.cancel()
        # A call never cancels its own running task
        if (self.task is not None and not self.task.done()
                and self.task is not asyncio.current_task()):
            self.task.cancel()


class Scheduler:
    """Schedules coroutine callbacks after a delay on the current loop."""

    def __init__(self):
        self._pending: Set[ScheduledCall] = set()

    def call_later(self, delay: float, callback: Callback) -> ScheduledCall:
        call = ScheduledCall(delay, callback)
        call.task = asyncio.get_running_loop().create_task(self._run(call))
        self._pending.add(call)
        return call

    async def _run(self, call: ScheduledCall):
        try:
            await asyncio.sleep(call.delay)
            if not call.token.cancelled:
                await call.callback()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}", exc_info=True)
        finally:
            self._pending.discard(call)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def cancel_all(self):
        for call in list(self._pending):
            call.cancel()
