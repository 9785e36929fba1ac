"""
Debounce Module
===============
Coalesces rapid triggers into one delayed async commit.

- Last value wins per debounce window
- Timer is cancelled and re-armed, never stacked
- Commits are serialized: a commit never overlaps a previous one
- cancel() waits for any in-flight commit, so work issued afterwards
  always lands after it
- Injectable sleep for fake-clock testing
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, Set, TypeVar


logger = logging.getLogger(__name__)


T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


class Debouncer(Generic[T]):
    """
    Delayed, coalescing commit of the latest triggered value.

    Usage:
        debouncer = Debouncer(save, delay=0.5)
        debouncer.trigger(state)      # re-arms the timer
        await debouncer.flush()       # commit now if pending
        await debouncer.cancel()      # drop pending, wait in-flight
    """

    def __init__(
        self,
        commit: Callable[[T], Awaitable[Any]],
        delay: float,
        sleep: SleepFunc = asyncio.sleep,
        name: str = "debounce"
    ):
        if delay < 0:
            raise ValueError(f"delay must be >= 0: {delay}")

        self.delay = delay
        self.name = name
        self._commit = commit
        self._sleep = sleep

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

        self._latest: Optional[T] = None
        self._has_pending = False

        # Stats
        self.trigger_count = 0
        self.commit_count = 0
        self.error_count = 0

    @property
    def pending(self) -> bool:
        """True while a triggered value is waiting for the timer."""
        return self._has_pending

    @property
    def busy(self) -> bool:
        """True while a commit is running or queued."""
        return any(not task.done() for task in self._inflight)

    def trigger(self, value: T):
        """Record value as latest and (re)arm the timer."""
        self._latest = value
        self._has_pending = True
        self.trigger_count += 1

        self._cancel_timer()
        self._timer = asyncio.create_task(self._wait_and_fire())

    async def flush(self) -> bool:
        """
        Commit the pending value immediately.

        Returns:
            True if a value was pending
        """
        self._cancel_timer()
        fired = self._spawn_commit() is not None
        await self._wait_inflight()
        return fired

    async def cancel(self):
        """Drop the pending value and wait for in-flight commits."""
        self._cancel_timer()
        self._has_pending = False
        self._latest = None
        await self._wait_inflight()

    async def wait_idle(self):
        """Wait for in-flight commits (does not advance the timer)."""
        await self._wait_inflight()

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _cancel_timer(self):
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _wait_and_fire(self):
        try:
            await self._sleep(self.delay)
        except asyncio.CancelledError:
            return

        # Past this point the commit runs in its own task, out of reach of
        # trigger()/cancel() timer cancellation.
        self._timer = None
        self._spawn_commit()

    def _spawn_commit(self) -> Optional[asyncio.Task]:
        if not self._has_pending:
            return None

        value = self._latest
        self._has_pending = False
        self._latest = None

        task = asyncio.create_task(self._run_commit(value))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_commit(self, value: T):
        async with self._lock:
            try:
                await self._commit(value)
                self.commit_count += 1
            except Exception as e:
                self.error_count += 1
                logger.error(
                    f"Debounced commit failed: {str(e)}",
                    extra={"debouncer": self.name}
                )

    async def _wait_inflight(self):
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def get_stats(self) -> dict:
        """Get debouncer statistics."""
        return {
            "name": self.name,
            "delay": self.delay,
            "pending": self._has_pending,
            "triggers": self.trigger_count,
            "commits": self.commit_count,
            "errors": self.error_count,
        }
