# =============================================================================
# Delayed Task Scheduling
# =============================================================================
# Small timer primitives used for pacing, retries and backoff.
#
#   DelayedTask  - one coroutine/callback scheduled after a delay, with a
#                  cancel() that only ever cancels the *waiting* phase. Once
#                  the callback has started it runs to completion, so a
#                  cancel never interrupts a network call half-way.
#   Scheduler    - owns a set of DelayedTasks so an owner can cancel all of
#                  its pending timers in one deterministic call.
#   RetryBackoff - exponential backoff: initial, doubling, capped.
# =============================================================================

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


class DelayedTask:
    """
    A cancellable handle for a callback scheduled after a delay.

    The callback may be a plain function or a coroutine function.

    Usage:
        >>> handle = DelayedTask(3.0, pipeline.retry, "INBOX")
        >>> handle.cancel()   # no-op if the callback already started
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
        name: str | None = None,
    ) -> None:
        self.delay = delay
        self._callback = callback
        self._args = args
        self._fired = False
        self._cancelled = False
        self._task = asyncio.create_task(self._run(), name=name)

    async def _run(self) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)

        if self._cancelled:
            return

        self._fired = True
        try:
            result = self._callback(*self._args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Delayed task {self._task.get_name()} failed: {e}", exc_info=True)

    def cancel(self) -> bool:
        """
        Cancel the task if its callback hasn't started yet.

        Returns:
            True if the callback will not run.
        """
        if self._cancelled or self._fired or self._task.done():
            return False
        self._cancelled = True
        self._task.cancel()
        return True

    @property
    def fired(self) -> bool:
        """True once the callback has started running."""
        return self._fired

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __await__(self):
        return self._wait().__await__()

    async def _wait(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise


class Scheduler:
    """
    Tracks the delayed tasks of one owner (a pipeline, an index).

    cancel_all() is the single teardown operation: after it returns, no
    pending callback of this scheduler will start.
    """

    def __init__(self, name: str = "scheduler") -> None:
        self.name = name
        self._tasks: set[DelayedTask] = set()

    def call_later(
        self,
        delay: float,
        callback: Callable[..., Any] | Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> DelayedTask:
        """Schedule callback(*args) after delay seconds."""
        self._prune()
        handle = DelayedTask(delay, callback, *args, name=f"{self.name}-timer")
        self._tasks.add(handle)
        return handle

    def cancel_all(self) -> int:
        """Cancel every pending timer. Returns how many were cancelled."""
        cancelled = sum(1 for handle in self._tasks if handle.cancel())
        self._tasks.clear()
        return cancelled

    @property
    def pending(self) -> int:
        """Number of timers whose callbacks haven't started yet."""
        return sum(1 for h in self._tasks if not h.fired and not h.done)

    async def join(self) -> None:
        """Wait for every tracked timer to finish (fired or cancelled)."""
        while True:
            self._prune()
            if not self._tasks:
                return
            for handle in list(self._tasks):
                await handle

    def _prune(self) -> None:
        self._tasks = {h for h in self._tasks if not h.done}


class RetryBackoff:
    """
    Exponential backoff delay.

    With the defaults the delays run 3, 6, 12, 24, 48, 96, 120, 120, ...
    seconds. reset() drops back to the initial delay (on any success).
    """

    def __init__(self, initial: float = 3.0, maximum: float = 120.0) -> None:
        self.initial = initial
        self.maximum = maximum
        self.current = initial

    def advance(self) -> float:
        """Return the delay to wait now, and double the next one."""
        delay = self.current
        self.current = min(delay * 2, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial

    def __repr__(self) -> str:
        return f"RetryBackoff(current={self.current}, initial={self.initial}, maximum={self.maximum})"
