"""Deferred execution on the event loop.

Delays and release timers are asyncio timer handles: the loop keeps them in
a heap ordered by deadline, so thousands of pending requests cost one heap
entry each and no thread.
"""

import asyncio
from typing import Any, Callable


class DelayScheduler:
    """Defers request forwarding and arms cancellable release timers.

    Usage:
        scheduler = DelayScheduler()

        # Suspend the current request for its fairness delay
        await scheduler.defer(delay_ms)

        # Arm a timer; keep the handle to cancel it
        handle = scheduler.call_later(2.0, release)
        handle.cancel()
    """

    def __init__(self):
        self._waiting = 0

    @property
    def waiting(self) -> int:
        """Number of requests currently suspended in defer()."""
        return self._waiting

    async def defer(self, delay_ms: int) -> None:
        """Suspend the calling coroutine for delay_ms milliseconds.

        A zero delay returns without yielding to the loop.
        """
        if delay_ms <= 0:
            return

        self._waiting += 1
        try:
            await asyncio.sleep(delay_ms / 1000)
        finally:
            self._waiting -= 1

    def call_later(
        self, delay_seconds: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle:
        """Schedule callback on the running loop after delay_seconds."""
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay_seconds), callback, *args)
