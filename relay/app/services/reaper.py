"""Periodic eviction of idle admission state.

Client and hostname entries are created lazily and never removed on release,
so without a sweep the maps grow with every distinct IP and host ever seen.
"""

import asyncio
from typing import Optional

from relay.app.core.logging import get_logger
from relay.app.services.admission import AdmissionController

logger = get_logger(__name__)


class StateReaper:
    """Runs AdmissionController.sweep on a fixed interval.

    Usage:
        reaper = StateReaper(admission, interval=60.0, retention=3600.0)
        await reaper.start()
        ...
        await reaper.stop()
    """

    def __init__(
        self,
        admission: AdmissionController,
        interval: float = 60.0,
        retention: float = 3600.0,
    ):
        """Initialize the reaper.

        Args:
            admission: Controller whose maps are swept
            interval: Seconds between sweeps
            retention: Entries idle for longer than this are evicted even
                when they still hold slots
        """
        self.admission = admission
        self._interval = interval
        self._retention = retention
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def sweep_once(self) -> int:
        """Run a single sweep and log what it removed."""
        removed = self.admission.sweep(self._retention)
        if removed:
            logger.debug(f"Reaper evicted {removed} idle entries")
        return removed

    async def start(self) -> None:
        if self._task is not None:
            logger.debug("State reaper already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started state reaper (interval: {self._interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("State reaper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped state reaper")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Error during state sweep: {e}")
