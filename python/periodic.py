"""
Periodic background work owned by a component

Each stateful component (cache, attempt tracker, security metrics) owns its
sweep instead of relying on an ambient timer. The sweep runs on the event
loop, is started from the application lifespan and cancelled at shutdown.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a synchronous callable every ``interval_seconds`` on the event loop."""

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], object]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop (idempotent)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("Periodic task started: %s every %ss", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Periodic task stopped: %s", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self._func()
            except Exception:
                # A failing sweep must not kill the loop; the next tick retries
                logger.exception("Periodic task %s failed", self.name)
