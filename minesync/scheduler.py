"""Cancellable periodic task used for the display and background sync ticks."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("scheduler")


class PeriodicTask:
    """Runs ``func`` every ``interval_sec`` until stopped."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval_sec: float,
        run_immediately: bool = False,
    ):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        self.name = name
        self.interval_sec = interval_sec
        self.run_immediately = run_immediately
        self.runs = 0
        self._func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the background loop. Calling it twice is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.info("%s started (interval: %.1fs)", self.name, self.interval_sec)

    async def stop(self):
        """Cancel the loop and wait for it to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("%s stopped", self.name)

    async def _run(self):
        if not self.run_immediately:
            await asyncio.sleep(self.interval_sec)
        while True:
            try:
                await self._func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in %s", self.name)
            self.runs += 1
            await asyncio.sleep(self.interval_sec)
