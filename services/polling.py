"""Cancellable recurring timers on the running asyncio event loop."""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Poller:
    """
    Call ``tick`` every ``interval`` seconds until it returns True or the
    poller is stopped.

    Runs as a task on the caller's event loop, so ticks never overlap with
    other work on that loop and no threads are involved. Owners must call
    ``stop()`` when their view goes away.
    """

    def __init__(self, interval: float, tick: Callable[[], bool], name: str = "poller"):
        self.interval = interval
        self.tick = tick
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Start (or restart) polling.

        Returns:
            True if a task was scheduled, False when called outside a
            running event loop
        """
        self.stop()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"[{self.name}] No running event loop, polling not started")
            return False

        self._task = loop.create_task(self._run(), name=self.name)
        logger.debug(f"[{self.name}] Polling every {self.interval}s")
        return True

    def stop(self):
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
                logger.debug(f"[{self.name}] Polling cancelled")
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                done = self.tick()
            except Exception as e:
                logger.error(f"[{self.name}] Error in poll tick: {e}")
                continue
            if done:
                logger.debug(f"[{self.name}] Polling finished")
                break
