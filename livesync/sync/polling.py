"""Periodic full-refetch loop used while the change feed is down."""

from __future__ import annotations

import asyncio

from loguru import logger

from .base import FetchCallable


class PollingFallback:
    """Await ``fetch`` every ``interval`` seconds until stopped."""

    def __init__(self, fetch: FetchCallable, interval: float = 15.0) -> None:
        if interval <= 0:
            raise ValueError("Polling interval must be positive")
        self._fetch = fetch
        self.interval = interval
        self.ticks = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop; returns ``False`` when it was already running."""

        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="livesync-polling"
        )
        logger.debug("Polling fallback started (every {}s)", self.interval)
        return True

    def stop(self) -> bool:
        """Cancel the loop; returns ``False`` when nothing was running."""

        task, self._task = self._task, None
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Polling fallback stopped after {} ticks", self.ticks)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.ticks += 1
            try:
                await self._fetch()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.opt(exception=True).warning("Polling fetch raised an exception")
