"""Exponential backoff for re-opening the change feed."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from typing import Any

from loguru import logger


class ReconnectionManager:
    """Attempt counter plus a single pending retry timer.

    ``max_attempts=None`` retries forever. The delay before retry ``n``
    (zero-based) is ``base_delay * backoff_factor ** n`` plus up to
    ``max_jitter`` seconds of random jitter.
    """

    def __init__(
        self,
        *,
        max_attempts: int | None = 5,
        base_delay: float = 2.0,
        backoff_factor: float = 1.5,
        max_jitter: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.max_jitter = max_jitter
        self.attempt = 0
        self._rng = rng or random.Random()
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Any, rng: random.Random | None = None):
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            backoff_factor=settings.backoff_factor,
            max_jitter=settings.max_jitter,
            rng=rng,
        )

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self.attempt >= self.max_attempts

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        jitter = self._rng.uniform(0, self.max_jitter) if self.max_jitter > 0 else 0.0
        return self.base_delay * self.backoff_factor**self.attempt + jitter

    def record_failure(self) -> int:
        self.attempt += 1
        return self.attempt

    def reset(self) -> None:
        self.attempt = 0
        self.cancel()

    def schedule(self, callback: Callable[[], None]) -> float | None:
        """Run ``callback`` after the backoff delay; ``None`` once exhausted."""

        if self.exhausted:
            return None
        self.cancel()
        delay = self.next_delay()
        self._task = asyncio.get_running_loop().create_task(
            self._fire_after(delay, callback), name="livesync-reconnect"
        )
        return delay

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _fire_after(self, delay: float, callback: Callable[[], None]) -> None:
        await asyncio.sleep(delay)
        if self._task is asyncio.current_task():
            self._task = None
        try:
            callback()
        except Exception:
            logger.opt(exception=True).warning("Reconnect callback raised an exception")
