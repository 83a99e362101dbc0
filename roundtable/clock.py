"""One-second countdown that ends the session when it reaches zero."""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SessionClock:
    """Countdown from a configured limit.

    Ticks only between ``start()`` and ``stop()``. Stopping keeps
    ``remaining_seconds`` so a later ``start()`` resumes from the frozen value.
    ``on_expire`` fires exactly once per ``reset()``.
    """

    def __init__(
        self,
        on_expire: Callable[[], None],
        on_tick: Callable[[int], None] | None = None,
        interval: float = 1.0,
    ) -> None:
        self._on_expire = on_expire
        self._on_tick = on_tick
        self._interval = interval
        self._remaining = 0
        self._expired = False
        self._task: asyncio.Task | None = None

    @property
    def remaining_seconds(self) -> int:
        return self._remaining

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self, seconds: int) -> None:
        self.stop()
        self._remaining = max(0, int(seconds))
        self._expired = False

    def start(self) -> None:
        if self.running or self._expired:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    def tick(self) -> None:
        """Advance the countdown by one second. No-op while stopped."""
        if self._expired or not self.running:
            return
        self._remaining = max(0, self._remaining - 1)
        if self._on_tick:
            self._on_tick(self._remaining)
        if self._remaining == 0:
            self._expired = True
            self.stop()
            logger.info("Session clock expired")
            self._on_expire()

    async def _run(self) -> None:
        while not self._expired:
            await asyncio.sleep(self._interval)
            self.tick()
