"""Timers for the identity checks.

``RepeatingTask`` fires a callback after an initial delay and then at a fixed
rate. Ticks stay aligned to ``start + delay + k * interval`` no matter how
long the callback's work takes; the callback itself must not block (the
monitor hands the actual check to a separate task and skips ticks while one
is running).
"""
import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        """Monotonic seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class LoopClock:
    """Event-loop time."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class RepeatingTask:
    """Cancellable fixed-rate timer with an initial delay.

    Args:
        callback: Called once per tick, synchronously.
        interval: Seconds between ticks.
        initial_delay: Seconds before the first tick.
        clock: Time source; defaults to the running event loop.
        name: Used in logs and as the asyncio task name.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        interval: float,
        initial_delay: float = 0.0,
        clock: Optional[Clock] = None,
        name: str = "repeating-task",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        self.callback = callback
        self.interval = interval
        self.initial_delay = initial_delay
        self.clock = clock or LoopClock()
        self.name = name
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> "RepeatingTask":
        if self._task is not None:
            raise RuntimeError(f"{self.name} already started")
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        await self.clock.sleep(self.initial_delay)
        next_at = self.clock.now()
        while not self._cancelled:
            self.ticks += 1
            try:
                self.callback()
            except Exception:
                logger.exception("%s: tick %d failed", self.name, self.ticks)
            next_at += self.interval
            await self.clock.sleep(max(0.0, next_at - self.clock.now()))
