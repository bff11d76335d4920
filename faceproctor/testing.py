"""Test doubles for the identity monitor.

FakeClock is a virtual monotonic clock: ``sleep`` parks the caller until
``advance`` moves time past its deadline, so timer behaviour can be checked
to the millisecond without waiting.

FakeFaceEngine is a scripted engine: each detection call pops the next
scripted outcome (a descriptor, ``None`` for "no face", or an exception),
optionally takes virtual time, and records how many calls overlap.

Example:
    >>> clock = FakeClock()
    >>> engine = FakeFaceEngine(clock=clock, detect_delay=0.5)
    >>> engine.reference = unit_descriptor(0)
    >>> engine.script([descriptor_at_distance(0.3), None])
"""

import asyncio
import heapq
from collections import deque
from typing import Any, Deque, List, Optional, Tuple

import numpy as np

from .engine import FaceDetection, euclidean_distance

DIM = 128


class FakeClock:
    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = 0
        self._waiters: List[Tuple[float, int, asyncio.Future]] = []

    def now(self) -> float:
        return self._now

    @property
    def now_ms(self) -> int:
        return int(round(self._now * 1000))

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self._now + seconds, self._seq, fut))
        self._seq += 1
        await fut

    async def settle(self, rounds: int = 20) -> None:
        """Let ready tasks run without moving time."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await self.settle()
        while self._waiters and self._waiters[0][0] <= target + 1e-9:
            deadline, _, fut = heapq.heappop(self._waiters)
            self._now = max(self._now, deadline)
            if not fut.done():
                fut.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()


def unit_descriptor(axis: int = 0, dim: int = DIM) -> np.ndarray:
    v = np.zeros(dim, dtype=np.float32)
    v[axis] = 1.0
    return v


def descriptor_at_distance(distance: float, reference: Optional[np.ndarray] = None) -> np.ndarray:
    """A descriptor exactly ``distance`` away from ``reference`` (default: unit axis 0)."""
    ref = unit_descriptor(0) if reference is None else np.asarray(reference, dtype=np.float32)
    offset = np.zeros_like(ref)
    offset[-1] = distance
    return ref + offset


class FakeFaceEngine:
    """Scripted FaceEngine.

    Args:
        clock: Virtual clock used for ``detect_delay``; real sleep when None.
        detect_delay: Seconds each live detection takes.
        load_error: Raised by ``load_models`` when set.
    """

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        detect_delay: float = 0.0,
        load_error: Optional[BaseException] = None,
    ):
        self.clock = clock
        self.detect_delay = detect_delay
        self.load_error = load_error
        self.reference: Any = unit_descriptor(0)
        self.default: Any = None
        self.loaded = False
        self.load_calls = 0
        self.detect_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.call_times: List[float] = []
        self.gate: Optional[asyncio.Event] = None
        self._script: Deque[Any] = deque()

    def script(self, outcomes) -> None:
        self._script.extend(outcomes)

    async def load_models(self) -> None:
        self.load_calls += 1
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True

    async def _delay(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        elif self.detect_delay > 0:
            if self.clock is not None:
                await self.clock.sleep(self.detect_delay)
            else:
                await asyncio.sleep(self.detect_delay)

    def _resolve(self, outcome) -> Optional[FaceDetection]:
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return None
        return FaceDetection(descriptor=np.asarray(outcome, dtype=np.float32))

    async def detect_single_face(self, image: np.ndarray) -> Optional[FaceDetection]:
        # Reference photos from reference_image() are one pixel tall.
        if image.shape[0] == 1:
            return self._resolve(self.reference)
        self.detect_calls += 1
        if self.clock is not None:
            self.call_times.append(self.clock.now())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self._delay()
            outcome = self._script.popleft() if self._script else self.default
            return self._resolve(outcome)
        finally:
            self.in_flight -= 1

    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        return euclidean_distance(a, b)


def reference_image() -> np.ndarray:
    """A 1-row image the fake engine recognises as the reference photo."""
    return np.zeros((1, 4, 3), dtype=np.uint8)


def live_frame() -> np.ndarray:
    return np.zeros((48, 64, 3), dtype=np.uint8)
