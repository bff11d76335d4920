"""Identity monitor.

One monitor per interview session. It loads the face models, embeds the
candidate's registered photo once, then periodically embeds the current
camera frame and compares the two by Euclidean distance. Consumers read
``status()`` or register a listener; nothing is ever raised to them after
construction. Failures end up in ``result.error``.

State machine::

    UNINITIALIZED -> LOADING_MODELS -> MODELS_FAILED | MODELS_READY
    MODELS_READY -> AWAITING_REFERENCE -> REFERENCE_FAILED | IDLE
    IDLE <-> CHECKING
    any -> TORN_DOWN
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from . import settings
from .engine import FaceEngine
from .frames import FrameSource
from .images import ReferenceSource, fetch_image
from .scheduler import Clock, LoopClock, RepeatingTask

logger = logging.getLogger(__name__)

ERR_MODELS = "Failed to load face recognition models"
ERR_REFERENCE_NO_FACE = "No face detected in reference image"
ERR_REFERENCE_LOAD = "Failed to load reference image"
ERR_NO_FACE = "No face detected"
ERR_CHECK = "Error during face verification"


class MonitorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING_MODELS = "loading_models"
    MODELS_FAILED = "models_failed"
    MODELS_READY = "models_ready"
    AWAITING_REFERENCE = "awaiting_reference"
    REFERENCE_FAILED = "reference_failed"
    IDLE = "idle"
    CHECKING = "checking"
    TORN_DOWN = "torn_down"


@dataclass(frozen=True)
class VerificationResult:
    is_match: bool = True
    confidence: float = 0.0
    last_checked: Optional[datetime] = None
    error: Optional[str] = None
    face_detected: bool = False

    def to_dict(self) -> dict:
        return {
            "isMatch": self.is_match,
            "confidence": self.confidence,
            "lastChecked": self.last_checked.isoformat() if self.last_checked else None,
            "error": self.error,
            "faceDetected": self.face_detected,
        }


@dataclass(frozen=True)
class MonitorStatus:
    """Snapshot handed to the UI."""

    state: MonitorState
    is_loading: bool
    models_loaded: bool
    has_reference_image: bool
    is_checking: bool
    result: VerificationResult
    mismatch_count: int
    check_count: int = 0
    skipped_ticks: int = 0

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "isLoading": self.is_loading,
            "modelsLoaded": self.models_loaded,
            "hasReferenceImage": self.has_reference_image,
            "isChecking": self.is_checking,
            "result": self.result.to_dict(),
            "mismatchCount": self.mismatch_count,
            "checkCount": self.check_count,
            "skippedTicks": self.skipped_ticks,
        }


@dataclass
class MonitorConfig:
    check_interval_ms: int = settings.CHECK_INTERVAL_MS
    match_threshold: float = settings.MATCH_THRESHOLD
    initial_delay_ms: int = settings.INITIAL_DELAY_MS
    enabled: bool = False

    def __post_init__(self):
        if self.check_interval_ms <= 0:
            raise ValueError("check_interval_ms must be positive")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must be >= 0")
        if self.match_threshold <= 0:
            raise ValueError("match_threshold must be positive")


def score_distance(distance: float, threshold: float) -> Tuple[bool, float]:
    """(is_match, confidence) for a descriptor distance. Match is strict ``<``."""
    return distance < threshold, max(0.0, min(1.0, 1.0 - distance))


def _same_source(a, b) -> bool:
    if a is b:
        return True
    if isinstance(a, (str, bytes)) and isinstance(b, (str, bytes)):
        return a == b
    return False


def _now() -> datetime:
    return datetime.now(timezone.utc)


StatusListener = Callable[[MonitorStatus], None]


class IdentityMonitor:
    """Periodic face verification for one session.

    Args:
        engine: Face engine, shared across monitors.
        config: Interval, threshold, initial delay and enabled flag.
        reference_source: Candidate photo (URL, path, bytes or BGR array).
        frame_source: Object with ``read()`` returning the current frame.
        clock: Time source for the timers; tests pass a virtual clock.
    """

    def __init__(
        self,
        engine: FaceEngine,
        config: Optional[MonitorConfig] = None,
        *,
        reference_source: Optional[ReferenceSource] = None,
        frame_source: Optional[FrameSource] = None,
        clock: Optional[Clock] = None,
        name: str = "monitor",
    ):
        self.engine = engine
        self.config = config or MonitorConfig()
        self.clock = clock or LoopClock()
        self.name = name
        self._reference_source = reference_source
        self._frame_source = frame_source

        self._state = MonitorState.UNINITIALIZED
        self._is_loading = True
        self._models_loaded = False
        self._reference: Optional[np.ndarray] = None
        self._result = VerificationResult()
        self._mismatch_count = 0
        self._check_count = 0
        self._skipped_ticks = 0

        self._checking = False
        self._disposed = False
        self._timer: Optional[RepeatingTask] = None
        self._check_task: Optional[asyncio.Task] = None
        self._listeners: List[StatusListener] = []

    # ----- public state -----

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def result(self) -> VerificationResult:
        return self._result

    @property
    def mismatch_count(self) -> int:
        return self._mismatch_count

    @property
    def models_loaded(self) -> bool:
        return self._models_loaded

    @property
    def has_reference_image(self) -> bool:
        return self._reference is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            state=self._state,
            is_loading=self._is_loading,
            models_loaded=self._models_loaded,
            has_reference_image=self.has_reference_image,
            is_checking=self._checking and not self._disposed,
            result=self._result,
            mismatch_count=self._mismatch_count,
            check_count=self._check_count,
            skipped_ticks=self._skipped_ticks,
        )

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self) -> None:
        status = self.status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("%s: status listener failed", self.name)

    # ----- lifecycle -----

    async def start(self) -> MonitorStatus:
        """Load models, acquire the reference and arm the timer if possible."""
        await self.initialize()
        await self.acquire_reference()
        self._reconcile()
        return self.status()

    async def initialize(self) -> bool:
        if self._disposed or self._state != MonitorState.UNINITIALIZED:
            return self._models_loaded
        self._state = MonitorState.LOADING_MODELS
        logger.info("%s: loading face models", self.name)
        try:
            await self.engine.load_models()
        except Exception:
            logger.exception("%s: model load failed", self.name)
            if self._disposed:
                return False
            self._state = MonitorState.MODELS_FAILED
            self._is_loading = False
            self._result = dataclasses.replace(self._result, error=ERR_MODELS)
            self._publish()
            return False
        if self._disposed:
            return False
        self._models_loaded = True
        self._is_loading = False
        self._state = MonitorState.MODELS_READY
        logger.info("%s: face models loaded", self.name)
        self._publish()
        return True

    async def set_reference_source(self, source: Optional[ReferenceSource]) -> bool:
        """Swap the candidate photo. A new source drops the old profile and re-runs acquisition."""
        if self._disposed:
            return False
        if _same_source(source, self._reference_source) and self._state != MonitorState.UNINITIALIZED:
            return self._reference is not None
        self._reference_source = source
        self._reference = None
        if self._models_loaded:
            self._state = MonitorState.AWAITING_REFERENCE
        self._reconcile()
        self._publish()
        return await self.acquire_reference()

    async def acquire_reference(self) -> bool:
        """Embed the reference photo. Zero faces or a fetch error leave verification off."""
        source = self._reference_source
        if self._disposed or not self._models_loaded or source is None:
            return False
        if self._reference is not None:
            return True
        if self._state == MonitorState.REFERENCE_FAILED:
            return False
        self._state = MonitorState.AWAITING_REFERENCE
        logger.info("%s: loading reference image", self.name)
        try:
            image = await fetch_image(source)
            detection = await self.engine.detect_single_face(image)
        except Exception:
            logger.exception("%s: reference image failed", self.name)
            if self._disposed or not _same_source(source, self._reference_source):
                return False
            self._fail_reference(ERR_REFERENCE_LOAD)
            return False
        if self._disposed or not _same_source(source, self._reference_source):
            return False
        if detection is None:
            logger.warning("%s: no face detected in reference image", self.name)
            self._fail_reference(ERR_REFERENCE_NO_FACE)
            return False
        self._reference = np.asarray(detection.descriptor, dtype=np.float32)
        self._state = MonitorState.IDLE
        self._result = dataclasses.replace(self._result, error=None)
        logger.info("%s: reference descriptor extracted (%d-D)", self.name, self._reference.size)
        self._reconcile()
        self._publish()
        return True

    def _fail_reference(self, error: str) -> None:
        self._state = MonitorState.REFERENCE_FAILED
        self._result = dataclasses.replace(self._result, error=error)
        self._publish()

    def set_frame_source(self, frame_source: Optional[FrameSource]) -> None:
        if self._disposed:
            return
        self._frame_source = frame_source
        self._reconcile()

    def set_enabled(self, enabled: bool) -> None:
        if self._disposed:
            return
        self.config.enabled = enabled
        self._reconcile()

    def close(self) -> None:
        """Tear down: cancel timers, discard any in-flight result. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        self._cancel_timer()
        self._state = MonitorState.TORN_DOWN
        logger.info("%s: torn down after %d checks (%d mismatches)",
                    self.name, self._check_count, self._mismatch_count)
        self._publish()
        self._listeners.clear()

    # ----- scheduling -----

    def _should_run(self) -> bool:
        return (
            not self._disposed
            and self.config.enabled
            and self._models_loaded
            and self._reference is not None
            and self._frame_source is not None
        )

    def _reconcile(self) -> None:
        if self._should_run():
            if self._timer is None:
                logger.info("%s: starting checks every %.1fs", self.name, self.config.check_interval_ms / 1000)
                self._timer = RepeatingTask(
                    self._on_tick,
                    interval=self.config.check_interval_ms / 1000.0,
                    initial_delay=self.config.initial_delay_ms / 1000.0,
                    clock=self.clock,
                    name=f"{self.name}-checks",
                ).start()
        elif self._timer is not None:
            logger.info("%s: stopping checks", self.name)
            self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_tick(self) -> None:
        if self._disposed:
            return
        if self._checking or (self._check_task is not None and not self._check_task.done()):
            self._skipped_ticks += 1
            logger.debug("%s: check still running, skipping tick", self.name)
            return
        self._check_task = asyncio.get_running_loop().create_task(self.check_now())

    # ----- the check -----

    def _record_check_error(self) -> VerificationResult:
        # Previous verdict stays; the mismatch counter is untouched.
        self._result = dataclasses.replace(self._result, error=ERR_CHECK, last_checked=_now())
        self._check_count += 1
        return self._result

    async def check_now(self) -> Optional[VerificationResult]:
        """Run one verification cycle. Returns None when skipped or discarded."""
        if self._disposed or self._checking:
            return None
        if self._reference is None or not self._models_loaded or self._frame_source is None:
            return None
        try:
            frame = self._frame_source.read()
        except Exception:
            logger.exception("%s: reading the video frame failed", self.name)
            result = self._record_check_error()
            self._publish()
            return result
        if frame is None:
            logger.debug("%s: no frame available", self.name)
            return None

        reference = self._reference
        self._checking = True
        self._state = MonitorState.CHECKING
        try:
            try:
                detection = await self.engine.detect_single_face(frame)
                if detection is not None and not self._disposed:
                    distance = self.engine.distance(reference, detection.descriptor)
                    is_match, confidence = score_distance(distance, self.config.match_threshold)
            except Exception:
                logger.exception("%s: face verification failed", self.name)
                if self._disposed:
                    return None
                return self._record_check_error()
            if self._disposed:
                return None
            self._check_count += 1

            if detection is None:
                logger.info("%s: no face detected in frame", self.name)
                self._result = VerificationResult(
                    is_match=False,
                    confidence=0.0,
                    last_checked=_now(),
                    error=ERR_NO_FACE,
                    face_detected=False,
                )
                self._mismatch_count += 1
                return self._result

            logger.info("%s: distance=%.3f match=%s confidence=%.1f%%",
                        self.name, distance, is_match, confidence * 100)
            self._result = VerificationResult(
                is_match=is_match,
                confidence=confidence,
                last_checked=_now(),
                error=None,
                face_detected=True,
            )
            if not is_match:
                self._mismatch_count += 1
            return self._result
        finally:
            self._checking = False
            if not self._disposed:
                self._state = MonitorState.IDLE if self._reference is not None else MonitorState.AWAITING_REFERENCE
                self._publish()
