import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import numpy as np

from .engine import FaceEngine
from .frames import LatestFrameSource, VideoCaptureSource
from .images import ReferenceSource
from .monitor import IdentityMonitor, MonitorConfig, MonitorStatus
from .scheduler import Clock
from .warning import WarningBanner, WarningController

logger = logging.getLogger(__name__)


class CapacityError(RuntimeError):
    pass


class SessionNotFoundError(KeyError):
    pass


@dataclass
class Session:
    session_id: str
    label: str
    monitor: IdentityMonitor
    frames: LatestFrameSource
    warnings: WarningController
    capture: Optional[VideoCaptureSource] = None
    created_at: float = field(default_factory=time.time)

    def summary(self) -> dict:
        return {
            "session_id": self.session_id,
            "label": self.label,
            "created_at": self.created_at,
            "enabled": self.monitor.config.enabled,
            "check_interval_ms": self.monitor.config.check_interval_ms,
            "match_threshold": self.monitor.config.match_threshold,
            "source": "stream" if self.capture else "push",
            "frames_received": (self.capture or self.frames).frame_count,
            "source_error": self.capture.error if self.capture else None,
            "status": self.monitor.status().to_dict(),
            "warning": self.warnings.banner.to_dict() if self.warnings.banner else None,
        }


class SessionManager:
    """One identity monitor per live interview call.

    All sessions share the engine; each gets its own frame buffer, monitor
    and warning controller. ``on_status`` receives every status change as a
    JSON-ready dict.
    """

    def __init__(
        self,
        engine: FaceEngine,
        max_sessions: int,
        on_status: Optional[Callable[[str, dict], None]] = None,
        clock: Optional[Clock] = None,
    ):
        self.engine = engine
        self.max_sessions = max_sessions
        self.on_status = on_status
        self.clock = clock
        self.sessions: Dict[str, Session] = {}

    def list(self):
        return [s.summary() for s in self.sessions.values()]

    def count(self):
        return len(self.sessions)

    def get(self, session_id: str) -> Session:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None

    async def create(
        self,
        reference_source: ReferenceSource,
        config: Optional[MonitorConfig] = None,
        label: str = "",
        session_id: Optional[str] = None,
        stream_url: Optional[str] = None,
        sampling_fps: float = 3.0,
    ) -> Session:
        """Register a session and start its monitor.

        Frames come from ``push_frame`` unless ``stream_url`` is given, in which
        case an OpenCV capture feeds the monitor.
        """
        if len(self.sessions) >= self.max_sessions:
            raise CapacityError(f"Max sessions ({self.max_sessions}) reached")
        sid = session_id or str(uuid.uuid4())
        frames = LatestFrameSource()
        capture = VideoCaptureSource(stream_url, sampling_fps=sampling_fps) if stream_url else None
        monitor = IdentityMonitor(
            self.engine,
            config or MonitorConfig(),
            reference_source=reference_source,
            frame_source=capture or frames,
            clock=self.clock,
            name=f"session-{sid[:8]}",
        )
        session = Session(
            session_id=sid,
            label=label,
            monitor=monitor,
            frames=frames,
            warnings=WarningController(monitor, clock=self.clock),
            capture=capture,
        )
        self.sessions[sid] = session
        monitor.add_listener(lambda status: self._emit(sid, status))
        session.warnings.subscribe(lambda banner: self._emit_warning(sid, banner))
        logger.info("Session %s created (label=%r)", sid, label)
        await monitor.start()
        return session

    def _emit(self, sid: str, status: MonitorStatus):
        if self.on_status is None:
            return
        session = self.sessions.get(sid)
        banner = session.warnings.banner if session else None
        self.on_status(sid, {
            "event": "status",
            "t": time.time(),
            "status": status.to_dict(),
            "warning": banner.to_dict() if banner else None,
        })

    def _emit_warning(self, sid: str, banner: Optional[WarningBanner]):
        # Fires on show, auto dismiss and manual dismiss.
        if self.on_status is None:
            return
        self.on_status(sid, {
            "event": "warning",
            "t": time.time(),
            "warning": banner.to_dict() if banner else None,
        })

    def push_frame(self, session_id: str, frame: np.ndarray) -> Session:
        session = self.get(session_id)
        session.frames.push(frame)
        return session

    def set_enabled(self, session_id: str, enabled: bool) -> Session:
        session = self.get(session_id)
        session.monitor.set_enabled(enabled)
        return session

    def _close(self, session_id: str) -> Optional[Session]:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return None
        session.warnings.close()
        session.monitor.close()
        if session.capture is not None:
            session.capture.stop()
        logger.info("Session %s closed", session_id)
        return session

    def stop(self, session_id: str) -> bool:
        """Tear a session down. A capture thread is signalled, not joined."""
        return self._close(session_id) is not None

    async def stop_all(self):
        """Tear every session down and wait for capture threads off the event loop."""
        closed = [self._close(sid) for sid in list(self.sessions)]
        captures = [s.capture for s in closed if s is not None and s.capture is not None]
        if captures:
            await asyncio.gather(*(asyncio.to_thread(c.release) for c in captures))
