"""Warning banner policy for the call UI.

Pure presentation on top of ``MonitorStatus``: which banner to show, how
severe it is, and when it goes away. The monitor itself has no opinion on
severity.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from . import settings
from .monitor import IdentityMonitor, MonitorStatus
from .scheduler import Clock

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    NO_FACE = "no_face"      # amber
    MISMATCH = "mismatch"    # red
    SEVERE = "severe"        # dark red, may be reported


COLORS = {
    Severity.NO_FACE: "amber",
    Severity.MISMATCH: "red",
    Severity.SEVERE: "dark-red",
}


@dataclass(frozen=True)
class WarningBanner:
    severity: Severity
    title: str
    message: str
    footer: Optional[str]
    confidence: float
    mismatch_count: int

    @property
    def color(self) -> str:
        return COLORS[self.severity]

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "color": self.color,
            "title": self.title,
            "message": self.message,
            "footer": self.footer,
            "confidence": self.confidence,
            "mismatchCount": self.mismatch_count,
        }


def should_warn(status: MonitorStatus) -> bool:
    r = status.result
    return r.is_match is False and r.last_checked is not None and status.has_reference_image


def classify(status: MonitorStatus, severe_after: int = settings.SEVERE_MISMATCH_COUNT) -> Optional[WarningBanner]:
    if not should_warn(status):
        return None
    count = status.mismatch_count
    no_face = not status.result.face_detected
    severe = count >= severe_after

    if severe:
        severity = Severity.SEVERE
    elif no_face:
        severity = Severity.NO_FACE
    else:
        severity = Severity.MISMATCH

    if no_face:
        title = "Face Not Detected"
        message = "Please ensure your face is visible in the camera"
    else:
        title = "Identity Verification Failed" if severe else "Face Mismatch Detected"
        message = (
            "Your face doesn't match the registered profile "
            f"({round(status.result.confidence * 100)}% match)"
        )

    footer = None
    if count > 1:
        footer = f"Warning #{count}" + (" - This may be reported" if severe else "")

    return WarningBanner(
        severity=severity,
        title=title,
        message=message,
        footer=footer,
        confidence=status.result.confidence,
        mismatch_count=count,
    )


def status_indicator(status: MonitorStatus, is_verifying: Optional[bool] = None) -> Optional[str]:
    """Label for the small pill over the candidate's video."""
    if not status.has_reference_image:
        return None
    verifying = status.is_checking if is_verifying is None else is_verifying
    if verifying:
        return "Verifying..."
    if status.result.last_checked is None:
        return "Pending"
    return "Verified" if status.result.is_match else "Mismatch"


class WarningController:
    """Shows a banner for each new warning-worthy check and hides it after a while.

    The display timer is independent of the monitor's own check cycle; a new
    warning restarts it.
    """

    def __init__(
        self,
        monitor: IdentityMonitor,
        display_ms: int = settings.WARNING_DISPLAY_MS,
        clock: Optional[Clock] = None,
    ):
        self.monitor = monitor
        self.display_s = display_ms / 1000.0
        self.clock = clock or monitor.clock
        self.banner: Optional[WarningBanner] = None
        self._last_seen = None
        self._timer: Optional[asyncio.Task] = None
        self._subscribers: List[Callable[[Optional[WarningBanner]], None]] = []
        monitor.add_listener(self._on_status)

    @property
    def visible(self) -> bool:
        return self.banner is not None

    def subscribe(self, callback: Callable[[Optional[WarningBanner]], None]) -> None:
        self._subscribers.append(callback)

    def _notify(self) -> None:
        for cb in list(self._subscribers):
            try:
                cb(self.banner)
            except Exception:
                logger.exception("warning subscriber failed")

    def _on_status(self, status: MonitorStatus) -> None:
        if status.result.last_checked is None or status.check_count == self._last_seen:
            return
        self._last_seen = status.check_count
        banner = classify(status)
        if banner is None:
            return
        self.banner = banner
        self._restart_timer()
        self._notify()

    def _restart_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._auto_dismiss())

    async def _auto_dismiss(self) -> None:
        await self.clock.sleep(self.display_s)
        self.banner = None
        self._timer = None
        self._notify()

    def dismiss(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        if self.banner is not None:
            self.banner = None
            self._notify()

    def close(self) -> None:
        self.monitor.remove_listener(self._on_status)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._subscribers.clear()
