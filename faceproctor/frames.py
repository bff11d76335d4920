"""Video frame sources.

A frame source is anything with ``read() -> np.ndarray | None``. ``None``
means no frame is available yet (camera still starting), which the monitor
treats as an unmet precondition rather than an error.
"""
import logging
import threading
import time
from typing import Optional, Protocol, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    def read(self) -> Optional[np.ndarray]:
        ...


class StaticFrameSource:
    """Always returns the same frame."""

    def __init__(self, frame: Optional[np.ndarray]):
        self.frame = frame

    def read(self) -> Optional[np.ndarray]:
        return self.frame


class LatestFrameSource:
    """Holds the most recent frame pushed by a client (e.g. the call page)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self.updated_at: Optional[float] = None
        self.frame_count = 0

    def push(self, frame: np.ndarray) -> None:
        with self._lock:
            self._frame = frame
            self.updated_at = time.time()
            self.frame_count += 1

    def clear(self) -> None:
        with self._lock:
            self._frame = None

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._frame


class VideoCaptureSource:
    """Keeps the latest frame of an OpenCV capture (RTSP/HTTP URL, file or device index).

    A daemon thread grabs continuously so the buffer never goes stale and
    retrieves (decodes) only every ``stride`` frames to match ``sampling_fps``.
    """

    def __init__(self, url: Union[str, int], sampling_fps: float = 3.0):
        self.url = url
        self.sampling_fps = sampling_fps
        self.error: Optional[str] = None
        self._latest = LatestFrameSource()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    @property
    def frame_count(self) -> int:
        return self._latest.frame_count

    def read(self) -> Optional[np.ndarray]:
        return self._latest.read()

    def _loop(self):
        backend = cv2.CAP_FFMPEG if isinstance(self.url, str) else cv2.CAP_ANY
        cap = cv2.VideoCapture(self.url, backend)
        if not cap.isOpened():
            self.error = "Failed to open video source"
            logger.warning("Failed to open video source %s", self.url)
            return
        fps = cap.get(cv2.CAP_PROP_FPS) or 25.0
        stride = max(1, int(round(fps / max(self.sampling_fps, 0.5))))
        idx = 0
        try:
            while not self._stop.is_set():
                if not cap.grab():
                    self.error = "Stream ended"
                    logger.info("Video source %s ended", self.url)
                    break
                if idx % stride == 0:
                    ok, frame = cap.retrieve()
                    if not ok:
                        break
                    self._latest.push(frame)
                idx += 1
        finally:
            cap.release()

    def stop(self) -> None:
        """Ask the capture thread to exit; does not wait for it."""
        self._stop.set()

    def release(self, timeout: float = 2.0) -> None:
        """Stop and join the capture thread. Blocks; keep it off the event loop."""
        self.stop()
        self._thread.join(timeout)
