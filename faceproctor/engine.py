"""Face engine protocol.

The identity monitor never talks to a detection library directly. It goes
through a ``FaceEngine``: load the models once, detect at most one face per
image and return its descriptor, and measure the distance between two
descriptors. ``InsightFaceEngine`` is the production adapter; tests use a
scripted fake.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np


class FaceEngineError(RuntimeError):
    """Raised by engines when models are missing or inference fails."""


@dataclass
class FaceDetection:
    """A single detected face.

    Attributes:
        descriptor: 1-D float32 embedding of the face.
        bbox: (x1, y1, x2, y2) in input image pixels, when the engine knows it.
        score: Detector confidence in [0, 1].
    """

    descriptor: np.ndarray
    bbox: Optional[Tuple[int, int, int, int]] = None
    score: float = 1.0


class FaceEngine(Protocol):
    """Protocol for face detection + embedding engines."""

    async def load_models(self) -> None:
        """Load detector and embedder weights. Safe to call more than once."""
        ...

    async def detect_single_face(self, image: np.ndarray) -> Optional[FaceDetection]:
        """Return the best face in a BGR image, or None when there is none."""
        ...

    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        """Distance between two descriptors; 0 is a perfect match."""
        ...


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise ValueError(f"descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


__all__ = ["FaceEngineError", "FaceDetection", "FaceEngine", "euclidean_distance"]
