"""FaceEngine backed by RetinaFace alignment and the torch embedder."""
import asyncio
import logging
from typing import Optional

import numpy as np

from . import embedder, retinaface_wrapper, settings
from .engine import FaceDetection, FaceEngineError, euclidean_distance

logger = logging.getLogger(__name__)


class InsightFaceEngine:
    """Production engine.

    Inference is blocking (onnxruntime + torch), so every call runs in a
    worker thread and the event loop keeps serving other sessions. Models are
    loaded once per process; concurrent ``load_models`` calls share one load.
    """

    def __init__(self, device: str = settings.DEVICE, image_size: int = 112):
        self.device = device
        self.image_size = image_size
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load_models(self) -> None:
        async with self._lock:
            if self._loaded:
                return
            logger.info("Loading face models (device=%s)", self.device)
            try:
                await asyncio.to_thread(retinaface_wrapper.init_detector)
                await asyncio.to_thread(embedder.load_embedder, self.device)
            except Exception as e:
                raise FaceEngineError(f"Failed to load face models: {e}") from e
            self._loaded = True
            logger.info("Face models loaded")

    def _detect(self, image: np.ndarray) -> Optional[FaceDetection]:
        bbox, face, score = retinaface_wrapper.detect_with_bbox_and_align(image, self.image_size)
        if face is None:
            return None
        return FaceDetection(descriptor=embedder.get_embedding(face), bbox=bbox, score=score)

    async def detect_single_face(self, image: np.ndarray) -> Optional[FaceDetection]:
        if not self._loaded:
            raise FaceEngineError("Models not loaded")
        return await asyncio.to_thread(self._detect, image)

    def distance(self, a: np.ndarray, b: np.ndarray) -> float:
        return euclidean_distance(a, b)

    def info(self) -> dict:
        return {
            "detector": settings.INSIGHTFACE_NAME,
            "det_size": [settings.INSIGHTFACE_DET_W, settings.INSIGHTFACE_DET_H],
            "embedder": embedder.get_embedder_info(),
        }
