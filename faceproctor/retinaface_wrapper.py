"""RetinaFace detection + 5-pt landmark alignment via insightface."""
import logging
from typing import Optional

import cv2
import insightface
import numpy as np
import onnxruntime as ort
from skimage import transform as trans

from . import settings

logger = logging.getLogger(__name__)

_DET = None

# Reference template for 5-point alignment (ArcFace)
# (x, y) for left-eye, right-eye, nose, left-mouth, right-mouth in 112x112 space
_ARCFACE_5PTS = np.array([
    [38.2946, 51.6963],
    [73.5318, 51.5014],
    [56.0252, 71.7366],
    [41.5493, 92.3655],
    [70.7299, 92.2041],
], dtype=np.float32)


def _estimate_norm(lmk: np.ndarray, image_size: int = 112) -> np.ndarray:
    if lmk.shape != (5, 2):
        raise ValueError(f"expected 5x2 landmarks, got {lmk.shape}")
    dst = _ARCFACE_5PTS.copy()
    if image_size != 112:
        dst *= (image_size / 112.0)
    tform = trans.SimilarityTransform()
    if not tform.estimate(lmk, dst):
        raise ValueError("similarity transform did not converge")
    return tform.params[0:2, :].astype(np.float32)


def _select_providers():
    avail = ort.get_available_providers()
    logger.info("InsightFace/ONNX providers available: %s", avail)
    if "CUDAExecutionProvider" in avail and settings.DEVICE.startswith("cuda"):
        return ["CUDAExecutionProvider", "CPUExecutionProvider"], 0
    return ["CPUExecutionProvider"], -1


def init_detector():
    global _DET
    if _DET is None:
        providers, ctx_id = _select_providers()
        det = insightface.app.FaceAnalysis(name=settings.INSIGHTFACE_NAME, providers=providers)
        det.prepare(ctx_id=ctx_id, det_size=(settings.INSIGHTFACE_DET_W, settings.INSIGHTFACE_DET_H))
        logger.info("Detector %s ready (ctx_id=%s)", settings.INSIGHTFACE_NAME, ctx_id)
        _DET = det
    return _DET


def align_face(bgr: np.ndarray, landmarks, image_size: int = 112) -> Optional[np.ndarray]:
    """Warp a face to the ArcFace template. Returns CHW float32 in [0,1] or None."""
    if landmarks is None:
        return None
    lmk = np.array(landmarks, dtype=np.float32).reshape(-1, 2)
    if lmk.shape[0] < 5:
        return None
    try:
        M = _estimate_norm(lmk[:5], image_size=image_size)
    except ValueError:
        return None
    aligned = cv2.warpAffine(bgr, M, (image_size, image_size))
    rgb = cv2.cvtColor(aligned, cv2.COLOR_BGR2RGB)
    return np.transpose(rgb, (2, 0, 1)).astype(np.float32) / 255.0


def detect_with_bbox_and_align(bgr: np.ndarray, image_size: int = 112):
    """
    Returns (bbox, aligned_face_chw, score) for the highest-confidence face.
    bbox is (x1,y1,x2,y2) ints in the input image space.
    Returns (None, None, 0.0) if no face is found.
    """
    det = init_detector()
    faces = det.get(bgr)
    if not faces:
        return None, None, 0.0
    face = max(faces, key=lambda f: getattr(f, 'det_score', 0.0))
    score = float(getattr(face, 'det_score', 0.0))
    bbox = getattr(face, 'bbox', None)
    if bbox is not None:
        bbox = tuple(np.array(bbox, dtype=np.int32).tolist())
    # InsightFace may expose 5-point landmarks as 'kps' or 'landmark'
    lmk = getattr(face, 'kps', None)
    if lmk is None:
        lmk = getattr(face, 'landmark', None)
    return bbox, align_face(bgr, lmk, image_size=image_size), score


def detect_and_align(bgr: np.ndarray, image_size: int = 112) -> Optional[np.ndarray]:
    """Aligned face (CHW float32 [0,1]) of the best face, or None."""
    _, chw, _ = detect_with_bbox_and_align(bgr, image_size=image_size)
    return chw
