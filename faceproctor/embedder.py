"""
Embedder interface.

Two ways to plug a model:
- TorchScript model via EMBEDDER_TORCHSCRIPT (recommended for deploy)
- PyTorch state_dict via EMBEDDER_STATE_DICT + EMBEDDER_ARCH, built with a
  ``backbones.get_model`` factory (insightface arcface_torch layout)

Model contract: input is CHW float32 [0..1], aligned face (e.g., 112x112),
output is 1D embedding vector. We L2-normalize so Euclidean distances between
embeddings fall in [0, 2].
"""
import importlib
import logging
import os

import numpy as np
import torch

from . import settings

logger = logging.getLogger(__name__)

_DEVICE = None
_MODEL = None

_TORCHSCRIPT_FALLBACKS = (
    "/srv/faceproctor/models/embedder.ts",
    "/srv/faceproctor/models/model.ts",
)


class EmbedderNotLoadedError(RuntimeError):
    pass


def _default_state_dict() -> str:
    if settings.EMBEDDER_STATE_DICT:
        return settings.EMBEDDER_STATE_DICT
    repo_root = os.path.dirname(os.path.dirname(__file__))
    candidate = os.path.join(repo_root, "models", "face", "model.pt")
    return candidate if os.path.isfile(candidate) else ""


def _load_from_torchscript(device: torch.device) -> bool:
    global _MODEL
    for p in (settings.EMBEDDER_TORCHSCRIPT, *_TORCHSCRIPT_FALLBACKS):
        if not p:
            continue
        if not os.path.isfile(p):
            logger.debug("Embedder: file not found: %s", p)
            continue
        logger.info("Embedder: trying TorchScript load: %s", p)
        try:
            m = torch.jit.load(p, map_location=device)
        except RuntimeError as e:
            logger.warning("Embedder: TorchScript load failed for %s: %s", p, e)
            continue
        _MODEL = m.eval()
        logger.info("Embedder: loaded TorchScript from %s", p)
        return True
    return False


def _load_from_state_dict(device: torch.device, path: str) -> bool:
    global _MODEL
    if not os.path.isfile(path):
        logger.warning("Embedder: state_dict file not found: %s", path)
        return False
    try:
        get_model = importlib.import_module("backbones").get_model
    except ImportError as e:
        raise EmbedderNotLoadedError(
            "backbones.get_model not available. Install your backbone module or export TorchScript."
        ) from e
    logger.info("Embedder: loading backbone %s from state_dict %s", settings.EMBEDDER_ARCH, path)
    net = get_model(settings.EMBEDDER_ARCH, fp16=False)
    sd = torch.load(path, map_location=device)
    if isinstance(sd, dict) and "state_dict" in sd:
        sd = sd["state_dict"]
    missing, unexpected = net.load_state_dict(sd, strict=False)
    if missing:
        logger.warning("Embedder: missing %d keys, first 10: %s", len(missing), missing[:10])
    if unexpected:
        logger.warning("Embedder: unexpected %d keys, first 10: %s", len(unexpected), unexpected[:10])
    _MODEL = net.to(device).eval()
    logger.info("Embedder: loaded nn.Module via state_dict")
    return True


def load_embedder(device: str = "cuda:0"):
    global _DEVICE
    if _MODEL is not None:
        return _MODEL
    _DEVICE = torch.device(device if torch.cuda.is_available() else "cpu")
    logger.info(
        "Embedder: cuda available=%s, requested device=%s, using device=%s",
        torch.cuda.is_available(), device, _DEVICE,
    )

    # Try state_dict first if provided, else TorchScript
    loaded = False
    state_dict = _default_state_dict()
    if state_dict:
        loaded = _load_from_state_dict(_DEVICE, state_dict)
    if not loaded:
        loaded = _load_from_torchscript(_DEVICE)
    if not loaded:
        raise EmbedderNotLoadedError(
            "No embedder configured. Set EMBEDDER_STATE_DICT + EMBEDDER_ARCH or EMBEDDER_TORCHSCRIPT."
        )

    # Warmup
    with torch.inference_mode():
        dummy = torch.randn(1, 3, 112, 112, device=_DEVICE)
        _ = _MODEL(dummy)
    return _MODEL


def get_embedding(face_chw_float01: np.ndarray) -> np.ndarray:
    """Run inference on aligned face (CHW float32 [0..1]). Returns L2-normalized embedding (np.float32)."""
    if _MODEL is None:
        raise EmbedderNotLoadedError("Embedder not loaded. Call load_embedder() at startup.")
    x = torch.from_numpy(face_chw_float01).unsqueeze(0).to(_DEVICE)
    with torch.inference_mode():
        emb = _MODEL(x).detach().float().cpu().numpy()[0]
    n = np.linalg.norm(emb) + 1e-9
    return (emb / n).astype(np.float32)


def get_embedder_info() -> dict:
    info = {
        "arch": settings.EMBEDDER_ARCH,
        "torchscript": bool(settings.EMBEDDER_TORCHSCRIPT),
        "state_dict": bool(_default_state_dict()),
        "device": str(_DEVICE) if _DEVICE is not None else ("cuda" if torch.cuda.is_available() else "cpu"),
        "torch": torch.__version__,
        "loaded": _MODEL is not None,
    }
    if _MODEL is not None:
        info["model_class"] = _MODEL.__class__.__name__
    return info
