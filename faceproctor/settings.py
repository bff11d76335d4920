import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))


# ====== Core Config ======
API_PREFIX = "/api"
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "20"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


# Identity checks (face-api style: Euclidean distance, lower = stricter)
CHECK_INTERVAL_MS = int(os.getenv("CHECK_INTERVAL_MS", "15000"))
INITIAL_DELAY_MS = int(os.getenv("INITIAL_DELAY_MS", "3000"))
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "0.6"))


# Warning banner
WARNING_DISPLAY_MS = int(os.getenv("WARNING_DISPLAY_MS", "8000"))
SEVERE_MISMATCH_COUNT = int(os.getenv("SEVERE_MISMATCH_COUNT", "3"))


# Upload limits / validation
IMG_MAX_MB = int(os.getenv("IMG_MAX_MB", "8"))
ALLOWED_IMG_MIMES = {"image/jpeg", "image/png", "image/JPEG", "image/PNG"}
REFERENCE_FETCH_TIMEOUT_S = float(os.getenv("REFERENCE_FETCH_TIMEOUT_S", "10"))


# Device selection
DEVICE = os.getenv("DEVICE", "cuda:0")


# Detector
INSIGHTFACE_NAME = os.getenv("INSIGHTFACE_NAME", "buffalo_l")  # buffalo_sc is faster
INSIGHTFACE_DET_W = int(os.getenv("INSIGHTFACE_DET_W", "640"))
INSIGHTFACE_DET_H = int(os.getenv("INSIGHTFACE_DET_H", "640"))


# Embedder (TorchScript preferred; state_dict needs a backbones module)
EMBEDDER_TORCHSCRIPT = os.getenv("EMBEDDER_TORCHSCRIPT", "")
EMBEDDER_STATE_DICT = os.getenv("EMBEDDER_STATE_DICT", "")
EMBEDDER_ARCH = os.getenv("EMBEDDER_ARCH", "r100")


# CORS (front and API on same origin → keep strict; otherwise, add your domain)
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if os.getenv("CORS_ALLOW_ORIGINS") else []
