# faceclock/core/settings.py
"""
Configuration for the faceclock kiosk.

Load order: dataclass defaults -> config/config.json -> FACECLOCK_* env vars
-> platform-computed defaults. Command-line flags are applied on top by
faceclock.main.
"""
import os
import json
import logging
import platform
from dataclasses import dataclass, field, fields

logger = logging.getLogger(__name__)


# === PLATFORM DETECTION ===
IS_WINDOWS = platform.system() == "Windows"
IS_PI = platform.system() == "Linux" and os.path.exists("/proc/device-tree/model")

# === PATHS ===
BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
CONFIG_PATH = os.environ.get(
    "FACECLOCK_CONFIG",
    os.path.join(BASE_DIR, 'config', 'config.json')
)

ENV_PREFIX = "FACECLOCK_"


def _load_json_config(path: str) -> dict:
    """Load config from a JSON file, {} if missing or invalid."""
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring invalid config {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config {path}: top level must be an object")
        return {}
    return data


def _coerce(value: str, current):
    """Convert an env var string to the type of the current value."""
    if isinstance(current, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


@dataclass
class Settings:
    """Runtime configuration. Field names double as config.json keys."""

    # === PLATFORM (read-only) ===
    IS_WINDOWS: bool = field(default_factory=lambda: IS_WINDOWS)
    IS_PI: bool = field(default_factory=lambda: IS_PI)
    BASE_DIR: str = field(default_factory=lambda: BASE_DIR)

    # === MATCHING ===
    MATCH_THRESHOLD: float = 0.6         # Euclidean distance, strictly below = match
    EMBEDDING_DIM: int = 128

    # === CAPTURE LOOP ===
    DETECTION_INTERVAL: float = 2.0      # seconds between detection ticks
    CAMERA_READY_TIMEOUT: float = 10.0   # wait for first frame
    MANUAL_ENTRY_AFTER_FAILURES: int = 5
    CONFIRMATION_SECONDS: float = 3.0    # show recognized name before next session
    REPORT_RETRY_DELAY: float = 3.0      # resume detecting after a failed report
    DEFAULT_MODE: str = "auto"           # checkIn, checkOut, or auto (ask the backend)

    # === CAMERA ===
    CAMERA_ID: int = 0
    CAMERA_WIDTH: int = 640
    CAMERA_HEIGHT: int = 480
    CAMERA_FPS: int = 30
    CAMERA_MIN_WIDTH: int = 320
    CAMERA_MIN_HEIGHT: int = 240
    CAMERA_MAX_DEVICES: int = 4          # indices tried by the any-device fallback
    CAMERA_LOST_AFTER_FRAMES: int = 5    # consecutive empty reads before the session ends

    # === BACKEND ===
    API_BASE_URL: str = "http://localhost:3000"
    API_TOKEN: str = ""
    GALLERY_PATH: str = "/api/attendance/face-recognition-data"
    REPORT_PATH: str = "/api/attendance/record"
    REPORT_ENDPOINTS_PER_MODE: bool = False
    CHECK_IN_PATH: str = "/api/attendance/check-in"
    CHECK_OUT_PATH: str = "/api/attendance/check-out"
    CHECK_STATUS_PATH: str = "/api/attendance/check-status"
    HTTP_TIMEOUT: float = 10.0
    REQUIRE_SECURE_BACKEND: bool = True

    # === GALLERY ===
    GALLERY_REFRESH_INTERVAL: float = 30.0
    GALLERY_CACHE_TTL: float = 30.0
    GALLERY_RETRY_DELAY: float = 5.0
    GALLERY_MAX_RETRIES: int = 5

    # === MODELS ===
    DETECTION_MODEL: str = "models/detection/version-RFB-320_int8_without_postprocessing.tflite"
    RECOGNITION_MODEL: str = "models/recognition/MobileFaceNet_int8.tflite"
    MODEL_CACHE_DIR: str = "models/cache"
    DETECTION_CONFIDENCE: float = 0.6
    MIN_FACE_SIZE: int = 60
    MODEL_LOAD_RETRIES: int = 3
    MODEL_RETRY_DELAY: float = 2.0
    TFLITE_NUM_THREADS: int = 4

    # === WEB SERVER ===
    ENABLE_WEB_SERVER: bool = True
    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = 5000

    def __post_init__(self):
        self._load_from_json()
        self._load_from_env()
        self._compute_defaults()

    def _load_from_json(self):
        config = _load_json_config(CONFIG_PATH)
        for key, value in config.items():
            if hasattr(self, key) and value is not None:
                setattr(self, key, value)

    def _load_from_env(self):
        for f in fields(self):
            raw = os.environ.get(ENV_PREFIX + f.name)
            if raw is None:
                continue
            try:
                setattr(self, f.name, _coerce(raw, getattr(self, f.name)))
            except ValueError:
                logger.warning(f"Ignoring {ENV_PREFIX}{f.name}={raw!r}: bad value")

    def _compute_defaults(self):
        """Smaller camera and fewer threads on a Raspberry Pi."""
        if self.IS_PI:
            self.CAMERA_WIDTH = min(self.CAMERA_WIDTH, 320)
            self.CAMERA_HEIGHT = min(self.CAMERA_HEIGHT, 240)
            self.CAMERA_FPS = min(self.CAMERA_FPS, 15)
            self.TFLITE_NUM_THREADS = min(self.TFLITE_NUM_THREADS, 2)
        self.API_BASE_URL = self.API_BASE_URL.rstrip('/')

    # === PROPERTY ALIASES ===
    @property
    def match_threshold(self) -> float:
        return self.MATCH_THRESHOLD

    @property
    def detection_interval(self) -> float:
        return self.DETECTION_INTERVAL

    @property
    def embedding_dim(self) -> int:
        return self.EMBEDDING_DIM

    @property
    def tflite_num_threads(self) -> int:
        return self.TFLITE_NUM_THREADS

    @property
    def gallery_url(self) -> str:
        return self.API_BASE_URL + self.GALLERY_PATH

    @property
    def web_port(self) -> int:
        return self.WEB_PORT


# === SINGLETON ===
settings = Settings()
