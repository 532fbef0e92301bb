import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _csv_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = tuple(token.strip() for token in raw.split(",") if token.strip())
    return values or default


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("CHECKIN_DATA_DIR", str(BASE_DIR / "data")))
LOG_DIR = Path(os.getenv("CHECKIN_LOG_DIR", str(BASE_DIR / "logs")))
DB_PATH = Path(os.getenv("CHECKIN_DB_PATH", str(DATA_DIR / "checkin.db")))
LOG_FILE_NAME = os.getenv("CHECKIN_LOG_FILE", "checkin.log")
LOG_LEVEL = os.getenv("CHECKIN_LOG_LEVEL", "INFO").upper()

# Webcam settings
CAMERA_INDEX = _int_env("CHECKIN_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("CHECKIN_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("CHECKIN_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("CHECKIN_FRAME_FPS", 30)
CAMERA_BACKEND_ORDER = _csv_env("CHECKIN_CAMERA_BACKEND_ORDER", ())

# Face detection settings
MAX_TRACKED_FACES = _int_env("CHECKIN_MAX_TRACKED_FACES", 3)
MIN_DETECTION_CONFIDENCE = 0.3
FACE_CROP_PADDING = 0.25
FACE_MIN_CROP_SIDE = 160
INFERENCE_DEVICE = os.getenv("CHECKIN_DEVICE", "").strip().lower()

# Liveness settings
EYE_ASPECT_RATIO_THRESHOLD = _float_env("CHECKIN_EAR_THRESHOLD", 0.25)
HEAD_MOVEMENT_THRESHOLD = _float_env("CHECKIN_HEAD_MOVEMENT_THRESHOLD", 0.15)
FACE_AREA_VARIATION_THRESHOLD = _float_env("CHECKIN_FACE_AREA_VARIATION", 0.10)
MINIMUM_BLINKS = _int_env("CHECKIN_MINIMUM_BLINKS", 2)
MINIMUM_HEAD_MOVEMENTS = _int_env("CHECKIN_MINIMUM_HEAD_MOVEMENTS", 3)
LIVENESS_WINDOW_SECONDS = _float_env("CHECKIN_LIVENESS_WINDOW_SECONDS", 5.0)
LIVENESS_MAX_SAMPLES = _int_env("CHECKIN_LIVENESS_MAX_SAMPLES", 30)
LIVENESS_DECISION_THRESHOLD = 0.6
NOSE_CENTER_DEVIATION = 0.1

# Recognition settings
SIMILARITY_THRESHOLD = _float_env("CHECKIN_SIMILARITY_THRESHOLD", 0.7)
SIMILARITY_METRIC = os.getenv("CHECKIN_SIMILARITY_METRIC", "cosine").strip().lower()
DUPLICATE_FACE_SIMILARITY_THRESHOLD = _float_env("CHECKIN_DUPLICATE_THRESHOLD", 0.92)
RECOGNITION_INTERVAL_SECONDS = _float_env("CHECKIN_RECOGNITION_INTERVAL", 1.0)
RECOGNITION_CACHE_TTL_SECONDS = _float_env("CHECKIN_CACHE_TTL", 3.0)
RECOGNITION_CACHE_BUCKET = _float_env("CHECKIN_CACHE_BUCKET", 0.05)
EMBEDDING_TIMEOUT_SECONDS = _float_env("CHECKIN_EMBEDDING_TIMEOUT", 2.0)
RECOGNITION_WORKERS = _int_env("CHECKIN_RECOGNITION_WORKERS", 2)

# Face slot tracking
TRACK_MAX_CENTER_DISTANCE = _float_env("CHECKIN_TRACK_MAX_CENTER_DISTANCE", 0.15)
TRACK_MAX_AGE_SECONDS = _float_env("CHECKIN_TRACK_MAX_AGE", 1.0)

# Attendance settings
ATTENDANCE_COOLDOWN_SECONDS = _float_env("CHECKIN_ATTENDANCE_COOLDOWN", 5.0)
ATTENDANCE_GUARD_SCOPE = os.getenv("CHECKIN_ATTENDANCE_GUARD_SCOPE", "identity").strip().lower()
DEFAULT_WORK_START = os.getenv("CHECKIN_WORK_START", "08:00")
DEFAULT_WORK_END = os.getenv("CHECKIN_WORK_END", "17:00")
DEFAULT_LATE_TOLERANCE_MINUTES = _int_env("CHECKIN_LATE_TOLERANCE", 15)
DEFAULT_EARLY_LEAVE_TOLERANCE_MINUTES = _int_env("CHECKIN_EARLY_TOLERANCE", 15)
DEFAULT_WORK_DAYS = _csv_env("CHECKIN_WORK_DAYS", ("0", "1", "2", "3", "4"))
RESULT_BANNER_SECONDS = 3.0
SHOW_LIVENESS_DETAILS = _bool_env("CHECKIN_SHOW_LIVENESS_DETAILS", True)

# Enrollment settings
SAMPLES_PER_POSITION = _int_env("CHECKIN_SAMPLES_PER_POSITION", 3)
SAMPLE_EVERY_N_FRAMES = _int_env("CHECKIN_SAMPLE_EVERY_N_FRAMES", 4)
FACE_QUALITY_MIN_SIDE = 100
