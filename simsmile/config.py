"""Runtime configuration for the SimSmile server.

Thresholds and limits live here, not in the pipeline modules.
Deployment-specific values can be overridden with environment variables.
"""
import os
from pathlib import Path

# --- Logging ---

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

# --- Image preprocessing ---

MAX_IMAGE_DIMENSION: int = 2048  # pixels, per side
JPEG_QUALITY: int = 85
MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024  # 10MB

MIN_WIDTH: int = 640
MIN_HEIGHT: int = 480
MIN_ASPECT_RATIO: float = 0.5
MAX_ASPECT_RATIO: float = 2.0

# Advisory quality checks
MIN_LAPLACIAN_VARIANCE: float = 100.0  # Blur detection
MIN_BRIGHTNESS: float = 30.0
MAX_BRIGHTNESS: float = 225.0

# --- Face landmarks ---

FACE_MODEL_URL: str = os.environ.get(
    "FACE_MODEL_URL",
    "https://storage.googleapis.com/mediapipe-models/face_landmarker/"
    "face_landmarker/float16/1/face_landmarker.task",
)
FACE_MODEL_PATH: Path = Path(
    os.environ.get(
        "FACE_MODEL_PATH",
        str(Path(__file__).parent.parent / "model" / "face_landmarker.task"),
    )
)
FACE_MAX_FACES: int = 1
FACE_MIN_DETECTION_CONFIDENCE: float = 0.5
FACE_MIN_PRESENCE_CONFIDENCE: float = 0.5
FACE_MIN_TRACKING_CONFIDENCE: float = 0.5

# --- Metrics ---

AVERAGE_IPD_MM: float = 63.0  # Adult interpupillary distance, pixel->mm scale
LIP_ELEVATION_BASELINE_MM: float = 6.0  # Upper lip rise that still hides the gum
GINGIVAL_LOW_MM: float = 0.5
GINGIVAL_HIGH_MM: float = 3.0
MIDLINE_TOLERANCE_MM: float = 0.5
MIDLINE_COINCIDENCE_MM: float = 1.0
SMILE_ARC_CONSONANT: float = 0.10  # Lower lip sag / mouth width
SMILE_ARC_FLAT: float = 0.03
BUCCAL_WIDE: float = 0.75  # Below: wide dark corridors
BUCCAL_NARROW: float = 0.95  # Above: no corridor at all
THIRDS_TOLERANCE: float = 0.05

# --- Simulation ---

SIMULATION_URL: str = os.environ.get(
    "SIMULATION_URL",
    "http://localhost:54321/functions/v1/simulate-smile",
)
SIMULATION_API_KEY: str = os.environ.get("SIMULATION_API_KEY", "")
SIMULATION_MAX_ATTEMPTS: int = 3
SIMULATION_BACKOFF_SECONDS: float = 1.0
SIMULATION_REQUEST_TIMEOUT_SECONDS: float = 25.0
SIMULATION_UNAVAILABLE_WARNING: str = "simulation_unavailable"

# --- Controller ---

PIPELINE_DEADLINE_SECONDS: float = float(os.environ.get("PIPELINE_DEADLINE_SECONDS", "30"))
MAX_RUN_ATTEMPTS: int = 3
EXECUTOR_WORKERS: int = 2

# --- HTTP ---

CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
CORS_ORIGIN_REGEX: str = r"https://.*\.vercel\.app"
CAPTURE_RATE_LIMIT: str = "10/minute"
