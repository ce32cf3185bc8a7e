"""Facial landmark detection behind a capability-degraded interface.

The landmark model (MediaPipe Face Landmarker) is created once per process.
Callers always get a Detection back, never an exception: either landmarks,
"unavailable" (the model could not be created) or "no_face".
"""
import logging
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import httpx
import numpy as np

from .config import (
    FACE_MAX_FACES,
    FACE_MIN_DETECTION_CONFIDENCE,
    FACE_MIN_PRESENCE_CONFIDENCE,
    FACE_MIN_TRACKING_CONFIDENCE,
    FACE_MODEL_PATH,
    FACE_MODEL_URL,
)
from .errors import FaceAnalyzerInitError
from .schemas import Detection, Landmark

logger = logging.getLogger(__name__)

# Face mesh topology indices used by the metrics engine.
# Sides are the subject's: "right" points sit on the left of the image.
LANDMARK_INDEX = {
    "forehead": 10,
    "glabella": 9,
    "nasion": 168,
    "nose_tip": 1,
    "subnasale": 2,
    "menton": 152,
    "upper_lip_top": 0,
    "upper_lip_inner": 13,
    "lower_lip_inner": 14,
    "lower_lip_bottom": 17,
    "mouth_corner_right": 61,
    "mouth_corner_left": 291,
    "inner_corner_right": 78,
    "inner_corner_left": 308,
    "right_eye_outer": 33,
    "right_eye_inner": 133,
    "left_eye_inner": 362,
    "left_eye_outer": 263,
}
LANDMARK_NAMES = {index: name for name, index in LANDMARK_INDEX.items()}


class _MediaPipeLandmarker:
    """Thin wrapper returning plain (x, y, z) tuples per detected face."""

    def __init__(self, landmarker, mp_module):
        self._landmarker = landmarker
        self._mp = mp_module

    def detect(self, image: np.ndarray) -> List[List[tuple]]:
        mp_image = self._mp.Image(
            image_format=self._mp.ImageFormat.SRGB,
            data=np.ascontiguousarray(image),
        )
        result = self._landmarker.detect(mp_image)
        return [[(p.x, p.y, p.z) for p in face] for face in result.face_landmarks]

    def close(self) -> None:
        self._landmarker.close()


def _ensure_model(path: Path, url: str) -> Path:
    """Download the landmark model once into the local cache."""
    if path.exists():
        return path

    logger.info(f"Downloading face landmark model from {url}")
    path.parent.mkdir(parents=True, exist_ok=True)
    response = httpx.get(url, timeout=60, follow_redirects=True)
    response.raise_for_status()
    path.write_bytes(response.content)
    logger.info(f"Saved face landmark model to {path} ({len(response.content)} bytes)")
    return path


def create_landmarker() -> _MediaPipeLandmarker:
    """Create the MediaPipe Face Landmarker in IMAGE mode.

    Raises:
        FaceAnalyzerInitError: If mediapipe is missing, the model cannot be
            fetched or the landmarker cannot be built on this host.
    """
    try:
        import mediapipe as mp
        from mediapipe.tasks import python as mp_tasks
        from mediapipe.tasks.python import vision

        model_path = _ensure_model(FACE_MODEL_PATH, FACE_MODEL_URL)
        options = vision.FaceLandmarkerOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=str(model_path)),
            running_mode=vision.RunningMode.IMAGE,
            num_faces=FACE_MAX_FACES,
            min_face_detection_confidence=FACE_MIN_DETECTION_CONFIDENCE,
            min_face_presence_confidence=FACE_MIN_PRESENCE_CONFIDENCE,
            min_tracking_confidence=FACE_MIN_TRACKING_CONFIDENCE,
        )
        landmarker = vision.FaceLandmarker.create_from_options(options)
    except Exception as e:
        raise FaceAnalyzerInitError(f"Face landmarker unavailable: {e}") from e

    return _MediaPipeLandmarker(landmarker, mp)


def to_landmarks(points: Sequence[Sequence[float]]) -> List[Landmark]:
    """Convert raw (x, y, z) points into an ordered LandmarkSet."""
    landmarks = []
    for index, point in enumerate(points):
        x, y = float(point[0]), float(point[1])
        z = float(point[2]) if len(point) > 2 else 0.0
        landmarks.append(
            Landmark(index=index, name=LANDMARK_NAMES.get(index), x=x, y=y, z=z)
        )
    return landmarks


class FaceAnalyzer:
    """Adapter around the landmark capability.

    Initialization is attempted once; a failure stays in place until
    reinitialize() is called explicitly, so the model download is never
    repeated behind the user's back. Detection and handle replacement share
    one lock, so the handle is never closed while a detection is running.
    """

    def __init__(self, factory: Optional[Callable[[], Any]] = None):
        self._factory = factory or create_landmarker
        self._handle = None
        self._lock = threading.Lock()
        self._init_attempted = False
        self.init_error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self._handle is not None

    def initialize(self) -> bool:
        """Create the capability unless an attempt was already made."""
        with self._lock:
            if self._init_attempted:
                return self.available
            return self._create()

    def reinitialize(self) -> bool:
        """Explicit user-requested retry after a failed initialization."""
        with self._lock:
            self._release()
            return self._create()

    def close(self) -> None:
        with self._lock:
            self._release()

    def detect(self, image: np.ndarray) -> Detection:
        """Detect one face. Never raises."""
        with self._lock:
            if self._handle is None:
                return Detection(status="unavailable")

            try:
                faces = self._handle.detect(image)
            except Exception as e:
                logger.error(f"Landmark detection failed: {e}")
                return Detection(status="no_face")

        if not faces or not faces[0]:
            logger.info("No face found in image")
            return Detection(status="no_face")

        return Detection(status="detected", landmarks=to_landmarks(faces[0]))

    def _release(self) -> None:
        if self._handle is not None and hasattr(self._handle, "close"):
            self._handle.close()
        self._handle = None

    def _create(self) -> bool:
        self._init_attempted = True
        try:
            self._handle = self._factory()
        except Exception as e:
            self._handle = None
            self.init_error = str(e)
            logger.error(f"Error initializing face landmarker: {e}")
            return False

        self.init_error = None
        logger.info("Face landmarker initialized successfully")
        return True
