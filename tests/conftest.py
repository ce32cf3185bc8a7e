"""Shared fixtures: synthetic photos, landmark sets and fake collaborators."""
import base64
import io

import httpx
import numpy as np
import pytest
from PIL import Image

from simsmile.face_analyzer import LANDMARK_INDEX, FaceAnalyzer, to_landmarks
from simsmile.simulation import SimulationClient

MESH_SIZE = 478

# Normalized positions of a symmetric, well-proportioned face
IDEAL_FACE = {
    "forehead": (0.50, 0.15),
    "glabella": (0.50, 0.35),
    "nasion": (0.50, 0.40),
    "nose_tip": (0.50, 0.50),
    "subnasale": (0.50, 0.55),
    "menton": (0.50, 0.75),
    "upper_lip_top": (0.50, 0.60),
    "upper_lip_inner": (0.50, 0.62),
    "lower_lip_inner": (0.50, 0.68),
    "lower_lip_bottom": (0.50, 0.70),
    "mouth_corner_right": (0.40, 0.63),
    "mouth_corner_left": (0.60, 0.63),
    "inner_corner_right": (0.42, 0.63),
    "inner_corner_left": (0.58, 0.63),
    "right_eye_outer": (0.35, 0.40),
    "right_eye_inner": (0.45, 0.40),
    "left_eye_inner": (0.55, 0.40),
    "left_eye_outer": (0.65, 0.40),
}

# At rest the upper lip sits lower than when smiling
IDEAL_REST = {**IDEAL_FACE, "upper_lip_inner": (0.50, 0.645)}


def make_points(overrides=None):
    """478 (x, y, z) points with named landmarks placed on IDEAL_FACE."""
    positions = {**IDEAL_FACE, **(overrides or {})}
    points = [(0.5, 0.5, 0.0)] * MESH_SIZE
    for name, (x, y) in positions.items():
        points[LANDMARK_INDEX[name]] = (x, y, 0.0)
    return points


def make_landmarks(overrides=None):
    return to_landmarks(make_points(overrides))


def make_photo(width=640, height=480, seed=0, fmt="JPEG"):
    """Noisy RGB photo as a data URI."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(40, 215, size=(height, width, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format=fmt)
    encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/{fmt.lower()};base64,{encoded}"


class FakeLandmarker:
    """Stands in for the MediaPipe landmarker handle."""

    def __init__(self, faces=None, error=None):
        self.faces = faces if faces is not None else [make_points()]
        self.error = error
        self.calls = 0
        self.closed = False

    def detect(self, image):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.faces

    def close(self):
        self.closed = True


def failing_factory():
    raise RuntimeError("model download failed")


class SimulationServer:
    """Scripted simulate-smile endpoint for httpx.MockTransport."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
        else:
            response = httpx.Response(500, json={"error": "unavailable"})
        return response

    @property
    def calls(self):
        return len(self.requests)


def simulated(image="data:image/png;base64,c2ltdWxhdGVk", **extra):
    return httpx.Response(200, json={"simulatedImage": image, **extra})


def make_simulation_client(server, **kwargs):
    kwargs.setdefault("backoff_seconds", 0)
    return SimulationClient(
        url="http://simulation.test/functions/v1/simulate-smile",
        api_key="test-key",
        transport=httpx.MockTransport(server),
        **kwargs,
    )


@pytest.fixture
def photo_pair():
    return make_photo(seed=1), make_photo(seed=2)


@pytest.fixture
def landmarker():
    return FakeLandmarker(faces=[make_points()])


@pytest.fixture
def face_analyzer(landmarker):
    analyzer = FaceAnalyzer(factory=lambda: landmarker)
    analyzer.initialize()
    return analyzer


@pytest.fixture
def unavailable_analyzer():
    analyzer = FaceAnalyzer(factory=failing_factory)
    analyzer.initialize()
    return analyzer
