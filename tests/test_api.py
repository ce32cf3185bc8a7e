"""Tests for the HTTP surface."""
import base64

import pytest
from fastapi.testclient import TestClient

from conftest import SimulationServer, make_photo, make_simulation_client, simulated
from simsmile import main
from simsmile.controller import ALREADY_PROCESSING, FACE_ANALYZER_UNAVAILABLE, StepController


@pytest.fixture
def server():
    return SimulationServer(simulated("data:image/png;base64,c2ltdWxhdGVk"))


@pytest.fixture
def controller(face_analyzer, server):
    return StepController(
        face_analyzer=face_analyzer,
        simulation_client=make_simulation_client(server),
        deadline_seconds=5,
    )


@pytest.fixture
def client(controller, monkeypatch):
    monkeypatch.setattr(main, "_controller", controller)
    monkeypatch.setattr(main.limiter, "enabled", False)
    with TestClient(main.app) as test_client:
        yield test_client


def capture_body(seed=1):
    return {"restImage": make_photo(seed=seed), "smileImage": make_photo(seed=seed + 1)}


class TestHealth:
    """Test health endpoint."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["face_analyzer_available"] is True
        assert data["uptime_seconds"] >= 0


class TestFlow:
    """Test the capture flow end to end over HTTP."""

    def test_initial_state(self, client):
        data = client.get("/state").json()
        assert data["step"] == "entry"
        assert data["progress"] == 0
        assert data["analysis"] is None

    def test_full_flow(self, client, server):
        response = client.post("/start")
        assert response.status_code == 200
        assert response.json()["progress"] == 25

        response = client.post("/capture", json=capture_body())
        assert response.status_code == 202
        assert response.json()["step"] == "processing"
        assert response.json()["progress"] == 50

        # Background processing finishes before the test client returns
        data = client.get("/state").json()
        assert data["step"] == "awaiting_contact"
        assert data["progress"] == 75
        assert data["processing"] is False
        assert data["smileImage"] == "data:image/png;base64,c2ltdWxhdGVk"
        assert data["metrics"]["gingival"]["class"] in ("baja", "media", "alta")
        assert len(data["landmarks"]) == 478
        assert data["analysis"].startswith("## Análisis de su sonrisa")
        assert server.calls == 1

        response = client.post("/contact", json={"email": "ana@example.com", "name": "<b>Ana</b>"})
        assert response.status_code == 200
        data = response.json()
        assert data["step"] == "results"
        assert data["progress"] == 100
        assert data["contactEmail"] == "ana@example.com"

        response = client.post("/reset")
        assert response.json()["step"] == "entry"

    def test_degraded_simulation(self, client, server):
        server.responses.clear()
        client.post("/start")
        client.post("/capture", json=capture_body())

        data = client.get("/state").json()
        assert data["step"] == "awaiting_contact"
        assert data["simulation"]["warnings"] == ["simulation_unavailable"]
        assert data["idealImage"] == data["smileImage"]

    def test_notices_drained(self, client):
        client.post("/start")
        client.post("/capture", json=capture_body())

        notices = client.get("/notices").json()["notices"]
        assert client.get("/notices").json()["notices"] == []
        assert all(n["level"] != "error" for n in notices)


class TestCaptureErrors:
    """Test rejected captures."""

    def test_capture_before_start(self, client):
        response = client.post("/capture", json=capture_body())
        assert response.status_code == 409

    def test_invalid_format(self, client):
        client.post("/start")
        body = {
            "restImage": base64.b64encode(b"GIF89a" + b"\x00" * 32).decode(),
            "smileImage": make_photo(),
        }
        response = client.post("/capture", json=body)
        assert response.status_code == 400
        assert response.json()["detail"].startswith("restImage:")
        assert client.get("/state").json()["step"] == "capturing"

    def test_missing_image(self, client):
        client.post("/start")
        response = client.post("/capture", json={"restImage": make_photo(), "smileImage": ""})
        assert response.status_code == 422

    def test_already_processing(self, client, controller):
        client.post("/start")
        controller.begin_capture(make_photo(seed=5), make_photo(seed=6))

        response = client.post("/capture", json=capture_body())

        assert response.status_code == 409
        assert response.json()["detail"] == ALREADY_PROCESSING

    def test_already_processing_checked_before_upload(self, client, controller):
        """A busy controller answers 409 even for a malformed upload."""
        client.post("/start")
        controller.begin_capture(make_photo(seed=5), make_photo(seed=6))
        body = {
            "restImage": base64.b64encode(b"GIF89a" + b"\x00" * 32).decode(),
            "smileImage": make_photo(),
        }

        response = client.post("/capture", json=body)

        assert response.status_code == 409
        assert response.json()["detail"] == ALREADY_PROCESSING
        notices = client.get("/notices").json()["notices"]
        assert [n["message"] for n in notices] == [ALREADY_PROCESSING]

    def test_failed_run_offers_retry(self, client):
        client.post("/start")
        broken = base64.b64encode(b"\xff\xd8\xff" + b"\x00" * 64).decode()
        client.post("/capture", json={"restImage": broken, "smileImage": broken})

        data = client.get("/state").json()
        assert data["step"] == "capturing"
        assert data["retryAvailable"] is True

        response = client.post("/retry")
        assert response.status_code == 202
        assert client.get("/state").json()["retryCount"] == 1

    def test_retry_without_failure(self, client):
        client.post("/start")
        assert client.post("/retry").status_code == 409


class TestContact:
    """Test contact validation."""

    def _complete(self, client):
        client.post("/start")
        client.post("/capture", json=capture_body())

    def test_invalid_email(self, client):
        self._complete(client)
        response = client.post("/contact", json={"email": "not-an-email"})
        assert response.status_code == 422

    def test_invalid_phone(self, client):
        self._complete(client)
        response = client.post("/contact", json={"email": "ana@example.com", "phone": "12345"})
        assert response.status_code == 422

    def test_contact_too_early(self, client):
        client.post("/start")
        response = client.post("/contact", json={"email": "ana@example.com"})
        assert response.status_code == 409

    def test_reset_too_early(self, client):
        assert client.post("/reset").status_code == 409


class TestFaceAnalyzerRetry:
    """Test re-initialization endpoint."""

    def test_retry_still_failing(self, unavailable_analyzer, monkeypatch):
        controller = StepController(
            face_analyzer=unavailable_analyzer,
            simulation_client=make_simulation_client(SimulationServer()),
        )
        monkeypatch.setattr(main, "_controller", controller)
        with TestClient(main.app) as client:
            notices = client.get("/notices").json()["notices"]
            assert notices[0]["message"] == FACE_ANALYZER_UNAVAILABLE

            response = client.post("/face-analyzer/retry")
            assert response.status_code == 200
            assert response.json()["face_analyzer_available"] is False
            assert client.get("/notices").json()["notices"][0]["action"] == "retry_face_analyzer"

    def test_retry_refused_while_processing(self, client, controller, landmarker):
        client.post("/start")
        controller.begin_capture(make_photo(seed=5), make_photo(seed=6))

        response = client.post("/face-analyzer/retry")

        assert response.status_code == 409
        assert not landmarker.closed
        assert controller.is_processing
