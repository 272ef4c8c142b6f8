"""Tests for the Flask control API."""

import pytest

from conftest import StaticGallerySource
from faceclock.capture.session import CaptureSession
from faceclock.web.server import create_app


class StubLoader(StaticGallerySource):
    def __init__(self, gallery, mocker):
        super().__init__(gallery)
        self.last_loaded_at = 1700000000.0
        self.last_error = None
        self.retry_pending = False
        self.load = mocker.Mock(return_value=gallery)


@pytest.fixture
def loader(gallery, mocker):
    return StubLoader(gallery, mocker)


@pytest.fixture
def session(extractor, loader, reporter, camera, timers, spawner):
    session = CaptureSession(
        extractor,
        loader,
        reporter,
        camera=camera,
        interval=2.0,
        ready_timeout=0.2,
        manual_entry_after=1,
        timer_factory=timers,
        spawn=spawner,
    )
    yield session
    session.close()


@pytest.fixture
def client(session, loader):
    app = create_app(session, loader)
    app.testing = True
    return app.test_client()


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "state": "idle"}


def test_start_status_stop(client) -> None:
    response = client.post("/api/session/start", json={"mode": "checkOut"})
    assert response.status_code == 200
    assert response.get_json()["data"]["state"] == "active"

    status = client.get("/api/status").get_json()["data"]
    assert status["mode"] == "checkOut"
    assert status["galleryLoadedAt"] == 1700000000.0

    response = client.post("/api/session/stop")
    assert response.get_json()["data"]["state"] == "terminated"


def test_double_start_is_conflict(client) -> None:
    client.post("/api/session/start", json={})

    response = client.post("/api/session/start", json={})

    assert response.status_code == 409
    assert response.get_json()["success"] is False


def test_unknown_mode_is_bad_request(client) -> None:
    response = client.post("/api/session/start", json={"mode": "lunch"})

    assert response.status_code == 400


def test_camera_failure_is_service_unavailable(client, capture_backend) -> None:
    capture_backend.available = set()

    response = client.post("/api/session/start", json={})

    assert response.status_code == 503
    assert response.get_json()["reason"] in ("not_found", "permission_denied", "busy")


def test_detect_and_manual_entry(client, spawner, reporter) -> None:
    client.post("/api/session/start", json={})

    response = client.post("/api/session/detect")
    assert response.get_json()["outcome"] == "no_face"

    response = client.post("/api/manual-entry", json={})
    assert response.status_code == 400

    response = client.post("/api/manual-entry", json={"employeeId": "E1"})
    assert response.status_code == 202
    spawner.run_all()

    assert [call[0] for call in reporter.calls] == ["E1"]
    assert client.get("/api/status").get_json()["data"]["recognized"]["employeeId"] == "E1"


def test_manual_entry_without_session_is_conflict(client) -> None:
    response = client.post("/api/manual-entry", json={"employeeId": "E1"})

    assert response.status_code == 409


def test_gallery_listing_hides_embeddings(client) -> None:
    body = client.get("/api/gallery").get_json()

    assert body["count"] == 2
    assert body["data"][0] == {"employeeId": "E1", "displayName": "Alice", "department": None}


def test_gallery_refresh(client, loader) -> None:
    response = client.post("/api/gallery/refresh")

    assert response.status_code == 200
    assert response.get_json()["count"] == 2
    loader.load.assert_called_once_with(force=True)


def test_gallery_refresh_failure(client, loader) -> None:
    loader.last_error = "backend down"
    loader.retry_pending = True

    response = client.post("/api/gallery/refresh")

    assert response.status_code == 502
    assert response.get_json()["retryPending"] is True


@pytest.mark.parametrize("url, body", [
    ("/api/session/start", [1, 2]),
    ("/api/session/start", "checkIn"),
    ("/api/manual-entry", "E1"),
    ("/api/manual-entry", [{"employeeId": "E1"}]),
])
def test_non_object_json_body_is_bad_request(client, url, body) -> None:
    response = client.post(url, json=body)

    assert response.status_code == 400
    assert response.get_json()["error"] == "Request body must be a JSON object"
