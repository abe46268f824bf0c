"""Tests for the /api/unlock HTTP surface."""

import time

import pytest

from fakes import FakeMatcher, FakeProvider, ScriptedDetector, camera_factory
from unlock_app import create_app
from unlock_app.services.reference_store import DirectoryReferenceStore
from unlock_core.unlock.config import UnlockConfig
from unlock_core.vision.camera_manager import DeviceUnavailable


@pytest.fixture
def ref_dir(tmp_path):
    refs = tmp_path / "refs"
    refs.mkdir()
    (refs / "alice.jpg").write_bytes(b"\xff\xd8enrolled")
    return refs


@pytest.fixture
def make_app(tmp_path, ref_dir, reset_root_logging):
    apps = []

    def _make(confidence=0.9, provider=None, matcher=None, **overrides):
        config = {
            "TESTING": True,
            "LOG_DIR": str(tmp_path / "logs"),
            "SSE_HEARTBEAT_SECONDS": 0.05,
            "UNLOCK_DEFAULTS": UnlockConfig(
                dwell_count=1, sample_interval_ms=10, session_timeout_ms=5000
            ),
        }
        config.update(overrides)
        app = create_app(
            config,
            matcher=matcher,
            reference_store=DirectoryReferenceStore(ref_dir),
            camera_factory=camera_factory(provider or FakeProvider()),
            detector_factory=lambda: ScriptedDetector(then=confidence),
        )
        apps.append(app)
        return app

    yield _make
    for app in apps:
        app.extensions["unlock_service"].shutdown()


def _wait_ready(app, timeout=2.0):
    controller = app.extensions["unlock_service"].controller
    return controller.wait_ready(timeout=timeout)


def test_start_capture_verifies(make_app):
    app = make_app(matcher=FakeMatcher(similarity=0.93))
    client = app.test_client()

    resp = client.post("/api/unlock/start", json={"identity": "alice", "deviceId": "kiosk-1"})
    assert resp.status_code == 202
    body = resp.get_json()
    assert body["success"] is True
    assert body["status"]["identity"] == "alice"
    assert body["status"]["device_id"] == "kiosk-1"

    assert _wait_ready(app)
    resp = client.post("/api/unlock/capture")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["verdict"]["outcome"] == "verified"
    assert body["status"]["result"]["outcome"] == "verified"

    status = client.get("/api/unlock/status").get_json()["status"]
    assert status["active"] is False


def test_second_start_conflicts(make_app):
    app = make_app(matcher=FakeMatcher(), confidence=0.1)
    client = app.test_client()

    assert client.post("/api/unlock/start", json={"identity": "alice"}).status_code == 202
    resp = client.post("/api/unlock/start", json={"identity": "alice"})

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "session_active"


def test_start_after_finished_session_is_allowed(make_app):
    app = make_app(matcher=FakeMatcher(), confidence=0.1)
    client = app.test_client()

    client.post("/api/unlock/start", json={"identity": "alice"})
    client.post("/api/unlock/cancel")

    assert client.post("/api/unlock/start", json={"identity": "alice"}).status_code == 202


def test_unknown_identity_is_404(make_app):
    client = make_app(matcher=FakeMatcher()).test_client()
    resp = client.post("/api/unlock/start", json={"identity": "mallory"})
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "reference_unavailable"


@pytest.mark.parametrize("payload", [
    {},
    {"identity": "alice", "config": {"dwellCount": 0}},
    {"identity": "alice", "config": {"bogus": 1}},
    {"identity": "alice", "config": [1, 2]},
])
def test_bad_requests_are_400(make_app, payload):
    client = make_app(matcher=FakeMatcher()).test_client()
    assert client.post("/api/unlock/start", json=payload).status_code == 400


def test_camera_unavailable_is_503(make_app):
    provider = FakeProvider(DeviceUnavailable("no camera"))
    client = make_app(matcher=FakeMatcher(), provider=provider).test_client()

    resp = client.post("/api/unlock/start", json={"identity": "alice"})

    assert resp.status_code == 503
    assert resp.get_json()["error"] == "device_unavailable"


def test_missing_backend_is_503(make_app):
    client = make_app(matcher=None, MATCHER_BACKEND="none").test_client()
    resp = client.post("/api/unlock/start", json={"identity": "alice"})
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "backend_unavailable"


def test_capture_when_not_ready_is_409(make_app):
    app = make_app(matcher=FakeMatcher(), confidence=0.1)
    client = app.test_client()

    assert client.post("/api/unlock/capture").status_code == 409

    client.post("/api/unlock/start", json={"identity": "alice"})
    resp = client.post("/api/unlock/capture")
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "not_ready"
    assert resp.get_json()["status"]["state"] == "sampling"


def test_cancel_reports_cancelled(make_app):
    client = make_app(matcher=FakeMatcher(), confidence=0.1).test_client()
    client.post("/api/unlock/start", json={"identity": "alice"})

    resp = client.post("/api/unlock/cancel")

    assert resp.status_code == 200
    assert resp.get_json()["status"]["result"]["outcome"] == "cancelled"


def test_status_without_session(make_app):
    body = make_app(matcher=FakeMatcher()).test_client().get("/api/unlock/status").get_json()
    assert body["status"] == {"active": False, "state": "idle", "result": None}


def test_events_stream_emits_unlock_finished(make_app):
    app = make_app(matcher=FakeMatcher(), confidence=0.1)
    client = app.test_client()

    resp = client.get("/api/unlock/events")
    assert resp.mimetype == "text/event-stream"
    chunks = iter(resp.response)
    assert b"connected" in next(chunks)

    client.post("/api/unlock/start", json={"identity": "alice"})
    client.post("/api/unlock/cancel")

    finished = []
    deadline = time.monotonic() + 2
    while time.monotonic() < deadline and not finished:
        chunk = next(chunks)
        if b"unlock_finished" in chunk:
            finished.append(chunk)
    resp.close()

    assert len(finished) == 1
    assert finished[0].startswith(b"event: unlock_finished\n")
    assert b'"outcome": "cancelled"' in finished[0]
    assert app.extensions["event_broadcaster"].get_client_count() == 0


def test_events_stream_sends_heartbeats(make_app):
    client = make_app(matcher=FakeMatcher()).test_client()
    resp = client.get("/api/unlock/events")
    chunks = iter(resp.response)
    next(chunks)
    assert b"heartbeat" in next(chunks)
    resp.close()
