"""Tests for the process-wide unlock service."""

import time

import pytest

from fakes import FakeMatcher, FakeProvider, ScriptedDetector, camera_factory
from unlock_app.models import EventBroadcaster, UnlockService
from unlock_app.services.reference_store import DirectoryReferenceStore
from unlock_core.unlock.config import UnlockConfig


class RecordingAudit:
    def __init__(self):
        self.events = []

    def log_unlock_started(self, identity, device_id, ip_address=None):
        self.events.append(("started", identity, device_id))

    def log_unlock_finished(self, identity, device_id, outcome, attempts, confidence=None):
        self.events.append(("finished", identity, outcome))

    def log_capture_refused(self, identity, device_id, reason):
        self.events.append(("refused", identity, reason))


@pytest.fixture
def service(tmp_path):
    (tmp_path / "alice.jpg").write_bytes(b"\xff\xd8enrolled")
    svc = UnlockService(
        reference_store=DirectoryReferenceStore(tmp_path),
        matcher=FakeMatcher(),
        broadcaster=EventBroadcaster(),
        default_config=UnlockConfig(dwell_count=1, sample_interval_ms=10),
        camera_factory=camera_factory(FakeProvider()),
        detector_factory=lambda: ScriptedDetector(then=0.1),
        audit=RecordingAudit(),
    )
    yield svc
    svc.shutdown()


def test_start_is_audited_before_an_immediate_finish(service):
    service.start("alice", {"session_timeout_ms": 1}, device_id="kiosk")
    assert service.controller.wait(timeout=2) is not None
    deadline = time.monotonic() + 2
    while len(service.audit.events) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)

    assert [event[0] for event in service.audit.events] == ["started", "finished"]
    assert service.audit.events[1] == ("finished", "alice", "timed_out")


def test_shutdown_cancels_session_and_drops_sse_clients(service):
    client_queue = service.broadcaster.add_client()
    service.start("alice", device_id="kiosk")

    service.shutdown()

    assert service.controller.result.outcome.value == "cancelled"
    assert "unlock_finished" in client_queue.get_nowait()
    assert service.broadcaster.get_client_count() == 0
