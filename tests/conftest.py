"""Shared fakes: timers, camera backend, extractor, reporter."""

from __future__ import annotations

import numpy as np
import pytest

from faceclock.core.camera import CameraConfig, CameraManager
from faceclock.data.gallery import EnrolledFace, Gallery
from faceclock.data.reporter import AttendanceMode, ReportResult
from faceclock.recognition.extractor import Detection


# ----------------------------------------------------------------------
# Timers
# ----------------------------------------------------------------------
class FakeTimer:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        """Run the callback the way threading.Timer would, even if cancelled late."""
        self.fn()


class TimerFactory:
    """threading.Timer replacement that records every timer it creates."""

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, delay, fn):
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]

    def fire_next(self) -> FakeTimer:
        timer = self.pending[0]
        timer.cancelled = True
        timer.fire()
        return timer


@pytest.fixture
def timers() -> TimerFactory:
    return TimerFactory()


class Spawner:
    """Collects report calls so a test decides when they run."""

    def __init__(self):
        self.calls = []

    def __call__(self, fn):
        self.calls.append(fn)

    def run_all(self):
        calls, self.calls = self.calls, []
        for fn in calls:
            fn()


@pytest.fixture
def spawner() -> Spawner:
    return Spawner()


# ----------------------------------------------------------------------
# Camera backend
# ----------------------------------------------------------------------
class FakeCapture:
    def __init__(self, device_id, backend):
        self.device_id = device_id
        self.backend = backend
        self.props = {}
        self.released = False

    def isOpened(self):
        return not self.released and self.device_id in self.backend.available

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        if prop in self.backend.forced_props:
            return self.backend.forced_props[prop]
        return self.props.get(prop, 0)

    def read(self):
        if self.released or not self.backend.frames:
            return False, None
        return True, np.zeros((240, 320, 3), dtype=np.uint8)

    def grab(self):
        return not self.released

    def release(self):
        if not self.released:
            self.released = True
            self.backend.open_streams -= 1


class FakeCaptureBackend:
    """capture_factory for CameraManager; counts live streams."""

    def __init__(self, available=(0,), frames=True):
        self.available = set(available)
        self.frames = frames
        self.forced_props = {}
        self.opened = []
        self.open_streams = 0
        self.max_open_streams = 0

    def __call__(self, device_id):
        cap = FakeCapture(device_id, self)
        self.opened.append(cap)
        self.open_streams += 1
        self.max_open_streams = max(self.max_open_streams, self.open_streams)
        return cap


@pytest.fixture
def capture_backend() -> FakeCaptureBackend:
    return FakeCaptureBackend()


@pytest.fixture
def camera(capture_backend) -> CameraManager:
    return CameraManager(
        device_id=0,
        config=CameraConfig(warmup_frames=0, max_devices=3),
        capture_factory=capture_backend,
    )


@pytest.fixture(autouse=True)
def _reset_active_camera():
    CameraManager._active = None
    yield
    active = CameraManager._active
    if active is not None:
        active.release()
    CameraManager._active = None


# ----------------------------------------------------------------------
# Recognition / backend
# ----------------------------------------------------------------------
def make_face(employee_id, embedding, name=None) -> EnrolledFace:
    return EnrolledFace(
        employee_id=employee_id,
        display_name=name or f"Employee {employee_id}",
        embedding=None if embedding is None else np.asarray(embedding, dtype=np.float32),
    )


class StaticGallerySource:
    def __init__(self, gallery: Gallery):
        self.gallery = gallery


class FakeExtractor:
    """Returns scripted embeddings; None means 'no face in frame'."""

    def __init__(self, embeddings=()):
        self.script = list(embeddings)
        self.default = None
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        embedding = self.script.pop(0) if self.script else self.default
        if embedding is None:
            return None
        return Detection(
            embedding=np.asarray(embedding, dtype=np.float32),
            box=(10, 10, 100, 100),
            confidence=0.99,
        )


class FakeReporter:
    def __init__(self, results=()):
        self.results = list(results)
        self.calls = []
        self.resolved_mode = AttendanceMode.CHECK_IN
        self.resolved = []

    def resolve_mode(self, employee_id):
        self.resolved.append(employee_id)
        return self.resolved_mode

    def report(self, employee_id, mode):
        self.calls.append((employee_id, mode))
        if self.results:
            return self.results.pop(0)
        return ReportResult(success=True, message="Check-in recorded")


@pytest.fixture
def gallery() -> Gallery:
    return Gallery([
        make_face("E1", [1.0, 0.0, 0.0], name="Alice"),
        make_face("E2", [0.0, 0.0, 1.0], name="Bob"),
    ])


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def reporter() -> FakeReporter:
    return FakeReporter()
