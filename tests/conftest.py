import os
import tempfile
from concurrent.futures import Executor, Future
from datetime import datetime
from typing import Dict, List

os.environ.setdefault("CHECKIN_LOG_DIR", tempfile.mkdtemp(prefix="checkin-logs-"))

import numpy as np
import pytest

from face_checkin.attendance_service import AttendanceDecisionEngine, AttendanceGate
from face_checkin.attendance_types import AttendanceSettings, parse_clock
from face_checkin.database import CheckInDatabase
from face_checkin.face_types import BoundingBox, FaceObservation, FaceRegion, PoseAngles
from face_checkin.gallery import FaceGallery

OPEN_EYE = np.array([[0.0, 0.0], [0.3, -0.15], [0.6, -0.15], [1.0, 0.0], [0.6, 0.15], [0.3, 0.15]])
CLOSED_EYE = np.array([[0.0, 0.0], [0.3, -0.02], [0.6, -0.02], [1.0, 0.0], [0.6, 0.02], [0.3, 0.02]])


class ImmediateExecutor(Executor):
    """Runs submitted work inline so pipeline tests stay deterministic."""

    def submit(self, fn, *args, **kwargs):
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeDetector:
    def __init__(self, observations: List[FaceObservation] = None):
        self.observations = list(observations or [])
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        return list(self.observations)


class FakeProvider:
    """Returns a fixed vector per call, ignoring the crop."""

    def __init__(self, vector):
        self.vector = np.asarray(vector, dtype=np.float32)
        self.calls = 0

    def embed(self, face_crop):
        self.calls += 1
        return self.vector


class FixedClock:
    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


def unit(*values) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float32)
    return vector / np.linalg.norm(vector)


def observation(
    x: float = 0.4,
    y: float = 0.3,
    size: float = 0.25,
    eyes=OPEN_EYE,
    yaw: float = 0.0,
    confidence: float = 0.95,
) -> FaceObservation:
    landmarks: Dict[FaceRegion, np.ndarray] = {
        FaceRegion.LEFT_EYE: eyes,
        FaceRegion.RIGHT_EYE: eyes,
        FaceRegion.NOSE: np.array([[0.5, 0.55]]),
    }
    return FaceObservation(
        box=BoundingBox(x=x, y=y, width=size, height=size),
        landmarks=landmarks,
        pose=PoseAngles(yaw=yaw),
        confidence=confidence,
    )


@pytest.fixture
def db(tmp_path):
    return CheckInDatabase(tmp_path / "checkin.db")


@pytest.fixture
def gallery(db):
    return FaceGallery(db)


@pytest.fixture
def office_settings():
    return AttendanceSettings(
        work_start=parse_clock("08:00"),
        work_end=parse_clock("17:00"),
        late_tolerance_minutes=15,
        early_leave_tolerance_minutes=15,
        work_days=frozenset({0, 1, 2, 3, 4}),
    )


@pytest.fixture
def engine(db, office_settings):
    db.save_settings(office_settings)
    return AttendanceDecisionEngine(db, gate=AttendanceGate(interval=5.0))


@pytest.fixture
def frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)
