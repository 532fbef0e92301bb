import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import numpy as np
import pytest

from conftest import FakeDetector, FakeProvider, FixedClock, ImmediateExecutor, observation, unit
from face_checkin.attendance_service import AttendanceDecisionEngine, AttendanceGate
from face_checkin.attendance_types import AttendanceAction, AttendanceStatus
from face_checkin.embedding import embed_with_timeout
from face_checkin.exceptions import EmbeddingTimeoutError
from face_checkin.face_types import OverlayStyle
from face_checkin.liveness import LivenessAnalyzer
from face_checkin.matcher import FaceMatcher
from face_checkin.pipeline import FrameRecognitionPipeline
from face_checkin.recognition_cache import RecognitionCache

MONDAY_MORNING = datetime(2024, 1, 15, 8, 5)


class TimingOutProvider:
    def __init__(self):
        self.calls = 0

    def embed(self, face_crop):
        self.calls += 1
        raise EmbeddingTimeoutError("Descriptor extraction exceeded 2.0s")


class StalledProvider:
    """Blocks until released, like an inference call that hangs."""

    def __init__(self, release, vector):
        self.release = release
        self.vector = vector

    def embed(self, face_crop):
        self.release.wait(timeout=5.0)
        return self.vector


class BrokenProvider:
    def embed(self, face_crop):
        raise RuntimeError("model crashed")


def build_pipeline(db, gallery, detector, provider, live=True, **kwargs):
    settings_engine = AttendanceDecisionEngine(
        db,
        gate=AttendanceGate(interval=5.0),
        clock=FixedClock(MONDAY_MORNING),
    )
    # Texture alone keeps the mean above zero, so a zero threshold means "always live".
    threshold = 0.0 if live else 1.0
    options = {
        "cache": RecognitionCache(ttl=3.0),
        "executor": ImmediateExecutor(),
        "embed_executor": ImmediateExecutor(),
        "analyzer_factory": lambda: LivenessAnalyzer(decision_threshold=threshold),
    }
    options.update(kwargs)
    return FrameRecognitionPipeline(
        detector=detector,
        provider=provider,
        gallery=gallery,
        engine=settings_engine,
        **options,
    )


def test_live_known_face_is_recognized_and_checked_in(db, gallery, frame):
    alice = gallery.enroll("Alice", unit(1, 0, 0))
    provider = FakeProvider(unit(1, 0.02, 0))
    pipeline = build_pipeline(db, gallery, FakeDetector([observation()]), provider)

    overlay = pipeline.process_frame(frame, timestamp=0.0)

    [face] = overlay.faces
    assert face.style is OverlayStyle.LIVE_KNOWN
    assert face.label.startswith("Alice")
    assert provider.calls == 1

    decision = pipeline.poll_decision()
    assert decision.success is True
    assert decision.action is AttendanceAction.CHECK_IN
    assert decision.identity_name == "Alice"
    assert decision.record.status is AttendanceStatus.PRESENT
    assert pipeline.poll_decision() is None
    assert pipeline.current_results()[face.slot_id].identity.identity_id == alice.identity_id


def test_cache_hit_skips_embedding_and_attendance_is_guarded(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    provider = FakeProvider(unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, FakeDetector([observation()]), provider)

    pipeline.process_frame(frame, timestamp=0.0)
    pipeline.poll_decision()
    overlay = pipeline.process_frame(frame, timestamp=1.5)

    assert provider.calls == 1
    assert overlay.faces[0].style is OverlayStyle.LIVE_KNOWN
    assert pipeline.poll_decision() is None


def test_expired_cache_entry_triggers_new_recognition(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    provider = FakeProvider(unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, FakeDetector([observation()]), provider)

    # Frames stay closer together than the track age, so only the TTL can expire the entry.
    for timestamp in (0.0, 0.9, 1.8, 2.7):
        overlay = pipeline.process_frame(frame, timestamp=timestamp)
        assert overlay.faces[0].style is OverlayStyle.LIVE_KNOWN
    assert provider.calls == 1
    assert len(pipeline._slots) == 1

    pipeline.process_frame(frame, timestamp=3.5)
    assert provider.calls == 2
    assert len(pipeline._slots) == 1


def test_cached_recognition_survives_an_expired_slot(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    detector = FakeDetector([observation()])
    provider = FakeProvider(unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, detector, provider, track_max_age=1.0)

    first = pipeline.process_frame(frame, timestamp=0.0).faces[0].slot_id
    pipeline.poll_decision()
    detector.observations = []
    pipeline.process_frame(frame, timestamp=0.5)
    assert len(pipeline.cache) == 1

    detector.observations = [observation()]
    [face] = pipeline.process_frame(frame, timestamp=2.0).faces

    assert face.slot_id != first
    assert face.style is OverlayStyle.LIVE_KNOWN
    assert provider.calls == 1


def test_not_live_face_is_never_recognized(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    provider = FakeProvider(unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, FakeDetector([observation()]), provider, live=False)

    overlay = pipeline.process_frame(frame, timestamp=0.0)

    assert overlay.faces[0].style is OverlayStyle.NOT_LIVE
    assert overlay.faces[0].label.startswith("Not live")
    assert provider.calls == 0
    assert pipeline.poll_decision() is None


def test_losing_liveness_clears_the_cached_recognition(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    detector = FakeDetector([observation()])
    pipeline = build_pipeline(db, gallery, detector, FakeProvider(unit(1, 0, 0)))
    pipeline.process_frame(frame, timestamp=0.0)
    key = pipeline.cache.key_for(detector.observations[0].box)
    assert pipeline.cache.get(key, 0.5) is not None

    [slot] = pipeline._slots.values()
    slot.analyzer.decision_threshold = 1.0
    overlay = pipeline.process_frame(frame, timestamp=0.5)

    assert overlay.faces[0].style is OverlayStyle.NOT_LIVE
    assert pipeline.cache.get(key, 0.6) is None
    assert pipeline.current_results() == {}


def test_unknown_face_produces_no_attendance(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, FakeDetector([observation()]), FakeProvider(unit(0, 1, 0)))

    overlay = pipeline.process_frame(frame, timestamp=0.0)

    assert overlay.faces[0].style is OverlayStyle.LIVE_UNKNOWN
    assert overlay.faces[0].label == "Unknown"
    assert pipeline.poll_decision() is None
    assert db.records_for_day(MONDAY_MORNING.date()) == []


def test_recognition_interval_is_global(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    provider = FakeProvider(unit(0, 1, 0))
    detector = FakeDetector([observation(x=0.1), observation(x=0.6)])
    pipeline = build_pipeline(db, gallery, detector, provider, recognition_interval=1.0)

    pipeline.process_frame(frame, timestamp=0.0)
    assert provider.calls == 1

    pipeline.process_frame(frame, timestamp=1.0)
    assert provider.calls == 2


@pytest.mark.parametrize("provider", [TimingOutProvider(), BrokenProvider()])
def test_embedding_failures_are_soft_misses(db, gallery, frame, provider):
    gallery.enroll("Alice", unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, FakeDetector([observation()]), provider)

    overlay = pipeline.process_frame(frame, timestamp=0.0)

    assert overlay.faces[0].style is OverlayStyle.LIVE_UNKNOWN
    assert len(pipeline.cache) == 0
    assert pipeline.current_results() == {}
    assert pipeline.poll_decision() is None


def test_slots_follow_nearby_faces_and_expire(db, gallery, frame):
    detector = FakeDetector([observation(x=0.40)])
    pipeline = build_pipeline(db, gallery, detector, FakeProvider(unit(1, 0, 0)), track_max_age=1.0)

    first = pipeline.process_frame(frame, timestamp=0.0).faces[0].slot_id
    detector.observations = [observation(x=0.43)]
    moved = pipeline.process_frame(frame, timestamp=0.1).faces[0].slot_id
    assert moved == first

    detector.observations = []
    pipeline.process_frame(frame, timestamp=0.5)
    detector.observations = [observation(x=0.43)]
    returned = pipeline.process_frame(frame, timestamp=2.0).faces[0].slot_id
    assert returned != first


def test_second_person_is_not_blocked_by_first(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    gallery.enroll("Bob", unit(0, 1, 0))
    detector = FakeDetector([observation()])
    provider = FakeProvider(unit(1, 0, 0))
    pipeline = build_pipeline(db, gallery, detector, provider)

    pipeline.process_frame(frame, timestamp=0.0)
    provider.vector = unit(0, 1, 0)
    detector.observations = [observation(x=0.7)]
    pipeline.process_frame(frame, timestamp=1.0)

    names = [pipeline.poll_decision().identity_name, pipeline.poll_decision().identity_name]
    assert names == ["Alice", "Bob"]


def test_injected_collaborators_are_kept_even_when_empty(db, gallery):
    cache = RecognitionCache(ttl=30.0)
    matcher = FaceMatcher(threshold=0.9)
    assert len(cache) == 0

    pipeline = build_pipeline(db, gallery, FakeDetector([]), FakeProvider(unit(1, 0, 0)), cache=cache, matcher=matcher)

    assert pipeline.cache is cache
    assert pipeline.cache.ttl == 30.0
    assert pipeline.matcher is matcher


def test_stalled_provider_is_a_soft_miss_on_a_real_worker(db, gallery, frame):
    gallery.enroll("Alice", unit(1, 0, 0))
    release = threading.Event()
    provider = StalledProvider(release, unit(1, 0, 0))
    with ThreadPoolExecutor(max_workers=1) as pool:
        pipeline = build_pipeline(
            db, gallery, FakeDetector([observation()]), provider, embed_executor=pool, embed_timeout=0.2
        )
        started = time.monotonic()
        overlay = pipeline.process_frame(frame, timestamp=0.0)
        elapsed = time.monotonic() - started
        release.set()

    assert elapsed < 1.0
    assert overlay.faces[0].style is OverlayStyle.LIVE_UNKNOWN
    assert len(pipeline.cache) == 0
    assert pipeline.current_results() == {}
    assert pipeline.poll_decision() is None


def test_default_embedding_pool_absorbs_one_abandoned_call(db, gallery, monkeypatch):
    monkeypatch.setattr("face_checkin.pipeline.RECOGNITION_WORKERS", 2)
    release = threading.Event()
    crop = np.full((160, 160, 3), 128, dtype=np.uint8)
    pipeline = build_pipeline(db, gallery, FakeDetector([]), FakeProvider(unit(1, 0, 0)), embed_executor=None)
    try:
        with pytest.raises(EmbeddingTimeoutError):
            embed_with_timeout(StalledProvider(release, unit(1, 0, 0)), crop, 0.1, pipeline.embed_executor)
        vector = embed_with_timeout(FakeProvider(unit(0, 1, 0)), crop, 0.5, pipeline.embed_executor)
        assert np.allclose(vector, unit(0, 1, 0))
    finally:
        release.set()
        pipeline.close()
