"""Per-frame orchestration of liveness, cached recognition and attendance.

``process_frame`` runs on the camera thread and never blocks on inference:
liveness is computed inline, while embedding extraction, matching and
attendance decisions are handed to a worker pool. Completed work updates
the shared state under one lock and decisions are published on a bounded
queue for the UI.
"""

import math
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from queue import Empty, Full, Queue
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .attendance_service import AttendanceDecisionEngine
from .attendance_types import AttendanceDecisionResult
from .config import (
    EMBEDDING_TIMEOUT_SECONDS,
    RECOGNITION_INTERVAL_SECONDS,
    RECOGNITION_WORKERS,
    TRACK_MAX_AGE_SECONDS,
    TRACK_MAX_CENTER_DISTANCE,
)
from .embedding import EmbeddingProvider, FaceDetector, embed_with_timeout
from .exceptions import AttendanceError, EmbeddingTimeoutError
from .face_preprocessor import crop_face
from .face_types import (
    EnrolledIdentity,
    FaceObservation,
    FaceOverlay,
    FaceRecognitionResult,
    FaceSample,
    FrameOverlay,
    LivenessResult,
    OverlayStyle,
)
from .gallery import FaceGallery
from .liveness import LivenessAnalyzer
from .logger import setup_logger
from .matcher import FaceMatcher
from .recognition_cache import CacheKey, RecognitionCache


@dataclass
class TrackSlot:
    slot_id: int
    center: Tuple[float, float]
    last_seen: float
    analyzer: LivenessAnalyzer
    cache_key: Optional[CacheKey] = None
    pending: bool = False


def _put_latest(queue_obj: Queue, item) -> None:
    try:
        queue_obj.put_nowait(item)
        return
    except Full:
        pass
    try:
        queue_obj.get_nowait()
    except Empty:
        pass
    try:
        queue_obj.put_nowait(item)
    except Full:
        pass


class FrameRecognitionPipeline:
    def __init__(
        self,
        detector: FaceDetector,
        provider: EmbeddingProvider,
        gallery: FaceGallery,
        engine: AttendanceDecisionEngine,
        matcher: Optional[FaceMatcher] = None,
        cache: Optional[RecognitionCache] = None,
        executor: Optional[Executor] = None,
        embed_executor: Optional[Executor] = None,
        recognition_interval: float = RECOGNITION_INTERVAL_SECONDS,
        embed_timeout: float = EMBEDDING_TIMEOUT_SECONDS,
        track_distance: float = TRACK_MAX_CENTER_DISTANCE,
        track_max_age: float = TRACK_MAX_AGE_SECONDS,
        analyzer_factory: Callable[[], LivenessAnalyzer] = LivenessAnalyzer,
        max_pending_decisions: int = 16,
    ):
        self.logger = setup_logger(self.__class__.__name__)
        self.detector = detector
        self.provider = provider
        self.gallery = gallery
        self.engine = engine
        self.matcher = matcher if matcher is not None else FaceMatcher()
        self.cache = cache if cache is not None else RecognitionCache()
        self.recognition_interval = float(recognition_interval)
        self.embed_timeout = float(embed_timeout)
        self.track_distance = float(track_distance)
        self.track_max_age = float(track_max_age)
        self.analyzer_factory = analyzer_factory

        workers = max(1, RECOGNITION_WORKERS)
        self._owns_executors = executor is None
        self.executor = executor if executor is not None else ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="recognition"
        )
        # Embedding waits happen on recognition workers, so the provider needs its own pool.
        # Queue time counts against the embed timeout, so the pool is as wide as the recognition pool.
        self._owns_embed_executor = embed_executor is None
        self.embed_executor = embed_executor if embed_executor is not None else ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="embedding"
        )

        self.decisions: "Queue[AttendanceDecisionResult]" = Queue(maxsize=max(1, max_pending_decisions))

        self._lock = threading.Lock()
        self._slots: Dict[int, TrackSlot] = {}
        self._next_slot_id = 1
        self._current_results: Dict[int, FaceRecognitionResult] = {}
        self._last_recognition_attempt: Optional[float] = None
        self._futures: List[Future] = []

    def process_frame(self, frame: np.ndarray, timestamp: Optional[float] = None) -> FrameOverlay:
        now = time.monotonic() if timestamp is None else float(timestamp)
        try:
            observations = self.detector.detect(frame)
        except AttendanceError as exc:
            self.logger.warning("Face detection failed: %s", exc)
            observations = []

        overlay = FrameOverlay(timestamp=now)
        for observation, slot in self._assign_slots(observations, now):
            liveness = slot.analyzer.analyze(FaceSample.from_observation(observation, now))
            slot.cache_key = self.cache.key_for(observation.box)

            if not liveness.is_live:
                self._forget_recognition(slot)
                overlay.faces.append(self._overlay(slot, observation, liveness, None))
                continue

            cached = self.cache.get(slot.cache_key, now)
            if cached is not None:
                with self._lock:
                    self._current_results[slot.slot_id] = cached
                if cached.is_match and cached.identity is not None:
                    self._request_attendance(cached.identity, now)
            elif self._should_dispatch(slot, now):
                self._dispatch_recognition(frame, observation, slot, now)

            with self._lock:
                result = self._current_results.get(slot.slot_id)
            overlay.faces.append(self._overlay(slot, observation, liveness, result))
        return overlay

    def current_results(self) -> Dict[int, FaceRecognitionResult]:
        with self._lock:
            return dict(self._current_results)

    def poll_decision(self) -> Optional[AttendanceDecisionResult]:
        try:
            return self.decisions.get_nowait()
        except Empty:
            return None

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding recognition and attendance work; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            # Finished recognitions may have queued attendance work, so re-check.
            with self._lock:
                pending = [future for future in self._futures if not future.done()]
                self._futures = pending
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining)

    def reset(self) -> None:
        with self._lock:
            self._slots.clear()
            self._current_results.clear()
            self._last_recognition_attempt = None
        self.cache.clear()

    def close(self) -> None:
        if self._owns_executors:
            self.executor.shutdown(wait=False)
        if self._owns_embed_executor:
            self.embed_executor.shutdown(wait=False)

    def _assign_slots(
        self, observations: List[FaceObservation], now: float
    ) -> List[Tuple[FaceObservation, TrackSlot]]:
        with self._lock:
            for slot_id in [sid for sid, slot in self._slots.items() if now - slot.last_seen > self.track_max_age]:
                self._drop_slot(slot_id)

            unclaimed = set(self._slots)
            assigned: List[Tuple[FaceObservation, TrackSlot]] = []
            for observation in observations:
                center = observation.box.center
                slot_id = self._nearest_slot(center, unclaimed)
                if slot_id is None:
                    slot = TrackSlot(
                        slot_id=self._next_slot_id,
                        center=center,
                        last_seen=now,
                        analyzer=self.analyzer_factory(),
                    )
                    self._slots[slot.slot_id] = slot
                    self._next_slot_id += 1
                else:
                    slot = self._slots[slot_id]
                    slot.center = center
                    slot.last_seen = now
                    unclaimed.discard(slot_id)
                assigned.append((observation, slot))
            return assigned

    def _nearest_slot(self, center: Tuple[float, float], candidates: set) -> Optional[int]:
        best_id = None
        best_distance = float("inf")
        for slot_id in candidates:
            slot = self._slots[slot_id]
            distance = math.hypot(center[0] - slot.center[0], center[1] - slot.center[1])
            if distance <= self.track_distance and distance < best_distance:
                best_id = slot_id
                best_distance = distance
        return best_id

    def _drop_slot(self, slot_id: int) -> None:
        # Cached recognitions outlive the slot and expire by TTL only.
        self._slots.pop(slot_id, None)
        self._current_results.pop(slot_id, None)

    def _forget_recognition(self, slot: TrackSlot) -> None:
        if slot.cache_key is not None:
            self.cache.invalidate(slot.cache_key)
        with self._lock:
            self._current_results.pop(slot.slot_id, None)

    def _should_dispatch(self, slot: TrackSlot, now: float) -> bool:
        with self._lock:
            if slot.pending:
                return False
            last = self._last_recognition_attempt
            if last is not None and now - last < self.recognition_interval:
                return False
            self._last_recognition_attempt = now
            slot.pending = True
            return True

    def _dispatch_recognition(
        self, frame: np.ndarray, observation: FaceObservation, slot: TrackSlot, now: float
    ) -> None:
        crop = crop_face(frame, observation.box)
        future = self.executor.submit(self._recognize, slot, slot.cache_key, crop, now)
        self._track(future)

    def _recognize(self, slot: TrackSlot, key: CacheKey, crop: np.ndarray, dispatched_at: float) -> None:
        try:
            try:
                query = embed_with_timeout(self.provider, crop, self.embed_timeout, self.embed_executor)
            except EmbeddingTimeoutError as exc:
                self.logger.warning("Recognition skipped: %s", exc)
                return
            except AttendanceError as exc:
                self.logger.warning("Recognition failed: %s", exc)
                return

            result = self.matcher.find_best_match(query, self.gallery.snapshot())
            self.cache.put(key, result, dispatched_at)
            with self._lock:
                if slot.slot_id in self._slots:
                    self._current_results[slot.slot_id] = result
        finally:
            with self._lock:
                slot.pending = False

        self.logger.debug("Slot %s recognized as %s (%.3f)", slot.slot_id, result.display_name, result.similarity)
        if result.is_match and result.identity is not None:
            self._request_attendance(result.identity, dispatched_at)

    def _request_attendance(self, identity: EnrolledIdentity, now: float) -> None:
        if not self.engine.try_begin(identity.identity_id, now):
            return
        future = self.executor.submit(self._decide, identity)
        self._track(future)

    def _decide(self, identity: EnrolledIdentity) -> None:
        try:
            result = self.engine.decide(identity)
        finally:
            self.engine.complete(identity.identity_id)
        _put_latest(self.decisions, result)

    def _track(self, future: Future) -> None:
        future.add_done_callback(self._log_failure)
        with self._lock:
            self._futures = [item for item in self._futures if not item.done()]
            self._futures.append(future)

    def _log_failure(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("Background recognition task failed: %s", exc, exc_info=exc)

    @staticmethod
    def _overlay(
        slot: TrackSlot,
        observation: FaceObservation,
        liveness: LivenessResult,
        result: Optional[FaceRecognitionResult],
    ) -> FaceOverlay:
        if not liveness.is_live:
            style = OverlayStyle.NOT_LIVE
            label = f"Not live ({liveness.confidence:.0%})"
        elif result is not None and result.is_match:
            style = OverlayStyle.LIVE_KNOWN
            label = f"{result.display_name} ({result.similarity:.0%})"
        else:
            style = OverlayStyle.LIVE_UNKNOWN
            label = "Unknown" if result is not None else "Live"
        return FaceOverlay(
            slot_id=slot.slot_id,
            box=observation.box,
            style=style,
            label=label,
            liveness=liveness,
            pose_description=observation.pose.describe(),
        )
