from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from .camera import CameraStream
from .config import (
    DUPLICATE_FACE_SIMILARITY_THRESHOLD,
    EMBEDDING_TIMEOUT_SECONDS,
    SAMPLE_EVERY_N_FRAMES,
    SAMPLES_PER_POSITION,
)
from .embedding import EmbeddingProvider, FaceDetector, embed_with_timeout
from .exceptions import EmbeddingError, EnrollmentError
from .face_preprocessor import assess_face_quality, crop_face
from .face_types import EnrolledIdentity, FaceObservation, FacePosition
from .gallery import FaceGallery
from .logger import setup_logger
from .vector_math import average_embedding


class EnrollmentSession:
    """Guided capture of one person across the face positions, frame by frame.

    A sample is kept only when exactly one face is visible, its pose matches
    the requested position and the crop passes the quality check.
    """

    def __init__(
        self,
        detector: FaceDetector,
        provider: EmbeddingProvider,
        executor: Executor,
        positions: Sequence[FacePosition] = tuple(FacePosition),
        samples_per_position: int = SAMPLES_PER_POSITION,
        sample_every_n_frames: int = SAMPLE_EVERY_N_FRAMES,
        embed_timeout: float = EMBEDDING_TIMEOUT_SECONDS,
    ):
        if not positions:
            raise EnrollmentError("At least one face position is required.")
        self.detector = detector
        self.provider = provider
        self.executor = executor
        self.positions = tuple(positions)
        self.samples_per_position = max(1, samples_per_position)
        self.sample_every_n_frames = max(1, sample_every_n_frames)
        self.embed_timeout = embed_timeout
        self.samples: Dict[FacePosition, List[np.ndarray]] = {position: [] for position in self.positions}
        self.last_observations: List[FaceObservation] = []
        self._position_index = 0
        self._frame_index = 0

    @property
    def current_position(self) -> Optional[FacePosition]:
        if self._position_index >= len(self.positions):
            return None
        return self.positions[self._position_index]

    @property
    def is_complete(self) -> bool:
        return self.current_position is None

    @property
    def captured_positions(self) -> List[FacePosition]:
        return [position for position in self.positions if len(self.samples[position]) >= self.samples_per_position]

    @property
    def progress(self) -> str:
        done = sum(len(items) for items in self.samples.values())
        return f"{done}/{len(self.positions) * self.samples_per_position}"

    def feed(self, frame: np.ndarray) -> str:
        position = self.current_position
        if position is None:
            return "Enrollment complete"

        self._frame_index += 1
        observations = self.detector.detect(frame)
        self.last_observations = observations
        if not observations:
            return "No face detected"
        if len(observations) > 1:
            return "Only one face should be visible"

        observation = observations[0]
        if FacePosition.from_pose(observation.pose) is not position:
            return position.instruction
        if self._frame_index % self.sample_every_n_frames != 0:
            return "Hold still..."

        crop = crop_face(frame, observation.box)
        quality = assess_face_quality(crop)
        if not quality.is_good_quality:
            return f"Image quality too low: {', '.join(quality.issues)}"

        try:
            embedding = embed_with_timeout(self.provider, crop, self.embed_timeout, self.executor)
        except EmbeddingError as exc:
            return f"Hold still... ({exc})"

        captured = self.samples[position]
        captured.append(embedding)
        status = f"Captured {position.description} {len(captured)}/{self.samples_per_position}"
        if len(captured) >= self.samples_per_position:
            self._position_index += 1
        return status

    def average_embedding(self) -> np.ndarray:
        collected = [vector for position in self.positions for vector in self.samples[position]]
        if not collected:
            raise EnrollmentError("No face samples were captured.")
        try:
            return average_embedding(collected)
        except ValueError as exc:
            raise EnrollmentError(f"Unable to normalize average encoding: {exc}") from exc


class RegistrationService:
    def __init__(self, gallery: FaceGallery, detector: FaceDetector, provider: EmbeddingProvider):
        self.gallery = gallery
        self.detector = detector
        self.provider = provider
        self.logger = setup_logger(self.__class__.__name__)

    def new_session(self, executor: Executor, **kwargs) -> EnrollmentSession:
        return EnrollmentSession(self.detector, self.provider, executor, **kwargs)

    def register(self, name: str, camera_index: int = 0, **session_kwargs) -> EnrolledIdentity:
        if not name.strip():
            raise EnrollmentError("name cannot be empty.")

        start_time = datetime.now()
        window_name = "Registration - Press Q to cancel"
        self.logger.info("Starting registration for %s", name)

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="enroll") as executor:
            session = self.new_session(executor, **session_kwargs)
            with CameraStream(camera_index) as cam:
                try:
                    for frame, _ in cam.frames():
                        status = session.feed(frame)
                        if session.is_complete:
                            break
                        self._draw_registration_overlay(frame, session, status)
                        cv2.imshow(window_name, frame)
                        if cv2.waitKey(1) & 0xFF == ord("q"):
                            raise EnrollmentError("Registration cancelled by user.")
                finally:
                    cv2.destroyWindow(window_name)

        identity = self.finish(name, session)
        elapsed = (datetime.now() - start_time).total_seconds()
        self.logger.info("%s registered with %s samples in %.1fs", name, session.progress, elapsed)
        return identity

    def finish(self, name: str, session: EnrollmentSession) -> EnrolledIdentity:
        if not session.is_complete:
            raise EnrollmentError("Insufficient samples captured for registration.")

        embedding = session.average_embedding()
        duplicate = self.gallery.find_duplicate(embedding, DUPLICATE_FACE_SIMILARITY_THRESHOLD)
        if duplicate is not None:
            existing, score = duplicate
            raise EnrollmentError(
                f"Captured face is too similar to existing user '{existing.name}' ({score:.2f}). "
                "Use a different person or capture cleaner samples."
            )
        return self.gallery.enroll(name, embedding, positions=session.captured_positions)

    @staticmethod
    def _draw_registration_overlay(frame: np.ndarray, session: EnrollmentSession, status: str) -> None:
        height, width = frame.shape[:2]
        for observation in session.last_observations:
            x1, y1, x2, y2 = observation.box.to_pixels(width, height)
            cv2.rectangle(frame, (x1, y1), (x2, y2), (0, 180, 0), 2)

        position = session.current_position
        heading = position.description if position is not None else "Done"
        lines = [
            (f"{heading}: {status}", 0.8, (20, 20, 240)),
            (f"Samples: {session.progress}", 0.75, (255, 255, 255)),
        ]
        for row, (text, scale, color) in enumerate(lines):
            cv2.putText(frame, text, (20, 40 + row * 35), cv2.FONT_HERSHEY_SIMPLEX, scale, color, 2, cv2.LINE_AA)
