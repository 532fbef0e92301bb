"""Temporal liveness analysis over a rolling window of face samples.

A single frame cannot tell a printed photo from a person, so the analyzer
keeps a short history per tracked face and scores five signals:

* blinks, as falling edges of the eye-aspect-ratio below a threshold
* head movement between consecutive pose samples
* depth motion, as variation of the face-box area around its mean
* a nose-centering heuristic against flat, off-axis replays
* detector confidence as a texture proxy

The unweighted mean of the five scores is the liveness confidence.
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

import numpy as np

from .config import (
    EYE_ASPECT_RATIO_THRESHOLD,
    FACE_AREA_VARIATION_THRESHOLD,
    HEAD_MOVEMENT_THRESHOLD,
    LIVENESS_DECISION_THRESHOLD,
    LIVENESS_MAX_SAMPLES,
    LIVENESS_WINDOW_SECONDS,
    MINIMUM_BLINKS,
    MINIMUM_HEAD_MOVEMENTS,
    NOSE_CENTER_DEVIATION,
)
from .face_types import FaceRegion, FaceSample, LivenessResult, PoseAngles

MIN_BLINK_SAMPLES = 6
MIN_MOVEMENT_SAMPLES = 4
MIN_AREA_SAMPLES = 4
SYMMETRY_BASE_SCORE = 0.8
SYMMETRY_PENALTY = 0.2
SYMMETRY_NO_LANDMARKS_SCORE = 0.5


def eye_aspect_ratio(points: Optional[np.ndarray]) -> float:
    """EAR of one eye from six contour points ordered corner, top, top, corner, bottom, bottom."""
    if points is None:
        return 0.0
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] < 6:
        return 0.0

    vertical_1 = float(np.linalg.norm(pts[1] - pts[5]))
    vertical_2 = float(np.linalg.norm(pts[2] - pts[4]))
    horizontal = float(np.linalg.norm(pts[0] - pts[3]))
    if horizontal <= 1e-9:
        return 0.0
    return (vertical_1 + vertical_2) / (2.0 * horizontal)


def average_eye_aspect_ratio(sample: FaceSample) -> float:
    left = sample.landmarks.get(FaceRegion.LEFT_EYE)
    right = sample.landmarks.get(FaceRegion.RIGHT_EYE)
    if left is None or right is None:
        return 0.0
    return (eye_aspect_ratio(left) + eye_aspect_ratio(right)) / 2.0


@dataclass(frozen=True)
class _HistoryEntry:
    timestamp: float
    ear: float
    pose: PoseAngles
    area: float


class LivenessAnalyzer:
    def __init__(
        self,
        ear_threshold: float = EYE_ASPECT_RATIO_THRESHOLD,
        movement_threshold: float = HEAD_MOVEMENT_THRESHOLD,
        area_variation_threshold: float = FACE_AREA_VARIATION_THRESHOLD,
        minimum_blinks: int = MINIMUM_BLINKS,
        minimum_movements: int = MINIMUM_HEAD_MOVEMENTS,
        window_seconds: float = LIVENESS_WINDOW_SECONDS,
        max_samples: int = LIVENESS_MAX_SAMPLES,
        decision_threshold: float = LIVENESS_DECISION_THRESHOLD,
    ):
        self.ear_threshold = float(ear_threshold)
        self.movement_threshold = float(movement_threshold)
        self.area_variation_threshold = float(area_variation_threshold)
        self.minimum_blinks = max(1, int(minimum_blinks))
        self.minimum_movements = max(1, int(minimum_movements))
        self.window_seconds = float(window_seconds)
        self.max_samples = max(1, int(max_samples))
        self.decision_threshold = float(decision_threshold)
        self._history: Deque[_HistoryEntry] = deque(maxlen=self.max_samples)

    def __len__(self) -> int:
        return len(self._history)

    def reset(self) -> None:
        self._history.clear()

    def analyze(self, sample: FaceSample) -> LivenessResult:
        self._history.append(
            _HistoryEntry(
                timestamp=sample.timestamp,
                ear=average_eye_aspect_ratio(sample),
                pose=sample.pose,
                area=sample.box.area,
            )
        )
        self._evict(sample.timestamp)

        blink = self.blink_score()
        movement = self.movement_score()
        depth = self.depth_score()
        symmetry = self.symmetry_score(sample)
        texture = float(np.clip(sample.confidence, 0.0, 1.0))

        confidence = (blink + movement + depth + symmetry + texture) / 5.0
        return LivenessResult(
            is_live=confidence > self.decision_threshold,
            confidence=confidence,
            blink_score=blink,
            movement_score=movement,
            depth_score=depth,
            symmetry_score=symmetry,
            texture_score=texture,
            details=self._describe(blink, movement, depth),
        )

    def _evict(self, now: float) -> None:
        while self._history and now - self._history[0].timestamp > self.window_seconds:
            self._history.popleft()

    def blink_score(self) -> float:
        if len(self._history) < MIN_BLINK_SAMPLES:
            return 0.0

        blinks = 0
        was_closed = False
        for entry in self._history:
            closed = entry.ear < self.ear_threshold
            if closed and not was_closed:
                blinks += 1
            was_closed = closed
        return min(blinks / self.minimum_blinks, 1.0)

    def movement_score(self) -> float:
        if len(self._history) < MIN_MOVEMENT_SAMPLES:
            return 0.0

        movements = 0
        entries = list(self._history)
        for prev, curr in zip(entries, entries[1:]):
            deltas = (
                abs(curr.pose.yaw - prev.pose.yaw),
                abs(curr.pose.pitch - prev.pose.pitch),
                abs(curr.pose.roll - prev.pose.roll),
            )
            if max(deltas) > self.movement_threshold:
                movements += 1
        return min(movements / self.minimum_movements, 1.0)

    def depth_score(self) -> float:
        count = len(self._history)
        if count < MIN_AREA_SAMPLES:
            return 0.0

        areas = np.array([entry.area for entry in self._history], dtype=np.float64)
        mean_area = float(areas.mean())
        if mean_area <= 1e-12:
            return 0.0
        variations = int(np.count_nonzero(np.abs(areas - mean_area) / mean_area > self.area_variation_threshold))
        return min(variations / (count // 2), 1.0)

    @staticmethod
    def symmetry_score(sample: FaceSample) -> float:
        if not sample.landmarks:
            return SYMMETRY_NO_LANDMARKS_SCORE

        score = SYMMETRY_BASE_SCORE
        nose = sample.landmarks.get(FaceRegion.NOSE)
        if nose is not None and len(nose):
            nose_x = float(np.asarray(nose, dtype=np.float64).reshape(-1, 2)[:, 0].mean())
            if abs(nose_x - 0.5) > NOSE_CENTER_DEVIATION:
                score -= SYMMETRY_PENALTY
        return score

    @staticmethod
    def _describe(blink: float, movement: float, depth: float) -> str:
        parts = [
            f"Blink {'ok' if blink > 0.5 else 'missing'}",
            f"Movement {'ok' if movement > 0.5 else 'missing'}",
            f"Depth {'ok' if depth > 0.3 else 'missing'}",
        ]
        return " | ".join(parts)
