from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class BoundingBox:
    """Face rectangle in normalized frame coordinates (0..1, origin top-left)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width * 0.5, self.y + self.height * 0.5

    def to_pixels(self, frame_width: int, frame_height: int) -> Tuple[int, int, int, int]:
        x1 = int(round(self.x * frame_width))
        y1 = int(round(self.y * frame_height))
        x2 = int(round((self.x + self.width) * frame_width))
        y2 = int(round((self.y + self.height) * frame_height))
        return x1, y1, x2, y2


@dataclass(frozen=True)
class PoseAngles:
    """Head pose in radians."""

    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0

    def describe(self) -> str:
        yaw = math.degrees(self.yaw)
        pitch = math.degrees(self.pitch)
        roll = math.degrees(self.roll)

        directions = []
        if abs(yaw) > 10:
            directions.append("Right" if yaw > 0 else "Left")
        if abs(pitch) > 10:
            directions.append("Up" if pitch > 0 else "Down")
        if abs(roll) > 15:
            directions.append("Tilt right" if roll > 0 else "Tilt left")
        return ", ".join(directions) if directions else "Straight"


class FaceRegion(str, Enum):
    CONTOUR = "contour"
    LEFT_EYE = "left_eye"
    RIGHT_EYE = "right_eye"
    NOSE = "nose"
    OUTER_LIPS = "outer_lips"


class FacePosition(str, Enum):
    CENTER = "center"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"

    @property
    def instruction(self) -> str:
        return _POSITION_INSTRUCTIONS[self]

    @property
    def description(self) -> str:
        return _POSITION_DESCRIPTIONS[self]

    @classmethod
    def from_pose(cls, pose: PoseAngles, turn_degrees: float = 12.0) -> "FacePosition":
        yaw = math.degrees(pose.yaw)
        pitch = math.degrees(pose.pitch)
        if abs(yaw) < turn_degrees and abs(pitch) < turn_degrees:
            return cls.CENTER
        if abs(yaw) >= abs(pitch):
            return cls.RIGHT if yaw > 0 else cls.LEFT
        return cls.UP if pitch > 0 else cls.DOWN


_POSITION_INSTRUCTIONS = {
    FacePosition.CENTER: "Look straight at the camera with a neutral expression",
    FacePosition.LEFT: "Turn your head slightly to the left while keeping eyes on camera",
    FacePosition.RIGHT: "Turn your head slightly to the right while keeping eyes on camera",
    FacePosition.UP: "Tilt your head slightly up while looking at the camera",
    FacePosition.DOWN: "Tilt your head slightly down while looking at the camera",
}

_POSITION_DESCRIPTIONS = {
    FacePosition.CENTER: "Front View",
    FacePosition.LEFT: "Left Turn",
    FacePosition.RIGHT: "Right Turn",
    FacePosition.UP: "Head Up",
    FacePosition.DOWN: "Head Down",
}


@dataclass
class FaceObservation:
    """One detected face as reported by the face detector."""

    box: BoundingBox
    landmarks: Dict[FaceRegion, np.ndarray] = field(default_factory=dict)
    pose: PoseAngles = field(default_factory=PoseAngles)
    confidence: float = 0.0


@dataclass
class FaceSample:
    """A single frame's observation of one face, consumed by liveness analysis."""

    box: BoundingBox
    landmarks: Dict[FaceRegion, np.ndarray]
    pose: PoseAngles
    confidence: float
    timestamp: float

    @classmethod
    def from_observation(cls, observation: FaceObservation, timestamp: float) -> "FaceSample":
        return cls(
            box=observation.box,
            landmarks=observation.landmarks,
            pose=observation.pose,
            confidence=float(observation.confidence),
            timestamp=float(timestamp),
        )


@dataclass(frozen=True)
class LivenessResult:
    is_live: bool
    confidence: float
    blink_score: float
    movement_score: float
    depth_score: float
    symmetry_score: float
    texture_score: float
    details: str

    @property
    def scores(self) -> Dict[str, float]:
        return {
            "blink": self.blink_score,
            "movement": self.movement_score,
            "depth": self.depth_score,
            "symmetry": self.symmetry_score,
            "texture": self.texture_score,
        }


@dataclass(frozen=True)
class EnrolledIdentity:
    identity_id: str
    name: str
    embedding: np.ndarray
    registered_at: str
    positions: Tuple[FacePosition, ...] = ()


@dataclass(frozen=True)
class FaceRecognitionResult:
    identity: Optional[EnrolledIdentity]
    similarity: float
    is_match: bool

    @property
    def display_name(self) -> str:
        if self.identity is not None and self.is_match:
            return self.identity.name
        return "Unknown"


class OverlayStyle(str, Enum):
    NOT_LIVE = "not_live"
    LIVE_UNKNOWN = "live_unknown"
    LIVE_KNOWN = "live_known"


@dataclass(frozen=True)
class FaceOverlay:
    slot_id: int
    box: BoundingBox
    style: OverlayStyle
    label: str
    liveness: LivenessResult
    pose_description: str


@dataclass
class FrameOverlay:
    timestamp: float
    faces: list[FaceOverlay] = field(default_factory=list)
