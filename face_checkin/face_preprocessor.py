from dataclasses import dataclass, field
from typing import List

import cv2
import numpy as np

from .config import FACE_CROP_PADDING, FACE_MIN_CROP_SIDE, FACE_QUALITY_MIN_SIDE
from .face_types import BoundingBox


@dataclass
class FaceQualityAssessment:
    score: float
    issues: List[str] = field(default_factory=list)

    @property
    def is_good_quality(self) -> bool:
        return self.score >= 0.7


def crop_face(
    frame: np.ndarray,
    box: BoundingBox,
    padding: float = FACE_CROP_PADDING,
    min_side: int = FACE_MIN_CROP_SIDE,
) -> np.ndarray:
    height, width = frame.shape[:2]
    x1, y1, x2, y2 = box.to_pixels(width, height)
    bw = max(1, x2 - x1)
    bh = max(1, y2 - y1)

    px1 = max(0, int(x1 - bw * padding))
    py1 = max(0, int(y1 - bh * padding))
    px2 = min(width, int(x2 + bw * padding))
    py2 = min(height, int(y2 + bh * padding))
    if px2 <= px1 or py2 <= py1:
        return np.empty((0, 0) + frame.shape[2:], dtype=frame.dtype)

    crop = frame[py1:py2, px1:px2]
    ch, cw = crop.shape[:2]
    if ch < min_side or cw < min_side:
        scale = max(min_side / cw, min_side / ch)
        size = (int(round(cw * scale)), int(round(ch * scale)))
        crop = cv2.resize(crop, size, interpolation=cv2.INTER_CUBIC)
    return np.ascontiguousarray(crop)


def assess_face_quality(crop: np.ndarray, min_side: int = FACE_QUALITY_MIN_SIDE) -> FaceQualityAssessment:
    if crop is None or crop.size == 0:
        return FaceQualityAssessment(score=0.0, issues=["Empty face crop"])

    score = 1.0
    issues: List[str] = []
    height, width = crop.shape[:2]
    if width < min_side or height < min_side:
        score -= 0.3
        issues.append("Image too small")

    aspect = width / float(height)
    if aspect < 0.7 or aspect > 1.5:
        score -= 0.2
        issues.append("Unusual aspect ratio")

    return FaceQualityAssessment(score=round(max(0.0, score), 2), issues=issues)
