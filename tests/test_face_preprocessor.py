import numpy as np

from face_checkin.face_preprocessor import assess_face_quality, crop_face
from face_checkin.face_types import BoundingBox


def test_crop_is_padded_and_clamped():
    frame = np.zeros((400, 400, 3), dtype=np.uint8)
    crop = crop_face(frame, BoundingBox(x=0.25, y=0.25, width=0.5, height=0.5), padding=0.25, min_side=10)
    # 200 px face plus 50 px on each side.
    assert crop.shape == (300, 300, 3)

    edge = crop_face(frame, BoundingBox(x=0.0, y=0.0, width=0.5, height=0.5), padding=0.25, min_side=10)
    assert edge.shape == (250, 250, 3)


def test_small_crop_is_upscaled_to_minimum_side():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    crop = crop_face(frame, BoundingBox(x=0.5, y=0.5, width=0.05, height=0.05), min_side=160)
    assert min(crop.shape[:2]) >= 160


def test_crop_outside_frame_is_empty():
    frame = np.zeros((100, 100, 3), dtype=np.uint8)
    crop = crop_face(frame, BoundingBox(x=1.0, y=1.0, width=0.0, height=0.0), padding=0.0)
    assert crop.size == 0


def test_quality_penalties():
    good = assess_face_quality(np.zeros((200, 200, 3), dtype=np.uint8))
    assert good.score == 1.0
    assert good.is_good_quality

    small = assess_face_quality(np.zeros((80, 80, 3), dtype=np.uint8))
    assert small.score == 0.7
    assert small.is_good_quality
    assert small.issues == ["Image too small"]

    small_and_wide = assess_face_quality(np.zeros((80, 200, 3), dtype=np.uint8))
    assert small_and_wide.score == 0.5
    assert not small_and_wide.is_good_quality

    assert assess_face_quality(np.zeros((0, 0, 3), dtype=np.uint8)).score == 0.0
