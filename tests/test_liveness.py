import pytest

from conftest import CLOSED_EYE, OPEN_EYE, observation
from face_checkin.face_types import BoundingBox, FaceRegion, FaceSample, PoseAngles
from face_checkin.liveness import LivenessAnalyzer, eye_aspect_ratio


def sample(timestamp, eyes=OPEN_EYE, yaw=0.0, size=0.25, confidence=0.9, landmarks=None):
    obs = observation(eyes=eyes, yaw=yaw, size=size, confidence=confidence)
    if landmarks is not None:
        obs.landmarks = landmarks
    return FaceSample.from_observation(obs, timestamp)


def feed(analyzer, samples):
    result = None
    for item in samples:
        result = analyzer.analyze(item)
    return result


def test_eye_aspect_ratio_of_open_and_closed_eye():
    assert eye_aspect_ratio(OPEN_EYE) == pytest.approx(0.3)
    assert eye_aspect_ratio(CLOSED_EYE) == pytest.approx(0.04)
    assert eye_aspect_ratio(OPEN_EYE[:4]) == 0.0
    assert eye_aspect_ratio(None) == 0.0


@pytest.mark.parametrize("blinks", [0, 1, 2, 3])
def test_blink_score_counts_each_open_to_closed_transition(blinks):
    analyzer = LivenessAnalyzer(minimum_blinks=2, window_seconds=60.0, max_samples=100)
    pattern = [OPEN_EYE, OPEN_EYE]
    for _ in range(blinks):
        pattern += [CLOSED_EYE, OPEN_EYE, OPEN_EYE]
    samples = [sample(0.1 * idx, eyes=eyes) for idx, eyes in enumerate(pattern)]
    while len(samples) < 6:
        samples.append(sample(0.1 * len(samples)))

    result = feed(analyzer, samples)
    assert result.blink_score == pytest.approx(min(blinks / 2, 1.0))


def test_scores_are_zero_below_minimum_samples():
    analyzer = LivenessAnalyzer()
    result = feed(analyzer, [sample(0.0, eyes=CLOSED_EYE), sample(0.1, yaw=0.5), sample(0.2, size=0.5)])
    assert result.blink_score == 0.0
    assert result.movement_score == 0.0
    assert result.depth_score == 0.0
    assert result.texture_score == pytest.approx(0.9)


def test_static_photo_is_not_live():
    analyzer = LivenessAnalyzer()
    result = feed(analyzer, [sample(0.1 * idx) for idx in range(20)])
    assert result.is_live is False
    assert result.confidence == pytest.approx((0.8 + 0.9) / 5.0)
    assert result.details == "Blink missing | Movement missing | Depth missing"


def test_moving_blinking_face_is_live():
    analyzer = LivenessAnalyzer()
    samples = []
    for idx in range(20):
        eyes = CLOSED_EYE if idx % 4 == 2 else OPEN_EYE
        yaw = 0.3 if idx % 2 else 0.0
        size = 0.3 if idx % 2 else 0.2
        samples.append(sample(0.1 * idx, eyes=eyes, yaw=yaw, size=size))

    result = feed(analyzer, samples)
    assert result.blink_score == 1.0
    assert result.movement_score == 1.0
    assert result.depth_score == 1.0
    assert result.is_live is True
    assert result.confidence > 0.6


def test_history_is_bounded_by_count_and_window():
    capped = LivenessAnalyzer(max_samples=30, window_seconds=100.0)
    feed(capped, [sample(0.01 * idx) for idx in range(50)])
    assert len(capped) == 30

    windowed = LivenessAnalyzer(max_samples=30, window_seconds=5.0)
    feed(windowed, [sample(float(idx)) for idx in range(10)])
    # Samples at t=4..9 are within five seconds of t=9.
    assert len(windowed) == 6


def test_symmetry_score_penalizes_off_center_nose():
    centered = sample(0.0)
    assert LivenessAnalyzer.symmetry_score(centered) == pytest.approx(0.8)

    off_center = sample(0.0, landmarks={FaceRegion.NOSE: [[0.8, 0.5]]})
    assert LivenessAnalyzer.symmetry_score(off_center) == pytest.approx(0.6)

    bare = FaceSample(
        box=BoundingBox(0.1, 0.1, 0.2, 0.2),
        landmarks={},
        pose=PoseAngles(),
        confidence=0.5,
        timestamp=0.0,
    )
    assert LivenessAnalyzer.symmetry_score(bare) == pytest.approx(0.5)


def test_reset_clears_history():
    analyzer = LivenessAnalyzer()
    feed(analyzer, [sample(0.1 * idx) for idx in range(5)])
    analyzer.reset()
    assert len(analyzer) == 0
