import numpy as np
import pytest

from patchtrack.system.config import TrackerConfig
from patchtrack.system.quality import QualityAssessor, TrackingQuality


@pytest.fixture
def assessor():
    return QualityAssessor(TrackerConfig())


def test_nothing_attempted_is_bad(assessor):
    assert assessor.classify(np.zeros(4), np.zeros(4)) == TrackingQuality.BAD
    assert assessor.classify(np.zeros(4), np.array([10, 10, 10, 10])) == TrackingQuality.BAD


def test_good_above_threshold(assessor):
    assert assessor.classify(np.array([40, 10, 5, 5]), np.array([100, 20, 20, 20])) == TrackingQuality.GOOD


def test_large_scale_failure_is_bad(assessor):
    found = np.array([30, 0, 0, 1])
    attempted = np.array([100, 0, 20, 20])
    assert assessor.classify(found, attempted) == TrackingQuality.BAD


def test_few_large_attempts_fall_back_to_total(assessor):
    # 10 large-scale attempts, none found: not enough to judge, use the 25% overall rate
    found = np.array([50, 0, 0, 0])
    attempted = np.array([190, 0, 5, 5])
    assert assessor.classify(found, attempted) == TrackingQuality.DODGY


def test_quality_monotone_in_found(assessor):
    attempted = np.array([100, 50, 30, 20])
    last = TrackingQuality.BAD
    for k in range(0, 21):
        found = (attempted * k) // 20
        q = assessor.classify(found, attempted)
        assert q <= last
        last = q
    assert last == TrackingQuality.GOOD


def test_dodgy_escalates_when_far_from_keyframes(assessor):
    found = np.array([20, 5, 5, 5])
    attempted = np.array([100, 20, 20, 20])
    calls = []

    def far():
        calls.append(1)
        return True

    assert assessor.assess(found, attempted, lambda: False) == TrackingQuality.DODGY
    assert assessor.assess(found, attempted, far) == TrackingQuality.BAD
    assert calls == [1]


def test_distance_only_checked_for_dodgy(assessor):
    def boom():
        raise AssertionError("should not be called")

    assert assessor.assess(np.array([80, 0, 20, 20]), np.array([100, 0, 20, 20]), boom) == TrackingQuality.GOOD


def test_lost_frame_counter(assessor):
    bad = (np.zeros(4), np.array([10, 10, 10, 10]))
    good = (np.array([10, 10, 10, 10]), np.array([10, 10, 10, 10]))
    for n in range(1, 4):
        assessor.assess(*bad, lambda: False)
        assert assessor.lost_frames == n
    assessor.assess(*good, lambda: False)
    assert assessor.lost_frames == 0
    assert assessor.quality == TrackingQuality.GOOD
