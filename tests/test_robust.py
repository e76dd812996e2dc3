import numpy as np
import pytest

from patchtrack.modules.robust import MEstimator


def test_parse_case_insensitive():
    assert MEstimator.parse("Tukey") is MEstimator.TUKEY
    assert MEstimator.parse(" huber ") is MEstimator.HUBER
    assert MEstimator.parse(MEstimator.CAUCHY) is MEstimator.CAUCHY


def test_parse_invalid():
    with pytest.raises(ValueError, match="choices are Tukey, Cauchy, Huber"):
        MEstimator.parse("Welsch")


@pytest.mark.parametrize("est", list(MEstimator))
def test_empty_residual_set_has_no_sigma(est):
    assert est.find_sigma_squared(np.array([])) is None


def test_tukey_sigma_from_median():
    e_sq = np.array([1.0, 4.0, 9.0, 16.0, 25.0])
    # median 9 -> 3, small-sample factor 1 + 5/4
    expected = (1.4826 * (1.0 + 5.0 / 4.0) * 3.0 * 4.6851) ** 2
    assert MEstimator.TUKEY.find_sigma_squared(e_sq) == pytest.approx(expected)


def test_small_sample_correction_skipped_for_three_points():
    e_sq = np.array([1.0, 4.0, 9.0])
    expected = (1.4826 * 2.0 * 4.6851) ** 2
    assert MEstimator.TUKEY.find_sigma_squared(e_sq) == pytest.approx(expected)


def test_tukey_weight():
    assert MEstimator.TUKEY.weight(0.0, 4.0) == 1.0
    assert MEstimator.TUKEY.weight(2.0, 4.0) == pytest.approx(0.25)
    assert MEstimator.TUKEY.weight(4.0001, 4.0) == 0.0
    w = MEstimator.TUKEY.weight(np.array([0.0, 100.0]), 4.0)
    assert np.array_equal(w, [1.0, 0.0])


def test_cauchy_and_huber_weights():
    assert MEstimator.CAUCHY.weight(4.0, 4.0) == pytest.approx(0.5)
    assert MEstimator.HUBER.weight(1.0, 4.0) == 1.0
    assert MEstimator.HUBER.weight(16.0, 4.0) == pytest.approx(0.5)


def test_zero_sigma_keeps_only_exact_fits():
    w = MEstimator.TUKEY.weight(np.array([0.0, 1e-12]), 0.0)
    assert np.array_equal(w, [1.0, 0.0])
