import numpy as np
import pytest

from patchtrack.geom.se3 import exp_se3
from patchtrack.modules.pose_update import calc_pose_update
from patchtrack.modules.robust import MEstimator
from patchtrack.system.state import KeyFrame, MapPoint, TrackerData


def _point(X_w, kf):
    return MapPoint(X_w=np.asarray(X_w, dtype=np.float64), source_kf=kf, source_level=0, source_pixel=np.zeros(2))


def _scene(n=60, seed=3):
    rng = np.random.default_rng(seed)
    kf = KeyFrame()
    xy = rng.uniform(-0.4, 0.4, size=(n, 2))
    z = rng.uniform(2.0, 4.0, size=n)
    # records only hold their points weakly
    points = [_point([x * d, y * d, d], kf) for (x, y), d in zip(xy, z)]
    return [TrackerData(p) for p in points], points


def test_nothing_found_gives_exact_zero():
    tds, _points = _scene(5)
    assert np.array_equal(calc_pose_update(tds), np.zeros(6))
    assert np.array_equal(calc_pose_update([]), np.zeros(6))


def test_perfect_fit_gives_zero_update(camera):
    tds, _points = _scene()
    for td in tds:
        td.project_and_derivs(np.eye(4), camera)
        td.calc_jacobian()
        td.found = True
        td.found_pos = td.image_pos.copy()
    assert np.allclose(calc_pose_update(tds), np.zeros(6), atol=1e-12)


@pytest.mark.parametrize("est", list(MEstimator))
def test_gauss_newton_recovers_motion(camera, est):
    v_true = np.array([0.02, -0.01, 0.015, 0.004, -0.006, 0.01])
    T_true = exp_se3(v_true)
    tds, _points = _scene()
    for td in tds:
        td.project(T_true, camera)
        assert td.in_image
        td.found_pos = td.image_pos.copy()

    T = np.eye(4)
    for _ in range(10):
        for td in tds:
            td.project_and_derivs(T, camera)
            td.calc_jacobian()
            td.found = True
        T = exp_se3(calc_pose_update(tds, est)) @ T
    assert np.allclose(T, T_true, atol=1e-5)


def test_outliers_marked_and_ignored(camera):
    tds, _points = _scene()
    for td in tds:
        td.project_and_derivs(np.eye(4), camera)
        td.calc_jacobian()
        td.found = True
        td.found_pos = td.image_pos + np.array([0.1, 0.0])
    bad = tds[0]
    bad.found_pos = bad.image_pos + np.array([30.0, -30.0])

    calc_pose_update(tds, MEstimator.TUKEY, override_sigma_sq=1.0, mark_outliers=True)
    assert bad.point.outlier_count == 1
    assert bad.point.inlier_count == 0
    assert all(td.point.inlier_count == 1 and td.point.outlier_count == 0 for td in tds[1:])

    calc_pose_update(tds, MEstimator.TUKEY, override_sigma_sq=1.0)
    assert bad.point.outlier_count == 1


def test_error_scaled_by_level(camera):
    tds, _points = _scene(3)
    for td in tds:
        td.project_and_derivs(np.eye(4), camera)
        td.calc_jacobian()
        td.found = True
        td.sqrt_inv_noise = 0.25
        td.found_pos = td.image_pos + np.array([4.0, 0.0])
    calc_pose_update(tds)
    assert np.allclose(tds[0].error_cov_scaled, [1.0, 0.0])
