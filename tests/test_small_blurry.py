import cv2
import numpy as np

from patchtrack.geom.se3 import exp_so3
from patchtrack.modules.small_blurry import SmallBlurryImage, calc_sbi_rotation, se3_from_se2
from patchtrack.system.state import KeyFrame


def _sbi(img):
    kf = KeyFrame()
    kf.make_lite(img)
    return SmallBlurryImage(kf)


def test_shape_and_zero_mean(texture):
    sbi = _sbi(texture)
    assert sbi.shape == (15, 20)
    assert abs(float(sbi.image.mean())) < 1.0
    assert sbi.zmssd(sbi) == 0.0


def test_identical_frames_give_no_rotation(texture, camera):
    sbi = _sbi(texture)
    rot = calc_sbi_rotation(sbi, sbi, camera)
    assert rot is not None
    assert np.allclose(rot, np.zeros(6), atol=1e-3)


def test_identity_warp_lifts_to_identity(camera):
    T = se3_from_se2(np.eye(2, 3), camera, (15, 20), (320, 240))
    assert np.allclose(T, np.eye(4), atol=1e-9)


def test_in_plane_rotation_lifts_about_optical_axis(camera):
    angle = 3.0
    warp = cv2.getRotationMatrix2D((9.5, 7.0), angle, 1.0)
    T = se3_from_se2(warp, camera, (15, 20), (320, 240))
    assert np.allclose(T[:3, 3], 0.0)
    w = cv2.Rodrigues(T[:3, :3])[0].ravel()
    assert abs(abs(w[2]) - np.deg2rad(angle)) < 1e-3
    assert np.allclose(w[:2], 0.0, atol=1e-3)
    assert np.allclose(exp_so3(w), T[:3, :3])
