# src/patchtrack/modules/small_blurry.py
from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from ..geom.se3 import Rt_to_T, ln_se3

if TYPE_CHECKING:
    from ..geom.camera import Camera
    from ..system.state import KeyFrame


class SmallBlurryImage:
    """
    Heavily down-sampled, zero-mean, blurred copy of a frame.

    Built from the coarsest pyramid level halved once more (40x30 for VGA).
    Used to estimate frame-to-frame rotation and to score keyframes for
    relocalisation.
    """

    def __init__(self, kf: "KeyFrame", blur: float = 0.75):
        coarsest = kf.levels[-1].image
        h, w = coarsest.shape
        small = cv2.resize(coarsest, (max(w // 2, 1), max(h // 2, 1)), interpolation=cv2.INTER_AREA)
        small = small.astype(np.float32)
        small -= float(small.mean())
        if blur > 0.0:
            small = cv2.GaussianBlur(small, (0, 0), sigmaX=float(blur))
        self.image = small
        self.full_size = kf.image_size  # (W,H) of level 0

    @property
    def shape(self) -> tuple[int, int]:
        return self.image.shape

    def zmssd(self, other: "SmallBlurryImage") -> float:
        d = self.image - other.image
        return float((d * d).sum())

    def align_to(self, target: "SmallBlurryImage", iterations: int = 6, eps: float = 1e-4) -> np.ndarray | None:
        """
        Euclidean (rotation + translation) alignment of `target` onto this image.

        Returns:
            2x3 warp mapping target pixels to pixels of this image, or None
            if the iteration broke down.
        """
        warp = np.eye(2, 3, dtype=np.float32)
        criteria = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, int(iterations), float(eps))
        try:
            _, warp = cv2.findTransformECC(target.image, self.image, warp, cv2.MOTION_EUCLIDEAN, criteria, None, 1)
        except cv2.error:
            return None
        if not np.all(np.isfinite(warp)):
            return None
        return warp.astype(np.float64)


def _bearings(camera: "Camera", pixels: np.ndarray) -> np.ndarray:
    xy = camera.unproject(pixels)
    b = np.concatenate([xy, np.ones((xy.shape[0], 1))], axis=1)
    return b / np.linalg.norm(b, axis=1, keepdims=True)


def se3_from_se2(warp: np.ndarray, camera: "Camera", sbi_shape: tuple[int, int], full_size: tuple[int, int]) -> np.ndarray:
    """
    Lift a planar warp between two small images into a pure camera rotation.

    Four points around the image center are moved by the warp, unprojected
    at full resolution, and the rotation best aligning the two bearing sets
    is found in closed form (SVD).

    Returns:
        4x4 transform with zero translation; maps the target camera frame to
        the current camera frame.
    """
    h, w = sbi_shape
    sx = full_size[0] / float(w)
    sy = full_size[1] / float(h)
    c = np.array([(w - 1) * 0.5, (h - 1) * 0.5])
    d = 0.25 * min(w, h)
    verts = c + np.array([[-d, -d], [d, -d], [d, d], [-d, d]])
    moved = verts @ warp[:, :2].T + warp[:, 2]

    def to_full(v: np.ndarray) -> np.ndarray:
        return np.stack([(v[:, 0] + 0.5) * sx - 0.5, (v[:, 1] + 0.5) * sy - 0.5], axis=1)

    b_old = _bearings(camera, to_full(verts))
    b_new = _bearings(camera, to_full(moved))

    H = b_old.T @ b_new
    U, _, Vt = np.linalg.svd(H)
    D = np.diag([1.0, 1.0, np.sign(np.linalg.det(Vt.T @ U.T)) or 1.0])
    R = Vt.T @ D @ U.T
    return Rt_to_T(R, np.zeros(3))


def calc_sbi_rotation(
    this: SmallBlurryImage,
    last: SmallBlurryImage,
    camera: "Camera",
    iterations: int = 6,
) -> np.ndarray | None:
    """
    Rotation from the last frame to this one as a tangent 6-vector
    (translation part zero), or None if the alignment failed.
    """
    warp = this.align_to(last, iterations=iterations)
    if warp is None:
        return None
    T = se3_from_se2(warp, camera, this.shape, this.full_size)
    return ln_se3(T)
