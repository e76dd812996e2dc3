# src/patchtrack/modules/pose_update.py
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

import cv2
import numpy as np

from .robust import MEstimator

if TYPE_CHECKING:
    from ..system.state import TrackerData

DEFAULT_PRIOR = 100.0


def calc_pose_update(
    tdata: Iterable["TrackerData"],
    estimator: MEstimator = MEstimator.TUKEY,
    *,
    override_sigma_sq: float = 0.0,
    mark_outliers: bool = False,
    prior: float = DEFAULT_PRIOR,
) -> np.ndarray:
    """
    One robust Gauss-Newton step for the camera pose.

    Args:
        tdata: working records; only those with `found` set contribute.
        estimator: M-estimator used to weight residuals.
        override_sigma_sq: if > 0, use this squared scale instead of estimating it.
        mark_outliers: bump the map points' outlier/inlier counters.
        prior: diagonal stabilising prior on the normal equations.

    Returns:
        (6,) tangent update to be applied as exp_se3(update) @ T_cw.
        Exact zeros when nothing was found.
    """
    found = [td for td in tdata if td.found]
    if not found:
        return np.zeros(6)

    for td in found:
        td.error_cov_scaled = td.sqrt_inv_noise * (td.found_pos - td.image_pos)
    errors = np.array([td.error_cov_scaled for td in found], dtype=np.float64)  # (N,2)
    errors_sq = np.einsum("ij,ij->i", errors, errors)

    if override_sigma_sq > 0.0:
        sigma_sq = float(override_sigma_sq)
    else:
        sigma_sq = estimator.find_sigma_squared(errors_sq)
        if sigma_sq is None:
            return np.zeros(6)

    weights = np.asarray(estimator.weight(errors_sq, sigma_sq), dtype=np.float64).reshape(-1)

    if mark_outliers:
        for td, w in zip(found, weights):
            if w == 0.0:
                td.point.outlier_count += 1
            else:
                td.point.inlier_count += 1

    keep = weights > 0.0
    A = prior * np.eye(6)
    b = np.zeros(6)
    if np.any(keep):
        J = np.array([td.sqrt_inv_noise * td.jacobian for td, k in zip(found, keep) if k], dtype=np.float64)
        J = J.reshape(-1, 6)                  # (2M,6)
        e = errors[keep].reshape(-1)          # (2M,)
        w = np.repeat(weights[keep], 2)       # (2M,)
        A += J.T @ (J * w[:, None])
        b += J.T @ (e * w)

    ok, mu = cv2.solve(A, b.reshape(6, 1), flags=cv2.DECOMP_CHOLESKY)
    if not ok:
        ok, mu = cv2.solve(A, b.reshape(6, 1), flags=cv2.DECOMP_LU)
        if not ok:
            return np.zeros(6)
    return mu.reshape(6)
