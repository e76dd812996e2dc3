# src/patchtrack/geom/se3.py
from __future__ import annotations

import cv2
import numpy as np

# Tangent vectors are ordered [tx, ty, tz, wx, wy, wz].


def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = t.reshape(3)
    return T


def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]; t = T[:3, 3]
    Ti = np.eye(4)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def is_finite_T(T: np.ndarray | None) -> bool:
    return T is not None and bool(np.all(np.isfinite(T)))


def skew(w: np.ndarray) -> np.ndarray:
    return np.array([
        [0.0, -w[2], w[1]],
        [w[2], 0.0, -w[0]],
        [-w[1], w[0], 0.0],
    ], dtype=np.float64)


def exp_so3(w: np.ndarray) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.asarray(w, dtype=np.float64).reshape(3, 1))
    return R


def ln_so3(R: np.ndarray) -> np.ndarray:
    """
    Rotation vector of R. Closed form, so rotations down to machine precision
    survive (cv2.Rodrigues snaps sin(theta) < 1e-5 to zero).
    """
    R = np.asarray(R, dtype=np.float64)
    cos_a = float(np.clip((np.trace(R) - 1.0) * 0.5, -1.0, 1.0))
    w = 0.5 * np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
    sin_a = float(np.linalg.norm(w))

    if cos_a > np.sqrt(0.5):
        # small angle: asin is well conditioned, and asin(s)/s -> 1
        if sin_a > 0.0:
            w *= np.arcsin(sin_a) / sin_a
        return w
    if cos_a > -np.sqrt(0.5):
        return w * (np.arccos(cos_a) / sin_a)

    # near pi: axis from the symmetric part
    angle = np.pi - np.arcsin(sin_a)
    d = np.diag(R) - cos_a
    k = int(np.argmax(d * d))
    axis = 0.5 * (R[:, k] + R[k, :])
    axis[k] = d[k]
    if axis @ w < 0.0:
        axis = -axis
    return angle * axis / np.linalg.norm(axis)


def exp_se3(v6: np.ndarray) -> np.ndarray:
    """
    Exponential map from a tangent 6-vector to a 4x4 rigid transform.

    Args:
        v6: [tx, ty, tz, wx, wy, wz]

    Returns:
        T (4x4) such that ln_se3(T) == v6 (for |w| < pi).
    """
    v6 = np.asarray(v6, dtype=np.float64).reshape(6)
    u = v6[:3]
    w = v6[3:]
    theta_sq = float(w @ w)
    W = skew(w)

    if theta_sq < 1e-10:
        # second order series
        B = 0.5 - theta_sq / 24.0
        C = 1.0 / 6.0 - theta_sq / 120.0
    else:
        theta = np.sqrt(theta_sq)
        B = (1.0 - np.cos(theta)) / theta_sq
        C = (theta - np.sin(theta)) / (theta_sq * theta)

    V = np.eye(3) + B * W + C * (W @ W)
    return Rt_to_T(exp_so3(w), V @ u)


def ln_se3(T: np.ndarray) -> np.ndarray:
    """Logarithm map of a rigid transform; inverse of exp_se3."""
    R = T[:3, :3]
    t = T[:3, 3]
    w = ln_so3(R)
    theta_sq = float(w @ w)
    W = skew(w)

    if theta_sq < 1e-10:
        D = 1.0 / 12.0 + theta_sq / 720.0
    else:
        theta = np.sqrt(theta_sq)
        D = (1.0 - theta * np.sin(theta) / (2.0 * (1.0 - np.cos(theta)))) / theta_sq

    V_inv = np.eye(3) - 0.5 * W + D * (W @ W)
    return np.concatenate([V_inv @ t, w])


def generators_at(p: np.ndarray) -> np.ndarray:
    """
    Motion of point p under each of the six SE(3) generators, as a 3x6 matrix.
    Column j is d(exp(e_j * s) * p)/ds at s=0.
    """
    G = np.zeros((3, 6), dtype=np.float64)
    G[:, :3] = np.eye(3)
    G[:, 3:] = -skew(p)
    return G


def camera_center(T_cw: np.ndarray) -> np.ndarray:
    return inv_T(T_cw)[:3, 3]
