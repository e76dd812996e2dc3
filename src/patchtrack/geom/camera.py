# src/patchtrack/geom/camera.py
from __future__ import annotations

from typing import Protocol

import numpy as np


class Camera(Protocol):
    """What the tracker needs from a camera model."""

    image_size: tuple[int, int]

    def set_image_size(self, width: int, height: int) -> None: ...

    def project(self, plane_xy: np.ndarray) -> np.ndarray: ...

    def unproject(self, pixel: np.ndarray) -> np.ndarray: ...

    def projection_derivs(self, plane_xy: np.ndarray) -> np.ndarray: ...

    def largest_radius_in_image(self) -> float: ...


class PinholeCamera:
    """
    Undistorted pinhole camera.

    Intrinsics are given for a calibration resolution; set_image_size rescales
    them, so the same calibration works for resized input.

    Coordinates:
        plane_xy: points on the z=1 plane of the camera frame, shape (2,) or (N,2)
        pixel:    image coordinates, pixel centers at integers
    """

    def __init__(self, fx: float, fy: float, cx: float, cy: float, width: int, height: int):
        self._calib = np.array([fx, fy, cx, cy], dtype=np.float64)
        self._calib_size = (int(width), int(height))
        self.image_size = self._calib_size
        self.fx, self.fy, self.cx, self.cy = (float(v) for v in self._calib)

    @classmethod
    def from_dict(cls, cfg: dict) -> "PinholeCamera":
        return cls(
            fx=float(cfg["fx"]),
            fy=float(cfg["fy"]),
            cx=float(cfg["cx"]),
            cy=float(cfg["cy"]),
            width=int(cfg["width"]),
            height=int(cfg["height"]),
        )

    def set_image_size(self, width: int, height: int) -> None:
        sx = width / self._calib_size[0]
        sy = height / self._calib_size[1]
        fx, fy, cx, cy = self._calib
        self.fx = fx * sx
        self.fy = fy * sy
        # scale about pixel corners, not centers
        self.cx = (cx + 0.5) * sx - 0.5
        self.cy = (cy + 0.5) * sy - 0.5
        self.image_size = (int(width), int(height))

    def project(self, plane_xy: np.ndarray) -> np.ndarray:
        p = np.asarray(plane_xy, dtype=np.float64)
        return np.stack([self.fx * p[..., 0] + self.cx, self.fy * p[..., 1] + self.cy], axis=-1)

    def unproject(self, pixel: np.ndarray) -> np.ndarray:
        q = np.asarray(pixel, dtype=np.float64)
        return np.stack([(q[..., 0] - self.cx) / self.fx, (q[..., 1] - self.cy) / self.fy], axis=-1)

    def projection_derivs(self, plane_xy: np.ndarray | None = None) -> np.ndarray:
        return np.array([[self.fx, 0.0], [0.0, self.fy]], dtype=np.float64)

    def largest_radius_in_image(self) -> float:
        w, h = self.image_size
        corners = np.array([[-0.5, -0.5], [w - 0.5, -0.5], [-0.5, h - 0.5], [w - 0.5, h - 0.5]])
        return float(np.max(np.linalg.norm(self.unproject(corners), axis=1)))
