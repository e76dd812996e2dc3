# src/patchtrack/system/state.py
from __future__ import annotations

import threading
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from ..geom.se3 import generators_at, inv_T
from ..modules.patch_finder import PatchFinder
from ..modules.pyramid import DEFAULT_FAST_THRESHOLDS, PyramidLevel, build_pyramid, level_n_pos, level_scale

if TYPE_CHECKING:
    from ..geom.camera import Camera
    from ..modules.small_blurry import SmallBlurryImage


@dataclass(eq=False)
class MapPoint:
    """
    A 3D map point plus the reference patch it was created from.

    Identity-hashed: measurement dicts and the tracker data pool key on the
    object itself.
    """
    X_w: np.ndarray                  # (3,) world position
    source_kf: "KeyFrame"            # keyframe holding the reference patch
    source_level: int                # pyramid level of the reference patch
    source_pixel: np.ndarray         # (2,) patch center, level-0 pixels in source_kf

    # world-space displacement of one source-level pixel right/down on the patch
    pixel_right_w: np.ndarray = field(default_factory=lambda: np.zeros(3))
    pixel_down_w: np.ndarray = field(default_factory=lambda: np.zeros(3))

    outlier_count: int = 0
    inlier_count: int = 0
    bad: bool = False

    @classmethod
    def from_observation(
        cls,
        kf: "KeyFrame",
        level: int,
        pixel: np.ndarray,
        depth: float,
        camera: "Camera",
    ) -> "MapPoint":
        """Point seen at `pixel` (level-0) in `kf`, at camera-frame depth `depth`."""
        pixel = np.asarray(pixel, dtype=np.float64).reshape(2)
        xy = camera.unproject(pixel)
        X_c = np.array([xy[0], xy[1], 1.0]) * float(depth)
        T_wc = inv_T(kf.T_cw)
        X_w = T_wc[:3, :3] @ X_c + T_wc[:3, 3]
        p = cls(X_w=X_w, source_kf=kf, source_level=int(level), source_pixel=pixel.copy())
        p.refresh_pixel_vectors(camera)
        return p

    @property
    def center_at_source_level(self) -> np.ndarray:
        return level_n_pos(self.source_pixel, self.source_level)

    def refresh_pixel_vectors(self, camera: "Camera") -> None:
        """
        Recompute pixel_right_w / pixel_down_w for a patch lying on the plane
        through the point that faces the source camera.
        """
        T_cw = self.source_kf.T_cw
        R_cw = T_cw[:3, :3]
        X_c = R_cw @ self.X_w + T_cw[:3, 3]
        normal = -X_c / np.linalg.norm(X_c)
        plane_d = float(normal @ X_c)
        step = float(level_scale(self.source_level))

        def on_plane(px: np.ndarray) -> np.ndarray:
            xy = camera.unproject(px)
            ray = np.array([xy[0], xy[1], 1.0])
            return ray * (plane_d / float(normal @ ray))

        right_c = on_plane(self.source_pixel + np.array([step, 0.0])) - X_c
        down_c = on_plane(self.source_pixel + np.array([0.0, step])) - X_c
        self.pixel_right_w = R_cw.T @ right_c
        self.pixel_down_w = R_cw.T @ down_c


@dataclass(frozen=True)
class Measurement:
    pos: np.ndarray   # (2,) level-0 pixel position where the point was found
    level: int
    subpix: bool


class TrackerData:
    """
    Per-frame working record for one map point.

    Only meaningful inside a single Tracker.track_map call; begin_frame()
    wipes everything derived from a previous frame. The record refers to its
    point weakly so that the pool entry goes away with the point.
    """

    def __init__(self, point: MapPoint, finder: PatchFinder | None = None):
        self._point = weakref.ref(point)
        self.finder = finder if finder is not None else PatchFinder()
        self.begin_frame()

    @property
    def point(self) -> MapPoint:
        p = self._point()
        if p is None:
            raise ReferenceError("Map point of this tracker record no longer exists.")
        return p

    def begin_frame(self) -> None:
        self.in_image = False
        self.potentially_visible = False
        self.searched = False
        self.found = False
        self.did_subpix = False
        self.search_level = -1
        self.X_c = np.zeros(3)
        self.image_plane = np.zeros(2)
        self.image_pos = np.zeros(2)
        self.cam_derivs = np.zeros((2, 2))
        self.jacobian = np.zeros((2, 6))
        self.sqrt_inv_noise = 1.0
        self.error_cov_scaled = np.zeros(2)  # residual scaled by sqrt_inv_noise
        self.found_pos = np.zeros(2)

    def project(self, T_cw: np.ndarray, camera: "Camera") -> None:
        """Project into the image; sets in_image."""
        self.in_image = False
        self.X_c = T_cw[:3, :3] @ self.point.X_w + T_cw[:3, 3]
        z = float(self.X_c[2])
        if not np.isfinite(z) or z < 0.001:
            return
        self.image_plane = self.X_c[:2] / z
        r = camera.largest_radius_in_image()
        if float(self.image_plane @ self.image_plane) > r * r:
            return
        self.image_pos = camera.project(self.image_plane)
        w, h = camera.image_size
        if not (0.0 <= self.image_pos[0] < w and 0.0 <= self.image_pos[1] < h):
            return
        self.in_image = True

    def get_derivs(self, camera: "Camera") -> None:
        self.cam_derivs = camera.projection_derivs(self.image_plane)

    def project_and_derivs(self, T_cw: np.ndarray, camera: "Camera") -> None:
        self.project(T_cw, camera)
        if self.X_c[2] >= 0.001:
            self.get_derivs(camera)

    def calc_jacobian(self) -> None:
        """d(image_pos)/d(pose update), 2x6, for a left-multiplied exp(update)."""
        z_inv = 1.0 / self.X_c[2]
        G = generators_at(self.X_c)
        plane_motion = (G[:2] - np.outer(self.X_c[:2], G[2]) * z_inv) * z_inv
        self.jacobian = self.cam_derivs @ plane_motion

    def linear_update(self, v6: np.ndarray) -> None:
        """First-order prediction of image_pos after applying v6."""
        self.image_pos = self.image_pos + self.jacobian @ v6


class TrackerDataPool:
    """
    One TrackerData per map point, created on first use and released when
    the point itself is garbage collected.
    """

    def __init__(self, *, patch_size: int = 8, max_ssd_per_pixel: int = 500, min_template_std: float = 1.0):
        self._records: "weakref.WeakKeyDictionary[MapPoint, TrackerData]" = weakref.WeakKeyDictionary()
        self._finder_kwargs = dict(
            patch_size=patch_size,
            max_ssd_per_pixel=max_ssd_per_pixel,
            min_template_std=min_template_std,
        )

    def get(self, point: MapPoint) -> TrackerData:
        td = self._records.get(point)
        if td is None:
            td = TrackerData(point=point, finder=PatchFinder(**self._finder_kwargs))
            self._records[point] = td
        return td

    def __len__(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records.clear()


@dataclass(eq=False)
class KeyFrame:
    levels: list[PyramidLevel] = field(default_factory=list)
    T_cw: np.ndarray = field(default_factory=lambda: np.eye(4))
    scene_depth_mean: float = 1.0
    scene_depth_sigma: float = 1.0
    measurements: dict[MapPoint, Measurement] = field(default_factory=dict)
    sbi: "SmallBlurryImage | None" = None

    def make_lite(
        self,
        img_gray_u8: np.ndarray,
        *,
        fast_thresholds: tuple[int, ...] = DEFAULT_FAST_THRESHOLDS,
    ) -> None:
        """Rebuild pyramid and corners for a new image; pose and depth stats are kept."""
        self.levels = build_pyramid(img_gray_u8, fast_thresholds=fast_thresholds)
        self.measurements.clear()
        self.sbi = None

    @property
    def image(self) -> np.ndarray:
        return self.levels[0].image

    @property
    def image_size(self) -> tuple[int, int]:
        h, w = self.levels[0].image.shape
        return (w, h)

    def snapshot(self) -> "KeyFrame":
        """Independent copy to hand over to the mapping side."""
        return KeyFrame(
            levels=list(self.levels),
            T_cw=self.T_cw.copy(),
            scene_depth_mean=self.scene_depth_mean,
            scene_depth_sigma=self.scene_depth_sigma,
            measurements=dict(self.measurements),
            sbi=self.sbi,
        )


class Map:
    """
    Points and keyframes shared with the mapping collaborator.

    Mutations go through the lock; the tracker iterates snapshots.
    """

    def __init__(self):
        self.points: list[MapPoint] = []
        self.keyframes: list[KeyFrame] = []
        self.good = False
        self.lock = threading.RLock()

    def is_good(self) -> bool:
        return self.good

    def add_keyframe(self, kf: KeyFrame) -> None:
        with self.lock:
            self.keyframes.append(kf)

    def add_points(self, points: list[MapPoint]) -> None:
        with self.lock:
            self.points.extend(points)

    def snapshot_points(self) -> list[MapPoint]:
        with self.lock:
            return [p for p in self.points if not p.bad]

    def snapshot_keyframes(self) -> list[KeyFrame]:
        with self.lock:
            return list(self.keyframes)

    def reset(self) -> None:
        with self.lock:
            self.points.clear()
            self.keyframes.clear()
            self.good = False
