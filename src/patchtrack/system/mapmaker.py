# src/patchtrack/system/mapmaker.py
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Protocol

import numpy as np

from ..geom.camera import Camera
from ..geom.se3 import camera_center, exp_se3
from ..modules.small_blurry import SmallBlurryImage, calc_sbi_rotation
from .config import MapMakerConfig
from .state import KeyFrame, Map


class MapMode(Enum):
    MAP = "map"
    RELOC = "reloc"


class MapMaker(Protocol):
    """
    The mapping side as seen from the tracker. Calls are non-blocking polls
    or fire-and-forget submissions; request_reset hands back a future that
    completes when the reset is done.
    """

    def request_reset(self) -> Future: ...

    def reset_done(self) -> bool: ...

    def set_mode(self, mode: MapMode) -> None: ...

    def queue_size(self) -> int: ...

    def need_new_keyframe(self, kf: KeyFrame) -> bool: ...

    def add_keyframe(self, kf: KeyFrame) -> None: ...

    def add_reloc_image(self, kf: KeyFrame) -> None: ...

    def new_reloc_pose_ready(self) -> bool: ...

    def last_reloc_pose(self) -> np.ndarray: ...

    def best_reloc_keyframe_index(self) -> int: ...

    def is_distance_to_reloc_keyframe_excessive(self, T_cw: np.ndarray, kf: KeyFrame) -> bool: ...

    def is_distance_to_nearest_keyframe_excessive(self, kf: KeyFrame) -> bool: ...


def depth_normalised_distance(T_a: np.ndarray, T_b: np.ndarray, depth: float) -> float:
    return float(np.linalg.norm(camera_center(T_a) - camera_center(T_b))) / max(float(depth), 1e-9)


class StaticMapMaker:
    """
    Mapping collaborator for a fixed, preloaded map.

    It does not triangulate or adjust anything: added keyframes only extend
    the set used for relocalisation and distance checks. Relocalisation picks
    the keyframe whose small blurry image is closest to the frame's and
    rotates its pose by the estimated image rotation.
    """

    def __init__(self, map: Map, camera: Camera, cfg: MapMakerConfig | None = None):
        self.map = map
        self.camera = camera
        self.cfg = cfg or MapMakerConfig()
        self.mode = MapMode.MAP

        self._base_keyframes = map.snapshot_keyframes()
        self._lock = threading.Lock()
        self._reset_done = True
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reloc") if self.cfg.asynchronous else None
        self._reloc_future: Future | None = None
        self._reloc_result: tuple[np.ndarray, int] | None = None

    # --- reset

    def request_reset(self) -> Future:
        fut: Future = Future()
        with self._lock:
            self._reset_done = False
            with self.map.lock:
                self.map.keyframes[:] = list(self._base_keyframes)
                for p in self.map.points:
                    p.outlier_count = 0
                    p.inlier_count = 0
            self._reloc_future = None
            self._reloc_result = None
            self.mode = MapMode.MAP
            self._reset_done = True
        fut.set_result(True)
        return fut

    def reset_done(self) -> bool:
        return self._reset_done

    def set_mode(self, mode: MapMode) -> None:
        self.mode = mode

    # --- keyframes

    def queue_size(self) -> int:
        return 0

    def _closest_keyframe(self, kf: KeyFrame) -> KeyFrame | None:
        kfs = self.map.snapshot_keyframes()
        if not kfs:
            return None
        c = camera_center(kf.T_cw)
        dists = [float(np.linalg.norm(camera_center(k.T_cw) - c)) for k in kfs]
        return kfs[int(np.argmin(dists))]

    def need_new_keyframe(self, kf: KeyFrame) -> bool:
        nearest = self._closest_keyframe(kf)
        if nearest is None:
            return True
        return depth_normalised_distance(kf.T_cw, nearest.T_cw, kf.scene_depth_mean) > self.cfg.new_kf_distance

    def add_keyframe(self, kf: KeyFrame) -> None:
        self.map.add_keyframe(kf)

    def is_distance_to_nearest_keyframe_excessive(self, kf: KeyFrame) -> bool:
        nearest = self._closest_keyframe(kf)
        if nearest is None:
            return False
        return depth_normalised_distance(kf.T_cw, nearest.T_cw, kf.scene_depth_mean) > self.cfg.max_kf_distance

    def is_distance_to_reloc_keyframe_excessive(self, T_cw: np.ndarray, kf: KeyFrame) -> bool:
        return depth_normalised_distance(T_cw, kf.T_cw, kf.scene_depth_mean) > self.cfg.reloc_max_distance

    # --- relocalisation

    def add_reloc_image(self, kf: KeyFrame) -> None:
        with self._lock:
            if self._reloc_future is not None and not self._reloc_future.done():
                return  # still busy with an earlier frame
            snap = kf.snapshot()
            if self._executor is not None:
                self._reloc_future = self._executor.submit(self._relocalise, snap)
                return
            fut: Future = Future()
            try:
                fut.set_result(self._relocalise(snap))
            except Exception as ex:
                fut.set_exception(ex)
            self._reloc_future = fut

    def new_reloc_pose_ready(self) -> bool:
        with self._lock:
            fut = self._reloc_future
            if fut is None or not fut.done():
                return False
            self._reloc_future = None
            result = fut.result()
            if result is None:
                return False
            self._reloc_result = result
            return True

    def last_reloc_pose(self) -> np.ndarray:
        if self._reloc_result is None:
            raise RuntimeError("No relocalisation pose available.")
        return self._reloc_result[0].copy()

    def best_reloc_keyframe_index(self) -> int:
        if self._reloc_result is None:
            raise RuntimeError("No relocalisation pose available.")
        return self._reloc_result[1]

    def _sbi_of(self, kf: KeyFrame) -> SmallBlurryImage:
        if kf.sbi is None:
            kf.sbi = SmallBlurryImage(kf, self.cfg.sbi_blur)
        return kf.sbi

    def _relocalise(self, kf: KeyFrame) -> tuple[np.ndarray, int] | None:
        kfs = self.map.snapshot_keyframes()
        if not kfs:
            return None
        sbi = SmallBlurryImage(kf, self.cfg.sbi_blur)
        scores = [sbi.zmssd(self._sbi_of(k)) for k in kfs]
        best = int(np.argmin(scores))

        rot = calc_sbi_rotation(sbi, self._sbi_of(kfs[best]), self.camera, self.cfg.reloc_iterations)
        if rot is None:
            return kfs[best].T_cw.copy(), best
        return exp_se3(rot) @ kfs[best].T_cw, best

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
