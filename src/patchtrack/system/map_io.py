# src/patchtrack/system/map_io.py
from __future__ import annotations

import os

import numpy as np

from ..geom.camera import Camera
from ..modules.pyramid import level_zero_pos
from .config import TrackerConfig
from .state import KeyFrame, Map, MapPoint


def save_map(path: str, map: Map) -> None:
    """
    Write keyframe images/poses and map points to a compressed npz file.

    Points whose source keyframe is not part of the map cannot be stored.
    """
    kfs = map.snapshot_keyframes()
    points = map.snapshot_points()
    if not kfs:
        raise ValueError("Cannot save a map without keyframes.")
    kf_index = {id(k): i for i, k in enumerate(kfs)}

    point_kf = []
    for p in points:
        idx = kf_index.get(id(p.source_kf))
        if idx is None:
            raise ValueError("Map point references a keyframe that is not in the map.")
        point_kf.append(idx)

    np.savez_compressed(
        path,
        kf_images=np.stack([k.image for k in kfs]),
        kf_poses=np.stack([k.T_cw for k in kfs]),
        kf_depth=np.array([[k.scene_depth_mean, k.scene_depth_sigma] for k in kfs], dtype=np.float64),
        points=np.array([p.X_w for p in points], dtype=np.float64).reshape(-1, 3),
        point_kf=np.array(point_kf, dtype=np.int32),
        point_level=np.array([p.source_level for p in points], dtype=np.int32),
        point_pixel=np.array([p.source_pixel for p in points], dtype=np.float64).reshape(-1, 2),
    )


def load_map(path: str, camera: Camera, cfg: TrackerConfig | None = None) -> Map:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Missing map file: {path}")
    cfg = cfg or TrackerConfig()

    with np.load(path) as data:
        kf_images = data["kf_images"]
        kf_poses = data["kf_poses"]
        kf_depth = data["kf_depth"]
        X_w = data["points"]
        point_kf = data["point_kf"]
        point_level = data["point_level"]
        point_pixel = data["point_pixel"]

    kfs = []
    for img, T, (mean, sigma) in zip(kf_images, kf_poses, kf_depth):
        kf = KeyFrame(T_cw=np.asarray(T, dtype=np.float64), scene_depth_mean=float(mean), scene_depth_sigma=float(sigma))
        kf.make_lite(np.ascontiguousarray(img, dtype=np.uint8), fast_thresholds=cfg.fast_thresholds)
        kfs.append(kf)

    points = []
    for X, k, lvl, px in zip(X_w, point_kf, point_level, point_pixel):
        p = MapPoint(X_w=np.asarray(X, dtype=np.float64), source_kf=kfs[int(k)], source_level=int(lvl), source_pixel=np.asarray(px, dtype=np.float64))
        p.refresh_pixel_vectors(camera)
        points.append(p)

    m = Map()
    m.keyframes = kfs
    m.points = points
    m.good = bool(kfs) and bool(points)
    return m


def bootstrap_planar_map(
    img_gray_u8: np.ndarray,
    camera: Camera,
    cfg: TrackerConfig | None = None,
    *,
    depth: float = 1.0,
    max_points: int | None = 1000,
    rng: np.random.Generator | None = None,
) -> Map:
    """
    One-keyframe map with points on a fronto-parallel plane at `depth`,
    placed at the FAST corners of every pyramid level. The keyframe sits at
    the world origin.
    """
    cfg = cfg or TrackerConfig()
    kf = KeyFrame(T_cw=np.eye(4), scene_depth_mean=float(depth), scene_depth_sigma=0.0)
    kf.make_lite(img_gray_u8, fast_thresholds=cfg.fast_thresholds)

    obs = [(lvl, c) for lvl, level in enumerate(kf.levels) for c in level.corners]
    if max_points is not None and len(obs) > max_points:
        rng = rng or np.random.default_rng(0)
        keep = np.sort(rng.choice(len(obs), size=max_points, replace=False))
        obs = [obs[i] for i in keep]

    points = [
        MapPoint.from_observation(kf, lvl, level_zero_pos(c.astype(np.float64), lvl), depth, camera)
        for lvl, c in obs
    ]

    m = Map()
    m.keyframes = [kf]
    m.points = points
    m.good = bool(points)
    return m
