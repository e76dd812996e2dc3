from __future__ import annotations

from concurrent.futures import Future

import cv2
import numpy as np
import pytest

from patchtrack.geom.camera import PinholeCamera
from patchtrack.system.config import TrackerConfig
from patchtrack.system.map_io import bootstrap_planar_map
from patchtrack.system.mapmaker import MapMode

WIDTH, HEIGHT = 320, 240


def make_texture(seed: int = 7, width: int = WIDTH, height: int = HEIGHT) -> np.ndarray:
    """Random filled rectangles over blurred noise: corners at every pyramid level."""
    rng = np.random.default_rng(seed)
    noise = rng.uniform(0.0, 255.0, (height, width)).astype(np.float32)
    img = 96.0 + 0.25 * (cv2.GaussianBlur(noise, (0, 0), sigmaX=1.5) - 128.0)
    for _ in range(160):
        w, h = (int(v) for v in rng.integers(6, 64, size=2))
        x, y = int(rng.integers(-8, width)), int(rng.integers(-8, height))
        cv2.rectangle(img, (x, y), (x + w, y + h), float(rng.uniform(0.0, 255.0)), thickness=-1)
    img = cv2.GaussianBlur(img, (0, 0), sigmaX=0.7)
    return np.clip(img, 0, 255).astype(np.uint8)


class FakeMapMaker:
    """Scriptable mapping side for tracker tests."""

    def __init__(self, *, reloc_pose=None, reloc_index=0, reloc_excessive=False, nearest_excessive=False,
                 need_keyframe=False, queue=0, reset_future=None):
        self.reloc_pose = reloc_pose
        self.reloc_index = reloc_index
        self.reloc_excessive = reloc_excessive
        self.nearest_excessive = nearest_excessive
        self.need_keyframe = need_keyframe
        self.queue = queue
        self.reset_future = reset_future

        self.modes: list[MapMode] = []
        self.resets = 0
        self.reloc_images = 0
        self.added_keyframes = []

    def request_reset(self) -> Future:
        self.resets += 1
        if self.reset_future is not None:
            return self.reset_future
        fut: Future = Future()
        fut.set_result(True)
        return fut

    def reset_done(self) -> bool:
        return True

    def set_mode(self, mode):
        self.modes.append(mode)

    def queue_size(self) -> int:
        return self.queue

    def need_new_keyframe(self, kf) -> bool:
        return self.need_keyframe

    def add_keyframe(self, kf) -> None:
        self.added_keyframes.append(kf)

    def add_reloc_image(self, kf) -> None:
        self.reloc_images += 1

    def new_reloc_pose_ready(self) -> bool:
        return self.reloc_pose is not None

    def last_reloc_pose(self) -> np.ndarray:
        return np.array(self.reloc_pose, dtype=np.float64)

    def best_reloc_keyframe_index(self) -> int:
        return self.reloc_index

    def is_distance_to_reloc_keyframe_excessive(self, T_cw, kf) -> bool:
        return self.reloc_excessive

    def is_distance_to_nearest_keyframe_excessive(self, kf) -> bool:
        return self.nearest_excessive


@pytest.fixture
def camera():
    return PinholeCamera(fx=300.0, fy=300.0, cx=159.5, cy=119.5, width=WIDTH, height=HEIGHT)


@pytest.fixture
def texture():
    return make_texture()


@pytest.fixture
def tracker_cfg():
    return TrackerConfig(use_rotation_estimator=False, seed=0)


@pytest.fixture
def planar_map(texture, camera, tracker_cfg):
    return bootstrap_planar_map(texture, camera, tracker_cfg, depth=1.0, max_points=600)


@pytest.fixture
def make_mapmaker():
    return FakeMapMaker
