import gc
import threading

import numpy as np

from patchtrack.modules.pyramid import level_zero_pos
from patchtrack.system.commands import CommandQueue
from patchtrack.system.state import KeyFrame, Map, MapPoint, TrackerDataPool


def test_map_point_from_observation(camera):
    kf = KeyFrame()
    px = np.array([100.0, 60.0])
    p = MapPoint.from_observation(kf, 0, px, 2.0, camera)
    assert p.X_w[2] == 2.0
    assert np.allclose(camera.project(p.X_w[:2] / p.X_w[2]), px)
    # one pixel to the right on the patch plane
    right = p.X_w + p.pixel_right_w
    assert np.allclose(camera.project(right[:2] / right[2]), px + [1.0, 0.0])


def test_pixel_vectors_scale_with_level(camera):
    kf = KeyFrame()
    p = MapPoint.from_observation(kf, 2, level_zero_pos(np.array([20.0, 15.0]), 2), 1.0, camera)
    down = p.X_w + p.pixel_down_w
    assert np.allclose(camera.project(down[:2] / down[2]), p.source_pixel + [0.0, 4.0])


def test_pool_creates_once_and_releases(camera):
    pool = TrackerDataPool()
    kf = KeyFrame()
    p = MapPoint.from_observation(kf, 0, np.array([10.0, 10.0]), 1.0, camera)
    td = pool.get(p)
    assert pool.get(p) is td
    assert len(pool) == 1
    del td, p
    gc.collect()
    assert len(pool) == 0


def test_snapshot_points_skips_bad(camera):
    m = Map()
    kf = KeyFrame()
    pts = [MapPoint.from_observation(kf, 0, np.array([10.0 + i, 10.0]), 1.0, camera) for i in range(3)]
    pts[1].bad = True
    m.add_points(pts)
    assert m.snapshot_points() == [pts[0], pts[2]]
    m.reset()
    assert not m.is_good()
    assert m.snapshot_points() == []


def test_keyframe_snapshot_is_independent(texture):
    kf = KeyFrame()
    kf.make_lite(texture)
    snap = kf.snapshot()
    kf.T_cw[0, 3] = 5.0
    kf.make_lite(texture)
    assert snap.T_cw[0, 3] == 0.0
    assert snap.image_size == (320, 240)


def test_command_queue_from_threads():
    q = CommandQueue()

    def push(n):
        for i in range(100):
            q.push(f"cmd{n}", str(i))

    threads = [threading.Thread(target=push, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(q) == 400
    assert len(q.drain()) == 400
    assert len(q) == 0
