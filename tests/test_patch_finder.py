import numpy as np

from patchtrack.modules.patch_finder import PatchFinder
from patchtrack.modules.pyramid import level_zero_pos
from patchtrack.system.state import KeyFrame, MapPoint


def _frame(img):
    kf = KeyFrame()
    kf.make_lite(img)
    return kf


def _interior_point(planar_map, camera, level):
    w, h = camera.image_size
    for p in planar_map.points:
        x, y = p.source_pixel
        if p.source_level == level and 40 <= x < w - 40 and 40 <= y < h - 40:
            return p
    raise AssertionError(f"no interior point at level {level}")


def test_search_level_follows_source_level(planar_map, camera):
    finder = PatchFinder()
    for lvl in (0, 1, 2):
        p = _interior_point(planar_map, camera, lvl)
        assert finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs()) == lvl


def test_extreme_warp_is_rejected(planar_map, camera):
    p = _interior_point(planar_map, camera, 0)
    finder = PatchFinder()

    p.pixel_right_w = p.pixel_right_w * 1000.0
    assert finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs()) == -1

    p.pixel_right_w = p.pixel_right_w * 1e-4
    assert finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs()) == -1
    assert finder.template_bad


def test_finds_patch_in_identical_frame(planar_map, camera, texture):
    kf = _frame(texture)
    for lvl in (0, 1, 2):
        p = _interior_point(planar_map, camera, lvl)
        finder = PatchFinder()
        finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs())
        finder.make_template_coarse(p)
        assert not finder.template_bad
        # predicted a few pixels off, still inside the search range
        assert finder.find_patch_coarse(p.source_pixel + np.array([3.0, -2.0]), kf, 10)
        assert np.allclose(finder.coarse_pos, p.source_pixel)


def test_subpixel_converges_in_place(planar_map, camera, texture):
    kf = _frame(texture)
    p = _interior_point(planar_map, camera, 0)
    finder = PatchFinder()
    finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs())
    finder.make_template_coarse(p)
    assert finder.find_patch_coarse(p.source_pixel, kf, 10)
    finder.make_subpix_template()
    assert finder.iterate_subpix_to_convergence(kf, 8)
    assert np.allclose(finder.subpix_pos, p.source_pixel, atol=0.05)


def test_shifted_frame_found_at_new_position(planar_map, camera, texture):
    shifted = np.roll(texture, 8, axis=1)
    kf = _frame(shifted)
    p = _interior_point(planar_map, camera, 1)
    finder = PatchFinder()
    finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs())
    finder.make_template_coarse(p)
    assert finder.find_patch_coarse(p.source_pixel, kf, 10)
    assert np.allclose(finder.coarse_pos, p.source_pixel + np.array([8.0, 0.0]))


def test_nothing_found_outside_range(planar_map, camera, texture):
    kf = _frame(np.roll(texture, 40, axis=1))
    p = _interior_point(planar_map, camera, 0)
    finder = PatchFinder(max_ssd_per_pixel=1)
    finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs())
    finder.make_template_coarse(p)
    assert not finder.find_patch_coarse(p.source_pixel, kf, 5)


def test_flat_template_is_bad(camera):
    flat = np.full((240, 320), 128, np.uint8)
    src = _frame(flat)
    p = MapPoint.from_observation(src, 0, level_zero_pos(np.array([160.0, 120.0]), 0), 1.0, camera)
    finder = PatchFinder()
    assert finder.calc_search_level_and_warp(p, np.eye(4), camera.projection_derivs()) == 0
    finder.make_template_coarse(p)
    assert finder.template_bad
