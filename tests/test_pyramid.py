import numpy as np
import pytest

from patchtrack.modules.pyramid import LEVELS, build_pyramid, level_n_pos, level_zero_pos


def test_level_position_conversions():
    v = np.array([3.0, 7.5])
    for lvl in range(LEVELS):
        assert np.allclose(level_n_pos(level_zero_pos(v, lvl), lvl), v)
    assert np.allclose(level_zero_pos(np.array([0.0, 0.0]), 1), [0.5, 0.5])


def test_build_pyramid(texture):
    levels = build_pyramid(texture)
    assert len(levels) == LEVELS
    assert [lv.image.shape for lv in levels] == [(240, 320), (120, 160), (60, 80), (30, 40)]
    for lv in levels:
        assert lv.corners.dtype == np.int32
        assert lv.corners.shape[1] == 2
        assert lv.corners.shape[0] > 0


def test_build_pyramid_rejects_color(texture):
    with pytest.raises(ValueError):
        build_pyramid(np.dstack([texture] * 3))
