# src/patchtrack/modules/patch_finder.py
from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from .pyramid import LEVELS, level_n_pos, level_scale, level_zero_pos

if TYPE_CHECKING:
    from ..system.state import KeyFrame, MapPoint

SUBPIX_CONVERGENCE_PX = 0.03


class PatchFinder:
    """
    Finds one map point's reference patch in the current frame.

    Usage per frame:
        calc_search_level_and_warp -> make_template_coarse -> find_patch_coarse
        (optionally) make_subpix_template -> iterate_subpix_to_convergence

    Positions handed in and out (coarse_pos, subpix_pos) are level-0 pixels.
    """

    def __init__(self, patch_size: int = 8, max_ssd_per_pixel: int = 500, min_template_std: float = 1.0):
        self.patch_size = int(patch_size)
        self.center = self.patch_size // 2
        self.max_ssd = self.patch_size * self.patch_size * int(max_ssd_per_pixel)
        self.min_template_std = float(min_template_std)

        # maps one source-level pixel step of the reference patch to level-0 pixels of this frame
        self.warp_inverse = np.eye(2)
        self.search_level = -1
        self.template: np.ndarray | None = None
        self.template_bad = True

        self.coarse_pos = np.zeros(2)
        self.subpix_pos = np.zeros(2)
        self._subpix_jacs: np.ndarray | None = None
        self._subpix_h_inv: np.ndarray | None = None
        self._mean_diff = 0.0

        offs = np.arange(self.patch_size) - self.center
        self._dx, self._dy = np.meshgrid(offs, offs)

    @property
    def level(self) -> int:
        return self.search_level

    @property
    def level_scale(self) -> float:
        return float(level_scale(self.search_level))

    def calc_search_level_and_warp(self, point: "MapPoint", T_cw: np.ndarray, cam_derivs: np.ndarray) -> int:
        """
        Build the 2x2 warp from reference patch to this view and pick the
        pyramid level where it is closest to unit area.

        Returns:
            search level, or -1 if the warp is too extreme to match reliably.
        """
        R_cw = T_cw[:3, :3]
        X_c = R_cw @ point.X_w + T_cw[:3, 3]
        z_inv = 1.0 / X_c[2]

        cols = []
        for v_w in (point.pixel_right_w, point.pixel_down_w):
            m = R_cw @ v_w
            cols.append(cam_derivs @ ((m[:2] - X_c[:2] * m[2] * z_inv) * z_inv))
        self.warp_inverse = np.column_stack(cols)

        det = float(np.linalg.det(self.warp_inverse))
        self.search_level = 0
        while det > 3.0 and self.search_level < LEVELS - 1:
            self.search_level += 1
            det *= 0.25

        if not np.isfinite(det) or det > 3.0 or det < 0.25:
            self.template_bad = True
            self.search_level = -1
        return self.search_level

    def make_template_coarse(self, point: "MapPoint") -> None:
        """Warp the reference patch into a search-level template."""
        self.template_bad = True
        if self.search_level < 0:
            return

        src = point.source_kf.levels[point.source_level].image
        h, w = src.shape

        # template pixel offset (search level) -> source-level pixel offset
        A = np.linalg.inv(self.warp_inverse) * self.level_scale
        d = np.stack([self._dx.ravel(), self._dy.ravel()]).astype(np.float64)
        src_xy = A @ d + point.center_at_source_level.reshape(2, 1)

        if src_xy[0].min() < 0.0 or src_xy[1].min() < 0.0 or src_xy[0].max() > w - 1 or src_xy[1].max() > h - 1:
            return

        map_x = src_xy[0].reshape(self.patch_size, self.patch_size).astype(np.float32)
        map_y = src_xy[1].reshape(self.patch_size, self.patch_size).astype(np.float32)
        self.template = cv2.remap(src, map_x, map_y, interpolation=cv2.INTER_LINEAR).astype(np.float32)

        if float(self.template.std()) < self.min_template_std:
            return
        self.template_bad = False

    def find_patch_coarse(self, pos: np.ndarray, kf: "KeyFrame", range_px: int) -> bool:
        """
        Zero-mean SSD search over FAST corners of the search level within
        `range_px` (level-0 pixels) of `pos`.
        """
        if self.template_bad or self.template is None:
            return False

        scale = level_scale(self.search_level)
        r = (int(range_px) + scale - 1) // scale
        pos_l = level_n_pos(pos, self.search_level)

        lvl = kf.levels[self.search_level]
        c = lvl.corners
        if c.shape[0] == 0:
            return False

        h, w = lvl.image.shape
        P, ctr = self.patch_size, self.center
        sel = (
            (np.abs(c[:, 0] - pos_l[0]) <= r)
            & (np.abs(c[:, 1] - pos_l[1]) <= r)
            & (c[:, 0] - ctr >= 0)
            & (c[:, 1] - ctr >= 0)
            & (c[:, 0] - ctr + P <= w)
            & (c[:, 1] - ctr + P <= h)
        )
        cand = c[sel]
        if cand.shape[0] == 0:
            return False

        ys = cand[:, 1, None, None] + self._dy[None]
        xs = cand[:, 0, None, None] + self._dx[None]
        patches = lvl.image[ys, xs].astype(np.float32)
        patches -= patches.mean(axis=(1, 2), keepdims=True)
        t = self.template - self.template.mean()
        ssd = ((patches - t[None]) ** 2).sum(axis=(1, 2))

        best = int(np.argmin(ssd))
        if ssd[best] >= self.max_ssd:
            return False

        self.coarse_pos = level_zero_pos(cand[best].astype(np.float64), self.search_level)
        return True

    def make_subpix_template(self) -> None:
        T = self.template
        gx = (T[1:-1, 2:] - T[1:-1, :-2]) * 0.5
        gy = (T[2:, 1:-1] - T[:-2, 1:-1]) * 0.5
        J = np.stack([gx.ravel(), gy.ravel(), np.ones(gx.size)], axis=1).astype(np.float64)
        H = J.T @ J
        try:
            self._subpix_h_inv = np.linalg.inv(H)
        except np.linalg.LinAlgError:
            self._subpix_h_inv = None
        self._subpix_jacs = J
        self._mean_diff = 0.0
        self.subpix_pos = self.coarse_pos.copy()

    def iterate_subpix(self, kf: "KeyFrame") -> float:
        """
        One inverse-compositional step (translation + brightness offset).

        Returns:
            squared pixel update at the search level, or -1.0 if the patch left the image.
        """
        img = kf.levels[self.search_level].image
        h, w = img.shape
        center = level_n_pos(self.subpix_pos, self.search_level)
        if not np.all(np.isfinite(center)):
            return -1.0
        ir = np.rint(center).astype(int)
        border = self.patch_size // 2 + 1
        if ir[0] < border or ir[1] < border or ir[0] >= w - border or ir[1] >= h - border:
            return -1.0

        P = self.patch_size
        shift = (P - 1) * 0.5 - self.center
        patch = cv2.getRectSubPix(
            img, (P, P), (float(center[0] + shift), float(center[1] + shift)), patchType=cv2.CV_32F
        )
        diff = (patch[1:-1, 1:-1] - self.template[1:-1, 1:-1]).ravel().astype(np.float64) + self._mean_diff
        update = self._subpix_h_inv @ (self._subpix_jacs.T @ diff)

        self.subpix_pos = self.subpix_pos - update[:2] * self.level_scale
        self._mean_diff -= update[2]
        return float(update[:2] @ update[:2])

    def iterate_subpix_to_convergence(self, kf: "KeyFrame", max_its: int) -> bool:
        if self._subpix_h_inv is None:
            return False
        for _ in range(int(max_its)):
            upd_sq = self.iterate_subpix(kf)
            if upd_sq < 0.0:
                return False
            if upd_sq < SUBPIX_CONVERGENCE_PX * SUBPIX_CONVERGENCE_PX:
                return True
        return False
