# src/patchtrack/modules/pyramid.py
from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

LEVELS = 4

# FAST thresholds per level, finest first
DEFAULT_FAST_THRESHOLDS = (10, 15, 15, 10)


def level_scale(level: int) -> int:
    return 1 << level


def level_zero_pos(v: np.ndarray, level: int) -> np.ndarray:
    """Pixel position at `level` -> level-0 pixel position."""
    return (np.asarray(v, dtype=np.float64) + 0.5) * level_scale(level) - 0.5


def level_n_pos(v: np.ndarray, level: int) -> np.ndarray:
    """Level-0 pixel position -> pixel position at `level`."""
    return (np.asarray(v, dtype=np.float64) + 0.5) / level_scale(level) - 0.5


@dataclass
class PyramidLevel:
    image: np.ndarray    # (H,W) uint8
    corners: np.ndarray  # (N,2) int32 (x, y) FAST corners at this level


def _fast_corners(img: np.ndarray, threshold: int) -> np.ndarray:
    fast = cv2.FastFeatureDetector_create(threshold=int(threshold), nonmaxSuppression=True)
    kps = fast.detect(img, None)
    if not kps:
        return np.zeros((0, 2), np.int32)
    pts = np.array([kp.pt for kp in kps], dtype=np.float64)
    return np.rint(pts).astype(np.int32)


def build_pyramid(
    img_gray_u8: np.ndarray,
    *,
    levels: int = LEVELS,
    fast_thresholds: tuple[int, ...] = DEFAULT_FAST_THRESHOLDS,
) -> list[PyramidLevel]:
    """
    Image pyramid with FAST corners on every level.

    Args:
        img_gray_u8: uint8 grayscale image, shape (H,W)
        levels: number of levels; level l is downsampled by 2**l
        fast_thresholds: FAST threshold per level

    Returns:
        list of PyramidLevel, finest first
    """
    if img_gray_u8 is None or img_gray_u8.ndim != 2:
        raise ValueError("build_pyramid expects a grayscale image (H,W).")
    if len(fast_thresholds) < levels:
        raise ValueError(f"Need {levels} FAST thresholds, got {len(fast_thresholds)}")

    out: list[PyramidLevel] = []
    img = np.ascontiguousarray(img_gray_u8, dtype=np.uint8)
    for lvl in range(levels):
        if lvl > 0:
            # 2x2 box average, like a plain half-sample
            h, w = img.shape
            img = cv2.resize(img, (w // 2, h // 2), interpolation=cv2.INTER_AREA)
        out.append(PyramidLevel(image=img, corners=_fast_corners(img, fast_thresholds[lvl])))
    return out
