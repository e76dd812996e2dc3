from __future__ import annotations

from enum import IntEnum

import numpy as np


class TrackingQuality(IntEnum):
    GOOD = 0
    DODGY = 1
    BAD = 2


# pyramid levels counted as "large scale" (the two coarsest of four)
LARGE_SCALE_MIN_LEVEL = 2
MIN_LARGE_ATTEMPTS = 10


class QualityAssessor:
    """Classifies a frame from per-level found/attempted counts and keeps the lost-frame count."""

    def __init__(self, cfg):
        self.cfg = cfg
        self.quality = TrackingQuality.GOOD
        self.lost_frames = 0

    def reset(self) -> None:
        self.quality = TrackingQuality.GOOD
        self.lost_frames = 0

    def classify(self, found: np.ndarray, attempted: np.ndarray) -> TrackingQuality:
        found = np.asarray(found)
        attempted = np.asarray(attempted)
        total_found = int(found.sum())
        total_attempted = int(attempted.sum())
        if total_found == 0 or total_attempted == 0:
            return TrackingQuality.BAD

        large_found = int(found[LARGE_SCALE_MIN_LEVEL:].sum())
        large_attempted = int(attempted[LARGE_SCALE_MIN_LEVEL:].sum())

        total_frac = total_found / total_attempted
        if large_attempted > MIN_LARGE_ATTEMPTS:
            large_frac = large_found / large_attempted
        else:
            large_frac = total_frac

        if total_frac > self.cfg.quality_good:
            return TrackingQuality.GOOD
        if large_frac < self.cfg.quality_lost:
            return TrackingQuality.BAD
        return TrackingQuality.DODGY

    def assess(self, found, attempted, distance_excessive) -> TrackingQuality:
        """
        Args:
            found, attempted: per-level counters of the last track_map pass
            distance_excessive: zero-arg callable, only consulted for DODGY frames
        """
        q = self.classify(found, attempted)
        if q == TrackingQuality.DODGY and distance_excessive():
            q = TrackingQuality.BAD

        if q == TrackingQuality.BAD:
            self.lost_frames += 1
        else:
            self.lost_frames = 0
        self.quality = q
        return q
