from __future__ import annotations

import numpy as np

from ..geom.se3 import camera_center


class Telemetry:
    def __init__(self):
        self.frames = []
        self.successful_relocs = 0

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        self.frames.append(rec)

    def add_successful_reloc(self):
        self.successful_relocs += 1


class TrajectoryLog:
    """One `frame;quality;x;y;z` line per assessed frame, camera center in world coordinates."""

    def __init__(self, path: str):
        self.path = path
        self._f = open(path, "w", encoding="utf-8")

    def write(self, frame_id: int, quality: int, T_cw: np.ndarray) -> None:
        pos = camera_center(T_cw)
        self._f.write(f"{frame_id};{int(quality)};{pos[0]};{pos[1]};{pos[2]}\n")
        self._f.flush()

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()
