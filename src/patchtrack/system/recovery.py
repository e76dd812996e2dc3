from __future__ import annotations

import numpy as np

from ..geom.se3 import is_finite_T
from .mapmaker import MapMaker
from .proposal import Evidence, Proposal
from .state import KeyFrame, Map


class RecoveryManager:
    """
    Relocalisation handshake with the mapping side.

    attempt() submits the frame and checks, without blocking, whether a
    candidate pose came back. Candidates are accepted leniently: anything
    finite and not too far from its source keyframe (the mapping side's
    own distance test) is taken.
    """

    def __init__(self, mapmaker: MapMaker, map: Map):
        self.mapmaker = mapmaker
        self.map = map

    def attempt(self, kf: KeyFrame) -> Proposal:
        I = np.eye(4, dtype=np.float64)
        ev = Evidence()

        self.mapmaker.add_reloc_image(kf)
        if not self.mapmaker.new_reloc_pose_ready():
            return Proposal("reloc", I, ev, valid=False, reason="RELOC_PENDING")

        T_cw = np.asarray(self.mapmaker.last_reloc_pose(), dtype=np.float64)
        idx = int(self.mapmaker.best_reloc_keyframe_index())
        ev.keyframe_index = idx

        if not is_finite_T(T_cw):
            return Proposal("reloc", I, ev, valid=False, reason="REJECT_RELOC_NAN")

        keyframes = self.map.snapshot_keyframes()
        if not 0 <= idx < len(keyframes):
            return Proposal("reloc", I, ev, valid=False, reason=f"REJECT_RELOC_NO_KEYFRAME:{idx}")

        if self.mapmaker.is_distance_to_reloc_keyframe_excessive(T_cw, keyframes[idx]):
            return Proposal("reloc", I, ev, valid=False, reason="REJECT_RELOC_DISTANCE")

        return Proposal("reloc", T_cw.copy(), ev, valid=True, reason="RELOC_OK")
