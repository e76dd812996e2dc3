from dataclasses import dataclass
import numpy as np

@dataclass
class Evidence:
    keyframe_index: int | None = None

@dataclass
class Proposal:
    name: str
    T_cw: np.ndarray  # 4x4 camera-from-world
    evidence: Evidence
    valid: bool = True
    reason: str = ""
