import numpy as np

from ..geom.se3 import exp_se3, inv_T, ln_se3
from ..system.proposal import Proposal, Evidence

VELOCITY_DECAY = 0.9


def propose_const_vel(T_start: np.ndarray, velocity: np.ndarray, sbi_rot: np.ndarray | None = None) -> Proposal:
    """
    Predict T_cw for this frame as exp(velocity) @ T_start.

    If a rotation from the small-blurry-image estimator is given, it replaces
    the rotational part of the velocity and the x/y translation is dropped:
    the estimator sees rotation well but cannot tell it from sideways motion.
    """
    v = np.asarray(velocity, dtype=np.float64).copy()
    name = "const_vel"
    if sbi_rot is not None:
        v[3:] = sbi_rot[3:]
        v[0] = 0.0
        v[1] = 0.0
        name = "const_vel_sbi"
    return Proposal(name, exp_se3(v) @ T_start, Evidence(), valid=True)


def update_velocity(
    T_cw: np.ndarray,
    T_start: np.ndarray,
    velocity: np.ndarray,
    scene_depth_mean: float,
    decay: float = VELOCITY_DECAY,
) -> tuple[np.ndarray, float, float]:
    """
    Blend the motion realised this frame into the decaying velocity.

    Returns:
        new velocity (6,), its magnitude, and the magnitude with translation
        divided by the mean scene depth.
    """
    motion = ln_se3(T_cw @ inv_T(T_start))
    new_vel = decay * (0.5 * motion + 0.5 * np.asarray(velocity, dtype=np.float64))
    magnitude = float(np.sqrt(new_vel @ new_vel))

    scaled = new_vel.copy()
    scaled[:3] *= 1.0 / scene_depth_mean
    scaled_magnitude = float(np.sqrt(scaled @ scaled))
    return new_vel, magnitude, scaled_magnitude
