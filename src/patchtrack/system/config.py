# src/patchtrack/system/config.py
from __future__ import annotations

from dataclasses import dataclass, field, fields

import yaml

from ..modules.robust import MEstimator

# Option names accepted in the `tracker:` section besides the field names.
_OPTION_ALIASES = {
    "RotationEstimatorBlur": "sbi_blur",
    "UseRotationEstimator": "use_rotation_estimator",
    "CoarseMin": "coarse_min",
    "CoarseMax": "coarse_max",
    "CoarseRange": "coarse_range",
    "CoarseSubPixIts": "coarse_subpix_its",
    "DisableCoarse": "disable_coarse",
    "CoarseMinVelocity": "coarse_min_velocity",
    "MaxPatchesPerFrame": "max_patches_per_frame",
    "TrackingQualityGood": "quality_good",
    "TrackingQualityLost": "quality_lost",
    "MEstimator": "m_estimator",
}


@dataclass(frozen=True)
class TrackerConfig:
    """Tracker tunables. Fixed for a session; Tracker.reset may swap in a new one."""

    # global rotation estimator
    sbi_blur: float = 0.75
    use_rotation_estimator: bool = True
    sbi_iterations: int = 6

    # coarse stage
    coarse_min: int = 20
    coarse_max: int = 100
    coarse_range: int = 20
    coarse_subpix_its: int = 8
    disable_coarse: bool = False
    coarse_min_velocity: float = 0.006
    coarse_override_sigma_sq: float = 1.0

    # fine stage
    max_patches_per_frame: int = 1000
    fine_range: int = 10
    fine_range_after_coarse: int = 5
    fine_subpix_its: int = 8
    fine_override_sigma_sq: float = 16.0

    # pose refinement
    m_estimator: MEstimator = MEstimator.TUKEY
    gn_iterations: int = 10
    robust_override_after: int = 5
    pose_prior: float = 100.0

    # patch matching
    patch_size: int = 8
    max_ssd_per_pixel: int = 500
    min_template_std: float = 1.0
    fast_thresholds: tuple[int, ...] = (10, 15, 15, 10)

    # quality / bookkeeping
    quality_good: float = 0.3
    quality_lost: float = 0.1
    max_lost_frames: int = 3
    min_depth_samples: int = 20
    velocity_decay: float = 0.9
    kf_min_frame_gap: int = 20
    max_mapmaker_queue: int = 3

    reset_timeout_s: float = 5.0
    seed: int | None = None

    @classmethod
    def from_dict(cls, d: dict | None) -> "TrackerConfig":
        d = dict(d or {})
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in d.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in names:
                raise ValueError(f"Unknown tracker option: {key}")
            kwargs[name] = value

        if "m_estimator" in kwargs:
            try:
                kwargs["m_estimator"] = MEstimator.parse(kwargs["m_estimator"])
            except ValueError as ex:
                print(f"[Tracker] {ex}; using Tukey")
                kwargs["m_estimator"] = MEstimator.TUKEY
        if "fast_thresholds" in kwargs:
            kwargs["fast_thresholds"] = tuple(int(v) for v in kwargs["fast_thresholds"])
        for flag in ("use_rotation_estimator", "disable_coarse"):
            if flag in kwargs:
                kwargs[flag] = bool(kwargs[flag])
        return cls(**kwargs)


@dataclass(frozen=True)
class MapMakerConfig:
    """Tunables of the bundled StaticMapMaker."""

    # depth-normalised distance beyond which the pose has "run away" from the map
    max_kf_distance: float = 1.0
    # relocalisation leniency: candidate may sit this far (depth-normalised) from its keyframe
    reloc_max_distance: float = 1.0
    # depth-normalised distance from the nearest keyframe that warrants a new one
    new_kf_distance: float = 0.3
    reloc_iterations: int = 6
    sbi_blur: float = 0.75
    asynchronous: bool = False

    @classmethod
    def from_dict(cls, d: dict | None) -> "MapMakerConfig":
        d = dict(d or {})
        names = {f.name for f in fields(cls)}
        unknown = set(d) - names
        if unknown:
            raise ValueError(f"Unknown mapmaker option(s): {sorted(unknown)}")
        return cls(**d)


@dataclass
class Config:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    mapmaker: MapMakerConfig = field(default_factory=MapMakerConfig)
    camera: dict = field(default_factory=dict)
    dataset: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    return Config(
        tracker=TrackerConfig.from_dict(cfg.get("tracker")),
        mapmaker=MapMakerConfig.from_dict(cfg.get("mapmaker")),
        camera=dict(cfg.get("camera") or {}),
        dataset=dict(cfg.get("dataset") or {}),
        raw=cfg,
    )
