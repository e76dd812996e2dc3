# src/patchtrack/system/tracker.py
from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeout

import numpy as np

from ..geom.camera import Camera
from ..geom.se3 import exp_se3, is_finite_T, ln_so3
from ..modules.const_vel import propose_const_vel, update_velocity
from ..modules.pose_update import calc_pose_update
from ..modules.pyramid import LEVELS
from ..modules.small_blurry import SmallBlurryImage, calc_sbi_rotation
from .commands import CommandQueue, CommandResult
from .config import TrackerConfig
from .mapmaker import MapMaker, MapMode
from .proposal import Proposal
from .quality import QualityAssessor, TrackingQuality
from .recovery import RecoveryManager
from .state import KeyFrame, Map, Measurement, TrackerData, TrackerDataPool
from .telemetry import Telemetry, TrajectoryLog

_QUALITY_WORDS = {
    TrackingQuality.GOOD: "good.",
    TrackingQuality.DODGY: "poor.",
    TrackingQuality.BAD: "bad.",
}


class Tracker:
    """
    Per-frame camera tracking against a sparse map.

    Each call to track_frame either tracks the map (motion model -> patch
    search -> robust pose refinement -> quality assessment -> keyframe
    decision) or, when lost or the map is unusable, tries to relocalise.

    Transforms follow the convention T_a_b maps points from b to a; the
    tracked pose is T_cw (camera-from-world).
    """

    def __init__(
        self,
        camera: Camera,
        map: Map,
        mapmaker: MapMaker,
        cfg: TrackerConfig | None = None,
        *,
        telemetry: Telemetry | None = None,
        trajectory_path: str | None = None,
        rng: np.random.Generator | None = None,
    ):
        self.camera = camera
        self.map = map
        self.mapmaker = mapmaker
        self.cfg = cfg or TrackerConfig()
        self.image_size = tuple(camera.image_size)
        self.telemetry = telemetry or Telemetry()
        self.trajectory = TrajectoryLog(trajectory_path) if trajectory_path else None
        self._rng_override = rng

        self.commands = CommandQueue()
        self.command_results: list[CommandResult] = []
        self.recovery = RecoveryManager(mapmaker, map)
        self.quality_assessor = QualityAssessor(self.cfg)
        self.current_kf = KeyFrame()

        # two slots, swapped each frame
        self._sbi: list[SmallBlurryImage | None] = [None, None]
        self._sbi_slot = 0

        self.reset()

    # ------------------------------------------------------------------ reset

    def reset(self, cfg: TrackerConfig | None = None) -> None:
        """
        Wipe tracking state and have the mapping side reset; returns once it
        has finished.
        """
        if cfg is not None:
            self.cfg = cfg
            self.quality_assessor.cfg = cfg
        self.rng = self._rng_override if self._rng_override is not None else np.random.default_rng(self.cfg.seed)
        self.pool = TrackerDataPool(
            patch_size=self.cfg.patch_size,
            max_ssd_per_pixel=self.cfg.max_ssd_per_pixel,
            min_template_std=self.cfg.min_template_std,
        )

        self.T_cw = np.eye(4)
        self.T_start = np.eye(4)
        self.velocity = np.zeros(6)
        self.velocity_magnitude = 0.0
        self.scaled_velocity_magnitude = 0.0
        self.sbi_rot: np.ndarray | None = None
        self.did_coarse = False
        self.just_recovered = False

        self.quality_assessor.reset()
        self.current_kf.scene_depth_mean = 1.0
        self.current_kf.scene_depth_sigma = 1.0
        self.current_kf.measurements.clear()
        self.camera.set_image_size(*self.image_size)

        self.frame = 0
        self.last_kf_dropped = 0
        self.meas_found = np.zeros(LEVELS, dtype=np.int64)
        self.meas_attempted = np.zeros(LEVELS, dtype=np.int64)
        self.pvs_sizes = [0] * LEVELS
        self.iteration_set: list[TrackerData] = []
        self.last_motion: Proposal | None = None
        self.last_reloc: Proposal | None = None
        self._message = ""

        fut = self.mapmaker.request_reset()
        try:
            fut.result(timeout=self.cfg.reset_timeout_s)
        except FutureTimeout as ex:
            raise TimeoutError(f"Mapping side did not finish resetting within {self.cfg.reset_timeout_s}s") from ex

    # ---------------------------------------------------------------- queries

    @property
    def tracking_quality(self) -> TrackingQuality:
        return self.quality_assessor.quality

    @property
    def lost_frames(self) -> int:
        return self.quality_assessor.lost_frames

    def get_camera_pose(self) -> tuple[np.ndarray, np.ndarray]:
        """(rotation vector, translation) of T_cw."""
        return ln_so3(self.T_cw[:3, :3]), self.T_cw[:3, 3].copy()

    def get_message_for_user(self) -> str:
        return self._message

    # --------------------------------------------------------------- commands

    def queue_command(self, name: str, params: str = "") -> None:
        """Safe to call from any thread; handled at the end of the next frame."""
        self.commands.push(name, params)

    def handle_command(self, name: str, params: str = "") -> CommandResult:
        if name.strip().lower() == "reset":
            self.reset()
            return CommandResult(name, ok=True, reason="RESET")
        return CommandResult(name, ok=False, reason=f"UNKNOWN_COMMAND:{name}")

    def _drain_commands(self) -> None:
        for cmd in self.commands.drain():
            res = self.handle_command(cmd.name, cmd.params)
            if not res.ok:
                print(f"[Tracker] unhandled command {cmd.name!r} ({res.reason})")
            self.command_results.append(res)

    # ------------------------------------------------------------------ frame

    def track_frame(self, img_gray_u8: np.ndarray, frame_id: int | None = None) -> TrackingQuality:
        """
        Track one video frame.

        Responsibilities:
          1) rebuild the current keyframe (pyramid, corners, small blurry image)
          2) track the map, or try to relocalise when lost / map unusable
          3) decide on keyframe insertion
          4) drain queued commands
          5) log telemetry

        Args:
            img_gray_u8: (H,W) uint8 image of the configured size
            frame_id: number written to the trajectory log (defaults to the frame counter)
        """
        if img_gray_u8 is None or img_gray_u8.ndim != 2:
            raise ValueError("track_frame expects a grayscale image (H,W).")
        if img_gray_u8.dtype != np.uint8:
            raise ValueError(f"track_frame expects uint8 intensities, got {img_gray_u8.dtype}.")
        h, w = img_gray_u8.shape
        if (w, h) != self.image_size:
            raise ValueError(f"Frame size {(w, h)} does not match configured size {self.image_size}.")

        self._message = ""
        self.current_kf.make_lite(img_gray_u8, fast_thresholds=self.cfg.fast_thresholds)

        sbi = SmallBlurryImage(self.current_kf, self.cfg.sbi_blur)
        if self._sbi[0] is None:
            self._sbi = [sbi, sbi]
        else:
            self._sbi_slot ^= 1
            self._sbi[self._sbi_slot] = sbi
        self.current_kf.sbi = sbi

        self.frame += 1
        if frame_id is None:
            frame_id = self.frame

        rec = {"mode": None, "did_coarse": False, "motion": None, "reloc": None, "keyframe_added": False}

        if self.map.is_good() and self.lost_frames < self.cfg.max_lost_frames:
            rec["mode"] = "track"
            self.mapmaker.set_mode(MapMode.MAP)
            self.sbi_rot = self.calc_sbi_rotation() if self.cfg.use_rotation_estimator else None
            self.apply_motion_model()
            self.track_map()
            self.update_motion_model()
            self.assess_tracking_quality(frame_id)

            self._message = (
                f"Tracking Map, quality {_QUALITY_WORDS[self.tracking_quality]} Found:"
                + "".join(f" {f}/{a}" for f, a in zip(self.meas_found, self.meas_attempted))
                + f" Map: {len(self.map.points)}P, {len(self.map.keyframes)}KF"
            )

            if self._should_add_keyframe():
                self._message += " Adding key-frame."
                self.add_new_keyframe()
                rec["keyframe_added"] = True
        else:
            rec["mode"] = "recover"
            self._message = "** Attempting recovery **."
            self.mapmaker.set_mode(MapMode.RELOC)
            if self.attempt_recovery() and self.map.is_good():
                self.track_map()
                self.assess_tracking_quality(frame_id)
                if self.tracking_quality != TrackingQuality.BAD:
                    self.telemetry.add_successful_reloc()

        self._drain_commands()

        rec.update({
            "quality": self.tracking_quality.name,
            "lost_frames": int(self.lost_frames),
            "found": [int(v) for v in self.meas_found],
            "attempted": [int(v) for v in self.meas_attempted],
            "pvs": list(self.pvs_sizes),
            "did_coarse": bool(self.did_coarse) if rec["mode"] == "track" else False,
            "motion": self.last_motion.name if rec["mode"] == "track" and self.last_motion is not None else None,
            "reloc": None if self.last_reloc is None or rec["mode"] != "recover" else self.last_reloc.reason,
            "message": self._message,
        })
        self.telemetry.log_frame(int(frame_id), rec)
        return self.tracking_quality

    # ----------------------------------------------------------- motion model

    def calc_sbi_rotation(self) -> np.ndarray | None:
        this = self._sbi[self._sbi_slot]
        last = self._sbi[self._sbi_slot ^ 1]
        return calc_sbi_rotation(this, last, self.camera, self.cfg.sbi_iterations)

    def apply_motion_model(self) -> None:
        self.T_start = self.T_cw.copy()
        prop = propose_const_vel(self.T_start, self.velocity, self.sbi_rot)
        self.last_motion = prop
        self.T_cw = prop.T_cw

    def update_motion_model(self) -> None:
        self.velocity, self.velocity_magnitude, self.scaled_velocity_magnitude = update_velocity(
            self.T_cw,
            self.T_start,
            self.velocity,
            self.current_kf.scene_depth_mean,
            self.cfg.velocity_decay,
        )

    # -------------------------------------------------------------- tracking

    def build_pvs(self) -> list[list[TrackerData]]:
        """Project every map point; bucket the usable ones by search level."""
        pvs: list[list[TrackerData]] = [[] for _ in range(LEVELS)]
        for p in self.map.snapshot_points():
            td = self.pool.get(p)
            td.begin_frame()
            td.project(self.T_cw, self.camera)
            if not td.in_image:
                continue
            td.get_derivs(self.camera)
            td.search_level = td.finder.calc_search_level_and_warp(p, self.T_cw, td.cam_derivs)
            if td.search_level == -1:
                continue
            td.potentially_visible = True
            pvs[td.search_level].append(td)
        return pvs

    def search_for_points(self, tds: list[TrackerData], range_px: int, subpix_its: int) -> int:
        """Patch search for each record; updates the per-level counters. Returns number found."""
        n_found = 0
        for td in tds:
            finder = td.finder
            finder.make_template_coarse(td.point)
            if finder.template_bad:
                td.in_image = td.potentially_visible = td.found = False
                continue

            lvl = finder.level
            self.meas_attempted[lvl] += 1

            found = finder.find_patch_coarse(td.image_pos, self.current_kf, range_px)
            td.searched = True
            if not found:
                td.found = False
                continue

            td.found = True
            td.sqrt_inv_noise = 1.0 / finder.level_scale
            n_found += 1
            self.meas_found[lvl] += 1

            if subpix_its > 0:
                td.did_subpix = True
                finder.make_subpix_template()
                if not finder.iterate_subpix_to_convergence(self.current_kf, subpix_its):
                    # dubious location
                    td.found = False
                    n_found -= 1
                    self.meas_found[lvl] -= 1
                    continue
                td.found_pos = finder.subpix_pos.copy()
            else:
                td.did_subpix = False
                td.found_pos = finder.coarse_pos.copy()
        return n_found

    def _gauss_newton_step(self, iteration_set, override_sigma_sq: float, mark_outliers: bool = False) -> np.ndarray | None:
        upd = calc_pose_update(
            iteration_set,
            self.cfg.m_estimator,
            override_sigma_sq=override_sigma_sq,
            mark_outliers=mark_outliers,
            prior=self.cfg.pose_prior,
        )
        if not np.all(np.isfinite(upd)):
            return None
        self.T_cw = exp_se3(upd) @ self.T_cw
        return upd

    def track_map(self) -> None:
        """
        Find map points in the current frame and refine T_cw from them.

        An optional coarse stage on the two coarsest levels runs first when
        the camera moves fast (or just after relocalisation); the fine stage
        always runs.
        """
        cfg = self.cfg
        self.meas_found[:] = 0
        self.meas_attempted[:] = 0
        T_entry = self.T_cw.copy()
        diverged = False

        pvs = self.build_pvs()
        for bucket in pvs:
            self.rng.shuffle(bucket)
        self.pvs_sizes = [len(b) for b in pvs]

        next_to_search: list[TrackerData] = []
        iteration_set: list[TrackerData] = []

        coarse_max = cfg.coarse_max
        coarse_range = cfg.coarse_range
        self.did_coarse = False

        try_coarse = not (
            cfg.disable_coarse
            or self.scaled_velocity_magnitude < cfg.coarse_min_velocity
            or coarse_max == 0
        )
        if self.just_recovered:
            try_coarse = True
            coarse_max *= 2
            coarse_range *= 2
            self.just_recovered = False

        top, second = LEVELS - 1, LEVELS - 2
        if try_coarse and len(pvs[top]) + len(pvs[second]) > cfg.coarse_min:
            # coarsest level first, topped up from the next one
            for lvl in (top, second):
                need = coarse_max - len(next_to_search)
                if need <= 0:
                    break
                next_to_search.extend(pvs[lvl][:need])
                del pvs[lvl][:need]

            n_found = self.search_for_points(next_to_search, coarse_range, cfg.coarse_subpix_its)
            iteration_set = list(next_to_search)
            if n_found >= cfg.coarse_min:
                self.did_coarse = True
                for it in range(cfg.gn_iterations):
                    if it != 0:
                        for td in iteration_set:
                            if td.found:
                                td.project_and_derivs(self.T_cw, self.camera)
                    for td in iteration_set:
                        if td.found:
                            td.calc_jacobian()
                    override = cfg.coarse_override_sigma_sq if it > cfg.robust_override_after else 0.0
                    if self._gauss_newton_step(iteration_set, override) is None:
                        diverged = True
                        break

        fine_range = cfg.fine_range_after_coarse if self.did_coarse else cfg.fine_range

        # the coarsest level matters most: search all of it, with sub-pixel refinement
        for td in pvs[top]:
            td.project_and_derivs(self.T_cw, self.camera)
        self.search_for_points(pvs[top], fine_range, cfg.fine_subpix_its)
        iteration_set.extend(pvs[top])

        next_to_search = [td for lvl in range(second, -1, -1) for td in pvs[lvl]]
        budget = max(cfg.max_patches_per_frame - len(iteration_set), 0)
        if len(next_to_search) > budget:
            self.rng.shuffle(next_to_search)
            del next_to_search[budget:]

        if self.did_coarse:
            for td in next_to_search:
                td.project_and_derivs(self.T_cw, self.camera)

        self.search_for_points(next_to_search, fine_range, 0)
        iteration_set.extend(next_to_search)

        n_its = cfg.gn_iterations
        last_update = np.zeros(6)
        for it in range(n_its if not diverged else 0):
            # full reprojection only now and then; linearised in between
            nonlinear = it in (0, 4) or it == n_its - 1
            if it != 0:
                for td in iteration_set:
                    if not td.found:
                        continue
                    if nonlinear:
                        td.project_and_derivs(self.T_cw, self.camera)
                    else:
                        td.linear_update(last_update)
            if nonlinear:
                for td in iteration_set:
                    if td.found:
                        td.calc_jacobian()

            override = cfg.fine_override_sigma_sq if it > cfg.robust_override_after else 0.0
            upd = self._gauss_newton_step(iteration_set, override, mark_outliers=(it == n_its - 1))
            if upd is None:
                diverged = True
                break
            last_update = upd

        if diverged or not is_finite_T(self.T_cw):
            print("[Tracker] pose update diverged; keeping previous pose")
            self.T_cw = T_entry
        else:
            self.current_kf.T_cw = self.T_cw.copy()

        self.iteration_set = iteration_set
        self.current_kf.measurements.clear()
        for td in iteration_set:
            if td.found:
                self.current_kf.measurements[td.point] = Measurement(
                    pos=td.found_pos.copy(), level=td.search_level, subpix=td.did_subpix
                )

        self.update_scene_depth(iteration_set)

    def update_scene_depth(self, iteration_set: list[TrackerData]) -> None:
        z = np.array([td.X_c[2] for td in iteration_set if td.found], dtype=np.float64)
        if z.shape[0] > self.cfg.min_depth_samples:
            self.current_kf.scene_depth_mean = float(z.mean())
            self.current_kf.scene_depth_sigma = float(z.std())

    # ------------------------------------------------------ quality/keyframes

    def assess_tracking_quality(self, frame_id: int | None = None) -> TrackingQuality:
        q = self.quality_assessor.assess(
            self.meas_found,
            self.meas_attempted,
            lambda: self.mapmaker.is_distance_to_nearest_keyframe_excessive(self.current_kf),
        )
        if self.trajectory is not None:
            self.trajectory.write(self.frame if frame_id is None else frame_id, q, self.T_cw)
        return q

    def _should_add_keyframe(self) -> bool:
        return (
            self.tracking_quality == TrackingQuality.GOOD
            and self.frame - self.last_kf_dropped > self.cfg.kf_min_frame_gap
            and self.mapmaker.queue_size() < self.cfg.max_mapmaker_queue
            and self.mapmaker.need_new_keyframe(self.current_kf)
        )

    def add_new_keyframe(self) -> None:
        self.mapmaker.add_keyframe(self.current_kf.snapshot())
        self.last_kf_dropped = self.frame

    # --------------------------------------------------------------- recovery

    def attempt_recovery(self) -> bool:
        prop = self.recovery.attempt(self.current_kf)
        self.last_reloc = prop
        if not prop.valid:
            return False
        self.T_cw = prop.T_cw.copy()
        self.T_start = prop.T_cw.copy()
        self.velocity = np.zeros(6)
        self.just_recovered = True
        return True

    # -------------------------------------------------------------- lifetime

    def close(self) -> None:
        if self.trajectory is not None:
            self.trajectory.close()

    def __enter__(self) -> "Tracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
