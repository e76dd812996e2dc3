from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt
import yaml

from patchtrack.dataset.sequence import ImageSequence
from patchtrack.geom.camera import PinholeCamera
from patchtrack.geom.se3 import camera_center
from patchtrack.system.config import load_config
from patchtrack.system.map_io import bootstrap_planar_map, load_map, save_map
from patchtrack.system.mapmaker import StaticMapMaker
from patchtrack.system.quality import TrackingQuality
from patchtrack.system.telemetry import Telemetry
from patchtrack.system.tracker import Tracker

_QUALITY_COLORS = {
    TrackingQuality.GOOD: "g",
    TrackingQuality.DODGY: "orange",
    TrackingQuality.BAD: "r",
}


class TrajectoryVisualizer:
    def __init__(self):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax1 = self.fig.add_subplot(121, projection='3d')
        self.ax2 = self.fig.add_subplot(122)

    def update(self, centers: list[np.ndarray], qualities: list[TrackingQuality], map_points: np.ndarray):
        if len(centers) < 2:
            return

        positions = np.array(centers)
        x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]
        colors = [_QUALITY_COLORS[q] for q in qualities]

        self.ax1.clear()
        self.ax1.set_xlabel('X')
        self.ax1.set_ylabel('Y')
        self.ax1.set_zlabel('Z')
        self.ax1.set_title(f'Camera centers ({len(centers)} frames)')
        if map_points.shape[0] > 0:
            self.ax1.scatter(map_points[:, 0], map_points[:, 1], map_points[:, 2], c='k', s=1, alpha=0.3)
        self.ax1.plot(x, y, z, 'b-', linewidth=1.0, alpha=0.5)
        self.ax1.scatter(x, y, z, c=colors, s=6)

        self.ax2.clear()
        self.ax2.set_xlabel('X')
        self.ax2.set_ylabel('Z')
        self.ax2.set_title('Top-Down View (X-Z), colored by tracking quality')
        self.ax2.plot(x, z, 'b-', linewidth=1.0, alpha=0.5)
        self.ax2.scatter(x, z, c=colors, s=6)
        self.ax2.grid(True)
        self.ax2.axis('equal')

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def main() -> None:
    ap = argparse.ArgumentParser(description="Track a camera through an image sequence against a sparse map.")
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--seq", type=str, required=True, help="TUM sequence dir (with rgb.txt) or a folder of images")
    ap.add_argument("--map", type=str, default=None, help="Map file written by save_map (npz)")
    ap.add_argument("--plane_depth", type=float, default=1.0, help="Without --map: bootstrap a planar map at this depth from the first frame")
    ap.add_argument("--save_map", type=str, default=None, help="Write the map used to this npz file")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--visualize", action="store_true", help="Enable real-time trajectory visualization")
    ap.add_argument("--viz_update_every", type=int, default=10, help="Update visualization every N frames")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    args = ap.parse_args()

    print(f"[INFO] Loading config: {args.config}")
    cfg = load_config(args.config)

    seq_name = cfg.dataset.get("sequence", Path(args.seq).name)
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    camera = PinholeCamera.from_dict(cfg.camera)
    seq = ImageSequence(args.seq, size=camera.image_size)
    print(f"[INFO] Sequence frames: {len(seq)}")

    start = int(cfg.dataset.get("start", 0))
    step_stride = int(cfg.dataset.get("step", 1))
    max_frames = cfg.dataset.get("max_frames", None)
    if max_frames is not None:
        max_frames = int(max_frames)

    if args.map:
        print(f"[INFO] Loading map: {args.map}")
        the_map = load_map(args.map, camera, cfg.tracker)
    else:
        print(f"[INFO] Bootstrapping planar map at depth {args.plane_depth} from frame {start}")
        the_map = bootstrap_planar_map(seq.load(start), camera, cfg.tracker, depth=args.plane_depth)
    print(f"[INFO] Map: {len(the_map.points)} points, {len(the_map.keyframes)} keyframes")
    if args.save_map:
        save_map(args.save_map, the_map)
        print(f"[OK] wrote: {args.save_map}")

    mapmaker = StaticMapMaker(the_map, camera, cfg.mapmaker)
    telemetry = Telemetry()
    traj_path = str(out_dir / "trajectory.txt")
    visualizer = TrajectoryVisualizer() if args.visualize else None
    map_xyz = np.array([p.X_w for p in the_map.points]).reshape(-1, 3)

    centers: list[np.ndarray] = []
    qualities: list[TrackingQuality] = []

    print(f"[INFO] Starting loop: start={start} step={step_stride} max_frames={max_frames}")
    with Tracker(camera, the_map, mapmaker, cfg.tracker, telemetry=telemetry, trajectory_path=traj_path) as tracker:
        for idx, ts, img_gray in seq.iter_gray(start=start, step=step_stride, max_frames=max_frames):
            q = tracker.track_frame(img_gray, frame_id=idx)
            centers.append(camera_center(tracker.T_cw))
            qualities.append(q)

            if args.log_every > 0 and ((idx + 1) % args.log_every == 0):
                print(f"[INFO] Frame {idx + 1} / {max_frames if max_frames else len(seq)}: {tracker.get_message_for_user()}")

            if visualizer is not None and (idx + 1) % args.viz_update_every == 0:
                visualizer.update(centers, qualities, map_xyz)

    mapmaker.close()

    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump({"successful_relocs": telemetry.successful_relocs, "frames": telemetry.frames}, f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg.raw, f, sort_keys=False)

    n_good = sum(1 for q in qualities if q == TrackingQuality.GOOD)
    print(f"[INFO] Good frames: {n_good} / {len(qualities)}, relocalisations: {telemetry.successful_relocs}")
    print(f"[OK] wrote: {traj_path}")
    print(f"[OK] wrote: {metrics_path}")

    if visualizer is not None:
        print("[INFO] Showing final trajectory. Close the window to exit.")
        visualizer.update(centers, qualities, map_xyz)
        visualizer.close()


if __name__ == "__main__":
    main()
