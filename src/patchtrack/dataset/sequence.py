from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator, List, Tuple

import cv2
import numpy as np

_IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".bmp", ".pgm", ".ppm", ".tif", ".tiff")


@dataclass
class SequenceEntry:
    ts: float
    path: str


def _read_rgb_txt(rgb_txt_path: str) -> List[SequenceEntry]:
    entries: List[SequenceEntry] = []
    base = os.path.dirname(rgb_txt_path)

    with open(rgb_txt_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            entries.append(SequenceEntry(ts=float(parts[0]), path=os.path.join(base, parts[1])))
    return entries


def _list_image_dir(img_dir: str) -> List[SequenceEntry]:
    names = sorted(n for n in os.listdir(img_dir) if n.lower().endswith(_IMAGE_EXTS))
    return [SequenceEntry(ts=float(i), path=os.path.join(img_dir, n)) for i, n in enumerate(names)]


class ImageSequence:
    """
    Grayscale frames from a TUM-style folder (rgb.txt) or a plain folder of
    images, resized to a fixed tracking resolution.
    """

    def __init__(self, seq_dir: str, size: tuple[int, int] | None = None):
        self.seq_dir = seq_dir
        self.size = size
        rgb_txt = os.path.join(seq_dir, "rgb.txt")
        if os.path.isfile(rgb_txt):
            self.entries = _read_rgb_txt(rgb_txt)
        elif os.path.isdir(seq_dir):
            self.entries = _list_image_dir(seq_dir)
        else:
            raise FileNotFoundError(f"Not a sequence directory: {seq_dir}")
        if not self.entries:
            raise FileNotFoundError(f"No images found in: {seq_dir}")

    def __len__(self) -> int:
        return len(self.entries)

    def load(self, i: int) -> np.ndarray:
        e = self.entries[i]
        img = cv2.imread(e.path, cv2.IMREAD_GRAYSCALE)
        if img is None:
            raise FileNotFoundError(f"Failed to read image: {e.path}")
        if self.size is not None and (img.shape[1], img.shape[0]) != tuple(self.size):
            img = cv2.resize(img, tuple(self.size), interpolation=cv2.INTER_AREA)
        return img

    def iter_gray(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[Tuple[int, float, np.ndarray]]:
        end = len(self.entries) if max_frames is None else min(len(self.entries), start + max_frames * step)
        for idx, i in enumerate(range(start, end, step)):
            yield idx, self.entries[i].ts, self.load(i)
