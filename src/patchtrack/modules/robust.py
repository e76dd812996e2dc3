# src/patchtrack/modules/robust.py
from __future__ import annotations

from enum import Enum

import numpy as np

_MAD_TO_SIGMA = 1.4826

# Efficiency constants (95% asymptotic efficiency under Gaussian noise)
_TUNING = {
    "tukey": 4.6851,
    "cauchy": 4.3040,
    "huber": 1.2107,
}


class MEstimator(Enum):
    """
    Robust influence functions used to reweight reprojection residuals.

    All inputs are *squared* residual magnitudes; sigma_sq is the squared
    cut-off scale returned by find_sigma_squared (or an override).
    """

    TUKEY = "tukey"
    CAUCHY = "cauchy"
    HUBER = "huber"

    @classmethod
    def parse(cls, name: "str | MEstimator") -> "MEstimator":
        if isinstance(name, MEstimator):
            return name
        try:
            return cls(str(name).strip().lower())
        except ValueError as ex:
            raise ValueError(f"Invalid MEstimator {name!r}, choices are Tukey, Cauchy, Huber") from ex

    def find_sigma_squared(self, errors_sq: np.ndarray) -> float | None:
        """
        Median-based scale estimate. Returns None for an empty residual set:
        there is nothing to correct.
        """
        e = np.asarray(errors_sq, dtype=np.float64).reshape(-1)
        n = e.shape[0]
        if n == 0:
            return None

        median_sq = float(np.sort(e)[n // 2])
        denom = 2 * n - 6
        small_sample = 1.0 + 5.0 / denom if denom > 0 else 1.0
        sigma = _MAD_TO_SIGMA * small_sample * np.sqrt(median_sq)
        sigma *= _TUNING[self.value]
        return float(sigma * sigma)

    def weight(self, errors_sq, sigma_sq: float):
        e = np.asarray(errors_sq, dtype=np.float64)
        if sigma_sq <= 0.0:
            # degenerate scale: only exact fits survive
            w = np.where(e == 0.0, 1.0, 0.0)
        elif self is MEstimator.TUKEY:
            r = 1.0 - e / sigma_sq
            w = np.where(e > sigma_sq, 0.0, r * r)
        elif self is MEstimator.CAUCHY:
            w = 1.0 / (1.0 + e / sigma_sq)
        else:
            w = np.where(e < sigma_sq, 1.0, np.sqrt(sigma_sq / np.maximum(e, sigma_sq)))
        if np.ndim(w) == 0:
            return float(w)
        return w
