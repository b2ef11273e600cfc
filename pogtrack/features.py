"""Feature vector assembled per frame for the screen-space models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from pogtrack.iris_gaze import RectifiedOffsets

FEATURE_NAMES = ("L_x", "L_y", "R_x", "R_y", "head_yaw", "head_pitch", "aperture_L", "aperture_R")


@dataclass
class FeatureScales:
    """Fixed divisors bringing every feature to roughly unit range."""

    iris: float = 0.5
    head_yaw: float = 30.0  # degrees
    head_pitch: float = 30.0  # degrees
    aperture: float = 0.3


@dataclass(eq=False)
class GazeFeatures:
    """Zero-centred offsets of both eyes, head angles and lid apertures for one frame."""

    zero_left: np.ndarray
    zero_right: np.ndarray
    head_yaw: float
    head_pitch: float
    aperture_left: Optional[float]
    aperture_right: Optional[float]

    def vector(self, scales: FeatureScales) -> np.ndarray:
        """Scaled 8-vector in FEATURE_NAMES order."""
        a_l = self.aperture_left if self.aperture_left is not None else 0.0
        a_r = self.aperture_right if self.aperture_right is not None else 0.0
        return np.array(
            [
                self.zero_left[0] / scales.iris,
                self.zero_left[1] / scales.iris,
                self.zero_right[0] / scales.iris,
                self.zero_right[1] / scales.iris,
                self.head_yaw / scales.head_yaw,
                self.head_pitch / scales.head_pitch,
                a_l / scales.aperture,
                a_r / scales.aperture,
            ],
            dtype=float,
        )

    def eye(self, eye: str) -> np.ndarray:
        """Zeroed offset of the named eye."""
        return self.zero_left if eye == "left" else self.zero_right


def assemble_features(
    left: np.ndarray,
    right: np.ndarray,
    baseline: RectifiedOffsets,
    head_yaw: float,
    head_pitch: float,
    aperture_left: Optional[float],
    aperture_right: Optional[float],
) -> GazeFeatures:
    """Zero-centre both eyes against the baseline and bundle them with head and lid state."""
    return GazeFeatures(
        zero_left=np.asarray(left, dtype=float) - baseline.left,
        zero_right=np.asarray(right, dtype=float) - baseline.right,
        head_yaw=float(head_yaw),
        head_pitch=float(head_pitch),
        aperture_left=aperture_left,
        aperture_right=aperture_right,
    )
