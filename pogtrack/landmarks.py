"""Landmark index contract shared with the face-landmark detector."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

# MediaPipe FaceMesh indices with refine_landmarks=True (478 points).
NUM_LANDMARKS = 478

NOSE_TIP = 1
NOSE_BRIDGE = 6

LEFT_IRIS_CENTER = 468
RIGHT_IRIS_CENTER = 473

EYE_LANDMARKS = {
    "left": {"inner": 133, "outer": 33, "upper": 159, "lower": 145, "iris": LEFT_IRIS_CENTER},
    "right": {"inner": 362, "outer": 263, "upper": 386, "lower": 374, "iris": RIGHT_IRIS_CENTER},
}

EYES = ("left", "right")


@dataclass
class Face:
    """One detected face: ordered (x_px, y_px, z) points."""

    landmarks: List[Tuple[float, float, float]]


def as_landmark_array(landmarks: Sequence[Sequence[float]]) -> Optional[np.ndarray]:
    """Convert detector output into an (N, 3) float array, or None if unusable."""
    if landmarks is None:
        return None
    arr = np.asarray(landmarks, dtype=float)
    if arr.ndim != 2 or arr.shape[0] == 0:
        return None
    if arr.shape[1] == 2:
        arr = np.hstack([arr, np.zeros((arr.shape[0], 1), dtype=float)])
    if arr.shape[1] != 3:
        return None
    return arr


def has_iris(landmarks: np.ndarray) -> bool:
    """True when the mesh includes the refined iris points."""
    return landmarks.shape[0] > max(LEFT_IRIS_CENTER, RIGHT_IRIS_CENTER)
