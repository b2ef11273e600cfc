"""Per-eye orthonormal 2D frames from eye-corner and eyelid landmarks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from pogtrack.head_pose import Pose
from pogtrack.landmarks import EYE_LANDMARKS, EYES


@dataclass(eq=False)
class EyeLocalFrame:
    """Origin, axes and extent of one eye in a 2D plane."""

    origin: np.ndarray
    x_axis: np.ndarray
    y_axis: np.ndarray
    eye_width: float
    eye_height: float

    @property
    def is_valid(self) -> bool:
        """True when the eye is neither collapsed nor closed."""
        return self.eye_width > 1e-6 and self.eye_height > 1e-9

    def project(self, point: np.ndarray) -> np.ndarray:
        """Express a 2D point in this frame, in units of eye width."""
        rel = np.asarray(point, dtype=float)[:2] - self.origin
        return np.array([rel @ self.x_axis, rel @ self.y_axis], dtype=float) / self.eye_width


def build_eye_local_frame(
    inner: np.ndarray,
    outer: np.ndarray,
    upper: np.ndarray,
    lower: np.ndarray,
    eps: float = 1e-9,
) -> EyeLocalFrame:
    """Build the frame: x along the corners, y toward the upper lid, origin at the corner midpoint."""
    inner = np.asarray(inner, dtype=float)[:2]
    outer = np.asarray(outer, dtype=float)[:2]
    upper = np.asarray(upper, dtype=float)[:2]
    lower = np.asarray(lower, dtype=float)[:2]

    origin = (inner + outer) * 0.5
    horiz = outer - inner
    width = float(np.linalg.norm(horiz))
    if width <= eps:
        zero = np.zeros(2, dtype=float)
        return EyeLocalFrame(origin=origin, x_axis=zero, y_axis=zero.copy(), eye_width=0.0, eye_height=0.0)
    x_axis = horiz / width

    vert = upper - lower
    vert_perp = vert - (vert @ x_axis) * x_axis
    height = float(np.linalg.norm(vert_perp))
    if height <= eps:
        # Closed lid: keep a right-handed axis so the frame stays usable for projection.
        y_axis = np.array([x_axis[1], -x_axis[0]], dtype=float)
        along = float(y_axis @ vert)
        if along < 0.0 or (along == 0.0 and y_axis[1] > 0.0):
            y_axis = -y_axis
        return EyeLocalFrame(origin=origin, x_axis=x_axis, y_axis=y_axis, eye_width=width, eye_height=0.0)

    return EyeLocalFrame(
        origin=origin,
        x_axis=x_axis,
        y_axis=vert_perp / height,
        eye_width=width,
        eye_height=height,
    )


def _frame_from_points(points: np.ndarray, eye: str) -> EyeLocalFrame:
    """Eye frame from the corner and lid points of one eye."""
    idx = EYE_LANDMARKS[eye]
    return build_eye_local_frame(
        points[idx["inner"]],
        points[idx["outer"]],
        points[idx["upper"]],
        points[idx["lower"]],
    )


def get_eye_local_frames(landmarks: np.ndarray) -> Dict[str, EyeLocalFrame]:
    """Image-space frames for both eyes."""
    return {eye: _frame_from_points(landmarks, eye) for eye in EYES}


def canonical_eye_frame(landmarks: np.ndarray, pose: Pose, eye: str) -> EyeLocalFrame:
    """Frame for one eye built from its corners mapped into head space."""
    idx = EYE_LANDMARKS[eye]
    keys = ("inner", "outer", "upper", "lower")
    head_pts = pose.to_head(np.array([landmarks[idx[k]] for k in keys], dtype=float))
    return build_eye_local_frame(*head_pts)


def canonical_eye_frames(landmarks: np.ndarray, pose: Optional[Pose]) -> Optional[Dict[str, EyeLocalFrame]]:
    """Head-space frames for both eyes; None without a pose or on a degenerate eye."""
    if pose is None:
        return None
    frames = {eye: canonical_eye_frame(landmarks, pose, eye) for eye in EYES}
    if not all(f.eye_width > 1e-6 for f in frames.values()):
        return None
    return frames
