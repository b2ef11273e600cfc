"""Head pose estimation by rigid alignment of a landmark template."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np


class DegeneratePoseError(ValueError):
    """Raised when no valid rotation can be recovered from the correspondences."""


@dataclass
class HeadPoseConfig:
    """Configuration for the rigid alignment."""

    min_points: int = 4
    rank_tol: float = 1e-9  # relative to the largest singular value
    ortho_tol: float = 1e-6


@dataclass(eq=False)
class Pose:
    """Rotation and translation mapping head (template) space to the current frame."""

    R: np.ndarray
    t: np.ndarray
    euler: Tuple[float, float, float] = field(init=False)

    def __post_init__(self) -> None:
        """Coerce shapes and cache the Euler angles."""
        self.R = np.asarray(self.R, dtype=float).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=float).reshape(3)
        self.euler = rotation_to_euler(self.R)

    @property
    def yaw(self) -> float:
        """Degrees, positive toward the user's right."""
        return self.euler[0]

    @property
    def pitch(self) -> float:
        """Degrees, positive up."""
        return self.euler[1]

    @property
    def roll(self) -> float:
        """Degrees about the camera axis."""
        return self.euler[2]

    def to_head(self, points: np.ndarray) -> np.ndarray:
        """Map observed points back into head space: R^T (p - t)."""
        pts = np.asarray(points, dtype=float)
        return (pts - self.t) @ self.R

    def to_camera(self, points: np.ndarray) -> np.ndarray:
        """Map head-space points into the current frame: R p + t."""
        pts = np.asarray(points, dtype=float)
        return pts @ self.R.T + self.t

    @classmethod
    def identity(cls) -> "Pose":
        """Pose of the head at the anchor frame."""
        return cls(R=np.eye(3), t=np.zeros(3))


def rotation_to_euler(rot_mat: np.ndarray) -> Tuple[float, float, float]:
    """Convert a rotation matrix to Euler angles (yaw, pitch, roll) in degrees."""
    sy = np.sqrt(rot_mat[0, 0] ** 2 + rot_mat[1, 0] ** 2)

    singular = sy < 1e-6
    if not singular:
        pitch = np.arctan2(rot_mat[2, 1], rot_mat[2, 2])
        yaw = np.arctan2(-rot_mat[2, 0], sy)
        roll = np.arctan2(rot_mat[1, 0], rot_mat[0, 0])
    else:
        pitch = np.arctan2(-rot_mat[1, 2], rot_mat[1, 1])
        yaw = np.arctan2(-rot_mat[2, 0], sy)
        roll = 0.0

    return float(np.degrees(yaw)), float(np.degrees(pitch)), float(np.degrees(roll))


class RigidPoseEstimator:
    """Closed-form absolute orientation between a fixed template and observed landmarks."""

    # Rigid, expression-insensitive points of the FaceMesh topology.
    LANDMARK_IDXS = {
        "nose_tip": 1,
        "nose_bridge": 6,
        "forehead": 10,
        "chin": 152,
        "left_eye_outer": 33,
        "right_eye_outer": 263,
        "left_mouth": 61,
        "right_mouth": 291,
        "left_cheek": 234,
        "right_cheek": 454,
    }

    def __init__(self, config: Optional[HeadPoseConfig] = None) -> None:
        """Store alignment tolerances."""
        self.config = config or HeadPoseConfig()

    def pick_template_points(self, landmarks: np.ndarray) -> Optional[np.ndarray]:
        """Select the template subset from a full landmark set."""
        if landmarks is None:
            return None
        idxs = list(self.LANDMARK_IDXS.values())
        if landmarks.shape[0] <= max(idxs):
            return None
        return np.array(landmarks[idxs], dtype=float)

    def estimate(self, template: Optional[np.ndarray], observed: Optional[np.ndarray]) -> Pose:
        """Find R, t minimising sum ||R p_i + t - q_i||^2."""
        if template is None or observed is None:
            raise DegeneratePoseError("no head template")

        p = np.asarray(template, dtype=float)
        q = np.asarray(observed, dtype=float)
        if p.shape != q.shape or p.ndim != 2 or p.shape[1] != 3:
            raise DegeneratePoseError(f"mismatched correspondences {p.shape} vs {q.shape}")
        if p.shape[0] < self.config.min_points:
            raise DegeneratePoseError(f"need at least {self.config.min_points} points, got {p.shape[0]}")
        if not (np.all(np.isfinite(p)) and np.all(np.isfinite(q))):
            raise DegeneratePoseError("non-finite landmark coordinates")

        p_mean = p.mean(axis=0)
        q_mean = q.mean(axis=0)
        pc = p - p_mean
        qc = q - q_mean

        # Collinear templates leave rotation about the line undetermined.
        sv_p = np.linalg.svd(pc, compute_uv=False)
        if sv_p[0] <= 0.0 or sv_p[1] <= self.config.rank_tol * sv_p[0]:
            raise DegeneratePoseError("template points are collinear")

        h = pc.T @ qc
        u, s, vt = np.linalg.svd(h)
        if s[0] <= 0.0 or s[1] <= self.config.rank_tol * s[0]:
            raise DegeneratePoseError("rank-deficient cross-covariance")

        d = np.sign(np.linalg.det(vt.T @ u.T))
        if d == 0.0:
            d = 1.0
        rot = vt.T @ np.diag([1.0, 1.0, d]) @ u.T
        trans = q_mean - rot @ p_mean

        if not self._is_rotation(rot):
            raise DegeneratePoseError("recovered matrix is not a proper rotation")

        return Pose(R=rot, t=trans)

    def _is_rotation(self, rot: np.ndarray) -> bool:
        """True for a finite, orthonormal, right-handed matrix."""
        if not np.all(np.isfinite(rot)):
            return False
        err = np.abs(rot.T @ rot - np.eye(3)).max()
        return err < self.config.ortho_tol and np.linalg.det(rot) > 0.0
