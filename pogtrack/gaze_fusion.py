"""Combine per-eye gaze angles into one cyclopean ray and intersect it with the screen."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from pogtrack.head_pose import Pose
from pogtrack.landmarks import EYE_LANDMARKS, EYES, NOSE_BRIDGE, NOSE_TIP

logger = logging.getLogger(__name__)


@dataclass
class GazeFusionConfig:
    """Eye model and screen-plane geometry, in units of the average human IPD."""

    ipd_mm: float = 63.0
    eyeball_radius_mm: float = 12.0
    viewing_distance_mm: float = 600.0
    min_plane_samples: int = 3


@dataclass
class GazeAffineCoeffs:
    """Affine map from plane coordinates to normalised screen coordinates."""

    ax: float
    bx: float
    cx: float
    ay: float
    by: float
    cy: float

    def map(self, p: Sequence[float]) -> Tuple[float, float]:
        """Apply the affine map to a plane point."""
        px, py = float(p[0]), float(p[1])
        return self.ax * px + self.bx * py + self.cx, self.ay * px + self.by * py + self.cy


@dataclass(eq=False)
class GazeRay:
    """Cyclopean ray in camera (landmark) space."""

    origin: np.ndarray
    direction: np.ndarray
    left: Optional[np.ndarray] = None
    right: Optional[np.ndarray] = None


def eye_angles_to_head_vector(yaw: float, pitch: float) -> np.ndarray:
    """Unit gaze direction in head space; yaw > 0 toward the user's right, pitch > 0 up (degrees)."""
    y = math.radians(yaw)
    p = math.radians(pitch)
    return np.array(
        [-math.sin(y) * math.cos(p), -math.sin(p), -math.cos(y) * math.cos(p)],
        dtype=float,
    )


def vector_to_yaw_pitch(vec: np.ndarray) -> Tuple[float, float]:
    """Inverse of eye_angles_to_head_vector."""
    v = np.asarray(vec, dtype=float)
    n = float(np.linalg.norm(v))
    if n <= 1e-12:
        return 0.0, 0.0
    v = v / n
    yaw = math.degrees(math.atan2(-v[0], -v[2]))
    pitch = math.degrees(math.asin(max(-1.0, min(1.0, -v[1]))))
    return yaw, pitch


def estimate_eye_origins(
    landmarks: np.ndarray,
    pose: Pose,
    config: Optional[GazeFusionConfig] = None,
) -> Optional[Dict[str, np.ndarray]]:
    """Eyeball centres in head space: iris pushed back along the face's forward axis."""
    config = config or GazeFusionConfig()
    pts = pose.to_head(
        np.array(
            [
                landmarks[NOSE_TIP],
                landmarks[NOSE_BRIDGE],
                landmarks[EYE_LANDMARKS["left"]["iris"]],
                landmarks[EYE_LANDMARKS["right"]["iris"]],
            ],
            dtype=float,
        )
    )
    tip, bridge, iris_l, iris_r = pts
    fwd = tip - bridge
    fwd_norm = float(np.linalg.norm(fwd))
    ipd = float(np.linalg.norm(iris_l - iris_r))
    if fwd_norm <= 1e-9 or ipd <= 1e-9:
        return None
    fwd = fwd / fwd_norm
    depth = ipd * config.eyeball_radius_mm / config.ipd_mm
    return {"left": iris_l - fwd * depth, "right": iris_r - fwd * depth}


class GazeCombiner:
    """Rotates per-eye head-space gaze into camera space and averages both eyes."""

    def __init__(self, config: Optional[GazeFusionConfig] = None) -> None:
        """Store fusion settings."""
        self.config = config or GazeFusionConfig()

    def combine(
        self,
        pose: Pose,
        angles: Dict[str, Tuple[float, float]],
        origins: Optional[Dict[str, np.ndarray]] = None,
    ) -> Optional[GazeRay]:
        """Fuse per-eye angles into a single head-aware gaze ray."""
        dirs = {}
        for eye in EYES:
            if eye not in angles:
                continue
            dirs[eye] = pose.R @ eye_angles_to_head_vector(*angles[eye])
        if not dirs:
            return None
        mean_dir = np.mean(list(dirs.values()), axis=0)
        n = float(np.linalg.norm(mean_dir))
        if n <= 1e-9:
            return None

        if origins:
            cam_origins = pose.to_camera(np.array([origins[e] for e in EYES if e in origins], dtype=float))
            origin = cam_origins.mean(axis=0)
        else:
            origin = pose.t.copy()
        return GazeRay(origin=origin, direction=mean_dir / n, left=dirs.get("left"), right=dirs.get("right"))


def _intersect_z(origin: np.ndarray, direction: np.ndarray, z: float) -> Optional[np.ndarray]:
    """Point where a ray crosses z, or None if it never reaches it."""
    # Rays must travel toward the camera (negative z) to reach the screen.
    if direction[2] >= -1e-6:
        return None
    s = (z - origin[2]) / direction[2]
    if s <= 0.0:
        return None
    return origin[:2] + s * direction[:2]


class ScreenPlane:
    """A plane in front of the face plus an affine map from its coordinates to (u, v)."""

    def __init__(self, z: float, coeffs: GazeAffineCoeffs) -> None:
        """Store the plane depth and its screen mapping."""
        self.z = z
        self.coeffs = coeffs

    @classmethod
    def solve(
        cls,
        rays: Sequence[GazeRay],
        labels: np.ndarray,
        ipd: float,
        config: Optional[GazeFusionConfig] = None,
    ) -> Optional["ScreenPlane"]:
        """Least-squares plane mapping from calibration rays and their (u, v) targets."""
        config = config or GazeFusionConfig()
        labels = np.asarray(labels, dtype=float).reshape(-1, 2)
        if len(rays) < config.min_plane_samples or ipd <= 1e-9:
            return None
        z = float(np.mean([r.origin[2] for r in rays])) - ipd * config.viewing_distance_mm / config.ipd_mm

        rows = []
        targets = []
        for ray, label in zip(rays, labels):
            hit = _intersect_z(ray.origin, ray.direction, z)
            if hit is None:
                continue
            rows.append([hit[0], hit[1], 1.0])
            targets.append(label)
        if len(rows) < config.min_plane_samples:
            logger.debug("screen plane: only %d usable rays", len(rows))
            return None

        A = np.array(rows, dtype=float)
        B = np.array(targets, dtype=float)
        sol, _, rank, _ = np.linalg.lstsq(A, B, rcond=None)
        if rank < 3:
            logger.debug("screen plane: rank %d, rays too similar", rank)
            return None
        coeffs = GazeAffineCoeffs(
            ax=float(sol[0, 0]),
            bx=float(sol[1, 0]),
            cx=float(sol[2, 0]),
            ay=float(sol[0, 1]),
            by=float(sol[1, 1]),
            cy=float(sol[2, 1]),
        )
        return cls(z=z, coeffs=coeffs)

    def intersect(self, ray: GazeRay) -> Optional[Tuple[float, float]]:
        """Screen (u, v) where the ray meets the plane, or None."""
        hit = _intersect_z(ray.origin, ray.direction, self.z)
        if hit is None:
            return None
        return self.coeffs.map(hit)
