"""Turn model output into a smoothed, clamped point-of-gaze in viewport pixels."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from pogtrack.filters import ExponentialSmoother


@dataclass
class ProjectorConfig:
    """Output bounds and overlay camera model."""

    clamp: bool = True
    focal_scale: float = 0.8  # focal length as a fraction of min(width, height)


@dataclass
class PoGResult:
    """Final PoG plus every intermediate value that produced it."""

    u: float
    v: float
    x_px: float
    y_px: float
    source: str
    trace: Dict[str, object] = field(default_factory=dict)


def compute_intrinsics(frame_width: int, frame_height: int, focal_scale: float = 0.8) -> np.ndarray:
    """Approximate pinhole intrinsics for an uncalibrated webcam."""
    f = focal_scale * float(min(frame_width, frame_height))
    return np.array(
        [
            [f, 0.0, frame_width / 2.0],
            [0.0, f, frame_height / 2.0],
            [0.0, 0.0, 1.0],
        ],
        dtype=np.float32,
    )


def project_points(points: np.ndarray, camera_matrix: np.ndarray) -> np.ndarray:
    """Project landmark-space points (pixel x/y, relative depth z) through a pinhole model."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    fx = float(camera_matrix[0, 0])
    fy = float(camera_matrix[1, 1])
    cx = float(camera_matrix[0, 2])
    cy = float(camera_matrix[1, 2])

    z = np.clip(fx + pts[:, 2], 1.0, None)
    u = fx * (pts[:, 0] - cx) / z + cx
    v = fy * (pts[:, 1] - cy) / z + cy
    return np.stack([u, v], axis=1)


class PoGProjector:
    """EMA smoothing, clamping to the unit square and scaling to the viewport."""

    def __init__(self, config: Optional[ProjectorConfig] = None, alpha: float = 0.3) -> None:
        """Projector with its own smoother."""
        self.config = config or ProjectorConfig()
        self.smoother = ExponentialSmoother(alpha)

    def reset(self) -> None:
        """Drop the smoothing history."""
        self.smoother.reset()

    def project(self, uv: Tuple[float, float], source: str, viewport: Tuple[int, int]) -> Optional[PoGResult]:
        """Smooth, clamp and convert (u, v) to pixels; None for a non-finite input."""
        raw = np.array(uv, dtype=float)
        if raw.shape != (2,) or not np.all(np.isfinite(raw)):
            return None
        smoothed = self.smoother(raw)
        clamped = np.clip(smoothed, 0.0, 1.0) if self.config.clamp else smoothed
        width, height = viewport
        x_px = float(clamped[0] * width)
        y_px = float(clamped[1] * height)
        trace = {
            "source": source,
            "raw_uv": (float(raw[0]), float(raw[1])),
            "smoothed_uv": (float(smoothed[0]), float(smoothed[1])),
            "clamped_uv": (float(clamped[0]), float(clamped[1])),
            "viewport": (int(width), int(height)),
            "pixel": (x_px, y_px),
        }
        return PoGResult(u=float(clamped[0]), v=float(clamped[1]), x_px=x_px, y_px=y_px, source=source, trace=trace)
