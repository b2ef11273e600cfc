"""Eyelid aperture ratios and blink gating."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from pogtrack.eye_frames import EyeLocalFrame
from pogtrack.landmarks import EYE_LANDMARKS, EYES


@dataclass
class ApertureConfig:
    """Thresholds on lid opening, as a fraction of eye width."""

    blink_threshold: float = 0.15
    min_open_ratio: float = 0.15  # eye_height / eye_width required to emit a PoG
    wide_open: float = 0.35
    squinting: float = 0.25


@dataclass
class ApertureReading:
    """Raw lid separation (detector units) and its ratio to eye width."""

    left: float
    right: float
    left_norm: Optional[float]
    right_norm: Optional[float]


class ApertureAnalyzer:
    """Measures eyelid opening and decides whether a frame is a blink."""

    def __init__(self, config: Optional[ApertureConfig] = None) -> None:
        """Store the open-eye threshold."""
        self.config = config or ApertureConfig()

    @staticmethod
    def raw_apertures(landmarks: np.ndarray) -> Dict[str, float]:
        """Lid separation per eye in image units."""
        out = {}
        for eye in EYES:
            idx = EYE_LANDMARKS[eye]
            upper = np.asarray(landmarks[idx["upper"]], dtype=float)[:2]
            lower = np.asarray(landmarks[idx["lower"]], dtype=float)[:2]
            out[eye] = float(np.linalg.norm(upper - lower))
        return out

    @staticmethod
    def normalize(aperture: Optional[float], eye_width: float) -> Optional[float]:
        """Aperture as a fraction of eye width; None for a collapsed eye."""
        if aperture is None or eye_width <= 1e-6:
            return None
        return float(aperture / eye_width)

    def measure(self, landmarks: np.ndarray, frames: Dict[str, EyeLocalFrame]) -> ApertureReading:
        """Raw and normalised apertures for both eyes."""
        raw = self.raw_apertures(landmarks)
        return ApertureReading(
            left=raw["left"],
            right=raw["right"],
            left_norm=self.normalize(raw["left"], frames["left"].eye_width),
            right_norm=self.normalize(raw["right"], frames["right"].eye_width),
        )

    def is_blinking(self, left_norm: Optional[float], right_norm: Optional[float]) -> bool:
        """Both eyes below threshold. An unmeasurable eye counts as closed."""
        thr = self.config.blink_threshold
        left_closed = left_norm is None or left_norm < thr
        right_closed = right_norm is None or right_norm < thr
        return left_closed and right_closed

    def is_open_enough(self, frames: Dict[str, EyeLocalFrame]) -> bool:
        """True when both eyes are open wide enough to trust the iris."""
        ratio = self.config.min_open_ratio
        return all(f.eye_height > ratio * f.eye_width for f in frames.values())

    def status(self, norm: Optional[float]) -> str:
        """Label for the debug panel."""
        if norm is None:
            return "unknown"
        if norm > self.config.wide_open:
            return "wide open"
        if norm < self.config.squinting:
            return "squinting"
        return "normal"
