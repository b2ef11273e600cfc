"""MediaPipe FaceMesh adapter producing full-frame pixel landmarks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple
import inspect

import cv2
import mediapipe as mp
import numpy as np

from pogtrack.landmarks import Face


@dataclass
class FaceLandmarksConfig:
    """Configuration for MediaPipe face landmarks."""

    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5
    refine_landmarks: bool = True  # Enables iris landmarks (468-477)
    static_image_mode: bool = False


class FaceMeshDetector:
    """Single-face FaceMesh detector: BGR frame in, list of Face out."""

    def __init__(self, config: FaceLandmarksConfig) -> None:
        """Initialize MediaPipe FaceMesh with only the kwargs this version supports."""
        self.config = config
        solutions = getattr(mp, "solutions", None)
        if solutions is None or not hasattr(solutions, "face_mesh"):
            raise RuntimeError("This mediapipe build has no FaceMesh solution (mp.solutions.face_mesh).")
        self.mp_face_mesh = solutions.face_mesh
        options = {
            "static_image_mode": config.static_image_mode,
            "max_num_faces": 1,
            "refine_landmarks": config.refine_landmarks,
            "min_detection_confidence": config.min_detection_confidence,
            "min_tracking_confidence": config.min_tracking_confidence,
        }
        accepted = inspect.signature(self.mp_face_mesh.FaceMesh).parameters
        options = {k: v for k, v in options.items() if k in accepted}
        self.face_mesh = self.mp_face_mesh.FaceMesh(**options)

    def detect(self, frame: np.ndarray) -> List[Face]:
        """Detect at most one face and map its landmarks to pixel space."""
        frame_height, frame_width = frame.shape[:2]
        frame_rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        output = self.face_mesh.process(frame_rgb)
        if not output.multi_face_landmarks:
            return []

        points: List[Tuple[float, float, float]] = []
        for lm in output.multi_face_landmarks[0].landmark:
            px = lm.x * frame_width
            py = lm.y * frame_height
            pz = lm.z * frame_width
            points.append((px, py, pz))
        return [Face(landmarks=points)]

    def close(self) -> None:
        """Release the FaceMesh graph."""
        self.face_mesh.close()
