"""Head-pose-invariant iris offsets in each eye's canonical frame."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from pogtrack.eye_frames import EyeLocalFrame, canonical_eye_frame
from pogtrack.head_pose import Pose
from pogtrack.landmarks import EYE_LANDMARKS, EYES, has_iris


@dataclass(eq=False)
class RectifiedOffsets:
    """Per-frame rectified iris offsets, unit-less (eye widths)."""

    left: np.ndarray
    right: np.ndarray

    def __getitem__(self, eye: str) -> np.ndarray:
        """Offset of the named eye."""
        return self.left if eye == "left" else self.right

    def minus(self, baseline: "RectifiedOffsets") -> "RectifiedOffsets":
        """Zero-centre against a baseline."""
        return RectifiedOffsets(left=self.left - baseline.left, right=self.right - baseline.right)

    @classmethod
    def mean(cls, samples: list) -> "RectifiedOffsets":
        """Per-eye average over a list of offsets."""
        return cls(
            left=np.mean([s.left for s in samples], axis=0),
            right=np.mean([s.right for s in samples], axis=0),
        )


def get_iris_centers(landmarks: np.ndarray) -> Optional[Dict[str, np.ndarray]]:
    """Raw iris centres (x, y, z) in detector space."""
    if landmarks is None or not has_iris(landmarks):
        return None
    return {eye: np.array(landmarks[EYE_LANDMARKS[eye]["iris"]], dtype=float) for eye in EYES}


class IrisRectifier:
    """Maps raw iris landmarks into offsets that do not move with the head."""

    def rectify_eye(
        self,
        landmarks: np.ndarray,
        pose: Pose,
        eye: str,
        frame: Optional[EyeLocalFrame] = None,
    ) -> Optional[np.ndarray]:
        """Iris centre in head space, projected onto the eye's canonical basis."""
        if frame is None:
            # No captured frame yet: use this frame's own head-space corners.
            frame = canonical_eye_frame(landmarks, pose, eye)
        if frame.eye_width <= 1e-6:
            return None
        iris_head = pose.to_head(landmarks[EYE_LANDMARKS[eye]["iris"]])
        offset = frame.project(iris_head)
        if not np.all(np.isfinite(offset)):
            return None
        return offset

    def rectify(
        self,
        landmarks: np.ndarray,
        pose: Optional[Pose],
        canonical: Optional[Dict[str, EyeLocalFrame]] = None,
    ) -> Optional[RectifiedOffsets]:
        """Rectified offsets for both eyes, or None without a pose."""
        if pose is None or landmarks is None or not has_iris(landmarks):
            return None
        out = {}
        for eye in EYES:
            frame = canonical.get(eye) if canonical else None
            offset = self.rectify_eye(landmarks, pose, eye, frame)
            if offset is None:
                return None
            out[eye] = offset
        return RectifiedOffsets(left=out["left"], right=out["right"])
