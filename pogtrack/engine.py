"""Per-frame gaze pipeline, calibration input handling and debug snapshots."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from pogtrack.accuracy import AccuracyConfig, AccuracySummary, AccuracyTester, ErrorHistory, ErrorHistoryReport
from pogtrack.aperture import ApertureAnalyzer, ApertureConfig, ApertureReading
from pogtrack.calibration import (
    CalibrationConfig,
    CalibrationPhase,
    CalibrationSession,
    CalibrationStateMachine,
    FrameObservation,
)
from pogtrack.eye_frames import get_eye_local_frames
from pogtrack.features import FeatureScales, assemble_features
from pogtrack.filters import SmoothingConfig
from pogtrack.gaze_fusion import GazeCombiner, GazeFusionConfig, GazeRay, vector_to_yaw_pitch
from pogtrack.head_pose import DegeneratePoseError, HeadPoseConfig, Pose, RigidPoseEstimator
from pogtrack.iris_gaze import IrisRectifier, RectifiedOffsets, get_iris_centers
from pogtrack.landmarks import EYES, Face, as_landmark_array, has_iris
from pogtrack.network import NetworkConfig
from pogtrack.projector import PoGResult, ProjectorConfig
from pogtrack.regression import RidgeConfig, angles_to_screen

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """All component configurations in one place."""

    head_pose: HeadPoseConfig = field(default_factory=HeadPoseConfig)
    aperture: ApertureConfig = field(default_factory=ApertureConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)
    ridge: RidgeConfig = field(default_factory=RidgeConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    projector: ProjectorConfig = field(default_factory=ProjectorConfig)
    accuracy: AccuracyConfig = field(default_factory=AccuracyConfig)
    fusion: GazeFusionConfig = field(default_factory=GazeFusionConfig)
    scales: FeatureScales = field(default_factory=FeatureScales)
    viewport: Tuple[int, int] = (1280, 720)


@dataclass(eq=False)
class FrameSnapshot:
    """What the presentation layer needs to draw one tick."""

    timestamp: float
    face_detected: bool
    landmarks: Optional[np.ndarray] = None
    iris_raw: Optional[Dict[str, np.ndarray]] = None
    iris_rectified: Optional[RectifiedOffsets] = None
    iris_smoothed: Optional[Dict[str, np.ndarray]] = None
    iris_zeroed: Optional[Dict[str, np.ndarray]] = None
    aperture: Optional[ApertureReading] = None
    aperture_status: Dict[str, str] = field(default_factory=dict)
    blinking: bool = False
    head_angles: Optional[Tuple[float, float, float]] = None
    phase: str = CalibrationPhase.IDLE.value
    instruction: str = ""
    target: Optional[Tuple[float, float]] = None
    sample_count: int = 0
    pursuit_progress: Optional[float] = None
    grid_points: List[Tuple[float, float]] = field(default_factory=list)
    grid_clicked: List[int] = field(default_factory=list)
    calibrated: bool = False
    model_kind: str = "default"
    pog: Optional[PoGResult] = None
    gaze_ray: Optional[GazeRay] = None
    message: Optional[str] = None
    accuracy_target: Optional[Tuple[float, float]] = None
    accuracy_summary: Optional[AccuracySummary] = None


class GazeEngine:
    """Owns the calibration session and turns detector output into PoG snapshots."""

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        """Build the per-frame pipeline and an idle session."""
        self.config = config or EngineConfig()
        self.pose_estimator = RigidPoseEstimator(self.config.head_pose)
        self.rectifier = IrisRectifier()
        self.apertures = ApertureAnalyzer(self.config.aperture)
        self.combiner = GazeCombiner(self.config.fusion)
        self.machine = CalibrationStateMachine(
            self.config.calibration,
            self.config.ridge,
            self.config.network,
            self.config.scales,
            self.config.fusion,
        )
        self.tester = AccuracyTester(self.config.accuracy)
        self.error_history = ErrorHistory(self.config.accuracy)

        self.session = self._new_session("pursuit")
        self._previous: Optional[CalibrationSession] = None
        self.viewport: Tuple[int, int] = self.config.viewport
        self.pointer: Optional[Tuple[float, float]] = None
        self.last_observation: Optional[FrameObservation] = None
        self.last_summary: Optional[AccuracySummary] = None
        self.message: Optional[str] = None

    def _new_session(self, mode: str) -> CalibrationSession:
        """Fresh session built from the engine configuration."""
        return CalibrationSession.create(mode, self.config.smoothing, self.config.projector, self.config.ridge)

    # -- presentation-layer inputs ----------------------------------------

    def set_viewport(self, width: int, height: int) -> None:
        """Set the overlay size that PoG pixels are scaled to."""
        if width <= 0 or height <= 0:
            raise ValueError(f"viewport must be positive, got {width}x{height}")
        self.viewport = (int(width), int(height))

    def pointer_moved(self, x: float, y: float) -> None:
        """Record the pointer position for the error history."""
        self.pointer = (float(x), float(y))

    def start_calibration(self, mode: str = "pursuit") -> None:
        """Replace the session with a fresh one and begin the anchor step."""
        session = self._new_session(mode)
        # Raises on an unknown mode before the current session is touched.
        self.machine.start(session, mode)

        current = self.session
        if current.trainer is not None:
            current.trainer.cancel()
        if not current.is_active:
            self._previous = current if current.calibrated else None
        self.tester.cancel()
        self.session = session
        self.message = None

    def confirm_anchor(self) -> bool:
        """Capture the head template from the last observed face."""
        ok = self.machine.confirm_anchor(self.session, self.last_observation)
        self._settle_session()
        return ok

    def stop_calibration(self) -> None:
        """Finish pursuit early or abort the active calibration."""
        self.machine.stop(self.session)
        self._settle_session()

    def click(self, x_px: float, y_px: float) -> bool:
        """Route a click to the anchor or grid step; ignored otherwise."""
        width, height = self.viewport
        phase = self.session.phase
        if phase == CalibrationPhase.ANCHOR:
            return self.confirm_anchor()
        if phase == CalibrationPhase.GRID:
            ok = self.machine.click_grid(self.session, x_px / width, y_px / height, self.last_observation)
            self._settle_session()
            return ok
        return False

    def start_accuracy_test(self, now: Optional[float] = None) -> bool:
        """Begin the nine-point test; refused without a finished calibration."""
        if not self.session.calibrated or self.session.is_active:
            self.message = "Calibrate before running the accuracy test."
            return False
        self.tester.start(time.monotonic() if now is None else now, self.viewport)
        self.message = None
        return True

    def accuracy_report(self) -> Optional[ErrorHistoryReport]:
        """Breakdown of the pointer-follow error history."""
        return self.error_history.report(self.viewport)

    # -- per-frame pipeline -----------------------------------------------

    def _settle_session(self) -> None:
        """After a failed calibration, put the previous session back untouched."""
        failed = self.session
        if not failed.failed:
            if failed.calibrated and not failed.is_active:
                self._previous = None
            return
        restored = self._previous
        if restored is None:
            # Nothing fitted before: keep the anchor and baseline so default gains can run.
            restored = self._new_session(failed.mode)
            if failed.baseline is not None and failed.canonical is not None:
                restored.template = failed.template
                restored.canonical = failed.canonical
                restored.baseline = failed.baseline
                restored.eye_origins = failed.eye_origins
                restored.ipd = failed.ipd
                restored.last_pose = failed.last_pose
        restored.message = failed.message
        restored.failed = False
        self.session = restored
        self._previous = None
        logger.info("Restored %s session after failed calibration", "previous" if restored.calibrated else "empty")

    def _estimate_pose(self, landmarks: np.ndarray) -> Optional[Pose]:
        """Align the session template; a degenerate frame keeps the last valid pose."""
        session = self.session
        if session.template is None:
            return None
        try:
            pose = self.pose_estimator.estimate(session.template, self.pose_estimator.pick_template_points(landmarks))
        except DegeneratePoseError as exc:
            logger.debug("pose rejected (%s); keeping last valid pose", exc)
            return session.last_pose
        session.last_pose = pose
        return pose

    def observe(self, landmarks: np.ndarray) -> FrameObservation:
        """Pose, eye frames, apertures and rectified offsets for one landmark set."""
        pose = self._estimate_pose(landmarks)
        frames = get_eye_local_frames(landmarks)
        aperture = self.apertures.measure(landmarks, frames)
        blinking = self.apertures.is_blinking(aperture.left_norm, aperture.right_norm)
        rectified = self.rectifier.rectify(landmarks, pose, self.session.canonical) if pose is not None else None
        return FrameObservation(
            landmarks=landmarks,
            pose=pose,
            rectified=rectified,
            aperture=aperture,
            blinking=blinking,
            eye_frames=frames,
        )

    def advance(self, now: Optional[float] = None) -> None:
        """Tick without a finished detection: collect training results and enforce the pursuit deadline."""
        now = time.monotonic() if now is None else now
        self.machine.poll(self.session)
        self.machine.check_deadline(self.session, now)
        self._settle_session()

    def process(self, faces: Optional[Sequence[Face]], now: Optional[float] = None) -> FrameSnapshot:
        """Run one tick on detector output; an empty or None face list means no face."""
        now = time.monotonic() if now is None else now
        session = self.session
        self.machine.poll(session)
        self._settle_session()
        session = self.session

        obs = None
        if faces:
            landmarks = as_landmark_array(faces[0].landmarks)
            if landmarks is not None and has_iris(landmarks):
                obs = self.observe(landmarks)
        self.last_observation = obs

        if obs is not None and session.is_active:
            self.machine.on_frame(session, obs, now)
        self.machine.check_deadline(session, now)
        self._settle_session()
        session = self.session

        snap = FrameSnapshot(timestamp=now, face_detected=obs is not None)
        if obs is not None:
            self._fill_debug(snap, obs)
            if session.can_predict:
                self._predict(snap, obs)

        if snap.pog is not None and self.pointer is not None and obs is not None and obs.pose is not None:
            distance = self.error_history.add(
                (snap.pog.x_px, snap.pog.y_px), self.pointer, obs.pose.yaw, obs.pose.pitch
            )
            if len(self.error_history) % 10 == 0:
                logger.debug("pointer error %.0f px", distance)

        if self.tester.active:
            snap.accuracy_target = self.tester.current_target
            pog_px = (snap.pog.x_px, snap.pog.y_px) if snap.pog is not None else None
            summary = self.tester.tick(now, pog_px)
            if summary is not None:
                self.last_summary = summary
        snap.accuracy_summary = self.last_summary

        self._fill_calibration(snap)
        return snap

    def _fill_debug(self, snap: FrameSnapshot, obs: FrameObservation) -> None:
        """Copy per-frame measurements into the snapshot."""
        snap.landmarks = obs.landmarks
        snap.iris_raw = get_iris_centers(obs.landmarks)
        snap.iris_rectified = obs.rectified
        snap.aperture = obs.aperture
        snap.blinking = obs.blinking
        if obs.aperture is not None:
            snap.aperture_status = {
                "left": self.apertures.status(obs.aperture.left_norm),
                "right": self.apertures.status(obs.aperture.right_norm),
            }
        if obs.pose is not None:
            snap.head_angles = obs.pose.euler
        baseline = self.session.baseline
        if baseline is not None and obs.rectified is not None:
            zeroed = obs.rectified.minus(baseline)
            snap.iris_zeroed = {"left": zeroed.left, "right": zeroed.right}

    def _predict(self, snap: FrameSnapshot, obs: FrameObservation) -> None:
        """Smooth, assemble features, evaluate the session model and project the PoG."""
        session = self.session
        if obs.rectified is None or obs.pose is None:
            return
        smoothed = {eye: session.iris_smoothers[eye](obs.rectified[eye]) for eye in EYES}
        aperture = obs.aperture
        features = assemble_features(
            smoothed["left"],
            smoothed["right"],
            session.baseline,
            obs.pose.yaw,
            obs.pose.pitch,
            aperture.left_norm if aperture is not None else None,
            aperture.right_norm if aperture is not None else None,
        )
        snap.iris_smoothed = smoothed
        snap.iris_zeroed = {"left": features.zero_left, "right": features.zero_right}

        if obs.eye_frames is None or not self.apertures.is_open_enough(obs.eye_frames):
            return

        model = session.model
        trace: Dict[str, object] = {"model": model.kind, "features": features.vector(self.config.scales).tolist()}
        if model.kind in ("screen_ridge", "network"):
            uv = model.predict(features)
            source = model.kind
        else:
            angles = {eye: model.predict_angles(eye, *features.eye(eye)) for eye in EYES}
            trace["eye_angles"] = angles
            ray = self.combiner.combine(obs.pose, angles, session.eye_origins)
            if ray is None:
                return
            snap.gaze_ray = ray
            uv = session.screen_plane.intersect(ray) if session.screen_plane is not None else None
            source = "plane"
            if uv is None:
                yaw, pitch = vector_to_yaw_pitch(ray.direction)
                trace["ray_angles"] = (yaw, pitch)
                uv = angles_to_screen(yaw, pitch, self.config.ridge)
                source = "angular"

        pog = session.projector.project(uv, source, self.viewport)
        if pog is None:
            return
        pog.trace.update(trace)
        snap.pog = pog

    def _fill_calibration(self, snap: FrameSnapshot) -> None:
        """Copy phase, instruction, targets and progress from the session."""
        session = self.session
        snap.phase = session.phase.value
        snap.instruction = session.instruction
        snap.target = session.target
        snap.sample_count = session.sample_count
        snap.calibrated = session.calibrated
        snap.model_kind = session.model.kind
        snap.message = self.message or session.message
        if session.phase == CalibrationPhase.PURSUIT:
            duration = self.config.calibration.pursuit_duration
            snap.pursuit_progress = min(1.0, session.elapsed / duration) if duration > 0 else 1.0
        if session.phase == CalibrationPhase.GRID:
            snap.grid_points = list(session.grid_points)
            snap.grid_clicked = sorted(session.grid_clicked)
