"""Calibration session state and the anchor / baseline / pursuit / grid protocol."""

from __future__ import annotations

import enum
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set, Tuple

import numpy as np

from pogtrack.aperture import ApertureReading
from pogtrack.eye_frames import EyeLocalFrame, canonical_eye_frames
from pogtrack.features import FeatureScales, GazeFeatures, assemble_features
from pogtrack.filters import ExponentialSmoother, SmoothingConfig
from pogtrack.gaze_fusion import (
    GazeCombiner,
    GazeFusionConfig,
    ScreenPlane,
    estimate_eye_origins,
    eye_angles_to_head_vector,
    vector_to_yaw_pitch,
)
from pogtrack.head_pose import Pose, RigidPoseEstimator
from pogtrack.iris_gaze import RectifiedOffsets
from pogtrack.landmarks import EYES
from pogtrack.network import NetworkConfig, NetworkTrainer
from pogtrack.projector import PoGProjector, ProjectorConfig
from pogtrack.regression import (
    AngularRidgeModel,
    AngularSample,
    DefaultGainModel,
    InsufficientSamplesError,
    RidgeConfig,
    ScreenRidgeModel,
    screen_to_angles,
)

logger = logging.getLogger(__name__)

ANCHOR_INSTRUCTION = "Look at the CENTER dot and CLICK when ready"
BASELINE_INSTRUCTION = "Hold still... capturing baseline..."
NOT_ENOUGH_DATA = "Not enough data collected! Please follow the dot more closely."


class CalibrationStateError(RuntimeError):
    """Raised on an operation that is illegal in the current calibration phase."""


class CalibrationPhase(enum.Enum):
    IDLE = "idle"
    ANCHOR = "anchor"
    CAPTURING_BASELINE = "capturing-baseline"
    PURSUIT = "pursuit"
    GRID = "grid"
    FIT_TRAIN = "fit-train"


_ALLOWED = {
    CalibrationPhase.IDLE: {CalibrationPhase.ANCHOR},
    CalibrationPhase.ANCHOR: {CalibrationPhase.CAPTURING_BASELINE, CalibrationPhase.IDLE},
    CalibrationPhase.CAPTURING_BASELINE: {CalibrationPhase.PURSUIT, CalibrationPhase.GRID, CalibrationPhase.IDLE},
    CalibrationPhase.PURSUIT: {CalibrationPhase.FIT_TRAIN, CalibrationPhase.IDLE},
    CalibrationPhase.GRID: {CalibrationPhase.FIT_TRAIN, CalibrationPhase.IDLE},
    CalibrationPhase.FIT_TRAIN: {CalibrationPhase.IDLE},
}


@dataclass
class CalibrationConfig:
    """Protocol timings, thresholds and model choices."""

    baseline_samples: int = 15
    pursuit_duration: float = 30.0  # seconds
    phase_times: Tuple[float, float] = (7.0, 14.0)
    lissajous_amplitude: float = 0.4
    reaction_delay_frames: int = 2
    min_pursuit_samples: int = 100
    pursuit_model: str = "network"  # "network" or "screen_ridge"
    grid_model: str = "angular_ridge"  # "angular_ridge" or "screen_ridge"
    angular_order: int = 1
    screen_order: int = 1
    grid_values: Tuple[float, float, float] = (0.1, 0.5, 0.9)
    head_poses: Tuple[str, ...] = ("straight", "left", "right", "up", "down")
    hit_radius: float = 0.08  # normalised screen units


@dataclass(eq=False)
class FrameObservation:
    """Everything the engine derived from one detected face."""

    landmarks: np.ndarray
    pose: Optional[Pose]
    rectified: Optional[RectifiedOffsets]
    aperture: Optional[ApertureReading]
    blinking: bool
    eye_frames: Optional[Dict[str, EyeLocalFrame]] = None


@dataclass(eq=False)
class CalibrationSample:
    """One labelled frame: features, screen target and the pose it was captured under."""

    features: GazeFeatures
    label: Tuple[float, float]
    pose: Pose
    cell: Optional[int] = None
    head_pose: Optional[str] = None


class PursuitTrajectory:
    """Closed Lissajous path over the screen, one full loop per duration."""

    def __init__(self, duration: float = 30.0, amplitude: float = 0.4, phase_times: Tuple[float, float] = (7.0, 14.0)) -> None:
        """Lissajous path of the given period and reach."""
        self.duration = duration
        self.amplitude = amplitude
        self.phase_times = phase_times
        self.omega = 2.0 * math.pi / duration

    def position(self, t: float) -> Tuple[float, float]:
        """Target (u, v) at t seconds into the pursuit."""
        u = 0.5 + self.amplitude * math.sin(3.0 * self.omega * t + math.pi / 2.0)
        v = 0.5 + self.amplitude * math.sin(2.0 * self.omega * t)
        return u, v

    def instruction(self, t: float) -> str:
        """Head-movement prompt for the phase containing t."""
        if t < self.phase_times[0]:
            return "Phase 1: Keep head STILL"
        if t < self.phase_times[1]:
            return "Phase 2: Gently TILT head"
        return "Phase 3: Gently NOD head"

    def preview(self, n: int = 200) -> List[Tuple[float, float]]:
        """n + 1 points along one full loop, for drawing the path."""
        return [self.position(self.duration * i / n) for i in range(n + 1)]


def build_grid(values: Tuple[float, ...]) -> List[Tuple[float, float]]:
    """Row-major grid of (u, v) targets."""
    return [(u, v) for v in values for u in values]


@dataclass(eq=False)
class CalibrationSession:
    """All per-calibration state. Replaced wholesale when a calibration starts."""

    mode: str = "pursuit"
    phase: CalibrationPhase = CalibrationPhase.IDLE
    instruction: str = ""
    target: Optional[Tuple[float, float]] = None
    message: Optional[str] = None
    failed: bool = False
    calibrated: bool = False

    template: Optional[np.ndarray] = None
    canonical: Optional[Dict[str, EyeLocalFrame]] = None
    baseline: Optional[RectifiedOffsets] = None
    eye_origins: Optional[Dict[str, np.ndarray]] = None
    ipd: float = 0.0
    last_pose: Optional[Pose] = None

    baseline_samples: List[RectifiedOffsets] = field(default_factory=list)
    samples: List[CalibrationSample] = field(default_factory=list)
    target_queue: Deque[Tuple[float, float]] = field(default_factory=deque)
    started_at: Optional[float] = None
    elapsed: float = 0.0

    grid_points: List[Tuple[float, float]] = field(default_factory=list)
    grid_pass: int = 0
    grid_clicked: Set[int] = field(default_factory=set)

    model: object = field(default_factory=DefaultGainModel)
    screen_plane: Optional[ScreenPlane] = None
    trainer: Optional[NetworkTrainer] = None

    iris_smoothers: Dict[str, ExponentialSmoother] = field(default_factory=dict)
    projector: PoGProjector = field(default_factory=PoGProjector)

    @classmethod
    def create(
        cls,
        mode: str = "pursuit",
        smoothing: Optional[SmoothingConfig] = None,
        projector: Optional[ProjectorConfig] = None,
        ridge: Optional[RidgeConfig] = None,
    ) -> "CalibrationSession":
        """Session with per-stream smoothers and the default-gain model."""
        smoothing = smoothing or SmoothingConfig()
        return cls(
            mode=mode,
            model=DefaultGainModel(ridge),
            iris_smoothers={eye: ExponentialSmoother(smoothing.iris_alpha) for eye in EYES},
            projector=PoGProjector(projector, smoothing.pog_alpha),
        )

    @property
    def is_active(self) -> bool:
        """True outside idle."""
        return self.phase != CalibrationPhase.IDLE

    @property
    def can_predict(self) -> bool:
        """True once a calibration has finished with a baseline and eye frames."""
        return (
            not self.is_active
            and self.baseline is not None
            and self.canonical is not None
            and self.model is not None
        )

    @property
    def sample_count(self) -> int:
        """Number of recorded samples."""
        return len(self.samples)


class CalibrationStateMachine:
    """Drives a CalibrationSession through the calibration protocol."""

    def __init__(
        self,
        config: Optional[CalibrationConfig] = None,
        ridge: Optional[RidgeConfig] = None,
        network: Optional[NetworkConfig] = None,
        scales: Optional[FeatureScales] = None,
        fusion: Optional[GazeFusionConfig] = None,
    ) -> None:
        """Store the protocol settings and the grid layout."""
        self.config = config or CalibrationConfig()
        self.ridge = ridge or RidgeConfig()
        self.network = network or NetworkConfig()
        self.scales = scales or FeatureScales()
        self.fusion = fusion or GazeFusionConfig()
        self.pose_estimator = RigidPoseEstimator()
        self.combiner = GazeCombiner(self.fusion)
        self.trajectory = PursuitTrajectory(
            self.config.pursuit_duration,
            self.config.lissajous_amplitude,
            self.config.phase_times,
        )

    # -- transitions -------------------------------------------------------

    def _transition(self, session: CalibrationSession, to: CalibrationPhase) -> None:
        """Move to the next phase, rejecting edges the protocol does not allow."""
        if to not in _ALLOWED[session.phase]:
            raise CalibrationStateError(f"illegal calibration transition {session.phase.value} -> {to.value}")
        logger.debug("calibration %s -> %s", session.phase.value, to.value)
        session.phase = to

    def _require(self, session: CalibrationSession, *phases: CalibrationPhase) -> None:
        """Raise unless the session is in one of the given phases."""
        if session.phase not in phases:
            names = ", ".join(p.value for p in phases)
            raise CalibrationStateError(f"expected phase {names}, session is {session.phase.value}")

    # -- protocol ----------------------------------------------------------

    def start(self, session: CalibrationSession, mode: Optional[str] = None) -> None:
        """Enter the anchor step for a pursuit or grid calibration."""
        mode = mode or session.mode
        if mode not in ("pursuit", "grid"):
            raise ValueError(f"unknown calibration mode: {mode}")
        self._transition(session, CalibrationPhase.ANCHOR)
        session.mode = mode
        session.target = (0.5, 0.5)
        session.instruction = ANCHOR_INSTRUCTION
        session.message = None
        logger.info("Calibration started (%s)", mode)

    def confirm_anchor(self, session: CalibrationSession, observation: Optional[FrameObservation]) -> bool:
        """Capture the head template from the current face and begin baseline capture."""
        self._require(session, CalibrationPhase.ANCHOR)
        if observation is None:
            session.message = "No face detected! Please ensure your face is visible."
            return False
        template = self.pose_estimator.pick_template_points(observation.landmarks)
        if template is None:
            session.message = "No face detected! Please ensure your face is visible."
            return False
        session.template = template
        session.baseline_samples = []
        session.last_pose = Pose.identity()
        session.message = None
        self._transition(session, CalibrationPhase.CAPTURING_BASELINE)
        session.instruction = BASELINE_INSTRUCTION
        logger.info("Anchor captured, collecting baseline")
        return True

    def on_frame(self, session: CalibrationSession, observation: FrameObservation, now: float) -> None:
        """Accumulate baseline or pursuit samples from a frame with a detected face."""
        if session.phase == CalibrationPhase.CAPTURING_BASELINE:
            self._on_baseline_frame(session, observation, now)
        elif session.phase == CalibrationPhase.PURSUIT:
            self._on_pursuit_frame(session, observation, now)

    def _on_baseline_frame(self, session: CalibrationSession, obs: FrameObservation, now: float) -> None:
        """Collect one baseline offset; the last one fixes baseline, eye frames and origins."""
        if obs.rectified is None or obs.pose is None or obs.blinking:
            return
        session.baseline_samples.append(obs.rectified)
        if len(session.baseline_samples) < self.config.baseline_samples:
            return

        canonical = canonical_eye_frames(obs.landmarks, obs.pose)
        origins = estimate_eye_origins(obs.landmarks, obs.pose, self.fusion)
        if canonical is None:
            # Degenerate eye geometry on the closing frame; keep collecting.
            session.baseline_samples.pop()
            return
        session.baseline = RectifiedOffsets.mean(session.baseline_samples)
        session.canonical = canonical
        session.eye_origins = origins
        if origins is not None:
            session.ipd = float(np.linalg.norm(origins["left"] - origins["right"]))
        logger.info("Baseline anchored from %d samples", len(session.baseline_samples))

        if session.mode == "grid":
            self._enter_grid(session, obs)
        else:
            self._transition(session, CalibrationPhase.PURSUIT)
            session.started_at = now
            session.elapsed = 0.0
            session.target_queue.clear()
            session.target = self.trajectory.position(0.0)
            session.instruction = self.trajectory.instruction(0.0)

    def _on_pursuit_frame(self, session: CalibrationSession, obs: FrameObservation, now: float) -> None:
        """Move the target and queue a sample labelled a few frames later."""
        elapsed = now - (session.started_at if session.started_at is not None else now)
        session.elapsed = elapsed
        if elapsed >= self.config.pursuit_duration:
            return
        session.instruction = self.trajectory.instruction(elapsed)
        target = self.trajectory.position(elapsed)
        session.target = target

        if obs.blinking or obs.rectified is None or obs.pose is None:
            return
        session.target_queue.append(target)
        if len(session.target_queue) > self.config.reaction_delay_frames:
            delayed = session.target_queue.popleft()
            session.samples.append(
                CalibrationSample(features=self.features_for(session, obs), label=delayed, pose=obs.pose)
            )

    def check_deadline(self, session: CalibrationSession, now: float) -> None:
        """Advance pursuit to fit or failure once its time is up, with or without a face."""
        if session.phase != CalibrationPhase.PURSUIT or session.started_at is None:
            return
        session.elapsed = now - session.started_at
        if session.elapsed >= self.config.pursuit_duration:
            self._finish_pursuit(session)

    def stop(self, session: CalibrationSession) -> None:
        """User stop: finish pursuit early, abort any other active phase."""
        if session.phase == CalibrationPhase.PURSUIT:
            self._finish_pursuit(session)
        elif session.phase == CalibrationPhase.FIT_TRAIN:
            if session.trainer is not None:
                session.trainer.cancel()
            self._fail(session, "Calibration cancelled.")
        elif session.phase != CalibrationPhase.IDLE:
            self._fail(session, "Calibration cancelled.")

    # -- grid --------------------------------------------------------------

    def _enter_grid(self, session: CalibrationSession, obs: FrameObservation) -> None:
        """Start the first grid pass with the anchor frame as the centre sample."""
        self._transition(session, CalibrationPhase.GRID)
        session.grid_points = build_grid(self.config.grid_values)
        session.grid_pass = 0
        session.grid_clicked = set()
        # The anchor click already fixed the centre of the first pass.
        self._record_grid_sample(session, obs, self._centre_index())
        self._update_grid_instruction(session)

    def _centre_index(self) -> int:
        """Index of the middle cell in the row-major grid."""
        return len(self.config.grid_values) ** 2 // 2

    def _cell_at(self, session: CalibrationSession, u: float, v: float) -> Optional[int]:
        """Nearest grid cell within the hit radius, or None."""
        best = None
        best_dist = self.config.hit_radius
        for idx, (gu, gv) in enumerate(session.grid_points):
            d = math.hypot(u - gu, v - gv)
            if d <= best_dist:
                best, best_dist = idx, d
        return best

    def _update_grid_instruction(self, session: CalibrationSession) -> None:
        """Prompt for the centre dot or the remaining dots of this pass."""
        pose_name = self.config.head_poses[session.grid_pass]
        centre = self._centre_index()
        total = len(self.config.head_poses)
        if centre not in session.grid_clicked:
            session.instruction = f"Pass {session.grid_pass + 1}/{total} ({pose_name}): click the CENTER dot first"
            session.target = session.grid_points[centre]
        else:
            session.instruction = f"Pass {session.grid_pass + 1}/{total} ({pose_name}): click every dot"
            session.target = None

    def _record_grid_sample(self, session: CalibrationSession, obs: FrameObservation, idx: int) -> None:
        """Store a sample labelled by the cell and commit the cell."""
        session.samples.append(
            CalibrationSample(
                features=self.features_for(session, obs),
                label=session.grid_points[idx],
                pose=obs.pose,
                cell=idx,
                head_pose=self.config.head_poses[session.grid_pass],
            )
        )
        session.grid_clicked.add(idx)

    def click_grid(self, session: CalibrationSession, u: float, v: float, observation: Optional[FrameObservation]) -> bool:
        """Record one grid sample if (u, v) hits an uncommitted cell. Returns True if recorded."""
        self._require(session, CalibrationPhase.GRID)
        if observation is None or observation.rectified is None or observation.pose is None:
            session.message = "No face detected! Please ensure your face is visible."
            return False
        if observation.blinking:
            return False
        idx = self._cell_at(session, u, v)
        if idx is None or idx in session.grid_clicked:
            return False
        centre = self._centre_index()
        if centre not in session.grid_clicked and idx != centre:
            session.message = "Click the CENTER dot first."
            return False

        session.message = None
        self._record_grid_sample(session, observation, idx)
        if len(session.grid_clicked) < len(session.grid_points):
            self._update_grid_instruction(session)
            return True

        session.grid_pass += 1
        session.grid_clicked = set()
        if session.grid_pass < len(self.config.head_poses):
            self._update_grid_instruction(session)
        else:
            self._finish_grid(session)
        return True

    # -- fitting -----------------------------------------------------------

    def features_for(self, session: CalibrationSession, obs: FrameObservation) -> GazeFeatures:
        """Zero-centred features of an observation against the session baseline."""
        aperture = obs.aperture
        return assemble_features(
            obs.rectified.left,
            obs.rectified.right,
            session.baseline,
            obs.pose.yaw,
            obs.pose.pitch,
            aperture.left_norm if aperture is not None else None,
            aperture.right_norm if aperture is not None else None,
        )

    def _finish_pursuit(self, session: CalibrationSession) -> None:
        """Fail below the sample minimum, else fit the ridge inline or start the network."""
        n = len(session.samples)
        logger.info("Pursuit finished with %d samples", n)
        if n < self.config.min_pursuit_samples:
            self._fail(session, NOT_ENOUGH_DATA)
            return
        self._transition(session, CalibrationPhase.FIT_TRAIN)
        session.target = None
        X = np.stack([s.features.vector(self.scales) for s in session.samples])
        Y = np.array([s.label for s in session.samples], dtype=float)

        if self.config.pursuit_model == "network":
            session.instruction = f"Training... Epoch 0/{self.network.epochs}"
            trainer = NetworkTrainer(self.network, self.scales)
            session.trainer = trainer
            trainer.start(X, Y)
            return

        try:
            model = ScreenRidgeModel.fit(
                [s.features for s in session.samples], Y, self.config.screen_order, self.ridge, self.scales
            )
        except InsufficientSamplesError as exc:
            self._fail(session, f"Calibration failed: {exc}")
            return
        self._install(session, model)

    def _finish_grid(self, session: CalibrationSession) -> None:
        """Fit the grid model and, for the angular path, the screen plane."""
        self._transition(session, CalibrationPhase.FIT_TRAIN)
        session.target = None
        try:
            if self.config.grid_model == "screen_ridge":
                labels = np.array([s.label for s in session.samples], dtype=float)
                model = ScreenRidgeModel.fit(
                    [s.features for s in session.samples], labels, self.config.screen_order, self.ridge, self.scales
                )
            else:
                model = AngularRidgeModel.fit(
                    self._angular_samples(session.samples), self.config.angular_order, self.ridge
                )
        except InsufficientSamplesError as exc:
            self._fail(session, f"Calibration failed: {exc}")
            return
        if isinstance(model, AngularRidgeModel):
            session.screen_plane = self._solve_plane(session, model)
        self._install(session, model)

    def _angular_samples(self, samples: List[CalibrationSample]) -> Dict[str, List[AngularSample]]:
        """Per-eye samples labelled with the eye-in-head angles toward each target."""
        out: Dict[str, List[AngularSample]] = {eye: [] for eye in EYES}
        for s in samples:
            yaw_t, pitch_t = screen_to_angles(s.label[0], s.label[1], self.ridge)
            head_dir = s.pose.R.T @ eye_angles_to_head_vector(yaw_t, pitch_t)
            yaw, pitch = vector_to_yaw_pitch(head_dir)
            for eye in EYES:
                dx, dy = s.features.eye(eye)
                out[eye].append(AngularSample(dx=float(dx), dy=float(dy), yaw=yaw, pitch=pitch))
        return out

    def _solve_plane(self, session: CalibrationSession, model: AngularRidgeModel) -> Optional[ScreenPlane]:
        """Intersect the fitted rays with a plane solved against the grid labels."""
        rays = []
        labels = []
        for s in session.samples:
            angles = {eye: model.predict_angles(eye, *s.features.eye(eye)) for eye in EYES}
            ray = self.combiner.combine(s.pose, angles, session.eye_origins)
            if ray is not None:
                rays.append(ray)
                labels.append(s.label)
        if not rays:
            return None
        plane = ScreenPlane.solve(rays, np.array(labels), session.ipd, self.fusion)
        if plane is None:
            logger.info("Screen plane not solvable; using angular mapping")
        return plane

    def poll(self, session: CalibrationSession) -> None:
        """Collect background training results on the frame thread."""
        if session.phase != CalibrationPhase.FIT_TRAIN or session.trainer is None:
            return
        trainer = session.trainer
        progress = trainer.progress
        if progress is not None:
            session.instruction = f"Training... Epoch {progress.epoch}/{progress.epochs} (loss: {progress.loss:.4f})"
        if not trainer.finished:
            return
        model = trainer.result()
        session.trainer = None
        if model is None:
            reason = trainer.error if trainer.error is not None else "cancelled"
            self._fail(session, f"Training failed: {reason}")
            return
        self._install(session, model)

    def _install(self, session: CalibrationSession, model: object) -> None:
        """Make a fitted model current and return to idle."""
        session.model = model
        session.calibrated = True
        session.failed = False
        session.target = None
        session.instruction = ""
        session.message = f"Calibration complete ({model.kind})."
        for smoother in session.iris_smoothers.values():
            smoother.reset()
        session.projector.reset()
        self._transition(session, CalibrationPhase.IDLE)
        logger.info("Installed %s model from %d samples", model.kind, len(session.samples))

    def _fail(self, session: CalibrationSession, message: str) -> None:
        """Flag the session failed with a user-visible message and return to idle."""
        session.failed = True
        session.message = message
        session.target = None
        session.instruction = ""
        self._transition(session, CalibrationPhase.IDLE)
        logger.warning("Calibration failed: %s", message)
