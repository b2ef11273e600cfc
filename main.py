"""Live webcam runner: MediaPipe landmarks in, calibrated point-of-gaze overlay out."""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

from pogtrack.calibration import CalibrationConfig, CalibrationPhase, PursuitTrajectory
from pogtrack.engine import EngineConfig, FrameSnapshot, GazeEngine
from pogtrack.face_landmarks import FaceLandmarksConfig, FaceMeshDetector
from pogtrack.filters import SmoothingConfig
from pogtrack.frame_loop import DetectionGate
from pogtrack.network import NetworkConfig
from pogtrack.projector import ProjectorConfig, compute_intrinsics, project_points
from pogtrack.regression import ScreenRidgeModel

WINDOW = "PoG Tracker"

KEY_HELP = "c: pursuit  g: grid  space: anchor  s: stop  t: accuracy test  r: report  w: weights  q: quit"


def main() -> None:
    """Parse settings and start the live loop."""
    parser = argparse.ArgumentParser(description="Webcam point-of-gaze estimation with calibration.")
    parser.add_argument("--camera", type=int, default=0, help="Camera index")
    parser.add_argument("--video", default=None, help="Optional video file instead of a camera")
    parser.add_argument("--mode", choices=["pursuit", "grid"], default="pursuit", help="Calibration protocol for 'c'")
    parser.add_argument(
        "--model",
        choices=["network", "screen_ridge"],
        default="network",
        help="Model fitted after smooth pursuit",
    )
    parser.add_argument(
        "--grid-model",
        choices=["angular_ridge", "screen_ridge"],
        default="angular_ridge",
        help="Model fitted after the grid protocol",
    )
    parser.add_argument("--order", type=int, choices=[1, 2, 3], default=1, help="Angular ridge polynomial order")
    parser.add_argument("--seed", type=int, default=0, help="Network training seed")
    parser.add_argument("--size", default="1280x720", help="Overlay window size WxH")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    # ===== EDIT THESE SETTINGS IF NEEDED =====
    tick_hz = 10.0
    landmarks_detection_confidence = 0.5
    landmarks_tracking_confidence = 0.5
    landmarks_refine = True  # iris landmarks are required

    iris_alpha = 0.5
    pog_alpha = 0.3

    pursuit_duration = 30.0
    min_pursuit_samples = 100
    network_epochs = 50
    network_batch_size = 32
    network_device = "cpu"  # Example: "cuda:0" or "cpu"

    camera_thumb_scale = 0.3
    ray_length = 120.0
    pog_radius = 10
    # ========================================

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    width, height = (int(v) for v in args.size.lower().split("x"))
    config = EngineConfig(
        smoothing=SmoothingConfig(iris_alpha=iris_alpha, pog_alpha=pog_alpha),
        network=NetworkConfig(
            epochs=network_epochs,
            batch_size=network_batch_size,
            seed=args.seed,
            device=network_device,
        ),
        calibration=CalibrationConfig(
            pursuit_duration=pursuit_duration,
            min_pursuit_samples=min_pursuit_samples,
            pursuit_model=args.model,
            grid_model=args.grid_model,
            angular_order=args.order,
        ),
        projector=ProjectorConfig(),
        viewport=(width, height),
    )

    stats = run_live(
        source=args.video if args.video else args.camera,
        config=config,
        mode=args.mode,
        tick_hz=tick_hz,
        landmarks_config=FaceLandmarksConfig(
            min_detection_confidence=landmarks_detection_confidence,
            min_tracking_confidence=landmarks_tracking_confidence,
            refine_landmarks=landmarks_refine,
        ),
        camera_thumb_scale=camera_thumb_scale,
        ray_length=ray_length,
        pog_radius=pog_radius,
    )

    print(f"Source: {args.video if args.video else f'camera {args.camera}'}")
    print(f"Frames read: {stats['frames']}")
    print(f"Detections: {stats['detections']} (skipped ticks: {stats['skipped']})")
    print(f"Calibrated: {stats['calibrated']} ({stats['model']})")
    summary = stats["accuracy"]
    if summary is not None:
        s = summary.stats
        print(
            f"Accuracy test: mean {s.mean:.1f}px, median {s.median:.1f}px, std {s.std:.1f}px, "
            f"min {s.min:.1f}px, max {s.max:.1f}px ({summary.diagonal_pct:.2f}% of diagonal)"
        )
    report = stats["history"]
    if report is not None:
        print(f"Pointer-follow error: mean {report.overall.mean:.1f}px over {report.overall.count} samples")


def _open_capture(source) -> cv2.VideoCapture:
    """Open a camera index or a video file."""
    cap = cv2.VideoCapture(str(source) if isinstance(source, (str, Path)) else int(source))
    if not cap.isOpened():
        raise RuntimeError(f"Could not open video source: {source}")
    return cap


def _to_px(uv: Tuple[float, float], size: Tuple[int, int]) -> Tuple[int, int]:
    """Screen fraction to integer pixels."""
    return int(round(uv[0] * size[0])), int(round(uv[1] * size[1]))


def draw_overlay(
    canvas: np.ndarray,
    frame: np.ndarray,
    snap: FrameSnapshot,
    trajectory: PursuitTrajectory,
    camera_thumb_scale: float,
    ray_length: float,
    pog_radius: int,
) -> None:
    """Draw camera thumbnail, calibration targets, PoG and status text onto the canvas."""
    height, width = canvas.shape[:2]
    size = (width, height)

    # Camera thumbnail with iris points and gaze ray.
    fh, fw = frame.shape[:2]
    thumb_w = max(1, int(width * camera_thumb_scale))
    scale = thumb_w / float(fw)
    thumb_h = min(height, max(1, int(fh * scale)))
    thumb = cv2.resize(frame, (thumb_w, thumb_h))
    if snap.iris_raw is not None:
        for iris in snap.iris_raw.values():
            cv2.circle(thumb, (int(iris[0] * scale), int(iris[1] * scale)), 2, (0, 255, 0), -1, cv2.LINE_AA)
    if snap.gaze_ray is not None:
        k = compute_intrinsics(fw, fh)
        ends = np.stack([snap.gaze_ray.origin, snap.gaze_ray.origin + snap.gaze_ray.direction * ray_length])
        proj = project_points(ends, k) * scale
        start = tuple(np.round(proj[0]).astype(int))
        end = tuple(np.round(proj[1]).astype(int))
        cv2.arrowedLine(thumb, start, end, (0, 0, 255), 2, cv2.LINE_AA)
    canvas[height - thumb_h : height, width - thumb_w : width] = thumb

    if snap.phase == CalibrationPhase.PURSUIT.value:
        path = np.array([_to_px(p, size) for p in trajectory.preview(120)], dtype=np.int32)
        cv2.polylines(canvas, [path], True, (60, 60, 60), 1, cv2.LINE_AA)
        if snap.pursuit_progress is not None:
            cv2.rectangle(canvas, (0, 0), (int(width * snap.pursuit_progress), 6), (0, 200, 255), -1)

    for idx, point in enumerate(snap.grid_points):
        color = (0, 200, 0) if idx in snap.grid_clicked else (200, 200, 200)
        cv2.circle(canvas, _to_px(point, size), 12, color, 2, cv2.LINE_AA)

    if snap.target is not None:
        cv2.circle(canvas, _to_px(snap.target, size), 14, (0, 255, 255), -1, cv2.LINE_AA)

    if snap.accuracy_target is not None:
        tx, ty = _to_px(snap.accuracy_target, size)
        cv2.drawMarker(canvas, (tx, ty), (0, 255, 0), cv2.MARKER_CROSS, 30, 2)
        if snap.pog is not None:
            cv2.line(canvas, (tx, ty), (int(snap.pog.x_px), int(snap.pog.y_px)), (0, 255, 0), 1, cv2.LINE_AA)

    if snap.pog is not None:
        center = (int(round(snap.pog.x_px)), int(round(snap.pog.y_px)))
        cv2.circle(canvas, center, pog_radius, (80, 80, 255), -1, cv2.LINE_AA)
        cv2.circle(canvas, center, pog_radius, (255, 255, 255), 2, cv2.LINE_AA)

    lines = [
        f"phase: {snap.phase}  samples: {snap.sample_count}  model: {snap.model_kind}",
        snap.instruction,
        snap.message or "",
    ]
    if snap.head_angles is not None:
        yaw, pitch, roll = snap.head_angles
        lines.append(f"head yaw {yaw:+.1f}  pitch {pitch:+.1f}  roll {roll:+.1f}")
    if snap.aperture_status:
        lines.append(f"eyes: L {snap.aperture_status['left']}  R {snap.aperture_status['right']}")
    if not snap.face_detected:
        lines.append("no face")
    lines.append(KEY_HELP)
    y = 30
    for text in lines:
        if text:
            cv2.putText(canvas, text, (12, y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 1, cv2.LINE_AA)
            y += 24


def _print_weights(engine: GazeEngine) -> None:
    """Dump the screen-ridge coefficients for the current model."""
    model = engine.session.model
    if not isinstance(model, ScreenRidgeModel):
        print(f"[Weights] {model.kind} model has no weight report")
        return
    report = model.describe()
    for axis in ("u", "v"):
        imp = report[axis]["importance"]
        print(
            f"[Weights] {axis}: iris {imp['iris']:.2f}  head {imp['head']:.2f}  aperture {imp['aperture']:.2f}  "
            f"bias {report[axis]['bias']:+.3f}"
        )


def _print_report(engine: GazeEngine) -> None:
    """Print the rolling PoG error report."""
    report = engine.accuracy_report()
    if report is None:
        print("[Accuracy] No data yet - move the mouse and follow it with your eyes")
        return
    o = report.overall
    print(
        f"[Accuracy] n={o.count} mean {o.mean:.1f}px median {o.median:.1f}px std {o.std:.1f}px "
        f"min {o.min:.1f}px max {o.max:.1f}px ({report.pct_of_min_side:.2f}%)"
    )
    for name, stats in list(report.regions.items()) + list(report.head.items()):
        if stats is not None:
            print(f"[Accuracy]   {name}: {stats.mean:.1f}px ({stats.count} samples)")


def run_live(
    source,
    config: EngineConfig,
    mode: str,
    tick_hz: float,
    landmarks_config: FaceLandmarksConfig,
    camera_thumb_scale: float,
    ray_length: float,
    pog_radius: int,
) -> dict:
    """Run the tracker on a live stream until 'q' is pressed or the stream ends."""
    cap = _open_capture(source)
    detector = FaceMeshDetector(landmarks_config)
    engine = GazeEngine(config)
    trajectory = PursuitTrajectory(
        config.calibration.pursuit_duration,
        config.calibration.lissajous_amplitude,
        config.calibration.phase_times,
    )
    width, height = config.viewport

    def on_mouse(event, x, y, flags, param) -> None:
        """Forward pointer moves and clicks to the engine."""
        if event == cv2.EVENT_MOUSEMOVE:
            engine.pointer_moved(x, y)
        elif event == cv2.EVENT_LBUTTONDOWN:
            engine.click(x, y)

    cv2.namedWindow(WINDOW)
    cv2.setMouseCallback(WINDOW, on_mouse)

    frames = 0
    detections = 0
    snap: Optional[FrameSnapshot] = None
    last_tick = 0.0
    interval = 1.0 / tick_hz if tick_hz > 0 else 0.0

    gate = DetectionGate(detector.detect)
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            frames += 1

            now = time.monotonic()
            if now - last_tick >= interval:
                last_tick = now
                faces = gate.poll()
                if faces is not None:
                    detections += 1
                    snap = engine.process(faces, now)
                else:
                    engine.advance(now)
                gate.submit(frame)

            canvas = np.zeros((height, width, 3), dtype=np.uint8)
            if snap is not None:
                draw_overlay(canvas, frame, snap, trajectory, camera_thumb_scale, ray_length, pog_radius)
            cv2.imshow(WINDOW, canvas)

            key = cv2.waitKey(1) & 0xFF
            if key == ord("q"):
                break
            if key == ord("c"):
                engine.start_calibration(mode)
            elif key == ord("g"):
                engine.start_calibration("grid")
            elif key == ord(" ") and engine.session.phase == CalibrationPhase.ANCHOR:
                engine.confirm_anchor()
            elif key == ord("s"):
                engine.stop_calibration()
            elif key == ord("t"):
                engine.start_accuracy_test()
            elif key == ord("r"):
                _print_report(engine)
            elif key == ord("w"):
                _print_weights(engine)
    finally:
        if engine.session.trainer is not None:
            engine.session.trainer.cancel()
        gate.close()
        detector.close()
        cap.release()
        cv2.destroyAllWindows()

    return {
        "frames": frames,
        "detections": detections,
        "skipped": gate.skipped,
        "calibrated": engine.session.calibrated,
        "model": engine.session.model.kind,
        "accuracy": engine.last_summary,
        "history": engine.accuracy_report(),
    }


if __name__ == "__main__":
    main()
