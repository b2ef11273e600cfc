import math

import pytest

from pogtrack.calibration import (
    ANCHOR_INSTRUCTION,
    BASELINE_INSTRUCTION,
    NOT_ENOUGH_DATA,
    CalibrationPhase,
    CalibrationStateError,
    PursuitTrajectory,
    build_grid,
)
from pogtrack.engine import EngineConfig, GazeEngine

from synthetic import faces_for


def _calibrate_pursuit(engine, drive, now=0.0, frames=120):
    drive.anchor(engine, "pursuit", now)
    now = drive.baseline(engine, now)
    start = now
    now = drive.pursuit(engine, start, frames)
    engine.advance(start + engine.config.calibration.pursuit_duration + 0.1)
    return start + engine.config.calibration.pursuit_duration + 0.1


def _settle_pog(engine, u, v, now, frames=40):
    snap = None
    for _ in range(frames):
        now += 0.05
        snap = engine.process(faces_for(u, v), now)
    return snap, now


def test_start_shows_anchor_instruction(engine):
    engine.start_calibration("pursuit")
    snap = engine.process(faces_for(), 0.0)

    assert snap.phase == "anchor"
    assert snap.instruction == ANCHOR_INSTRUCTION
    assert snap.target == (0.5, 0.5)
    assert snap.pog is None


def test_unknown_mode_is_rejected(engine):
    with pytest.raises(ValueError):
        engine.start_calibration("spiral")


def test_unknown_mode_leaves_training_untouched(engine_config, drive):
    engine_config.calibration.pursuit_model = "network"
    engine = GazeEngine(engine_config)
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 120)
    engine.advance(start + 30.5)
    session = engine.session
    trainer = session.trainer
    assert session.phase == CalibrationPhase.FIT_TRAIN

    with pytest.raises(ValueError):
        engine.start_calibration("spiral")

    assert engine.session is session
    assert session.phase == CalibrationPhase.FIT_TRAIN
    assert not trainer.cancelled
    assert trainer.wait(timeout=60)

    engine.advance(start + 31.0)
    assert engine.session.calibrated
    assert engine.session.model.kind == "network"


def test_anchor_without_face_keeps_waiting(engine):
    engine.start_calibration("pursuit")
    engine.process([], 0.0)

    assert not engine.confirm_anchor()
    assert engine.session.phase == CalibrationPhase.ANCHOR
    assert engine.session.message.startswith("No face detected")


def test_anchor_outside_anchor_phase_is_illegal(engine):
    engine.process(faces_for(), 0.0)
    with pytest.raises(CalibrationStateError):
        engine.confirm_anchor()


def test_baseline_completes_after_enough_open_eye_frames(engine, drive):
    drive.anchor(engine)
    snap = engine.process(faces_for(), 0.1)
    assert snap.instruction == BASELINE_INSTRUCTION

    for i in range(5):
        engine.process(faces_for(closed=("left", "right")), 0.2 + 0.1 * i)
    assert len(engine.session.baseline_samples) == 1

    now = 1.0
    for _ in range(13):
        now += 0.1
        engine.process(faces_for(), now)
    assert engine.session.phase == CalibrationPhase.CAPTURING_BASELINE

    snap = engine.process(faces_for(), now + 0.1)
    assert snap.phase == "pursuit"
    assert engine.session.baseline is not None
    assert engine.session.canonical is not None
    assert engine.session.ipd == pytest.approx(100.0, rel=1e-6)
    assert snap.target == pytest.approx((0.9, 0.5))


def test_reaction_delay_pairs_with_older_targets(engine, drive):
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 3)

    assert engine.session.sample_count == 1
    sample = engine.session.samples[0]
    assert sample.label == pytest.approx(engine.machine.trajectory.position(0.2))


def test_too_few_pursuit_samples_fails_without_a_face(engine, drive):
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 10)

    snap = engine.process([], start + 30.5)

    assert snap.phase == "idle"
    assert snap.message == NOT_ENOUGH_DATA
    assert not snap.calibrated
    # Anchor and baseline survive so the default gains keep producing a PoG.
    snap = engine.process(faces_for(0.7, 0.5), start + 31.0)
    assert snap.pog is not None
    assert snap.pog.source == "angular"
    assert snap.pog.u > 0.5


def test_pursuit_calibrates_screen_ridge(engine, drive):
    now = _calibrate_pursuit(engine, drive)

    assert engine.session.calibrated
    assert engine.session.model.kind == "screen_ridge"
    assert engine.session.message == "Calibration complete (screen_ridge)."
    assert engine.session.sample_count == 118

    snap, _ = _settle_pog(engine, 0.7, 0.3, now)
    assert snap.model_kind == "screen_ridge"
    assert snap.pog.source == "screen_ridge"
    assert snap.pog.u == pytest.approx(0.7, abs=0.02)
    assert snap.pog.v == pytest.approx(0.3, abs=0.02)
    assert snap.pog.x_px == pytest.approx(700.0, abs=20.0)


def test_screen_order_comes_from_calibration_config(engine_config, drive):
    engine_config.calibration.screen_order = 2
    engine = GazeEngine(engine_config)
    now = _calibrate_pursuit(engine, drive)

    assert engine.session.model.order == 2
    snap, _ = _settle_pog(engine, 0.6, 0.4, now)
    assert snap.pog.u == pytest.approx(0.6, abs=0.05)


def test_stop_during_pursuit_fits_early(engine, drive):
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 110)

    engine.stop_calibration()

    assert engine.session.phase == CalibrationPhase.IDLE
    assert engine.session.model.kind == "screen_ridge"


def test_stop_during_baseline_cancels(engine, drive):
    drive.anchor(engine)
    engine.stop_calibration()

    assert engine.session.phase == CalibrationPhase.IDLE
    assert engine.session.message == "Calibration cancelled."
    assert not engine.session.calibrated


def test_failed_recalibration_restores_previous_session(engine, drive):
    now = _calibrate_pursuit(engine, drive)
    previous = engine.session

    drive.anchor(engine, "pursuit", now + 1.0)
    start = drive.baseline(engine, now + 1.0)
    assert engine.session is not previous

    engine.process([], start + 31.0)

    assert engine.session is previous
    assert engine.session.calibrated
    assert engine.session.model.kind == "screen_ridge"
    assert engine.session.message == NOT_ENOUGH_DATA


def test_network_training_runs_in_background(engine_config, drive):
    engine_config.calibration.pursuit_model = "network"
    engine = GazeEngine(engine_config)
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 120)

    engine.advance(start + 30.5)
    assert engine.session.phase == CalibrationPhase.FIT_TRAIN
    trainer = engine.session.trainer
    assert trainer is not None
    assert trainer.wait(timeout=60)

    engine.advance(start + 31.0)
    assert engine.session.calibrated
    assert engine.session.model.kind == "network"


def test_restarting_cancels_training(engine_config, drive):
    engine_config.calibration.pursuit_model = "network"
    engine_config.network.epochs = 500
    engine = GazeEngine(engine_config)
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 120)
    engine.advance(start + 30.5)
    trainer = engine.session.trainer

    engine.start_calibration("pursuit")

    assert trainer.cancelled
    assert trainer.wait(timeout=60)
    assert trainer.result() is None
    assert engine.session.phase == CalibrationPhase.ANCHOR


def _click_cell(engine, u, v, now):
    engine.process(faces_for(u, v), now)
    return engine.click(u * engine.viewport[0], v * engine.viewport[1])


def test_grid_calibration(engine, drive):
    drive.anchor(engine, "grid")
    now = drive.baseline(engine)
    session = engine.session

    assert session.phase == CalibrationPhase.GRID
    assert 4 in session.grid_clicked
    assert session.sample_count == 1

    points = build_grid((0.1, 0.5, 0.9))
    for idx, (u, v) in enumerate(points):
        if idx == 4:
            continue
        now += 0.1
        assert _click_cell(engine, u, v, now)
    assert session.grid_pass == 1
    assert "CENTER" in session.instruction

    # Pass two must start at the centre.
    now += 0.1
    assert not _click_cell(engine, 0.1, 0.1, now)
    assert session.message == "Click the CENTER dot first."

    for _ in range(4):
        for idx in [4] + [i for i in range(9) if i != 4]:
            u, v = points[idx]
            now += 0.1
            assert _click_cell(engine, u, v, now)

    assert engine.session is session
    assert session.phase == CalibrationPhase.IDLE
    assert session.calibrated
    assert session.model.kind == "angular_ridge"
    assert session.sample_count == 45
    assert session.screen_plane is not None

    snap, _ = _settle_pog(engine, 0.9, 0.5, now)
    assert snap.pog.source == "plane"
    assert snap.gaze_ray is not None
    assert snap.pog.u == pytest.approx(0.9, abs=0.03)
    assert snap.pog.v == pytest.approx(0.5, abs=0.03)


def test_grid_clicks_off_target_are_ignored(engine, drive):
    drive.anchor(engine, "grid")
    drive.baseline(engine)

    assert not _click_cell(engine, 0.3, 0.3, 5.0)
    assert not _click_cell(engine, 0.5, 0.5, 5.1)
    assert engine.session.sample_count == 1


def test_trajectory_shape():
    traj = PursuitTrajectory(duration=30.0, amplitude=0.4)

    assert traj.position(0.0) == pytest.approx((0.9, 0.5))
    assert traj.position(30.0) == pytest.approx(traj.position(0.0))
    for u, v in traj.preview(100):
        assert 0.1 - 1e-9 <= u <= 0.9 + 1e-9
        assert 0.1 - 1e-9 <= v <= 0.9 + 1e-9
    assert traj.instruction(1.0).startswith("Phase 1")
    assert traj.instruction(10.0).startswith("Phase 2")
    assert traj.instruction(20.0).startswith("Phase 3")
    assert math.isclose(traj.omega, 2.0 * math.pi / 30.0)


def test_grid_is_row_major():
    assert build_grid((0.1, 0.9)) == [(0.1, 0.1), (0.9, 0.1), (0.1, 0.9), (0.9, 0.9)]


def test_blinks_during_pursuit_add_no_samples(engine, drive):
    drive.anchor(engine)
    start = drive.baseline(engine)
    drive.pursuit(engine, start, 5)
    count = engine.session.sample_count

    now = start + 1.0
    for _ in range(10):
        now += 0.2
        snap = engine.process(faces_for(closed=("left", "right")), now)
        assert snap.blinking

    assert engine.session.sample_count == count
    assert engine.session.phase == CalibrationPhase.PURSUIT
