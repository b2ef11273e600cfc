from __future__ import annotations

import pytest

from pogtrack.calibration import CalibrationConfig
from pogtrack.engine import EngineConfig, GazeEngine
from pogtrack.network import NetworkConfig

from synthetic import faces_for, make_face


@pytest.fixture
def face():
    """Identity-pose synthetic landmarks looking at the centre."""
    return make_face()


@pytest.fixture
def engine_config():
    return EngineConfig(
        calibration=CalibrationConfig(pursuit_model="screen_ridge"),
        network=NetworkConfig(epochs=3, batch_size=32, seed=0),
        viewport=(1000, 1000),
    )


@pytest.fixture
def engine(engine_config):
    return GazeEngine(engine_config)


@pytest.fixture
def drive():
    """Helpers that push synthetic frames through an engine."""

    class Driver:
        faces_for = staticmethod(faces_for)

        @staticmethod
        def anchor(engine, mode="pursuit", now=0.0):
            engine.start_calibration(mode)
            engine.process(faces_for(), now)
            assert engine.confirm_anchor()
            return now

        @staticmethod
        def baseline(engine, now=0.0, dt=0.1):
            for _ in range(engine.config.calibration.baseline_samples):
                now += dt
                engine.process(faces_for(), now)
            return now

        @staticmethod
        def pursuit(engine, start, frames, dt=0.2):
            """Feed frames whose iris follows the target with the configured reaction lag."""
            traj = engine.machine.trajectory
            lag = engine.config.calibration.reaction_delay_frames * dt
            now = start
            for _ in range(frames):
                now += dt
                u, v = traj.position(max(0.0, now - start - lag))
                engine.process(faces_for(u, v), now)
            return now

    return Driver
