import threading

import numpy as np
import pytest

from pogtrack.frame_loop import DetectionGate


def test_single_detection_in_flight():
    release = threading.Event()
    seen = []

    def detect(frame):
        release.wait(timeout=10)
        seen.append(frame.shape)
        return "faces"

    with DetectionGate(detect) as gate:
        frame = np.zeros((4, 4, 3), dtype=np.uint8)
        assert gate.submit(frame)
        assert gate.busy
        assert not gate.submit(frame)
        assert gate.poll() is None
        assert (gate.submitted, gate.skipped) == (1, 1)

        release.set()
        gate._future.result(timeout=10)
        assert gate.poll() == "faces"
        assert gate.poll() is None
        assert not gate.busy

    assert seen == [(4, 4, 3)]


def test_tick_collects_then_resubmits():
    with DetectionGate(lambda frame: int(frame.sum())) as gate:
        assert gate.tick(np.ones(3)) is None
        gate._future.result(timeout=10)
        assert gate.tick(np.ones(5)) == 3
        gate._future.result(timeout=10)
        assert gate.poll() == 5
        assert gate.submitted == 2


def test_detector_errors_propagate():
    def broken(frame):
        raise RuntimeError("camera unplugged")

    with DetectionGate(broken) as gate:
        gate.submit(np.zeros(1))
        with pytest.raises(RuntimeError):
            gate._future.result(timeout=10)
        with pytest.raises(RuntimeError, match="camera unplugged"):
            gate.poll()
