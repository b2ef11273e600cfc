"""Tick scheduling with at most one face detection in flight."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Generic, Optional, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DetectionGate(Generic[T]):
    """Runs a detector on a single worker; ticks that arrive while it is busy are skipped."""

    def __init__(self, detect: Callable[[np.ndarray], T]) -> None:
        """Wrap a detector with a single-worker executor."""
        self.detect = detect
        self.executor = ThreadPoolExecutor(max_workers=1)
        self._future: Optional[Future] = None
        self.submitted = 0
        self.skipped = 0

    @property
    def busy(self) -> bool:
        """True while a detection is in flight."""
        return self._future is not None and not self._future.done()

    def submit(self, frame: np.ndarray) -> bool:
        """Start a detection unless one is already running. Returns True if started."""
        if self._future is not None:
            if not self._future.done():
                self.skipped += 1
                return False
            logger.debug("discarding uncollected detection result")
        self._future = self.executor.submit(self.detect, frame)
        self.submitted += 1
        return True

    def poll(self) -> Optional[T]:
        """Result of the finished detection, or None while running / idle. Re-raises detector errors."""
        if self._future is None or not self._future.done():
            return None
        future, self._future = self._future, None
        return future.result()

    def tick(self, frame: np.ndarray) -> Optional[T]:
        """Collect a finished detection, then submit this frame if the worker is free."""
        result = self.poll()
        self.submit(frame)
        return result

    def close(self) -> None:
        """Wait for the worker and shut it down."""
        self.executor.shutdown(wait=True)

    def __enter__(self) -> "DetectionGate[T]":
        """Use the gate as a context manager."""
        return self

    def __exit__(self, *exc) -> None:
        """Shut the worker down on exit."""
        self.close()
