"""Nine-point accuracy test and a rolling pointer-follow error history."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from pogtrack.calibration import build_grid

logger = logging.getLogger(__name__)


@dataclass
class AccuracyConfig:
    """Accuracy test timing and error-history breakdown thresholds."""

    settle_time: float = 5.0  # seconds per point before sampling
    grid_values: Tuple[float, float, float] = (0.1, 0.5, 0.9)
    history_size: int = 100
    head_turn_threshold: float = 5.0  # degrees


@dataclass
class AccuracyPointRecord:
    """One sampled test point."""

    index: int
    target: Tuple[float, float]
    predicted: Tuple[float, float]
    error: float


@dataclass
class ErrorStats:
    """Distribution of pixel errors."""

    count: int
    mean: float
    median: float
    std: float
    min: float
    max: float

    @classmethod
    def from_errors(cls, errors: Sequence[float]) -> Optional["ErrorStats"]:
        """Stats over a list of errors; None if it is empty."""
        if len(errors) == 0:
            return None
        arr = np.asarray(errors, dtype=float)
        return cls(
            count=int(arr.size),
            mean=float(arr.mean()),
            median=float(np.median(arr)),
            std=float(arr.std()),
            min=float(arr.min()),
            max=float(arr.max()),
        )


@dataclass
class AccuracySummary:
    """Result of a finished accuracy test."""

    stats: ErrorStats
    diagonal_pct: float
    viewport: Tuple[int, int]
    records: List[AccuracyPointRecord] = field(default_factory=list)


class AccuracyTester:
    """Shows each grid point, waits for the PoG to settle, then records the pixel error."""

    def __init__(self, config: Optional[AccuracyConfig] = None) -> None:
        """Lay out the test points from the grid values."""
        self.config = config or AccuracyConfig()
        self.points = build_grid(self.config.grid_values)
        self.active = False
        self.index = -1
        self.shown_at = 0.0
        self.viewport: Tuple[int, int] = (1, 1)
        self.records: List[AccuracyPointRecord] = []
        self.summary: Optional[AccuracySummary] = None

    @property
    def current_target(self) -> Optional[Tuple[float, float]]:
        """Point the user should look at, or None when idle."""
        if not self.active or self.index < 0:
            return None
        return self.points[self.index]

    def start(self, now: float, viewport: Tuple[int, int]) -> None:
        """Show the first point and reset the records."""
        self.active = True
        self.index = 0
        self.shown_at = now
        self.viewport = viewport
        self.records = []
        self.summary = None
        logger.info("Accuracy test started")

    def cancel(self) -> None:
        """Stop the test without a summary."""
        self.active = False
        self.index = -1

    def tick(self, now: float, pog_px: Optional[Tuple[float, float]]) -> Optional[AccuracySummary]:
        """Advance the test; returns the summary on the tick that finishes it."""
        if not self.active:
            return None
        if now - self.shown_at < self.config.settle_time or pog_px is None:
            return None

        width, height = self.viewport
        u, v = self.points[self.index]
        target = (u * width, v * height)
        error = math.hypot(target[0] - pog_px[0], target[1] - pog_px[1])
        self.records.append(
            AccuracyPointRecord(index=self.index, target=target, predicted=(float(pog_px[0]), float(pog_px[1])), error=error)
        )
        logger.debug("accuracy point %d: %.1f px", self.index, error)

        self.index += 1
        self.shown_at = now
        if self.index < len(self.points):
            return None
        self.active = False
        self.index = -1
        self.summary = self._summarize()
        return self.summary

    def _summarize(self) -> AccuracySummary:
        """Aggregate the recorded errors."""
        stats = ErrorStats.from_errors([r.error for r in self.records])
        diagonal = math.hypot(*self.viewport)
        pct = 100.0 * stats.mean / diagonal if diagonal > 0 else float("nan")
        logger.info("Accuracy: mean %.1f px (%.2f%% of diagonal)", stats.mean, pct)
        return AccuracySummary(stats=stats, diagonal_pct=pct, viewport=self.viewport, records=list(self.records))


@dataclass
class ErrorSample:
    distance: float
    pog: Tuple[float, float]
    pointer: Tuple[float, float]
    head_yaw: float
    head_pitch: float


@dataclass
class ErrorHistoryReport:
    """Overall, regional (by PoG position) and head-pose error breakdown."""

    overall: ErrorStats
    pct_of_min_side: float
    regions: Dict[str, Optional[ErrorStats]]
    head: Dict[str, Optional[ErrorStats]]


class ErrorHistory:
    """Rolling PoG-to-pointer distances while the user follows the pointer with their eyes."""

    def __init__(self, config: Optional[AccuracyConfig] = None) -> None:
        """Bounded store of recent error samples."""
        self.config = config or AccuracyConfig()
        self.samples: Deque[ErrorSample] = deque(maxlen=self.config.history_size)

    def __len__(self) -> int:
        """Number of stored samples."""
        return len(self.samples)

    def clear(self) -> None:
        """Forget all samples."""
        self.samples.clear()

    def add(
        self,
        pog: Tuple[float, float],
        pointer: Tuple[float, float],
        head_yaw: float,
        head_pitch: float,
    ) -> float:
        """Record one PoG-to-pointer distance and return it."""
        distance = math.hypot(pointer[0] - pog[0], pointer[1] - pog[1])
        self.samples.append(
            ErrorSample(
                distance=distance,
                pog=(float(pog[0]), float(pog[1])),
                pointer=(float(pointer[0]), float(pointer[1])),
                head_yaw=float(head_yaw),
                head_pitch=float(head_pitch),
            )
        )
        return distance

    def report(self, viewport: Tuple[int, int]) -> Optional[ErrorHistoryReport]:
        """Overall, regional and head-pose error stats; None while empty."""
        if not self.samples:
            return None
        width, height = viewport
        samples = list(self.samples)
        overall = ErrorStats.from_errors([s.distance for s in samples])
        side = float(min(width, height)) or 1.0

        def stats_of(selected: List[ErrorSample]) -> Optional[ErrorStats]:
            """Stats for a subset of samples."""
            return ErrorStats.from_errors([s.distance for s in selected])

        regions = {
            "top": stats_of([s for s in samples if s.pog[1] < height / 2.0]),
            "bottom": stats_of([s for s in samples if s.pog[1] >= height / 2.0]),
            "left": stats_of([s for s in samples if s.pog[0] < width / 2.0]),
            "right": stats_of([s for s in samples if s.pog[0] >= width / 2.0]),
        }
        thr = self.config.head_turn_threshold
        head = {
            "straight": stats_of([s for s in samples if abs(s.head_yaw) < thr and abs(s.head_pitch) < thr]),
            "turned": stats_of([s for s in samples if abs(s.head_yaw) >= thr or abs(s.head_pitch) >= thr]),
        }
        return ErrorHistoryReport(
            overall=overall,
            pct_of_min_side=100.0 * overall.mean / side,
            regions=regions,
            head=head,
        )
