"""Exponential moving average for per-stream signal smoothing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class SmoothingConfig:
    """Smoothing factors per stream; higher alpha is more responsive."""

    iris_alpha: float = 0.5
    pog_alpha: float = 0.3


class ExponentialSmoother:
    """Simple exponential smoother: y = a*x + (1 - a)*y_prev, seeded by the first sample."""

    def __init__(self, alpha: float = 1.0) -> None:
        """Clamp alpha into (0, 1] and start empty."""
        self.alpha = float(max(1e-5, min(1.0, alpha)))
        self.initialized = False
        self._last: Optional[np.ndarray] = None

    @property
    def value(self) -> Optional[np.ndarray]:
        """Last smoothed value, or None before the first update."""
        return None if self._last is None else self._last.copy()

    def reset(self) -> None:
        """Forget the history so the next value passes through."""
        self.initialized = False
        self._last = None

    def __call__(self, value: np.ndarray) -> np.ndarray:
        """Blend a new value into the running estimate and return it."""
        if not self.initialized:
            self._last = np.array(value, dtype=float)
            self.initialized = True
            return self._last.copy()
        value = np.array(value, dtype=float)
        self._last = self.alpha * value + (1.0 - self.alpha) * self._last
        return self._last.copy()
