"""Polynomial ridge regression models mapping gaze features to screen targets."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from pogtrack.features import FEATURE_NAMES, FeatureScales, GazeFeatures
from pogtrack.landmarks import EYES

logger = logging.getLogger(__name__)


class InsufficientSamplesError(ValueError):
    """Raised when a fit is requested with fewer samples than the model needs."""


@dataclass
class RidgeConfig:
    """Regularisation, sample minimums and fallback gains for the closed-form models."""

    lambda_linear: float = 1e-3
    lambda_poly: float = 0.5  # orders 2-3 overfit easily on a few dozen samples
    min_samples_linear: int = 2
    min_samples_poly: int = 6
    default_kx: float = 20.0  # degrees per eye width
    default_ky: float = 15.0
    angular_span_deg: float = 10.0  # gaze angle reaching +/- angular_span_screen
    angular_span_screen: float = 0.4


def ridge_lambda(order: int, config: RidgeConfig) -> float:
    """Regularisation strength for a polynomial order."""
    return config.lambda_linear if order <= 1 else config.lambda_poly


def min_samples_for_order(order: int, config: RidgeConfig) -> int:
    """Fewest samples a fit of this order accepts."""
    return config.min_samples_linear if order <= 1 else config.min_samples_poly


def polynomial_features_2d(dx: float, dy: float, order: int) -> np.ndarray:
    """Bias, linear, and (order >= 2) quadratic, (order >= 3) cubic terms of (dx, dy)."""
    feats = [1.0, dx, dy]
    if order >= 2:
        feats += [dx * dx, dx * dy, dy * dy]
    if order >= 3:
        feats += [dx * dx * dx, dx * dx * dy, dx * dy * dy, dy * dy * dy]
    return np.array(feats, dtype=float)


def polynomial_expand(x: Sequence[float], order: int) -> np.ndarray:
    """All monomials of x up to `order`, bias term first."""
    x = np.asarray(x, dtype=float).reshape(-1)
    terms = [1.0]
    for degree in range(1, order + 1):
        for combo in itertools.combinations_with_replacement(range(x.size), degree):
            terms.append(float(np.prod(x[list(combo)])))
    return np.array(terms, dtype=float)


def ridge_fit(X: np.ndarray, y: np.ndarray, lam: float) -> np.ndarray:
    """Solve (X^T X + lam*I) w = X^T y; column 0 is the unpenalised bias."""
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    n_features = X.shape[1]
    penalty = np.eye(n_features, dtype=np.float64)
    penalty[0, 0] = 0.0
    A = X.T @ X + lam * penalty
    b = X.T @ y
    try:
        return np.linalg.solve(A, b)
    except np.linalg.LinAlgError:
        logger.debug("ridge system singular (n=%d, k=%d); using pseudo-inverse", X.shape[0], n_features)
        return np.linalg.pinv(A) @ b


def angles_to_screen(yaw: float, pitch: float, config: RidgeConfig) -> Tuple[float, float]:
    """Linear angle-to-screen mapping; yaw > 0 is the user's right, pitch > 0 is up."""
    k = config.angular_span_screen / config.angular_span_deg
    return 0.5 + k * yaw, 0.5 - k * pitch


def screen_to_angles(u: float, v: float, config: RidgeConfig) -> Tuple[float, float]:
    """Inverse of angles_to_screen, used to label targets on the angular path."""
    k = config.angular_span_screen / config.angular_span_deg
    return (u - 0.5) / k, (0.5 - v) / k


class DefaultGainModel:
    """Fixed per-eye gains used before any calibration fit exists."""

    kind = "default"

    def __init__(self, config: Optional[RidgeConfig] = None) -> None:
        """Uncalibrated gains, mirrored in x between the eyes."""
        self.config = config or RidgeConfig()
        # x points toward the outer corner, which is the user's right for the left-indexed eye.
        self.gains = {
            "left": (self.config.default_kx, self.config.default_ky),
            "right": (-self.config.default_kx, self.config.default_ky),
        }

    def predict_angles(self, eye: str, dx: float, dy: float) -> Tuple[float, float]:
        """Fixed-gain eye angles for one eye."""
        kx, ky = self.gains[eye]
        return kx * dx, ky * dy

    def predict(self, features: GazeFeatures) -> Tuple[float, float]:
        """Average eye angles mapped to the screen."""
        return _angular_predict(self, features)


def _angular_predict(model, features: GazeFeatures) -> Tuple[float, float]:
    """Average the per-eye angles and map them to the screen."""
    angles = [model.predict_angles(eye, *features.eye(eye)) for eye in EYES]
    yaw = 0.5 * (angles[0][0] + angles[1][0])
    pitch = 0.5 * (angles[0][1] + angles[1][1])
    return angles_to_screen(yaw, pitch, model.config)


@dataclass
class AngularSample:
    """One labelled per-eye sample: zero-centred offset -> (yaw, pitch) in degrees."""

    dx: float
    dy: float
    yaw: float
    pitch: float


class AngularRidgeModel:
    """Per-eye polynomial ridge from rectified offset to gaze angles."""

    kind = "angular_ridge"

    def __init__(self, order: int, coeffs: Dict[str, Tuple[np.ndarray, np.ndarray]], config: RidgeConfig) -> None:
        """Store per-eye (yaw, pitch) weights."""
        self.order = order
        self.coeffs = coeffs
        self.config = config

    @classmethod
    def fit(
        cls,
        samples: Dict[str, List[AngularSample]],
        order: int = 1,
        config: Optional[RidgeConfig] = None,
    ) -> "AngularRidgeModel":
        """Ridge fit of eye angles from zeroed offsets, per eye."""
        config = config or RidgeConfig()
        if order not in (1, 2, 3):
            raise ValueError(f"angular order must be 1, 2 or 3, got {order}")
        need = min_samples_for_order(order, config)
        lam = ridge_lambda(order, config)
        coeffs = {}
        for eye in EYES:
            eye_samples = samples.get(eye, [])
            if len(eye_samples) < need:
                raise InsufficientSamplesError(
                    f"{eye} eye has {len(eye_samples)} samples, order {order} needs {need}"
                )
            X = np.stack([polynomial_features_2d(s.dx, s.dy, order) for s in eye_samples])
            w_yaw = ridge_fit(X, np.array([s.yaw for s in eye_samples]), lam)
            w_pitch = ridge_fit(X, np.array([s.pitch for s in eye_samples]), lam)
            coeffs[eye] = (w_yaw, w_pitch)
        logger.info("Fitted angular ridge model (order %d, lambda %.3g)", order, lam)
        return cls(order=order, coeffs=coeffs, config=config)

    def predict_angles(self, eye: str, dx: float, dy: float) -> Tuple[float, float]:
        """Fitted eye angles for one eye."""
        phi = polynomial_features_2d(dx, dy, self.order)
        w_yaw, w_pitch = self.coeffs[eye]
        return float(phi @ w_yaw), float(phi @ w_pitch)

    def predict(self, features: GazeFeatures) -> Tuple[float, float]:
        """Average eye angles mapped to the screen."""
        return _angular_predict(self, features)


class ScreenRidgeModel:
    """Two independent polynomial ridge fits, horizontal and vertical, over all features."""

    kind = "screen_ridge"

    HORIZONTAL = (0, 2, 4, 6, 7)  # L_x, R_x, head_yaw, aperture_L, aperture_R
    VERTICAL = (1, 3, 5, 6, 7)  # L_y, R_y, head_pitch, aperture_L, aperture_R

    def __init__(self, w_u: np.ndarray, w_v: np.ndarray, order: int, scales: FeatureScales) -> None:
        """Store the u and v weights and the scales they expect."""
        self.w_u = w_u
        self.w_v = w_v
        self.order = order
        self.scales = scales

    @classmethod
    def basis(cls, vec: np.ndarray, axis: str, order: int) -> np.ndarray:
        """Polynomial terms of the features that drive one screen axis."""
        idx = cls.HORIZONTAL if axis == "u" else cls.VERTICAL
        return polynomial_expand(vec[list(idx)], order)

    @classmethod
    def fit(
        cls,
        features: Sequence[GazeFeatures],
        labels: np.ndarray,
        order: int = 1,
        config: Optional[RidgeConfig] = None,
        scales: Optional[FeatureScales] = None,
    ) -> "ScreenRidgeModel":
        """Ridge fit of (u, v) straight from the feature vectors."""
        config = config or RidgeConfig()
        scales = scales or FeatureScales()
        labels = np.asarray(labels, dtype=float).reshape(-1, 2)
        vecs = [f.vector(scales) for f in features]
        n_terms = cls.basis(np.zeros(len(FEATURE_NAMES)), "u", order).size
        need = max(min_samples_for_order(order, config), 2)
        if len(vecs) < need or len(vecs) != labels.shape[0]:
            raise InsufficientSamplesError(
                f"screen model needs {need} labelled samples ({n_terms} terms), got {len(vecs)}"
            )
        lam = ridge_lambda(order, config)
        Xu = np.stack([cls.basis(v, "u", order) for v in vecs])
        Xv = np.stack([cls.basis(v, "v", order) for v in vecs])
        w_u = ridge_fit(Xu, labels[:, 0], lam)
        w_v = ridge_fit(Xv, labels[:, 1], lam)
        logger.info("Fitted screen ridge model on %d samples (%d terms per axis)", len(vecs), n_terms)
        return cls(w_u=w_u, w_v=w_v, order=order, scales=scales)

    def predict(self, features: GazeFeatures) -> Tuple[float, float]:
        """Fitted screen position."""
        vec = features.vector(self.scales)
        u = float(self.basis(vec, "u", self.order) @ self.w_u)
        v = float(self.basis(vec, "v", self.order) @ self.w_v)
        return u, v

    def describe(self) -> Dict[str, object]:
        """Weights and relative importance of the base terms, bias excluded."""
        report: Dict[str, object] = {"order": self.order}
        for axis, weights, idx in (("u", self.w_u, self.HORIZONTAL), ("v", self.w_v, self.VERTICAL)):
            names = [FEATURE_NAMES[i] for i in idx]
            base = np.abs(weights[1 : 1 + len(idx)])
            top = float(base.max()) if base.size and base.max() > 0 else 1.0
            report[axis] = {
                "bias": float(weights[0]),
                "weights": {name: float(w) for name, w in zip(names, weights[1 : 1 + len(idx)])},
                "importance": {
                    "iris": float((base[0] + base[1]) / (2.0 * top)),
                    "head": float(base[2] / top),
                    "aperture": float((base[3] + base[4]) / (2.0 * top)),
                },
            }
        return report
