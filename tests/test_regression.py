import numpy as np
import pytest

from pogtrack.features import FeatureScales, GazeFeatures
from pogtrack.regression import (
    AngularRidgeModel,
    AngularSample,
    DefaultGainModel,
    InsufficientSamplesError,
    RidgeConfig,
    ScreenRidgeModel,
    angles_to_screen,
    polynomial_expand,
    polynomial_features_2d,
    ridge_fit,
    screen_to_angles,
)


def _features(left=(0.0, 0.0), right=(0.0, 0.0), yaw=0.0, pitch=0.0, ap=(0.3, 0.3)):
    return GazeFeatures(
        zero_left=np.array(left, dtype=float),
        zero_right=np.array(right, dtype=float),
        head_yaw=yaw,
        head_pitch=pitch,
        aperture_left=ap[0],
        aperture_right=ap[1],
    )


def test_polynomial_term_counts():
    assert polynomial_features_2d(0.1, 0.2, 1).size == 3
    assert polynomial_features_2d(0.1, 0.2, 2).size == 6
    assert polynomial_features_2d(0.1, 0.2, 3).size == 10
    assert polynomial_expand(np.ones(5), 1).size == 6
    assert polynomial_expand(np.ones(5), 2).size == 21


def test_polynomial_expand_values():
    out = polynomial_expand([2.0, 3.0], 2)
    np.testing.assert_allclose(out, [1.0, 2.0, 3.0, 4.0, 6.0, 9.0])


def test_ridge_reproduces_noise_free_linear_data():
    rng = np.random.default_rng(0)
    x = rng.uniform(-1, 1, size=(40, 2))
    X = np.column_stack([np.ones(40), x])
    y = 2.0 + 3.0 * x[:, 0] - x[:, 1]

    w = ridge_fit(X, y, 1e-9)

    np.testing.assert_allclose(w, [2.0, 3.0, -1.0], atol=1e-6)


def test_ridge_singular_system_falls_back_to_pinv():
    w = ridge_fit(np.zeros((3, 2)), np.ones(3), 0.0)
    np.testing.assert_allclose(w, [0.0, 0.0])


def test_angular_ridge_symmetric_edges_predict_zero_at_centre():
    pts = [(-0.1, -0.1), (0.0, -0.1), (0.1, -0.1), (-0.1, 0.0), (0.1, 0.0), (-0.1, 0.1), (0.0, 0.1), (0.1, 0.1)]
    samples = {
        eye: [AngularSample(dx=dx, dy=dy, yaw=100.0 * dx, pitch=80.0 * dy) for dx, dy in pts]
        for eye in ("left", "right")
    }

    model = AngularRidgeModel.fit(samples, order=1)

    yaw, pitch = model.predict_angles("left", 0.0, 0.0)
    assert yaw == pytest.approx(0.0, abs=1e-9)
    assert pitch == pytest.approx(0.0, abs=1e-9)
    yaw, pitch = model.predict_angles("right", 0.1, 0.0)
    assert yaw == pytest.approx(10.0, abs=0.01)
    assert model.kind == "angular_ridge"


def test_angular_ridge_rejects_bad_order_and_few_samples():
    one = {eye: [AngularSample(0.0, 0.0, 0.0, 0.0)] for eye in ("left", "right")}
    with pytest.raises(InsufficientSamplesError):
        AngularRidgeModel.fit(one, order=1)
    with pytest.raises(ValueError):
        AngularRidgeModel.fit(one, order=4)

    five = {eye: [AngularSample(0.01 * i, 0.0, 0.0, 0.0) for i in range(5)] for eye in ("left", "right")}
    with pytest.raises(InsufficientSamplesError):
        AngularRidgeModel.fit(five, order=2)


def test_default_gains_agree_between_eyes():
    model = DefaultGainModel()
    # Gaze to the user's right: both irises shift to image left.
    u, v = model.predict(_features(left=(0.1, 0.0), right=(-0.1, 0.0)))
    assert u == pytest.approx(0.58)
    assert v == pytest.approx(0.5)

    # Gaze up moves the iris toward the upper lid.
    u, v = model.predict(_features(left=(0.0, 0.1), right=(0.0, 0.1)))
    assert u == pytest.approx(0.5)
    assert v < 0.5


def test_angle_screen_mapping_round_trip():
    config = RidgeConfig()
    assert angles_to_screen(0.0, 0.0, config) == (0.5, 0.5)
    assert angles_to_screen(10.0, 10.0, config) == pytest.approx((0.9, 0.1))
    yaw, pitch = screen_to_angles(*angles_to_screen(-4.0, 7.5, config), config)
    assert yaw == pytest.approx(-4.0)
    assert pitch == pytest.approx(7.5)


def test_screen_ridge_fit_and_describe():
    rng = np.random.default_rng(1)
    scales = FeatureScales()
    feats, labels = [], []
    for _ in range(60):
        f = _features(
            left=rng.uniform(-0.2, 0.2, 2),
            right=rng.uniform(-0.2, 0.2, 2),
            yaw=rng.uniform(-15, 15),
            pitch=rng.uniform(-15, 15),
            ap=rng.uniform(0.2, 0.4, 2),
        )
        vec = f.vector(scales)
        feats.append(f)
        labels.append((0.5 + 0.2 * vec[0] - 0.1 * vec[4], 0.5 + 0.3 * vec[1]))

    model = ScreenRidgeModel.fit(feats, np.array(labels), order=1, scales=scales)

    query = _features(left=(0.1, -0.05), yaw=6.0)
    vec = query.vector(scales)
    u, v = model.predict(query)
    assert u == pytest.approx(0.5 + 0.2 * vec[0] - 0.1 * vec[4], abs=0.01)
    assert v == pytest.approx(0.5 + 0.3 * vec[1], abs=0.01)

    report = model.describe()
    assert report["order"] == 1
    assert report["u"]["bias"] == pytest.approx(0.5, abs=0.01)
    assert report["u"]["weights"]["L_x"] == pytest.approx(0.2, abs=0.01)
    assert report["u"]["importance"]["head"] == pytest.approx(0.5, abs=0.05)
    assert report["v"]["importance"]["iris"] == pytest.approx(0.5, abs=0.05)


def test_screen_ridge_needs_enough_labelled_samples():
    with pytest.raises(InsufficientSamplesError):
        ScreenRidgeModel.fit([_features()], np.array([[0.5, 0.5]]))
    with pytest.raises(InsufficientSamplesError):
        ScreenRidgeModel.fit([_features()] * 3, np.array([[0.5, 0.5]] * 2))
