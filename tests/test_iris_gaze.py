import numpy as np
import pytest

from pogtrack.eye_frames import canonical_eye_frames
from pogtrack.head_pose import Pose, RigidPoseEstimator
from pogtrack.iris_gaze import IrisRectifier, RectifiedOffsets, get_iris_centers

from synthetic import head_model, make_face, rot_x, rot_y


def test_centred_iris_rectifies_to_zero(face):
    offsets = IrisRectifier().rectify(face, Pose(R=np.eye(3), t=np.array([320.0, 240.0, 0.0])))

    np.testing.assert_allclose(offsets.left, [0.0, 0.0], atol=1e-9)
    np.testing.assert_allclose(offsets.right, [0.0, 0.0], atol=1e-9)


def test_offset_signs_follow_eye_axes():
    pose = Pose(R=np.eye(3), t=np.array([320.0, 240.0, 0.0]))
    # Iris moves toward image left and up by 5 px; eye width is 50.
    offsets = IrisRectifier().rectify(make_face(iris=(-5.0, -5.0)), pose)

    # Left-indexed eye's x axis points to its outer corner at image left.
    np.testing.assert_allclose(offsets.left, [0.1, 0.1], atol=1e-9)
    np.testing.assert_allclose(offsets.right, [-0.1, 0.1], atol=1e-9)


def test_rectified_offset_is_pose_invariant():
    est = RigidPoseEstimator()
    rectifier = IrisRectifier()
    anchor = make_face(iris=(4.0, -3.0))
    template = est.pick_template_points(anchor)
    anchor_pose = est.estimate(template, template)
    canonical = canonical_eye_frames(anchor, anchor_pose)
    ref = rectifier.rectify(anchor, anchor_pose, canonical)

    for R in (rot_y(20.0), rot_x(-15.0), rot_y(-25.0) @ rot_x(10.0)):
        moved = make_face(R=R, t=(380.0, 210.0, 25.0), iris=(4.0, -3.0))
        pose = est.estimate(template, est.pick_template_points(moved))
        offsets = rectifier.rectify(moved, pose, canonical)
        np.testing.assert_allclose(offsets.left, ref.left, atol=1e-6)
        np.testing.assert_allclose(offsets.right, ref.right, atol=1e-6)


def test_no_pose_gives_none(face):
    assert IrisRectifier().rectify(face, None) is None


def test_truncated_mesh_gives_none():
    landmarks = head_model()[:468]
    assert IrisRectifier().rectify(landmarks, Pose.identity()) is None
    assert get_iris_centers(landmarks) is None


def test_raw_iris_centres(face):
    centres = get_iris_centers(face)
    np.testing.assert_allclose(centres["left"], face[468])
    np.testing.assert_allclose(centres["right"], face[473])


def test_baseline_mean_and_zero_centring():
    a = RectifiedOffsets(left=np.array([0.1, 0.0]), right=np.array([0.3, 0.2]))
    b = RectifiedOffsets(left=np.array([0.3, 0.2]), right=np.array([0.1, 0.0]))
    mean = RectifiedOffsets.mean([a, b])

    np.testing.assert_allclose(mean.left, [0.2, 0.1])
    zeroed = a.minus(mean)
    np.testing.assert_allclose(zeroed.left, [-0.1, -0.1])
    np.testing.assert_allclose(zeroed["right"], [0.1, 0.1])
