import math

import numpy as np
import pytest

from face_pipeline.embedder import ARCFACE_TEMPLATE
from face_pipeline.errors import InvalidStateTransition
from face_pipeline.pose import estimate_pose
from face_pipeline.schemas import BoundingBox, FaceRecord, FaceState


def _rotate(points, degrees):
    theta = math.radians(degrees)
    rot = np.array([[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]])
    centre = points.mean(axis=0)
    return (points - centre) @ rot.T + centre


def test_frontal_template_is_near_zero_pose():
    pose = estimate_pose(ARCFACE_TEMPLATE.tolist())
    assert abs(pose.yaw) < 2
    assert abs(pose.pitch) < 2
    assert abs(pose.roll) < 1


def test_roll_follows_eye_line():
    pose = estimate_pose(_rotate(ARCFACE_TEMPLATE.astype(np.float64), 30).tolist())
    assert pose.roll == pytest.approx(30, abs=1.5)
    assert abs(pose.yaw) < 3


def test_nose_shift_reads_as_yaw():
    turned = ARCFACE_TEMPLATE.astype(np.float64).copy()
    turned[2, 0] += 12  # nose towards the image right
    assert estimate_pose(turned.tolist()).yaw > 20


def test_unusable_landmarks():
    assert estimate_pose(None) is None
    assert estimate_pose([[0, 0]] * 5) is None
    assert estimate_pose([[0, 0]] * 3) is None


def _face():
    return FaceRecord(photo_id=1, event_id=1, bbox=BoundingBox(left=0, top=0, width=10, height=10), score=0.9)


def test_happy_path_transitions():
    face = _face()
    for state in (FaceState.DETECTED, FaceState.EMBEDDED, FaceState.MATCHED):
        face.transition(state)
    assert face.state == FaceState.MATCHED


def test_embedding_failure_can_only_end_unmatched():
    face = _face().transition(FaceState.DETECTED).transition(FaceState.EMBEDDING_FAILED)
    with pytest.raises(InvalidStateTransition):
        face.transition(FaceState.MATCHED)
    face.transition(FaceState.UNMATCHED)


def test_terminal_states_only_allow_manual_resolution():
    face = _face().transition(FaceState.DETECTED).transition(FaceState.EMBEDDED).transition(FaceState.UNMATCHED)
    with pytest.raises(InvalidStateTransition):
        face.transition(FaceState.MATCHED)
    face.transition(FaceState.MANUALLY_RESOLVED)
    assert face.state == FaceState.MANUALLY_RESOLVED


def test_manual_resolution_from_any_state():
    for state in FaceState:
        face = _face()
        face.state = state
        face.transition(FaceState.MANUALLY_RESOLVED)
        assert face.state == FaceState.MANUALLY_RESOLVED
