"""
Rough head pose from the 5 detector landmarks.

Landmark order: eye (image left), eye (image right), nose tip,
mouth corner (image left), mouth corner (image right).

This is a geometric estimate, not a 3D fit. It is good enough to tell a
frontal face from a profile or a strongly tilted one, which is all the
stored yaw/pitch/roll are used for.
"""

import math
from typing import Optional, Sequence

import numpy as np

from .schemas import HeadPose

# Relative nose height between the eye line and the mouth line on the
# 112x112 ArcFace template (frontal face)
FRONTAL_NOSE_RATIO = (71.7366 - 51.6) / (92.285 - 51.6)


def estimate_pose(landmarks: Optional[Sequence[Sequence[float]]]) -> Optional[HeadPose]:
    """Estimate yaw/pitch/roll in degrees, or None if the landmarks are unusable."""
    if landmarks is None:
        return None
    pts = np.asarray(landmarks, dtype=np.float64)
    if pts.shape != (5, 2) or not np.all(np.isfinite(pts)):
        return None

    left_eye, right_eye, nose, left_mouth, right_mouth = pts
    eye_vec = right_eye - left_eye
    iod = float(np.hypot(eye_vec[0], eye_vec[1]))
    if iod < 1e-6:
        return None

    roll = math.degrees(math.atan2(eye_vec[1], eye_vec[0]))

    # Undo roll around the eye midpoint so yaw/pitch are measured upright
    eye_mid = (left_eye + right_eye) / 2.0
    theta = -math.radians(roll)
    rot = np.array([[math.cos(theta), -math.sin(theta)], [math.sin(theta), math.cos(theta)]])
    upright = (pts - eye_mid) @ rot.T
    nose_u = upright[2]
    mouth_mid = (upright[3] + upright[4]) / 2.0

    if mouth_mid[1] <= 1e-6:
        return None

    axis_x = mouth_mid[0] / 2.0  # eye midpoint is the origin
    yaw_sin = np.clip((nose_u[0] - axis_x) / (iod / 2.0), -1.0, 1.0)
    yaw = math.degrees(math.asin(float(yaw_sin)))

    ratio = nose_u[1] / mouth_mid[1]
    pitch_sin = np.clip((ratio - FRONTAL_NOSE_RATIO) / 0.5, -1.0, 1.0)
    pitch = math.degrees(math.asin(float(pitch_sin)))

    return HeadPose(yaw=round(yaw, 2), pitch=round(pitch, 2), roll=round(roll, 2))
