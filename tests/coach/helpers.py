"""
Synthetic pose builders shared by the coach service tests.

Poses are laid out side-on, as a person lying on the floor is seen from the
camera: shoulders on the left of the image, knees and feet to the right.
"""

import math
from typing import Any, Dict, Optional

from coach_service.models import (
    CoachingTuning,
    JointType,
    LandmarkPoint,
    PoseFrame,
    ValidationRuleset,
    parse_ruleset,
)


# Small counters so a whole session fits in a handful of frames
FAST_TUNING = CoachingTuning(
    smoothing_window=1,
    confirm_frames_required=3,
    stable_frames_required=2,
    grace_period_ms=0,
)


def ankle_for_knee_angle(knee: LandmarkPoint, angle: float, length: float = 0.1, **kwargs) -> LandmarkPoint:
    """Place an ankle so the hip-knee-ankle angle equals `angle` degrees."""
    # The knee->hip ray points along -x; rotate away from it by `angle`
    bearing = math.radians(180.0 - angle)
    return LandmarkPoint(
        x=knee.x + length * math.cos(bearing),
        y=knee.y + length * math.sin(bearing),
        **kwargs
    )


def make_pose(
    knee_angle: float = 90.0,
    shoulder_y: float = 0.5,
    hip_y: float = 0.5,
    visibility: float = 0.9,
    z: float = -0.2,
    timestamp: float = 0.0,
    drop: tuple = ()
) -> PoseFrame:
    """
    Build a full-body frame with both knees bent to `knee_angle`.

    Args:
        shoulder_y / hip_y: Equal values give a flat back
        visibility: Visibility assigned to every landmark
        z: Depth of every landmark (drives the camera distance check)
        drop: JointTypes to leave out of the frame
    """
    common = {"z": z, "visibility": visibility}
    hip = LandmarkPoint(x=0.5, y=hip_y, **common)
    knee = LandmarkPoint(x=0.6, y=hip_y, **common)
    ankle = ankle_for_knee_angle(knee, knee_angle, **common)

    points: Dict[JointType, LandmarkPoint] = {}
    for side in ("LEFT", "RIGHT"):
        points[JointType[f"{side}_SHOULDER"]] = LandmarkPoint(x=0.3, y=shoulder_y, **common)
        points[JointType[f"{side}_ELBOW"]] = LandmarkPoint(x=0.3, y=shoulder_y + 0.1, **common)
        points[JointType[f"{side}_WRIST"]] = LandmarkPoint(x=0.35, y=shoulder_y + 0.15, **common)
        points[JointType[f"{side}_HIP"]] = hip
        points[JointType[f"{side}_KNEE"]] = knee
        points[JointType[f"{side}_ANKLE"]] = ankle
        points[JointType[f"{side}_FOOT_INDEX"]] = LandmarkPoint(x=ankle.x + 0.02, y=ankle.y - 0.03, **common)

    landmarks = {joint.value: point for joint, point in points.items() if joint not in drop}
    return PoseFrame(landmarks=landmarks, timestamp=timestamp)


def knee_step(number: int, start: float, end: float, low: float, high: float, **extra) -> Dict[str, Any]:
    """Step dict judged only on both knee angles."""
    step = {
        "step_number": number,
        "step_name": f"step_{number}",
        "start_time": start,
        "end_time": end,
        "criteria": {
            "left_knee_angle": {"min": low, "max": high},
            "right_knee_angle": {"min": low, "max": high},
        },
    }
    step.update(extra)
    return step


def make_ruleset(*steps: Dict[str, Any], camera: Optional[Dict[str, float]] = None) -> ValidationRuleset:
    data: Dict[str, Any] = {"exercise_name": "Test Exercise", "steps": list(steps)}
    if camera is not None:
        data["ideal_camera_distance"] = camera
    return parse_ruleset(data)
