"""
STEPSYNC Coach Service - Metrics Extractor

Turns one (smoothed) pose frame into the named biomechanical scalars the
ruleset criteria refer to: bilateral joint angles, landmark heights and the
back-flatness deviation.
"""

import math
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Tuple

from .landmarks import JointType, LandmarkPoint, PoseFrame, average_y


ANGLE_METRICS: Tuple[str, ...] = (
    "left_hip_angle",
    "right_hip_angle",
    "left_knee_angle",
    "right_knee_angle",
    "left_ankle_angle",
    "right_ankle_angle",
    "left_elbow_angle",
    "right_elbow_angle",
    "left_shoulder_angle",
    "right_shoulder_angle",
)

HEIGHT_METRICS: Tuple[str, ...] = (
    "ankle_height",
    "knee_height",
    "hip_height",
    "shoulder_height",
)

METRIC_NAMES: Tuple[str, ...] = ANGLE_METRICS + HEIGHT_METRICS

# (first ray end, vertex, second ray end) per side
_ANGLE_JOINTS: Dict[str, Tuple[str, str, str]] = {
    "hip": ("SHOULDER", "HIP", "KNEE"),
    "knee": ("HIP", "KNEE", "ANKLE"),
    "ankle": ("KNEE", "ANKLE", "FOOT_INDEX"),
    "elbow": ("SHOULDER", "ELBOW", "WRIST"),
    "shoulder": ("HIP", "SHOULDER", "ELBOW"),
}


@dataclass(frozen=True)
class MetricsSnapshot:
    """Extracted scalars for one frame."""
    left_hip_angle: float = 0.0
    right_hip_angle: float = 0.0
    left_knee_angle: float = 0.0
    right_knee_angle: float = 0.0
    left_ankle_angle: float = 0.0
    right_ankle_angle: float = 0.0
    left_elbow_angle: float = 0.0
    right_elbow_angle: float = 0.0
    left_shoulder_angle: float = 0.0
    right_shoulder_angle: float = 0.0
    ankle_height: float = 0.0
    knee_height: float = 0.0
    hip_height: float = 0.0
    shoulder_height: float = 0.0
    back_flatness_deviation: float = 1.0

    def value(self, metric: str) -> Optional[float]:
        """Value of a criterion metric by name, None for unknown names."""
        if metric not in METRIC_NAMES:
            return None
        return getattr(self, metric)

    def to_dict(self) -> Dict[str, float]:
        return {k: round(v, 4) for k, v in asdict(self).items()}


def calculate_angle(a: LandmarkPoint, b: LandmarkPoint, c: LandmarkPoint) -> float:
    """
    Interior angle at vertex b formed by rays b->a and b->c.

    Uses the difference of the two image-plane bearings, so the result is
    always in [0, 180] and symmetric in a and c.

    Returns:
        Angle in degrees
    """
    radians = math.atan2(c.y - b.y, c.x - b.x) - math.atan2(a.y - b.y, a.x - b.x)
    angle = abs(math.degrees(radians))
    if angle > 180.0:
        angle = 360.0 - angle
    return angle


def back_flatness_deviation(frame: PoseFrame) -> float:
    """
    Heuristic "not lying flat" score. 0 is flat; larger is worse.

    Sitting up (shoulders above hips on screen) is penalized twice over so a
    seated torso never passes as a flat back. Returns 1.0 if a shoulder or hip
    is missing.
    """
    l_shoulder = frame.get(JointType.LEFT_SHOULDER)
    r_shoulder = frame.get(JointType.RIGHT_SHOULDER)
    l_hip = frame.get(JointType.LEFT_HIP)
    r_hip = frame.get(JointType.RIGHT_HIP)

    if l_shoulder is None or r_shoulder is None or l_hip is None or r_hip is None:
        return 1.0

    avg_shoulder_y = (l_shoulder.y + r_shoulder.y) / 2
    avg_hip_y = (l_hip.y + r_hip.y) / 2

    vertical_deviation = abs(avg_shoulder_y - avg_hip_y)
    shoulder_tilt = abs(l_shoulder.y - r_shoulder.y)
    hip_tilt = abs(l_hip.y - r_hip.y)

    # Image y grows downward: smaller y means higher on screen
    sitting_penalty = (avg_hip_y - avg_shoulder_y) * 2 if avg_shoulder_y < avg_hip_y else 0.0

    return max(
        vertical_deviation + sitting_penalty,
        shoulder_tilt * 0.5,
        hip_tilt * 0.5,
    )


class MetricsExtractor:
    """Stateless frame -> MetricsSnapshot conversion."""

    @staticmethod
    def joint_angle(frame: PoseFrame, side: str, joint: str) -> float:
        """Angle for one side ("left"/"right") and joint, 0.0 if a point is missing."""
        prefix = side.upper()
        points = [frame.get(JointType[f"{prefix}_{name}"]) for name in _ANGLE_JOINTS[joint]]
        if any(p is None for p in points):
            return 0.0
        return calculate_angle(*points)

    @staticmethod
    def height(frame: PoseFrame, part: str) -> float:
        """Average y of the left/right landmark pair, whichever is present."""
        return average_y((
            frame.get(JointType[f"LEFT_{part.upper()}"]),
            frame.get(JointType[f"RIGHT_{part.upper()}"]),
        ))

    def extract(self, frame: PoseFrame) -> MetricsSnapshot:
        values: Dict[str, float] = {}

        for joint in _ANGLE_JOINTS:
            for side in ("left", "right"):
                values[f"{side}_{joint}_angle"] = self.joint_angle(frame, side, joint)

        for part in ("ankle", "knee", "hip", "shoulder"):
            values[f"{part}_height"] = self.height(frame, part)

        values["back_flatness_deviation"] = back_flatness_deviation(frame)
        return MetricsSnapshot(**values)
