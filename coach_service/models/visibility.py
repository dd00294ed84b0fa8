"""
STEPSYNC Coach Service - Visibility Gate

Decides per raw frame whether the body is usable for scoring: the key joints
must be confidently detected and the subject must stand at a workable
distance from the camera.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .landmarks import JointType, PoseFrame
from .ruleset import CameraDistance


# Shoulders, hips and knees. Ankles are often cropped when lying down.
REQUIRED_JOINTS: Tuple[JointType, ...] = (
    JointType.LEFT_SHOULDER,
    JointType.RIGHT_SHOULDER,
    JointType.LEFT_HIP,
    JointType.RIGHT_HIP,
    JointType.LEFT_KNEE,
    JointType.RIGHT_KNEE,
)

DISTANCE_JOINTS: Tuple[JointType, ...] = (
    JointType.LEFT_SHOULDER,
    JointType.RIGHT_SHOULDER,
    JointType.LEFT_HIP,
    JointType.RIGHT_HIP,
)


class DistanceStatus(str, Enum):
    TOO_CLOSE = "too_close"
    TOO_FAR = "too_far"
    GOOD = "good"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GateResult:
    visible: bool
    distance: DistanceStatus
    average_z: float = 0.0

    @property
    def distance_ok(self) -> bool:
        return self.distance in (DistanceStatus.GOOD, DistanceStatus.UNKNOWN)

    @property
    def passed(self) -> bool:
        return self.visible and self.distance_ok


class VisibilityGate:
    """Body-visibility and camera-distance check on the raw detector frame."""

    def __init__(
        self,
        ideal_distance: Optional[CameraDistance] = None,
        visibility_threshold: float = 0.5,
        distance_buffer: float = 0.02
    ):
        self.ideal_distance = ideal_distance
        self.visibility_threshold = visibility_threshold
        self.distance_buffer = distance_buffer

    def is_body_visible(self, frame: PoseFrame) -> bool:
        for joint in REQUIRED_JOINTS:
            landmark = frame.get(joint)
            if landmark is None or landmark.visibility < self.visibility_threshold:
                return False
        return True

    @staticmethod
    def average_depth(frame: PoseFrame) -> Optional[float]:
        """Mean z over the shoulders and hips that are present."""
        zs = [frame.get(j).z for j in DISTANCE_JOINTS if frame.has(j)]
        if not zs:
            return None
        return sum(zs) / len(zs)

    def classify_distance(self, avg_z: Optional[float]) -> DistanceStatus:
        if self.ideal_distance is None or avg_z is None:
            return DistanceStatus.UNKNOWN
        if avg_z < self.ideal_distance.min_z - self.distance_buffer:
            return DistanceStatus.TOO_CLOSE
        if avg_z > self.ideal_distance.max_z + self.distance_buffer:
            return DistanceStatus.TOO_FAR
        return DistanceStatus.GOOD

    def evaluate(self, frame: PoseFrame) -> GateResult:
        avg_z = self.average_depth(frame)
        return GateResult(
            visible=self.is_body_visible(frame),
            distance=self.classify_distance(avg_z),
            average_z=avg_z if avg_z is not None else 0.0,
        )
