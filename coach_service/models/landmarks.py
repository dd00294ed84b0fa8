"""
STEPSYNC Coach Service - Landmark Types

Body keypoint value objects shared by every stage of the per-frame pipeline.
Indices follow the 33-point MediaPipe Pose topology.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from enum import Enum


NUM_LANDMARKS = 33


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS AND DATA CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

class JointType(Enum):
    """Body joint indices for pose landmarks."""
    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32


# Skeleton topology handed to the rendering surface (pairs of landmark indices)
POSE_CONNECTIONS: Tuple[Tuple[int, int], ...] = (
    (0, 1), (1, 2), (2, 3), (3, 7), (0, 4), (4, 5), (5, 6), (6, 8),
    (9, 10),
    (11, 12), (11, 13), (13, 15), (15, 17), (15, 19), (15, 21), (17, 19),
    (12, 14), (14, 16), (16, 18), (16, 20), (16, 22), (18, 20),
    (11, 23), (12, 24), (23, 24),
    (23, 25), (24, 26), (25, 27), (26, 28),
    (27, 29), (28, 30), (29, 31), (30, 32), (27, 31), (28, 32),
)


@dataclass(frozen=True)
class LandmarkPoint:
    """A single pose landmark with normalized coordinates and visibility."""
    x: float
    y: float
    z: float = 0.0
    visibility: float = 1.0

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z, "visibility": self.visibility}


@dataclass(frozen=True)
class PoseFrame:
    """
    One detector result: landmarks keyed by JointType index.

    Indices the detector did not report are simply absent.
    """
    landmarks: Mapping[int, LandmarkPoint] = field(default_factory=dict)
    timestamp: float = 0.0

    def get(self, joint: JointType) -> Optional[LandmarkPoint]:
        return self.landmarks.get(joint.value)

    def has(self, joint: JointType) -> bool:
        return joint.value in self.landmarks

    def __len__(self) -> int:
        return len(self.landmarks)

    @classmethod
    def from_sequence(
        cls,
        points: Sequence[Optional[Any]],
        timestamp: float = 0.0
    ) -> "PoseFrame":
        """
        Build a frame from an ordered landmark list.

        Entries may be LandmarkPoint instances, dicts with x/y/z/visibility
        keys, or None for a dropped landmark. Entries past index 32 are ignored.
        """
        landmarks: Dict[int, LandmarkPoint] = {}
        for idx, point in enumerate(points[:NUM_LANDMARKS]):
            if point is None:
                continue
            if isinstance(point, LandmarkPoint):
                landmarks[idx] = point
            else:
                landmarks[idx] = LandmarkPoint(
                    x=float(point["x"]),
                    y=float(point["y"]),
                    z=float(point.get("z", 0.0)),
                    visibility=float(point.get("visibility", 1.0)),
                )
        return cls(landmarks=landmarks, timestamp=timestamp)

    def to_list(self) -> List[Optional[Dict[str, float]]]:
        """Ordered 33-element list, None where a landmark is missing."""
        return [
            self.landmarks[idx].to_dict() if idx in self.landmarks else None
            for idx in range(NUM_LANDMARKS)
        ]


def average_y(points: Iterable[Optional[LandmarkPoint]]) -> float:
    """Mean y of the present points, 0.0 when none are present."""
    ys = [p.y for p in points if p is not None]
    if not ys:
        return 0.0
    return sum(ys) / len(ys)
