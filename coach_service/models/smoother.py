"""
STEPSYNC Coach Service - Landmark Smoother

Sliding-window average over the most recent detector frames.
"""

from collections import deque
from typing import Deque, Dict, Optional

import numpy as np

from .landmarks import LandmarkPoint, PoseFrame


class LandmarkSmoother:
    """
    Running mean of x/y/z over the last `window` frames.

    Visibility is not averaged: the output carries the newest frame's
    visibility so the positioning gate keeps reacting to the live signal.
    """

    def __init__(self, window: int = 5):
        if window < 1:
            raise ValueError("smoothing window must be at least 1")
        self.window = window
        self._frames: Deque[PoseFrame] = deque(maxlen=window)

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def is_ready(self) -> bool:
        return len(self._frames) >= self.window

    def push(self, frame: PoseFrame) -> Optional[PoseFrame]:
        """Add a frame; return the smoothed frame once the window is full."""
        self._frames.append(frame)
        if not self.is_ready:
            return None

        smoothed: Dict[int, LandmarkPoint] = {}
        for idx, current in frame.landmarks.items():
            coords = np.array([
                [lm.x, lm.y, lm.z]
                for lm in (f.landmarks.get(idx) for f in self._frames)
                if lm is not None
            ])
            mean_x, mean_y, mean_z = coords.mean(axis=0)
            smoothed[idx] = LandmarkPoint(
                x=float(mean_x),
                y=float(mean_y),
                z=float(mean_z),
                visibility=current.visibility,
            )

        return PoseFrame(landmarks=smoothed, timestamp=frame.timestamp)

    def reset(self):
        self._frames.clear()
