"""
STEPSYNC Coach Service - Pose Detector

MediaPipe PoseLandmarker adapter: encoded camera image in, PoseFrame out.
The coaching pipeline only consumes the frames; it never controls the model.
"""

import logging
import threading
from typing import Optional

import cv2
import numpy as np
import mediapipe as mp
from mediapipe.tasks import python as mp_python
from mediapipe.tasks.python import vision

from .landmarks import LandmarkPoint, PoseFrame

logger = logging.getLogger(__name__)


class PoseDetector:
    """Single-person landmark detection in VIDEO running mode."""

    def __init__(self, model_path: str, min_confidence: float = 0.5):
        """
        Initialize pose detector.

        Args:
            model_path: Path to a MediaPipe pose landmarker .task bundle
            min_confidence: Detection / tracking confidence floor
        """
        base_options = mp_python.BaseOptions(model_asset_path=model_path)
        options = vision.PoseLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.VIDEO,
            num_poses=1,
            min_pose_detection_confidence=min_confidence,
            min_pose_presence_confidence=min_confidence,
            min_tracking_confidence=min_confidence,
        )
        self._landmarker = vision.PoseLandmarker.create_from_options(options)
        self._last_timestamp_ms = -1
        # detect() runs in worker threads; close() may arrive from the event loop
        self._lock = threading.Lock()
        logger.info(f"✅ MediaPipe pose landmarker initialized from {model_path}")

    @staticmethod
    def decode_image(data: bytes) -> Optional[np.ndarray]:
        """Decode JPEG/PNG bytes to an RGB array, None if undecodable."""
        nparr = np.frombuffer(data, np.uint8)
        frame = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
        if frame is None:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def detect(self, image_bytes: bytes, timestamp_ms: float) -> Optional[PoseFrame]:
        """
        Detect pose landmarks in an encoded image.

        Returns:
            PoseFrame, or None when the image is invalid or no body was found
        """
        rgb = self.decode_image(image_bytes)
        if rgb is None:
            logger.debug("Received undecodable image frame")
            return None

        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
        with self._lock:
            if self._landmarker is None:
                return None
            # VIDEO mode requires strictly increasing timestamps
            ts = max(int(timestamp_ms), self._last_timestamp_ms + 1)
            self._last_timestamp_ms = ts
            result = self._landmarker.detect_for_video(image, ts)

        if not result.pose_landmarks:
            return None

        points = [
            LandmarkPoint(
                x=lm.x,
                y=lm.y,
                z=lm.z,
                visibility=lm.visibility if lm.visibility is not None else 0.0,
            )
            for lm in result.pose_landmarks[0]
        ]
        return PoseFrame.from_sequence(points, timestamp=ts / 1000.0)

    def close(self):
        with self._lock:
            if self._landmarker is not None:
                self._landmarker.close()
                self._landmarker = None


# ═══════════════════════════════════════════════════════════════════════════════
# FACTORY
# ═══════════════════════════════════════════════════════════════════════════════

def create_pose_detector() -> PoseDetector:
    """
    Create a detector for one coaching session.

    VIDEO mode tracks a single person across frames, so every session gets
    its own landmarker and timestamp sequence.
    """
    from core.config import settings
    return PoseDetector(settings.POSE_MODEL_PATH)
