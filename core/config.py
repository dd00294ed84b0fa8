"""
STEPSYNC Configuration

Environment variables and application settings.
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "STEPSYNC"
    DEBUG: bool = True

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8080"]

    # Local Storage
    LOCAL_MEDIA_PATH: str = "media"

    # Exercise ruleset (JSON) loaded once per process
    RULESET_PATH: str = "coach_service/rules/validation_rules.json"

    # Reference video lookup
    VIDEO_DIR: str = "media/videos"
    VIDEO_CANDIDATES: List[str] = ["a4.mov", "exercise.mp4", "demo.mp4", "video.mp4"]

    # MediaPipe PoseLandmarker model bundle
    POSE_MODEL_PATH: str = "ml_models/pose_landmarker_full.task"

    # Scoring tolerances (fraction of each criterion's min..max range)
    SCORE_BUFFER_PERCENT: float = 0.10
    SCORE_BUFFER_PERCENT_LENIENT: float = 0.15  # knee angles
    FEEDBACK_BUFFER_PERCENT: float = 0.15
    FEEDBACK_BUFFER_PERCENT_LENIENT: float = 0.20  # knee angles
    PASSING_SCORE_FRACTION: float = 0.4
    IMPROVING_SCORE_FRACTION: float = 0.3
    BACK_FLAT_PENALTY_FACTOR: float = 0.7

    # Positioning gate
    DISTANCE_BUFFER: float = 0.02
    VISIBILITY_THRESHOLD: float = 0.5

    # Frame counters
    SMOOTHING_WINDOW: int = 5
    STABLE_FRAMES_REQUIRED: int = 10
    CONFIRM_FRAMES_REQUIRED: int = 30

    # Timing (milliseconds)
    FEEDBACK_COOLDOWN_MS: int = 15000
    VISIBILITY_WARNING_COOLDOWN_MS: int = 15000
    GRACE_PERIOD_MS: int = 5000

    # Speech
    SPEECH_RATE: float = 0.9
    SPEECH_VOLUME: float = 0.8
    VIDEO_DUCK_VOLUME: float = 0.2

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
