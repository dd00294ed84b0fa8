"""
STEPSYNC Coach Service - Tuning

Every tolerance, counter and cooldown the pipeline uses, in one place.
"""

from dataclasses import dataclass
from typing import Optional

from core.config import Settings, settings as default_settings


@dataclass(frozen=True)
class CoachingTuning:
    """Immutable coaching constants consumed by the per-frame pipeline."""
    score_buffer_percent: float = 0.10
    score_buffer_percent_lenient: float = 0.15
    feedback_buffer_percent: float = 0.15
    feedback_buffer_percent_lenient: float = 0.20
    distance_buffer: float = 0.02
    visibility_threshold: float = 0.5
    smoothing_window: int = 5
    stable_frames_required: int = 10
    confirm_frames_required: int = 30
    feedback_cooldown_ms: int = 15000
    visibility_warning_cooldown_ms: int = 15000
    passing_score_fraction: float = 0.4
    improving_score_fraction: float = 0.3
    back_flat_penalty_factor: float = 0.7
    grace_period_ms: int = 5000
    speech_rate: float = 0.9
    speech_volume: float = 0.8
    video_duck_volume: float = 0.2

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CoachingTuning":
        """Build tuning from application settings (environment / .env)."""
        s = config or default_settings
        return cls(
            score_buffer_percent=s.SCORE_BUFFER_PERCENT,
            score_buffer_percent_lenient=s.SCORE_BUFFER_PERCENT_LENIENT,
            feedback_buffer_percent=s.FEEDBACK_BUFFER_PERCENT,
            feedback_buffer_percent_lenient=s.FEEDBACK_BUFFER_PERCENT_LENIENT,
            distance_buffer=s.DISTANCE_BUFFER,
            visibility_threshold=s.VISIBILITY_THRESHOLD,
            smoothing_window=s.SMOOTHING_WINDOW,
            stable_frames_required=s.STABLE_FRAMES_REQUIRED,
            confirm_frames_required=s.CONFIRM_FRAMES_REQUIRED,
            feedback_cooldown_ms=s.FEEDBACK_COOLDOWN_MS,
            visibility_warning_cooldown_ms=s.VISIBILITY_WARNING_COOLDOWN_MS,
            passing_score_fraction=s.PASSING_SCORE_FRACTION,
            improving_score_fraction=s.IMPROVING_SCORE_FRACTION,
            back_flat_penalty_factor=s.BACK_FLAT_PENALTY_FACTOR,
            grace_period_ms=s.GRACE_PERIOD_MS,
            speech_rate=s.SPEECH_RATE,
            speech_volume=s.SPEECH_VOLUME,
            video_duck_volume=s.VIDEO_DUCK_VOLUME,
        )
