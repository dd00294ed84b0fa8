"""
STEPSYNC Coach Service - Feedback

Picks one correction for a failing frame and decides when a message may
actually be surfaced to the user.
"""

from enum import Enum
from typing import List, Optional, Tuple

from .evaluator import buffered_range, is_knee_metric
from .metrics import MetricsSnapshot
from .ruleset import MetricCriterion, StepDefinition
from .tuning import CoachingTuning


BACK_FLAT_MESSAGE = "⚠️ Lie down flat! Keep your back flat on the ground!"


class RangeStatus(str, Enum):
    TOO_LOW = "too_low"
    TOO_HIGH = "too_high"


# (metric, message when too low, message when too high), in priority order
_DIRECTIONAL_RULES: List[Tuple[str, str, str]] = [
    ("left_knee_angle", "Bend your left knee more!", "Straighten your left knee!"),
    ("right_knee_angle", "Bend your right knee more!", "Straighten your right knee!"),
    ("ankle_height", "Raise your legs higher!", "Lower your legs slightly!"),
    ("knee_height", "Raise your knees higher!", "Lower your knees slightly!"),
]

# (metric, message when outside the range either way), in priority order
_ADJUST_RULES: List[Tuple[str, str]] = [
    ("left_hip_angle", "Adjust your left hip position!"),
    ("right_hip_angle", "Adjust your right hip position!"),
    ("left_ankle_angle", "Adjust your left ankle position!"),
    ("right_ankle_angle", "Adjust your right ankle position!"),
    ("left_elbow_angle", "Adjust your left arm position!"),
    ("right_elbow_angle", "Adjust your right arm position!"),
    ("left_shoulder_angle", "Adjust your left shoulder position!"),
    ("right_shoulder_angle", "Adjust your right shoulder position!"),
]


class FeedbackSelector:
    """
    Priority-ordered correction rules.

    Feedback buffers are wider than the scoring buffers, so a user who passes
    but is not perfect is not nagged.
    """

    def __init__(self, tuning: Optional[CoachingTuning] = None):
        self.tuning = tuning or CoachingTuning()

    def _buffer_percent(self, metric: str) -> float:
        if is_knee_metric(metric):
            return self.tuning.feedback_buffer_percent_lenient
        return self.tuning.feedback_buffer_percent

    def range_status(
        self,
        metric: str,
        value: float,
        criterion: Optional[MetricCriterion]
    ) -> Optional[RangeStatus]:
        if criterion is None:
            return None
        low, high = buffered_range(criterion, self._buffer_percent(metric))
        if value < low:
            return RangeStatus.TOO_LOW
        if value > high:
            return RangeStatus.TOO_HIGH
        return None

    def select(self, metrics: MetricsSnapshot, step: StepDefinition) -> str:
        """First applicable correction for the step, or "" when nothing applies."""
        if step.requires_flat_back and metrics.back_flatness_deviation > step.back_flat.max_deviation:
            return BACK_FLAT_MESSAGE

        criteria = step.criteria

        for metric, too_low, too_high in _DIRECTIONAL_RULES:
            status = self.range_status(metric, metrics.value(metric), criteria.get(metric))
            if status == RangeStatus.TOO_LOW:
                return too_low
            if status == RangeStatus.TOO_HIGH:
                return too_high

        for metric, message in _ADJUST_RULES:
            if self.range_status(metric, metrics.value(metric), criteria.get(metric)):
                return message

        return ""


class NotificationThrottle:
    """
    Wall-clock rate limits for spoken corrections and positioning warnings.

    Timestamps are in seconds; cooldowns are configured in milliseconds.
    """

    def __init__(self, tuning: Optional[CoachingTuning] = None):
        self.tuning = tuning or CoachingTuning()

    @staticmethod
    def _elapsed(last: Optional[float], now: float, cooldown_ms: int) -> bool:
        if last is None:
            return True
        return (now - last) * 1000.0 > cooldown_ms

    def allow_feedback(self, last: Optional[float], now: float) -> bool:
        return self._elapsed(last, now, self.tuning.feedback_cooldown_ms)

    def allow_visibility_warning(self, last: Optional[float], now: float) -> bool:
        return self._elapsed(last, now, self.tuning.visibility_warning_cooldown_ms)
