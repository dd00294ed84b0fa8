"""
STEPSYNC Coach Service Models

Real-time pose evaluation synchronized to a reference exercise video.
The MediaPipe detector adapter lives in `pose_detector` and is imported on demand.
"""

from .landmarks import (
    JointType,
    LandmarkPoint,
    PoseFrame,
    POSE_CONNECTIONS,
)

from .tuning import CoachingTuning

from .ruleset import (
    BackFlatRule,
    CameraDistance,
    MetricCriterion,
    RulesetLoadError,
    StepDefinition,
    ValidationRuleset,
    get_ruleset,
    load_ruleset,
    parse_ruleset,
    set_ruleset,
)

from .smoother import LandmarkSmoother
from .visibility import DistanceStatus, GateResult, VisibilityGate
from .metrics import MetricsExtractor, MetricsSnapshot, calculate_angle
from .evaluator import CriteriaEvaluator, EvaluationResult
from .feedback import FeedbackSelector, NotificationThrottle

from .progression import (
    CoachPhase,
    FrameOutcome,
    InstructionType,
    SessionState,
    StepProgressionStateMachine,
    VideoClockSnapshot,
    VideoCommand,
)

from .session import (
    CoachSession,
    CoachSessionHandler,
    get_session_handler,
)

from .reference_video import ReferenceVideo, resolve_reference_video

__all__ = [
    # Landmarks
    "JointType",
    "LandmarkPoint",
    "PoseFrame",
    "POSE_CONNECTIONS",
    # Configuration
    "CoachingTuning",
    "BackFlatRule",
    "CameraDistance",
    "MetricCriterion",
    "RulesetLoadError",
    "StepDefinition",
    "ValidationRuleset",
    "get_ruleset",
    "load_ruleset",
    "parse_ruleset",
    "set_ruleset",
    # Pipeline
    "LandmarkSmoother",
    "DistanceStatus",
    "GateResult",
    "VisibilityGate",
    "MetricsExtractor",
    "MetricsSnapshot",
    "calculate_angle",
    "CriteriaEvaluator",
    "EvaluationResult",
    "FeedbackSelector",
    "NotificationThrottle",
    # Progression
    "CoachPhase",
    "FrameOutcome",
    "InstructionType",
    "SessionState",
    "StepProgressionStateMachine",
    "VideoClockSnapshot",
    "VideoCommand",
    # Session
    "CoachSession",
    "CoachSessionHandler",
    "get_session_handler",
    # Reference video
    "ReferenceVideo",
    "resolve_reference_video",
]
