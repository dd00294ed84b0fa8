"""
STEPSYNC Coach Service - Criteria Evaluator

Scores a metrics snapshot against the acceptable ranges of one step.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .metrics import METRIC_NAMES, MetricsSnapshot
from .ruleset import MetricCriterion, StepDefinition
from .tuning import CoachingTuning


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of scoring one frame against one step."""
    score: int
    max_score: int
    metrics: MetricsSnapshot
    passed: bool
    back_flat_failed: bool = False

    @property
    def ratio(self) -> float:
        return self.score / self.max_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "max_score": self.max_score,
            "passed": self.passed,
            "back_flat_failed": self.back_flat_failed,
            "metrics": self.metrics.to_dict(),
        }


def is_knee_metric(metric: str) -> bool:
    return metric.endswith("knee_angle")


def buffered_range(criterion: MetricCriterion, buffer_percent: float) -> Tuple[float, float]:
    """Criterion window widened by buffer_percent of its width on each side."""
    buffer = (criterion.max - criterion.min) * buffer_percent
    return criterion.min - buffer, criterion.max + buffer


def in_range(value: float, criterion: MetricCriterion, buffer_percent: float) -> bool:
    low, high = buffered_range(criterion, buffer_percent)
    return low <= value <= high


class CriteriaEvaluator:
    """
    Tolerant range scoring for a single step.

    Knee angles get the lenient buffer: knee flexion is the least reliable
    joint under typical camera angles. A required flat back that fails cuts
    the accumulated score instead of costing a single point.
    """

    def __init__(self, tuning: Optional[CoachingTuning] = None):
        self.tuning = tuning or CoachingTuning()

    def buffer_percent(self, metric: str) -> float:
        if is_knee_metric(metric):
            return self.tuning.score_buffer_percent_lenient
        return self.tuning.score_buffer_percent

    def acceptable_range(self, metric: str, criterion: MetricCriterion) -> Tuple[float, float]:
        return buffered_range(criterion, self.buffer_percent(metric))

    def passing_threshold(self, max_score: int) -> int:
        return math.ceil(max_score * self.tuning.passing_score_fraction)

    def is_improving(self, result: EvaluationResult) -> bool:
        return result.score >= math.ceil(result.max_score * self.tuning.improving_score_fraction)

    def score(self, metrics: MetricsSnapshot, step: StepDefinition) -> EvaluationResult:
        score = 0
        max_score = 0

        # Criteria are checked in a fixed order so scoring is independent of JSON key order
        for metric in METRIC_NAMES:
            criterion = step.criteria.get(metric)
            if criterion is None:
                continue
            max_score += 1
            if in_range(metrics.value(metric), criterion, self.buffer_percent(metric)):
                score += 1

        back_flat_failed = False
        if step.requires_flat_back:
            max_score += 1
            if metrics.back_flatness_deviation <= step.back_flat.max_deviation:
                score += 1
            else:
                back_flat_failed = True
                score = math.floor(score * self.tuning.back_flat_penalty_factor)

        max_score = max(max_score, 1)
        return EvaluationResult(
            score=score,
            max_score=max_score,
            metrics=metrics,
            passed=score >= self.passing_threshold(max_score),
            back_flat_failed=back_flat_failed,
        )

    def acceptable_ranges(self, step: StepDefinition) -> Dict[str, Dict[str, float]]:
        """Buffered windows for every declared metric of a step (for display)."""
        ranges = {}
        for metric, criterion in step.criteria.items():
            if metric not in METRIC_NAMES:
                continue
            low, high = self.acceptable_range(metric, criterion)
            ranges[metric] = {"min": round(low, 4), "max": round(high, 4)}
        return ranges
