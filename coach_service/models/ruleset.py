"""
STEPSYNC Coach Service - Validation Ruleset

Declarative description of an exercise: the ordered steps of the reference
demonstration, their time windows and the acceptable metric ranges for each.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from .metrics import METRIC_NAMES

logger = logging.getLogger(__name__)


class RulesetLoadError(ValueError):
    """Raised when a ruleset document cannot be read or is invalid."""


class MetricCriterion(BaseModel):
    """Acceptable [min, max] range for one named metric."""
    min: float
    max: float

    @model_validator(mode="after")
    def _check_bounds(self) -> "MetricCriterion":
        if self.min > self.max:
            raise ValueError(f"criterion min {self.min} is greater than max {self.max}")
        return self


class BackFlatRule(BaseModel):
    should_be_flat: bool = False
    max_deviation: float = 0.1


class CameraDistance(BaseModel):
    """Ideal range for the average shoulder/hip z coordinate."""
    min_z: float
    max_z: float


class StepDefinition(BaseModel):
    """One target pose, active over a window of the reference video."""
    step_number: int
    step_name: str
    start_time: float = Field(ge=0.0)
    end_time: float = Field(ge=0.0)
    criteria: Dict[str, MetricCriterion] = Field(default_factory=dict)
    back_flat: Optional[BackFlatRule] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_window(self) -> "StepDefinition":
        if self.end_time < self.start_time:
            raise ValueError(
                f"step {self.step_number} ends ({self.end_time}s) before it starts ({self.start_time}s)"
            )
        return self

    @property
    def display_name(self) -> str:
        return self.step_name.replace("_", " ")

    @property
    def requires_flat_back(self) -> bool:
        return self.back_flat is not None and self.back_flat.should_be_flat

    def contains_time(self, t: float) -> bool:
        return self.start_time <= t < self.end_time


class ValidationRuleset(BaseModel):
    """Single source of truth for what a correct pose is at each moment."""
    exercise_name: str
    ideal_camera_distance: Optional[CameraDistance] = None
    steps: List[StepDefinition] = Field(min_length=1)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_ordering(self) -> "ValidationRuleset":
        for prev, step in zip(self.steps, self.steps[1:]):
            if step.step_number <= prev.step_number:
                raise ValueError(
                    f"steps must be ordered by step_number ({prev.step_number} then {step.step_number})"
                )
            if step.start_time < prev.end_time:
                raise ValueError(
                    f"step {step.step_number} starts at {step.start_time}s, "
                    f"before step {prev.step_number} ends at {prev.end_time}s"
                )
        for step in self.steps:
            unknown = set(step.criteria) - set(METRIC_NAMES)
            if unknown:
                logger.warning(
                    f"Step {step.step_number} declares unknown metrics {sorted(unknown)}; they will be ignored"
                )
        return self

    @property
    def last_index(self) -> int:
        return len(self.steps) - 1

    def step_index_at(self, t: float) -> Optional[int]:
        """Index of the first step whose [start, end) window contains t."""
        for idx, step in enumerate(self.steps):
            if step.contains_time(t):
                return idx
        return None


def parse_ruleset(data: Union[str, bytes, dict]) -> ValidationRuleset:
    """Validate a ruleset given as JSON text or an already-decoded dict."""
    try:
        if isinstance(data, dict):
            return ValidationRuleset.model_validate(data)
        return ValidationRuleset.model_validate_json(data)
    except ValidationError as e:
        raise RulesetLoadError(f"Invalid ruleset: {e}") from e


def load_ruleset(path: Union[str, Path]) -> ValidationRuleset:
    """Read and validate a ruleset JSON file."""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RulesetLoadError(f"Cannot read ruleset {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RulesetLoadError(f"Ruleset {path} is not valid JSON: {e}") from e

    ruleset = parse_ruleset(data)
    logger.info(f"📋 Loaded ruleset '{ruleset.exercise_name}' ({len(ruleset.steps)} steps) from {path}")
    return ruleset


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_ruleset_instance: Optional[ValidationRuleset] = None

def get_ruleset() -> ValidationRuleset:
    """Get the process-wide ruleset, loading it on first use."""
    global _ruleset_instance
    if _ruleset_instance is None:
        from core.config import settings
        _ruleset_instance = load_ruleset(settings.RULESET_PATH)
    return _ruleset_instance


def set_ruleset(ruleset: Optional[ValidationRuleset]):
    """Replace the process-wide ruleset (None forces a reload on next use)."""
    global _ruleset_instance
    _ruleset_instance = ruleset
