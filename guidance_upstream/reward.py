"""Reward function for the strategy bandit.

Maps an episode's outcome signals to a scalar in [0, 1]:

    reward = clamp01((sum(w_i * c_i) + 1) / 2)

The dependency component is a penalty in [-1, 0]; its weight is
negative and it enters the sum sign-flipped, so hint dependency can only
lower the reward.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

REWARD_VERSION = "reward-calc-v1"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class RewardWeights:
    independent_success: float = 0.35
    error_reduction: float = 0.25
    delayed_retention: float = 0.20
    dependency: float = -0.15
    time_efficiency: float = 0.05

    def to_dict(self) -> dict[str, float]:
        return {
            "independent_success": self.independent_success,
            "error_reduction": self.error_reduction,
            "delayed_retention": self.delayed_retention,
            "dependency": self.dependency,
            "time_efficiency": self.time_efficiency,
        }


DEFAULT_REWARD_WEIGHTS = RewardWeights()


@dataclass(frozen=True)
class RewardComponents:
    """Per-episode sub-scores, each in [-1, 1] (dependency_penalty in [-1, 0])."""

    independent_success: float = 0.0
    error_reduction: float = 0.0
    delayed_retention: float = 0.0
    dependency_penalty: float = 0.0
    time_efficiency: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "independent_success": self.independent_success,
            "error_reduction": self.error_reduction,
            "delayed_retention": self.delayed_retention,
            "dependency_penalty": self.dependency_penalty,
            "time_efficiency": self.time_efficiency,
        }


@dataclass(frozen=True)
class LearningOutcome:
    """Raw outcome signals of one episode.

    hdi_score is the hint dependency index in [0, 1]; higher means more
    reliance on hints. delayed_quiz_correct is None when no delayed quiz
    was taken.
    """

    solved: bool
    used_explanation: bool = False
    error_count: int = 0
    baseline_errors: float = 0.0
    time_spent_ms: int = 0
    median_time_ms: int = 0
    hdi_score: float = 0.0
    delayed_quiz_correct: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "solved": self.solved,
            "used_explanation": self.used_explanation,
            "error_count": self.error_count,
            "baseline_errors": self.baseline_errors,
            "time_spent_ms": self.time_spent_ms,
            "median_time_ms": self.median_time_ms,
            "hdi_score": self.hdi_score,
            "delayed_quiz_correct": self.delayed_quiz_correct,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LearningOutcome:
        return cls(
            solved=bool(data["solved"]),
            used_explanation=bool(data.get("used_explanation", False)),
            error_count=int(data.get("error_count", 0)),
            baseline_errors=float(data.get("baseline_errors", 0.0)),
            time_spent_ms=int(data.get("time_spent_ms", 0)),
            median_time_ms=int(data.get("median_time_ms", 0)),
            hdi_score=float(data.get("hdi_score", 0.0)),
            delayed_quiz_correct=data.get("delayed_quiz_correct"),
        )


def calculate_independent_success(used_explanation: bool, solved: bool) -> float:
    """1.0 solved alone, 0.5 solved after an explanation, 0.0 unsolved."""
    if not solved:
        return 0.0
    return 0.5 if used_explanation else 1.0


def calculate_error_reduction(current_errors: float, baseline_errors: float) -> float:
    if baseline_errors == 0:
        return 0.0
    return _clamp((baseline_errors - current_errors) / baseline_errors, -1.0, 1.0)


def calculate_time_efficiency(time_spent_ms: float, median_time_ms: float) -> float:
    if median_time_ms == 0:
        return 0.0
    return _clamp((median_time_ms - time_spent_ms) / median_time_ms, -1.0, 1.0)


def components_from_outcome(outcome: LearningOutcome) -> RewardComponents:
    retention = 0.0
    if outcome.delayed_quiz_correct is not None:
        retention = 1.0 if outcome.delayed_quiz_correct else 0.0
    return RewardComponents(
        independent_success=calculate_independent_success(outcome.used_explanation, outcome.solved),
        error_reduction=calculate_error_reduction(outcome.error_count, outcome.baseline_errors),
        delayed_retention=retention,
        dependency_penalty=-_clamp(outcome.hdi_score, 0.0, 1.0),
        time_efficiency=calculate_time_efficiency(outcome.time_spent_ms, outcome.median_time_ms),
    )


def calculate_reward(
    components: RewardComponents,
    weights: RewardWeights = DEFAULT_REWARD_WEIGHTS,
) -> float:
    """Weighted sum of components normalized to [0, 1]."""
    raw = (
        weights.independent_success * components.independent_success
        + weights.error_reduction * components.error_reduction
        + weights.delayed_retention * components.delayed_retention
        + weights.dependency * (-components.dependency_penalty)
        + weights.time_efficiency * components.time_efficiency
    )
    return _clamp((raw + 1.0) / 2.0, 0.0, 1.0)


def reward_for_outcome(
    outcome: LearningOutcome,
    weights: RewardWeights = DEFAULT_REWARD_WEIGHTS,
) -> tuple[float, RewardComponents]:
    components = components_from_outcome(outcome)
    return calculate_reward(components, weights), components
