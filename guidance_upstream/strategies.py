"""Escalation strategy profiles.

A strategy profile is NOT "which hint" - it's "how eagerly we escalate".
Each profile is one bandit arm.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

PROFILE_POLICY_VERSION = "escalation-profiles-v1"


@dataclass(frozen=True)
class StrategyProfile:
    """
    Escalation thresholds and trigger values for one strategy.

    INVARIANT: aggregate > escalate.
    """
    profile_id: str
    name: str
    description: str
    escalate: int          # errors before explanation
    aggregate: int         # errors before textbook note
    time_stuck_ms: int     # ms without success before escalation
    rung_exhausted: int    # hints at a rung before escalation
    repeated_error: int    # same-subtype errors before escalation

    def __post_init__(self):
        if self.aggregate <= self.escalate:
            raise ValueError(
                f"Profile {self.profile_id}: aggregate ({self.aggregate}) must exceed escalate ({self.escalate})"
            )

    @property
    def thresholds(self) -> dict[str, int]:
        return {"escalate": self.escalate, "aggregate": self.aggregate}

    @property
    def triggers(self) -> dict[str, int]:
        return {
            "time_stuck_ms": self.time_stuck_ms,
            "rung_exhausted": self.rung_exhausted,
            "repeated_error": self.repeated_error,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "name": self.name,
            "description": self.description,
            "thresholds": self.thresholds,
            "triggers": self.triggers,
        }


FAST_ESCALATOR = StrategyProfile(
    profile_id="fast-escalator",
    name="Fast Escalator",
    description="Quick intervention for learners who benefit from early explanations",
    escalate=2,
    aggregate=4,
    time_stuck_ms=120_000,
    rung_exhausted=2,
    repeated_error=1,
)

SLOW_ESCALATOR = StrategyProfile(
    profile_id="slow-escalator",
    name="Slow Escalator",
    description="Extended exploration for persistent, self-directed learners",
    escalate=5,
    aggregate=8,
    time_stuck_ms=480_000,
    rung_exhausted=4,
    repeated_error=3,
)

ADAPTIVE_ESCALATOR = StrategyProfile(
    profile_id="adaptive-escalator",
    name="Adaptive Escalator",
    description="Balanced escalation that adapts to learner patterns",
    escalate=3,
    aggregate=6,
    time_stuck_ms=300_000,
    rung_exhausted=3,
    repeated_error=2,
)

EXPLANATION_FIRST = StrategyProfile(
    profile_id="explanation-first",
    name="Explanation First",
    description="Prioritizes explanations over progressive hints",
    escalate=1,
    aggregate=3,
    time_stuck_ms=60_000,
    rung_exhausted=1,
    repeated_error=1,
)

ESCALATION_PROFILES: list[StrategyProfile] = [
    FAST_ESCALATOR,
    SLOW_ESCALATOR,
    ADAPTIVE_ESCALATOR,
    EXPLANATION_FIRST,
]


def get_profile(profile_id: str) -> StrategyProfile:
    """Get a strategy profile by ID."""
    for profile in ESCALATION_PROFILES:
        if profile.profile_id == profile_id:
            return profile
    raise ValueError(f"Unknown profile_id: {profile_id}")


def list_profile_ids() -> list[str]:
    """List all profile IDs (also the bandit arm IDs)."""
    return [p.profile_id for p in ESCALATION_PROFILES]


def _learner_hash(learner_id: str) -> float:
    """Map a learner id to [0, 1] with a signed 32-bit (h << 5) - h + c hash."""
    if not learner_id:
        return 0.0
    h = 0
    for ch in learner_id:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) / 2147483647


def assign_profile(
    learner_id: str,
    strategy: str = "static",
    *,
    persistence_score: float = 0.5,
    recovery_rate: float = 0.5,
) -> StrategyProfile:
    """Assign a profile without the bandit.

    Strategies:
        static: deterministic by learner id hash
        diagnostic: mean of persistence score and recovery rate
        bandit: adaptive baseline (the bandit picks per problem)
    """
    if strategy == "static":
        h = _learner_hash(learner_id)
        if h < 0.33:
            return FAST_ESCALATOR
        if h < 0.67:
            return ADAPTIVE_ESCALATOR
        return SLOW_ESCALATOR

    if strategy == "diagnostic":
        score = (persistence_score + recovery_rate) / 2
        if score > 0.7:
            return SLOW_ESCALATOR
        if score < 0.3:
            return FAST_ESCALATOR
        return ADAPTIVE_ESCALATOR

    return ADAPTIVE_ESCALATOR
