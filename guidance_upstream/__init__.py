"""Guidance Upstream - the learning half of the adaptive guidance engine.

The upstream lives OUTSIDE the kernel and:
- Selects an escalation strategy profile per learner via Thompson Sampling
- Scores finished episodes with the reward function
- Records episode outcomes to a persistent database
- Orchestrates kernel and bandit in the policy engine

INVARIANTS:
1. Upstream NEVER modifies kernel decisions; it only picks the TriggerConfig
2. One bandit per learner; learners never share posteriors
3. Bandit state is persisted after every update
"""

from .bandit import ArmStats, BanditArm, ThompsonBandit, calculate_cumulative_regret, calculate_regret
from .strategies import (
    ESCALATION_PROFILES,
    StrategyProfile,
    assign_profile,
    get_profile,
    list_profile_ids,
)
from .reward import (
    DEFAULT_REWARD_WEIGHTS,
    LearningOutcome,
    RewardComponents,
    RewardWeights,
    calculate_reward,
    reward_for_outcome,
)
from .features import HDIComponents, calculate_hdi, hdi_level
from .outcome_db import EpisodeRecord, OutcomeDB
from .learner_manager import LearnerBanditManager, OutcomeUpdate, ProfileSelection
from .policy_engine import (
    AdaptiveGuidanceEngine,
    EpisodeContext,
    EpisodeResult,
    GuidanceStep,
    create_engine,
)

__version__ = "1.0.0"
__all__ = [
    # Bandit
    "ArmStats",
    "BanditArm",
    "ThompsonBandit",
    "calculate_regret",
    "calculate_cumulative_regret",
    # Strategies
    "ESCALATION_PROFILES",
    "StrategyProfile",
    "assign_profile",
    "get_profile",
    "list_profile_ids",
    # Reward
    "DEFAULT_REWARD_WEIGHTS",
    "LearningOutcome",
    "RewardComponents",
    "RewardWeights",
    "calculate_reward",
    "reward_for_outcome",
    # Features
    "HDIComponents",
    "calculate_hdi",
    "hdi_level",
    # Outcome DB
    "EpisodeRecord",
    "OutcomeDB",
    # Learner manager
    "LearnerBanditManager",
    "OutcomeUpdate",
    "ProfileSelection",
    # Engine
    "AdaptiveGuidanceEngine",
    "EpisodeContext",
    "EpisodeResult",
    "GuidanceStep",
    "create_engine",
]
