"""Per-learner bandit manager.

Owns one ThompsonBandit per learner and maps each arm to its strategy
profile. The manager is an explicit registry object: callers hold an
instance and pass it along rather than reaching for module state.

INVARIANTS:
- get_bandit_for_learner() is identity-preserving per learner id
- All mutations for one learner run under that learner's lock
- Unknown learners in record_outcome() are a silent no-op
- Per-learner locks outlive reset_learner() and clear_all()
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Sequence

from guidance_kernel.ledger import Ledger
from guidance_upstream.bandit import ThompsonBandit
from guidance_upstream.reward import (
    DEFAULT_REWARD_WEIGHTS,
    LearningOutcome,
    RewardComponents,
    RewardWeights,
    reward_for_outcome,
)
from guidance_upstream.strategies import ESCALATION_PROFILES, StrategyProfile, list_profile_ids

logger = logging.getLogger(__name__)

LEARNER_BANDIT_VERSION = "learner-bandit-v1"

_PROFILES_BY_ID = {p.profile_id: p for p in ESCALATION_PROFILES}


@dataclass(frozen=True)
class ProfileSelection:
    """The manager's decision: which arm to use and its profile.

    `profile` is None when the arm id is not a known strategy profile.
    """
    arm_id: str
    profile: StrategyProfile | None


@dataclass(frozen=True)
class OutcomeUpdate:
    """Result of applying one episode outcome to a learner's bandit."""
    learner_id: str
    arm_id: str
    reward: float
    components: RewardComponents
    pull_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "learner_id": self.learner_id,
            "arm_id": self.arm_id,
            "reward": self.reward,
            "components": self.components.to_dict(),
            "pull_count": self.pull_count,
        }


class LearnerBanditManager:
    """
    Registry of per-learner strategy bandits.

    Usage:
        manager = LearnerBanditManager()
        selection = manager.select_profile_for_learner("learner-1")
        manager.record_outcome("learner-1", selection.arm_id, outcome)
    """

    def __init__(
        self,
        arm_ids: Sequence[str] | None = None,
        *,
        seed: int | None = None,
        weights: RewardWeights = DEFAULT_REWARD_WEIGHTS,
        ledger: Ledger | None = None,
    ):
        self._arm_ids = list(arm_ids) if arm_ids is not None else list_profile_ids()
        self._seed = seed
        self._weights = weights
        self._ledger = ledger
        self._bandits: dict[str, ThompsonBandit] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @property
    def arm_ids(self) -> list[str]:
        return list(self._arm_ids)

    def _lock_for(self, learner_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(learner_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[learner_id] = lock
            return lock

    def _rng_for(self, learner_id: str) -> random.Random:
        if self._seed is None:
            return random.Random()
        return random.Random(f"{self._seed}:{learner_id}")

    def get_bandit_for_learner(self, learner_id: str) -> ThompsonBandit:
        """Return the learner's bandit, creating it on first use."""
        with self._guard:
            bandit = self._bandits.get(learner_id)
            if bandit is None:
                bandit = ThompsonBandit(self._arm_ids, rng=self._rng_for(learner_id))
                self._bandits[learner_id] = bandit
                logger.debug("Created bandit for learner %s with %d arms", learner_id, len(self._arm_ids))
            return bandit

    def select_profile_for_learner(self, learner_id: str) -> ProfileSelection:
        bandit = self.get_bandit_for_learner(learner_id)
        with self._lock_for(learner_id):
            arm_id = bandit.select_arm()
        return ProfileSelection(arm_id=arm_id, profile=_PROFILES_BY_ID.get(arm_id))

    def record_outcome(
        self,
        learner_id: str,
        arm_id: str,
        outcome: LearningOutcome,
        problem_id: str | None = None,
    ) -> OutcomeUpdate | None:
        """Score an outcome and update the learner's posterior for `arm_id`.

        Returns None without side effects for an unknown learner or arm.
        """
        bandit = self._bandits.get(learner_id)
        if bandit is None:
            logger.debug("Ignoring outcome for unknown learner %s", learner_id)
            return None

        reward, components = reward_for_outcome(outcome, self._weights)
        with self._lock_for(learner_id):
            arm = bandit.update_arm(arm_id, reward)
        if arm is None:
            return None

        logger.info(
            "Bandit update for %s: arm=%s reward=%.3f pulls=%d",
            learner_id, arm_id, reward, arm.pull_count,
        )
        if self._ledger is not None:
            self._ledger.record_bandit_update(learner_id, arm_id, reward, arm.pull_count, problem_id)
        return OutcomeUpdate(
            learner_id=learner_id,
            arm_id=arm_id,
            reward=reward,
            components=components,
            pull_count=arm.pull_count,
        )

    def get_learner_stats(self, learner_id: str) -> list[dict[str, Any]]:
        """Per-arm stats for a learner; empty for a learner with no bandit."""
        bandit = self._bandits.get(learner_id)
        if bandit is None:
            return []
        stats = []
        for arm_id in self._arm_ids:
            arm_stats = bandit.get_arm_stats(arm_id)
            stats.append({
                "arm_id": arm_id,
                "profile_name": _PROFILES_BY_ID[arm_id].name if arm_id in _PROFILES_BY_ID else arm_id,
                "mean_reward": arm_stats.mean_reward if arm_stats else 0.0,
                "pull_count": arm_stats.pull_count if arm_stats else 0,
            })
        return stats

    def export_state(self, learner_id: str) -> dict[str, Any] | None:
        bandit = self._bandits.get(learner_id)
        if bandit is None:
            return None
        with self._lock_for(learner_id):
            return bandit.serialize()

    def import_state(self, learner_id: str, state: dict[str, Any]) -> ThompsonBandit:
        """Restore a learner's bandit from serialized state."""
        bandit = ThompsonBandit.from_state(state, rng=self._rng_for(learner_id))
        with self._guard:
            self._bandits[learner_id] = bandit
        return bandit

    def reset_learner(self, learner_id: str) -> None:
        with self._guard:
            self._bandits.pop(learner_id, None)

    def clear_all(self) -> None:
        with self._guard:
            self._bandits.clear()

    def learner_ids(self) -> list[str]:
        return list(self._bandits)

    def has_bandit(self, learner_id: str) -> bool:
        return learner_id in self._bandits

    def learner_count(self) -> int:
        return len(self._bandits)
