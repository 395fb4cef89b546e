"""Thompson Sampling bandit over Beta-Bernoulli arms.

Each arm keeps a Beta(alpha, beta) posterior over its expected reward.
Selection draws one sample per arm and picks the highest; updates add
fractional rewards in [0, 1] to the posterior.

INVARIANTS:
- alpha, beta >= prior (1, 1) for every arm
- pull_count == number of updates applied to the arm
- cumulative_reward == sum of clamped rewards
- The arm set is fixed at construction; reset() never removes arms
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Sequence

from guidance_kernel.errors import EmptyBanditError

logger = logging.getLogger(__name__)

BANDIT_POLICY_VERSION = "bandit-thompson-v1"


def sample_gamma(shape: float, rng: random.Random, scale: float = 1.0) -> float:
    """Draw from Gamma(shape, scale) with Marsaglia and Tsang's method.

    For shape < 1 the draw uses the boost identity
    Gamma(a) = Gamma(a + 1) * U ** (1 / a).
    """
    if shape <= 0:
        raise ValueError(f"Gamma shape must be positive, got {shape}")

    if shape < 1:
        u = rng.random()
        while u == 0.0:
            u = rng.random()
        return sample_gamma(shape + 1.0, rng, scale) * u ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)
    while True:
        z = rng.gauss(0.0, 1.0)
        v = 1.0 + c * z
        if v <= 0:
            continue
        v = v * v * v
        u = rng.random()
        if u < 1.0 - 0.0331 * z ** 4:
            return d * v * scale
        if u > 0 and math.log(u) < 0.5 * z * z + d - d * v + d * math.log(v):
            return d * v * scale


def sample_beta(alpha: float, beta: float, rng: random.Random) -> float:
    """Draw from Beta(alpha, beta) as g1 / (g1 + g2) of two Gamma draws."""
    a = max(0.001, alpha)
    b = max(0.001, beta)
    g1 = sample_gamma(a, rng)
    g2 = sample_gamma(b, rng)
    total = g1 + g2
    if total == 0:
        return 0.5
    return g1 / total


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class BanditArm:
    """Posterior state of one arm. Mutated only by ThompsonBandit.update_arm."""

    arm_id: str
    alpha: float = 1.0
    beta: float = 1.0
    pull_count: int = 0
    cumulative_reward: float = 0.0

    @property
    def mean(self) -> float:
        total = self.alpha + self.beta
        return self.alpha / total if total > 0 else 0.5

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BanditArm:
        return cls(
            arm_id=data["arm_id"],
            alpha=float(data.get("alpha", 1.0)),
            beta=float(data.get("beta", 1.0)),
            pull_count=int(data.get("pull_count", 0)),
            cumulative_reward=float(data.get("cumulative_reward", 0.0)),
        )


@dataclass(frozen=True)
class ArmStats:
    """Read-only summary of an arm's posterior."""

    arm_id: str
    mean_reward: float
    pull_count: int
    confidence_interval: tuple[float, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "arm_id": self.arm_id,
            "mean_reward": self.mean_reward,
            "pull_count": self.pull_count,
            "confidence_interval": list(self.confidence_interval),
        }


class ThompsonBandit:
    """
    Thompson Sampling bandit with a fixed arm set.

    Usage:
        bandit = ThompsonBandit(["fast-escalator", "slow-escalator"])
        arm_id = bandit.select_arm()
        bandit.update_arm(arm_id, reward=0.8)
    """

    def __init__(
        self,
        arm_ids: Iterable[str],
        *,
        prior_alpha: float = 1.0,
        prior_beta: float = 1.0,
        rng: random.Random | None = None,
    ):
        self.prior_alpha = prior_alpha
        self.prior_beta = prior_beta
        self._rng = rng or random.Random()
        self._arms: dict[str, BanditArm] = {}
        for arm_id in arm_ids:
            if arm_id not in self._arms:
                self._arms[arm_id] = BanditArm(arm_id, alpha=prior_alpha, beta=prior_beta)

    @property
    def arm_ids(self) -> list[str]:
        return list(self._arms)

    def get_arm(self, arm_id: str) -> BanditArm | None:
        return self._arms.get(arm_id)

    def __len__(self) -> int:
        return len(self._arms)

    def select_arm(self) -> str:
        """Sample each arm's posterior and return the arm with the highest draw.

        Raises:
            EmptyBanditError: If the bandit has no arms.
        """
        if not self._arms:
            raise EmptyBanditError("No arms available in bandit")

        best_arm_id = ""
        best_sample = -math.inf
        for arm_id, arm in self._arms.items():
            sample = sample_beta(arm.alpha, arm.beta, self._rng)
            if sample > best_sample:
                best_sample = sample
                best_arm_id = arm_id
        logger.debug("Thompson selection: %s (sample=%.4f)", best_arm_id, best_sample)
        return best_arm_id

    def update_arm(self, arm_id: str, reward: float) -> BanditArm | None:
        """Add a reward in [0, 1] to an arm's posterior. Unknown arms are ignored."""
        arm = self._arms.get(arm_id)
        if arm is None:
            logger.debug("Ignoring update for unknown arm %s", arm_id)
            return None

        r = _clamp01(reward)
        arm.alpha += r
        arm.beta += 1.0 - r
        arm.pull_count += 1
        arm.cumulative_reward += r
        return arm

    def get_arm_stats(self, arm_id: str) -> ArmStats | None:
        """Posterior mean and 95% normal-approximation interval, clipped to [0, 1]."""
        arm = self._arms.get(arm_id)
        if arm is None:
            return None

        total = arm.alpha + arm.beta
        mean = arm.mean
        variance = (arm.alpha * arm.beta) / (total * total * (total + 1)) if total > 0 else 0.25
        margin = 1.96 * math.sqrt(variance)
        return ArmStats(
            arm_id=arm_id,
            mean_reward=mean,
            pull_count=arm.pull_count,
            confidence_interval=(max(0.0, mean - margin), min(1.0, mean + margin)),
        )

    def get_best_arm(self) -> str | None:
        """Arm with the highest posterior mean; the first arm wins ties."""
        best_arm_id = None
        best_mean = -math.inf
        for arm_id, arm in self._arms.items():
            if arm.mean > best_mean:
                best_mean = arm.mean
                best_arm_id = arm_id
        return best_arm_id

    def reset(self) -> None:
        """Restore every arm to the prior."""
        for arm in self._arms.values():
            arm.alpha = self.prior_alpha
            arm.beta = self.prior_beta
            arm.pull_count = 0
            arm.cumulative_reward = 0.0

    def serialize(self) -> dict[str, Any]:
        return {
            "version": BANDIT_POLICY_VERSION,
            "arms": [arm.to_dict() for arm in self._arms.values()],
            "prior_alpha": self.prior_alpha,
            "prior_beta": self.prior_beta,
        }

    def deserialize(self, state: dict[str, Any]) -> None:
        """Replace all arms and priors with a serialized state."""
        self.prior_alpha = float(state.get("prior_alpha", 1.0))
        self.prior_beta = float(state.get("prior_beta", 1.0))
        self._arms = {}
        for arm_data in state.get("arms", []):
            arm = BanditArm.from_dict(arm_data)
            self._arms[arm.arm_id] = arm

    @classmethod
    def from_state(cls, state: dict[str, Any], rng: random.Random | None = None) -> ThompsonBandit:
        bandit = cls([], rng=rng)
        bandit.deserialize(state)
        return bandit


def calculate_regret(optimal_reward: float, actual_reward: float) -> float:
    """Non-negative regret of one round."""
    return max(0.0, optimal_reward - actual_reward)


def calculate_cumulative_regret(rewards: Sequence[float], optimal_reward: float) -> float:
    return sum(calculate_regret(optimal_reward, r) for r in rewards)
