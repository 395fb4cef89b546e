"""Tests for the Thompson Sampling bandit core."""

import random

import pytest

from guidance_kernel.errors import EmptyBanditError
from guidance_upstream.bandit import (
    ThompsonBandit,
    calculate_cumulative_regret,
    calculate_regret,
    sample_beta,
    sample_gamma,
)


class TestSampling:
    """Tests for the Gamma/Beta samplers."""

    def test_gamma_positive_for_small_and_large_shapes(self):
        rng = random.Random(1)
        for shape in (0.2, 0.5, 1.0, 3.0, 50.0):
            for _ in range(50):
                assert sample_gamma(shape, rng) > 0

    def test_gamma_mean_roughly_matches_shape(self):
        rng = random.Random(3)
        draws = [sample_gamma(4.0, rng) for _ in range(4000)]
        assert sum(draws) / len(draws) == pytest.approx(4.0, rel=0.1)

    def test_beta_in_unit_interval(self):
        rng = random.Random(2)
        for alpha, beta in [(1, 1), (0.0, 0.0), (50, 1), (1, 50), (0.2, 0.7)]:
            for _ in range(50):
                x = sample_beta(alpha, beta, rng)
                assert 0.0 <= x <= 1.0

    def test_beta_mean_tracks_posterior(self):
        rng = random.Random(5)
        draws = [sample_beta(8, 2, rng) for _ in range(4000)]
        assert sum(draws) / len(draws) == pytest.approx(0.8, abs=0.03)


class TestThompsonBandit:
    """Tests for ThompsonBandit."""

    def test_arms_start_at_prior(self):
        bandit = ThompsonBandit(["a", "b", "c"])
        assert bandit.arm_ids == ["a", "b", "c"]
        for arm_id in bandit.arm_ids:
            arm = bandit.get_arm(arm_id)
            assert arm.alpha == 1.0
            assert arm.beta == 1.0
            assert arm.pull_count == 0
            assert arm.cumulative_reward == 0.0

    def test_duplicate_arm_ids_collapse(self):
        bandit = ThompsonBandit(["a", "a", "b"])
        assert len(bandit) == 2

    def test_select_from_empty_bandit_raises(self):
        with pytest.raises(EmptyBanditError):
            ThompsonBandit([]).select_arm()

    def test_select_returns_known_arm(self):
        bandit = ThompsonBandit(["a", "b"], rng=random.Random(0))
        for _ in range(20):
            assert bandit.select_arm() in ("a", "b")

    def test_fractional_update(self):
        """A reward r adds r to alpha and 1 - r to beta."""
        bandit = ThompsonBandit(["a"])
        arm = bandit.update_arm("a", 0.8)
        assert arm.alpha == pytest.approx(1.8)
        assert arm.beta == pytest.approx(1.2)
        assert arm.pull_count == 1
        assert arm.cumulative_reward == pytest.approx(0.8)

    def test_update_clamps_reward(self):
        bandit = ThompsonBandit(["a", "b"])
        bandit.update_arm("a", 1.7)
        bandit.update_arm("b", -0.4)

        a = bandit.get_arm("a")
        b = bandit.get_arm("b")
        assert (a.alpha, a.beta, a.cumulative_reward) == (2.0, 1.0, 1.0)
        assert (b.alpha, b.beta, b.cumulative_reward) == (1.0, 2.0, 0.0)

    def test_update_unknown_arm_is_noop(self):
        bandit = ThompsonBandit(["a"])
        before = bandit.serialize()
        assert bandit.update_arm("missing", 1.0) is None
        assert bandit.serialize() == before

    def test_alpha_beta_never_below_prior(self):
        bandit = ThompsonBandit(["a"], rng=random.Random(9))
        rng = random.Random(10)
        for _ in range(200):
            bandit.update_arm("a", rng.uniform(-2, 2))
        arm = bandit.get_arm("a")
        assert arm.alpha >= 1.0
        assert arm.beta >= 1.0
        assert arm.pull_count == 200

    def test_converges_to_better_arm(self):
        bandit = ThompsonBandit(["good", "bad"], rng=random.Random(42))
        for _ in range(50):
            bandit.update_arm("good", 1.0)
            bandit.update_arm("bad", 0.0)

        picks = [bandit.select_arm() for _ in range(200)]
        assert picks.count("good") > 190

    def test_update_order_does_not_change_posterior(self):
        rewards = [0.0, 0.25, 1.0, 0.6, 0.9, 0.1, 0.5, 1.0, 0.0, 0.33]
        shuffled = list(rewards)
        random.Random(8).shuffle(shuffled)

        first = ThompsonBandit(["a"])
        second = ThompsonBandit(["a"])
        for r in rewards:
            first.update_arm("a", r)
        for r in shuffled:
            second.update_arm("a", r)

        a, b = first.get_arm("a"), second.get_arm("a")
        assert a.alpha == pytest.approx(b.alpha)
        assert a.beta == pytest.approx(b.beta)
        assert a.alpha == pytest.approx(1.0 + sum(rewards))
        assert a.beta == pytest.approx(1.0 + len(rewards) - sum(rewards))

    def test_three_full_rewards(self):
        bandit = ThompsonBandit(["a"])
        for _ in range(3):
            bandit.update_arm("a", 1.0)
        arm = bandit.get_arm("a")
        assert (arm.alpha, arm.beta) == (4.0, 1.0)
        assert arm.mean == pytest.approx(0.8)
        assert bandit.get_arm_stats("a").mean_reward == pytest.approx(0.8)

    def test_prefers_higher_fractional_rewards(self):
        bandit = ThompsonBandit(["good", "bad"], rng=random.Random(17))
        for _ in range(20):
            bandit.update_arm("good", 0.9)
            bandit.update_arm("bad", 0.1)

        picks = [bandit.select_arm() for _ in range(50)]
        assert picks.count("good") > picks.count("bad")

    def test_seeded_selection_is_reproducible(self):
        first = ThompsonBandit(["a", "b", "c"], rng=random.Random(123))
        second = ThompsonBandit(["a", "b", "c"], rng=random.Random(123))
        assert [first.select_arm() for _ in range(30)] == [second.select_arm() for _ in range(30)]

    def test_arm_stats(self):
        bandit = ThompsonBandit(["a"])
        bandit.update_arm("a", 1.0)
        stats = bandit.get_arm_stats("a")
        assert stats.mean_reward == pytest.approx(2 / 3)
        assert stats.pull_count == 1
        low, high = stats.confidence_interval
        assert 0.0 <= low <= stats.mean_reward <= high <= 1.0
        assert bandit.get_arm_stats("missing") is None

    def test_best_arm_first_wins_ties(self):
        bandit = ThompsonBandit(["x", "y"])
        assert bandit.get_best_arm() == "x"
        bandit.update_arm("y", 1.0)
        assert bandit.get_best_arm() == "y"
        assert ThompsonBandit([]).get_best_arm() is None

    def test_reset_keeps_arms(self):
        bandit = ThompsonBandit(["a", "b"])
        bandit.update_arm("a", 1.0)
        bandit.reset()
        assert bandit.arm_ids == ["a", "b"]
        arm = bandit.get_arm("a")
        assert (arm.alpha, arm.beta, arm.pull_count) == (1.0, 1.0, 0)

    def test_serialize_restores_posteriors(self):
        bandit = ThompsonBandit(["a", "b"])
        bandit.update_arm("a", 0.25)
        bandit.update_arm("b", 0.9)

        restored = ThompsonBandit.from_state(bandit.serialize())
        assert restored.arm_ids == ["a", "b"]
        assert restored.serialize() == bandit.serialize()


class TestRegret:
    def test_regret_is_non_negative(self):
        assert calculate_regret(0.9, 0.4) == pytest.approx(0.5)
        assert calculate_regret(0.5, 0.8) == 0.0

    def test_cumulative_regret(self):
        assert calculate_cumulative_regret([0.5, 1.0, 0.25], 1.0) == pytest.approx(1.25)
