"""Tests for the reward function and hint dependency features."""

import random

import pytest

from guidance_kernel.events import EventType, InteractionEvent
from guidance_upstream.features import (
    calculate_hdi,
    episode_features,
    hdi_components,
    hdi_level,
)
from guidance_upstream.reward import (
    LearningOutcome,
    RewardComponents,
    RewardWeights,
    calculate_error_reduction,
    calculate_independent_success,
    calculate_reward,
    calculate_time_efficiency,
    components_from_outcome,
    reward_for_outcome,
)


def _event(event_type, ts, problem_id="q1", **fields):
    return InteractionEvent(
        event_id=f"e{ts}",
        learner_id="learner-1",
        problem_id=problem_id,
        event_type=event_type,
        timestamp=ts,
        **fields,
    )


class TestRewardComponents:
    """Tests for individual reward components."""

    def test_independent_success(self):
        assert calculate_independent_success(used_explanation=False, solved=True) == 1.0
        assert calculate_independent_success(used_explanation=True, solved=True) == 0.5
        assert calculate_independent_success(used_explanation=False, solved=False) == 0.0
        assert calculate_independent_success(used_explanation=True, solved=False) == 0.0

    def test_error_reduction(self):
        assert calculate_error_reduction(1, 4) == pytest.approx(0.75)
        assert calculate_error_reduction(3, 0) == 0.0
        assert calculate_error_reduction(10, 2) == -1.0

    def test_error_reduction_exact_values(self):
        assert calculate_error_reduction(0, 10) == 1.0
        assert calculate_error_reduction(20, 10) == -1.0
        assert calculate_error_reduction(10, 10) == 0.0
        assert calculate_error_reduction(5, 10) == pytest.approx(0.5)
        for current in (0, 1, 7, 100):
            assert calculate_error_reduction(current, 0) == 0.0

    def test_time_efficiency(self):
        assert calculate_time_efficiency(500, 1000) == pytest.approx(0.5)
        assert calculate_time_efficiency(500, 0) == 0.0
        assert calculate_time_efficiency(5000, 1000) == -1.0

    def test_dependency_penalty_is_negative_hdi(self):
        components = components_from_outcome(LearningOutcome(solved=False, hdi_score=0.4))
        assert components.dependency_penalty == pytest.approx(-0.4)

    def test_retention_only_counts_taken_quiz(self):
        assert components_from_outcome(LearningOutcome(solved=True)).delayed_retention == 0.0
        assert components_from_outcome(
            LearningOutcome(solved=True, delayed_quiz_correct=True)
        ).delayed_retention == 1.0


class TestCalculateReward:
    """Tests for the combined reward."""

    def test_all_zero_components_give_half(self):
        assert calculate_reward(RewardComponents()) == pytest.approx(0.5)
        reward, _ = reward_for_outcome(LearningOutcome(solved=False))
        assert reward == pytest.approx(0.5)

    def test_best_case(self):
        outcome = LearningOutcome(
            solved=True,
            error_count=0,
            baseline_errors=4,
            time_spent_ms=0,
            median_time_ms=1000,
            hdi_score=0.0,
            delayed_quiz_correct=True,
        )
        reward, components = reward_for_outcome(outcome)
        assert components.independent_success == 1.0
        assert components.error_reduction == 1.0
        assert reward == pytest.approx(0.925)

    def test_hint_dependency_lowers_reward(self):
        low, _ = reward_for_outcome(LearningOutcome(solved=True, hdi_score=0.0))
        high, _ = reward_for_outcome(LearningOutcome(solved=True, hdi_score=1.0))
        assert high < low
        assert low - high == pytest.approx(0.075)

    def test_reward_always_in_unit_interval(self):
        extremes = [
            LearningOutcome(solved=False, error_count=100, baseline_errors=1, time_spent_ms=10**9,
                            median_time_ms=1, hdi_score=5.0, delayed_quiz_correct=False),
            LearningOutcome(solved=True, error_count=0, baseline_errors=50, time_spent_ms=0,
                            median_time_ms=10**6, hdi_score=-3.0, delayed_quiz_correct=True),
        ]
        for outcome in extremes:
            reward, _ = reward_for_outcome(outcome)
            assert 0.0 <= reward <= 1.0

    def test_reward_in_unit_interval_for_random_components(self):
        """Components outside their nominal ranges still give a reward in [0, 1]."""
        rng = random.Random(2024)
        for _ in range(500):
            components = RewardComponents(
                independent_success=rng.uniform(-3, 3),
                error_reduction=rng.uniform(-3, 3),
                delayed_retention=rng.uniform(-3, 3),
                dependency_penalty=rng.uniform(-3, 3),
                time_efficiency=rng.uniform(-3, 3),
            )
            assert 0.0 <= calculate_reward(components) <= 1.0

    def test_nominal_components_span_known_range(self):
        rng = random.Random(7)
        for _ in range(200):
            components = RewardComponents(
                independent_success=rng.choice([0.0, 0.5, 1.0]),
                error_reduction=rng.uniform(-1, 1),
                delayed_retention=rng.choice([0.0, 1.0]),
                dependency_penalty=-rng.uniform(0, 1),
                time_efficiency=rng.uniform(-1, 1),
            )
            reward = calculate_reward(components)
            assert 0.275 - 1e-9 <= reward <= 0.925 + 1e-9

    def test_reward_clamped_with_custom_weights(self):
        weights = RewardWeights(independent_success=3.0)
        reward, _ = reward_for_outcome(LearningOutcome(solved=True), weights)
        assert reward == 1.0

    def test_outcome_dict_round_trip(self):
        outcome = LearningOutcome(solved=True, error_count=2, hdi_score=0.3, delayed_quiz_correct=None)
        assert LearningOutcome.from_dict(outcome.to_dict()) == outcome


class TestHintDependency:
    """Tests for the hint dependency index."""

    def test_empty_history(self):
        hdi, components = calculate_hdi([])
        assert components.hpa == 0.0
        assert hdi == pytest.approx(0.134)

    def test_hints_per_attempt_capped(self):
        events = [
            _event(EventType.HINT_REQUEST, 1),
            _event(EventType.HINT_REQUEST, 2),
            _event(EventType.HINT_REQUEST, 3),
            _event(EventType.EXECUTION, 4, successful=False),
        ]
        assert hdi_components(events).hpa == 1.0

    def test_escalation_depth_normalized(self):
        events = [
            _event(EventType.HINT_VIEW, 1, hint_level=1),
            _event(EventType.HINT_VIEW, 2, hint_level=3),
        ]
        assert hdi_components(events).aed == pytest.approx(0.5)

    def test_errors_after_explanation(self):
        events = [
            _event(EventType.ERROR, 1),
            _event(EventType.EXPLANATION_VIEW, 2),
            _event(EventType.ERROR, 3),
            _event(EventType.ERROR, 4),
            _event(EventType.ERROR, 5),
        ]
        assert hdi_components(events).reae == pytest.approx(0.75)

    def test_solving_without_hints_lowers_index(self):
        unaided = [_event(EventType.EXECUTION, 1, successful=True)]
        aided = [
            _event(EventType.HINT_VIEW, 1, hint_level=3),
            _event(EventType.EXECUTION, 2, successful=True),
        ]
        unaided_hdi, unaided_c = calculate_hdi(unaided)
        aided_hdi, aided_c = calculate_hdi(aided)
        assert unaided_c.iwh == 1.0
        assert aided_c.iwh == 0.0
        assert unaided_hdi < aided_hdi

    def test_levels(self):
        assert hdi_level(0.1) == "low"
        assert hdi_level(0.6) == "medium"
        assert hdi_level(0.61) == "high"

    def test_episode_features(self):
        events = [
            _event(EventType.ERROR, 100),
            _event(EventType.EXPLANATION_VIEW, 200),
            _event(EventType.EXECUTION, 900, successful=True),
        ]
        features = episode_features(events)
        assert features == {
            "solved": True,
            "used_explanation": True,
            "error_count": 1,
            "time_spent_ms": 800,
        }
