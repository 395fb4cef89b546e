"""Adaptive Guidance Engine - glues the deterministic kernel to the learning upstream.

One episode is one learner working one problem:

    start_problem()      -> pick a strategy profile, open a ladder at rung 1
    record_interaction() -> persist, count hint views, evaluate triggers, escalate
    compose_guidance()   -> content for the current rung (generator or template)
    conclude_episode()   -> reward -> bandit posterior, outcome DB, ledger

INVARIANTS:
- The kernel never imports this module; profiles reach the ladder only
  as a frozen TriggerConfig
- All mutations for one learner run under that learner's registry lock
- Grounding and generation failures degrade, they never block escalation
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from guidance_kernel.config import EngineConfig
from guidance_kernel.corpus import ReferenceCorpus, load_default_corpus
from guidance_kernel.errors import GuidanceError
from guidance_kernel.events import EventType, InteractionEvent, Problem, events_for_problem, now_ms
from guidance_kernel.generation import GeneratedContent, GuidanceContentBuilder, create_generator
from guidance_kernel.ladder import (
    MAX_RUNG,
    EscalationEvidence,
    GuidanceLadder,
    LadderState,
    NextAction,
    TriggerConfig,
    create_initial_state,
)
from guidance_kernel.ledger import Ledger
from guidance_kernel.registry import LadderRegistry
from guidance_kernel.retrieval import GroundingBuilder, PassageIndexStore, RetrievalBundle
from guidance_kernel.storage import InMemoryStore, LearningStore, SQLiteStore
from guidance_upstream.features import calculate_hdi, episode_features
from guidance_upstream.learner_manager import LearnerBanditManager, OutcomeUpdate
from guidance_upstream.outcome_db import OutcomeDB
from guidance_upstream.reward import LearningOutcome, RewardComponents, reward_for_outcome
from guidance_upstream.strategies import StrategyProfile, assign_profile

logger = logging.getLogger(__name__)


@dataclass
class EpisodeContext:
    """Live bookkeeping for one (learner, problem) episode."""
    learner_id: str
    problem: Problem
    arm_id: str
    profile: StrategyProfile
    strategy: str
    ladder: GuidanceLadder
    started_at: int

    @property
    def problem_id(self) -> str:
        return self.problem.problem_id


@dataclass(frozen=True)
class GuidanceStep:
    """What the engine decided after one interaction."""
    event_id: str
    state: LadderState
    action: NextAction
    escalated: bool = False
    bundle: RetrievalBundle | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "rung": self.state.current_rung,
            "action": self.action.to_dict(),
            "escalated": self.escalated,
            "source_ids": list(self.bundle.retrieved_source_ids) if self.bundle else [],
        }


@dataclass(frozen=True)
class EpisodeResult:
    """Reward and bookkeeping produced by conclude_episode()."""
    learner_id: str
    problem_id: str
    arm_id: str
    reward: float
    components: RewardComponents
    final_rung: int
    bandit_updated: bool
    episode_row_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "arm_id": self.arm_id,
            "reward": self.reward,
            "components": self.components.to_dict(),
            "final_rung": self.final_rung,
            "bandit_updated": self.bandit_updated,
            "episode_row_id": self.episode_row_id,
        }


class AdaptiveGuidanceEngine:
    """
    Per-learner adaptive guidance.

    Usage:
        engine = AdaptiveGuidanceEngine(EngineConfig(strategy="bandit", seed=7))
        engine.start_problem("learner-1", problem)
        step = engine.record_interaction(event)
        content = asyncio.run(engine.compose_guidance("learner-1", problem.problem_id))
        engine.conclude_episode("learner-1", problem.problem_id, outcome)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        corpus: ReferenceCorpus | None = None,
        store: LearningStore | None = None,
        manager: LearnerBanditManager | None = None,
        registry: LadderRegistry | None = None,
        grounding: GroundingBuilder | None = None,
        content_builder: GuidanceContentBuilder | None = None,
        ledger: Ledger | None = None,
        outcome_db: OutcomeDB | None = None,
        clock=now_ms,
    ):
        self.config = config or EngineConfig()
        self._clock = clock
        self._corpus = corpus or load_default_corpus()
        self._store = store or InMemoryStore()
        self._ledger = ledger
        self._outcome_db = outcome_db
        self._manager = manager or LearnerBanditManager(seed=self.config.seed, ledger=ledger)
        base_ladder = GuidanceLadder(corpus=self._corpus, clock=clock)
        self._registry = registry or LadderRegistry(base_ladder)
        self._grounding = grounding or GroundingBuilder(
            self._corpus, PassageIndexStore(self._store.get_pdf_index())
        )
        self._content_builder = content_builder or GuidanceContentBuilder(
            create_generator(self.config.generation), self.config.generation, base_ladder
        )
        self._episodes: dict[tuple[str, str], EpisodeContext] = {}

    @property
    def store(self) -> LearningStore:
        return self._store

    @property
    def manager(self) -> LearnerBanditManager:
        return self._manager

    @property
    def registry(self) -> LadderRegistry:
        return self._registry

    @property
    def grounding(self) -> GroundingBuilder:
        return self._grounding

    def episode(self, learner_id: str, problem_id: str) -> EpisodeContext:
        ctx = self._episodes.get((learner_id, problem_id))
        if ctx is None:
            raise GuidanceError(f"No active episode for {learner_id}/{problem_id}")
        return ctx

    def has_episode(self, learner_id: str, problem_id: str) -> bool:
        return (learner_id, problem_id) in self._episodes

    # ---- profile selection ------------------------------------------------

    def _select_profile(
        self,
        learner_id: str,
        persistence_score: float,
        recovery_rate: float,
    ) -> tuple[str, StrategyProfile]:
        strategy = self.config.strategy
        if strategy != "bandit":
            profile = assign_profile(
                learner_id,
                strategy,
                persistence_score=persistence_score,
                recovery_rate=recovery_rate,
            )
            return profile.profile_id, profile

        if not self._manager.has_bandit(learner_id):
            saved = self._store.get_bandit_state(learner_id)
            if saved:
                self._manager.import_state(learner_id, saved)
                logger.debug("Restored bandit state for %s", learner_id)
        selection = self._manager.select_profile_for_learner(learner_id)
        if selection.profile is None:
            raise GuidanceError(f"Bandit arm {selection.arm_id} is not a strategy profile")
        return selection.arm_id, selection.profile

    def start_problem(
        self,
        learner_id: str,
        problem: Problem,
        *,
        persistence_score: float = 0.5,
        recovery_rate: float = 0.5,
    ) -> EpisodeContext:
        """Open an episode: choose a profile and create a fresh rung-1 ladder state."""
        with self._registry.lock_for(learner_id):
            arm_id, profile = self._select_profile(learner_id, persistence_score, recovery_rate)
            ladder = GuidanceLadder(TriggerConfig.from_profile(profile), self._corpus, self._clock)
            self._registry.put(create_initial_state(learner_id, problem.problem_id))
            ctx = EpisodeContext(
                learner_id=learner_id,
                problem=problem,
                arm_id=arm_id,
                profile=profile,
                strategy=self.config.strategy,
                ladder=ladder,
                started_at=self._clock(),
            )
            self._episodes[(learner_id, problem.problem_id)] = ctx
            self._store.save_profile(learner_id, {
                "arm_id": arm_id,
                "strategy": self.config.strategy,
                "problem_id": problem.problem_id,
                "profile": profile.to_dict(),
            })

        logger.info(
            "Started %s/%s with profile %s (strategy=%s)",
            learner_id, problem.problem_id, arm_id, self.config.strategy,
        )
        return ctx

    # ---- interactions -----------------------------------------------------

    def record_interaction(self, event: InteractionEvent) -> GuidanceStep:
        """Persist an event and advance the ladder if a trigger fires.

        Raises:
            GuidanceError: No episode was started for the event's learner/problem.
        """
        ctx = self.episode(event.learner_id, event.problem_id)
        ladder = ctx.ladder

        with self._registry.lock_for(event.learner_id):
            self._store.save_interaction(event)
            state = self._registry.get(event.learner_id, event.problem_id) or create_initial_state(
                event.learner_id, event.problem_id
            )
            if event.event_type == EventType.HINT_VIEW:
                state = ladder.record_rung_attempt(state)

            interactions = self._store.get_interactions_by_learner(event.learner_id)
            action = ladder.determine_next_action(state, interactions)
            if self._ledger is not None:
                self._ledger.record_decision(event.learner_id, event.problem_id, action)

            bundle = None
            escalated = False
            if action.should_escalate:
                evidence = EscalationEvidence.from_interactions(interactions, event.problem_id, ladder.now())
                bundle = self._grounding.build_bundle(
                    event.learner_id,
                    ctx.problem,
                    interactions,
                    top_k=self.config.top_k,
                    trigger_interaction_ids=(event.event_id,),
                )
                state = ladder.escalate(state, action.trigger, evidence, bundle.concept_ids)
                escalated = True
                if self._ledger is not None:
                    self._ledger.record_escalation(event.learner_id, event.problem_id, state.escalation_history[-1])

            self._registry.put(state)

        return GuidanceStep(
            event_id=event.event_id,
            state=state,
            action=action,
            escalated=escalated,
            bundle=bundle,
        )

    def current_state(self, learner_id: str, problem_id: str) -> LadderState:
        return self._registry.get(learner_id, problem_id) or create_initial_state(learner_id, problem_id)

    def build_bundle(self, learner_id: str, problem_id: str) -> RetrievalBundle:
        ctx = self.episode(learner_id, problem_id)
        return self._grounding.build_bundle(
            learner_id,
            ctx.problem,
            self._store.get_interactions_by_learner(learner_id),
            top_k=self.config.top_k,
        )

    async def compose_guidance(self, learner_id: str, problem_id: str) -> GeneratedContent:
        """Content for the learner's current rung.

        At rung 3 the note is also saved to the learner's textbook.
        """
        state = self.current_state(learner_id, problem_id)
        bundle = self.build_bundle(learner_id, problem_id)
        content = await self._content_builder.build(bundle, state.current_rung)

        if self._ledger is not None:
            self._ledger.record_generation(learner_id, problem_id, content)

        if state.current_rung == MAX_RUNG:
            with self._registry.lock_for(learner_id):
                self._store.save_textbook_unit(learner_id, {
                    "id": f"{problem_id}:reflective-note",
                    "problem_id": problem_id,
                    "content": content.content,
                    "concept_ids": list(state.current_concept_ids or bundle.concept_ids),
                    "source_ids": list(content.source_ids),
                    "input_hash": content.input_hash,
                    "created_at": self._clock(),
                })
        return content

    # ---- episode end ------------------------------------------------------

    def outcome_from_history(
        self,
        learner_id: str,
        problem_id: str,
        *,
        baseline_errors: float = 0.0,
        median_time_ms: int = 0,
        delayed_quiz_correct: bool | None = None,
    ) -> LearningOutcome:
        """Derive a LearningOutcome from the stored interactions of one problem."""
        events = events_for_problem(self._store.get_interactions_by_learner(learner_id), problem_id)
        features = episode_features(events)
        hdi, _ = calculate_hdi(events)
        state = self.current_state(learner_id, problem_id)
        return LearningOutcome(
            solved=features["solved"],
            used_explanation=features["used_explanation"] or state.current_rung >= 2,
            error_count=features["error_count"],
            baseline_errors=baseline_errors,
            time_spent_ms=features["time_spent_ms"],
            median_time_ms=median_time_ms,
            hdi_score=hdi,
            delayed_quiz_correct=delayed_quiz_correct,
        )

    def conclude_episode(
        self,
        learner_id: str,
        problem_id: str,
        outcome: LearningOutcome,
    ) -> EpisodeResult:
        """Score the episode and close the loop into the learner's bandit."""
        ctx = self.episode(learner_id, problem_id)

        with self._registry.lock_for(learner_id):
            update: OutcomeUpdate | None = None
            if ctx.strategy == "bandit":
                update = self._manager.record_outcome(learner_id, ctx.arm_id, outcome, problem_id)
            if update is not None:
                reward, components = update.reward, update.components
                state = self._manager.export_state(learner_id)
                if state is not None:
                    self._store.save_bandit_state(learner_id, state)
            else:
                reward, components = reward_for_outcome(outcome)

            final_rung = self.current_state(learner_id, problem_id).current_rung
            row_id = None
            if self._outcome_db is not None:
                row_id = self._outcome_db.add_episode(
                    learner_id=learner_id,
                    problem_id=problem_id,
                    arm_id=ctx.arm_id,
                    reward=reward,
                    solved=outcome.solved,
                    components=components.to_dict(),
                    final_rung=final_rung,
                )
            del self._episodes[(learner_id, problem_id)]

        logger.info(
            "Concluded %s/%s: arm=%s reward=%.3f final_rung=%d",
            learner_id, problem_id, ctx.arm_id, reward, final_rung,
        )
        return EpisodeResult(
            learner_id=learner_id,
            problem_id=problem_id,
            arm_id=ctx.arm_id,
            reward=reward,
            components=components,
            final_rung=final_rung,
            bandit_updated=update is not None,
            episode_row_id=row_id,
        )


def create_engine(config: EngineConfig | None = None, **overrides: Any) -> AdaptiveGuidanceEngine:
    """Build an engine with persistence wired from config paths.

    store_path selects a SQLiteStore, ledger_path a JSONL ledger and
    outcome_db_path an OutcomeDB; unset paths leave that piece in memory
    or disabled.
    """
    config = config or EngineConfig()
    if "store" not in overrides and config.store_path is not None:
        overrides["store"] = SQLiteStore(config.store_path)
    if "ledger" not in overrides and config.ledger_path is not None:
        overrides["ledger"] = Ledger(config.ledger_path)
    if "outcome_db" not in overrides and config.outcome_db_path is not None:
        overrides["outcome_db"] = OutcomeDB(config.outcome_db_path)
    return AdaptiveGuidanceEngine(config, **overrides)
