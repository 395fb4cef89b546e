"""Ladder registry - Explicit owner of per-(learner, problem) ladder states.

The registry replaces ambient module-level state: callers hold a registry
instance and pass it through the call chain.

INVARIANTS:
1. One LadderState per (learner_id, problem_id)
2. Mutations for one learner are serialized by that learner's lock
3. Stored states are immutable; updates swap in a new state
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from .ladder import (
    EscalationEvidence,
    EscalationTrigger,
    GuidanceLadder,
    LadderState,
    create_initial_state,
)

logger = logging.getLogger(__name__)


class LadderRegistry:
    """Thread-safe registry of guidance ladder states.

    Usage:
        registry = LadderRegistry(GuidanceLadder())
        state = registry.get_or_create("learner-1", "q1")
        state = registry.record_attempt("learner-1", "q1")
    """

    def __init__(self, ladder: GuidanceLadder | None = None):
        self._ladder = ladder or GuidanceLadder()
        self._states: dict[tuple[str, str], LadderState] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def ladder(self) -> GuidanceLadder:
        return self._ladder

    def lock_for(self, learner_id: str) -> threading.RLock:
        """Exclusive (re-entrant) lock for one learner's mutations."""
        with self._locks_guard:
            lock = self._locks.get(learner_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[learner_id] = lock
            return lock

    def get(self, learner_id: str, problem_id: str) -> LadderState | None:
        return self._states.get((learner_id, problem_id))

    def get_or_create(self, learner_id: str, problem_id: str) -> LadderState:
        with self.lock_for(learner_id):
            key = (learner_id, problem_id)
            state = self._states.get(key)
            if state is None:
                state = create_initial_state(learner_id, problem_id)
                self._states[key] = state
                logger.debug("Created ladder state for %s/%s", learner_id, problem_id)
            return state

    def put(self, state: LadderState) -> None:
        """Store a state (e.g. one reloaded from persistence)."""
        with self.lock_for(state.learner_id):
            self._states[(state.learner_id, state.problem_id)] = state

    def record_attempt(self, learner_id: str, problem_id: str) -> LadderState:
        with self.lock_for(learner_id):
            key = (learner_id, problem_id)
            state = self._states.get(key) or create_initial_state(learner_id, problem_id)
            state = self._ladder.record_rung_attempt(state)
            self._states[key] = state
            return state

    def escalate(
        self,
        learner_id: str,
        problem_id: str,
        trigger: EscalationTrigger | str,
        evidence: EscalationEvidence,
        concept_ids: Iterable[str] = (),
    ) -> LadderState:
        with self.lock_for(learner_id):
            key = (learner_id, problem_id)
            state = self._states.get(key) or create_initial_state(learner_id, problem_id)
            state = self._ladder.escalate(state, trigger, evidence, concept_ids)
            self._states[key] = state
            return state

    def states_for_learner(self, learner_id: str) -> list[LadderState]:
        return [s for (lid, _), s in self._states.items() if lid == learner_id]

    def reset_learner(self, learner_id: str) -> None:
        with self.lock_for(learner_id):
            for key in [k for k in self._states if k[0] == learner_id]:
                del self._states[key]

    def clear_all(self) -> None:
        with self._locks_guard:
            self._states.clear()
            self._locks.clear()

    def __len__(self) -> int:
        return len(self._states)
