"""Guidance Ladder - Deterministic escalation state machine.

Three rungs of instructional support for one (learner, problem) pair:
- Rung 1: Micro-hint (brief, contextual)
- Rung 2: Explanation (structured, source-grounded)
- Rung 3: Reflective note (concept tags, sources, summary, mistakes, example)

CRITICAL INVARIANTS:
1. Rungs only move forward (1 -> 2 -> 3); rung 3 is terminal
2. LadderState is immutable - escalate() and record_rung_attempt() return new states
3. Every escalation decision carries a reason and evidence
4. The ladder NEVER LEARNS - thresholds come from a frozen TriggerConfig
5. Trigger priority in determine_next_action() is an explicit ordered list
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from .corpus import ReferenceCorpus, load_default_corpus
from .events import EventType, InteractionEvent, events_for_problem, now_ms

logger = logging.getLogger(__name__)

MAX_RUNG = 3


@dataclass(frozen=True)
class RungDefinition:
    """Static description of one rung."""

    rung: int
    name: str
    description: str
    max_length: int
    must_include: tuple[str, ...] = field(default_factory=tuple)
    must_not_include: tuple[str, ...] = field(default_factory=tuple)


RUNG_DEFINITIONS: dict[int, RungDefinition] = {
    1: RungDefinition(
        rung=1,
        name="Micro-hint",
        description="Brief, contextual nudge pointing toward the solution",
        max_length=150,
        must_include=("contextual_clue",),
        must_not_include=("full_explanation", "step_by_step", "concept_definition"),
    ),
    2: RungDefinition(
        rung=2,
        name="Explanation",
        description="Structured guidance with source grounding",
        max_length=800,
        must_include=("concept_reference", "source_citation"),
        must_not_include=("full_solution", "copy_paste_answer"),
    ),
    3: RungDefinition(
        rung=3,
        name="Reflective Note",
        description="Textbook unit with concept tags and provenance",
        max_length=2000,
        must_include=("concept_tags", "source_refs", "summary", "common_mistakes", "minimal_example"),
    ),
}

# Rung 1 explanation markers (flagged only for content over 100 chars)
_EXPLANATION_MARKERS = [
    re.compile(r"\b(because|since|therefore|this is why)\b", re.I),
    re.compile(r"\b(step|first|second|third|finally)\b", re.I),
    re.compile(r"\b(concept|definition|means|refers to)\b", re.I),
    re.compile(r"[.!?]\s+[A-Z].{20,}[.!?]"),
]
_CITATION_MARKER = re.compile(r"\b(page|chapter|see|source|textbook|according to)\b", re.I)

# Rung 3 section markers, one pattern per required section
_REFLECTIVE_SECTIONS: list[tuple[str, re.Pattern[str]]] = [
    ("concept_tags", re.compile(r"\bconcepts?\b", re.I)),
    ("source_refs", re.compile(r"\bsources?\b", re.I)),
    ("summary", re.compile(r"\bsummary\b", re.I)),
    ("common_mistakes", re.compile(r"\bcommon mistakes?\b", re.I)),
    ("minimal_example", re.compile(r"\bexample\b", re.I)),
]


def rung_definition(rung: int) -> RungDefinition:
    """Look up a rung definition. Raises ValueError for rungs outside 1-3."""
    try:
        return RUNG_DEFINITIONS[rung]
    except KeyError:
        raise ValueError(f"Invalid rung: {rung} (expected 1, 2 or 3)") from None


class EscalationTrigger(Enum):
    """Named conditions that permit moving to the next rung."""

    LEARNER_REQUEST = "learner_request"
    RUNG_EXHAUSTED = "rung_exhausted"
    REPEATED_ERROR = "repeated_error"
    TIME_STUCK = "time_stuck"
    HINT_REOPENED = "hint_reopened"
    AUTO_ESCALATION_ELIGIBLE = "auto_escalation_eligible"


@dataclass(frozen=True)
class TriggerConfig:
    """Immutable trigger thresholds.

    INVARIANT: Thresholds cannot be modified at runtime. A strategy
    profile produces a new config rather than mutating this one.
    """

    rung1_exhausted: int = 3
    rung2_exhausted: int = 2
    repeated_error_count: int = 2
    repeated_error_window: int = 3
    time_stuck_ms: int = 5 * 60 * 1000
    reopen_count: int = 1

    def exhausted_threshold(self, rung: int) -> int:
        return self.rung1_exhausted if rung == 1 else self.rung2_exhausted

    @classmethod
    def from_profile(cls, profile: Any) -> TriggerConfig:
        """Derive thresholds from a strategy profile.

        The profile supplies `rung_exhausted`, `repeated_error` and
        `time_stuck_ms` trigger values; rung 2 exhausts one attempt
        earlier than rung 1.
        """
        rung_exhausted = max(1, int(profile.rung_exhausted))
        return cls(
            rung1_exhausted=rung_exhausted,
            rung2_exhausted=max(1, rung_exhausted - 1),
            repeated_error_count=max(1, int(profile.repeated_error)),
            time_stuck_ms=int(profile.time_stuck_ms),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for audit logging."""
        return {
            "rung1_exhausted": self.rung1_exhausted,
            "rung2_exhausted": self.rung2_exhausted,
            "repeated_error_count": self.repeated_error_count,
            "repeated_error_window": self.repeated_error_window,
            "time_stuck_ms": self.time_stuck_ms,
            "reopen_count": self.reopen_count,
        }


@dataclass(frozen=True)
class EscalationEvidence:
    """Snapshot of the signals behind one escalation."""

    error_count: int = 0
    time_spent_ms: int = 0
    hint_count: int = 0
    error_subtype_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_subtype_id": self.error_subtype_id,
            "error_count": self.error_count,
            "time_spent_ms": self.time_spent_ms,
            "hint_count": self.hint_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationEvidence:
        return cls(
            error_count=data.get("error_count", 0),
            time_spent_ms=data.get("time_spent_ms", 0),
            hint_count=data.get("hint_count", 0),
            error_subtype_id=data.get("error_subtype_id"),
        )

    @classmethod
    def from_interactions(
        cls,
        interactions: Iterable[InteractionEvent],
        problem_id: str,
        now: int,
    ) -> EscalationEvidence:
        """Summarize a problem's interactions as escalation evidence."""
        events = events_for_problem(interactions, problem_id)
        errors = [e for e in events if e.event_type == EventType.ERROR]
        hints = [e for e in events if e.event_type == EventType.HINT_VIEW]
        return cls(
            error_count=len(errors),
            time_spent_ms=max(0, now - events[0].timestamp) if events else 0,
            hint_count=len(hints),
            error_subtype_id=errors[-1].subtype if errors else None,
        )


@dataclass(frozen=True)
class EscalationRecord:
    """One entry of a ladder's escalation history."""

    from_rung: int
    to_rung: int
    trigger: EscalationTrigger
    timestamp: int
    evidence: EscalationEvidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_rung": self.from_rung,
            "to_rung": self.to_rung,
            "trigger": self.trigger.value,
            "timestamp": self.timestamp,
            "evidence": self.evidence.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationRecord:
        return cls(
            from_rung=data["from_rung"],
            to_rung=data["to_rung"],
            trigger=EscalationTrigger(data["trigger"]),
            timestamp=data["timestamp"],
            evidence=EscalationEvidence.from_dict(data.get("evidence", {})),
        )


@dataclass(frozen=True)
class LadderState:
    """Immutable guidance ladder state for one (learner, problem) pair.

    INVARIANTS:
    - current_rung is in {1, 2, 3} and never decreases
    - rung_attempts has one entry per rung
    - escalation_history is append-only
    """

    learner_id: str
    problem_id: str
    current_rung: int = 1
    rung_attempts: tuple[tuple[int, int], ...] = ((1, 0), (2, 0), (3, 0))
    escalation_history: tuple[EscalationRecord, ...] = field(default_factory=tuple)
    current_concept_ids: tuple[str, ...] = field(default_factory=tuple)
    grounded_in_sources: bool = False
    last_trigger: EscalationTrigger | None = None
    last_escalation_timestamp: int | None = None

    def attempts_at(self, rung: int) -> int:
        return dict(self.rung_attempts).get(rung, 0)

    @property
    def is_terminal(self) -> bool:
        return self.current_rung >= MAX_RUNG

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "current_rung": self.current_rung,
            "rung_attempts": {str(k): v for k, v in self.rung_attempts},
            "escalation_history": [r.to_dict() for r in self.escalation_history],
            "current_concept_ids": list(self.current_concept_ids),
            "grounded_in_sources": self.grounded_in_sources,
            "last_trigger": self.last_trigger.value if self.last_trigger else None,
            "last_escalation_timestamp": self.last_escalation_timestamp,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LadderState:
        """Deserialize from dictionary."""
        attempts = data.get("rung_attempts", {})
        last_trigger = data.get("last_trigger")
        return cls(
            learner_id=data["learner_id"],
            problem_id=data["problem_id"],
            current_rung=data.get("current_rung", 1),
            rung_attempts=tuple((r, int(attempts.get(str(r), 0))) for r in (1, 2, 3)),
            escalation_history=tuple(
                EscalationRecord.from_dict(r) for r in data.get("escalation_history", [])
            ),
            current_concept_ids=tuple(data.get("current_concept_ids", [])),
            grounded_in_sources=data.get("grounded_in_sources", False),
            last_trigger=EscalationTrigger(last_trigger) if last_trigger else None,
            last_escalation_timestamp=data.get("last_escalation_timestamp"),
        )


def create_initial_state(learner_id: str, problem_id: str) -> LadderState:
    """Fresh ladder state at rung 1 with zero attempts."""
    return LadderState(learner_id=learner_id, problem_id=problem_id)


@dataclass(frozen=True)
class EscalationDecision:
    """Immutable escalation decision with evidence.

    INVARIANT: Decisions always include a reason and evidence for auditability.
    """

    allowed: bool
    reason: str
    trigger: EscalationTrigger | None = None
    evidence: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "trigger": self.trigger.value if self.trigger else None,
            "evidence": dict(self.evidence),
        }

    @classmethod
    def allow(
        cls,
        reason: str,
        evidence: dict[str, Any] | None = None,
        trigger: EscalationTrigger | None = None,
    ) -> EscalationDecision:
        """Create an allow decision."""
        return cls(
            allowed=True,
            reason=reason,
            trigger=trigger,
            evidence=tuple(sorted((evidence or {}).items())),
        )

    @classmethod
    def deny(
        cls,
        reason: str,
        evidence: dict[str, Any] | None = None,
        trigger: EscalationTrigger | None = None,
    ) -> EscalationDecision:
        """Create a deny decision."""
        return cls(
            allowed=False,
            reason=reason,
            trigger=trigger,
            evidence=tuple(sorted((evidence or {}).items())),
        )


@dataclass(frozen=True)
class NextAction:
    """Result of determine_next_action()."""

    action: str  # "stay" | "escalate"
    rung: int
    reason: str
    trigger: EscalationTrigger | None = None
    evidence: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def should_escalate(self) -> bool:
        return self.action == "escalate"

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "rung": self.rung,
            "reason": self.reason,
            "trigger": self.trigger.value if self.trigger else None,
            "evidence": dict(self.evidence),
        }


# Fixed evaluation order after the explicit learner request
NEXT_ACTION_PRIORITY: tuple[EscalationTrigger, ...] = (
    EscalationTrigger.RUNG_EXHAUSTED,
    EscalationTrigger.REPEATED_ERROR,
    EscalationTrigger.TIME_STUCK,
    EscalationTrigger.AUTO_ESCALATION_ELIGIBLE,
)


class GuidanceLadder:
    """Deterministic guidance ladder controller.

    INVARIANTS:
    1. can_escalate() and determine_next_action() have no side effects
    2. Rung never decreases; nothing advances past rung 3
    3. Same (state, interactions, clock) -> same decision

    Usage:
        ladder = GuidanceLadder(TriggerConfig())
        state = create_initial_state("learner-1", "q1")
        state = ladder.record_rung_attempt(state)
        action = ladder.determine_next_action(state, interactions)
        if action.should_escalate:
            state = ladder.escalate(state, action.trigger, evidence, concept_ids)
    """

    def __init__(
        self,
        config: TriggerConfig | None = None,
        corpus: ReferenceCorpus | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the ladder.

        Args:
            config: Trigger thresholds. Uses defaults if not provided.
            corpus: Reference corpus for alias resolution and
                auto-escalation eligibility. Uses the bundled corpus if not provided.
            clock: Millisecond clock, injectable for replay and tests.
        """
        self._config = config or TriggerConfig()
        self._corpus = corpus or load_default_corpus()
        self._clock = clock
        self._checks: dict[EscalationTrigger, Callable[[LadderState, list[InteractionEvent]], EscalationDecision]] = {
            EscalationTrigger.LEARNER_REQUEST: self._check_learner_request,
            EscalationTrigger.RUNG_EXHAUSTED: self._check_rung_exhausted,
            EscalationTrigger.REPEATED_ERROR: self._check_repeated_error,
            EscalationTrigger.TIME_STUCK: self._check_time_stuck,
            EscalationTrigger.HINT_REOPENED: self._check_hint_reopened,
            EscalationTrigger.AUTO_ESCALATION_ELIGIBLE: self._check_auto_eligible,
        }

    @property
    def config(self) -> TriggerConfig:
        """Get the immutable config (read-only)."""
        return self._config

    @property
    def corpus(self) -> ReferenceCorpus:
        return self._corpus

    def now(self) -> int:
        return self._clock()

    def can_escalate(
        self,
        state: LadderState,
        trigger: EscalationTrigger | str,
        interactions: Sequence[InteractionEvent],
    ) -> EscalationDecision:
        """Evaluate exactly one trigger against the state and history.

        Interactions for other problems are ignored. Every trigger is
        denied at rung 3.
        """
        if isinstance(trigger, str):
            trigger = EscalationTrigger(trigger)

        if state.current_rung >= MAX_RUNG:
            return EscalationDecision.deny(
                f"Already at maximum rung ({MAX_RUNG})",
                {"current_rung": state.current_rung},
                trigger,
            )

        problem_events = events_for_problem(interactions, state.problem_id)
        decision = self._checks[trigger](state, problem_events)
        return replace(decision, trigger=trigger)

    def _check_learner_request(self, state: LadderState, events: list[InteractionEvent]) -> EscalationDecision:
        return EscalationDecision.allow("Learner explicitly requested escalation")

    def _check_rung_exhausted(self, state: LadderState, events: list[InteractionEvent]) -> EscalationDecision:
        attempts = state.attempts_at(state.current_rung)
        threshold = self._config.exhausted_threshold(state.current_rung)
        evidence = {"attempts": attempts, "threshold": threshold, "rung": state.current_rung}
        if attempts >= threshold:
            return EscalationDecision.allow(
                f"Rung {state.current_rung} exhausted ({attempts}/{threshold} attempts)",
                evidence,
            )
        return EscalationDecision.deny(
            f"Only {attempts}/{threshold} attempts at rung {state.current_rung}",
            evidence,
        )

    def _check_repeated_error(self, state: LadderState, events: list[InteractionEvent]) -> EscalationDecision:
        errors = [e for e in events if e.event_type == EventType.ERROR]
        recent = errors[-self._config.repeated_error_window:]
        if len(recent) < 2:
            return EscalationDecision.deny(
                "Not enough errors to detect repetition",
                {"error_count": len(recent)},
            )

        counts: dict[str, int] = {}
        for event in recent:
            key = self._corpus.resolve_subtype(event.subtype) or "unknown"
            counts[key] = counts.get(key, 0) + 1

        if max(counts.values()) >= self._config.repeated_error_count:
            return EscalationDecision.allow(
                f"Same error subtype repeated within last {self._config.repeated_error_window} attempts",
                {"subtype_counts": counts},
            )
        return EscalationDecision.deny("No repeated error subtype detected", {"subtype_counts": counts})

    def _check_time_stuck(self, state: LadderState, events: list[InteractionEvent]) -> EscalationDecision:
        if any(e.event_type == EventType.EXECUTION and e.successful for e in events):
            return EscalationDecision.deny("Successful execution found - not stuck")
        if not events:
            return EscalationDecision.deny("No interactions recorded")

        time_spent = self._clock() - events[0].timestamp
        threshold = self._config.time_stuck_ms
        evidence = {"time_spent_ms": time_spent, "threshold_ms": threshold}
        if time_spent >= threshold:
            return EscalationDecision.allow(
                f"No success for {round(time_spent / 1000)}s (threshold: {threshold // 1000}s)",
                evidence,
            )
        return EscalationDecision.deny(
            f"Only {round(time_spent / 1000)}s elapsed (threshold: {threshold // 1000}s)",
            evidence,
        )

    def _check_hint_reopened(self, state: LadderState, events: list[InteractionEvent]) -> EscalationDecision:
        dismissals = [e for e in events if e.event_type in (EventType.HINT_DISMISS, EventType.HELP_CLOSE)]
        if not dismissals:
            return EscalationDecision.deny("Help not reopened after dismissal")

        last_dismissal = dismissals[-1]
        reopened = [
            e for e in events
            if e.event_type in (EventType.HINT_REQUEST, EventType.HINT_VIEW)
            and e.timestamp > last_dismissal.timestamp
        ]
        if len(reopened) >= self._config.reopen_count:
            return EscalationDecision.allow(
                "Help reopened after previous dismissal",
                {"reopen_count": len(reopened), "dismissed_at": last_dismissal.timestamp},
            )
        return EscalationDecision.deny("Help not reopened after dismissal")

    def _check_auto_eligible(self, state: LadderState, events: list[InteractionEvent]) -> EscalationDecision:
        errors = [e for e in events if e.event_type == EventType.ERROR]
        subtype = errors[-1].subtype if errors else None
        if not subtype:
            return EscalationDecision.deny("No error subtype to evaluate")

        if self._corpus.can_auto_escalate(subtype):
            return EscalationDecision.allow(
                f"Auto-escalation eligible subtype: {subtype}",
                {"subtype": subtype, "verified": True},
            )
        return EscalationDecision.deny(
            f"Subtype {subtype} not verified for auto-escalation",
            {"subtype": subtype, "verified": False},
        )

    def escalate(
        self,
        state: LadderState,
        trigger: EscalationTrigger | str,
        evidence: EscalationEvidence,
        concept_ids: Iterable[str] = (),
    ) -> LadderState:
        """Advance exactly one rung. Returns the same state at rung 3."""
        if isinstance(trigger, str):
            trigger = EscalationTrigger(trigger)
        if state.current_rung >= MAX_RUNG:
            logger.debug("Escalation ignored at terminal rung for %s/%s", state.learner_id, state.problem_id)
            return state

        from_rung = state.current_rung
        to_rung = from_rung + 1
        timestamp = self._clock()
        record = EscalationRecord(
            from_rung=from_rung,
            to_rung=to_rung,
            trigger=trigger,
            timestamp=timestamp,
            evidence=evidence,
        )
        logger.info(
            "Escalated %s/%s: rung %d -> %d (%s)",
            state.learner_id, state.problem_id, from_rung, to_rung, trigger.value,
        )
        return replace(
            state,
            current_rung=to_rung,
            last_trigger=trigger,
            last_escalation_timestamp=timestamp,
            current_concept_ids=tuple(concept_ids),
            grounded_in_sources=to_rung >= 2,
            escalation_history=state.escalation_history + (record,),
        )

    def record_rung_attempt(self, state: LadderState) -> LadderState:
        """Increment the attempt counter for the current rung only."""
        attempts = tuple(
            (rung, count + 1 if rung == state.current_rung else count)
            for rung, count in state.rung_attempts
        )
        return replace(state, rung_attempts=attempts)

    def validate_content_for_rung(self, content: str, rung: int) -> list[str]:
        """Advisory validation of content against rung boundaries.

        Returns:
            List of violations; empty means valid.
        """
        definition = rung_definition(rung)
        violations: list[str] = []

        if len(content) > definition.max_length:
            violations.append(
                f"Content length ({len(content)}) exceeds rung {rung} maximum ({definition.max_length})"
            )

        if rung == 1 and len(content) > 100:
            if any(pattern.search(content) for pattern in _EXPLANATION_MARKERS):
                violations.append("Rung 1 content appears to contain explanation-length material")

        if rung == 2 and len(content) > 200 and not _CITATION_MARKER.search(content):
            violations.append("Rung 2 content should cite sources (page, chapter, etc.)")

        if rung == 3:
            for section, pattern in _REFLECTIVE_SECTIONS:
                if not pattern.search(content):
                    violations.append(f"Rung 3 content is missing required section: {section}")

        return violations

    def determine_next_action(
        self,
        state: LadderState,
        interactions: Sequence[InteractionEvent],
    ) -> NextAction:
        """Evaluate triggers in priority order; the first allowed one wins.

        An explicit learner request is only considered when the most
        recent interaction is an explanation view or carries
        `escalation_requested` metadata.
        """
        evaluators: list[EscalationTrigger] = []
        last = interactions[-1] if interactions else None
        if last is not None and (
            last.event_type == EventType.EXPLANATION_VIEW or last.escalation_requested
        ):
            evaluators.append(EscalationTrigger.LEARNER_REQUEST)
        evaluators.extend(NEXT_ACTION_PRIORITY)

        for trigger in evaluators:
            decision = self.can_escalate(state, trigger, interactions)
            logger.debug("Trigger %s: allowed=%s (%s)", trigger.value, decision.allowed, decision.reason)
            if decision.allowed:
                return NextAction(
                    action="escalate",
                    rung=state.current_rung + 1,
                    reason=decision.reason,
                    trigger=trigger,
                    evidence=decision.evidence,
                )

        return NextAction(action="stay", rung=state.current_rung, reason="No escalation triggers met")

    def current_rung_info(self, state: LadderState) -> dict[str, Any]:
        definition = rung_definition(state.current_rung)
        return {
            "rung": state.current_rung,
            "name": definition.name,
            "attempts_at_rung": state.attempts_at(state.current_rung),
            "can_escalate_to": state.current_rung + 1 if state.current_rung < MAX_RUNG else None,
            "grounded_in_sources": state.grounded_in_sources or state.current_rung >= 2,
        }
