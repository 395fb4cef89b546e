"""Guidance Kernel - deterministic half of the adaptive guidance engine.

The kernel decides WHEN to give more help and WHAT to ground it in:
- Interaction events (explicit, typed, replayable)
- Guidance ladder state machine (micro-hint -> explanation -> reflective note)
- Retrieval grounding (stable-hash anchors, keyword-overlap passages)
- Content generation seam with template fallback

Non-Negotiable Invariants:
1. The kernel never learns - thresholds are frozen configuration
2. Rungs never decrease
3. Same inputs produce the same grounding bundle
4. Grounding and generation failures degrade, never block escalation
5. Every escalation is logged with trigger and evidence
"""

from .errors import GuidanceError, EmptyBanditError, ContentGenerationError, StoreError
from .events import EventType, InteractionEvent, Problem, create_event, events_for_problem, now_ms
from .corpus import ReferenceCorpus, ReferenceRow, load_default_corpus, stable_hash
from .ladder import (
    RUNG_DEFINITIONS,
    EscalationDecision,
    EscalationEvidence,
    EscalationRecord,
    EscalationTrigger,
    GuidanceLadder,
    LadderState,
    NextAction,
    TriggerConfig,
    create_initial_state,
)
from .registry import LadderRegistry
from .retrieval import (
    GroundingBuilder,
    PassageIndex,
    PassageIndexStore,
    RetrievalBundle,
    build_passage_index,
    tokenize,
)
from .generation import (
    ContentGenerator,
    FallbackReason,
    GeneratedContent,
    GenerationConfig,
    GuidanceContentBuilder,
    LLMContentGenerator,
    create_generator,
)
from .storage import LearningStore, InMemoryStore, SQLiteStore
from .ledger import Ledger, LedgerEntry, create_ledger
from .config import EngineConfig

__version__ = "1.0.0"
__all__ = [
    # Errors
    "GuidanceError",
    "EmptyBanditError",
    "ContentGenerationError",
    "StoreError",
    # Events
    "EventType",
    "InteractionEvent",
    "Problem",
    "create_event",
    "events_for_problem",
    "now_ms",
    # Corpus
    "ReferenceCorpus",
    "ReferenceRow",
    "load_default_corpus",
    "stable_hash",
    # Ladder
    "RUNG_DEFINITIONS",
    "EscalationDecision",
    "EscalationEvidence",
    "EscalationRecord",
    "EscalationTrigger",
    "GuidanceLadder",
    "LadderState",
    "NextAction",
    "TriggerConfig",
    "create_initial_state",
    "LadderRegistry",
    # Retrieval
    "GroundingBuilder",
    "PassageIndex",
    "PassageIndexStore",
    "RetrievalBundle",
    "build_passage_index",
    "tokenize",
    # Generation
    "ContentGenerator",
    "FallbackReason",
    "GeneratedContent",
    "GenerationConfig",
    "GuidanceContentBuilder",
    "LLMContentGenerator",
    "create_generator",
    # Storage
    "LearningStore",
    "InMemoryStore",
    "SQLiteStore",
    # Ledger
    "Ledger",
    "LedgerEntry",
    "create_ledger",
    # Config
    "EngineConfig",
]
