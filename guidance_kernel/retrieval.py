"""Retrieval grounding - Deterministic source bundles for rung 2/3 content.

The grounding builder is a pure function of (learner, problem,
interactions, passage index snapshot). It:
- Picks a canonical reference row (the anchor) by stable hash
- Resolves hint history to source ids
- Scores indexed passages by keyword overlap (no embeddings)

INVARIANTS:
1. Same inputs -> same bundle (audit-critical for replay)
2. Bundles are immutable
3. A grounding failure never blocks escalation - it degrades
4. Passage index snapshots are immutable; publishing swaps the reference
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .corpus import DEFAULT_SUBTYPE_FALLBACK, ReferenceCorpus, ReferenceRow, load_default_corpus
from .events import EventType, InteractionEvent, Problem, events_for_problem

logger = logging.getLogger(__name__)

MAX_RETRIEVED_SOURCE_IDS = 10
HINT_HISTORY_LENGTH = 3
UNKNOWN_CONCEPT_DESCRIPTION = "Not found in provided sources."

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> set[str]:
    """Lowercase, strip non-alphanumerics, keep tokens of 3+ chars."""
    cleaned = _NON_ALNUM_RE.sub(" ", text.lower())
    return {token for token in cleaned.split() if len(token) >= 3}


@dataclass(frozen=True)
class Passage:
    """One indexed text chunk of a source document."""

    chunk_id: str
    doc_id: str
    page: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"chunk_id": self.chunk_id, "doc_id": self.doc_id, "page": self.page, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Passage:
        return cls(
            chunk_id=data["chunk_id"],
            doc_id=data["doc_id"],
            page=int(data.get("page", 0)),
            text=data.get("text", ""),
        )


@dataclass(frozen=True)
class PassageIndex:
    """Immutable passage index snapshot."""

    index_id: str
    passages: tuple[Passage, ...] = field(default_factory=tuple)
    schema_version: str = "passage-index-v1"

    @property
    def doc_count(self) -> int:
        return len({p.doc_id for p in self.passages})

    @property
    def chunk_count(self) -> int:
        return len(self.passages)

    def provenance(self) -> dict[str, Any]:
        return {
            "index_id": self.index_id,
            "schema_version": self.schema_version,
            "doc_count": self.doc_count,
            "chunk_count": self.chunk_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "index_id": self.index_id,
            "schema_version": self.schema_version,
            "passages": [p.to_dict() for p in self.passages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PassageIndex:
        return cls(
            index_id=data["index_id"],
            passages=tuple(Passage.from_dict(p) for p in data.get("passages", [])),
            schema_version=data.get("schema_version", "passage-index-v1"),
        )


def build_passage_index(
    doc_id: str,
    pages: Sequence[str],
    *,
    chunk_words: int = 120,
    base: PassageIndex | None = None,
) -> PassageIndex:
    """Chunk page texts into passages and return a new index snapshot.

    Passages from `base` are kept unless they belong to `doc_id`, which
    is replaced wholesale.

    Args:
        doc_id: Identifier of the source document.
        pages: Extracted text, one string per page (1-based page numbers).
        chunk_words: Maximum words per passage.
        base: Existing snapshot to extend. Never modified.
    """
    if chunk_words < 1:
        raise ValueError(f"chunk_words must be positive, got {chunk_words}")

    passages = [p for p in (base.passages if base else ()) if p.doc_id != doc_id]
    for page_number, page_text in enumerate(pages, start=1):
        words = page_text.split()
        for chunk_number, start in enumerate(range(0, len(words), chunk_words), start=1):
            passages.append(
                Passage(
                    chunk_id=f"{doc_id}:p{page_number}:c{chunk_number}",
                    doc_id=doc_id,
                    page=page_number,
                    text=" ".join(words[start:start + chunk_words]),
                )
            )

    digest = hashlib.sha256("|".join(p.chunk_id for p in passages).encode()).hexdigest()[:12]
    return PassageIndex(index_id=f"idx_{digest}", passages=tuple(passages))


class PassageIndexStore:
    """Holder of the current passage index snapshot.

    Readers call snapshot() and work against an immutable value, so an
    in-flight read never observes a partially built index.
    """

    def __init__(self, index: PassageIndex | None = None):
        self._index = index
        self._write_lock = threading.Lock()

    def snapshot(self) -> PassageIndex | None:
        return self._index

    def publish(self, index: PassageIndex) -> None:
        with self._write_lock:
            self._index = index
        logger.info("Published passage index %s (%d chunks)", index.index_id, index.chunk_count)

    def add_document(self, doc_id: str, pages: Sequence[str], chunk_words: int = 120) -> PassageIndex:
        """Build a new snapshot including `doc_id` and publish it."""
        with self._write_lock:
            index = build_passage_index(doc_id, pages, chunk_words=chunk_words, base=self._index)
            self._index = index
        logger.info("Indexed document %s: %d chunks total", doc_id, index.chunk_count)
        return index

    def clear(self) -> None:
        with self._write_lock:
            self._index = None


@dataclass(frozen=True)
class ScoredPassage:
    chunk_id: str
    doc_id: str
    page: int
    text: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "doc_id": self.doc_id,
            "page": self.page,
            "text": self.text,
            "score": self.score,
        }


def score_passage(passage_text: str, query_tokens: set[str]) -> float:
    """matches / sqrt(passage token count); 0 when either side is empty."""
    if not query_tokens:
        return 0.0
    tokens = tokenize(passage_text)
    if not tokens:
        return 0.0
    matches = len(tokens & query_tokens)
    return matches / math.sqrt(len(tokens))


def rank_passages(index: PassageIndex | None, query: str, top_k: int) -> list[ScoredPassage]:
    """Top-k passages by score, ties in index order, zero scores excluded."""
    if index is None or top_k <= 0 or not query.strip():
        return []
    query_tokens = tokenize(query)
    scored = [
        ScoredPassage(p.chunk_id, p.doc_id, p.page, p.text, score_passage(p.text, query_tokens))
        for p in index.passages
    ]
    # sorted() is stable, so equal scores keep index order
    ranked = sorted((s for s in scored if s.score > 0), key=lambda s: -s.score)
    return ranked[:top_k]


@dataclass(frozen=True)
class HintHistoryEntry:
    hint_level: int
    hint_text: str
    interaction_id: str
    help_request_index: int | None = None
    source_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hint_level": self.hint_level,
            "hint_text": self.hint_text,
            "interaction_id": self.interaction_id,
            "help_request_index": self.help_request_index,
            "source_id": self.source_id,
        }


@dataclass(frozen=True)
class ConceptCandidate:
    concept_id: str
    name: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.concept_id, "name": self.name, "description": self.description}


@dataclass(frozen=True)
class InteractionSummary:
    errors: int = 0
    retries: int = 0
    time_spent_ms: int = 0
    hint_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors": self.errors,
            "retries": self.retries,
            "time_spent_ms": self.time_spent_ms,
            "hint_count": self.hint_count,
        }


@dataclass(frozen=True)
class RetrievalBundle:
    """Immutable grounding bundle backing one rung 2/3 response.

    `degraded` is set when the bundle was built on the fallback path.
    """

    learner_id: str
    problem_id: str
    last_error_subtype_id: str
    problem_title: str = ""
    schema_text: str = ""
    hint_history: tuple[HintHistoryEntry, ...] = field(default_factory=tuple)
    anchor: ReferenceRow | None = None
    concept_candidates: tuple[ConceptCandidate, ...] = field(default_factory=tuple)
    interaction_summary: InteractionSummary = field(default_factory=InteractionSummary)
    retrieved_source_ids: tuple[str, ...] = field(default_factory=tuple)
    trigger_interaction_ids: tuple[str, ...] = field(default_factory=tuple)
    pdf_passages: tuple[ScoredPassage, ...] = field(default_factory=tuple)
    index_provenance: tuple[tuple[str, Any], ...] | None = None
    degraded: bool = False

    @property
    def concept_ids(self) -> list[str]:
        return [c.concept_id for c in self.concept_candidates]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "problem_title": self.problem_title,
            "schema_text": self.schema_text,
            "last_error_subtype_id": self.last_error_subtype_id,
            "hint_history": [h.to_dict() for h in self.hint_history],
            "anchor": self.anchor.to_dict() if self.anchor else None,
            "concept_candidates": [c.to_dict() for c in self.concept_candidates],
            "interaction_summary": self.interaction_summary.to_dict(),
            "retrieved_source_ids": list(self.retrieved_source_ids),
            "trigger_interaction_ids": list(self.trigger_interaction_ids),
            "pdf_passages": [p.to_dict() for p in self.pdf_passages],
            "index_provenance": dict(self.index_provenance) if self.index_provenance else None,
            "degraded": self.degraded,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)


def _dedupe(values: Iterable[str], cap: int) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return tuple(seen[:cap])


class GroundingBuilder:
    """Deterministic retrieval bundle builder.

    Usage:
        builder = GroundingBuilder(corpus, PassageIndexStore())
        bundle = builder.build_bundle("learner-1", problem, interactions)
    """

    def __init__(
        self,
        corpus: ReferenceCorpus | None = None,
        index_store: PassageIndexStore | None = None,
        max_source_ids: int = MAX_RETRIEVED_SOURCE_IDS,
    ):
        self._corpus = corpus or load_default_corpus()
        self._index_store = index_store or PassageIndexStore()
        self._max_source_ids = max_source_ids

    @property
    def corpus(self) -> ReferenceCorpus:
        return self._corpus

    @property
    def index_store(self) -> PassageIndexStore:
        return self._index_store

    def get_deterministic_anchor(self, subtype: str | None, seed: str) -> ReferenceRow:
        return self._corpus.get_deterministic_anchor(subtype, seed)

    def build_bundle(
        self,
        learner_id: str,
        problem: Problem,
        interactions: Sequence[InteractionEvent],
        last_error_subtype_id: str | None = None,
        top_k: int = 3,
        trigger_interaction_ids: Sequence[str] = (),
    ) -> RetrievalBundle:
        """Build a grounding bundle; never raises.

        On failure the bundle degrades to anchor-only, or to an empty
        bundle when even the anchor cannot be resolved.
        """
        try:
            return self._build(
                learner_id, problem, interactions, last_error_subtype_id, top_k, trigger_interaction_ids
            )
        except Exception as e:
            logger.warning(
                "Grounding failed for %s/%s, degrading to anchor-only: %s",
                learner_id, getattr(problem, "problem_id", "?"), e,
            )
            return self._degraded_bundle(learner_id, problem, last_error_subtype_id)

    def _build(
        self,
        learner_id: str,
        problem: Problem,
        interactions: Sequence[InteractionEvent],
        last_error_subtype_id: str | None,
        top_k: int,
        trigger_interaction_ids: Sequence[str],
    ) -> RetrievalBundle:
        events = events_for_problem(interactions, problem.problem_id)
        errors = [e for e in events if e.event_type == EventType.ERROR]
        latest_subtype = errors[-1].subtype if errors else None
        subtype = self._corpus.canonicalize_subtype(
            last_error_subtype_id or latest_subtype or DEFAULT_SUBTYPE_FALLBACK
        )

        hint_events = [e for e in events if e.event_type == EventType.HINT_VIEW][-HINT_HISTORY_LENGTH:]
        hint_history = tuple(
            self._hint_entry(learner_id, problem.problem_id, subtype, event, position)
            for position, event in enumerate(hint_events)
        )

        anchor = self._corpus.get_deterministic_anchor(subtype, f"{learner_id}|{problem.problem_id}|{subtype}")
        candidates = self._concept_candidates(problem, subtype)

        query = " ".join(
            value.strip()
            for value in [subtype, problem.title] + [c.name for c in candidates]
            if value and value.strip()
        )
        index = self._index_store.snapshot()
        passages = tuple(rank_passages(index, query, top_k))

        source_ids = _dedupe(
            [anchor.row_id]
            + [h.source_id for h in hint_history if h.source_id]
            + [p.chunk_id for p in passages]
            + [row.row_id for row in self._corpus.rows_for_subtype(subtype)[:2]],
            self._max_source_ids,
        )

        error_count = len(errors)
        summary = InteractionSummary(
            errors=error_count,
            retries=max(0, error_count - 1),
            time_spent_ms=events[-1].timestamp - events[0].timestamp if events else 0,
            hint_count=len(hint_events),
        )

        bundle = RetrievalBundle(
            learner_id=learner_id,
            problem_id=problem.problem_id,
            last_error_subtype_id=subtype,
            problem_title=problem.title,
            schema_text=problem.schema_text,
            hint_history=hint_history,
            anchor=anchor,
            concept_candidates=candidates,
            interaction_summary=summary,
            retrieved_source_ids=source_ids,
            trigger_interaction_ids=tuple(trigger_interaction_ids),
            pdf_passages=passages,
            index_provenance=tuple(sorted(index.provenance().items())) if index else None,
        )
        logger.debug(
            "Built bundle for %s/%s: subtype=%s sources=%d passages=%d",
            learner_id, problem.problem_id, subtype, len(source_ids), len(passages),
        )
        return bundle

    def _hint_entry(
        self,
        learner_id: str,
        problem_id: str,
        subtype: str,
        event: InteractionEvent,
        position: int,
    ) -> HintHistoryEntry:
        level = event.hint_level or min(position + 1, 3)
        hint_subtype = self._corpus.canonicalize_subtype(event.engage_subtype or subtype)
        fallback_row = self._corpus.get_deterministic_anchor(
            hint_subtype, f"{learner_id}|{problem_id}|{hint_subtype}"
        )
        source_id = (event.engage_row_id or "").strip() or fallback_row.row_id
        hint_text = event.hint_text or self._corpus.progressive_hint_text(hint_subtype, level, fallback_row)
        return HintHistoryEntry(
            hint_level=level,
            hint_text=hint_text,
            interaction_id=event.event_id,
            help_request_index=event.help_request_index,
            source_id=source_id,
        )

    def _concept_candidates(self, problem: Problem, subtype: str) -> tuple[ConceptCandidate, ...]:
        concept_ids = _dedupe(
            list(problem.concepts) + self._corpus.concept_ids_for_subtype(subtype),
            cap=len(problem.concepts) + 32,
        )
        candidates = []
        for concept_id in concept_ids:
            concept = self._corpus.get_concept(concept_id)
            if concept is None:
                candidates.append(ConceptCandidate(concept_id, concept_id, UNKNOWN_CONCEPT_DESCRIPTION))
            else:
                candidates.append(ConceptCandidate(concept.concept_id, concept.name, concept.description))
        return tuple(candidates)

    def _degraded_bundle(
        self,
        learner_id: str,
        problem: Any,
        last_error_subtype_id: str | None,
    ) -> RetrievalBundle:
        problem_id = getattr(problem, "problem_id", "") or ""
        subtype = DEFAULT_SUBTYPE_FALLBACK
        try:
            subtype = self._corpus.canonicalize_subtype(last_error_subtype_id)
            anchor = self._corpus.get_deterministic_anchor(subtype, f"{learner_id}|{problem_id}|{subtype}")
        except Exception as e:
            logger.warning("Anchor lookup failed for %s/%s, returning empty bundle: %s", learner_id, problem_id, e)
            return RetrievalBundle(
                learner_id=learner_id,
                problem_id=problem_id,
                last_error_subtype_id=subtype,
                degraded=True,
            )
        return RetrievalBundle(
            learner_id=learner_id,
            problem_id=problem_id,
            last_error_subtype_id=subtype,
            anchor=anchor,
            retrieved_source_ids=(anchor.row_id,),
            degraded=True,
        )
