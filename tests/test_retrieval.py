"""Tests for the reference corpus and the grounding builder.

Determinism is audit-critical: the same inputs must always yield the
same anchor row and the same bundle.
"""

import math
from unittest.mock import MagicMock

import pytest

from guidance_kernel.corpus import (
    SYNTHETIC_FALLBACK_ROW_ID,
    ReferenceCorpus,
    ReferenceRow,
    load_default_corpus,
    stable_hash,
)
from guidance_kernel.events import EventType, InteractionEvent, Problem
from guidance_kernel.retrieval import (
    UNKNOWN_CONCEPT_DESCRIPTION,
    GroundingBuilder,
    PassageIndexStore,
    build_passage_index,
    rank_passages,
    score_passage,
    tokenize,
)

PROBLEM = Problem(
    problem_id="q1",
    title="List customer orders",
    concepts=("joins",),
    schema_text="customers(id, name); orders(id, customer_id)",
)


def _event(event_type, ts, **fields):
    return InteractionEvent(
        event_id=f"evt-{ts}",
        learner_id="learner-1",
        problem_id=fields.pop("problem_id", "q1"),
        event_type=event_type,
        timestamp=ts,
        **fields,
    )


class TestStableHash:
    def test_known_values(self):
        assert stable_hash("") == 0
        assert stable_hash("a") == 97
        assert stable_hash("ab") == 3105

    def test_stays_within_32_bits(self):
        assert 0 <= stable_hash("x" * 500) < 2**32


class TestReferenceCorpus:
    """Tests for anchor selection and subtype handling."""

    def test_anchor_is_deterministic(self):
        corpus = load_default_corpus()
        anchors = {corpus.get_deterministic_anchor("undefined column", "learner-1|q1").row_id for _ in range(20)}
        assert len(anchors) == 1

    def test_alias_selects_same_anchor(self):
        corpus = load_default_corpus()
        seed = "learner-1|q1"
        assert (
            corpus.get_deterministic_anchor("no such column", seed)
            == corpus.get_deterministic_anchor("undefined column", seed)
        )

    def test_anchor_matches_subtype(self):
        row = load_default_corpus().get_deterministic_anchor("undefined table", "seed")
        assert row.error_subtype == "undefined table"

    def test_unknown_subtype_uses_fallback(self):
        corpus = load_default_corpus()
        assert corpus.canonicalize_subtype("something odd") == "incomplete query"
        assert corpus.canonicalize_subtype(None) == "incomplete query"
        row = corpus.get_deterministic_anchor("something odd", "seed")
        assert row.error_subtype == "incomplete query"

    def test_empty_corpus_returns_synthetic_row(self):
        row = ReferenceCorpus([]).get_deterministic_anchor("undefined column", "seed")
        assert row.row_id == SYNTHETIC_FALLBACK_ROW_ID
        assert row.feedback_target

    def test_fallback_subtype_missing_from_rows(self):
        corpus = ReferenceCorpus([ReferenceRow("r1", "misspelling", "fb", "outcome")])
        assert corpus.fallback_subtype == "misspelling"
        assert corpus.get_deterministic_anchor("anything", "s").row_id == "r1"

    def test_auto_escalation_eligibility(self):
        corpus = load_default_corpus()
        assert corpus.can_auto_escalate("undefined table")
        assert not corpus.can_auto_escalate("misspelling")
        assert not corpus.can_auto_escalate("incorrect having clause")

    def test_unmapped_subtype_has_no_alignment(self):
        corpus = load_default_corpus()
        assert corpus.get_alignment("syntax error") is None
        assert not corpus.can_auto_escalate("syntax error")
        assert not corpus.can_auto_escalate(None)
        assert corpus.get_alignment("No Such Table").subtype == "undefined table"
        assert corpus.resolve_subtype("syntax error") == "syntax error"

    def test_progressive_hint_text(self):
        corpus = load_default_corpus()
        row = corpus.get_deterministic_anchor("undefined table", "seed")
        level1 = corpus.progressive_hint_text("undefined table", 1, row)
        level3 = corpus.progressive_hint_text("undefined table", 3, row)
        assert level1 == "The table reference is likely incorrect."
        assert len(level3) > len(level1)
        assert "'user'" not in level3


class TestPassageScoring:
    """Tests for tokenization, scoring and ranking."""

    def test_tokenize(self):
        assert tokenize("SELECT a, b FROM Users;") == {"select", "from", "users"}
        assert tokenize("") == set()

    def test_score_passage(self):
        assert score_passage("select users from", {"select", "users"}) == pytest.approx(2 / math.sqrt(3))
        assert score_passage("select users", set()) == 0.0
        assert score_passage("a b", {"select"}) == 0.0

    def test_rank_excludes_zero_scores_and_keeps_ties_in_order(self):
        index = build_passage_index("book", ["joins combine tables", "unrelated words here", "tables joins combine"])
        ranked = rank_passages(index, "joins tables", top_k=5)
        assert [p.chunk_id for p in ranked] == ["book:p1:c1", "book:p3:c1"]

    def test_rank_without_index_or_query(self):
        assert rank_passages(None, "joins", 3) == []
        index = build_passage_index("book", ["joins"])
        assert rank_passages(index, "   ", 3) == []
        assert rank_passages(index, "joins", 0) == []

    def test_chunk_ids(self):
        index = build_passage_index("book", ["one two three four five", "six"], chunk_words=2)
        assert [p.chunk_id for p in index.passages] == [
            "book:p1:c1", "book:p1:c2", "book:p1:c3", "book:p2:c1",
        ]
        assert index.doc_count == 1
        with pytest.raises(ValueError):
            build_passage_index("book", ["x"], chunk_words=0)

    def test_reindexing_replaces_document(self):
        store = PassageIndexStore()
        first = store.add_document("book", ["old text"])
        second = store.add_document("book", ["new text", "more"])
        assert first.chunk_count == 1
        assert second.chunk_count == 2
        assert store.snapshot() is second


class TestGroundingBuilder:
    """Tests for build_bundle()."""

    def _interactions(self):
        return [
            _event(EventType.ERROR, 1_000, error_subtype_id="no such column"),
            _event(EventType.HINT_VIEW, 2_000, hint_level=1, engage_row_id="sql-engage:6"),
            _event(EventType.ERROR, 3_000, error_subtype_id="undefined column"),
            _event(EventType.ERROR, 4_000, error_subtype_id="no such column", problem_id="q2"),
        ]

    def test_bundle_is_deterministic(self):
        builder = GroundingBuilder()
        first = builder.build_bundle("learner-1", PROBLEM, self._interactions())
        second = builder.build_bundle("learner-1", PROBLEM, self._interactions())
        assert first == second
        assert first.to_json() == second.to_json()

    def test_bundle_contents(self):
        bundle = GroundingBuilder().build_bundle("learner-1", PROBLEM, self._interactions())

        assert bundle.last_error_subtype_id == "undefined column"
        assert bundle.anchor.error_subtype == "undefined column"
        assert bundle.retrieved_source_ids[0] == bundle.anchor.row_id
        assert "sql-engage:6" in bundle.retrieved_source_ids
        assert len(bundle.hint_history) == 1
        assert bundle.hint_history[0].source_id == "sql-engage:6"
        assert bundle.interaction_summary.errors == 2
        assert bundle.interaction_summary.retries == 1
        assert bundle.interaction_summary.time_spent_ms == 2_000
        assert not bundle.degraded

    def test_source_ids_are_unique_and_capped(self):
        store = PassageIndexStore()
        store.add_document("book", [f"joins combine customer orders page {i}" for i in range(30)])
        builder = GroundingBuilder(index_store=store)

        bundle = builder.build_bundle("learner-1", PROBLEM, self._interactions(), top_k=25)

        assert len(bundle.retrieved_source_ids) == 10
        assert len(set(bundle.retrieved_source_ids)) == 10
        assert len(bundle.pdf_passages) == 25
        assert dict(bundle.index_provenance)["chunk_count"] == 30

    def test_explicit_subtype_and_trigger_ids(self):
        bundle = GroundingBuilder().build_bundle(
            "learner-1", PROBLEM, [], last_error_subtype_id="no such table", trigger_interaction_ids=["evt-9"]
        )
        assert bundle.last_error_subtype_id == "undefined table"
        assert bundle.trigger_interaction_ids == ("evt-9",)
        assert bundle.interaction_summary.time_spent_ms == 0

    def test_concept_candidates(self):
        problem = Problem(problem_id="q1", title="t", concepts=("joins", "window-functions"))
        bundle = GroundingBuilder().build_bundle("learner-1", problem, [])

        assert bundle.concept_ids[:2] == ["joins", "window-functions"]
        unknown = bundle.concept_candidates[1]
        assert unknown.description == UNKNOWN_CONCEPT_DESCRIPTION
        assert len(bundle.concept_ids) == len(set(bundle.concept_ids))

    def test_failure_degrades_to_anchor_only(self):
        store = MagicMock()
        store.snapshot.side_effect = RuntimeError("index unavailable")
        builder = GroundingBuilder(index_store=store)

        bundle = builder.build_bundle("learner-1", PROBLEM, [], last_error_subtype_id="undefined table")

        assert bundle.degraded
        assert bundle.anchor is not None
        assert bundle.retrieved_source_ids == (bundle.anchor.row_id,)
        assert bundle.pdf_passages == ()
