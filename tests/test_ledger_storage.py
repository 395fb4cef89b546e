"""Tests for the audit ledger, learning stores, outcome DB and configuration."""

import tempfile
from pathlib import Path

import pandas as pd
import pytest

from guidance_kernel.config import EngineConfig
from guidance_kernel.events import EventType, InteractionEvent
from guidance_kernel.ladder import (
    EscalationEvidence,
    EscalationRecord,
    EscalationTrigger,
    NextAction,
)
from guidance_kernel.ledger import Ledger, LedgerEntry, create_ledger
from guidance_kernel.retrieval import build_passage_index
from guidance_kernel.storage import InMemoryStore, SQLiteStore
from guidance_upstream.outcome_db import OutcomeDB
from guidance_upstream.report import arm_performance, learner_summary, load_episodes, render_markdown


def _record(trigger=EscalationTrigger.RUNG_EXHAUSTED):
    return EscalationRecord(
        from_rung=1,
        to_rung=2,
        trigger=trigger,
        timestamp=1_000,
        evidence=EscalationEvidence(error_count=2, error_subtype_id="undefined column"),
    )


class TestLedger:
    """Tests for the append-only ledger."""

    def test_entries_are_frozen(self):
        entry = LedgerEntry(entry_id="e0", entry_type="decision", learner_id="a", problem_id="q1", data=())
        with pytest.raises(AttributeError):
            entry.learner_id = "b"

    def test_replay_preserves_order(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = Ledger(Path(tmpdir) / "ledger.jsonl")
            ledger.record_decision("a", "q1", NextAction(action="stay", rung=1, reason="none"))
            ledger.record_escalation("a", "q1", _record())
            ledger.record_bandit_update("a", "fast-escalator", 0.75, 1)

            entries = ledger.replay()
            assert [e.entry_id for e in entries] == ["e000000", "e000001", "e000002"]
            assert [e.entry_type for e in entries] == ["decision", "escalation", "bandit_update"]
            escalation = dict(entries[1].data)
            assert escalation["trigger"] == "rung_exhausted"
            assert escalation["evidence"]["error_subtype_id"] == "undefined column"

    def test_entry_count_resumes_from_existing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger.jsonl"
            Ledger(path).record_bandit_update("a", "fast-escalator", 0.5, 1)
            entry = Ledger(path).record_bandit_update("a", "fast-escalator", 0.5, 2)
            assert entry.entry_id == "e000001"

    def test_summary(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = Ledger(Path(tmpdir) / "ledger.jsonl")
            ledger.record_escalation("a", "q1", _record())
            ledger.record_escalation("b", "q1", _record(EscalationTrigger.LEARNER_REQUEST))
            ledger.record_bandit_update("a", "fast-escalator", 0.2, 1)
            ledger.record_bandit_update("b", "slow-escalator", 0.6, 1)

            summary = ledger.get_summary()
            assert summary["escalations"] == 2
            assert summary["escalations_by_trigger"] == {"rung_exhausted": 1, "learner_request": 1}
            assert summary["mean_reward"] == pytest.approx(0.4)
            assert summary["learners"] == 2

    def test_create_ledger(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = create_ledger("run1", tmpdir)
            assert ledger.path.parent == Path(tmpdir) / ".guidance_ledger"
            assert ledger.path.name.startswith("run1_")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SQLiteStore(tmp_path / "store.db")


class TestLearningStore:
    """Behavior shared by both store backends."""

    def test_interactions_in_insertion_order(self, store):
        for ts in (300, 100, 200):
            store.save_interaction(
                InteractionEvent(
                    event_id=f"e{ts}", learner_id="a", problem_id="q1",
                    event_type=EventType.ERROR, timestamp=ts, error_subtype_id="misspelling",
                )
            )
        events = store.get_interactions_by_learner("a")
        assert [e.timestamp for e in events] == [300, 100, 200]
        assert events[0].error_subtype_id == "misspelling"
        assert store.get_interactions_by_learner("b") == []

    def test_textbook_units_replace_by_id(self, store):
        store.save_textbook_unit("a", {"id": "u1", "content": "old"})
        store.save_textbook_unit("a", {"id": "u1", "content": "new"})
        store.save_textbook_unit("a", {"id": "u2", "content": "other"})
        units = {u["id"]: u["content"] for u in store.get_textbook("a")}
        assert units == {"u1": "new", "u2": "other"}

    def test_missing_records_return_none(self, store):
        assert store.get_profile("ghost") is None
        assert store.get_bandit_state("ghost") is None
        assert store.get_pdf_index() is None
        assert store.get_textbook("ghost") == []

    def test_profile_and_bandit_state(self, store):
        store.save_profile("a", {"arm_id": "fast-escalator"})
        store.save_bandit_state("a", {"arms": {"fast-escalator": {"alpha": 2.0}}})
        assert store.get_profile("a") == {"arm_id": "fast-escalator"}
        assert store.get_bandit_state("a")["arms"]["fast-escalator"]["alpha"] == 2.0

    def test_pdf_index(self, store):
        index = build_passage_index("book", ["joins combine tables"])
        store.save_pdf_index(index)
        assert store.get_pdf_index() == index


class TestOutcomeDB:
    def test_add_and_query(self, tmp_path):
        db = OutcomeDB(tmp_path / "outcomes.db")
        db.add_episode(learner_id="a", problem_id="q1", arm_id="fast-escalator", reward=0.8,
                       solved=True, components={"error_reduction": 0.5}, final_rung=2)
        db.add_episode(learner_id="b", problem_id="q1", arm_id="slow-escalator", reward=0.4,
                       solved=False, components={}, final_rung=3)

        assert db.total_episodes() == 2
        assert db.arm_reward_summary("fast-escalator") == (pytest.approx(0.8), 1)
        assert db.arm_reward_summary("explanation-first") == (0.0, 0)

        solved = db.recent_episodes(solved=True)
        assert [e.learner_id for e in solved] == ["a"]
        assert solved[0].components == {"error_reduction": 0.5}


class TestReport:
    """Tests for the pandas episode report."""

    def _db(self, tmp_path):
        db = OutcomeDB(tmp_path / "outcomes.db")
        for learner, arm, reward, solved, rung in [
            ("a", "fast-escalator", 0.9, True, 2),
            ("a", "fast-escalator", 0.7, True, 3),
            ("b", "slow-escalator", 0.3, False, 1),
        ]:
            db.add_episode(learner_id=learner, problem_id="q1", arm_id=arm, reward=reward,
                           solved=solved, components={}, final_rung=rung)
        return db

    def test_arm_performance(self, tmp_path):
        episodes = load_episodes(self._db(tmp_path).db_path)
        perf = arm_performance(episodes)

        assert list(perf["arm_id"]) == ["fast-escalator", "slow-escalator"]
        fast = perf.iloc[0]
        assert fast["episodes"] == 2
        assert fast["mean_reward"] == pytest.approx(0.8)
        assert fast["solve_rate"] == pytest.approx(1.0)
        assert fast["mean_final_rung"] == pytest.approx(2.5)
        assert fast["profile_name"] == "Fast Escalator"

    def test_learner_summary(self, tmp_path):
        summary = learner_summary(load_episodes(self._db(tmp_path).db_path))
        assert dict(zip(summary["learner_id"], summary["episodes"])) == {"a": 2, "b": 1}

    def test_missing_database(self, tmp_path):
        episodes = load_episodes(tmp_path / "missing.db")
        assert episodes.empty
        assert list(arm_performance(episodes).columns) == [
            "arm_id", "profile_name", "episodes", "mean_reward", "solve_rate", "mean_final_rung",
        ]
        assert "*No episodes recorded*" in render_markdown(episodes)

    def test_render_markdown(self, tmp_path):
        episodes = load_episodes(self._db(tmp_path).db_path)
        text = render_markdown(episodes, {"escalations": 4, "escalations_by_trigger": {"time_stuck": 4}})
        assert "`fast-escalator` (Fast Escalator)" in text
        assert "**Total Episodes**: 3" in text
        assert "`time_stuck`: 4" in text

    def test_unknown_arm_keeps_its_id(self):
        episodes = pd.DataFrame([
            {"arm_id": "custom", "reward": 0.5, "solved": True, "final_rung": 1, "learner_id": "a"},
        ])
        assert arm_performance(episodes).iloc[0]["profile_name"] == "custom"


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.strategy == "bandit"
        assert config.top_k == 3
        assert not config.generation.enabled

    def test_validation(self):
        with pytest.raises(ValueError):
            EngineConfig(strategy="random")
        with pytest.raises(ValueError):
            EngineConfig(top_k=-1)

    def test_from_env(self):
        config = EngineConfig.from_env({
            "GUIDANCE_TOP_K": "5",
            "GUIDANCE_STRATEGY": "diagnostic",
            "GUIDANCE_SEED": "9",
            "GUIDANCE_LLM_PROVIDER": "anthropic",
            "GUIDANCE_LLM_TIMEOUT": "3.5",
            "GUIDANCE_LLM_CACHE": "false",
            "GUIDANCE_LEDGER_PATH": "/tmp/ledger.jsonl",
            "GUIDANCE_LOG_LEVEL": "debug",
        })
        assert config.top_k == 5
        assert config.strategy == "diagnostic"
        assert config.seed == 9
        assert config.generation.provider == "anthropic"
        assert config.generation.api_key_env == "ANTHROPIC_API_KEY"
        assert config.generation.timeout_seconds == 3.5
        assert not config.generation.cache_results
        assert config.ledger_path == Path("/tmp/ledger.jsonl")
        assert config.log_level == "DEBUG"

    def test_empty_env_values_are_ignored(self):
        config = EngineConfig.from_env({"GUIDANCE_TOP_K": ""})
        assert config.top_k == 3
