"""Tests for the trace replay runner."""

import json
from pathlib import Path

import run_guidance
from guidance_upstream.outcome_db import OutcomeDB


def _write_trace(path: Path) -> None:
    events = [
        {"learner_id": "a", "problem_id": "q1", "event_type": "hint_view", "timestamp": ts}
        for ts in (1_000, 2_000, 3_000)
    ]
    events.append({
        "learner_id": "a", "problem_id": "q1", "event_type": "execution",
        "timestamp": 4_000, "successful": True,
    })
    path.write_text("\n".join(json.dumps(e) for e in events) + "\n")


class TestReplayClock:
    def test_never_moves_backwards(self):
        clock = run_guidance.ReplayClock()
        clock.advance(500)
        clock.advance(100)
        assert clock() == 500


class TestRunner:
    def test_missing_trace(self, tmp_path):
        assert run_guidance.main(["--trace", str(tmp_path / "missing.jsonl")]) == 1

    def test_load_trace_sorts_by_timestamp(self, tmp_path):
        trace = tmp_path / "trace.jsonl"
        trace.write_text(
            '{"learner_id": "a", "problem_id": "q1", "event_type": "error", "timestamp": 9}\n'
            "\n"
            '{"learner_id": "a", "problem_id": "q1", "event_type": "error", "timestamp": 3}\n'
        )
        assert [e.timestamp for e in run_guidance.load_trace(trace)] == [3, 9]

    def test_replay_writes_summary(self, tmp_path):
        trace = tmp_path / "trace.jsonl"
        _write_trace(trace)
        problems = tmp_path / "problems.json"
        problems.write_text(json.dumps([{"problem_id": "q1", "title": "Select users", "concepts": ["select-basic"]}]))
        output = tmp_path / "summary.json"

        code = run_guidance.main([
            "--trace", str(trace),
            "--problems", str(problems),
            "--strategy", "static",
            "--artifacts-dir", str(tmp_path / "artifacts"),
            "--output", str(output),
        ])

        assert code == 0
        summary = json.loads(output.read_text())
        assert summary["events"] == 4
        assert summary["escalations"] == 2
        assert [g["rung"] for g in summary["guidance"]] == [2, 3]
        assert all(g["model"] == "template" for g in summary["guidance"])
        assert len(summary["episodes"]) == 1
        assert summary["episodes"][0]["final_rung"] == 3
        assert Path(summary["ledger_path"]).exists()
        assert OutcomeDB(summary["outcome_db"]).total_episodes() == 1
