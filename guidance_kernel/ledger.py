"""Ledger - Append-only audit log of guidance decisions.

The Ledger records escalations, trigger decisions, content generation
and bandit updates for:
- Research replay
- Audit of why a learner received a given rung
- Offline analysis of strategy performance

INVARIANTS:
1. Ledger entries are immutable
2. Entries are append-only
3. Every escalation carries its trigger and evidence
4. Ledger supports deterministic replay
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .generation import GeneratedContent
from .ladder import EscalationRecord, NextAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable ledger entry.

    INVARIANT: Entries are frozen and cannot be modified.
    """

    entry_id: str
    entry_type: str  # "escalation" | "decision" | "generation" | "bandit_update"
    learner_id: str
    problem_id: str | None
    data: tuple[tuple[str, Any], ...]  # Immutable data dict
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "entry_id": self.entry_id,
            "entry_type": self.entry_type,
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        """Deserialize from dictionary."""
        entry_data = data.get("data", {})
        if isinstance(entry_data, dict):
            entry_data = tuple(sorted(entry_data.items()))

        return cls(
            entry_id=data["entry_id"],
            entry_type=data["entry_type"],
            learner_id=data["learner_id"],
            problem_id=data.get("problem_id"),
            data=entry_data,
            timestamp=data.get("timestamp", datetime.now(timezone.utc).isoformat()),
        )

    @classmethod
    def from_json(cls, json_str: str) -> LedgerEntry:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


class Ledger:
    """Append-only JSONL record of guidance decisions.

    Usage:
        ledger = Ledger("run.jsonl")

        ledger.record_escalation("learner-1", "q1", record)
        ledger.record_bandit_update("learner-1", "fast-escalator", 0.8, 3)

        for entry in ledger.replay():
            process(entry)
    """

    def __init__(self, path: Path | str):
        """Initialize ledger with file path.

        Args:
            path: Path to JSONL file for ledger entries.
        """
        self.path = Path(path)
        self._entry_count = 0
        self._lock = threading.Lock()

        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            with open(self.path) as f:
                self._entry_count = sum(1 for _ in f)

    def _append(
        self,
        entry_type: str,
        learner_id: str,
        problem_id: str | None,
        data: dict[str, Any],
    ) -> LedgerEntry:
        with self._lock:
            entry = LedgerEntry(
                entry_id=f"e{self._entry_count:06d}",
                entry_type=entry_type,
                learner_id=learner_id,
                problem_id=problem_id,
                data=tuple(sorted(data.items())),
            )
            with open(self.path, "a") as f:
                f.write(entry.to_json() + "\n")
            self._entry_count += 1
        return entry

    def record_escalation(self, learner_id: str, problem_id: str, record: EscalationRecord) -> LedgerEntry:
        """Record an escalation outcome event {from_rung, to_rung, trigger, timestamp, evidence}."""
        return self._append("escalation", learner_id, problem_id, record.to_dict())

    def record_decision(self, learner_id: str, problem_id: str, action: NextAction) -> LedgerEntry:
        return self._append("decision", learner_id, problem_id, action.to_dict())

    def record_generation(self, learner_id: str, problem_id: str, content: GeneratedContent) -> LedgerEntry:
        data = content.to_dict()
        data.pop("content")
        data["content_length"] = len(content.content)
        return self._append("generation", learner_id, problem_id, data)

    def record_bandit_update(
        self,
        learner_id: str,
        arm_id: str,
        reward: float,
        pull_count: int,
        problem_id: str | None = None,
    ) -> LedgerEntry:
        """Record a bandit update outcome event {arm_id, reward, pull_count}."""
        return self._append(
            "bandit_update",
            learner_id,
            problem_id,
            {"arm_id": arm_id, "reward": reward, "pull_count": pull_count},
        )

    def replay(self) -> list[LedgerEntry]:
        """Replay all entries from the ledger.

        Returns:
            List of all LedgerEntry objects in order.
        """
        return list(self.replay_iter())

    def replay_iter(self) -> Iterator[LedgerEntry]:
        """Iterate over entries (memory-efficient)."""
        if self.path.exists():
            with open(self.path) as f:
                for line in f:
                    line = line.strip()
                    if line:
                        yield LedgerEntry.from_json(line)

    def get_escalations(self, learner_id: str | None = None) -> list[LedgerEntry]:
        return [
            e for e in self.replay_iter()
            if e.entry_type == "escalation" and (learner_id is None or e.learner_id == learner_id)
        ]

    def get_summary(self) -> dict[str, Any]:
        """Get summary statistics of the ledger."""
        entries = self.replay()

        escalations = [e for e in entries if e.entry_type == "escalation"]
        updates = [e for e in entries if e.entry_type == "bandit_update"]
        generations = [e for e in entries if e.entry_type == "generation"]

        triggers: dict[str, int] = {}
        for e in escalations:
            trigger = dict(e.data).get("trigger", "unknown")
            triggers[trigger] = triggers.get(trigger, 0) + 1

        rewards = [dict(e.data).get("reward", 0.0) for e in updates]

        return {
            "total_entries": len(entries),
            "escalations": len(escalations),
            "escalations_by_trigger": triggers,
            "bandit_updates": len(updates),
            "mean_reward": sum(rewards) / len(rewards) if rewards else 0.0,
            "generations": len(generations),
            "fallback_generations": sum(1 for e in generations if dict(e.data).get("used_fallback")),
            "learners": len({e.learner_id for e in entries}),
        }


def create_ledger(run_id: str, base_dir: Path | str = ".") -> Ledger:
    """Create a ledger for a run.

    Args:
        run_id: Run identifier.
        base_dir: Base directory for ledger files.

    Returns:
        Ledger instance.
    """
    base_dir = Path(base_dir)
    ledger_dir = base_dir / ".guidance_ledger"
    ledger_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    ledger_path = ledger_dir / f"{run_id}_{timestamp}.jsonl"

    return Ledger(ledger_path)
