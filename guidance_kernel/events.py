"""Interaction events - Explicit, typed learner activity records.

Events are the only input the ladder and the grounding builder read.
They are immutable and serializable to JSON for replay.

Timestamps are integer milliseconds since the Unix epoch.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


class EventType(Enum):
    """Kinds of learner interaction."""

    CODE_CHANGE = "code_change"
    EXECUTION = "execution"
    ERROR = "error"
    HINT_REQUEST = "hint_request"
    HINT_VIEW = "hint_view"
    HINT_DISMISS = "hint_dismiss"
    HELP_CLOSE = "help_close"
    EXPLANATION_VIEW = "explanation_view"
    LLM_GENERATE = "llm_generate"
    TEXTBOOK_ADD = "textbook_add"
    TEXTBOOK_UPDATE = "textbook_update"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class InteractionEvent:
    """Immutable learner interaction event."""

    event_id: str
    learner_id: str
    problem_id: str
    event_type: EventType
    timestamp: int
    error_subtype_id: str | None = None
    engage_subtype: str | None = None
    engage_row_id: str | None = None
    hint_text: str | None = None
    hint_level: int | None = None
    help_request_index: int | None = None
    successful: bool | None = None
    metadata: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def subtype(self) -> str | None:
        """Error subtype label, preferring the reference-corpus label."""
        return self.engage_subtype or self.error_subtype_id

    @property
    def escalation_requested(self) -> bool:
        return bool(dict(self.metadata).get("escalation_requested"))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "event_id": self.event_id,
            "learner_id": self.learner_id,
            "problem_id": self.problem_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "error_subtype_id": self.error_subtype_id,
            "engage_subtype": self.engage_subtype,
            "engage_row_id": self.engage_row_id,
            "hint_text": self.hint_text,
            "hint_level": self.hint_level,
            "help_request_index": self.help_request_index,
            "successful": self.successful,
            "metadata": dict(self.metadata),
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InteractionEvent:
        """Deserialize from dictionary."""
        metadata = data.get("metadata") or {}
        if isinstance(metadata, dict):
            metadata = tuple(sorted(metadata.items()))
        return cls(
            event_id=data.get("event_id") or f"evt_{uuid.uuid4().hex[:12]}",
            learner_id=data["learner_id"],
            problem_id=data["problem_id"],
            event_type=EventType(data["event_type"]),
            timestamp=int(data["timestamp"]),
            error_subtype_id=data.get("error_subtype_id"),
            engage_subtype=data.get("engage_subtype"),
            engage_row_id=data.get("engage_row_id"),
            hint_text=data.get("hint_text"),
            hint_level=data.get("hint_level"),
            help_request_index=data.get("help_request_index"),
            successful=data.get("successful"),
            metadata=metadata,
        )

    @classmethod
    def from_json(cls, json_str: str) -> InteractionEvent:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


def create_event(
    event_type: EventType | str,
    *,
    learner_id: str,
    problem_id: str,
    timestamp: int | None = None,
    metadata: dict[str, Any] | None = None,
    **fields: Any,
) -> InteractionEvent:
    """Create an event with a fresh id and the current time by default."""
    if isinstance(event_type, str):
        event_type = EventType(event_type)
    return InteractionEvent(
        event_id=f"evt_{uuid.uuid4().hex[:12]}",
        learner_id=learner_id,
        problem_id=problem_id,
        event_type=event_type,
        timestamp=now_ms() if timestamp is None else timestamp,
        metadata=tuple(sorted((metadata or {}).items())),
        **fields,
    )


def events_for_problem(
    interactions: Iterable[InteractionEvent],
    problem_id: str,
) -> list[InteractionEvent]:
    """Events for one problem in timestamp order (stable for equal times)."""
    return sorted(
        (e for e in interactions if e.problem_id == problem_id),
        key=lambda e: e.timestamp,
    )


@dataclass(frozen=True)
class Problem:
    """An exercise the learner works on."""

    problem_id: str
    title: str
    concepts: tuple[str, ...] = field(default_factory=tuple)
    schema_text: str = ""
    difficulty: str = "beginner"

    def to_dict(self) -> dict[str, Any]:
        return {
            "problem_id": self.problem_id,
            "title": self.title,
            "concepts": list(self.concepts),
            "schema_text": self.schema_text,
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Problem:
        return cls(
            problem_id=data["problem_id"],
            title=data.get("title", ""),
            concepts=tuple(data.get("concepts", [])),
            schema_text=data.get("schema_text", ""),
            difficulty=data.get("difficulty", "beginner"),
        )
