"""Learning store - Persistence collaborator interface.

The engine treats persistence as an abstract key-value store. Two
reference backends are provided: an in-memory store for tests and
single-process use, and a SQLite store with JSON columns.

INVARIANTS:
- Interactions are append-only
- Missing records return None or empty lists (not errors)
- Backend failures surface as StoreError
"""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .errors import StoreError
from .events import InteractionEvent
from .retrieval import PassageIndex


class LearningStore(ABC):
    """Abstract persistence collaborator."""

    @abstractmethod
    def get_interactions_by_learner(self, learner_id: str) -> list[InteractionEvent]:
        """All interactions for a learner in insertion order."""

    @abstractmethod
    def save_interaction(self, event: InteractionEvent) -> None:
        """Append one interaction."""

    @abstractmethod
    def get_textbook(self, learner_id: str) -> list[dict[str, Any]]:
        """Textbook units saved for a learner."""

    @abstractmethod
    def save_textbook_unit(self, learner_id: str, unit: dict[str, Any]) -> None:
        """Insert or replace a textbook unit (keyed by unit["id"])."""

    @abstractmethod
    def get_pdf_index(self) -> PassageIndex | None:
        """The stored passage index, if any."""

    @abstractmethod
    def save_pdf_index(self, index: PassageIndex) -> None:
        """Replace the stored passage index."""

    @abstractmethod
    def get_profile(self, learner_id: str) -> dict[str, Any] | None:
        """Learner profile, if one was saved."""

    @abstractmethod
    def save_profile(self, learner_id: str, profile: dict[str, Any]) -> None:
        """Insert or replace a learner profile."""

    @abstractmethod
    def get_bandit_state(self, learner_id: str) -> dict[str, Any] | None:
        """Serialized bandit state for a learner, if any."""

    @abstractmethod
    def save_bandit_state(self, learner_id: str, state: dict[str, Any]) -> None:
        """Insert or replace a learner's serialized bandit state."""


class InMemoryStore(LearningStore):
    """Dictionary-backed store. Thread-safe; contents are lost on exit."""

    def __init__(self):
        self._lock = threading.Lock()
        self._interactions: dict[str, list[InteractionEvent]] = {}
        self._textbooks: dict[str, dict[str, dict[str, Any]]] = {}
        self._profiles: dict[str, dict[str, Any]] = {}
        self._bandits: dict[str, dict[str, Any]] = {}
        self._pdf_index: PassageIndex | None = None

    def get_interactions_by_learner(self, learner_id: str) -> list[InteractionEvent]:
        with self._lock:
            return list(self._interactions.get(learner_id, []))

    def save_interaction(self, event: InteractionEvent) -> None:
        with self._lock:
            self._interactions.setdefault(event.learner_id, []).append(event)

    def get_textbook(self, learner_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(u) for u in self._textbooks.get(learner_id, {}).values()]

    def save_textbook_unit(self, learner_id: str, unit: dict[str, Any]) -> None:
        with self._lock:
            self._textbooks.setdefault(learner_id, {})[unit["id"]] = dict(unit)

    def get_pdf_index(self) -> PassageIndex | None:
        return self._pdf_index

    def save_pdf_index(self, index: PassageIndex) -> None:
        with self._lock:
            self._pdf_index = index

    def get_profile(self, learner_id: str) -> dict[str, Any] | None:
        with self._lock:
            profile = self._profiles.get(learner_id)
            return dict(profile) if profile is not None else None

    def save_profile(self, learner_id: str, profile: dict[str, Any]) -> None:
        with self._lock:
            self._profiles[learner_id] = dict(profile)

    def get_bandit_state(self, learner_id: str) -> dict[str, Any] | None:
        with self._lock:
            state = self._bandits.get(learner_id)
            return json.loads(json.dumps(state)) if state is not None else None

    def save_bandit_state(self, learner_id: str, state: dict[str, Any]) -> None:
        with self._lock:
            self._bandits[learner_id] = json.loads(json.dumps(state))


class SQLiteStore(LearningStore):
    """
    SQLite-backed store with JSON columns.

    Usage:
        store = SQLiteStore(Path("artifacts/learning.db"))
        store.save_interaction(event)
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS interactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    event_json TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_int_learner ON interactions(learner_id);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS textbook_units (
                    learner_id TEXT NOT NULL,
                    unit_id TEXT NOT NULL,
                    unit_json TEXT NOT NULL,
                    PRIMARY KEY (learner_id, unit_id)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                );
                """
            )
            conn.commit()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
                conn.commit()
                return rows
        except sqlite3.Error as e:
            raise StoreError(f"SQLite operation failed on {self.db_path}: {e}") from e

    def _get_kv(self, namespace: str, key: str) -> dict[str, Any] | None:
        rows = self._execute("SELECT value_json FROM kv WHERE namespace = ? AND key = ?", (namespace, key))
        return json.loads(rows[0][0]) if rows else None

    def _put_kv(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        self._execute(
            "INSERT OR REPLACE INTO kv(namespace, key, value_json) VALUES (?, ?, ?)",
            (namespace, key, json.dumps(value, sort_keys=True)),
        )

    def get_interactions_by_learner(self, learner_id: str) -> list[InteractionEvent]:
        rows = self._execute(
            "SELECT event_json FROM interactions WHERE learner_id = ? ORDER BY id ASC", (learner_id,)
        )
        return [InteractionEvent.from_json(r[0]) for r in rows]

    def save_interaction(self, event: InteractionEvent) -> None:
        self._execute(
            "INSERT INTO interactions(learner_id, event_json) VALUES (?, ?)",
            (event.learner_id, event.to_json()),
        )

    def get_textbook(self, learner_id: str) -> list[dict[str, Any]]:
        rows = self._execute(
            "SELECT unit_json FROM textbook_units WHERE learner_id = ? ORDER BY unit_id", (learner_id,)
        )
        return [json.loads(r[0]) for r in rows]

    def save_textbook_unit(self, learner_id: str, unit: dict[str, Any]) -> None:
        self._execute(
            "INSERT OR REPLACE INTO textbook_units(learner_id, unit_id, unit_json) VALUES (?, ?, ?)",
            (learner_id, unit["id"], json.dumps(unit, sort_keys=True)),
        )

    def get_pdf_index(self) -> PassageIndex | None:
        data = self._get_kv("pdf_index", "active")
        return PassageIndex.from_dict(data) if data else None

    def save_pdf_index(self, index: PassageIndex) -> None:
        self._put_kv("pdf_index", "active", index.to_dict())

    def get_profile(self, learner_id: str) -> dict[str, Any] | None:
        return self._get_kv("profile", learner_id)

    def save_profile(self, learner_id: str, profile: dict[str, Any]) -> None:
        self._put_kv("profile", learner_id, profile)

    def get_bandit_state(self, learner_id: str) -> dict[str, Any] | None:
        return self._get_kv("bandit", learner_id)

    def save_bandit_state(self, learner_id: str, state: dict[str, Any]) -> None:
        self._put_kv("bandit", learner_id, state)
