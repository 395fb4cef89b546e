"""Persistent guidance episode outcome database.

INVARIANTS:
- External to kernel (upstream only)
- Append-only at the logical level
- No mutation of existing episodes
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class EpisodeRecord:
    """Immutable record of one learner/problem episode."""
    learner_id: str
    problem_id: str
    arm_id: str
    reward: float
    solved: bool
    components: dict[str, Any]
    final_rung: int
    created_at: str


class OutcomeDB:
    """
    Persistent episode store (SQLite).

    INVARIANTS:
    - External to kernel
    - Append-only at the logical level (we don't mutate existing episodes)
    - All queries are indexed for performance
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
                CREATE TABLE IF NOT EXISTS episodes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    learner_id TEXT NOT NULL,
                    problem_id TEXT NOT NULL,
                    arm_id TEXT NOT NULL,
                    reward REAL NOT NULL,
                    solved INTEGER NOT NULL,
                    components_json TEXT NOT NULL,
                    final_rung INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_eps_learner ON episodes(learner_id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_eps_problem ON episodes(problem_id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_eps_arm ON episodes(arm_id);")
            conn.commit()

    @staticmethod
    def now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    def add_episode(
        self,
        *,
        learner_id: str,
        problem_id: str,
        arm_id: str,
        reward: float,
        solved: bool,
        components: dict[str, Any],
        final_rung: int = 1,
        created_at: str | None = None,
    ) -> int:
        """Add an episode record. Returns the episode ID."""
        created_at = created_at or self.now_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO episodes(learner_id, problem_id, arm_id, reward, solved, components_json, final_rung, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    learner_id,
                    problem_id,
                    arm_id,
                    float(reward),
                    1 if solved else 0,
                    json.dumps(components, sort_keys=True),
                    int(final_rung),
                    created_at,
                ),
            )
            conn.commit()
            return cursor.lastrowid or 0

    def recent_episodes(
        self,
        *,
        learner_id: str | None = None,
        problem_id: str | None = None,
        arm_id: str | None = None,
        solved: bool | None = None,
        limit: int = 50,
    ) -> list[EpisodeRecord]:
        """Query recent episodes with optional filters."""
        where = []
        params: list[Any] = []
        if learner_id is not None:
            where.append("learner_id = ?")
            params.append(learner_id)
        if problem_id is not None:
            where.append("problem_id = ?")
            params.append(problem_id)
        if arm_id is not None:
            where.append("arm_id = ?")
            params.append(arm_id)
        if solved is not None:
            where.append("solved = ?")
            params.append(1 if solved else 0)

        sql = (
            "SELECT learner_id, problem_id, arm_id, reward, solved, components_json, final_rung, created_at "
            "FROM episodes"
        )
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))

        out: list[EpisodeRecord] = []
        with self._connect() as conn:
            for row in conn.execute(sql, params):
                learner, problem, arm, reward, solved_i, components_j, rung, created = row
                out.append(
                    EpisodeRecord(
                        learner_id=learner,
                        problem_id=problem,
                        arm_id=arm,
                        reward=reward,
                        solved=bool(solved_i),
                        components=json.loads(components_j),
                        final_rung=rung,
                        created_at=created,
                    )
                )
        return out

    def arm_reward_summary(self, arm_id: str) -> tuple[float, int]:
        """Return (mean reward, episode count) for an arm."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT AVG(reward), COUNT(*) FROM episodes WHERE arm_id = ?",
                (arm_id,),
            ).fetchone()
            if row and row[1]:
                return (row[0] or 0.0, row[1])
            return (0.0, 0)

    def total_episodes(self) -> int:
        """Total episode count."""
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM episodes").fetchone()
            return row[0] if row else 0
