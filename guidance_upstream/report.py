"""Tabular views over the episode outcome database."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

import pandas as pd

from guidance_upstream.strategies import ESCALATION_PROFILES

ARM_COLUMNS = ["arm_id", "profile_name", "episodes", "mean_reward", "solve_rate", "mean_final_rung"]


def get_db_connection(db_path: Path) -> sqlite3.Connection:
    """Get a read-only connection to a SQLite database."""
    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}")
    return sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)


def load_episodes(db_path: Path | str) -> pd.DataFrame:
    """All episodes, newest first. Empty frame if the DB does not exist."""
    db_path = Path(db_path)
    if not db_path.exists():
        return pd.DataFrame()

    conn = get_db_connection(db_path)
    try:
        df = pd.read_sql_query("SELECT * FROM episodes ORDER BY id DESC", conn)
    finally:
        conn.close()
    if not df.empty:
        df["created_at"] = pd.to_datetime(df["created_at"])
        df["solved"] = df["solved"].astype(bool)
    return df


def arm_performance(episodes: pd.DataFrame) -> pd.DataFrame:
    """Per-arm episode count, mean reward, solve rate and mean final rung."""
    if episodes.empty:
        return pd.DataFrame(columns=ARM_COLUMNS)

    grouped = episodes.groupby("arm_id").agg(
        episodes=("reward", "size"),
        mean_reward=("reward", "mean"),
        solve_rate=("solved", "mean"),
        mean_final_rung=("final_rung", "mean"),
    ).reset_index()
    names = {p.profile_id: p.name for p in ESCALATION_PROFILES}
    grouped["profile_name"] = grouped["arm_id"].map(names).fillna(grouped["arm_id"])
    return grouped[ARM_COLUMNS].sort_values("mean_reward", ascending=False).reset_index(drop=True)


def learner_summary(episodes: pd.DataFrame) -> pd.DataFrame:
    """Per-learner episode count and mean reward."""
    if episodes.empty:
        return pd.DataFrame(columns=["learner_id", "episodes", "mean_reward"])
    return episodes.groupby("learner_id").agg(
        episodes=("reward", "size"),
        mean_reward=("reward", "mean"),
    ).reset_index()


def render_markdown(episodes: pd.DataFrame, ledger_summary: dict[str, Any] | None = None) -> str:
    """Markdown report of arm performance."""
    lines = ["## Adaptive Guidance Report", ""]
    if episodes.empty:
        lines.append("*No episodes recorded*")
        return "\n".join(lines) + "\n"

    lines += [
        "### Strategy Profile Performance",
        "",
        "| Profile | Episodes | Mean Reward | Solve Rate | Mean Final Rung |",
        "|---------|----------|-------------|------------|-----------------|",
    ]
    for row in arm_performance(episodes).itertuples(index=False):
        lines.append(
            f"| `{row.arm_id}` ({row.profile_name}) | {row.episodes} | {row.mean_reward:.3f} "
            f"| {row.solve_rate:.1%} | {row.mean_final_rung:.2f} |"
        )
    lines += ["", f"**Total Episodes**: {len(episodes)}", f"**Learners**: {episodes['learner_id'].nunique()}"]

    if ledger_summary:
        lines += [
            "",
            "### Ledger",
            f"- **Escalations**: {ledger_summary.get('escalations', 0)}",
            f"- **Generations**: {ledger_summary.get('generations', 0)} "
            f"({ledger_summary.get('fallback_generations', 0)} template fallbacks)",
            f"- **Bandit updates**: {ledger_summary.get('bandit_updates', 0)}",
        ]
        for trigger, count in sorted(ledger_summary.get("escalations_by_trigger", {}).items()):
            lines.append(f"  - `{trigger}`: {count}")
    return "\n".join(lines) + "\n"
