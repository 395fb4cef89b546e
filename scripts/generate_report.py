#!/usr/bin/env python3
"""Generate a markdown summary of strategy profile performance."""

from __future__ import annotations

import os
from pathlib import Path

from guidance_kernel import Ledger
from guidance_upstream.report import load_episodes, render_markdown


def latest_ledger(artifacts_dir: Path) -> Path | None:
    ledger_dir = artifacts_dir / ".guidance_ledger"
    if not ledger_dir.exists():
        return None
    ledgers = sorted(ledger_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
    return ledgers[0] if ledgers else None


def main() -> None:
    """Generate markdown summary."""
    artifacts_dir = Path(os.environ.get("GUIDANCE_ARTIFACTS_DIR", "artifacts"))
    outcome_db = Path(os.environ.get("GUIDANCE_OUTCOME_DB", artifacts_dir / "outcomes.db"))
    run_id = os.environ.get("RUN_ID", "N/A")

    episodes = load_episodes(outcome_db)
    ledger_path = latest_ledger(artifacts_dir)
    ledger_summary = Ledger(ledger_path).get_summary() if ledger_path else None

    summary = render_markdown(episodes, ledger_summary)
    summary += f"""
### Run Info
- **Run ID**: `{run_id}`
- **Outcome DB**: `{outcome_db}`
- **Ledger**: `{ledger_path or 'N/A'}`
"""
    print(summary)


if __name__ == "__main__":
    main()
