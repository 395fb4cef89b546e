#!/usr/bin/env python3
"""Guidance Runner - Replay a learner interaction trace through the engine.

Each line of the trace is one interaction event as JSON. Episodes open on
the first event of a (learner, problem) pair and are concluded when the
trace ends; the bandit, ledger and outcome DB are updated along the way.

Usage:
    python run_guidance.py --trace trace.jsonl

    # Static profile assignment instead of the bandit
    python run_guidance.py --trace trace.jsonl --strategy static

    # Ground explanations in extracted textbook text (pages split by form feed)
    python run_guidance.py --trace trace.jsonl --source textbook.txt
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from guidance_kernel import EngineConfig, InteractionEvent, Problem, create_ledger
from guidance_kernel.config import ASSIGNMENT_STRATEGIES
from guidance_upstream import create_engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("run_guidance")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Guidance Runner - Replay interaction traces through the adaptive guidance engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_guidance.py --trace trace.jsonl
    python run_guidance.py --trace trace.jsonl --problems problems.json --seed 7

    # Profile assignment strategies:
    #   bandit     - Thompson Sampling per learner (default)
    #   static     - deterministic by learner id hash
    #   diagnostic - persistence score and recovery rate
        """,
    )
    parser.add_argument(
        "--trace",
        required=True,
        type=Path,
        help="JSONL file of interaction events",
    )
    parser.add_argument(
        "--problems",
        type=Path,
        default=None,
        help="JSON list of problems {problem_id, title, concepts, schema_text}",
    )
    parser.add_argument(
        "--source",
        action="append",
        type=Path,
        default=[],
        help="Plain-text source document for grounding (repeatable)",
    )
    parser.add_argument(
        "--strategy",
        default=None,
        choices=list(ASSIGNMENT_STRATEGIES),
        help="Profile assignment strategy (default: GUIDANCE_STRATEGY or bandit)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for reproducible bandit sampling",
    )
    parser.add_argument(
        "--artifacts-dir",
        type=Path,
        default=None,
        help="Directory for store, outcome DB and ledger (default: ./artifacts)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Path to write the run summary JSON (default: stdout)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


def load_trace(path: Path) -> list[InteractionEvent]:
    events = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(InteractionEvent.from_json(line))
    return sorted(events, key=lambda e: e.timestamp)


def load_problems(path: Path | None) -> dict[str, Problem]:
    if path is None:
        return {}
    data = json.loads(path.read_text())
    return {p["problem_id"]: Problem.from_dict(p) for p in data}


class ReplayClock:
    """Millisecond clock that follows the trace instead of wall time."""

    def __init__(self):
        self.current = 0

    def advance(self, timestamp: int) -> None:
        self.current = max(self.current, timestamp)

    def __call__(self) -> int:
        return self.current


def replay(args: argparse.Namespace) -> dict[str, Any]:
    config = EngineConfig.from_env()
    overrides: dict[str, Any] = {}
    if args.strategy:
        overrides["strategy"] = args.strategy
    if args.seed is not None:
        overrides["seed"] = args.seed
    if args.artifacts_dir:
        overrides["artifacts_dir"] = args.artifacts_dir
    config = replace(config, **overrides)

    config.artifacts_dir.mkdir(parents=True, exist_ok=True)
    if config.store_path is None:
        config.store_path = config.artifacts_dir / "guidance_store.db"
    if config.outcome_db_path is None:
        config.outcome_db_path = config.artifacts_dir / "outcomes.db"

    run_id = args.trace.stem
    ledger = None
    if config.ledger_path is None:
        ledger = create_ledger(run_id, config.artifacts_dir)

    clock = ReplayClock()
    engine = create_engine(config, clock=clock, **({"ledger": ledger} if ledger else {}))

    for source in args.source:
        pages = source.read_text().split("\f")
        index = engine.grounding.index_store.add_document(source.stem, pages)
        engine.store.save_pdf_index(index)
        logger.info("Indexed %s: %d pages, %d chunks", source.name, len(pages), index.chunk_count)

    problems = load_problems(args.problems)
    events = load_trace(args.trace)
    logger.info("Replaying %d events from %s (strategy=%s)", len(events), args.trace, config.strategy)

    escalations = 0
    guidance: list[dict[str, Any]] = []
    for event in events:
        clock.advance(event.timestamp)
        if not engine.has_episode(event.learner_id, event.problem_id):
            problem = problems.get(event.problem_id) or Problem(event.problem_id, title=event.problem_id)
            engine.start_problem(event.learner_id, problem)

        step = engine.record_interaction(event)
        if step.escalated:
            escalations += 1
            content = asyncio.run(engine.compose_guidance(event.learner_id, event.problem_id))
            guidance.append({
                "learner_id": event.learner_id,
                "problem_id": event.problem_id,
                "rung": content.rung,
                "trigger": step.action.trigger.value if step.action.trigger else None,
                "model": content.model,
                "used_fallback": content.used_fallback,
                "source_ids": list(content.source_ids),
            })

    episodes = []
    seen = dict.fromkeys((e.learner_id, e.problem_id) for e in events)
    for learner_id, problem_id in seen:
        outcome = engine.outcome_from_history(learner_id, problem_id)
        result = engine.conclude_episode(learner_id, problem_id, outcome)
        episodes.append(result.to_dict())

    return {
        "run_id": run_id,
        "strategy": config.strategy,
        "events": len(events),
        "escalations": escalations,
        "guidance": guidance,
        "episodes": episodes,
        "ledger_path": str(ledger.path if ledger else config.ledger_path),
        "outcome_db": str(config.outcome_db_path),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.trace.exists():
        logger.error("Trace not found: %s", args.trace)
        return 1

    try:
        summary = replay(args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception("Replay failed: %s", e)
        return 1

    summary_json = json.dumps(summary, indent=2)
    if args.output:
        args.output.write_text(summary_json)
        logger.info("Wrote summary to %s", args.output)
    else:
        print(summary_json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
