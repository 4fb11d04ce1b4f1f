#!/usr/bin/env python3

"""Solve every problem in a directory, manage bonuses, and submit the results."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from brainwall.annealing import AnnealParams
from brainwall.config import argv_with_config
from brainwall.constants import (
    COOLING,
    MAX_REHEATS,
    MAX_TEMP,
    MIN_TEMP,
    REHEAT_FACTOR,
    SUBMIT_BASE_DELAY_S,
    SUBMIT_MAX_ATTEMPTS,
    SUBMIT_MAX_DELAY_S,
)
from brainwall.errors import BrainwallError
from brainwall.orchestrator import Orchestrator, OrchestratorConfig
from brainwall.submission import DEFAULT_BASE_URL, HttpSubmitter, LocalSubmitter, RetryPolicy

TOKEN_ENV = "BRAINWALL_API_TOKEN"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Autonomous solver: solve all problems, collect bonuses, submit poses.")
    ap.add_argument("--config", type=Path, default=None, help="JSON/YAML config (defaults to configs/autonomous.json when present).")
    ap.add_argument("--no-config", action="store_true", help="Disable loading the default config.")
    ap.add_argument("--problems-directory", type=Path, default=Path("tasks"))
    ap.add_argument("--poses-directory", type=Path, default=Path("poses"))
    ap.add_argument("--state-file", type=Path, default=None, help="Persisted state (default: <poses-directory>/state.json).")
    ap.add_argument("--workers", type=int, default=4, help="Puzzles solved concurrently.")
    ap.add_argument("--attempt-budget", type=float, default=30.0, help="Seconds per attempt.")
    ap.add_argument("--puzzle-budget", type=float, default=120.0, help="Seconds per puzzle and round.")
    ap.add_argument("--score-seeds", type=int, default=2)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--max-rounds", type=int, default=3)
    ap.add_argument("--cycle-retry-limit", type=int, default=2)
    ap.add_argument("--prefer-grants", default=True, action=argparse.BooleanOptionalAction)
    ap.add_argument("--max-iters", type=int, default=None, help="Iteration cap per attempt.")
    ap.add_argument("--random-start", action="store_true")
    ap.add_argument("--max-temp", type=float, default=MAX_TEMP)
    ap.add_argument("--min-temp", type=float, default=MIN_TEMP)
    ap.add_argument("--cooling", type=float, default=COOLING)
    ap.add_argument("--max-reheats", type=int, default=MAX_REHEATS)
    ap.add_argument("--reheat-factor", type=float, default=REHEAT_FACTOR)
    ap.add_argument("--retry-max-attempts", type=int, default=SUBMIT_MAX_ATTEMPTS)
    ap.add_argument("--retry-base-delay", type=float, default=SUBMIT_BASE_DELAY_S)
    ap.add_argument("--retry-max-delay", type=float, default=SUBMIT_MAX_DELAY_S)
    ap.add_argument("--api-token", type=str, default=None, help=f"Bearer token (default: ${TOKEN_ENV}).")
    ap.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL)
    ap.add_argument("--dry-run", action="store_true", help="Validate and store poses locally instead of submitting.")
    ap.add_argument("--submitted-directory", type=Path, default=None, help="Dry-run output (default: <poses-directory>/submitted).")
    ap.add_argument("--log-level", type=str, default="INFO")
    return ap


def main(argv: list[str] | None = None) -> int:
    """Run the orchestrator until no puzzle can be improved further."""
    argv = list(sys.argv[1:] if argv is None else argv)
    argv, _ = argv_with_config(argv, default_filename="autonomous.json", section_keys=("solve", "autonomous"))
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(levelname)s:%(name)s:%(message)s")

    poses_dir = Path(args.poses_directory)
    config = OrchestratorConfig(
        problems_directory=Path(args.problems_directory),
        poses_directory=poses_dir,
        state_file=args.state_file or poses_dir / "state.json",
        workers=int(args.workers),
        attempt_budget_s=float(args.attempt_budget),
        puzzle_budget_s=float(args.puzzle_budget),
        score_seeds=int(args.score_seeds),
        seed=int(args.seed),
        max_rounds=int(args.max_rounds),
        cycle_retry_limit=int(args.cycle_retry_limit),
        prefer_grants=bool(args.prefer_grants),
        anneal=AnnealParams(
            max_temp=float(args.max_temp),
            min_temp=float(args.min_temp),
            cooling=float(args.cooling),
            max_reheats=int(args.max_reheats),
            reheat_factor=float(args.reheat_factor),
            random_start=bool(args.random_start),
            max_iters=args.max_iters,
        ),
        retry=RetryPolicy(
            max_attempts=int(args.retry_max_attempts),
            base_delay_s=float(args.retry_base_delay),
            max_delay_s=float(args.retry_max_delay),
        ),
    )

    if args.dry_run:
        submitter = LocalSubmitter(args.submitted_directory or poses_dir / "submitted", config.problems_directory)
    else:
        token = args.api_token or os.environ.get(TOKEN_ENV)
        if not token:
            raise SystemExit(f"--api-token or ${TOKEN_ENV} is required (or use --dry-run)")
        submitter = HttpSubmitter(token, base_url=args.base_url)

    try:
        report = Orchestrator(config, submitter).run()
    except BrainwallError as exc:
        raise SystemExit(str(exc)) from exc

    summary = {
        "rounds": report.rounds,
        "launched": list(report.launched),
        "cycles": [list(c.puzzles) for c in report.cycles],
        "puzzles": {str(pid): rec.to_json() for pid, rec in report.records.items()},
    }
    print(json.dumps(summary, indent=2))
    print(f"wrote: {config.state_file}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
