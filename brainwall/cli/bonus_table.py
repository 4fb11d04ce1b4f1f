#!/usr/bin/env python3

"""Print the bonus dependency table of a problems directory."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from brainwall.bonus_graph import BonusGraph
from brainwall.constants import PROBLEM_SUFFIX
from brainwall.errors import MalformedProblem
from brainwall.problem import load_problem
from brainwall.state import StateStore


def bonus_rows(problems_directory: Path, state_file: Path | None = None) -> list[dict]:
    """One row per declared bonus: donor, kind, consumer, anchors, granted."""
    problems = []
    for path in sorted(Path(problems_directory).glob(f"*{PROBLEM_SUFFIX}")):
        try:
            problems.append(load_problem(path))
        except MalformedProblem as exc:
            print(f"skip {path.name}: {exc}", file=sys.stderr)
    grants = StateStore(state_file).grants() if state_file is not None else frozenset()
    snapshot = BonusGraph.from_problems(problems, grants).snapshot()

    rows: list[dict] = []
    for problem in problems:
        for spec in problem.bonuses:
            edge = next(
                (e for e in snapshot.consumers_of(problem.problem_id) if e.kind is spec.kind and e.consumer == spec.problem),
                None,
            )
            rows.append(
                {
                    "donor": problem.problem_id,
                    "bonus": spec.kind.value,
                    "consumer": spec.problem,
                    "anchors": [list(p) for p in spec.anchors],
                    "granted": bool(edge is not None and snapshot.is_granted(edge)),
                }
            )
    return rows


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    ap = argparse.ArgumentParser(description="List bonuses declared by a directory of problems.")
    ap.add_argument("--problems-directory", type=Path, default=Path("tasks"))
    ap.add_argument("--state-file", type=Path, default=None, help="Orchestrator state, to mark granted bonuses.")
    ap.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    args = ap.parse_args(argv)

    if not Path(args.problems_directory).is_dir():
        raise SystemExit(f"problems directory not found: {args.problems_directory}")
    rows = bonus_rows(args.problems_directory, args.state_file)
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    print(f"{'donor':>8} {'bonus':<12} {'consumer':>8} {'granted':<7} anchors")
    for row in rows:
        anchors = " ".join(f"({x},{y})" for x, y in row["anchors"])
        print(f"{row['donor']!s:>8} {row['bonus']:<12} {row['consumer']!s:>8} {('yes' if row['granted'] else 'no'):<7} {anchors}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
