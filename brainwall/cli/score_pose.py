#!/usr/bin/env python3

"""CLI to validate and score a pose file locally."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from brainwall.errors import MalformedProblem
from brainwall.modes import granted_bonuses
from brainwall.problem import load_pose, load_problem
from brainwall.validate import Valid, validate


def score_report(problem_file: Path, pose_file: Path) -> dict:
    """Validation report for one pose (the JSON printed by the CLI)."""
    problem = load_problem(problem_file)
    pose = load_pose(pose_file)
    verdict = validate(problem, pose)
    data: dict = {
        "problem": problem.problem_id,
        "valid": bool(verdict.ok),
        "bonuses_used": [b.kind.value for b in pose.bonuses],
    }
    if isinstance(verdict, Valid):
        data["score"] = verdict.score
        granted = granted_bonuses(problem, pose.vertices)
        data["bonuses_granted"] = [{"bonus": s.kind.value, "problem": s.problem} for s in granted]
    else:
        data["violations"] = [v.to_json() for v in verdict.violations]
    return data


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, validate the pose, and print JSON to stdout (exit 1 if invalid)."""
    argv = list(sys.argv[1:] if argv is None else argv)
    ap = argparse.ArgumentParser(description="Validate and score a pose file.")
    ap.add_argument("problem_file", type=Path, help="Path to <id>.problem")
    ap.add_argument("pose_file", type=Path, help="Path to <id>.pose")
    ap.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    args = ap.parse_args(argv)

    try:
        data = score_report(args.problem_file, args.pose_file)
    except (MalformedProblem, ValueError, OSError) as exc:
        raise SystemExit(str(exc)) from exc

    print(json.dumps(data, indent=2 if args.pretty else None))
    return 0 if data["valid"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
