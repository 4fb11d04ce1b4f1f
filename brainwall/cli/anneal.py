#!/usr/bin/env python3

"""Solve one problem file with simulated annealing and write the best pose."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from brainwall.annealing import AnnealParams, AnnealingSolver
from brainwall.config import argv_with_config
from brainwall.constants import COOLING, MAX_REHEATS, MAX_TEMP, MIN_TEMP, PENALTY_WEIGHT, REHEAT_FACTOR
from brainwall.errors import MalformedProblem
from brainwall.modes import ModeConfig, OperatingMode
from brainwall.moves import MoveParams
from brainwall.problem import BonusKind, PoseBonus, load_pose, load_problem, parse_puzzle_id, save_pose

logger = logging.getLogger(__name__)


def parse_use_bonus(text: str) -> PoseBonus:
    """`KIND:DONOR[:EDGE]`; SUPERFLEX takes an edge index, BREAK_A_LEG an edge `a-b`."""
    parts = [p.strip() for p in str(text).split(":")]
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"expected KIND:DONOR[:EDGE], got {text!r}")
    try:
        kind = BonusKind(parts[0].upper())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"unknown bonus kind {parts[0]!r}") from exc
    donor = parse_puzzle_id(parts[1])
    if len(parts) == 2:
        return PoseBonus(kind, problem=donor)
    try:
        if kind is BonusKind.SUPERFLEX:
            return PoseBonus(kind, problem=donor, edge=int(parts[2]))
        if kind is BonusKind.BREAK_A_LEG:
            a, b = (int(x) for x in parts[2].replace(",", "-").split("-"))
            return PoseBonus(kind, problem=donor, split=(a, b))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"bad edge in {text!r}") from exc
    raise argparse.ArgumentTypeError(f"{kind.value} takes no edge argument")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Simulated annealing solver for one problem file.")
    ap.add_argument("--config", type=Path, default=None, help="JSON/YAML config (defaults to configs/anneal.json when present).")
    ap.add_argument("--no-config", action="store_true", help="Disable loading the default config.")
    ap.add_argument("--problem-file", type=Path, required=True)
    ap.add_argument("--pose-file", type=Path, required=True, help="Output pose, rewritten on every new best; an existing file is also the start pose.")
    ap.add_argument("--start-pose", type=Path, default=None, help="Pose to start from (default: --pose-file when it exists).")
    ap.add_argument("--mode", type=str, default=None, choices=[m.value for m in OperatingMode])
    ap.add_argument("--collect-bonus-problem", type=str, default=None, help="Target puzzle for the collect mode.")
    ap.add_argument(
        "--use-bonus",
        type=parse_use_bonus,
        action="append",
        default=[],
        metavar="KIND:DONOR[:EDGE]",
        help="Spend an unlocked bonus (repeatable).",
    )
    ap.add_argument("--time-budget", type=float, default=None, help="Seconds (default: unbounded).")
    ap.add_argument("--max-iters", type=int, default=None)
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--random-start", action="store_true", help="Start from random lattice points inside the hole.")
    ap.add_argument("--max-temp", type=float, default=MAX_TEMP)
    ap.add_argument("--min-temp", type=float, default=MIN_TEMP)
    ap.add_argument("--cooling", type=float, default=COOLING)
    ap.add_argument("--max-reheats", type=int, default=MAX_REHEATS)
    ap.add_argument("--reheat-factor", type=float, default=REHEAT_FACTOR)
    ap.add_argument("--penalty-weight", type=int, default=PENALTY_WEIGHT)
    ap.add_argument("--max-radius", type=int, default=0, help="Move radius at max temperature (0: from hole size).")
    ap.add_argument("--edge-aware-prob", type=float, default=0.5)
    ap.add_argument("--bias", type=int, default=4, help="Anchor attraction weight for bonus-seeking modes.")
    ap.add_argument("--log-level", type=str, default="INFO")
    return ap


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run one annealing attempt, and write the best pose."""
    argv = list(sys.argv[1:] if argv is None else argv)
    argv, _ = argv_with_config(argv, default_filename="anneal.json", section_keys=("anneal",))
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(levelname)s:%(name)s:%(message)s")

    try:
        problem = load_problem(args.problem_file)
    except (MalformedProblem, OSError) as exc:
        raise SystemExit(f"cannot load problem: {exc}") from exc

    target = parse_puzzle_id(args.collect_bonus_problem) if args.collect_bonus_problem is not None else None
    mode = OperatingMode(args.mode) if args.mode else (OperatingMode.BONUS_COLLECTOR if target is not None else OperatingMode.SCORE_MAXIMIZER)
    params = AnnealParams(
        max_temp=float(args.max_temp),
        min_temp=float(args.min_temp),
        cooling=float(args.cooling),
        max_reheats=int(args.max_reheats),
        reheat_factor=float(args.reheat_factor),
        penalty_weight=int(args.penalty_weight),
        time_budget_s=args.time_budget,
        max_iters=args.max_iters,
        random_start=bool(args.random_start),
        seed=args.seed,
        moves=MoveParams(max_radius=int(args.max_radius), edge_aware_prob=float(args.edge_aware_prob)),
    )
    start = None
    if args.start_pose is not None:
        try:
            start = load_pose(args.start_pose)
        except (ValueError, OSError) as exc:
            raise SystemExit(f"cannot load start pose: {exc}") from exc
    elif args.pose_file.is_file():
        try:
            start = load_pose(args.pose_file)
        except ValueError as exc:
            logger.warning("ignoring unreadable %s: %s", args.pose_file, exc)

    def _write(pose, score: int) -> None:
        save_pose(args.pose_file, pose)
        logger.info("new best score=%d written to %s", score, args.pose_file)

    try:
        solver = AnnealingSolver(
            problem,
            params=params,
            mode=ModeConfig(mode, target=target, bias=int(args.bias)),
            bonuses=tuple(args.use_bonus),
            start=start,
            on_improvement=_write,
        )
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    result = solver.run()

    summary = {
        "status": result.status.value,
        "mode": result.mode,
        "score": result.score,
        "success": result.success,
        "iterations": result.iterations,
        "reheats": result.reheats,
        "granted": [{"bonus": s.kind.value, "problem": s.problem} for s in result.granted],
    }
    if result.pose is None:
        summary["violations"] = [v.to_json() for v in result.violations]
        print("no valid pose found, writing the least violating one", file=sys.stderr)
    save_pose(args.pose_file, result.pose if result.pose is not None else result.best_effort)
    print(json.dumps(summary))
    print(f"wrote: {args.pose_file}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
