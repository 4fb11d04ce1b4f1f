#!/usr/bin/env python3

"""Render a problem and (optionally) a pose to a PNG.

Meant for manual inspection:
- Draws the hole polygon and its vertices.
- Draws the pose edges, red where a segment is invalid (length or containment).
- Marks bonus anchors and, optionally, vertex indices.
"""

from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np

from brainwall.problem import Pose, Problem, load_pose, load_problem
from brainwall.validate import InfeasibleEdge, OutOfBounds, PoseEvaluator


def bad_edges(problem: Problem, pose: Pose) -> set[int]:
    """Indices (into the effective figure) of edges reported as violations."""
    evaluator = PoseEvaluator(problem, pose.bonuses)
    return {v.edge_index for v in evaluator.violations(pose.vertices) if isinstance(v, (InfeasibleEdge, OutOfBounds))}


def render(problem: Problem, pose: Pose | None, out: Path, *, dpi: int = 150, label: bool = False) -> Path:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt  # noqa: E402

    pose = pose if pose is not None else problem.identity_pose()
    figure = problem.effective_figure(pose.bonuses)
    vertices = pose.vertices
    bad = bad_edges(problem, pose)

    fig, ax = plt.subplots(figsize=(7, 7))
    hole = np.concatenate([problem.hole, problem.hole[:1]], axis=0)
    ax.fill(hole[:, 0], hole[:, 1], color="0.92", zorder=0)
    ax.plot(hole[:, 0], hole[:, 1], "-", lw=1.2, color="0.3", label="hole")
    ax.plot(problem.hole[:, 0], problem.hole[:, 1], "o", ms=3, color="0.3")

    for idx, edge in enumerate(figure.edges):
        a, b = vertices[edge.a], vertices[edge.b]
        c = "tab:red" if idx in bad else "tab:green"
        ax.plot([a[0], b[0]], [a[1], b[1]], "-", lw=1.4, color=c)
    ax.plot(vertices[:, 0], vertices[:, 1], "o", ms=3, color="tab:blue")
    if label:
        for i, (x, y) in enumerate(vertices):
            ax.text(float(x), float(y), str(i), fontsize=6, ha="left", va="bottom")

    for spec in problem.bonuses:
        pts = np.asarray(spec.anchors, dtype=float).reshape(-1, 2)
        ax.plot(pts[:, 0], pts[:, 1], "*", ms=10, color="tab:orange")

    # Problem coordinates grow downwards.
    ax.invert_yaxis()
    ax.set_aspect("equal", "box")
    ax.set_title(f"problem={problem.problem_id}  bad_edges={len(bad)}")
    ax.grid(True, alpha=0.2)

    out = Path(out).resolve()
    out.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out, dpi=int(dpi), bbox_inches="tight")
    plt.close(fig)
    return out


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Plot a problem hole and a pose.")
    ap.add_argument("--problem-file", type=Path, required=True)
    ap.add_argument("--pose-file", type=Path, default=None, help="Pose to draw (default: the original figure)")
    ap.add_argument("--out", type=Path, default=None, help="Output image path (default: <problem>.png)")
    ap.add_argument("--dpi", type=int, default=150)
    ap.add_argument("--label", action="store_true", help="Label vertex indices")
    ns = ap.parse_args(argv)

    problem_file = Path(ns.problem_file)
    if not problem_file.is_file():
        raise SystemExit(f"problem not found: {problem_file}")
    problem = load_problem(problem_file)
    pose = load_pose(ns.pose_file) if ns.pose_file is not None else None
    out = Path(ns.out) if ns.out is not None else problem_file.with_suffix(".png")
    try:
        path = render(problem, pose, out, dpi=int(ns.dpi), label=bool(ns.label))
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc
    print(f"wrote: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
