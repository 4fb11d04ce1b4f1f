"""Pose validation and scoring.

This module implements:
- exact edge-length tolerance checks (ppm of the squared length)
- closed-region containment of edge segments inside the hole
- the dislikes score
- bonus relaxations (GLOBALIST pooling, SUPERFLEX exemption, WALLHACK,
  BREAK_A_LEG split edges)
- an incremental evaluator used by the annealing loop

Everything is a pure function of `(Problem, Pose)`. Length comparisons use
integers (or `Fraction` for the pooled GLOBALIST budget); nothing here uses
floating point.
"""

from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction
from math import lcm
from typing import Iterable, Union

import numpy as np

from .constants import OUTSIDE_SEGMENT_PENALTY, PPM
from .geometry import HoleIndex, segment_in_polygon
from .problem import BonusKind, Edge, Figure, Pose, PoseBonus, Problem


@dataclass(frozen=True)
class InfeasibleEdge:
    edge_index: int
    a: int
    b: int
    deviation_ppm: Fraction

    def to_json(self) -> dict:
        return {"kind": "infeasible_edge", "edge": self.edge_index, "a": self.a, "b": self.b, "deviation_ppm": float(self.deviation_ppm)}


@dataclass(frozen=True)
class OutOfBounds:
    edge_index: int
    a: int
    b: int

    def to_json(self) -> dict:
        return {"kind": "out_of_bounds", "edge": self.edge_index, "a": self.a, "b": self.b}


@dataclass(frozen=True)
class GlobalistExceeded:
    total_ppm: Fraction
    budget_ppm: int

    def to_json(self) -> dict:
        return {"kind": "globalist_exceeded", "total_ppm": float(self.total_ppm), "budget_ppm": self.budget_ppm}


Violation = Union[InfeasibleEdge, OutOfBounds, GlobalistExceeded]


@dataclass(frozen=True)
class Valid:
    score: int
    ok = True


@dataclass(frozen=True)
class Invalid:
    violations: tuple[Violation, ...]
    ok = False


@dataclass(frozen=True)
class BonusFlags:
    globalist: bool = False
    wallhack: bool = False
    superflex: bool = False
    superflex_edge: int | None = None

    @classmethod
    def from_bonuses(cls, bonuses: Iterable[PoseBonus]) -> "BonusFlags":
        bonuses = tuple(bonuses)
        flex = [b for b in bonuses if b.kind is BonusKind.SUPERFLEX]
        return cls(
            globalist=any(b.kind is BonusKind.GLOBALIST for b in bonuses),
            wallhack=any(b.kind is BonusKind.WALLHACK for b in bonuses),
            superflex=bool(flex),
            superflex_edge=flex[0].edge if flex else None,
        )


def _vertices(pose) -> np.ndarray:
    if isinstance(pose, Pose):
        return pose.vertices
    return np.asarray(pose, dtype=np.int64).reshape(-1, 2)


def squared_distance(p, q) -> int:
    dx = int(p[0]) - int(q[0])
    dy = int(p[1]) - int(q[1])
    return dx * dx + dy * dy


def _deviation(edge: Edge, vertices: np.ndarray) -> int:
    """`|cur - orig|` scaled so that `deviation / edge.d2` is the fractional change."""
    cur = squared_distance(vertices[edge.a], vertices[edge.b])
    if edge.halved:
        cur *= 4
    return abs(cur - edge.d2)


def deviation_ppm(edge: Edge, vertices) -> Fraction:
    """Exact `|cur/orig - 1| * 1e6` for one edge."""
    return Fraction(_deviation(edge, _vertices(vertices)) * PPM, edge.d2)


def _excess_ppm(edge: Edge, vertices: np.ndarray, epsilon: int) -> int:
    over = _deviation(edge, vertices) * PPM - epsilon * edge.d2
    if over <= 0:
        return 0
    return -(-over // edge.d2)


def edge_length_valid(
    edge: Edge,
    pose,
    epsilon: int,
    flags: BonusFlags | None = None,
    *,
    edge_index: int | None = None,
) -> bool:
    """Per-edge tolerance check.

    Valid iff `|cur/orig - 1| * 1_000_000 <= epsilon`, evaluated as
    `|cur - orig| * 1_000_000 <= epsilon * orig`. With SUPERFLEX the designated
    edge is exempt; with GLOBALIST the per-edge rule is replaced by the pooled
    budget (see `globalist_valid`) and this returns True.
    """
    flags = flags or BonusFlags()
    if flags.globalist:
        return True
    if flags.superflex and flags.superflex_edge is not None and edge_index == flags.superflex_edge:
        return True
    return _deviation(edge, _vertices(pose)) * PPM <= int(epsilon) * edge.d2


def globalist_valid(figure: Figure, pose, epsilon: int) -> bool:
    """Pooled tolerance: `sum_e |cur_e/orig_e - 1| * 1e6 <= epsilon * |E|`."""
    vertices = _vertices(pose)
    total = sum((deviation_ppm(e, vertices) for e in figure.edges), Fraction(0))
    return total <= int(epsilon) * len(figure.edges)


def segment_inside_hole(edge: Edge, pose, hole, flags: BonusFlags | None = None) -> bool:
    """Whether the edge segment stays inside the closed hole (always True with WALLHACK)."""
    if flags is not None and flags.wallhack:
        return True
    vertices = _vertices(pose)
    p, q = vertices[edge.a], vertices[edge.b]
    if isinstance(hole, HoleIndex):
        return hole.contains_segment(p, q)
    return segment_in_polygon(np.asarray(hole, dtype=np.int64), p, q)


def compute_score(pose, hole) -> int:
    """Dislikes: sum over hole vertices of the squared distance to the nearest pose vertex."""
    vertices = _vertices(pose)
    hole = hole.hole if isinstance(hole, HoleIndex) else np.asarray(hole, dtype=np.int64).reshape(-1, 2)
    d = hole[:, None, :] - vertices[None, :, :]
    d2 = np.sum(d * d, axis=2)
    return int(np.sum(np.min(d2, axis=1)))


@dataclass(frozen=True)
class Evaluation:
    """Cached per-edge state of one vertex placement.

    Attributes:
        score: Dislikes of the placement.
        excess: Per-edge ceil excess over epsilon, in ppm (zeros under GLOBALIST).
        weighted: Per-edge deviations over the common denominator (GLOBALIST only).
        outside: Per-edge flag, segment leaves the hole.
        violation: Integer violation magnitude used as the search penalty.
        feasible: True when no rule is violated.
    """

    score: int
    excess: np.ndarray
    weighted: tuple[int, ...]
    outside: np.ndarray
    violation: int
    feasible: bool


class PoseEvaluator:
    """Incremental validator bound to one problem and one bonus usage.

    `evaluate(vertices, base=..., moved=...)` only re-checks edges incident to
    the moved vertices; the dislikes score is always recomputed.
    """

    def __init__(self, problem: Problem, bonuses: Iterable[PoseBonus] = (), *, hole_index: HoleIndex | None = None) -> None:
        self.problem = problem
        self.bonuses = tuple(bonuses)
        self.figure = problem.effective_figure(self.bonuses)
        self.flags = BonusFlags.from_bonuses(self.bonuses)
        self.epsilon = int(problem.epsilon)
        self.hole_index = hole_index if hole_index is not None else HoleIndex(problem.hole)
        self.n_edges = len(self.figure.edges)
        if self.flags.superflex and self.flags.superflex_edge is not None:
            if not (0 <= self.flags.superflex_edge < self.n_edges):
                raise ValueError(f"SUPERFLEX edge {self.flags.superflex_edge} outside [0, {self.n_edges})")
        self._denominator = lcm(*(e.d2 for e in self.figure.edges)) if self.figure.edges else 1
        self._weights = tuple(self._denominator // e.d2 for e in self.figure.edges)

    @property
    def n_vertices(self) -> int:
        return self.figure.n_vertices

    def _edge_terms(self, idx: int, vertices: np.ndarray) -> tuple[int, int, bool]:
        edge = self.figure.edges[idx]
        if self.flags.globalist:
            excess = 0
            weighted = _deviation(edge, vertices) * self._weights[idx]
        else:
            excess = _excess_ppm(edge, vertices, self.epsilon)
            weighted = 0
        if self.flags.wallhack:
            outside = False
        else:
            outside = not self.hole_index.contains_segment(vertices[edge.a], vertices[edge.b])
        return excess, weighted, outside

    def evaluate(
        self,
        vertices: np.ndarray,
        *,
        base: Evaluation | None = None,
        moved: Iterable[int] | None = None,
    ) -> Evaluation:
        vertices = np.asarray(vertices, dtype=np.int64)
        if vertices.shape != (self.n_vertices, 2):
            raise ValueError(f"pose has {vertices.shape[0]} vertices, figure needs {self.n_vertices}")

        if base is None or moved is None:
            indices: Iterable[int] = range(self.n_edges)
            excess = np.zeros(self.n_edges, dtype=np.int64)
            weighted = [0] * self.n_edges
            outside = np.zeros(self.n_edges, dtype=bool)
        else:
            touched: set[int] = set()
            for v in moved:
                touched.update(self.figure.incident[v])
            indices = sorted(touched)
            excess = base.excess.copy()
            weighted = list(base.weighted)
            outside = base.outside.copy()

        for idx in indices:
            excess[idx], weighted[idx], outside[idx] = self._edge_terms(idx, vertices)

        length_violation, length_ok = self._length_violation(excess, weighted)
        n_outside = int(np.count_nonzero(outside))
        return Evaluation(
            score=compute_score(vertices, self.hole_index),
            excess=excess,
            weighted=tuple(weighted),
            outside=outside,
            violation=length_violation + n_outside * OUTSIDE_SEGMENT_PENALTY,
            feasible=length_ok and n_outside == 0,
        )

    def _length_violation(self, excess: np.ndarray, weighted: list[int]) -> tuple[int, bool]:
        if self.n_edges == 0:
            return 0, True
        if self.flags.globalist:
            budget = self.epsilon * self.n_edges * self._denominator
            over = sum(weighted) * PPM - budget
            if over <= 0:
                return 0, True
            return -(-over // self._denominator), False
        if self.flags.superflex:
            if self.flags.superflex_edge is not None:
                exempt = int(excess[self.flags.superflex_edge])
            else:
                exempt = int(excess.max())
            total = int(excess.sum()) - exempt
            return total, total == 0
        total = int(excess.sum())
        return total, total == 0

    def violations(self, vertices: np.ndarray, evaluation: Evaluation | None = None) -> tuple[Violation, ...]:
        """Enumerate the offending edges/segments of a placement."""
        vertices = np.asarray(vertices, dtype=np.int64)
        evaluation = evaluation or self.evaluate(vertices)
        found: list[Violation] = []
        edges = self.figure.edges
        if self.flags.globalist:
            total = sum((deviation_ppm(e, vertices) for e in edges), Fraction(0))
            budget = self.epsilon * self.n_edges
            if total > budget:
                found.append(GlobalistExceeded(total, budget))
        else:
            bad = [i for i in range(self.n_edges) if int(evaluation.excess[i]) > 0]
            if self.flags.superflex and bad:
                if self.flags.superflex_edge is not None:
                    bad = [i for i in bad if i != self.flags.superflex_edge]
                else:
                    worst = max(bad, key=lambda i: int(evaluation.excess[i]))
                    bad = [i for i in bad if i != worst]
            for i in bad:
                found.append(InfeasibleEdge(i, edges[i].a, edges[i].b, deviation_ppm(edges[i], vertices)))
        for i in np.nonzero(evaluation.outside)[0]:
            i = int(i)
            found.append(OutOfBounds(i, edges[i].a, edges[i].b))
        return tuple(found)


def validate(problem: Problem, pose: Pose, *, hole_index: HoleIndex | None = None) -> Valid | Invalid:
    """Validate `pose` against `problem` under the bonuses the pose declares.

    Returns:
        `Valid(score)` or `Invalid(violations)`.

    Raises:
        ValueError: If the vertex count does not match the (effective) figure.
    """
    evaluator = PoseEvaluator(problem, pose.bonuses, hole_index=hole_index)
    evaluation = evaluator.evaluate(pose.vertices)
    if evaluation.feasible:
        return Valid(evaluation.score)
    return Invalid(evaluator.violations(pose.vertices, evaluation))
