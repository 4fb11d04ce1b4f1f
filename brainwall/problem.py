"""Problem model and JSON I/O for problems and poses.

A problem file looks like::

    {
      "hole": [[x, y], ...],
      "figure": {"vertices": [[x, y], ...], "edges": [[a, b], ...]},
      "epsilon": 150000,
      "bonuses": [{"bonus": "GLOBALIST", "problem": 12, "position": [x, y]}]
    }

Bonus declarations may also carry several anchor points (`"positions"`) and
the figure vertices that must land on them (`"vertices"`).

A pose file looks like::

    {"vertices": [[x, y], ...], "bonuses": [{"bonus": "SUPERFLEX", "problem": 3}]}

All coordinates are integers; they are kept as `numpy.int64` arrays of shape
`(N, 2)` so the validator can vectorize exact integer arithmetic.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Union

import numpy as np

from .constants import PROBLEM_SUFFIX
from .errors import MalformedProblem

Point = tuple[int, int]
PuzzleId = Union[int, str]


class BonusKind(str, Enum):
    GLOBALIST = "GLOBALIST"
    WALLHACK = "WALLHACK"
    SUPERFLEX = "SUPERFLEX"
    BREAK_A_LEG = "BREAK_A_LEG"


@dataclass(frozen=True)
class Edge:
    """Figure edge `a-b` with its original squared length `d2`.

    `halved` marks the two edges created by a BREAK_A_LEG split: their
    reference squared length is `d2 / 4`.
    """

    a: int
    b: int
    d2: int
    halved: bool = False


@dataclass(frozen=True, eq=False)
class Figure:
    vertices: np.ndarray
    edges: tuple[Edge, ...]
    incident: tuple[tuple[int, ...], ...] = field(repr=False)

    @property
    def n_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @classmethod
    def build(cls, vertices: np.ndarray, edges: Iterable[Edge]) -> "Figure":
        vertices = _frozen(vertices)
        edges = tuple(edges)
        incident: list[list[int]] = [[] for _ in range(vertices.shape[0])]
        for idx, edge in enumerate(edges):
            incident[edge.a].append(idx)
            incident[edge.b].append(idx)
        return cls(vertices=vertices, edges=edges, incident=tuple(tuple(x) for x in incident))


@dataclass(frozen=True)
class BonusSpec:
    """A bonus declared by a problem.

    Attributes:
        kind: Bonus kind.
        problem: Puzzle that may spend the bonus once it is granted.
        anchors: Anchor points that must be covered by the pose.
        vertices: Optional figure vertex indices that must sit on `anchors`
            (pairwise). Without them any pose vertex may cover an anchor.
    """

    kind: BonusKind
    problem: PuzzleId | None
    anchors: tuple[Point, ...]
    vertices: tuple[int, ...] | None = None


@dataclass(frozen=True)
class PoseBonus:
    """A bonus spent by a pose.

    `edge` is the SUPERFLEX exempted edge index (optional); `split` is the
    BREAK_A_LEG edge `(a, b)` replaced by two halves.
    """

    kind: BonusKind
    problem: PuzzleId | None = None
    edge: int | None = None
    split: tuple[int, int] | None = None


@dataclass(frozen=True, eq=False)
class Problem:
    hole: np.ndarray
    figure: Figure
    epsilon: int
    bonuses: tuple[BonusSpec, ...] = ()
    problem_id: PuzzleId | None = None

    @classmethod
    def from_json(cls, data: Any, *, problem_id: PuzzleId | None = None) -> "Problem":
        """Build a problem from decoded JSON, validating every shape invariant.

        Raises:
            MalformedProblem: On any structural violation.
        """
        if not isinstance(data, dict):
            raise MalformedProblem(f"expected an object at top-level, got {type(data).__name__}")
        try:
            hole = _points(data["hole"], "hole")
            figure_data = data["figure"]
            vertices = _points(figure_data["vertices"], "figure.vertices")
            raw_edges = figure_data["edges"]
            epsilon = data["epsilon"]
        except (KeyError, TypeError) as exc:
            raise MalformedProblem(f"missing field: {exc}") from exc

        if hole.shape[0] < 3:
            raise MalformedProblem(f"hole needs at least 3 vertices, got {hole.shape[0]}")
        if vertices.shape[0] == 0:
            raise MalformedProblem("figure has no vertices")
        if isinstance(epsilon, bool) or not isinstance(epsilon, int) or epsilon < 0:
            raise MalformedProblem(f"epsilon must be a non-negative integer, got {epsilon!r}")

        n = int(vertices.shape[0])
        edges: list[Edge] = []
        for raw in raw_edges:
            a, b = _index_pair(raw, "figure.edges")
            if not (0 <= a < n and 0 <= b < n):
                raise MalformedProblem(f"edge {raw!r} references a vertex outside [0, {n})")
            d2 = _dist2(vertices[a], vertices[b])
            if d2 == 0:
                raise MalformedProblem(f"edge {raw!r} has zero original length")
            edges.append(Edge(a, b, d2))

        bonuses = tuple(_bonus_spec(raw, n) for raw in data.get("bonuses") or ())
        seen: set[tuple[BonusKind, Point]] = set()
        for spec in bonuses:
            for anchor in spec.anchors:
                key = (spec.kind, anchor)
                if key in seen:
                    raise MalformedProblem(f"duplicate {spec.kind.value} bonus at anchor {anchor}")
                seen.add(key)

        return cls(
            hole=_frozen(hole),
            figure=Figure.build(vertices, edges),
            epsilon=int(epsilon),
            bonuses=bonuses,
            problem_id=problem_id,
        )

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "hole": self.hole.tolist(),
            "figure": {
                "vertices": self.figure.vertices.tolist(),
                "edges": [[e.a, e.b] for e in self.figure.edges],
            },
            "epsilon": int(self.epsilon),
        }
        if self.bonuses:
            out["bonuses"] = [_bonus_spec_to_json(spec) for spec in self.bonuses]
        return out

    def bounds(self) -> tuple[int, int, int, int]:
        """Return the `(min_x, min_y, max_x, max_y)` box covering hole and figure."""
        pts = np.concatenate([self.hole, self.figure.vertices], axis=0)
        lo = pts.min(axis=0)
        hi = pts.max(axis=0)
        return int(lo[0]), int(lo[1]), int(hi[0]), int(hi[1])

    def identity_pose(self) -> "Pose":
        """The figure's original embedding, without bonuses."""
        return Pose(np.array(self.figure.vertices, dtype=np.int64, copy=True))

    def bonus_for_target(self, target: PuzzleId) -> BonusSpec | None:
        for spec in self.bonuses:
            if spec.problem == target:
                return spec
        return None

    def effective_figure(self, bonuses: Iterable[PoseBonus] = ()) -> Figure:
        """Return the figure a pose using `bonuses` must satisfy.

        A BREAK_A_LEG split appends one vertex (index `N`) at the midpoint of
        the split edge and replaces edge `(a, b)` by halved `(a, N)` and
        `(N, b)`.

        Raises:
            ValueError: If the split edge is not part of the figure, or
                BREAK_A_LEG is used more than once.
        """
        splits = [b.split for b in bonuses if b.kind is BonusKind.BREAK_A_LEG]
        if not splits:
            return self.figure
        if len(splits) > 1:
            raise ValueError("BREAK_A_LEG can be used at most once per pose")
        split = splits[0]
        if split is None:
            raise ValueError("BREAK_A_LEG requires the split edge")
        a, b = int(split[0]), int(split[1])
        match = [i for i, e in enumerate(self.figure.edges) if {e.a, e.b} == {a, b}]
        if not match:
            raise ValueError(f"BREAK_A_LEG edge {split} is not a figure edge")
        old = self.figure.edges[match[0]]
        n = self.figure.n_vertices
        mid = (self.figure.vertices[a] + self.figure.vertices[b]) // 2
        vertices = np.concatenate([self.figure.vertices, mid[None, :]], axis=0)
        edges = [e for i, e in enumerate(self.figure.edges) if i != match[0]]
        edges.append(Edge(a, n, old.d2, halved=True))
        edges.append(Edge(n, b, old.d2, halved=True))
        return Figure.build(vertices, edges)


@dataclass
class Pose:
    vertices: np.ndarray
    bonuses: tuple[PoseBonus, ...] = ()

    def __post_init__(self) -> None:
        self.vertices = np.asarray(self.vertices, dtype=np.int64).reshape(-1, 2)
        self.bonuses = tuple(self.bonuses)

    def copy(self) -> "Pose":
        return Pose(np.array(self.vertices, copy=True), self.bonuses)

    def uses(self, kind: BonusKind) -> bool:
        return any(b.kind is kind for b in self.bonuses)

    def bonus(self, kind: BonusKind) -> PoseBonus | None:
        for b in self.bonuses:
            if b.kind is kind:
                return b
        return None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"vertices": [[int(x), int(y)] for x, y in self.vertices]}
        if self.bonuses:
            out["bonuses"] = [_pose_bonus_to_json(b) for b in self.bonuses]
        return out

    @classmethod
    def from_json(cls, data: Any) -> "Pose":
        if not isinstance(data, dict) or "vertices" not in data:
            raise ValueError("pose must be an object with 'vertices'")
        try:
            vertices = _points(data["vertices"], "pose.vertices")
        except MalformedProblem as exc:
            raise ValueError(str(exc)) from exc
        bonuses = tuple(_pose_bonus(raw) for raw in data.get("bonuses") or ())
        return cls(vertices, bonuses)


def problem_id_from_path(path: Path) -> PuzzleId:
    """`tasks/42.problem` -> `42`; non-numeric stems are kept as strings."""
    stem = Path(path).name
    if stem.endswith(PROBLEM_SUFFIX):
        stem = stem[: -len(PROBLEM_SUFFIX)]
    return parse_puzzle_id(stem)


def parse_puzzle_id(value: Any) -> PuzzleId:
    text = str(value).strip()
    return int(text) if text.isdigit() else text


def load_problem(path: Path, *, problem_id: PuzzleId | None = None) -> Problem:
    """Load and validate a problem file.

    Raises:
        MalformedProblem: If the file is not valid JSON or violates an invariant.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedProblem(f"{path}: invalid JSON: {exc}") from exc
    pid = problem_id if problem_id is not None else problem_id_from_path(path)
    return Problem.from_json(data, problem_id=pid)


def load_pose(path: Path) -> Pose:
    return Pose.from_json(json.loads(Path(path).read_text(encoding="utf-8")))


def save_pose(path: Path, pose: Pose) -> Path:
    """Write `pose` atomically (temp file + rename) and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(pose.to_json()) + "\n", encoding="utf-8")
    os.replace(tmp, path)
    return path


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.int64, copy=True).reshape(-1, 2)
    out.setflags(write=False)
    return out


def _dist2(p: np.ndarray, q: np.ndarray) -> int:
    dx = int(p[0]) - int(q[0])
    dy = int(p[1]) - int(q[1])
    return dx * dx + dy * dy


def _int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise MalformedProblem(f"{what}: expected an integer, got {value!r}")
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise MalformedProblem(f"{what}: expected an integer, got {value!r}")


def _points(raw: Any, what: str) -> np.ndarray:
    if not isinstance(raw, (list, tuple)):
        raise MalformedProblem(f"{what}: expected a list of points")
    rows: list[list[int]] = []
    for item in raw:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise MalformedProblem(f"{what}: expected [x, y], got {item!r}")
        rows.append([_int(item[0], what), _int(item[1], what)])
    return np.array(rows, dtype=np.int64).reshape(-1, 2)


def _index_pair(raw: Any, what: str) -> tuple[int, int]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise MalformedProblem(f"{what}: expected [a, b], got {raw!r}")
    return _int(raw[0], what), _int(raw[1], what)


def _bonus_kind(raw: Any) -> BonusKind:
    try:
        return BonusKind(str(raw).upper())
    except ValueError as exc:
        raise MalformedProblem(f"unknown bonus kind {raw!r}") from exc


def _bonus_spec(raw: Any, n_vertices: int) -> BonusSpec:
    if not isinstance(raw, dict):
        raise MalformedProblem(f"bonus: expected an object, got {raw!r}")
    kind = _bonus_kind(raw.get("bonus"))
    target = raw.get("problem")
    if "positions" in raw:
        anchors = _points(raw["positions"], "bonus.positions")
    elif "position" in raw:
        anchors = _points([raw["position"]], "bonus.position")
    else:
        raise MalformedProblem(f"{kind.value} bonus has no position")
    if anchors.shape[0] == 0:
        raise MalformedProblem(f"{kind.value} bonus has no position")

    vertices: tuple[int, ...] | None = None
    if raw.get("vertices") is not None:
        vertices = tuple(_int(v, "bonus.vertices") for v in raw["vertices"])
        if len(vertices) != anchors.shape[0]:
            raise MalformedProblem(f"{kind.value} bonus: {len(vertices)} anchor vertices for {anchors.shape[0]} positions")
        if any(not (0 <= v < n_vertices) for v in vertices):
            raise MalformedProblem(f"{kind.value} bonus: anchor vertex outside [0, {n_vertices})")

    return BonusSpec(
        kind=kind,
        problem=parse_puzzle_id(target) if target is not None else None,
        anchors=tuple((int(x), int(y)) for x, y in anchors),
        vertices=vertices,
    )


def _bonus_spec_to_json(spec: BonusSpec) -> dict[str, Any]:
    out: dict[str, Any] = {"bonus": spec.kind.value, "problem": spec.problem}
    if len(spec.anchors) == 1 and spec.vertices is None:
        out["position"] = list(spec.anchors[0])
    else:
        out["positions"] = [list(p) for p in spec.anchors]
    if spec.vertices is not None:
        out["vertices"] = list(spec.vertices)
    return out


def _pose_bonus(raw: Any) -> PoseBonus:
    if not isinstance(raw, dict):
        raise ValueError(f"pose bonus: expected an object, got {raw!r}")
    try:
        kind = _bonus_kind(raw.get("bonus"))
    except MalformedProblem as exc:
        raise ValueError(str(exc)) from exc
    problem = raw.get("problem")
    problem_id = parse_puzzle_id(problem) if problem is not None else None
    edge = raw.get("edge")
    if kind is BonusKind.BREAK_A_LEG:
        if not isinstance(edge, (list, tuple)) or len(edge) != 2:
            raise ValueError("BREAK_A_LEG needs 'edge': [a, b]")
        return PoseBonus(kind, problem_id, split=(int(edge[0]), int(edge[1])))
    if kind is BonusKind.SUPERFLEX and edge is not None:
        return PoseBonus(kind, problem_id, edge=int(edge))
    return PoseBonus(kind, problem_id)


def _pose_bonus_to_json(bonus: PoseBonus) -> dict[str, Any]:
    out: dict[str, Any] = {"bonus": bonus.kind.value}
    if bonus.problem is not None:
        out["problem"] = bonus.problem
    if bonus.split is not None:
        out["edge"] = [int(bonus.split[0]), int(bonus.split[1])]
    elif bonus.edge is not None:
        out["edge"] = int(bonus.edge)
    return out
