"""Neighbourhood moves for the annealing search.

Candidates need not be feasible; the evaluator judges them downstream.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

import numpy as np

from .constants import MAX_TEMP, PPM
from .geometry import HoleIndex
from .problem import BonusSpec, Figure


class _SearchState(Protocol):
    vertices: np.ndarray
    phase: int
    rng: np.random.Generator


@dataclass(frozen=True)
class MoveParams:
    """Move mix.

    Attributes:
        max_radius: Displacement radius at `max_temp` (0 derives it from the hole size).
        translate_prob: Probability of a whole-pose rigid translation.
        snap_prob: Probability of snapping onto bonus anchors (when the mode supplies any).
        edge_aware_prob: Probability that a single-vertex move keeps the best of
            `edge_aware_samples` positions by incident-edge deviation.
        edge_aware_samples: Samples per edge-aware move.
    """

    max_radius: int = 0
    translate_prob: float = 0.05
    snap_prob: float = 0.05
    edge_aware_prob: float = 0.5
    edge_aware_samples: int = 6


@dataclass(frozen=True)
class Move:
    vertices: np.ndarray
    moved: tuple[int, ...]
    kind: str


def _no_snaps(phase: int) -> tuple[BonusSpec, ...]:
    return ()


class MoveGenerator:
    def __init__(
        self,
        figure: Figure,
        hole_index: HoleIndex,
        params: MoveParams | None = None,
        *,
        max_temp: float = MAX_TEMP,
        snap_targets: Callable[[int], tuple[BonusSpec, ...]] = _no_snaps,
    ) -> None:
        self.figure = figure
        self.hole_index = hole_index
        self.params = params or MoveParams()
        self.max_temp = float(max_temp)
        self.snap_targets = snap_targets
        radius = int(self.params.max_radius)
        if radius <= 0:
            extent = max(hole_index.max_xy[0] - hole_index.min_xy[0], hole_index.max_xy[1] - hole_index.min_xy[1])
            radius = max(2, extent // 4)
        self.max_radius = radius

    def radius(self, temperature: float) -> int:
        """Displacement radius; shrinks linearly with temperature down to 1."""
        frac = min(1.0, max(0.0, float(temperature) / self.max_temp))
        return max(1, int(round(self.max_radius * frac)))

    def propose(self, state: _SearchState, temperature: float) -> Move:
        rng = state.rng
        vertices = state.vertices
        targets = self.snap_targets(state.phase)
        roll = float(rng.random())
        if targets and roll < self.params.snap_prob:
            spec = targets[int(rng.integers(len(targets)))]
            return self._snap(vertices, spec)
        roll -= self.params.snap_prob if targets else 0.0
        r = self.radius(temperature)
        if roll < self.params.translate_prob:
            return self._translate(vertices, r, rng)
        v = int(rng.integers(vertices.shape[0]))
        if self.figure.incident[v] and float(rng.random()) < self.params.edge_aware_prob:
            return self._edge_aware(vertices, v, r, rng)
        return self._displace(vertices, v, r, rng)

    @staticmethod
    def _offset(r: int, rng: np.random.Generator) -> tuple[int, int]:
        while True:
            dx, dy = (int(x) for x in rng.integers(-r, r + 1, size=2))
            if dx or dy:
                return dx, dy

    def _displace(self, vertices: np.ndarray, v: int, r: int, rng: np.random.Generator) -> Move:
        dx, dy = self._offset(r, rng)
        out = vertices.copy()
        out[v, 0] += dx
        out[v, 1] += dy
        return Move(out, (v,), "displace")

    def _edge_aware(self, vertices: np.ndarray, v: int, r: int, rng: np.random.Generator) -> Move:
        best_pos: tuple[int, int] | None = None
        best_dev: int | None = None
        x0, y0 = int(vertices[v, 0]), int(vertices[v, 1])
        for _ in range(max(1, int(self.params.edge_aware_samples))):
            dx, dy = self._offset(r, rng)
            pos = (x0 + dx, y0 + dy)
            dev = self._incident_deviation(vertices, v, pos)
            if best_dev is None or dev < best_dev:
                best_dev = dev
                best_pos = pos
        assert best_pos is not None
        out = vertices.copy()
        out[v] = best_pos
        return Move(out, (v,), "edge_aware")

    def _incident_deviation(self, vertices: np.ndarray, v: int, pos: tuple[int, int]) -> int:
        total = 0
        for idx in self.figure.incident[v]:
            edge = self.figure.edges[idx]
            other = vertices[edge.b if edge.a == v else edge.a]
            dx = pos[0] - int(other[0])
            dy = pos[1] - int(other[1])
            cur = dx * dx + dy * dy
            if edge.halved:
                cur *= 4
            total += abs(cur - edge.d2) * PPM // edge.d2
        return total

    def _translate(self, vertices: np.ndarray, r: int, rng: np.random.Generator) -> Move:
        dx, dy = self._offset(r, rng)
        out = vertices + np.array([dx, dy], dtype=np.int64)
        return Move(out, tuple(range(vertices.shape[0])), "translate")

    def _snap(self, vertices: np.ndarray, spec: BonusSpec) -> Move:
        out = vertices.copy()
        if spec.vertices is not None:
            idxs = tuple(int(v) for v in spec.vertices)
            for v, anchor in zip(idxs, spec.anchors):
                out[v] = anchor
            return Move(out, idxs, "snap")
        taken: list[int] = []
        for anchor in spec.anchors:
            d = vertices - np.array(anchor, dtype=np.int64)
            d2 = np.sum(d * d, axis=1)
            if taken:
                d2[taken] = np.iinfo(np.int64).max
            v = int(np.argmin(d2))
            taken.append(v)
            out[v] = anchor
        return Move(out, tuple(taken), "snap")


def random_initial_vertices(n: int, hole_index: HoleIndex, rng: np.random.Generator) -> np.ndarray:
    """Sample `n` lattice points inside the hole (hole vertices if the interior has none)."""
    pool = hole_index.lattice_points()
    if pool.shape[0] == 0:
        pool = hole_index.hole
    picks = rng.integers(pool.shape[0], size=n)
    return np.array(pool[picks], dtype=np.int64, copy=True)
