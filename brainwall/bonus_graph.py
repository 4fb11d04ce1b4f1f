"""Cross-puzzle bonus dependencies.

An edge `donor --kind--> consumer` means the donor puzzle declares a bonus of
`kind` that the consumer puzzle may spend once it has been granted (the
donor was solved with a pose covering the bonus anchors).

`BonusGraph` is the shared, single-writer container: writers replace the
whole immutable `BonusGraphSnapshot` under a lock, readers grab the current
snapshot without locking and never observe a partial update.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

from .errors import BonusDependencyCycle
from .problem import BonusKind, PoseBonus, Problem, PuzzleId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BonusEdge:
    donor: PuzzleId
    kind: BonusKind
    consumer: PuzzleId

    def to_json(self) -> dict:
        return {"donor": self.donor, "bonus": self.kind.value, "consumer": self.consumer}

    def as_pose_bonus(self) -> PoseBonus:
        return PoseBonus(self.kind, problem=self.donor)


@dataclass(frozen=True)
class SolvingPlan:
    order: tuple[PuzzleId, ...]
    cycles: tuple[BonusDependencyCycle, ...] = ()

    @property
    def cyclic(self) -> frozenset:
        return frozenset(p for c in self.cycles for p in c.puzzles)


@dataclass(frozen=True)
class BonusGraphSnapshot:
    """Immutable view of the declared edges and the recorded grants."""

    edges: tuple[BonusEdge, ...] = ()
    grants: frozenset[BonusEdge] = field(default_factory=frozenset)
    version: int = 0

    def donors_of(self, consumer: PuzzleId) -> tuple[BonusEdge, ...]:
        return tuple(e for e in self.edges if e.consumer == consumer)

    def consumers_of(self, donor: PuzzleId) -> tuple[BonusEdge, ...]:
        return tuple(e for e in self.edges if e.donor == donor)

    def unlocked_for(self, consumer: PuzzleId) -> tuple[BonusEdge, ...]:
        """Granted edges the consumer may spend, in declaration order."""
        return tuple(e for e in self.edges if e.consumer == consumer and e in self.grants)

    def is_granted(self, edge: BonusEdge) -> bool:
        return edge in self.grants

    def solving_order(
        self,
        puzzles: Iterable[PuzzleId],
        scores: Mapping[PuzzleId, int | None] | None = None,
    ) -> SolvingPlan:
        """Order `puzzles` so that useful donors come before their consumers.

        A dependency is active when its grant is not recorded yet and the
        consumer has a known score > 0 (the bonus can strictly improve it).
        Ties keep the input order. When only cyclic dependencies remain, the
        cycle is reported and the member with the largest improvement
        potential (sum of the known scores it could improve) goes first.

        Args:
            puzzles: Puzzle ids in discovery order.
            scores: Best known dislikes per puzzle (None or missing: unknown).

        Returns:
            The order plus the cycles encountered.
        """
        scores = scores or {}
        ids = list(dict.fromkeys(puzzles))
        present = set(ids)
        rank = {p: i for i, p in enumerate(ids)}

        preds: dict[PuzzleId, set[PuzzleId]] = {p: set() for p in ids}
        potential: dict[PuzzleId, int] = {p: 0 for p in ids}
        for edge in self.edges:
            if edge.donor not in present or edge.consumer not in present or edge.donor == edge.consumer:
                continue
            if edge in self.grants:
                continue
            known = scores.get(edge.consumer)
            if known is None or int(known) <= 0:
                continue
            preds[edge.consumer].add(edge.donor)
            potential[edge.donor] += int(known)

        order: list[PuzzleId] = []
        cycles: list[BonusDependencyCycle] = []
        seen_cycles: set[frozenset] = set()
        remaining = set(ids)
        while remaining:
            ready = sorted((p for p in remaining if not (preds[p] & remaining)), key=rank.__getitem__)
            if not ready:
                cycle = _find_cycle(min(remaining, key=rank.__getitem__), preds, remaining)
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    record = BonusDependencyCycle(tuple(cycle))
                    cycles.append(record)
                    logger.warning("%s", record)
                pick = max(cycle, key=lambda p: (potential[p], -rank[p]))
                ready = [pick]
            for p in ready:
                order.append(p)
                remaining.discard(p)
        return SolvingPlan(order=tuple(order), cycles=tuple(cycles))


def _find_cycle(start: PuzzleId, preds: Mapping[PuzzleId, set], remaining: set) -> list[PuzzleId]:
    # Every remaining node has a remaining predecessor, so the walk must revisit a node.
    path: list[PuzzleId] = []
    index: dict[PuzzleId, int] = {}
    node = start
    while node not in index:
        index[node] = len(path)
        path.append(node)
        node = min((p for p in preds[node] if p in remaining), key=repr)
    cycle = path[index[node]:]
    cycle.reverse()
    return cycle


def edges_from_problems(problems: Iterable[Problem]) -> tuple[BonusEdge, ...]:
    edges: list[BonusEdge] = []
    for problem in problems:
        if problem.problem_id is None:
            continue
        for spec in problem.bonuses:
            if spec.problem is None:
                continue
            edges.append(BonusEdge(problem.problem_id, spec.kind, spec.problem))
    return tuple(dict.fromkeys(edges))


class BonusGraph:
    """Shared bonus graph with copy-on-write updates."""

    def __init__(self, edges: Iterable[BonusEdge] = (), grants: Iterable[BonusEdge] = ()) -> None:
        self._lock = threading.Lock()
        edges = tuple(dict.fromkeys(edges))
        self._snapshot = BonusGraphSnapshot(edges=edges, grants=frozenset(grants))

    @classmethod
    def from_problems(cls, problems: Iterable[Problem], grants: Iterable[BonusEdge] = ()) -> "BonusGraph":
        return cls(edges_from_problems(problems), grants)

    def snapshot(self) -> BonusGraphSnapshot:
        return self._snapshot

    def add_edges(self, edges: Iterable[BonusEdge]) -> None:
        with self._lock:
            cur = self._snapshot
            merged = tuple(dict.fromkeys((*cur.edges, *edges)))
            if merged != cur.edges:
                self._snapshot = replace(cur, edges=merged, version=cur.version + 1)

    def record_grant(self, edge: BonusEdge) -> bool:
        """Record that `edge`'s bonus was granted; returns False if already known."""
        with self._lock:
            cur = self._snapshot
            if edge in cur.grants:
                return False
            edges = cur.edges if edge in cur.edges else (*cur.edges, edge)
            self._snapshot = replace(cur, edges=edges, grants=cur.grants | {edge}, version=cur.version + 1)
        logger.info("granted %s from %s to %s", edge.kind.value, edge.donor, edge.consumer)
        return True
