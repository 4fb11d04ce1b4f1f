"""Operating modes: objective, acceptance, and stop policy for the annealer.

A mode is not a solver subclass. `build_policy` assembles a `ModePolicy`, a
record of plain callables that the annealing loop calls at fixed seams:

- `objective(vertices, evaluation, phase)`: integer cost before the
  infeasibility penalty
- `accept(current, candidate, temperature, rng)`: Metropolis rule by default
- `prefer(candidate, best)`: whether a feasible candidate replaces the best
- `should_stop(best)`: early success
- `snap_targets(phase)`: bonus anchors the move generator may snap onto
- `advance_phase(phase, best)`: BonusHunter's collect -> optimize switch
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np

from .geometry import point_in_polygon
from .problem import BonusSpec, Problem, PuzzleId
from .validate import Evaluation

COLLECT_PHASE = 0
OPTIMIZE_PHASE = 1


class OperatingMode(str, Enum):
    SCORE_MAXIMIZER = "score"
    BONUS_COLLECTOR = "collect"
    BONUS_HUNTER = "hunt"
    ZERO_HUNTER = "zero"


@dataclass(frozen=True)
class ModeConfig:
    """Mode selection.

    Attributes:
        mode: Operating mode.
        target: Puzzle whose bonus BonusCollector must obtain.
        bias: Integer weight of the anchor-distance term in bonus-seeking objectives.
    """

    mode: OperatingMode = OperatingMode.SCORE_MAXIMIZER
    target: PuzzleId | None = None
    bias: int = 4


@dataclass(frozen=True)
class Candidate:
    """A feasible placement seen by the search."""

    vertices: np.ndarray
    score: int
    granted: frozenset[int] = frozenset()


def anchor_distance(spec: BonusSpec, vertices: np.ndarray) -> int:
    """Integer distance of a placement from granting `spec` (0 iff granted).

    With anchor vertex indices, the squared distances of those vertices to
    their anchors are summed; otherwise each anchor contributes the squared
    distance to its nearest pose vertex.
    """
    anchors = np.asarray(spec.anchors, dtype=np.int64).reshape(-1, 2)
    if spec.vertices is not None:
        d = vertices[list(spec.vertices)] - anchors
        return int(np.sum(d * d))
    d = anchors[:, None, :] - vertices[None, :, :]
    return int(np.sum(np.min(np.sum(d * d, axis=2), axis=1)))


def bonus_granted(spec: BonusSpec, vertices) -> bool:
    """Whether the placement coincides exactly with the bonus anchors."""
    return anchor_distance(spec, np.asarray(vertices, dtype=np.int64).reshape(-1, 2)) == 0


def granted_bonuses(problem: Problem, vertices) -> tuple[BonusSpec, ...]:
    vertices = np.asarray(vertices, dtype=np.int64).reshape(-1, 2)
    return tuple(spec for spec in problem.bonuses if anchor_distance(spec, vertices) == 0)


def obtainable_bonuses(problem: Problem) -> tuple[BonusSpec, ...]:
    """Bonuses whose anchors all lie in the closed hole (a feasible pose can reach them)."""
    return tuple(spec for spec in problem.bonuses if all(point_in_polygon(problem.hole, a) for a in spec.anchors))


def metropolis_accept(current: int, candidate: int, temperature: float, rng: np.random.Generator) -> bool:
    if candidate < current:
        return True
    if temperature <= 0.0:
        return False
    return bool(rng.random() < math.exp(-(candidate - current) / temperature))


@dataclass(frozen=True)
class ModePolicy:
    mode: OperatingMode
    tracked: tuple[BonusSpec, ...]
    objective: Callable[[np.ndarray, Evaluation, int], int]
    prefer: Callable[[Candidate, Candidate | None], bool]
    should_stop: Callable[[Candidate | None], bool]
    snap_targets: Callable[[int], tuple[BonusSpec, ...]]
    advance_phase: Callable[[int, Candidate | None], int]
    success: Callable[[Candidate | None], bool]
    accept: Callable[[int, int, float, np.random.Generator], bool] = field(default=metropolis_accept)

    def granted(self, vertices: np.ndarray) -> frozenset[int]:
        """Indices (into `tracked`) of the bonuses a placement grants."""
        return frozenset(i for i, spec in enumerate(self.tracked) if anchor_distance(spec, vertices) == 0)


def _dislikes(vertices: np.ndarray, evaluation: Evaluation, phase: int) -> int:
    return evaluation.score


def _lower_score(candidate: Candidate, best: Candidate | None) -> bool:
    return best is None or candidate.score < best.score


def _never(best: Candidate | None) -> bool:
    return False


def _no_snaps(phase: int) -> tuple[BonusSpec, ...]:
    return ()


def _same_phase(phase: int, best: Candidate | None) -> int:
    return phase


def _found(best: Candidate | None) -> bool:
    return best is not None


def _more_grants_then_score(candidate: Candidate, best: Candidate | None) -> bool:
    if best is None:
        return True
    if len(candidate.granted) != len(best.granted):
        return len(candidate.granted) > len(best.granted)
    return candidate.score < best.score


def build_policy(problem: Problem, config: ModeConfig | None = None) -> ModePolicy:
    """Assemble the policy for `config.mode` on `problem`.

    Raises:
        ValueError: If BonusCollector has no target or the problem declares
            no bonus for that target.
    """
    config = config or ModeConfig()
    mode = OperatingMode(config.mode)
    bias = int(config.bias)

    if mode is OperatingMode.SCORE_MAXIMIZER:
        return ModePolicy(
            mode=mode,
            tracked=problem.bonuses,
            objective=_dislikes,
            prefer=_lower_score,
            should_stop=_never,
            snap_targets=_no_snaps,
            advance_phase=_same_phase,
            success=_found,
        )

    if mode is OperatingMode.ZERO_HUNTER:

        def _zero(best: Candidate | None) -> bool:
            return best is not None and best.score == 0

        return ModePolicy(
            mode=mode,
            tracked=problem.bonuses,
            objective=_dislikes,
            prefer=_lower_score,
            should_stop=_zero,
            snap_targets=_no_snaps,
            advance_phase=_same_phase,
            success=_zero,
        )

    if mode is OperatingMode.BONUS_COLLECTOR:
        if config.target is None:
            raise ValueError("BonusCollector needs a target puzzle")
        spec = problem.bonus_for_target(config.target)
        if spec is None:
            raise ValueError(f"problem {problem.problem_id} declares no bonus for puzzle {config.target}")
        tracked = (spec,)

        def _biased(vertices: np.ndarray, evaluation: Evaluation, phase: int) -> int:
            return evaluation.score + bias * anchor_distance(spec, vertices)

        def _collected(best: Candidate | None) -> bool:
            return best is not None and 0 in best.granted

        return ModePolicy(
            mode=mode,
            tracked=tracked,
            objective=_biased,
            prefer=_more_grants_then_score,
            should_stop=_never,
            snap_targets=lambda phase: tracked,
            advance_phase=_same_phase,
            success=_collected,
        )

    # BonusHunter: collect every obtainable bonus, then optimize dislikes.
    tracked = obtainable_bonuses(problem)

    def _hunt(vertices: np.ndarray, evaluation: Evaluation, phase: int) -> int:
        if phase == COLLECT_PHASE:
            return evaluation.score + bias * sum(anchor_distance(s, vertices) for s in tracked)
        return evaluation.score

    def _advance(phase: int, best: Candidate | None) -> int:
        if phase == COLLECT_PHASE and best is not None and len(best.granted) == len(tracked):
            return OPTIMIZE_PHASE
        return phase

    def _all_collected(best: Candidate | None) -> bool:
        return best is not None and len(best.granted) == len(tracked)

    return ModePolicy(
        mode=mode,
        tracked=tracked,
        objective=_hunt,
        prefer=_more_grants_then_score,
        should_stop=_never,
        snap_targets=lambda phase: tracked if phase == COLLECT_PHASE else (),
        advance_phase=_advance,
        success=_all_collected,
    )
