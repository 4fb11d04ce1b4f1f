"""Simulated annealing over integer poses.

The loop is deliberately scalar and exact: candidate validity and costs are
integers, only the Metropolis acceptance probability uses floating point.
Randomness comes exclusively from the `numpy.random.Generator` stored on the
solver state, so a fixed seed reproduces the whole trajectory.

Lifecycle: `INITIALIZING -> SEARCHING -> {CONVERGED, TIMED_OUT, EXHAUSTED}`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

import numpy as np

from .constants import COOLING, MAX_REHEATS, MAX_TEMP, MIN_TEMP, PENALTY_WEIGHT, REHEAT_FACTOR
from .geometry import HoleIndex
from .modes import Candidate, ModeConfig, ModePolicy, build_policy
from .moves import MoveGenerator, MoveParams, random_initial_vertices
from .problem import BonusSpec, Pose, PoseBonus, Problem
from .validate import Evaluation, PoseEvaluator, Violation

logger = logging.getLogger(__name__)


class SolveStatus(str, Enum):
    INITIALIZING = "initializing"
    SEARCHING = "searching"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    EXHAUSTED = "exhausted"

    @property
    def terminal(self) -> bool:
        return self in (SolveStatus.CONVERGED, SolveStatus.TIMED_OUT, SolveStatus.EXHAUSTED)


@dataclass(frozen=True)
class AnnealParams:
    """Temperature schedule and budgets for one solving attempt.

    Attributes:
        max_temp: Starting temperature.
        min_temp: Temperature floor; falling below it triggers a reheat or ends
            the attempt as EXHAUSTED.
        cooling: Geometric cooling factor applied after every iteration (< 1).
        max_reheats: Reheats allowed before EXHAUSTED.
        reheat_factor: Reheat temperature as a fraction of `max_temp`.
        penalty_weight: Integer weight of the violation magnitude in the cost.
        time_budget_s: Wall-clock budget of the attempt (None: unbounded).
        max_iters: Iteration budget (None: unbounded).
        random_start: Start from random lattice points inside the hole instead
            of the figure's original embedding.
        seed: RNG seed.
        record_trace: Record the best feasible score after every iteration.
    """

    max_temp: float = MAX_TEMP
    min_temp: float = MIN_TEMP
    cooling: float = COOLING
    max_reheats: int = MAX_REHEATS
    reheat_factor: float = REHEAT_FACTOR
    penalty_weight: int = PENALTY_WEIGHT
    time_budget_s: float | None = None
    max_iters: int | None = None
    random_start: bool = False
    seed: int | None = None
    record_trace: bool = False
    moves: MoveParams = field(default_factory=MoveParams)

    def __post_init__(self) -> None:
        if not (0.0 < float(self.cooling) < 1.0):
            raise ValueError("cooling must be in (0, 1)")
        if not (0.0 < float(self.min_temp) < float(self.max_temp)):
            raise ValueError("expected 0 < min_temp < max_temp")
        if int(self.penalty_weight) < 1:
            raise ValueError("penalty_weight must be >= 1")


@dataclass
class SolverState:
    vertices: np.ndarray
    evaluation: Evaluation
    cost: int
    temperature: float
    rng: np.random.Generator
    iteration: int = 0
    reheats: int = 0
    phase: int = 0
    best: Candidate | None = None
    least_bad: tuple[int, int, np.ndarray] | None = None
    status: SolveStatus = SolveStatus.INITIALIZING


@dataclass(frozen=True)
class AnnealResult:
    """Outcome of one attempt.

    `pose`/`score` describe the best feasible pose (None when none was found);
    `best_effort` is always set: the best feasible pose, or else the least
    violating placement seen, whose `violations` are reported.
    """

    status: SolveStatus
    mode: str
    pose: Pose | None
    score: int | None
    best_effort: Pose
    iterations: int
    reheats: int
    elapsed_s: float
    success: bool
    granted: tuple[BonusSpec, ...] = ()
    violations: tuple[Violation, ...] = ()
    best_trace: tuple[int, ...] = ()

    @property
    def feasible(self) -> bool:
        return self.pose is not None

    @property
    def bonus_acquired(self) -> bool:
        return bool(self.granted)


class AnnealingSolver:
    """One solving attempt: owns its state, shares nothing mutable.

    Args:
        problem: Problem to solve.
        params: Schedule and budgets.
        mode: Operating mode (defaults to ScoreMaximizer).
        bonuses: Bonuses the produced pose spends (must already be unlocked).
        start: Starting placement (Pose or `(N, 2)` array).
        hole_index: Shared hole index (built when omitted).
        cancel: Cancellation token polled every iteration.
        deadline: Absolute `time.monotonic()` deadline from the caller.
        on_improvement: Called with every new best feasible Pose.
    """

    def __init__(
        self,
        problem: Problem,
        *,
        params: AnnealParams | None = None,
        mode: ModeConfig | None = None,
        bonuses: Iterable[PoseBonus] = (),
        start: Pose | np.ndarray | None = None,
        hole_index: HoleIndex | None = None,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
        on_improvement: Callable[[Pose, int], None] | None = None,
    ) -> None:
        self.problem = problem
        self.params = params or AnnealParams()
        self.mode = mode or ModeConfig()
        self.bonuses = tuple(bonuses)
        self.hole_index = hole_index if hole_index is not None else HoleIndex(problem.hole)
        self.evaluator = PoseEvaluator(problem, self.bonuses, hole_index=self.hole_index)
        self.policy: ModePolicy = build_policy(problem, self.mode)
        self.moves = MoveGenerator(
            self.evaluator.figure,
            self.hole_index,
            self.params.moves,
            max_temp=self.params.max_temp,
            snap_targets=self.policy.snap_targets,
        )
        self.cancel = cancel
        self.on_improvement = on_improvement
        self._t0 = time.monotonic()
        limits = [d for d in (deadline, self._own_deadline()) if d is not None]
        self.deadline = min(limits) if limits else None
        self._trace: list[int] = []

        rng = np.random.default_rng(self.params.seed)
        vertices = self._initial_vertices(start, rng)
        evaluation = self.evaluator.evaluate(vertices)
        self.state = SolverState(
            vertices=vertices,
            evaluation=evaluation,
            cost=self._cost(vertices, evaluation, 0),
            temperature=float(self.params.max_temp),
            rng=rng,
        )
        self._observe(vertices, evaluation)

    def _own_deadline(self) -> float | None:
        if self.params.time_budget_s is None:
            return None
        return self._t0 + float(self.params.time_budget_s)

    def _initial_vertices(self, start: Pose | np.ndarray | None, rng: np.random.Generator) -> np.ndarray:
        n = self.evaluator.n_vertices
        if start is not None:
            vertices = start.vertices if isinstance(start, Pose) else np.asarray(start, dtype=np.int64)
            vertices = np.array(vertices, dtype=np.int64, copy=True).reshape(-1, 2)
            if vertices.shape[0] == n:
                return vertices
            logger.warning("start pose has %d vertices, figure needs %d; ignoring it", vertices.shape[0], n)
        if self.params.random_start:
            return random_initial_vertices(n, self.hole_index, rng)
        return np.array(self.evaluator.figure.vertices, dtype=np.int64, copy=True)

    def _cost(self, vertices: np.ndarray, evaluation: Evaluation, phase: int) -> int:
        return int(self.policy.objective(vertices, evaluation, phase)) + int(self.params.penalty_weight) * evaluation.violation

    def _observe(self, vertices: np.ndarray, evaluation: Evaluation) -> None:
        state = self.state
        if not evaluation.feasible:
            key = (evaluation.violation, evaluation.score)
            if state.least_bad is None or key < state.least_bad[:2]:
                state.least_bad = (key[0], key[1], vertices.copy())
            return
        candidate = Candidate(vertices.copy(), evaluation.score, self.policy.granted(vertices))
        if not self.policy.prefer(candidate, state.best):
            return
        state.best = candidate
        logger.debug("iter=%d new best score=%d granted=%d", state.iteration, candidate.score, len(candidate.granted))
        if self.on_improvement is not None:
            self.on_improvement(Pose(candidate.vertices.copy(), self.bonuses), candidate.score)
        phase = self.policy.advance_phase(state.phase, state.best)
        if phase != state.phase:
            logger.debug("iter=%d phase %d -> %d", state.iteration, state.phase, phase)
            state.phase = phase
            state.cost = self._cost(state.vertices, state.evaluation, phase)

    def _out_of_budget(self) -> bool:
        if self.params.max_iters is not None and self.state.iteration >= int(self.params.max_iters):
            return True
        if self.cancel is not None and self.cancel.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def step(self) -> None:
        """Run one propose / evaluate / accept / cool iteration."""
        state = self.state
        move = self.moves.propose(state, state.temperature)
        evaluation = self.evaluator.evaluate(move.vertices, base=state.evaluation, moved=move.moved)
        cost = self._cost(move.vertices, evaluation, state.phase)
        self._observe(move.vertices, evaluation)
        if self.policy.accept(state.cost, cost, state.temperature, state.rng):
            state.vertices = move.vertices
            state.evaluation = evaluation
            state.cost = cost
        state.temperature *= float(self.params.cooling)
        state.iteration += 1
        if self.params.record_trace and state.best is not None:
            self._trace.append(state.best.score)

    def _next_status(self) -> SolveStatus | None:
        state = self.state
        if self.policy.should_stop(state.best):
            return SolveStatus.CONVERGED
        if self._out_of_budget():
            return SolveStatus.TIMED_OUT
        if state.temperature < float(self.params.min_temp):
            if state.reheats >= int(self.params.max_reheats):
                return SolveStatus.EXHAUSTED
            state.reheats += 1
            state.temperature = float(self.params.max_temp) * float(self.params.reheat_factor)
            logger.debug(
                "temperature too low: reheat to %.3f (%d left)",
                state.temperature,
                int(self.params.max_reheats) - state.reheats,
            )
        return None

    def run(self) -> AnnealResult:
        state = self.state
        state.status = SolveStatus.SEARCHING
        while True:
            status = self._next_status()
            if status is not None:
                state.status = status
                break
            self.step()
        result = self.result()
        logger.info(
            "anneal %s: status=%s score=%s iters=%d reheats=%d %.2fs",
            self.policy.mode.value,
            result.status.value,
            result.score,
            result.iterations,
            result.reheats,
            result.elapsed_s,
        )
        return result

    def result(self) -> AnnealResult:
        state = self.state
        best = state.best
        pose = Pose(best.vertices.copy(), self.bonuses) if best is not None else None
        if pose is not None:
            best_effort = pose
            violations: tuple[Violation, ...] = ()
        else:
            vertices = state.least_bad[2] if state.least_bad is not None else state.vertices
            best_effort = Pose(vertices.copy(), self.bonuses)
            violations = self.evaluator.violations(vertices)
        return AnnealResult(
            status=state.status,
            mode=self.policy.mode.value,
            pose=pose,
            score=best.score if best is not None else None,
            best_effort=best_effort,
            iterations=state.iteration,
            reheats=state.reheats,
            elapsed_s=time.monotonic() - self._t0,
            success=bool(self.policy.success(best)),
            granted=tuple(self.policy.tracked[i] for i in sorted(best.granted)) if best is not None else (),
            violations=violations,
            best_trace=tuple(self._trace),
        )


def anneal(problem: Problem, **kwargs) -> AnnealResult:
    """Run one attempt with `AnnealingSolver(problem, **kwargs)`."""
    return AnnealingSolver(problem, **kwargs).run()
