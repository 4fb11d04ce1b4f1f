import logging
import threading

import numpy as np
import pytest

from brainwall.annealing import AnnealingSolver, AnnealParams, SolveStatus, anneal
from brainwall.modes import ModeConfig, OperatingMode
from brainwall.problem import Problem

SQUARE = [[0, 0], [10, 0], [10, 10], [0, 10]]
TRIANGLE = [[4, 4], [6, 4], [4, 6]]
TRIANGLE_EDGES = [[0, 1], [1, 2], [2, 0]]


def _problem(hole, vertices, edges, epsilon=0, bonuses=None) -> Problem:
    data = {"hole": hole, "figure": {"vertices": vertices, "edges": edges}, "epsilon": epsilon}
    if bonuses is not None:
        data["bonuses"] = bonuses
    return Problem.from_json(data, problem_id=1)


def test_zero_hunter_converges_on_exact_fit() -> None:
    problem = _problem(SQUARE, SQUARE, [[0, 1], [1, 2], [2, 3], [3, 0]])
    result = AnnealingSolver(
        problem,
        mode=ModeConfig(OperatingMode.ZERO_HUNTER),
        params=AnnealParams(max_iters=1000, seed=0),
    ).run()
    assert result.status is SolveStatus.CONVERGED
    assert result.score == 0
    assert result.iterations == 0
    assert result.success
    assert result.feasible


def test_best_score_never_increases() -> None:
    problem = _problem(SQUARE, TRIANGLE, TRIANGLE_EDGES)
    result = anneal(problem, params=AnnealParams(max_iters=2000, seed=1, record_trace=True))
    assert result.status is SolveStatus.TIMED_OUT
    assert result.iterations == 2000
    trace = result.best_trace
    assert len(trace) == 2000
    assert all(b <= a for a, b in zip(trace, trace[1:]))
    assert result.score == trace[-1]
    assert result.score <= 148  # identity placement


def test_fixed_seed_is_reproducible() -> None:
    problem = _problem(SQUARE, TRIANGLE, TRIANGLE_EDGES, epsilon=50000)
    params = AnnealParams(max_iters=500, seed=42, record_trace=True)
    first = anneal(problem, params=params)
    second = anneal(problem, params=params)
    np.testing.assert_array_equal(first.pose.vertices, second.pose.vertices)
    assert first.best_trace == second.best_trace


def test_cancellation_keeps_best_so_far() -> None:
    problem = _problem(SQUARE, TRIANGLE, TRIANGLE_EDGES)
    cancel = threading.Event()
    cancel.set()
    result = anneal(problem, params=AnnealParams(seed=0), cancel=cancel)
    assert result.status is SolveStatus.TIMED_OUT
    assert result.iterations == 0
    np.testing.assert_array_equal(result.pose.vertices, np.array(TRIANGLE))


def test_reheat_then_exhausted() -> None:
    problem = _problem(SQUARE, TRIANGLE, TRIANGLE_EDGES)
    params = AnnealParams(max_temp=10.0, min_temp=5.0, cooling=0.5, max_reheats=1, reheat_factor=0.9, seed=0)
    result = anneal(problem, params=params)
    assert result.status is SolveStatus.EXHAUSTED
    assert result.reheats == 1
    assert result.iterations == 3


def test_infeasible_problem_reports_best_effort() -> None:
    problem = _problem([[0, 0], [2, 0], [0, 2]], [[0, 0], [10, 0]], [[0, 1]])
    result = anneal(problem, params=AnnealParams(max_iters=50, seed=0))
    assert result.pose is None
    assert result.score is None
    assert not result.success
    assert result.best_effort.vertices.shape == (2, 2)
    assert result.violations


def test_improvement_callback_sees_feasible_start() -> None:
    problem = _problem(SQUARE, TRIANGLE, TRIANGLE_EDGES)
    seen = []
    anneal(problem, params=AnnealParams(max_iters=10, seed=0), on_improvement=lambda pose, score: seen.append(score))
    assert seen
    assert seen[0] == 148
    assert seen == sorted(seen, reverse=True)


def test_start_with_wrong_vertex_count_is_ignored(caplog) -> None:
    problem = _problem(SQUARE, TRIANGLE, TRIANGLE_EDGES)
    with caplog.at_level(logging.WARNING, logger="brainwall.annealing"):
        solver = AnnealingSolver(problem, params=AnnealParams(seed=0), start=np.zeros((5, 2), dtype=np.int64))
    np.testing.assert_array_equal(solver.state.vertices, np.array(TRIANGLE))
    assert "ignoring" in caplog.text


def test_collector_reaches_the_anchor() -> None:
    problem = _problem(
        SQUARE,
        TRIANGLE,
        TRIANGLE_EDGES,
        epsilon=1_000_000,
        bonuses=[{"bonus": "GLOBALIST", "problem": 2, "position": [5, 5]}],
    )
    result = anneal(
        problem,
        mode=ModeConfig(OperatingMode.BONUS_COLLECTOR, target=2),
        params=AnnealParams(max_iters=5000, seed=3),
    )
    assert result.success
    assert result.bonus_acquired
    assert result.granted[0].problem == 2
    assert any(tuple(int(c) for c in v) == (5, 5) for v in result.pose.vertices)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"cooling": 1.0},
        {"cooling": 0.0},
        {"min_temp": 50.0, "max_temp": 10.0},
        {"penalty_weight": 0},
    ],
)
def test_invalid_params_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        AnnealParams(**kwargs)
