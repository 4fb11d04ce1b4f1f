from fractions import Fraction

import numpy as np
import pytest

from brainwall.problem import BonusKind, Edge, Pose, PoseBonus, Problem
from brainwall.validate import (
    BonusFlags,
    GlobalistExceeded,
    InfeasibleEdge,
    Invalid,
    OutOfBounds,
    PoseEvaluator,
    Valid,
    compute_score,
    edge_length_valid,
    globalist_valid,
    segment_inside_hole,
    validate,
)

BIG = [[-20, -20], [20, -20], [20, 20], [-20, 20]]
SQUARE = [[0, 0], [10, 0], [10, 10], [0, 10]]
U_SHAPE = [[0, 0], [10, 0], [10, 10], [6, 10], [6, 5], [4, 5], [4, 10], [0, 10]]


def _problem(hole, vertices, edges, epsilon) -> Problem:
    return Problem.from_json({"hole": hole, "figure": {"vertices": vertices, "edges": edges}, "epsilon": epsilon})


@pytest.mark.parametrize(
    "end,valid",
    [
        ((10, 0), True),
        ((10, 1), True),  # 101 vs 100: exactly 10000 ppm
        ((10, 2), False),  # 104 vs 100
        ((9, 4), False),  # 97 vs 100: 30000 ppm
    ],
)
def test_epsilon_boundary_is_inclusive(end, valid) -> None:
    problem = _problem(BIG, [[0, 0], [10, 0]], [[0, 1]], 10000)
    assert edge_length_valid(problem.figure.edges[0], [[0, 0], end], problem.epsilon) is valid
    verdict = validate(problem, Pose([[0, 0], end]))
    assert isinstance(verdict, Valid) is valid


def test_epsilon_boundary_diagonal() -> None:
    edge = Edge(0, 1, 200)
    assert edge_length_valid(edge, [[0, 0], [11, 9]], 10000)  # 202
    assert not edge_length_valid(edge, [[0, 0], [14, 1]], 10000)  # 197


def test_epsilon_zero_requires_exact_length() -> None:
    edge = Edge(0, 1, 100)
    assert edge_length_valid(edge, [[0, 0], [6, 8]], 0)
    assert not edge_length_valid(edge, [[0, 0], [10, 1]], 0)


def test_infeasible_edge_report() -> None:
    problem = _problem(BIG, [[0, 0], [10, 0]], [[0, 1]], 10000)
    verdict = validate(problem, Pose([[0, 0], [10, 2]]))
    assert isinstance(verdict, Invalid)
    assert verdict.violations == (InfeasibleEdge(0, 0, 1, Fraction(40000)),)
    assert verdict.violations[0].to_json()["deviation_ppm"] == 40000.0


def test_score_known_value_and_purity() -> None:
    hole = np.array(SQUARE, dtype=np.int64)
    pose = np.array([[0, 0]], dtype=np.int64)
    hole_before, pose_before = hole.copy(), pose.copy()
    assert compute_score(pose, hole) == 400
    assert compute_score(pose, hole) == 400
    np.testing.assert_array_equal(hole, hole_before)
    np.testing.assert_array_equal(pose, pose_before)
    assert compute_score(Pose(SQUARE), SQUARE) == 0


def test_out_of_bounds_and_wallhack() -> None:
    problem = _problem(U_SHAPE, [[2, 8], [8, 8]], [[0, 1]], 0)
    verdict = validate(problem, problem.identity_pose())
    assert isinstance(verdict, Invalid)
    assert verdict.violations == (OutOfBounds(0, 0, 1),)
    assert not segment_inside_hole(problem.figure.edges[0], problem.identity_pose(), problem.hole)

    flags = BonusFlags(wallhack=True)
    assert segment_inside_hole(problem.figure.edges[0], problem.identity_pose(), problem.hole, flags)
    pose = Pose(problem.figure.vertices, (PoseBonus(BonusKind.WALLHACK, problem=1),))
    assert isinstance(validate(problem, pose), Valid)


def test_wallhack_does_not_relax_lengths() -> None:
    problem = _problem(U_SHAPE, [[2, 8], [8, 8]], [[0, 1]], 0)
    pose = Pose([[2, 8], [9, 8]], (PoseBonus(BonusKind.WALLHACK, problem=1),))
    assert isinstance(validate(problem, pose), Invalid)


def _two_edges(epsilon: int) -> Problem:
    return _problem(BIG, [[0, 0], [10, 0], [0, 10]], [[0, 1], [0, 2]], epsilon)


def test_globalist_pools_the_tolerance() -> None:
    problem = _two_edges(20000)
    pose = [[0, 0], [10, 2], [0, 10]]  # 40000 ppm + 0 ppm
    assert isinstance(validate(problem, Pose(pose)), Invalid)
    globalist = (PoseBonus(BonusKind.GLOBALIST, problem=9),)
    assert isinstance(validate(problem, Pose(pose, globalist)), Valid)
    assert globalist_valid(problem.figure, pose, problem.epsilon)

    worse = [[0, 0], [10, 3], [0, 10]]  # 90000 ppm
    verdict = validate(problem, Pose(worse, globalist))
    assert isinstance(verdict, Invalid)
    assert verdict.violations == (GlobalistExceeded(Fraction(90000), 40000),)
    assert not globalist_valid(problem.figure, worse, problem.epsilon)


def test_superflex_exempts_one_edge() -> None:
    problem = _two_edges(0)
    pose = [[0, 0], [10, 2], [0, 10]]
    assert isinstance(validate(problem, Pose(pose, (PoseBonus(BonusKind.SUPERFLEX, problem=4, edge=0),))), Valid)
    assert isinstance(validate(problem, Pose(pose, (PoseBonus(BonusKind.SUPERFLEX, problem=4, edge=1),))), Invalid)
    assert isinstance(validate(problem, Pose(pose, (PoseBonus(BonusKind.SUPERFLEX, problem=4),))), Valid)

    both = [[0, 0], [10, 2], [0, 11]]
    verdict = validate(problem, Pose(both, (PoseBonus(BonusKind.SUPERFLEX, problem=4),)))
    assert isinstance(verdict, Invalid)
    assert len(verdict.violations) == 1


def test_superflex_edge_out_of_range() -> None:
    problem = _two_edges(0)
    with pytest.raises(ValueError):
        validate(problem, Pose([[0, 0], [10, 0], [0, 10]], (PoseBonus(BonusKind.SUPERFLEX, edge=7),)))


def test_break_a_leg_pose() -> None:
    problem = _problem(SQUARE, SQUARE, [[0, 1], [1, 2], [2, 3], [3, 0]], 0)
    leg = (PoseBonus(BonusKind.BREAK_A_LEG, problem=2, split=(0, 1)),)
    verdict = validate(problem, Pose(SQUARE + [[5, 0]], leg))
    assert verdict == Valid(0)
    verdict = validate(problem, Pose(SQUARE + [[5, 1]], leg))
    assert isinstance(verdict, Invalid)
    assert {v.edge_index for v in verdict.violations} == {3, 4}
    with pytest.raises(ValueError):
        validate(problem, Pose(SQUARE, leg))


def test_figure_without_edges_only_scores() -> None:
    problem = _problem(SQUARE, [[3, 3]], [], 0)
    assert validate(problem, Pose([[30, 30]])) == Valid(compute_score([[30, 30]], SQUARE))


def test_incremental_evaluation_matches_full() -> None:
    problem = _problem(U_SHAPE, [[1, 1], [9, 1], [9, 9], [1, 9], [5, 4]], [[0, 1], [1, 2], [2, 3], [3, 0], [0, 4], [4, 2]], 50000)
    evaluator = PoseEvaluator(problem)
    rng = np.random.default_rng(0)
    vertices = np.array(problem.figure.vertices, dtype=np.int64, copy=True)
    current = evaluator.evaluate(vertices)
    for _ in range(200):
        v = int(rng.integers(vertices.shape[0]))
        cand = vertices.copy()
        cand[v] += rng.integers(-3, 4, size=2)
        inc = evaluator.evaluate(cand, base=current, moved=(v,))
        full = evaluator.evaluate(cand)
        assert inc.score == full.score
        assert inc.violation == full.violation
        assert inc.feasible == full.feasible
        np.testing.assert_array_equal(inc.excess, full.excess)
        np.testing.assert_array_equal(inc.outside, full.outside)
        if rng.random() < 0.5:
            vertices, current = cand, inc


def test_evaluator_rejects_wrong_vertex_count() -> None:
    problem = _two_edges(0)
    with pytest.raises(ValueError):
        PoseEvaluator(problem).evaluate(np.zeros((2, 2), dtype=np.int64))
