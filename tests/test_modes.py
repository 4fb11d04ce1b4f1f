import numpy as np
import pytest

from brainwall.modes import (
    COLLECT_PHASE,
    OPTIMIZE_PHASE,
    Candidate,
    ModeConfig,
    OperatingMode,
    anchor_distance,
    bonus_granted,
    build_policy,
    granted_bonuses,
    metropolis_accept,
    obtainable_bonuses,
)
from brainwall.problem import BonusKind, BonusSpec, Problem


def _problem() -> Problem:
    return Problem.from_json(
        {
            "hole": [[0, 0], [10, 0], [10, 10], [0, 10]],
            "figure": {"vertices": [[4, 4], [6, 4], [4, 6]], "edges": [[0, 1], [1, 2], [2, 0]]},
            "epsilon": 0,
            "bonuses": [
                {"bonus": "GLOBALIST", "problem": 2, "position": [5, 5]},
                {"bonus": "WALLHACK", "problem": 3, "positions": [[4, 4], [6, 4]], "vertices": [1, 0]},
            ],
        },
        problem_id=1,
    )


def test_anchor_distance_without_vertex_indices() -> None:
    spec = BonusSpec(BonusKind.GLOBALIST, 2, ((5, 5),))
    vertices = np.array([[4, 4], [6, 4], [4, 6]], dtype=np.int64)
    assert anchor_distance(spec, vertices) == 2
    assert not bonus_granted(spec, vertices)
    assert bonus_granted(spec, [[5, 5], [6, 4], [4, 6]])


def test_anchor_distance_with_vertex_indices() -> None:
    spec = BonusSpec(BonusKind.WALLHACK, 3, ((4, 4), (6, 4)), (1, 0))
    identity = np.array([[4, 4], [6, 4], [4, 6]], dtype=np.int64)
    # Vertex 1 must sit on (4, 4) and vertex 0 on (6, 4): the identity is swapped.
    assert anchor_distance(spec, identity) == 8
    assert bonus_granted(spec, [[6, 4], [4, 4], [4, 6]])


def test_granted_bonuses() -> None:
    problem = _problem()
    granted = granted_bonuses(problem, [[5, 5], [6, 4], [4, 6]])
    assert [s.kind for s in granted] == [BonusKind.GLOBALIST]


def test_metropolis_accept() -> None:
    rng = np.random.default_rng(0)
    assert metropolis_accept(10, 9, 0.0, rng)
    assert not metropolis_accept(10, 11, 0.0, rng)
    assert not metropolis_accept(10, 10_000, 1e-3, rng)
    hits = sum(metropolis_accept(10, 11, 1e9, rng) for _ in range(100))
    assert hits >= 95


def test_score_and_zero_policies() -> None:
    problem = _problem()
    zero = build_policy(problem, ModeConfig(OperatingMode.ZERO_HUNTER))
    score = build_policy(problem, ModeConfig(OperatingMode.SCORE_MAXIMIZER))
    cand = Candidate(np.zeros((3, 2), dtype=np.int64), 0)
    assert zero.should_stop(cand)
    assert not zero.should_stop(Candidate(cand.vertices, 5))
    assert not score.should_stop(cand)
    assert score.prefer(Candidate(cand.vertices, 3), Candidate(cand.vertices, 4))
    assert not score.prefer(Candidate(cand.vertices, 4), Candidate(cand.vertices, 4))


def test_collector_requires_declared_target() -> None:
    problem = _problem()
    with pytest.raises(ValueError):
        build_policy(problem, ModeConfig(OperatingMode.BONUS_COLLECTOR))
    with pytest.raises(ValueError):
        build_policy(problem, ModeConfig(OperatingMode.BONUS_COLLECTOR, target=99))
    policy = build_policy(problem, ModeConfig(OperatingMode.BONUS_COLLECTOR, target=2))
    assert [s.kind for s in policy.tracked] == [BonusKind.GLOBALIST]
    assert policy.snap_targets(COLLECT_PHASE) == policy.tracked


def test_collector_prefers_granting_pose() -> None:
    policy = build_policy(_problem(), ModeConfig(OperatingMode.BONUS_COLLECTOR, target=2))
    plain = Candidate(np.zeros((3, 2), dtype=np.int64), 1)
    granting = Candidate(np.zeros((3, 2), dtype=np.int64), 50, frozenset({0}))
    assert policy.prefer(granting, plain)
    assert not policy.prefer(plain, granting)
    assert policy.success(granting)
    assert not policy.success(plain)


def test_hunter_switches_phase_once_everything_is_granted() -> None:
    problem = _problem()
    policy = build_policy(problem, ModeConfig(OperatingMode.BONUS_HUNTER))
    vertices = np.zeros((3, 2), dtype=np.int64)
    some = Candidate(vertices, 0, frozenset({0}))
    everything = Candidate(vertices, 0, frozenset({0, 1}))
    assert policy.advance_phase(COLLECT_PHASE, some) == COLLECT_PHASE
    assert policy.advance_phase(COLLECT_PHASE, everything) == OPTIMIZE_PHASE
    assert policy.snap_targets(OPTIMIZE_PHASE) == ()
    assert len(policy.snap_targets(COLLECT_PHASE)) == 2


def test_hunter_ignores_bonuses_outside_the_hole() -> None:
    problem = Problem.from_json(
        {
            "hole": [[0, 0], [10, 0], [10, 10], [0, 10]],
            "figure": {"vertices": [[4, 4], [6, 4], [4, 6]], "edges": [[0, 1], [1, 2], [2, 0]]},
            "epsilon": 0,
            "bonuses": [
                {"bonus": "GLOBALIST", "problem": 2, "position": [5, 5]},
                {"bonus": "WALLHACK", "problem": 3, "position": [50, 50]},
            ],
        },
        problem_id=1,
    )
    assert [s.problem for s in obtainable_bonuses(problem)] == [2]
    policy = build_policy(problem, ModeConfig(OperatingMode.BONUS_HUNTER))
    assert len(policy.tracked) == 1
    collected = Candidate(np.array([[5, 5], [6, 4], [4, 6]], dtype=np.int64), 3, frozenset({0}))
    assert policy.advance_phase(COLLECT_PHASE, collected) == OPTIMIZE_PHASE
    assert policy.success(collected)


def test_biased_objective_reaches_plain_score_when_granted() -> None:
    from brainwall.validate import PoseEvaluator

    problem = _problem()
    policy = build_policy(problem, ModeConfig(OperatingMode.BONUS_COLLECTOR, target=2, bias=4))
    evaluator = PoseEvaluator(problem)
    far = np.array([[4, 4], [6, 4], [4, 6]], dtype=np.int64)
    ev = evaluator.evaluate(far)
    assert policy.objective(far, ev, COLLECT_PHASE) == ev.score + 4 * 2
    near = np.array([[5, 5], [6, 4], [4, 6]], dtype=np.int64)
    ev = evaluator.evaluate(near)
    assert policy.objective(near, ev, COLLECT_PHASE) == ev.score
