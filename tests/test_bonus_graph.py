import logging
import threading

from brainwall.bonus_graph import BonusEdge, BonusGraph, BonusGraphSnapshot, edges_from_problems
from brainwall.problem import BonusKind, Problem


def _edge(donor, consumer, kind=BonusKind.GLOBALIST) -> BonusEdge:
    return BonusEdge(donor, kind, consumer)


def test_donor_goes_before_consumer_that_can_improve() -> None:
    snap = BonusGraphSnapshot(edges=(_edge(1, 2),))
    plan = snap.solving_order([2, 1], {2: 10})
    assert plan.order == (1, 2)
    assert plan.cycles == ()


def test_unknown_or_perfect_consumer_keeps_input_order() -> None:
    snap = BonusGraphSnapshot(edges=(_edge(1, 2),))
    assert snap.solving_order([2, 1]).order == (2, 1)
    assert snap.solving_order([2, 1], {2: 0}).order == (2, 1)


def test_granted_edge_no_longer_constrains() -> None:
    edge = _edge(1, 2)
    snap = BonusGraphSnapshot(edges=(edge,), grants=frozenset({edge}))
    assert snap.solving_order([2, 1], {2: 10}).order == (2, 1)
    assert snap.unlocked_for(2) == (edge,)
    assert snap.unlocked_for(1) == ()


def test_chain_is_topological() -> None:
    snap = BonusGraphSnapshot(edges=(_edge(3, 2), _edge(2, 1)))
    plan = snap.solving_order([1, 2, 3, 4], {1: 5, 2: 5, 3: 5})
    assert plan.order == (3, 4, 2, 1)


def test_cycle_is_reported_and_broken_by_potential(caplog) -> None:
    snap = BonusGraphSnapshot(edges=(_edge(1, 2), _edge(2, 1, BonusKind.WALLHACK)))
    with caplog.at_level(logging.WARNING, logger="brainwall.bonus_graph"):
        plan = snap.solving_order([1, 2], {1: 5, 2: 50})
    # Solving 1 first can improve puzzle 2, which has far more dislikes.
    assert plan.order == (1, 2)
    assert len(plan.cycles) == 1
    assert plan.cyclic == frozenset({1, 2})
    assert "bonus dependency cycle" in caplog.text

    plan = snap.solving_order([1, 2], {1: 50, 2: 5})
    assert plan.order == (2, 1)


def test_self_loop_is_ignored() -> None:
    snap = BonusGraphSnapshot(edges=(_edge(1, 1),))
    plan = snap.solving_order([1], {1: 5})
    assert plan.order == (1,)
    assert plan.cycles == ()


def test_snapshots_are_immutable_views() -> None:
    edge = _edge(1, 2)
    graph = BonusGraph([edge])
    before = graph.snapshot()
    assert graph.record_grant(edge)
    assert not graph.record_grant(edge)
    after = graph.snapshot()
    assert not before.is_granted(edge)
    assert after.is_granted(edge)
    assert after.version == before.version + 1


def test_record_grant_adds_unknown_edge() -> None:
    graph = BonusGraph()
    edge = _edge("lambda", 3, BonusKind.BREAK_A_LEG)
    graph.record_grant(edge)
    assert graph.snapshot().edges == (edge,)
    assert graph.snapshot().consumers_of("lambda") == (edge,)


def test_add_edges_deduplicates() -> None:
    graph = BonusGraph([_edge(1, 2)])
    graph.add_edges([_edge(1, 2)])
    assert graph.snapshot().version == 0
    graph.add_edges([_edge(2, 3)])
    assert graph.snapshot().edges == (_edge(1, 2), _edge(2, 3))
    assert graph.snapshot().donors_of(3) == (_edge(2, 3),)


def test_concurrent_grants_are_all_recorded() -> None:
    graph = BonusGraph()
    edges = [_edge(i, i + 1) for i in range(50)]

    def grant(chunk) -> None:
        for edge in chunk:
            graph.record_grant(edge)

    threads = [threading.Thread(target=grant, args=(edges[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert graph.snapshot().grants == frozenset(edges)


def test_edges_from_problems() -> None:
    problem = Problem.from_json(
        {
            "hole": [[0, 0], [10, 0], [10, 10]],
            "figure": {"vertices": [[1, 1], [2, 2]], "edges": [[0, 1]]},
            "epsilon": 0,
            "bonuses": [
                {"bonus": "GLOBALIST", "problem": 4, "position": [1, 1]},
                {"bonus": "SUPERFLEX", "problem": 5, "position": [2, 2]},
            ],
        },
        problem_id=3,
    )
    anonymous = Problem.from_json(problem.to_json())
    assert edges_from_problems([problem, anonymous]) == (
        _edge(3, 4),
        _edge(3, 5, BonusKind.SUPERFLEX),
    )
    assert BonusGraph.from_problems([problem]).snapshot().donors_of(4) == (_edge(3, 4),)
