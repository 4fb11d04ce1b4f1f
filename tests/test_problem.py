import json
import unittest
from pathlib import Path

import numpy as np
import pytest

from brainwall.errors import MalformedProblem
from brainwall.problem import (
    BonusKind,
    Pose,
    PoseBonus,
    Problem,
    load_pose,
    load_problem,
    problem_id_from_path,
    save_pose,
)


def _square_problem(**extra) -> dict:
    data = {
        "hole": [[0, 0], [10, 0], [10, 10], [0, 10]],
        "figure": {"vertices": [[0, 0], [10, 0], [10, 10], [0, 10]], "edges": [[0, 1], [1, 2], [2, 3], [3, 0]]},
        "epsilon": 0,
    }
    data.update(extra)
    return data


class TestProblemParsing(unittest.TestCase):
    def test_parses_square(self) -> None:
        problem = Problem.from_json(_square_problem(), problem_id=7)
        self.assertEqual(problem.problem_id, 7)
        self.assertEqual(problem.figure.n_vertices, 4)
        self.assertEqual([e.d2 for e in problem.figure.edges], [100, 100, 100, 100])
        self.assertEqual(problem.figure.incident[0], (0, 3))
        self.assertEqual(problem.bounds(), (0, 0, 10, 10))

    def test_parses_bonuses(self) -> None:
        problem = Problem.from_json(
            _square_problem(
                bonuses=[
                    {"bonus": "GLOBALIST", "problem": 12, "position": [5, 5]},
                    {"bonus": "superflex", "problem": "3", "positions": [[0, 0], [10, 0]], "vertices": [0, 1]},
                ]
            )
        )
        self.assertEqual(problem.bonuses[0].kind, BonusKind.GLOBALIST)
        self.assertEqual(problem.bonuses[0].anchors, ((5, 5),))
        self.assertIsNone(problem.bonuses[0].vertices)
        self.assertEqual(problem.bonuses[1].kind, BonusKind.SUPERFLEX)
        self.assertEqual(problem.bonuses[1].problem, 3)
        self.assertEqual(problem.bonuses[1].vertices, (0, 1))
        self.assertIs(problem.bonus_for_target(12), problem.bonuses[0])
        self.assertIsNone(problem.bonus_for_target(99))

    def test_json_round_trip(self) -> None:
        data = _square_problem(epsilon=1250, bonuses=[{"bonus": "WALLHACK", "problem": 2, "position": [1, 1]}])
        again = Problem.from_json(Problem.from_json(data).to_json())
        self.assertEqual(again.epsilon, 1250)
        np.testing.assert_array_equal(again.hole, np.array(data["hole"]))
        self.assertEqual(again.bonuses[0].kind, BonusKind.WALLHACK)

    def test_arrays_are_read_only(self) -> None:
        problem = Problem.from_json(_square_problem())
        with self.assertRaises(ValueError):
            problem.hole[0, 0] = 5


@pytest.mark.parametrize(
    "patch",
    [
        {"hole": [[0, 0], [1, 1]]},
        {"figure": {"vertices": [], "edges": []}},
        {"figure": {"vertices": [[0, 0], [1, 0]], "edges": [[0, 2]]}},
        {"figure": {"vertices": [[0, 0], [0, 0]], "edges": [[0, 1]]}},
        {"epsilon": -1},
        {"epsilon": 1.5},
        {"bonuses": [{"bonus": "TELEPORT", "problem": 1, "position": [0, 0]}]},
        {"bonuses": [{"bonus": "GLOBALIST", "problem": 1, "positions": [[0, 0], [1, 1]], "vertices": [0]}]},
        {
            "bonuses": [
                {"bonus": "GLOBALIST", "problem": 1, "position": [0, 0]},
                {"bonus": "GLOBALIST", "problem": 2, "position": [0, 0]},
            ]
        },
        {"hole": [[0, 0], [1, "x"], [2, 2]]},
    ],
)
def test_malformed_problem_rejected(patch: dict) -> None:
    with pytest.raises(MalformedProblem):
        Problem.from_json(_square_problem(**patch))


def test_missing_field_is_malformed() -> None:
    data = _square_problem()
    del data["epsilon"]
    with pytest.raises(MalformedProblem):
        Problem.from_json(data)


def test_malformed_is_value_error() -> None:
    with pytest.raises(ValueError):
        Problem.from_json([])


def test_problem_id_from_path() -> None:
    assert problem_id_from_path(Path("tasks/42.problem")) == 42
    assert problem_id_from_path(Path("lambda.problem")) == "lambda"


def test_load_problem_uses_file_stem(tmp_path: Path) -> None:
    path = tmp_path / "5.problem"
    path.write_text(json.dumps(_square_problem()), encoding="utf-8")
    assert load_problem(path).problem_id == 5


def test_load_problem_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "1.problem"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(MalformedProblem):
        load_problem(path)


def test_pose_round_trip_preserves_coordinates(tmp_path: Path) -> None:
    pose = Pose(
        np.array([[0, 0], [-3, 7], [2**40, -(2**40)]]),
        (
            PoseBonus(BonusKind.GLOBALIST, problem=12),
            PoseBonus(BonusKind.SUPERFLEX, problem=3, edge=1),
            PoseBonus(BonusKind.BREAK_A_LEG, problem=5, split=(0, 2)),
        ),
    )
    path = save_pose(tmp_path / "out" / "1.pose", pose)
    again = load_pose(path)
    np.testing.assert_array_equal(again.vertices, pose.vertices)
    assert again.vertices.dtype == np.int64
    assert again.bonuses == pose.bonuses
    assert not (tmp_path / "out" / "1.pose.tmp").exists()


def test_pose_json_format() -> None:
    pose = Pose([[1, 2], [3, 4]], (PoseBonus(BonusKind.BREAK_A_LEG, problem=5, split=(0, 1)),))
    assert pose.to_json() == {
        "vertices": [[1, 2], [3, 4]],
        "bonuses": [{"bonus": "BREAK_A_LEG", "problem": 5, "edge": [0, 1]}],
    }
    assert pose.uses(BonusKind.BREAK_A_LEG)
    assert pose.bonus(BonusKind.GLOBALIST) is None


def test_pose_from_json_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        Pose.from_json({"vertices": [[1, 2, 3]]})
    with pytest.raises(ValueError):
        Pose.from_json({"vertices": [[1, 2]], "bonuses": [{"bonus": "BREAK_A_LEG"}]})


def test_identity_pose_is_a_copy() -> None:
    problem = Problem.from_json(_square_problem())
    pose = problem.identity_pose()
    pose.vertices[0, 0] = 99
    assert int(problem.figure.vertices[0, 0]) == 0


def test_effective_figure_break_a_leg() -> None:
    problem = Problem.from_json(_square_problem())
    figure = problem.effective_figure([PoseBonus(BonusKind.BREAK_A_LEG, problem=1, split=(1, 0))])
    assert figure.n_vertices == 5
    np.testing.assert_array_equal(figure.vertices[4], [5, 0])
    halves = [e for e in figure.edges if e.halved]
    assert [(e.a, e.b, e.d2) for e in halves] == [(1, 4, 100), (4, 0, 100)]
    assert len(figure.edges) == 5
    assert problem.effective_figure() is problem.figure


def test_effective_figure_rejects_unknown_split() -> None:
    problem = Problem.from_json(_square_problem())
    with pytest.raises(ValueError):
        problem.effective_figure([PoseBonus(BonusKind.BREAK_A_LEG, problem=1, split=(0, 2))])
    with pytest.raises(ValueError):
        problem.effective_figure(
            [
                PoseBonus(BonusKind.BREAK_A_LEG, problem=1, split=(0, 1)),
                PoseBonus(BonusKind.BREAK_A_LEG, problem=2, split=(1, 2)),
            ]
        )
