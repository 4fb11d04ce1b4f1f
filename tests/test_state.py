import json
from pathlib import Path

from brainwall.bonus_graph import BonusEdge
from brainwall.problem import BonusKind
from brainwall.state import PuzzleRecord, PuzzleStatus, StateStore


def test_state_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    edge = BonusEdge(1, BonusKind.GLOBALIST, "lambda")
    store = StateStore(path)
    store.update(7, status=PuzzleStatus.SUBMITTED, best_score=12, submitted_score=12, granted=frozenset({edge}))
    store.update("lambda", status=PuzzleStatus.FAILED, reason="malformed")
    assert store.add_grant(edge)
    assert not store.add_grant(edge)

    again = StateStore(path)
    rec = again.get(7)
    assert rec.status is PuzzleStatus.SUBMITTED
    assert rec.best_score == 12
    assert rec.granted == frozenset({edge})
    assert again.get("lambda").reason == "malformed"
    assert again.grants() == frozenset({edge})
    assert not (tmp_path / "state.json.tmp").exists()


def test_file_format(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.json"
    StateStore(path).put(PuzzleRecord(42, PuzzleStatus.SOLVED, best_score=3, pose_path="poses/42.pose"))
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["puzzles"]["42"]["status"] == "solved"
    assert data["puzzles"]["42"]["best_score"] == 3
    assert data["grants"] == []


def test_unknown_puzzle_is_pending() -> None:
    store = StateStore(None)
    rec = store.get(99)
    assert rec.status is PuzzleStatus.PENDING
    assert rec.best_score is None
    assert store.records() == {}


def test_update_keeps_other_fields() -> None:
    store = StateStore(None)
    store.update(1, status=PuzzleStatus.SOLVED, best_score=5)
    rec = store.update(1, status=PuzzleStatus.SUBMITTED)
    assert rec.best_score == 5
    assert rec.status is PuzzleStatus.SUBMITTED


def test_record_json_round_trip() -> None:
    edge = BonusEdge(2, BonusKind.BREAK_A_LEG, 9)
    rec = PuzzleRecord(9, PuzzleStatus.SOLVED, best_score=0, unlocked=frozenset({edge}))
    assert PuzzleRecord.from_json(9, json.loads(json.dumps(rec.to_json()))) == rec
