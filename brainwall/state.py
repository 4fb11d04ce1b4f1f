"""Restart-safe orchestrator state.

The store is a single JSON file rewritten atomically (temp file + rename)
after every change::

    {
      "puzzles": {"42": {"status": "submitted", "best_score": 17, ...}},
      "grants": [{"donor": 1, "bonus": "GLOBALIST", "consumer": 42}]
    }
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from .bonus_graph import BonusEdge
from .problem import BonusKind, PuzzleId, parse_puzzle_id

logger = logging.getLogger(__name__)


class PuzzleStatus(str, Enum):
    PENDING = "pending"
    SOLVING = "solving"
    SOLVED = "solved"
    FAILED = "failed"
    SUBMITTED = "submitted"


@dataclass(frozen=True)
class PuzzleRecord:
    """What the orchestrator knows about one puzzle.

    Attributes:
        puzzle_id: Puzzle id.
        status: Lifecycle status.
        best_score: Best valid dislikes found locally.
        submitted_score: Dislikes of the last accepted submission.
        unlocked: Bonus edges that were unlocked when the puzzle was last solved.
        pose_path: Where the best pose was written.
        granted: Bonus edges the best pose grants.
        reason: Failure reason, if any.
    """

    puzzle_id: PuzzleId
    status: PuzzleStatus = PuzzleStatus.PENDING
    best_score: int | None = None
    submitted_score: int | None = None
    unlocked: frozenset[BonusEdge] = field(default_factory=frozenset)
    pose_path: str | None = None
    granted: frozenset[BonusEdge] = field(default_factory=frozenset)
    reason: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "best_score": self.best_score,
            "submitted_score": self.submitted_score,
            "unlocked": [e.to_json() for e in _sorted_edges(self.unlocked)],
            "pose_path": self.pose_path,
            "granted": [e.to_json() for e in _sorted_edges(self.granted)],
            "reason": self.reason,
        }

    @classmethod
    def from_json(cls, puzzle_id: PuzzleId, data: dict[str, Any]) -> "PuzzleRecord":
        return cls(
            puzzle_id=puzzle_id,
            status=PuzzleStatus(data.get("status", PuzzleStatus.PENDING.value)),
            best_score=_opt_int(data.get("best_score")),
            submitted_score=_opt_int(data.get("submitted_score")),
            unlocked=frozenset(edge_from_json(e) for e in data.get("unlocked") or ()),
            pose_path=data.get("pose_path"),
            granted=frozenset(edge_from_json(e) for e in data.get("granted") or ()),
            reason=data.get("reason"),
        )


def edge_from_json(data: dict[str, Any]) -> BonusEdge:
    return BonusEdge(
        donor=parse_puzzle_id(data["donor"]),
        kind=BonusKind(str(data["bonus"]).upper()),
        consumer=parse_puzzle_id(data["consumer"]),
    )


def _sorted_edges(edges: Iterable[BonusEdge]) -> list[BonusEdge]:
    return sorted(edges, key=lambda e: (str(e.donor), e.kind.value, str(e.consumer)))


def _opt_int(value: Any) -> int | None:
    return None if value is None else int(value)


class StateStore:
    """Thread-safe JSON persistence for puzzle records and bonus grants.

    A missing `path` starts empty; `path=None` keeps everything in memory.
    """

    def __init__(self, path: Path | None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._records: dict[PuzzleId, PuzzleRecord] = {}
        self._grants: set[BonusEdge] = set()
        if self.path is not None and self.path.is_file():
            self._load()

    def _load(self) -> None:
        assert self.path is not None
        data = json.loads(self.path.read_text(encoding="utf-8"))
        for key, raw in (data.get("puzzles") or {}).items():
            pid = parse_puzzle_id(key)
            self._records[pid] = PuzzleRecord.from_json(pid, raw)
        self._grants = {edge_from_json(e) for e in data.get("grants") or ()}
        logger.info("loaded state for %d puzzles (%d grants) from %s", len(self._records), len(self._grants), self.path)

    def _save(self) -> None:
        if self.path is None:
            return
        data = {
            "puzzles": {str(pid): rec.to_json() for pid, rec in sorted(self._records.items(), key=lambda kv: str(kv[0]))},
            "grants": [e.to_json() for e in _sorted_edges(self._grants)],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, puzzle_id: PuzzleId) -> PuzzleRecord:
        with self._lock:
            return self._records.get(puzzle_id) or PuzzleRecord(puzzle_id)

    def records(self) -> dict[PuzzleId, PuzzleRecord]:
        with self._lock:
            return dict(self._records)

    def grants(self) -> frozenset[BonusEdge]:
        with self._lock:
            return frozenset(self._grants)

    def put(self, record: PuzzleRecord) -> PuzzleRecord:
        with self._lock:
            self._records[record.puzzle_id] = record
            self._save()
        return record

    def update(self, puzzle_id: PuzzleId, **changes: Any) -> PuzzleRecord:
        with self._lock:
            record = replace(self._records.get(puzzle_id) or PuzzleRecord(puzzle_id), **changes)
            self._records[puzzle_id] = record
            self._save()
        return record

    def add_grant(self, edge: BonusEdge) -> bool:
        with self._lock:
            if edge in self._grants:
                return False
            self._grants.add(edge)
            self._save()
        return True
