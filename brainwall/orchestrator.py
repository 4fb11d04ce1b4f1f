"""Autonomous multi-puzzle solving.

Per puzzle: `PENDING -> SOLVING -> {SOLVED, FAILED} -> SUBMITTED`.

The orchestrator works in rounds. Each round plans a solving order from the
bonus graph, runs every scheduled puzzle on a thread pool (each puzzle runs
its attempts one after another inside its own time slice), and then folds
the results back on the calling thread: best pose selection, pose file,
persisted state, grants, and submission hand-off. Grants recorded in one
round make the consumers eligible again in the next one.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable

from .annealing import AnnealParams, AnnealResult, AnnealingSolver
from .bonus_graph import BonusEdge, BonusGraph, BonusGraphSnapshot, SolvingPlan, edges_from_problems
from .constants import POSE_SUFFIX, PROBLEM_SUFFIX
from .errors import BonusDependencyCycle, BrainwallError
from .geometry import HoleIndex
from .modes import ModeConfig, OperatingMode
from .problem import BonusKind, Pose, PoseBonus, Problem, PuzzleId, load_pose, load_problem, problem_id_from_path, save_pose
from .state import PuzzleRecord, PuzzleStatus, StateStore
from .submission import Outcome, RetryPolicy, SubmissionQueue, SubmissionRecord, Submitter
from .validate import Valid, validate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Orchestrator knobs.

    Attributes:
        problems_directory: Directory scanned for `<id>.problem` files.
        poses_directory: Where best poses are written as `<id>.pose`.
        state_file: Persisted state (None keeps state in memory only).
        workers: Concurrent puzzles.
        attempt_budget_s: Wall-clock budget of one attempt.
        puzzle_budget_s: Wall-clock budget of all attempts of one puzzle in a round.
        score_seeds: Number of plain ScoreMaximizer attempts (distinct seeds).
        seed: Base seed; attempt seeds are derived from it.
        max_rounds: Upper bound on solving rounds per run.
        cycle_retry_limit: Rounds a bonus cycle may go without improvement
            before its members fall back to bonus-free solving.
        prefer_grants: Prefer a pose that grants a bonus some consumer still
            needs over a lower-dislikes pose that does not.
        anneal: Schedule shared by all attempts (budgets and seed are overridden).
        retry: Submission retry policy.
    """

    problems_directory: Path = Path("tasks")
    poses_directory: Path = Path("poses")
    state_file: Path | None = None
    workers: int = 4
    attempt_budget_s: float = 30.0
    puzzle_budget_s: float = 120.0
    score_seeds: int = 2
    seed: int = 0
    max_rounds: int = 3
    cycle_retry_limit: int = 2
    prefer_grants: bool = True
    anneal: AnnealParams = field(default_factory=AnnealParams)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if int(self.workers) < 1:
            raise ValueError("workers must be >= 1")
        if float(self.attempt_budget_s) <= 0.0 or float(self.puzzle_budget_s) <= 0.0:
            raise ValueError("budgets must be > 0")
        if int(self.max_rounds) < 1:
            raise ValueError("max_rounds must be >= 1")


@dataclass(frozen=True)
class Attempt:
    name: str
    mode: ModeConfig
    seed: int
    bonuses: tuple[PoseBonus, ...] = ()


@dataclass(frozen=True)
class AttemptOutcome:
    attempt: Attempt
    result: AnnealResult | None = None
    error: str | None = None


@dataclass(frozen=True)
class Candidate:
    pose: Pose
    score: int
    grants: frozenset[BonusEdge]
    attempt: str


@dataclass(frozen=True)
class PuzzleResult:
    puzzle_id: PuzzleId
    outcomes: tuple[AttemptOutcome, ...]
    elapsed_s: float


@dataclass(frozen=True)
class RunReport:
    records: dict[PuzzleId, PuzzleRecord]
    rounds: int
    launched: tuple[PuzzleId, ...]
    cycles: tuple[BonusDependencyCycle, ...] = ()
    submissions: tuple[SubmissionRecord, ...] = ()


def split_edge(problem: Problem) -> tuple[int, int]:
    """BREAK_A_LEG target: the longest figure edge."""
    edge = max(problem.figure.edges, key=lambda e: e.d2)
    return (edge.a, edge.b)


def pose_bonus_for(edge: BonusEdge, problem: Problem) -> PoseBonus:
    if edge.kind is BonusKind.BREAK_A_LEG:
        return PoseBonus(edge.kind, problem=edge.donor, split=split_edge(problem))
    return edge.as_pose_bonus()


def plan_attempts(
    problem: Problem,
    unlocked: Iterable[BonusEdge] = (),
    *,
    score_seeds: int = 2,
    seed: int = 0,
) -> list[Attempt]:
    """Distinct strategies for one puzzle, cheapest first.

    ZeroHunter, `score_seeds` plain ScoreMaximizers, one ScoreMaximizer per
    unlocked bonus, one BonusCollector per consumer of this puzzle's bonuses,
    and BonusHunter when the puzzle declares bonuses.
    """
    attempts = [Attempt("zero", ModeConfig(OperatingMode.ZERO_HUNTER), seed)]
    for k in range(int(score_seeds)):
        attempts.append(Attempt(f"score#{k}", ModeConfig(OperatingMode.SCORE_MAXIMIZER), seed + 1 + k))
    for k, edge in enumerate(unlocked):
        if edge.kind is BonusKind.BREAK_A_LEG and not problem.figure.edges:
            continue
        bonus = pose_bonus_for(edge, problem)
        attempts.append(
            Attempt(
                f"score+{edge.kind.value}@{edge.donor}",
                ModeConfig(OperatingMode.SCORE_MAXIMIZER),
                seed + 101 + k,
                (bonus,),
            )
        )
    targets = list(dict.fromkeys(spec.problem for spec in problem.bonuses if spec.problem is not None))
    for k, target in enumerate(targets):
        attempts.append(Attempt(f"collect->{target}", ModeConfig(OperatingMode.BONUS_COLLECTOR, target=target), seed + 201 + k))
    if problem.bonuses:
        attempts.append(Attempt("hunt", ModeConfig(OperatingMode.BONUS_HUNTER), seed + 301))
    return attempts


def candidate_grants(problem: Problem, result: AnnealResult) -> frozenset[BonusEdge]:
    if problem.problem_id is None:
        return frozenset()
    return frozenset(
        BonusEdge(problem.problem_id, spec.kind, spec.problem) for spec in result.granted if spec.problem is not None
    )


def select_best(
    candidates: Iterable[Candidate],
    *,
    needed: Iterable[BonusEdge] = (),
    prefer_grants: bool = True,
) -> Candidate | None:
    """Lowest dislikes wins; with `prefer_grants`, covering more `needed` grants wins first."""
    needed = frozenset(needed)
    best: Candidate | None = None
    for cand in candidates:
        if best is None:
            best = cand
            continue
        if prefer_grants and needed:
            a, b = len(cand.grants & needed), len(best.grants & needed)
            if a != b:
                if a > b:
                    best = cand
                continue
        if cand.score < best.score:
            best = cand
    return best


class Orchestrator:
    """Background solver for a directory of puzzles.

    Args:
        config: Orchestrator knobs.
        submitter: Submission collaborator (None: solve and write poses only).
        cancel: Shared cancellation token (polled by every attempt).
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        submitter: Submitter | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.submitter = submitter
        self.cancel = cancel or threading.Event()
        self.state = StateStore(config.state_file)
        self.problems: dict[PuzzleId, Problem] = {}
        self._hole_indexes: dict[PuzzleId, HoleIndex] = {}
        self.graph = BonusGraph(grants=self.state.grants())
        self._submissions: list[SubmissionRecord] = []
        self._submissions_lock = threading.Lock()
        self._queue: SubmissionQueue | None = None

    def discover(self) -> dict[PuzzleId, Problem]:
        """Load every `<id>.problem`; malformed files mark only that puzzle FAILED."""
        directory = Path(self.config.problems_directory)
        if not directory.is_dir():
            raise BrainwallError(f"problems directory not found: {directory}")
        for path in sorted(directory.glob(f"*{PROBLEM_SUFFIX}")):
            pid = problem_id_from_path(path)
            try:
                problem = load_problem(path, problem_id=pid)
            except (BrainwallError, ValueError, OSError) as exc:
                logger.error("puzzle %s: cannot load %s: %s", pid, path, exc)
                self.state.update(pid, status=PuzzleStatus.FAILED, reason=f"malformed problem: {exc}")
                continue
            self.problems[pid] = problem
            self._hole_indexes[pid] = HoleIndex(problem.hole)
        self.graph.add_edges(edges_from_problems(self.problems.values()))
        logger.info("discovered %d puzzles in %s", len(self.problems), directory)
        return self.problems

    def reconcile(self) -> None:
        """Fold remote best scores into the persisted state."""
        fetch = getattr(self.submitter, "fetch_best_score", None)
        if fetch is None:
            return
        for pid in self.problems:
            try:
                remote = fetch(pid)
            except Exception as exc:
                logger.warning("puzzle %s: cannot fetch remote score: %s", pid, exc)
                continue
            if remote is None:
                continue
            record = self.state.get(pid)
            if record.submitted_score is None or remote < record.submitted_score:
                logger.info("puzzle %s: remote best score %d", pid, remote)
                status = PuzzleStatus.SUBMITTED if record.status is not PuzzleStatus.SOLVING else record.status
                self.state.update(pid, submitted_score=int(remote), status=status)

    def known_scores(self) -> dict[PuzzleId, int | None]:
        out: dict[PuzzleId, int | None] = {}
        for pid in self.problems:
            record = self.state.get(pid)
            known = [s for s in (record.best_score, record.submitted_score) if s is not None]
            out[pid] = min(known) if known else None
        return out

    def _new_opportunity(self, pid: PuzzleId, snapshot: BonusGraphSnapshot) -> bool:
        record = self.state.get(pid)
        score = self.known_scores().get(pid)
        if score == 0:
            return False
        return bool(set(snapshot.unlocked_for(pid)) - record.unlocked)

    def _needs_solving(self, pid: PuzzleId, snapshot: BonusGraphSnapshot) -> bool:
        record = self.state.get(pid)
        if record.status is PuzzleStatus.SUBMITTED:
            return self._new_opportunity(pid, snapshot)
        if record.status is PuzzleStatus.SOLVED and self._stored_pose(record) is not None:
            return self._new_opportunity(pid, snapshot)
        return True

    @staticmethod
    def _stored_pose(record: PuzzleRecord) -> Path | None:
        if record.pose_path is None or record.best_score is None:
            return None
        path = Path(record.pose_path)
        return path if path.is_file() else None

    def _resume_submissions(self) -> None:
        """Queue stored poses that are better than anything accepted so far."""
        for pid in self.problems:
            record = self.state.get(pid)
            path = self._stored_pose(record)
            if record.status is not PuzzleStatus.SOLVED or path is None:
                continue
            if record.submitted_score is not None and record.submitted_score <= record.best_score:
                continue
            try:
                pose = load_pose(path)
            except (ValueError, OSError) as exc:
                logger.warning("puzzle %s: cannot reload %s: %s", pid, path, exc)
                continue
            logger.info("puzzle %s: resubmitting stored pose %s", pid, path)
            self._enqueue(pid, pose)

    def plan(self, puzzles: Iterable[PuzzleId]) -> SolvingPlan:
        return self.graph.snapshot().solving_order(puzzles, self.known_scores())

    def run(self) -> RunReport:
        """Discover, reconcile, then solve in rounds until nothing new can be gained."""
        self.discover()
        self.reconcile()
        if self.submitter is not None:
            self._queue = SubmissionQueue(
                self.submitter,
                policy=self.config.retry,
                on_result=self._on_submission,
                cancel=self.cancel,
            ).start()

        launched: list[PuzzleId] = []
        cycles: dict[frozenset, BonusDependencyCycle] = {}
        stale_rounds: dict[PuzzleId, int] = {}
        bonus_free: set[PuzzleId] = set()
        rounds = 0
        try:
            if self._queue is not None:
                self._resume_submissions()
            for rnd in range(int(self.config.max_rounds)):
                if self.cancel.is_set():
                    break
                snapshot = self.graph.snapshot()
                if rnd == 0:
                    todo = [p for p in self.problems if self._needs_solving(p, snapshot)]
                else:
                    todo = [p for p in self.problems if p not in bonus_free and self._new_opportunity(p, snapshot)]
                if not todo:
                    break
                plan = snapshot.solving_order(todo, self.known_scores())
                for c in plan.cycles:
                    cycles.setdefault(frozenset(c.puzzles), c)
                rounds += 1
                logger.info("round %d: %d puzzles, order %s", rounds, len(plan.order), list(plan.order))
                before = self.known_scores()
                self._run_round(plan.order, bonus_free)
                launched.extend(plan.order)
                after = self.known_scores()
                for pid in plan.cyclic:
                    improved = after.get(pid) is not None and (before.get(pid) is None or after[pid] < before[pid])
                    stale_rounds[pid] = 0 if improved else stale_rounds.get(pid, 0) + 1
                    if stale_rounds[pid] >= int(self.config.cycle_retry_limit) and pid not in bonus_free:
                        logger.warning("puzzle %s: bonus cycle unresolved, falling back to bonus-free solving", pid)
                        bonus_free.add(pid)
        finally:
            if self._queue is not None:
                self._queue.join()
                self._queue.close()
                self._queue = None

        with self._submissions_lock:
            submissions = tuple(self._submissions)
        return RunReport(
            records=self.state.records(),
            rounds=rounds,
            launched=tuple(launched),
            cycles=tuple(cycles.values()),
            submissions=submissions,
        )

    def _run_round(self, order: Iterable[PuzzleId], bonus_free: set[PuzzleId]) -> None:
        snapshot = self.graph.snapshot()
        with ThreadPoolExecutor(max_workers=int(self.config.workers)) as ex:
            fut_to_pid = {}
            for pid in order:
                unlocked = () if pid in bonus_free else snapshot.unlocked_for(pid)
                self.state.update(pid, status=PuzzleStatus.SOLVING)
                fut_to_pid[ex.submit(self.solve_puzzle, pid, unlocked)] = (pid, frozenset(unlocked))
            for fut in as_completed(fut_to_pid):
                pid, unlocked = fut_to_pid[fut]
                try:
                    result = fut.result()
                except Exception as exc:
                    logger.exception("puzzle %s: solving failed", pid)
                    self._restore_or_fail(pid, f"solver error: {exc}")
                    continue
                self._finish_puzzle(result, unlocked)

    def solve_puzzle(self, pid: PuzzleId, unlocked: Iterable[BonusEdge] = ()) -> PuzzleResult:
        """Run every planned attempt for one puzzle inside its time slice."""
        problem = self.problems[pid]
        hole_index = self._hole_indexes[pid]
        t0 = time.monotonic()
        puzzle_deadline = t0 + float(self.config.puzzle_budget_s)
        attempts = plan_attempts(problem, unlocked, score_seeds=self.config.score_seeds, seed=self.config.seed)
        outcomes: list[AttemptOutcome] = []
        start: AnnealResult | None = None
        for attempt in attempts:
            if self.cancel.is_set() or time.monotonic() >= puzzle_deadline:
                logger.info("puzzle %s: out of time before attempt %s", pid, attempt.name)
                break
            params = replace(
                self.config.anneal,
                seed=attempt.seed,
                time_budget_s=float(self.config.attempt_budget_s),
            )
            try:
                solver = AnnealingSolver(
                    problem,
                    params=params,
                    mode=attempt.mode,
                    bonuses=attempt.bonuses,
                    start=start.pose if start is not None and not attempt.bonuses else None,
                    hole_index=hole_index,
                    cancel=self.cancel,
                    deadline=puzzle_deadline,
                )
                result = solver.run()
            except Exception as exc:
                logger.exception("puzzle %s: attempt %s failed", pid, attempt.name)
                outcomes.append(AttemptOutcome(attempt, error=str(exc)))
                continue
            outcomes.append(AttemptOutcome(attempt, result=result))
            # Bonus-free attempts continue from the best bonus-free pose so far.
            if result.pose is not None and not attempt.bonuses:
                if start is None or result.score < start.score:
                    start = result
            if attempt.mode.mode is OperatingMode.ZERO_HUNTER and result.success and not problem.bonuses:
                break
        return PuzzleResult(pid, tuple(outcomes), time.monotonic() - t0)

    def _candidates(self, result: PuzzleResult) -> list[Candidate]:
        problem = self.problems[result.puzzle_id]
        hole_index = self._hole_indexes[result.puzzle_id]
        out: list[Candidate] = []
        for outcome in result.outcomes:
            res = outcome.result
            if res is None or res.pose is None:
                continue
            verdict = validate(problem, res.pose, hole_index=hole_index)
            if not isinstance(verdict, Valid):
                logger.error("puzzle %s: attempt %s produced an invalid pose", result.puzzle_id, outcome.attempt.name)
                continue
            out.append(Candidate(res.pose, verdict.score, candidate_grants(problem, res), outcome.attempt.name))
        return out

    def _finish_puzzle(self, result: PuzzleResult, unlocked: frozenset[BonusEdge]) -> None:
        pid = result.puzzle_id
        snapshot = self.graph.snapshot()
        needed = {e for e in snapshot.consumers_of(pid) if e.consumer in self.problems and not snapshot.is_granted(e)}
        best = select_best(self._candidates(result), needed=needed, prefer_grants=self.config.prefer_grants)
        record = self.state.get(pid)
        if best is None:
            errors = [o.error for o in result.outcomes if o.error]
            self._restore_or_fail(pid, errors[0] if errors else "no valid pose found", unlocked=unlocked)
            return

        for edge in best.grants:
            if self.graph.record_grant(edge):
                self.state.add_grant(edge)

        known = [s for s in (record.best_score, record.submitted_score) if s is not None]
        improves = not known or best.score < min(known) or bool(best.grants - record.granted)
        unsubmitted = self.submitter is not None and (
            record.submitted_score is None or best.score < record.submitted_score
        )
        if not improves:
            logger.info("puzzle %s: best %d does not beat known %d", pid, best.score, min(known))
            status = PuzzleStatus.SUBMITTED if record.submitted_score is not None else PuzzleStatus.SOLVED
            self.state.update(pid, status=status, unlocked=record.unlocked | unlocked)
            if unsubmitted and record.pose_path is not None and Path(record.pose_path).is_file():
                self._enqueue(pid, load_pose(Path(record.pose_path)))
            return

        pose_path = save_pose(Path(self.config.poses_directory) / f"{pid}{POSE_SUFFIX}", best.pose)
        logger.info(
            "puzzle %s: solved score=%d via %s in %.1fs (grants=%d)",
            pid,
            best.score,
            best.attempt,
            result.elapsed_s,
            len(best.grants),
        )
        self.state.update(
            pid,
            status=PuzzleStatus.SOLVED,
            best_score=best.score,
            unlocked=record.unlocked | unlocked,
            pose_path=str(pose_path),
            granted=record.granted | best.grants,
            reason=None,
        )
        if unsubmitted:
            self._enqueue(pid, best.pose)

    def _enqueue(self, pid: PuzzleId, pose: Pose) -> None:
        assert self._queue is not None, "submissions are only queued while run() is active"
        self._queue.put(pid, pose)

    def _on_submission(self, record: SubmissionRecord) -> None:
        with self._submissions_lock:
            self._submissions.append(record)
        if record.outcome is Outcome.ACCEPTED:
            self.state.update(record.puzzle_id, status=PuzzleStatus.SUBMITTED, submitted_score=record.score, reason=None)
        elif record.outcome is Outcome.REJECTED:
            # An earlier accepted pose still stands.
            accepted_before = self.state.get(record.puzzle_id).submitted_score is not None
            status = PuzzleStatus.SUBMITTED if accepted_before else PuzzleStatus.FAILED
            self.state.update(record.puzzle_id, status=status, reason=f"rejected: {record.reason}")
        else:
            self.state.update(record.puzzle_id, reason=f"submission pending: {record.reason}")

    def _restore_or_fail(self, pid: PuzzleId, reason: str, *, unlocked: frozenset[BonusEdge] = frozenset()) -> None:
        record = self.state.get(pid)
        if record.submitted_score is not None:
            self.state.update(pid, status=PuzzleStatus.SUBMITTED, unlocked=record.unlocked | unlocked)
        elif record.pose_path is not None:
            self.state.update(pid, status=PuzzleStatus.SOLVED, unlocked=record.unlocked | unlocked)
        else:
            logger.error("puzzle %s: %s", pid, reason)
            self.state.update(pid, status=PuzzleStatus.FAILED, reason=reason)
