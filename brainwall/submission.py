"""Submitting poses: the submitter contract, HTTP and local submitters, retries.

Submissions are the only externally blocking operations, so they run on a
dedicated thread (`SubmissionQueue`) fed by the orchestrator. Transient
failures are retried with bounded exponential backoff; permanent ones are
recorded as rejections and never retried.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

import requests

from .constants import POSE_SUFFIX, PROBLEM_SUFFIX, SUBMIT_BASE_DELAY_S, SUBMIT_MAX_ATTEMPTS, SUBMIT_MAX_DELAY_S
from .errors import SubmissionPermanentError, SubmissionTransientError
from .problem import Pose, Problem, PuzzleId, load_pose, load_problem, save_pose
from .validate import Valid, validate

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://poses.live"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PENDING_RETRY = "pending-retry"


@dataclass(frozen=True)
class SubmissionOutcome:
    accepted: bool
    score: int | None = None
    reason: str | None = None
    pose_id: str | None = None

    @classmethod
    def accept(cls, score: int | None, pose_id: str | None = None) -> "SubmissionOutcome":
        return cls(True, score=score, pose_id=pose_id)

    @classmethod
    def reject(cls, reason: str, pose_id: str | None = None) -> "SubmissionOutcome":
        return cls(False, reason=reason, pose_id=pose_id)


@dataclass
class SubmissionRecord:
    puzzle_id: PuzzleId
    pose: Pose
    attempts: int = 0
    outcome: Outcome | None = None
    score: int | None = None
    reason: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "puzzle": self.puzzle_id,
            "attempts": int(self.attempts),
            "outcome": self.outcome.value if self.outcome is not None else None,
            "score": self.score,
            "reason": self.reason,
        }


class Submitter(Protocol):
    """Anything that can submit a pose.

    Implementations may also provide `fetch_best_score(puzzle_id) -> int | None`
    for restart reconciliation.
    """

    def submit(self, puzzle_id: PuzzleId, pose: Pose) -> SubmissionOutcome: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = SUBMIT_MAX_ATTEMPTS
    base_delay_s: float = SUBMIT_BASE_DELAY_S
    max_delay_s: float = SUBMIT_MAX_DELAY_S
    factor: float = 2.0

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        if float(self.base_delay_s) < 0.0 or float(self.max_delay_s) < 0.0:
            raise ValueError("retry delays must be >= 0")
        if float(self.factor) < 1.0:
            raise ValueError("factor must be >= 1")

    def delay(self, attempt: int) -> float:
        """Backoff after failed attempt number `attempt` (1-based), capped at `max_delay_s`."""
        raw = float(self.base_delay_s) * float(self.factor) ** max(0, int(attempt) - 1)
        return min(float(self.max_delay_s), raw)


class HttpSubmitter:
    """Submit poses to the contest server.

    `POST {base}/api/problems/{id}/solutions` returns `{"id": pose_id}`; the
    verdict is polled from `GET {base}/api/problems/{id}/solutions/{pose_id}`
    until its `state` leaves `PENDING`.
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
        poll_timeout_s: float = 120.0,
        session: requests.Session | None = None,
    ) -> None:
        if not api_token:
            raise ValueError("api_token is required")
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.poll_interval_s = float(poll_interval_s)
        self.poll_timeout_s = float(poll_timeout_s)
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _url(self, puzzle_id: PuzzleId, *parts: str) -> str:
        return "/".join([f"{self.base_url}/api/problems/{puzzle_id}/solutions", *parts])

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout_s, **kwargs)
        except requests.RequestException as exc:
            raise SubmissionTransientError(f"{method} {url}: {exc}") from exc
        self._check_response(resp)
        return resp

    @staticmethod
    def _body(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise SubmissionTransientError(f"unreadable response body: {exc}") from exc

    @staticmethod
    def _check_response(resp: requests.Response) -> None:
        if resp.status_code == 429:
            raise SubmissionTransientError("rate limit exceeded")
        if resp.status_code >= 500:
            raise SubmissionTransientError(f"server error {resp.status_code}: {resp.text}")
        if resp.status_code in (401, 403):
            raise SubmissionPermanentError(f"authentication failed ({resp.status_code}); check the api token")
        if resp.status_code >= 400:
            raise SubmissionPermanentError(f"API error {resp.status_code}: {resp.text}")

    def submit(self, puzzle_id: PuzzleId, pose: Pose) -> SubmissionOutcome:
        logger.info("submitting pose for puzzle %s", puzzle_id)
        resp = self._request("POST", self._url(puzzle_id), json=pose.to_json())
        body = self._body(resp)
        if not isinstance(body, dict) or "id" not in body:
            raise SubmissionTransientError(f"submission response without pose id: {body!r}")
        pose_id = str(body["id"])
        data = self._poll(puzzle_id, pose_id)
        state = str(data.get("state", ""))
        if state == "VALID":
            dislikes = data.get("dislikes")
            return SubmissionOutcome.accept(int(dislikes) if dislikes is not None else None, pose_id)
        return SubmissionOutcome.reject(str(data.get("error") or state or "unknown verdict"), pose_id)

    def _poll(self, puzzle_id: PuzzleId, pose_id: str) -> dict[str, Any]:
        start = time.monotonic()
        url = self._url(puzzle_id, pose_id)
        while True:
            data = self._body(self._request("GET", url))
            if not isinstance(data, dict):
                raise SubmissionTransientError(f"pose {pose_id}: unexpected status body {data!r}")
            state = data.get("state", "")
            if state != "PENDING":
                return data
            elapsed = time.monotonic() - start
            if elapsed > self.poll_timeout_s:
                raise SubmissionTransientError(f"pose {pose_id} still pending after {elapsed:.0f}s")
            logger.debug("pose %s pending [%.0fs elapsed]", pose_id, elapsed)
            time.sleep(self.poll_interval_s)

    def fetch_best_score(self, puzzle_id: PuzzleId) -> int | None:
        """Best accepted dislikes for the puzzle, from the solutions listing."""
        try:
            resp = self._request("GET", self._url(puzzle_id))
        except SubmissionPermanentError:
            return None
        rows = self._body(resp)
        if isinstance(rows, dict):
            rows = rows.get("solutions") or []
        scores = [int(r["dislikes"]) for r in rows if r.get("state") == "VALID" and r.get("dislikes") is not None]
        return min(scores) if scores else None


class LocalSubmitter:
    """Dry-run submitter: validates locally and writes accepted poses to `directory`."""

    def __init__(self, directory: Path, problems_directory: Path) -> None:
        self.directory = Path(directory)
        self.problems_directory = Path(problems_directory)
        self._problems: dict[PuzzleId, Problem] = {}
        self._lock = threading.Lock()

    def _problem(self, puzzle_id: PuzzleId) -> Problem:
        with self._lock:
            problem = self._problems.get(puzzle_id)
            if problem is None:
                path = self.problems_directory / f"{puzzle_id}{PROBLEM_SUFFIX}"
                problem = load_problem(path, problem_id=puzzle_id)
                self._problems[puzzle_id] = problem
            return problem

    def _pose_path(self, puzzle_id: PuzzleId) -> Path:
        return self.directory / f"{puzzle_id}{POSE_SUFFIX}"

    def submit(self, puzzle_id: PuzzleId, pose: Pose) -> SubmissionOutcome:
        verdict = validate(self._problem(puzzle_id), pose)
        if not isinstance(verdict, Valid):
            reasons = "; ".join(str(v.to_json()) for v in verdict.violations[:3])
            return SubmissionOutcome.reject(f"invalid pose: {reasons}")
        save_pose(self._pose_path(puzzle_id), pose)
        return SubmissionOutcome.accept(verdict.score)

    def fetch_best_score(self, puzzle_id: PuzzleId) -> int | None:
        path = self._pose_path(puzzle_id)
        if not path.is_file():
            return None
        verdict = validate(self._problem(puzzle_id), load_pose(path))
        return verdict.score if isinstance(verdict, Valid) else None


_STOP = object()


@dataclass
class _Job:
    record: SubmissionRecord
    done: threading.Event = field(default_factory=threading.Event)


class SubmissionQueue:
    """Background submission thread with bounded exponential backoff.

    Args:
        submitter: Submission collaborator.
        policy: Retry policy.
        on_result: Called (on the submission thread) with every finished record.
        cancel: Shared cancellation token; backoff waits wake up when it is set.
    """

    def __init__(
        self,
        submitter: Submitter,
        *,
        policy: RetryPolicy | None = None,
        on_result: Callable[[SubmissionRecord], None] | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.submitter = submitter
        self.policy = policy or RetryPolicy()
        self.on_result = on_result
        self.cancel = cancel or threading.Event()
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None

    def start(self) -> "SubmissionQueue":
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="brainwall-submit", daemon=True)
            self._thread.start()
        return self

    def put(self, puzzle_id: PuzzleId, pose: Pose) -> threading.Event:
        """Enqueue a submission; the returned event is set once it is finished."""
        job = _Job(SubmissionRecord(puzzle_id, pose.copy()))
        self._queue.put(job)
        return job.done

    def join(self) -> None:
        self._queue.join()

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None

    def __enter__(self) -> "SubmissionQueue":
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                record = self.submit_with_retry(job.record)
                if self.on_result is not None:
                    try:
                        self.on_result(record)
                    except Exception:
                        logger.exception("submission callback failed for puzzle %s", record.puzzle_id)
            finally:
                if job is not _STOP:
                    job.done.set()
                self._queue.task_done()

    def submit_with_retry(self, record: SubmissionRecord) -> SubmissionRecord:
        """Submit `record.pose`, retrying transient failures; updates and returns `record`."""
        while record.attempts < int(self.policy.max_attempts):
            record.attempts += 1
            try:
                outcome = self.submitter.submit(record.puzzle_id, record.pose)
            except SubmissionTransientError as exc:
                record.outcome = Outcome.PENDING_RETRY
                record.reason = str(exc)
                if record.attempts >= int(self.policy.max_attempts):
                    break
                delay = self.policy.delay(record.attempts)
                logger.warning(
                    "puzzle %s: transient submission failure (attempt %d/%d), retrying in %.1fs: %s",
                    record.puzzle_id,
                    record.attempts,
                    int(self.policy.max_attempts),
                    delay,
                    exc,
                )
                if self.cancel.wait(delay):
                    logger.info("puzzle %s: submission retry cancelled", record.puzzle_id)
                    return record
                continue
            except SubmissionPermanentError as exc:
                outcome = SubmissionOutcome.reject(str(exc))
            except Exception as exc:
                logger.exception("puzzle %s: submitter failed", record.puzzle_id)
                outcome = SubmissionOutcome.reject(f"submitter error: {exc}")

            if outcome.accepted:
                record.outcome = Outcome.ACCEPTED
                record.score = outcome.score
                record.reason = None
                logger.info("puzzle %s: accepted (dislikes=%s)", record.puzzle_id, outcome.score)
            else:
                record.outcome = Outcome.REJECTED
                record.reason = outcome.reason
                logger.error("puzzle %s: rejected: %s", record.puzzle_id, outcome.reason)
            return record

        logger.error("puzzle %s: giving up after %d attempts: %s", record.puzzle_id, record.attempts, record.reason)
        return record
