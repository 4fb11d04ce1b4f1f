"""Exception taxonomy.

Only conditions that abort an operation are exceptions. Geometric validity
violations are plain records (see `brainwall.validate`) and an exhausted
search budget is a solver status, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass


class BrainwallError(Exception):
    """Base error for the package."""


class MalformedProblem(BrainwallError, ValueError):
    """Problem data violates a shape invariant (fatal for that one puzzle)."""


class SubmissionError(BrainwallError):
    """Base error for the submission collaborator."""


class SubmissionTransientError(SubmissionError):
    """Temporary failure (rate limit, 5xx, timeout, connection loss); retried."""


class SubmissionPermanentError(SubmissionError):
    """The remote side refused the request for good; not retried."""


@dataclass(frozen=True)
class BonusDependencyCycle:
    """A set of puzzles that wait on each other's bonuses.

    Reported as a warning by the planner and broken by a heuristic; never fatal.
    """

    puzzles: tuple[object, ...]

    def __str__(self) -> str:
        chain = " -> ".join(str(p) for p in self.puzzles)
        return f"bonus dependency cycle: {chain}"
