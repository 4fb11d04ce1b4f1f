"""Project-wide constants.

These values centralize the tolerance units, penalty weights, and solver
defaults used throughout the codebase.
"""

from __future__ import annotations

# Edge tolerances are expressed in parts-per-million of the squared length.
PPM: int = 1_000_000

# Penalty charged (in ppm-equivalent units) for every edge segment leaving the hole.
OUTSIDE_SEGMENT_PENALTY: int = 250_000

# Annealing defaults.
MAX_TEMP: float = 100.0
MIN_TEMP: float = 2.0
COOLING: float = 0.9995
MAX_REHEATS: int = 5
REHEAT_FACTOR: float = 0.33
PENALTY_WEIGHT: int = 1

# Submission retry defaults.
SUBMIT_MAX_ATTEMPTS: int = 5
SUBMIT_BASE_DELAY_S: float = 1.0
SUBMIT_MAX_DELAY_S: float = 60.0

# File naming inside problems/poses directories.
PROBLEM_SUFFIX: str = ".problem"
POSE_SUFFIX: str = ".pose"
