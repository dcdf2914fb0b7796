"""
Task duration estimator.

Heuristic used by the timeout-feasibility gate and the timeout firebreak:

    estimate = 5000ms + min(len(description) * 50ms, 15000ms)
    estimate *= 2 if the description mentions a complexity keyword

The estimate is monotonic: a longer description, or one naming a complexity
keyword, never estimates shorter.
"""

from __future__ import annotations

import re
from typing import Callable

BASE_ESTIMATE_MS = 5_000
PER_CHAR_MS = 50
LENGTH_CAP_MS = 15_000
COMPLEXITY_MULTIPLIER = 2
COMPLEXITY_KEYWORDS = ("complex", "comprehensive", "detailed", "enterprise", "full")

_COMPLEXITY_RE = re.compile(r"\b(?:" + "|".join(COMPLEXITY_KEYWORDS) + r")", re.IGNORECASE)

DurationEstimator = Callable[[str], int]


def estimate_task_duration(description: str) -> int:
    """Estimate how long a task takes, in milliseconds."""
    estimate = BASE_ESTIMATE_MS + min(len(description) * PER_CHAR_MS, LENGTH_CAP_MS)
    if _COMPLEXITY_RE.search(description):
        estimate *= COMPLEXITY_MULTIPLIER
    return estimate
