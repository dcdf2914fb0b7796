"""
Reputation Tracking

Keeps an agent's recent task outcomes in a fixed-capacity ring buffer and
derives the reputation used by admission:

    reputation = 0.7 * success_rate(last 20) + 0.3 * avg_quality(last 20)

With no history the reputation is 0.5; with no quality scores the quality
term is 0.5. Consecutive failures are counted back from the most recent task
within the last 10.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterator

from delegator.models.execution import TaskRecord

REPUTATION_WINDOW = 20
FAILURE_WINDOW = 10
SUCCESS_WEIGHT = 0.7
QUALITY_WEIGHT = 0.3
NEUTRAL_SCORE = 0.5


@dataclass(frozen=True)
class ReputationSnapshot:
    score: float = NEUTRAL_SCORE
    tasks_completed: int = 0
    consecutive_failures: int = 0
    total_tasks: int = 0

    def to_dict(self) -> dict[str, float | int]:
        return {
            "score": round(self.score, 4),
            "tasks_completed": self.tasks_completed,
            "consecutive_failures": self.consecutive_failures,
            "total_tasks": self.total_tasks,
        }


class TaskHistory:
    """Bounded history of finished tasks, oldest evicted first."""

    def __init__(self, maxlen: int = 500) -> None:
        if maxlen < 1:
            raise ValueError(f"maxlen must be >= 1, got {maxlen}")
        self._records: deque[TaskRecord] = deque(maxlen=maxlen)

    @property
    def maxlen(self) -> int:
        return self._records.maxlen or 0

    def record(self, record: TaskRecord) -> None:
        self._records.append(record)

    def recent(self, n: int) -> list[TaskRecord]:
        if n <= 0:
            return []
        return list(self._records)[-n:]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TaskRecord]:
        return iter(list(self._records))

    def reputation_score(self) -> float:
        recent = self.recent(REPUTATION_WINDOW)
        if not recent:
            return NEUTRAL_SCORE
        success_rate = sum(1 for r in recent if r.success) / len(recent)
        qualities = [r.quality_score for r in recent if r.quality_score is not None]
        avg_quality = sum(qualities) / len(qualities) if qualities else NEUTRAL_SCORE
        return SUCCESS_WEIGHT * success_rate + QUALITY_WEIGHT * avg_quality

    def successful_count(self) -> int:
        return sum(1 for r in self._records if r.success)

    def consecutive_failures(self) -> int:
        count = 0
        for record in reversed(self.recent(FAILURE_WINDOW)):
            if record.success:
                break
            count += 1
        return count

    def snapshot(self) -> ReputationSnapshot:
        return ReputationSnapshot(
            score=self.reputation_score(),
            tasks_completed=self.successful_count(),
            consecutive_failures=self.consecutive_failures(),
            total_tasks=len(self._records),
        )
