"""Named progress checkpoints per delegation phase."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from delegator.models.capabilities import format_timestamp, utcnow


class Phase(StrEnum):
    NEGOTIATION = "negotiation"
    EXECUTION = "execution"
    VERIFICATION = "verification"
    COMPLETION = "completion"


CHECKPOINTS: dict[Phase, tuple[tuple[int, str], ...]] = {
    Phase.NEGOTIATION: (
        (25, "contract_validation"),
        (50, "capability_assessment"),
        (75, "resource_allocation"),
        (100, "contract_accepted"),
    ),
    Phase.EXECUTION: (
        (25, "task_started"),
        (50, "halfway_milestone"),
        (75, "near_completion"),
        (100, "task_completed"),
    ),
    Phase.VERIFICATION: (
        (50, "output_validated"),
        (100, "verification_complete"),
    ),
    Phase.COMPLETION: ((100, "delegation_finalized"),),
}


@dataclass(frozen=True)
class Checkpoint:
    name: str
    threshold: int
    completed: bool

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "threshold": self.threshold, "completed": self.completed}


def checkpoints_for(phase: Phase | str, percentage: float) -> list[Checkpoint]:
    """All checkpoints of ``phase``; those at or below ``percentage`` are completed."""
    return [
        Checkpoint(name=name, threshold=threshold, completed=threshold <= percentage)
        for threshold, name in CHECKPOINTS[Phase(phase)]
    ]


def completed_checkpoints(phase: Phase | str, percentage: float) -> list[str]:
    return [c.name for c in checkpoints_for(phase, percentage) if c.completed]


@dataclass
class ProgressUpdate:
    """One progress report for an execution."""

    execution_id: str
    phase: Phase
    percentage: float
    checkpoints: list[Checkpoint] = field(default_factory=list)
    contract_id: str | None = None
    elapsed_ms: float = 0.0
    estimated_remaining_ms: float | None = None
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def completed(self) -> list[str]:
        return [c.name for c in self.checkpoints if c.completed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "contract_id": self.contract_id,
            "phase": str(self.phase),
            "percentage": self.percentage,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "elapsed_ms": round(self.elapsed_ms, 2),
            "estimated_remaining_ms": (
                round(self.estimated_remaining_ms, 2)
                if self.estimated_remaining_ms is not None
                else None
            ),
            "message": self.message,
            "timestamp": format_timestamp(self.timestamp),
        }
