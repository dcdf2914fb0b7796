"""Execution context, result and verification models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from delegator.errors import InvalidTransitionError
from delegator.models.capabilities import check_unit_interval, format_timestamp, utcnow
from delegator.models.contracts import VerificationPolicy


class ExecutionStatus(StrEnum):
    """Execution states: pending -> running -> completed | failed | timeout."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


_EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT}
    ),
    # a retry re-enters running
    ExecutionStatus.FAILED: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.TIMEOUT: frozenset({ExecutionStatus.RUNNING}),
}

FINISHED_STATES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT}
)


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


@dataclass
class ResourceUsage:
    memory_mb: float = 0.0
    cpu_time_ms: float = 0.0
    network_calls: int = 0
    disk_io_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_mb": self.memory_mb,
            "cpu_time_ms": self.cpu_time_ms,
            "network_calls": self.network_calls,
            "disk_io_bytes": self.disk_io_bytes,
        }


@dataclass
class ExecutionContext:
    """A running task, owned by the execution engine."""

    task_description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    execution_id: str = field(default_factory=new_execution_id)
    contract_id: str | None = None
    capability_ids: list[str] = field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.PENDING
    progress: float = 0.0
    attempts: int = 0
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATES

    def transition(self, target: ExecutionStatus) -> None:
        if target not in _EXECUTION_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError("execution", self.status, target)
        self.status = target
        self.finished_at = utcnow() if self.is_finished else None

    def set_progress(self, fraction: float) -> float:
        """Clamp to [0, 1]; progress never moves backwards."""
        self.progress = max(self.progress, min(1.0, max(0.0, fraction)))
        return self.progress

    @property
    def elapsed_ms(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds() * 1000.0


@dataclass
class ExecutionMetrics:
    execution_time_ms: float = 0.0
    memory_used_mb: float = 0.0
    cpu_usage_percent: float = 0.0
    network_requests: int = 0
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_time_ms": round(self.execution_time_ms, 2),
            "memory_used_mb": self.memory_used_mb,
            "cpu_usage_percent": self.cpu_usage_percent,
            "network_requests": self.network_requests,
            "attempts": self.attempts,
        }


@dataclass
class ErrorInfo:
    """Structured description of the error that ended an execution."""

    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, retryable: bool = False) -> ErrorInfo:
        return cls(code=type(exc).__name__, message=str(exc), retryable=retryable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


@dataclass
class VerificationResult:
    verified: bool
    method: VerificationPolicy
    quality_score: float = 0.0
    findings: list[str] = field(default_factory=list)
    verified_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        check_unit_interval("quality_score", self.quality_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "method": str(self.method),
            "quality_score": self.quality_score,
            "findings": list(self.findings),
            "verified_at": format_timestamp(self.verified_at),
        }


@dataclass
class ExecutionResult:
    execution_id: str
    success: bool
    output: Any = None
    error: ErrorInfo | None = None
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    verification: VerificationResult | None = None
    rendered: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        output = self.output
        if output is not None and not isinstance(output, (str, int, float, bool, dict, list)):
            output = str(output)
        return {
            "execution_id": self.execution_id,
            "success": self.success,
            "status": str(self.status),
            "output": output,
            "error": self.error.to_dict() if self.error else None,
            "metrics": self.metrics.to_dict(),
            "verification": self.verification.to_dict() if self.verification else None,
        }


@dataclass(frozen=True)
class TaskRecord:
    """One finished task in an agent's rolling history."""

    execution_id: str
    task_description: str
    success: bool
    duration_ms: float
    capability_ids: tuple[str, ...] = ()
    quality_score: float | None = None
    contract_id: str | None = None
    finished_at: datetime = field(default_factory=utcnow)
