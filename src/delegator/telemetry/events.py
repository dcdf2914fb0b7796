"""
Telemetry Event Models

Append-only lifecycle events, the chain-correlation record each event
snapshots, performance metrics, and the query filter consumers use to read
events back from sinks.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Iterable

from delegator.models.capabilities import format_timestamp, parse_timestamp, utcnow


class EventType(StrEnum):
    CONTRACT_CREATED = "delegation_contract_created"
    CONTRACT_ACCEPTED = "delegation_contract_accepted"
    CONTRACT_REJECTED = "delegation_contract_rejected"
    PROGRESS_UPDATE = "delegation_progress_update"
    TASK_COMPLETED = "delegation_task_completed"
    TASK_FAILED = "delegation_task_failed"
    CHAIN_CREATED = "delegation_chain_created"
    CHAIN_UPDATED = "delegation_chain_updated"
    PERFORMANCE_MEASURED = "performance_metrics_recorded"
    ESCALATION = "delegation_escalation"
    FIREBREAK_TRIGGERED = "firebreak_triggered"


COMPLETION_EVENT_TYPES = frozenset({EventType.TASK_COMPLETED, EventType.TASK_FAILED})


class Severity(StrEnum):
    """Event severity, ordered debug < info < warning < error < critical."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = list(Severity)


class ChainStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ChainCorrelation:
    """Position of one contract within its delegation tree.

    Depth and participants only grow; status leaves ``active`` at most once.
    """

    root_delegation_id: str
    parent_delegation_id: str | None = None
    chain_depth: int = 0
    total_chain_contracts: int = 1
    chain_participants: list[str] = field(default_factory=list)
    chain_started_at: datetime = field(default_factory=utcnow)
    chain_completed_at: datetime | None = None
    chain_status: ChainStatus = ChainStatus.ACTIVE

    def add_participants(self, *agent_ids: str) -> bool:
        added = False
        for agent_id in agent_ids:
            if agent_id and agent_id not in self.chain_participants:
                self.chain_participants.append(agent_id)
                added = True
        return added

    def raise_depth(self, depth: int) -> bool:
        if depth > self.chain_depth:
            self.chain_depth = depth
            return True
        return False

    def count_contracts(self, total: int) -> None:
        self.total_chain_contracts = max(self.total_chain_contracts, total)

    def finish(self, status: ChainStatus, at: datetime | None = None) -> bool:
        """Move to a terminal status. Returns False if already terminal."""
        if self.chain_status != ChainStatus.ACTIVE or status == ChainStatus.ACTIVE:
            return False
        self.chain_status = status
        self.chain_completed_at = at or utcnow()
        return True

    def snapshot(self) -> ChainCorrelation:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_delegation_id": self.root_delegation_id,
            "parent_delegation_id": self.parent_delegation_id,
            "chain_depth": self.chain_depth,
            "total_chain_contracts": self.total_chain_contracts,
            "chain_participants": list(self.chain_participants),
            "chain_started_at": format_timestamp(self.chain_started_at),
            "chain_completed_at": format_timestamp(self.chain_completed_at),
            "chain_status": str(self.chain_status),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChainCorrelation:
        return cls(
            root_delegation_id=data["root_delegation_id"],
            parent_delegation_id=data.get("parent_delegation_id"),
            chain_depth=int(data.get("chain_depth", 0)),
            total_chain_contracts=int(data.get("total_chain_contracts", 1)),
            chain_participants=list(data.get("chain_participants", [])),
            chain_started_at=parse_timestamp(data.get("chain_started_at")) or utcnow(),
            chain_completed_at=parse_timestamp(data.get("chain_completed_at")),
            chain_status=ChainStatus(data.get("chain_status", "active")),
        )


@dataclass
class ResourceUtilization:
    peak_memory_mb: float = 0.0
    cpu_time_ms: float = 0.0
    network_calls: int = 0
    disk_io_bytes: int = 0


@dataclass
class QualityMetrics:
    success_rate: float = 0.0
    verification_score: float = 0.0
    confidence_level: float = 0.0
    retry_count: int = 0


@dataclass
class PerformanceMetrics:
    negotiation_time_ms: float = 0.0
    execution_time_ms: float = 0.0
    verification_time_ms: float = 0.0
    total_lifecycle_time_ms: float = 0.0
    resource_utilization: ResourceUtilization = field(default_factory=ResourceUtilization)
    quality_metrics: QualityMetrics = field(default_factory=QualityMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "negotiation_time_ms": self.negotiation_time_ms,
            "execution_time_ms": self.execution_time_ms,
            "verification_time_ms": self.verification_time_ms,
            "total_lifecycle_time_ms": self.total_lifecycle_time_ms,
            "resource_utilization": vars(self.resource_utilization).copy(),
            "quality_metrics": vars(self.quality_metrics).copy(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PerformanceMetrics | None:
        if data is None:
            return None
        return cls(
            negotiation_time_ms=float(data.get("negotiation_time_ms", 0.0)),
            execution_time_ms=float(data.get("execution_time_ms", 0.0)),
            verification_time_ms=float(data.get("verification_time_ms", 0.0)),
            total_lifecycle_time_ms=float(data.get("total_lifecycle_time_ms", 0.0)),
            resource_utilization=ResourceUtilization(**data.get("resource_utilization", {})),
            quality_metrics=QualityMetrics(**data.get("quality_metrics", {})),
        )


def new_event_id() -> str:
    return f"evt-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class TelemetryEvent:
    """Immutable lifecycle record written to sinks."""

    event_type: EventType
    agent_id: str
    contract_id: str
    chain_correlation: ChainCorrelation
    severity: Severity = Severity.INFO
    event_data: dict[str, Any] = field(default_factory=dict)
    execution_id: str | None = None
    performance_metrics: PerformanceMetrics | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=new_event_id)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def root_id(self) -> str:
        return self.chain_correlation.root_delegation_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": str(self.event_type),
            "timestamp": format_timestamp(self.timestamp),
            "agent_id": self.agent_id,
            "contract_id": self.contract_id,
            "execution_id": self.execution_id,
            "chain_correlation": self.chain_correlation.to_dict(),
            "severity": str(self.severity),
            "event_data": dict(self.event_data),
            "performance_metrics": (
                self.performance_metrics.to_dict() if self.performance_metrics else None
            ),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TelemetryEvent:
        return cls(
            event_id=data.get("event_id") or new_event_id(),
            event_type=EventType(data["event_type"]),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            agent_id=data.get("agent_id", ""),
            contract_id=data.get("contract_id", ""),
            execution_id=data.get("execution_id"),
            chain_correlation=ChainCorrelation.from_dict(data["chain_correlation"]),
            severity=Severity(data.get("severity", "info")),
            event_data=dict(data.get("event_data") or {}),
            performance_metrics=PerformanceMetrics.from_dict(data.get("performance_metrics")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TelemetryQueryFilter:
    """Criteria for reading events back. Empty fields match everything."""

    agent_id: str | None = None
    contract_id: str | None = None
    event_types: list[EventType] = field(default_factory=list)
    severities: list[Severity] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None
    chain_root_id: str | None = None
    chain_depth: int | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        self.event_types = [EventType(t) for t in self.event_types]
        self.severities = [Severity(s) for s in self.severities]
        if self.limit is not None and self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")

    def matches(self, event: TelemetryEvent) -> bool:
        if self.agent_id is not None and event.agent_id != self.agent_id:
            return False
        if self.contract_id is not None and event.contract_id != self.contract_id:
            return False
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.severities and event.severity not in self.severities:
            return False
        if self.start_time is not None and event.timestamp < self.start_time:
            return False
        if self.end_time is not None and event.timestamp > self.end_time:
            return False
        if self.chain_root_id is not None and event.root_id != self.chain_root_id:
            return False
        if (
            self.chain_depth is not None
            and event.chain_correlation.chain_depth != self.chain_depth
        ):
            return False
        return True

    def apply(self, events: Iterable[TelemetryEvent]) -> list[TelemetryEvent]:
        """Matching events, newest first, truncated to ``limit``."""
        selected = sorted(
            (e for e in events if self.matches(e)), key=lambda e: e.timestamp, reverse=True
        )
        return selected[: self.limit] if self.limit is not None else selected

    @classmethod
    def from_params(cls, **params: Any) -> TelemetryQueryFilter:
        """Build a filter from loose keyword values (CLI options, query strings)."""
        return cls(
            agent_id=params.get("agent_id"),
            contract_id=params.get("contract_id"),
            event_types=list(params.get("event_types") or []),
            severities=list(params.get("severities") or []),
            start_time=parse_timestamp(params.get("start_time")),
            end_time=parse_timestamp(params.get("end_time")),
            chain_root_id=params.get("chain_root_id"),
            chain_depth=params.get("chain_depth"),
            limit=params.get("limit"),
        )
