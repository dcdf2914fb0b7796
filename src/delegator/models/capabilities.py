"""
Capability Models

Dataclasses for agent capability manifests and the queries run against them.
Every confidence-like value is normalized to [0.0, 1.0] and validated on
construction; the ``to_dict`` / ``from_dict`` pairs define the JSON document
shape used to register manifests and to ask capability queries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from delegator.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Accept datetimes, ISO strings, or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be in [0.0, 1.0], got {value}")


class Availability(StrEnum):
    """Agent availability states."""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class TLPLevel(StrEnum):
    """Traffic Light Protocol classification, ordered CLEAR < GREEN < AMBER < RED."""

    CLEAR = "TLP:CLEAR"
    GREEN = "TLP:GREEN"
    AMBER = "TLP:AMBER"
    RED = "TLP:RED"

    @property
    def rank(self) -> int:
        return _TLP_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> TLPLevel:
        """Parse ``TLP:AMBER``, ``amber`` or an ordinal 0-3."""
        if isinstance(value, TLPLevel):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            for level, rank in _TLP_RANK.items():
                if rank == value:
                    return level
            raise ValidationError(f"TLP level out of range: {value}")
        text = str(value).strip().upper()
        if not text.startswith("TLP:"):
            text = f"TLP:{text}"
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(f"Unknown TLP level: {value}") from None


_TLP_RANK = {TLPLevel.CLEAR: 0, TLPLevel.GREEN: 1, TLPLevel.AMBER: 2, TLPLevel.RED: 3}


@dataclass
class ResourceRequirements:
    """Resources a capability or contract needs. ``None`` means unspecified."""

    memory_mb: float | None = None
    cpu_cores: float | None = None
    network_mbps: float | None = None
    disk_mb: float | None = None

    def __post_init__(self) -> None:
        for name in ("memory_mb", "cpu_cores", "network_mbps", "disk_mb"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}")

    def to_dict(self) -> dict[str, Any]:
        return {
            k: v
            for k, v in (
                ("memory_mb", self.memory_mb),
                ("cpu_cores", self.cpu_cores),
                ("network_mbps", self.network_mbps),
                ("disk_mb", self.disk_mb),
            )
            if v is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ResourceRequirements | None:
        if data is None:
            return None
        return cls(
            memory_mb=data.get("memory_mb"),
            cpu_cores=data.get("cpu_cores"),
            network_mbps=data.get("network_mbps"),
            disk_mb=data.get("disk_mb"),
        )


@dataclass
class Capability:
    """A single confidence-scored ability advertised by an agent."""

    capability_id: str
    name: str = ""
    description: str = ""
    confidence_level: float = 0.5
    success_rate: float = 0.0
    successful_completions: int = 0
    completion_time_estimate_ms: int = 60_000
    resource_requirements: ResourceRequirements | None = None
    supported_patterns: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    limitations: list[str] = field(default_factory=list)
    tlp_clearance: TLPLevel | None = None
    last_updated: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.capability_id:
            raise ValidationError("capability_id is required")
        check_unit_interval("confidence_level", self.confidence_level)
        check_unit_interval("success_rate", self.success_rate)
        if self.successful_completions < 0:
            raise ValidationError(
                f"successful_completions must be >= 0, got {self.successful_completions}"
            )
        if self.completion_time_estimate_ms < 0:
            raise ValidationError(
                "completion_time_estimate_ms must be >= 0, "
                f"got {self.completion_time_estimate_ms}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability_id": self.capability_id,
            "name": self.name,
            "description": self.description,
            "confidence_level": self.confidence_level,
            "success_rate": self.success_rate,
            "successful_completions": self.successful_completions,
            "completion_time_estimate_ms": self.completion_time_estimate_ms,
            "resource_requirements": (
                self.resource_requirements.to_dict() if self.resource_requirements else None
            ),
            "supported_patterns": list(self.supported_patterns),
            "tags": list(self.tags),
            "limitations": list(self.limitations),
            "tlp_clearance": str(self.tlp_clearance) if self.tlp_clearance else None,
            "last_updated": format_timestamp(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Capability:
        clearance = data.get("tlp_clearance")
        return cls(
            capability_id=data.get("capability_id") or data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            confidence_level=float(data.get("confidence_level", data.get("confidence", 0.5))),
            success_rate=float(data.get("success_rate") or 0.0),
            successful_completions=int(data.get("successful_completions", 0)),
            completion_time_estimate_ms=int(data.get("completion_time_estimate_ms", 60_000)),
            resource_requirements=ResourceRequirements.from_dict(
                data.get("resource_requirements")
            ),
            supported_patterns=list(data.get("supported_patterns", [])),
            tags=list(data.get("tags", [])),
            limitations=list(data.get("limitations", [])),
            tlp_clearance=TLPLevel.parse(clearance) if clearance is not None else None,
            last_updated=parse_timestamp(data.get("last_updated")) or utcnow(),
        )


@dataclass
class CapabilityManifest:
    """All capabilities one agent advertises, plus its availability and load."""

    agent_id: str
    capabilities: list[Capability] = field(default_factory=list)
    agent_name: str = ""
    version: str = "1.0.0"
    overall_confidence: float = 0.0
    availability: Availability = Availability.AVAILABLE
    current_workload: int = 0
    max_concurrent_tasks: int = 5
    specializations: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValidationError("agent_id is required")
        if self.current_workload < 0:
            raise ValidationError(f"current_workload must be >= 0, got {self.current_workload}")
        if self.max_concurrent_tasks < 1:
            raise ValidationError(
                f"max_concurrent_tasks must be >= 1, got {self.max_concurrent_tasks}"
            )
        self.availability = Availability(self.availability)
        self.recompute_confidence()

    def recompute_confidence(self) -> None:
        """Set overall_confidence to the mean capability confidence."""
        if not self.capabilities:
            self.overall_confidence = 0.0
            return
        total = sum(c.confidence_level for c in self.capabilities)
        self.overall_confidence = min(1.0, max(0.0, total / len(self.capabilities)))

    def get_capability(self, capability_id: str) -> Capability | None:
        for capability in self.capabilities:
            if capability.capability_id == capability_id:
                return capability
        return None

    @property
    def capability_ids(self) -> set[str]:
        return {c.capability_id for c in self.capabilities}

    @property
    def workload_ratio(self) -> float:
        if self.max_concurrent_tasks <= 0:
            return 0.0
        return self.current_workload / self.max_concurrent_tasks

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "version": self.version,
            "capabilities": [c.to_dict() for c in self.capabilities],
            "overall_confidence": self.overall_confidence,
            "availability": str(self.availability),
            "current_workload": self.current_workload,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "specializations": list(self.specializations),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapabilityManifest:
        try:
            availability = Availability(data.get("availability", "available"))
        except ValueError:
            raise ValidationError(f"Unknown availability: {data.get('availability')}") from None
        return cls(
            agent_id=data.get("agent_id", ""),
            agent_name=data.get("agent_name", ""),
            version=data.get("version", "1.0.0"),
            capabilities=[Capability.from_dict(c) for c in data.get("capabilities", [])],
            availability=availability,
            current_workload=int(data.get("current_workload", 0)),
            max_concurrent_tasks=int(data.get("max_concurrent_tasks", 5)),
            specializations=list(data.get("specializations", [])),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
        )


@dataclass
class CapabilityQuery:
    """Filters applied by ``CapabilityRegistry.query_capabilities``."""

    required_capabilities: list[str] = field(default_factory=list)
    min_confidence: float | None = None
    max_completion_time_ms: int | None = None
    required_clearance: TLPLevel | None = None
    min_success_rate: float | None = None
    min_completions: int | None = None
    task_patterns: list[str] = field(default_factory=list)
    required_tags: list[str] = field(default_factory=list)
    only_available: bool = False
    exclude_agents: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.min_confidence is not None:
            check_unit_interval("min_confidence", self.min_confidence)
        if self.min_success_rate is not None:
            check_unit_interval("min_success_rate", self.min_success_rate)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapabilityQuery:
        clearance = data.get("required_clearance")
        return cls(
            required_capabilities=list(data.get("required_capabilities", [])),
            min_confidence=data.get("min_confidence"),
            max_completion_time_ms=data.get("max_completion_time_ms"),
            required_clearance=TLPLevel.parse(clearance) if clearance is not None else None,
            min_success_rate=data.get("min_success_rate"),
            min_completions=data.get("min_completions"),
            task_patterns=list(data.get("task_patterns", [])),
            required_tags=list(data.get("required_tags", [])),
            only_available=bool(data.get("only_available", False)),
            exclude_agents=list(data.get("exclude_agents", [])),
        )


@dataclass
class CapabilityMatch:
    """One scored (agent, capability) pair returned from a query."""

    agent_id: str
    capability: Capability
    score: float
    priority: float
    availability: Availability
    current_workload: int
    max_concurrent_tasks: int
    match_reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capability": self.capability.to_dict(),
            "score": round(self.score, 4),
            "priority": round(self.priority, 2),
            "availability": str(self.availability),
            "current_workload": self.current_workload,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "match_reasons": list(self.match_reasons),
            "warnings": list(self.warnings),
        }
