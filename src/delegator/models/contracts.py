"""
Delegation Contract Models

The contract is the unit of negotiation between a delegator and a delegatee:
task terms, timing, retry discipline, safety firebreaks, reputation
requirements and the capabilities the delegatee must hold.

Firebreaks are a tagged union: one frozen dataclass per firebreak type, each
carrying only the fields it needs, decoded explicitly by
``firebreak_from_dict`` on the ``type`` key.

Contract status only moves forward:

    pending -> accepted | rejected
    accepted -> active
    active -> completed | failed | timeout

(``cancelled`` is reachable from any non-terminal state.)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar, Union

from delegator.errors import InvalidTransitionError, ValidationError
from delegator.models.capabilities import (
    ResourceRequirements,
    TLPLevel,
    check_unit_interval,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

MAX_DELEGATION_DEPTH = 5


class VerificationPolicy(StrEnum):
    """How the delegator verifies delegated output."""

    NONE = "none"
    DIRECT_INSPECTION = "direct_inspection"
    THIRD_PARTY_AUDIT = "third_party_audit"
    CRYPTOGRAPHIC_PROOF = "cryptographic_proof"
    HUMAN_REQUIRED = "human_required"


class ContractStatus(StrEnum):
    """Contract lifecycle states."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


_CONTRACT_TRANSITIONS: dict[ContractStatus, frozenset[ContractStatus]] = {
    ContractStatus.PENDING: frozenset(
        {ContractStatus.ACCEPTED, ContractStatus.REJECTED, ContractStatus.CANCELLED}
    ),
    ContractStatus.ACCEPTED: frozenset({ContractStatus.ACTIVE, ContractStatus.CANCELLED}),
    ContractStatus.ACTIVE: frozenset(
        {
            ContractStatus.COMPLETED,
            ContractStatus.FAILED,
            ContractStatus.TIMEOUT,
            ContractStatus.CANCELLED,
        }
    ),
}


class BackoffStrategy(StrEnum):
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryCondition(StrEnum):
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    RESOURCE_UNAVAILABLE = "resource_unavailable"


DEFAULT_RETRY_CONDITIONS = (RetryCondition.TIMEOUT, RetryCondition.NETWORK_ERROR)


@dataclass
class RetryPolicy:
    """Retry discipline for an accepted contract."""

    max_retries: int = 0
    backoff_strategy: BackoffStrategy = BackoffStrategy.NONE
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    retry_conditions: list[RetryCondition] | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValidationError("retry delays must be >= 0")
        self.backoff_strategy = BackoffStrategy(self.backoff_strategy)
        if self.retry_conditions is not None:
            self.retry_conditions = [RetryCondition(c) for c in self.retry_conditions]

    @property
    def effective_conditions(self) -> tuple[RetryCondition, ...]:
        if self.retry_conditions is None:
            return DEFAULT_RETRY_CONDITIONS
        return tuple(self.retry_conditions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff_strategy": str(self.backoff_strategy),
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "retry_conditions": (
                [str(c) for c in self.retry_conditions]
                if self.retry_conditions is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RetryPolicy | None:
        if data is None:
            return None
        try:
            return cls(
                max_retries=int(data.get("max_retries", 0)),
                backoff_strategy=data.get("backoff_strategy", "none"),
                initial_delay_ms=int(data.get("initial_delay_ms", 1000)),
                max_delay_ms=int(data.get("max_delay_ms", 30_000)),
                retry_conditions=data.get("retry_conditions"),
            )
        except ValueError as exc:
            if isinstance(exc, ValidationError):
                raise
            raise ValidationError(f"Invalid retry policy: {exc}") from exc


@dataclass
class SuccessCriteria:
    """What the delegator will accept as a successful outcome."""

    required_outputs: list[str] = field(default_factory=list)
    quality_threshold: float | None = None
    custom_checks: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.quality_threshold is not None:
            check_unit_interval("quality_threshold", self.quality_threshold)

    def to_dict(self) -> dict[str, Any]:
        return {
            "required_outputs": list(self.required_outputs),
            "quality_threshold": self.quality_threshold,
            "custom_checks": dict(self.custom_checks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SuccessCriteria:
        data = data or {}
        return cls(
            required_outputs=list(data.get("required_outputs", [])),
            quality_threshold=data.get("quality_threshold"),
            custom_checks=dict(data.get("custom_checks", {})),
        )


@dataclass
class RequiredCapability:
    capability_id: str
    min_confidence: float = 0.0

    def __post_init__(self) -> None:
        if not self.capability_id:
            raise ValidationError("required capability_id is empty")
        check_unit_interval("min_confidence", self.min_confidence)

    @classmethod
    def from_value(cls, value: Any) -> RequiredCapability:
        if isinstance(value, str):
            return cls(capability_id=value)
        return cls(
            capability_id=value.get("capability_id", ""),
            min_confidence=float(value.get("min_confidence", 0.0)),
        )


@dataclass
class PermissionToken:
    """Scoped, expiring authority handed from delegator to delegatee."""

    token_id: str
    scopes: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    issued_by: str = ""
    issued_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "scopes": list(self.scopes),
            "actions": list(self.actions),
            "resources": list(self.resources),
            "issued_by": self.issued_by,
            "issued_at": format_timestamp(self.issued_at),
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PermissionToken | None:
        if data is None:
            return None
        return cls(
            token_id=data.get("token_id", ""),
            scopes=list(data.get("scopes", [])),
            actions=list(data.get("actions", [])),
            resources=list(data.get("resources", [])),
            issued_by=data.get("issued_by", ""),
            issued_at=parse_timestamp(data.get("issued_at")) or utcnow(),
            expires_at=parse_timestamp(data.get("expires_at")),
        )


@dataclass
class ReputationRequirements:
    """Minimum track record the delegatee must have. ``None`` disables a check."""

    min_security_score: float | None = None
    min_tasks_completed: int | None = None
    min_confidence_score: float | None = None
    max_consecutive_failures: int | None = None
    required_specializations: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.min_security_score is not None:
            check_unit_interval("min_security_score", self.min_security_score)
        if self.min_confidence_score is not None:
            check_unit_interval("min_confidence_score", self.min_confidence_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_security_score": self.min_security_score,
            "min_tasks_completed": self.min_tasks_completed,
            "min_confidence_score": self.min_confidence_score,
            "max_consecutive_failures": self.max_consecutive_failures,
            "required_specializations": list(self.required_specializations),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ReputationRequirements | None:
        if data is None:
            return None
        return cls(
            min_security_score=data.get("min_security_score"),
            min_tasks_completed=data.get("min_tasks_completed"),
            min_confidence_score=data.get("min_confidence_score"),
            max_consecutive_failures=data.get("max_consecutive_failures"),
            required_specializations=list(data.get("required_specializations", [])),
        )


# ── Firebreaks ────────────────────────────────────────────────────────────


class FirebreakType(StrEnum):
    MAX_DEPTH = "max_depth"
    TLP_ESCALATION = "tlp_escalation"
    TIMEOUT = "timeout"
    RESOURCE_LIMIT = "resource_limit"
    HUMAN_REVIEW = "human_review"


class FirebreakAction(StrEnum):
    HALT = "halt"
    ESCALATE = "escalate"
    REQUIRE_APPROVAL = "require_approval"


RESOURCE_FIELDS = ("memory_mb", "cpu_cores", "network_mbps", "disk_mb")


@dataclass(frozen=True)
class MaxDepthFirebreak:
    threshold: int
    action: FirebreakAction = FirebreakAction.HALT
    reason: str = ""
    type: ClassVar[FirebreakType] = FirebreakType.MAX_DEPTH

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "threshold": self.threshold,
                "action": str(self.action), "reason": self.reason}


@dataclass(frozen=True)
class TLPEscalationFirebreak:
    max_level: TLPLevel = TLPLevel.CLEAR
    action: FirebreakAction = FirebreakAction.HALT
    reason: str = ""
    type: ClassVar[FirebreakType] = FirebreakType.TLP_ESCALATION

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "max_level": str(self.max_level),
                "action": str(self.action), "reason": self.reason}


@dataclass(frozen=True)
class TimeoutFirebreak:
    threshold_ms: int
    action: FirebreakAction = FirebreakAction.HALT
    reason: str = ""
    type: ClassVar[FirebreakType] = FirebreakType.TIMEOUT

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "threshold_ms": self.threshold_ms,
                "action": str(self.action), "reason": self.reason}


@dataclass(frozen=True)
class ResourceLimitFirebreak:
    threshold: float
    resource: str = "memory_mb"
    action: FirebreakAction = FirebreakAction.HALT
    reason: str = ""
    type: ClassVar[FirebreakType] = FirebreakType.RESOURCE_LIMIT

    def __post_init__(self) -> None:
        if self.resource not in RESOURCE_FIELDS:
            raise ValidationError(f"Unknown firebreak resource: {self.resource}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "resource": self.resource,
                "threshold": self.threshold, "action": str(self.action),
                "reason": self.reason}


@dataclass(frozen=True)
class HumanReviewFirebreak:
    action: FirebreakAction = FirebreakAction.REQUIRE_APPROVAL
    reason: str = ""
    type: ClassVar[FirebreakType] = FirebreakType.HUMAN_REVIEW

    def to_dict(self) -> dict[str, Any]:
        return {"type": str(self.type), "action": str(self.action), "reason": self.reason}


Firebreak = Union[
    MaxDepthFirebreak,
    TLPEscalationFirebreak,
    TimeoutFirebreak,
    ResourceLimitFirebreak,
    HumanReviewFirebreak,
]


def firebreak_from_dict(data: dict[str, Any]) -> Firebreak:
    """Decode a firebreak document by its ``type`` tag."""
    try:
        kind = FirebreakType(data.get("type"))
        action = FirebreakAction(data.get("action", "halt"))
    except ValueError:
        raise ValidationError(
            f"Unknown firebreak type/action: {data.get('type')}/{data.get('action')}"
        ) from None
    reason = data.get("reason", "")

    if kind is FirebreakType.MAX_DEPTH:
        if "threshold" not in data:
            raise ValidationError("max_depth firebreak requires a threshold")
        return MaxDepthFirebreak(threshold=int(data["threshold"]), action=action, reason=reason)
    if kind is FirebreakType.TLP_ESCALATION:
        level = data.get("max_level", data.get("threshold", 0))
        return TLPEscalationFirebreak(max_level=TLPLevel.parse(level), action=action, reason=reason)
    if kind is FirebreakType.TIMEOUT:
        threshold = data.get("threshold_ms", data.get("threshold"))
        if threshold is None:
            raise ValidationError("timeout firebreak requires a threshold")
        return TimeoutFirebreak(threshold_ms=int(threshold), action=action, reason=reason)
    if kind is FirebreakType.RESOURCE_LIMIT:
        if "threshold" not in data:
            raise ValidationError("resource_limit firebreak requires a threshold")
        return ResourceLimitFirebreak(
            threshold=float(data["threshold"]),
            resource=data.get("resource", "memory_mb"),
            action=action,
            reason=reason,
        )
    if "action" not in data:
        action = FirebreakAction.REQUIRE_APPROVAL
    return HumanReviewFirebreak(action=action, reason=reason)


@dataclass(frozen=True)
class FirebreakViolation:
    """A firebreak that blocked acceptance, with the values that tripped it."""

    firebreak: Firebreak
    reason: str
    threshold: Any = None
    actual: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "firebreak": self.firebreak.to_dict(),
            "reason": self.reason,
            "threshold": str(self.threshold) if isinstance(self.threshold, TLPLevel)
            else self.threshold,
            "actual": str(self.actual) if isinstance(self.actual, TLPLevel) else self.actual,
        }


# ── Contract ──────────────────────────────────────────────────────────────


@dataclass
class ContractMetadata:
    """Chain position and planning hints carried alongside the contract."""

    delegation_depth: int = 0
    root_contract_id: str | None = None
    parent_contract_id: str | None = None
    estimated_complexity: float | None = None  # 1-10
    estimated_duration_ms: int | None = None
    task_categories: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.delegation_depth < 0:
            raise ValidationError(f"delegation_depth must be >= 0, got {self.delegation_depth}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "delegation_depth": self.delegation_depth,
            "root_contract_id": self.root_contract_id,
            "parent_contract_id": self.parent_contract_id,
            "estimated_complexity": self.estimated_complexity,
            "estimated_duration_ms": self.estimated_duration_ms,
            "task_categories": list(self.task_categories),
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ContractMetadata:
        data = dict(data or {})
        known = {
            "delegation_depth",
            "root_contract_id",
            "parent_contract_id",
            "estimated_complexity",
            "estimated_duration_ms",
            "task_categories",
            "extra",
        }
        extra = dict(data.get("extra", {}))
        extra.update({k: v for k, v in data.items() if k not in known})
        return cls(
            delegation_depth=int(data.get("delegation_depth", 0)),
            root_contract_id=data.get("root_contract_id"),
            parent_contract_id=data.get("parent_contract_id"),
            estimated_complexity=data.get("estimated_complexity"),
            estimated_duration_ms=data.get("estimated_duration_ms"),
            task_categories=list(data.get("task_categories", [])),
            extra=extra,
        )


@dataclass
class DelegationContract:
    """A proposal to perform a task under explicit success, timing and safety terms."""

    contract_id: str
    task_id: str
    delegator_agent_id: str
    delegatee_agent_id: str
    task_description: str = ""
    verification_policy: VerificationPolicy = VerificationPolicy.DIRECT_INSPECTION
    success_criteria: SuccessCriteria = field(default_factory=SuccessCriteria)
    timeout_ms: int | None = None
    priority: int = 5
    retry_policy: RetryPolicy | None = None
    firebreaks: list[Firebreak] = field(default_factory=list)
    reputation_requirements: ReputationRequirements | None = None
    permission_token: PermissionToken | None = None
    resource_requirements: ResourceRequirements | None = None
    required_capabilities: list[RequiredCapability] = field(default_factory=list)
    tlp_classification: TLPLevel = TLPLevel.CLEAR
    status: ContractStatus = ContractStatus.PENDING
    metadata: ContractMetadata = field(default_factory=ContractMetadata)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        for name in ("contract_id", "task_id", "delegator_agent_id", "delegatee_agent_id"):
            if not getattr(self, name):
                raise ValidationError(f"{name} is required")
        if not 1 <= self.priority <= 10:
            raise ValidationError(f"priority must be in [1, 10], got {self.priority}")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValidationError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        try:
            self.verification_policy = VerificationPolicy(self.verification_policy)
            self.status = ContractStatus(self.status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None

    @property
    def is_terminal(self) -> bool:
        return self.status not in _CONTRACT_TRANSITIONS

    @property
    def root_id(self) -> str:
        return self.metadata.root_contract_id or self.contract_id

    def can_transition(self, target: ContractStatus) -> bool:
        return target in _CONTRACT_TRANSITIONS.get(self.status, frozenset())

    def transition(self, target: ContractStatus) -> None:
        """Move to ``target`` or raise InvalidTransitionError."""
        target = ContractStatus(target)
        if not self.can_transition(target):
            raise InvalidTransitionError("contract", self.status, target)
        self.status = target
        self.updated_at = utcnow()
        if self.is_terminal:
            self.completed_at = self.updated_at

    def create_child(
        self,
        task_id: str,
        delegatee_agent_id: str,
        task_description: str = "",
        **overrides: Any,
    ) -> DelegationContract:
        """Build a sub-delegation one level deeper in the same chain."""
        depth = self.metadata.delegation_depth + 1
        if depth > MAX_DELEGATION_DEPTH:
            raise ValidationError(
                f"Delegation depth {depth} exceeds maximum {MAX_DELEGATION_DEPTH}"
            )
        metadata = ContractMetadata(
            delegation_depth=depth,
            root_contract_id=self.root_id,
            parent_contract_id=self.contract_id,
            task_categories=list(self.metadata.task_categories),
        )
        fields: dict[str, Any] = {
            "contract_id": overrides.pop("contract_id", f"contract-{uuid.uuid4().hex[:12]}"),
            "task_id": task_id,
            "delegator_agent_id": self.delegatee_agent_id,
            "delegatee_agent_id": delegatee_agent_id,
            "task_description": task_description,
            "verification_policy": self.verification_policy,
            "firebreaks": list(self.firebreaks),
            "tlp_classification": self.tlp_classification,
            "metadata": metadata,
        }
        fields.update(overrides)
        return DelegationContract(**fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "task_id": self.task_id,
            "delegator_agent_id": self.delegator_agent_id,
            "delegatee_agent_id": self.delegatee_agent_id,
            "task_description": self.task_description,
            "verification_policy": str(self.verification_policy),
            "success_criteria": self.success_criteria.to_dict(),
            "timeout_ms": self.timeout_ms,
            "priority": self.priority,
            "retry_policy": self.retry_policy.to_dict() if self.retry_policy else None,
            "firebreaks": [f.to_dict() for f in self.firebreaks],
            "reputation_requirements": (
                self.reputation_requirements.to_dict() if self.reputation_requirements else None
            ),
            "permission_token": (
                self.permission_token.to_dict() if self.permission_token else None
            ),
            "resource_requirements": (
                self.resource_requirements.to_dict() if self.resource_requirements else None
            ),
            "required_capabilities": [
                {"capability_id": r.capability_id, "min_confidence": r.min_confidence}
                for r in self.required_capabilities
            ],
            "tlp_classification": str(self.tlp_classification),
            "status": str(self.status),
            "metadata": self.metadata.to_dict(),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DelegationContract:
        return cls(
            contract_id=data.get("contract_id", ""),
            task_id=data.get("task_id", ""),
            delegator_agent_id=data.get("delegator_agent_id", ""),
            delegatee_agent_id=data.get("delegatee_agent_id", ""),
            task_description=data.get("task_description", ""),
            verification_policy=data.get("verification_policy", "direct_inspection"),
            success_criteria=SuccessCriteria.from_dict(data.get("success_criteria")),
            timeout_ms=data.get("timeout_ms"),
            priority=int(data.get("priority", 5)),
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy")),
            firebreaks=[firebreak_from_dict(f) for f in data.get("firebreaks", [])],
            reputation_requirements=ReputationRequirements.from_dict(
                data.get("reputation_requirements")
            ),
            permission_token=PermissionToken.from_dict(data.get("permission_token")),
            resource_requirements=ResourceRequirements.from_dict(
                data.get("resource_requirements")
            ),
            required_capabilities=[
                RequiredCapability.from_value(r) for r in data.get("required_capabilities", [])
            ],
            tlp_classification=TLPLevel.parse(data.get("tlp_classification", "TLP:CLEAR")),
            status=data.get("status", "pending"),
            metadata=ContractMetadata.from_dict(data.get("metadata")),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            completed_at=parse_timestamp(data.get("completed_at")),
        )


# ── Admission decision ────────────────────────────────────────────────────


class AdmissionGate(StrEnum):
    """Admission gates, in evaluation order."""

    CONCURRENCY = "concurrency"
    REPUTATION = "reputation"
    PERMISSION = "permission"
    FIREBREAK = "firebreak"
    RESOURCES = "resources"
    CAPABILITIES = "capabilities"
    TIMEOUT = "timeout"


@dataclass
class Assessment:
    capability_match: float = 0.0
    resource_availability: float = 0.0
    workload_capacity: float = 0.0
    reputation_compliance: float = 0.0
    firebreak_compliance: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "capability_match": round(self.capability_match, 4),
            "resource_availability": round(self.resource_availability, 4),
            "workload_capacity": round(self.workload_capacity, 4),
            "reputation_compliance": self.reputation_compliance,
            "firebreak_compliance": self.firebreak_compliance,
        }


@dataclass
class AcceptanceDecision:
    """Outcome of admission. A rejection is a value, never an exception."""

    can_accept: bool
    reason: str = ""
    confidence: float = 0.0
    estimated_completion_ms: int = 0
    assessment: Assessment = field(default_factory=Assessment)
    gate: AdmissionGate | None = None
    firebreak_violation: FirebreakViolation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_accept": self.can_accept,
            "reason": self.reason,
            "confidence": round(self.confidence, 4),
            "estimated_completion_ms": self.estimated_completion_ms,
            "assessment": self.assessment.to_dict(),
            "gate": str(self.gate) if self.gate else None,
            "firebreak_violation": (
                self.firebreak_violation.to_dict() if self.firebreak_violation else None
            ),
        }
