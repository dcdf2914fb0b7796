"""Data models for manifests, contracts and executions."""

from delegator.models.capabilities import (
    Availability,
    Capability,
    CapabilityManifest,
    CapabilityMatch,
    CapabilityQuery,
    ResourceRequirements,
    TLPLevel,
)
from delegator.models.contracts import (
    AcceptanceDecision,
    AdmissionGate,
    Assessment,
    BackoffStrategy,
    ContractMetadata,
    ContractStatus,
    DelegationContract,
    Firebreak,
    FirebreakAction,
    FirebreakType,
    FirebreakViolation,
    HumanReviewFirebreak,
    MaxDepthFirebreak,
    PermissionToken,
    ReputationRequirements,
    RequiredCapability,
    ResourceLimitFirebreak,
    RetryCondition,
    RetryPolicy,
    SuccessCriteria,
    TimeoutFirebreak,
    TLPEscalationFirebreak,
    VerificationPolicy,
    firebreak_from_dict,
)
from delegator.models.execution import (
    ErrorInfo,
    ExecutionContext,
    ExecutionMetrics,
    ExecutionResult,
    ExecutionStatus,
    ResourceUsage,
    TaskRecord,
    VerificationResult,
)

__all__ = [
    # Capabilities
    "Availability",
    "Capability",
    "CapabilityManifest",
    "CapabilityMatch",
    "CapabilityQuery",
    "ResourceRequirements",
    "TLPLevel",
    # Contracts
    "AcceptanceDecision",
    "AdmissionGate",
    "Assessment",
    "BackoffStrategy",
    "ContractMetadata",
    "ContractStatus",
    "DelegationContract",
    "Firebreak",
    "FirebreakAction",
    "FirebreakType",
    "FirebreakViolation",
    "HumanReviewFirebreak",
    "MaxDepthFirebreak",
    "PermissionToken",
    "ReputationRequirements",
    "RequiredCapability",
    "ResourceLimitFirebreak",
    "RetryCondition",
    "RetryPolicy",
    "SuccessCriteria",
    "TimeoutFirebreak",
    "TLPEscalationFirebreak",
    "VerificationPolicy",
    "firebreak_from_dict",
    # Execution
    "ErrorInfo",
    "ExecutionContext",
    "ExecutionMetrics",
    "ExecutionResult",
    "ExecutionStatus",
    "ResourceUsage",
    "TaskRecord",
    "VerificationResult",
]
