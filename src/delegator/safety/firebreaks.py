"""
Firebreak evaluation.

Each firebreak on a contract is checked independently; the first violation
found blocks acceptance. ``human_review`` with ``require_approval`` always
blocks automatic acceptance.
"""

from __future__ import annotations

from delegator.models.contracts import (
    DelegationContract,
    Firebreak,
    FirebreakAction,
    FirebreakViolation,
    HumanReviewFirebreak,
    MaxDepthFirebreak,
    ResourceLimitFirebreak,
    TimeoutFirebreak,
    TLPEscalationFirebreak,
)
from delegator.safety.guardrails import GuardrailResult


def evaluate_firebreak(
    firebreak: Firebreak, contract: DelegationContract, estimated_time_ms: int
) -> FirebreakViolation | None:
    """Return the violation ``firebreak`` raises for ``contract``, if any."""
    if isinstance(firebreak, MaxDepthFirebreak):
        depth = contract.metadata.delegation_depth
        if depth >= firebreak.threshold:
            return FirebreakViolation(
                firebreak,
                f"Delegation depth {depth} exceeds firebreak limit {firebreak.threshold}",
                threshold=firebreak.threshold,
                actual=depth,
            )
        return None

    if isinstance(firebreak, TLPEscalationFirebreak):
        level = contract.tlp_classification
        if level.rank > firebreak.max_level.rank:
            return FirebreakViolation(
                firebreak,
                f"TLP escalation: {level} exceeds firebreak limit {firebreak.max_level}",
                threshold=firebreak.max_level,
                actual=level,
            )
        return None

    if isinstance(firebreak, TimeoutFirebreak):
        if estimated_time_ms > firebreak.threshold_ms:
            return FirebreakViolation(
                firebreak,
                f"Estimated time {estimated_time_ms}ms exceeds firebreak limit "
                f"{firebreak.threshold_ms}ms",
                threshold=firebreak.threshold_ms,
                actual=estimated_time_ms,
            )
        return None

    if isinstance(firebreak, ResourceLimitFirebreak):
        requested = None
        if contract.resource_requirements is not None:
            requested = getattr(contract.resource_requirements, firebreak.resource)
        if requested is not None and requested > firebreak.threshold:
            return FirebreakViolation(
                firebreak,
                f"Requested {firebreak.resource} {requested} exceeds firebreak limit "
                f"{firebreak.threshold}",
                threshold=firebreak.threshold,
                actual=requested,
            )
        return None

    if isinstance(firebreak, HumanReviewFirebreak):
        if firebreak.action == FirebreakAction.REQUIRE_APPROVAL:
            return FirebreakViolation(
                firebreak, "Human review firebreak requires manual approval"
            )
        return None

    raise TypeError(f"Unsupported firebreak: {firebreak!r}")


def check_firebreaks(contract: DelegationContract, estimated_time_ms: int) -> GuardrailResult:
    """Check every firebreak on the contract, stopping at the first violation."""
    for firebreak in contract.firebreaks:
        violation = evaluate_firebreak(firebreak, contract, estimated_time_ms)
        if violation is not None:
            return GuardrailResult(
                passed=False,
                violation=violation.reason,
                action=str(firebreak.action),
                details=[violation],
            )
    return GuardrailResult(passed=True)
