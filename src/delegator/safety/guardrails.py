"""Safety guardrails evaluated before a contract is admitted."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from delegator.models.capabilities import utcnow
from delegator.models.contracts import FirebreakViolation, PermissionToken


@dataclass
class GuardrailResult:
    """Result of a guardrail check."""

    passed: bool
    violation: str | None = None
    action: str = "continue"  # continue/halt/escalate/require_approval
    details: list[FirebreakViolation] = field(default_factory=list)


def check_permission_token(
    token: PermissionToken | None, now: datetime | None = None
) -> GuardrailResult:
    """Validate a delegated permission token.

    A missing token passes; contracts without one carry no delegated authority.

    Args:
        token: Token attached to the contract
        now: Reference time (default: current UTC time)

    Returns:
        Guardrail check result listing every problem found
    """
    if token is None:
        return GuardrailResult(passed=True)

    now = now or utcnow()
    problems = []
    if token.expires_at is not None and token.expires_at <= now:
        problems.append("Permission token expired")
    if not token.scopes:
        problems.append("No permission scopes granted")
    if not token.actions:
        problems.append("No permitted actions specified")
    if not token.resources:
        problems.append("No permitted resources specified")

    if problems:
        return GuardrailResult(passed=False, violation="; ".join(problems), action="halt")
    return GuardrailResult(passed=True)
