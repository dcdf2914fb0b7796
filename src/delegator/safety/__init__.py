"""Safety checks: firebreaks and permission tokens."""

from delegator.safety.firebreaks import check_firebreaks, evaluate_firebreak
from delegator.safety.guardrails import GuardrailResult, check_permission_token

__all__ = [
    "GuardrailResult",
    "check_firebreaks",
    "check_permission_token",
    "evaluate_firebreak",
]
