"""Per-agent runtime: negotiation, execution and self-assessment wired together."""

from delegator.runtime.agent_runtime import AgentRuntime, DelegationOutcome, VerificationFormatter
from delegator.runtime.handlers import simulated_handler
from delegator.runtime.listeners import RuntimeListener

__all__ = [
    "AgentRuntime",
    "DelegationOutcome",
    "RuntimeListener",
    "VerificationFormatter",
    "simulated_handler",
]
