"""Exception hierarchy for the delegation runtime.

Admission failures are never raised: they come back as an
``AcceptanceDecision`` with ``can_accept=False``. Everything here is for
malformed input, illegal state moves, and execution that ran and failed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from delegator.models.execution import ExecutionResult


class DelegationError(Exception):
    """Base class for all delegator errors."""


class ValidationError(DelegationError, ValueError):
    """Malformed manifest, contract, or query rejected at the boundary."""


class AgentNotFoundError(DelegationError, KeyError):
    """Operation targeted an agent with no registered manifest."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(agent_id)
        self.agent_id = agent_id

    def __str__(self) -> str:
        return f"Agent not registered: {self.agent_id}"


class InvalidTransitionError(DelegationError):
    """A status change that would move a state machine backwards."""

    def __init__(self, entity: str, current: Any, target: Any) -> None:
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")
        self.current = current
        self.target = target


class ResourceUnavailableError(DelegationError):
    """Capacity exhausted (concurrency slots, memory, ...). Retryable."""


class ExecutionError(DelegationError):
    """Base class for failures surfaced by the execution engine."""

    def __init__(self, message: str, result: ExecutionResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class ExecutionTimeout(ExecutionError):
    """The task body lost the timeout race."""

    def __init__(
        self,
        message: str,
        timeout_ms: int | None = None,
        result: ExecutionResult | None = None,
    ) -> None:
        super().__init__(message, result)
        self.timeout_ms = timeout_ms


class ExecutionFailure(ExecutionError):
    """The task body raised and retries (if any) were exhausted."""

    def __init__(
        self,
        message: str,
        original: BaseException | None = None,
        result: ExecutionResult | None = None,
    ) -> None:
        super().__init__(message, result)
        self.original = original


class ShutdownInterrupt(ExecutionError):
    """The runtime was shut down while the task was in flight."""


class ChainNotFoundError(DelegationError, LookupError):
    """No telemetry events exist for the requested delegation chain."""
