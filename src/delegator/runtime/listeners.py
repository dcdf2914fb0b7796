"""Typed lifecycle callbacks for ``AgentRuntime``.

Subclass ``RuntimeListener`` and override the hooks you need; the runtime
awaits them in causal order for each contract:

    received -> accepted | rejected -> started -> progress* -> retry* -> completed | failed
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from delegator.execution.assessment import ConfidenceChange
    from delegator.execution.checkpoints import ProgressUpdate
    from delegator.models.contracts import AcceptanceDecision, DelegationContract
    from delegator.models.execution import ExecutionContext, ExecutionResult


class RuntimeListener:
    """No-op base; every hook is optional."""

    async def on_contract_received(self, contract: DelegationContract) -> None:
        return None

    async def on_contract_accepted(
        self, contract: DelegationContract, decision: AcceptanceDecision
    ) -> None:
        return None

    async def on_contract_rejected(
        self, contract: DelegationContract, decision: AcceptanceDecision
    ) -> None:
        return None

    async def on_task_started(
        self, context: ExecutionContext, contract: DelegationContract | None
    ) -> None:
        return None

    async def on_progress(self, update: ProgressUpdate) -> None:
        return None

    async def on_retry(
        self, context: ExecutionContext, attempt: int, error: BaseException, delay_ms: int
    ) -> None:
        return None

    async def on_task_completed(
        self,
        context: ExecutionContext,
        result: ExecutionResult,
        contract: DelegationContract | None,
    ) -> None:
        return None

    async def on_task_failed(
        self,
        context: ExecutionContext,
        result: ExecutionResult,
        contract: DelegationContract | None,
    ) -> None:
        return None

    async def on_confidence_updated(self, agent_id: str, change: ConfidenceChange) -> None:
        return None

    async def on_shutdown(self, interrupted: list[ExecutionContext]) -> None:
        return None
