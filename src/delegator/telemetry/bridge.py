"""
Telemetry Bridge — Runtime Lifecycle -> Telemetry Events

A ``RuntimeListener`` that turns an ``AgentRuntime``'s callbacks into
telemetry events and assembles per-execution performance metrics:

    negotiation_time_ms    received -> accepted
    execution_time_ms      from the execution result
    verification_time_ms   execution end -> completion callback
    total_lifecycle_time_ms received (or started) -> completion callback

Metrics ride only on the completed/failed event, so retries are counted
once per execution. On shutdown the bridge drops its per-contract timing
state and closes the engine, draining buffered events to the sinks.

Usage:
    runtime.add_listener(TelemetryBridge(telemetry))
"""

from __future__ import annotations

import logging
import time

from delegator.models.contracts import (
    AcceptanceDecision,
    DelegationContract,
    FirebreakAction,
)
from delegator.models.execution import ErrorInfo, ExecutionContext, ExecutionResult
from delegator.runtime.listeners import RuntimeListener
from delegator.telemetry.engine import TelemetryEngine
from delegator.telemetry.events import PerformanceMetrics, QualityMetrics, ResourceUtilization

logger = logging.getLogger(__name__)


def _ms_since(start: float | None, now: float) -> float:
    return (now - start) * 1000.0 if start is not None else 0.0


class TelemetryBridge(RuntimeListener):
    """Feeds one runtime's lifecycle into a ``TelemetryEngine``."""

    def __init__(self, engine: TelemetryEngine) -> None:
        self.engine = engine
        self._received: dict[str, float] = {}
        self._negotiation_ms: dict[str, float] = {}
        self._confidence: dict[str, float] = {}
        self._started: dict[str, float] = {}
        self._retries: dict[str, int] = {}

    @staticmethod
    def _contract_id(context: ExecutionContext, contract: DelegationContract | None) -> str:
        if contract is not None:
            return contract.contract_id
        return context.contract_id or context.execution_id

    # ── Negotiation ────────────────────────────────────────────────────────

    async def on_contract_received(self, contract: DelegationContract) -> None:
        self._received[contract.contract_id] = time.monotonic()
        await self.engine.log_contract_created(contract)

    async def on_contract_accepted(
        self, contract: DelegationContract, decision: AcceptanceDecision
    ) -> None:
        self._negotiation_ms[contract.contract_id] = _ms_since(
            self._received.get(contract.contract_id), time.monotonic()
        )
        self._confidence[contract.contract_id] = decision.confidence
        await self.engine.log_contract_accepted(contract.contract_id, decision)

    async def on_contract_rejected(
        self, contract: DelegationContract, decision: AcceptanceDecision
    ) -> None:
        violation = decision.firebreak_violation
        if violation is not None:
            await self.engine.log_firebreak_triggered(contract.contract_id, violation)
            if violation.firebreak.action == FirebreakAction.ESCALATE:
                await self.engine.log_escalation(
                    contract.contract_id, violation.reason, contract.delegator_agent_id
                )
        await self.engine.log_contract_rejected(contract.contract_id, decision)
        self._received.pop(contract.contract_id, None)

    # ── Execution ──────────────────────────────────────────────────────────

    async def on_task_started(
        self, context: ExecutionContext, contract: DelegationContract | None
    ) -> None:
        self._started[context.execution_id] = time.monotonic()
        self._retries[context.execution_id] = 0

    async def on_progress(self, update) -> None:
        await self.engine.log_progress(update)

    async def on_retry(
        self, context: ExecutionContext, attempt: int, error: BaseException, delay_ms: int
    ) -> None:
        self._retries[context.execution_id] = self._retries.get(context.execution_id, 0) + 1
        logger.debug(
            "Execution %s retry %d scheduled in %dms", context.execution_id, attempt, delay_ms
        )

    async def on_task_completed(
        self,
        context: ExecutionContext,
        result: ExecutionResult,
        contract: DelegationContract | None,
    ) -> None:
        contract_id = self._contract_id(context, contract)
        metrics = self._metrics(context, result, contract_id)
        await self.engine.log_task_completed(contract_id, result, metrics)

    async def on_task_failed(
        self,
        context: ExecutionContext,
        result: ExecutionResult,
        contract: DelegationContract | None,
    ) -> None:
        contract_id = self._contract_id(context, contract)
        metrics = self._metrics(context, result, contract_id)
        error = result.error or ErrorInfo(code="UnknownError", message="execution failed")
        await self.engine.log_task_failed(contract_id, result.execution_id, error, metrics)

    async def on_shutdown(self, interrupted: list[ExecutionContext]) -> None:
        for context in interrupted:
            contract_id = context.contract_id or context.execution_id
            logger.info(
                "Execution %s for %s interrupted by shutdown", context.execution_id, contract_id
            )
        for pending in (
            self._received, self._negotiation_ms, self._confidence, self._started, self._retries
        ):
            pending.clear()
        await self.engine.close()

    # ── Metrics ────────────────────────────────────────────────────────────

    def _metrics(
        self, context: ExecutionContext, result: ExecutionResult, contract_id: str
    ) -> PerformanceMetrics:
        now = time.monotonic()
        started = self._started.pop(context.execution_id, None)
        retries = self._retries.pop(context.execution_id, max(0, context.attempts - 1))
        received = self._received.pop(contract_id, None)
        negotiation_ms = self._negotiation_ms.pop(contract_id, 0.0)
        confidence = self._confidence.pop(contract_id, 0.0)

        execution_ms = result.metrics.execution_time_ms
        since_start = _ms_since(started, now)
        usage = context.resource_usage
        return PerformanceMetrics(
            negotiation_time_ms=negotiation_ms,
            execution_time_ms=execution_ms,
            verification_time_ms=max(0.0, since_start - execution_ms),
            total_lifecycle_time_ms=_ms_since(received if received is not None else started, now),
            resource_utilization=ResourceUtilization(
                peak_memory_mb=usage.memory_mb,
                cpu_time_ms=usage.cpu_time_ms,
                network_calls=usage.network_calls,
                disk_io_bytes=usage.disk_io_bytes,
            ),
            quality_metrics=QualityMetrics(
                success_rate=1.0 if result.success else 0.0,
                verification_score=(
                    result.verification.quality_score if result.verification else 0.0
                ),
                confidence_level=confidence,
                retry_count=retries,
            ),
        )
