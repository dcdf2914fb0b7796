"""
Agent Runtime — One Agent's Delegation Lifecycle

Ties together the pieces an agent needs to take part in delegation:

    negotiate   contract -> AdmissionEngine -> accepted | rejected
    execute     accepted contract -> ExecutionEngine (timeout/retry) -> verify
    learn       task history -> reputation + capability self-assessment

Collaborators are passed in explicitly; nothing here is a global.
Listeners are awaited in causal order for each contract.

Usage:
    runtime = AgentRuntime(config, registry, handler=my_task_body)
    runtime.add_listener(TelemetryBridge(telemetry))
    outcome = await runtime.delegate(contract)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from delegator.admission.engine import AdmissionEngine, AgentState
from delegator.admission.estimator import DurationEstimator, estimate_task_duration
from delegator.admission.reputation import TaskHistory
from delegator.config import RuntimeConfig
from delegator.errors import (
    ExecutionError,
    ExecutionFailure,
    ExecutionTimeout,
    InvalidTransitionError,
    ResourceUnavailableError,
    ShutdownInterrupt,
    ValidationError,
)
from delegator.execution.assessment import CapabilityAssessment, CapabilityAssessor
from delegator.execution.checkpoints import Phase, ProgressUpdate
from delegator.execution.engine import ExecutionEngine, TaskBody
from delegator.execution.retry import should_retry
from delegator.models.capabilities import CapabilityManifest
from delegator.models.contracts import (
    AcceptanceDecision,
    ContractStatus,
    DelegationContract,
    VerificationPolicy,
)
from delegator.models.execution import (
    ErrorInfo,
    ExecutionContext,
    ExecutionMetrics,
    ExecutionResult,
    ExecutionStatus,
    TaskRecord,
    VerificationResult,
)
from delegator.registry.capability_registry import CapabilityRegistry
from delegator.registry.matchers import TaskMatcher
from delegator.runtime.listeners import RuntimeListener

logger = logging.getLogger(__name__)

VerificationFormatter = Callable[[ExecutionResult, "DelegationContract | None"], Mapping[str, str]]


@dataclass
class DelegationOutcome:
    """Admission decision plus, when accepted, the execution result."""

    decision: AcceptanceDecision
    result: ExecutionResult | None = None

    @property
    def accepted(self) -> bool:
        return self.decision.can_accept

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.to_dict(),
            "result": self.result.to_dict() if self.result else None,
        }


class AgentRuntime:
    """Runtime for a single agent."""

    VERIFIED_QUALITY = 0.85

    def __init__(
        self,
        config: RuntimeConfig,
        registry: CapabilityRegistry,
        handler: TaskBody,
        manifest: CapabilityManifest | None = None,
        matcher: TaskMatcher | None = None,
        estimator: DurationEstimator = estimate_task_duration,
        verification_formatter: VerificationFormatter | None = None,
        listeners: Iterable[RuntimeListener] = (),
    ) -> None:
        self.config = config
        self.agent_id = config.agent_id
        self.registry = registry
        self.handler = handler
        self.verification_formatter = verification_formatter

        if manifest is not None:
            if manifest.agent_id != self.agent_id:
                raise ValidationError(
                    f"Manifest agent {manifest.agent_id} does not match runtime {self.agent_id}"
                )
            registry.register_manifest(manifest)

        self.history = TaskHistory(config.task_history_size)
        self.admission = AdmissionEngine(registry, estimator, config.default_timeout_ms)
        self.engine = ExecutionEngine(config.default_timeout_ms)
        self.assessor = CapabilityAssessor(
            registry, self.agent_id, self.history, matcher, config.assessment
        )
        self._listeners: list[RuntimeListener] = list(listeners)
        self._in_flight: dict[str, tuple[ExecutionContext, DelegationContract | None]] = {}

    # ── Listeners ──────────────────────────────────────────────────────────

    def add_listener(self, listener: RuntimeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RuntimeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                await getattr(listener, hook)(*args)
            except Exception:
                logger.warning(
                    "Runtime listener %s failed in %s", type(listener).__name__, hook, exc_info=True
                )

    async def _on_progress(self, update: ProgressUpdate) -> None:
        await self._notify("on_progress", update)

    async def _on_retry(
        self, context: ExecutionContext, attempt: int, error: BaseException, delay_ms: int
    ) -> None:
        await self._notify("on_retry", context, attempt, error, delay_ms)

    # ── State ──────────────────────────────────────────────────────────────

    def max_concurrent_tasks(self) -> int:
        """The manifest's limit when registered, else the configured one."""
        manifest = self.registry.get_manifest(self.agent_id)
        if manifest is not None:
            return manifest.max_concurrent_tasks
        return self.config.max_concurrent_tasks

    def agent_state(self) -> AgentState:
        return AgentState(
            agent_id=self.agent_id,
            max_concurrent_tasks=self.max_concurrent_tasks(),
            resource_limits=self.config.resource_limits,
            reputation=self.history.snapshot(),
        )

    @property
    def in_flight(self) -> list[ExecutionContext]:
        return [context for context, _ in self._in_flight.values()]

    def agent_info(self) -> dict[str, Any]:
        manifest = self.registry.get_manifest(self.agent_id)
        return {
            "agent_id": self.agent_id,
            "agent_name": self.config.agent_name,
            "availability": str(manifest.availability) if manifest else None,
            "overall_confidence": manifest.overall_confidence if manifest else None,
            "current_workload": manifest.current_workload if manifest else len(self._in_flight),
            "max_concurrent_tasks": self.max_concurrent_tasks(),
            "reputation": self.history.snapshot().to_dict(),
            "specializations": list(manifest.specializations) if manifest else [],
        }

    # ── Negotiation ────────────────────────────────────────────────────────

    def evaluate_contract(self, contract: DelegationContract) -> AcceptanceDecision:
        """Admission decision with no side effects."""
        return self.admission.evaluate(contract, self.agent_state())

    async def negotiate(self, contract: DelegationContract) -> AcceptanceDecision:
        """Decide on a pending contract and move it to accepted or rejected."""
        self._validate_contract(contract)
        if contract.status != ContractStatus.PENDING:
            raise InvalidTransitionError("contract", contract.status, ContractStatus.ACCEPTED)

        await self._notify("on_contract_received", contract)
        decision = self.evaluate_contract(contract)
        if decision.can_accept:
            contract.transition(ContractStatus.ACCEPTED)
            await self._notify("on_contract_accepted", contract, decision)
        else:
            contract.transition(ContractStatus.REJECTED)
            await self._notify("on_contract_rejected", contract, decision)
        return decision

    async def execute_contract(self, contract: DelegationContract) -> ExecutionResult:
        if contract.status != ContractStatus.ACCEPTED:
            raise InvalidTransitionError("contract", contract.status, ContractStatus.ACTIVE)
        return await self.execute_task(
            contract.task_description,
            parameters=contract.metadata.extra.get("parameters"),
            contract=contract,
        )

    async def delegate(self, contract: DelegationContract) -> DelegationOutcome:
        """Negotiate, then execute if accepted.

        Raises:
            ExecutionError: the contract was accepted but execution failed
        """
        decision = await self.negotiate(contract)
        if not decision.can_accept:
            return DelegationOutcome(decision)
        result = await self.execute_contract(contract)
        return DelegationOutcome(decision, result)

    def _validate_contract(self, contract: DelegationContract) -> None:
        if contract.delegatee_agent_id != self.agent_id:
            raise ValidationError(
                f"Contract {contract.contract_id} is addressed to "
                f"{contract.delegatee_agent_id}, not {self.agent_id}"
            )

    # ── Execution ──────────────────────────────────────────────────────────

    async def execute_task(
        self,
        description: str,
        parameters: Mapping[str, Any] | None = None,
        contract: DelegationContract | None = None,
        capability_ids: Iterable[str] | None = None,
    ) -> ExecutionResult:
        """Run one task through the execution engine.

        Raises:
            ResourceUnavailableError: no free concurrency slot
            ExecutionTimeout: the final attempt timed out
            ExecutionFailure: the task body failed; ``original`` holds its error
            ShutdownInterrupt: the runtime shut down mid-task
        """
        if contract is not None:
            self._validate_contract(contract)
        if self.engine.is_closing:
            raise ShutdownInterrupt("Runtime is shut down")
        if len(self._in_flight) >= self.max_concurrent_tasks():
            raise ResourceUnavailableError("Maximum concurrent task limit reached")

        if capability_ids is None and contract is not None:
            capability_ids = [r.capability_id for r in contract.required_capabilities]
        context = ExecutionContext(
            task_description=description,
            parameters=dict(parameters or {}),
            contract_id=contract.contract_id if contract else None,
            capability_ids=list(capability_ids or []),
        )
        self._in_flight[context.execution_id] = (context, contract)
        self._adjust_workload(+1)
        try:
            if contract is not None and contract.status == ContractStatus.ACCEPTED:
                contract.transition(ContractStatus.ACTIVE)
            await self._notify("on_task_started", context, contract)

            timeout_ms = (contract.timeout_ms if contract else None) or self.config.default_timeout_ms
            try:
                output = await self.engine.run(
                    context,
                    self.handler,
                    timeout_ms=timeout_ms,
                    retry_policy=contract.retry_policy if contract else None,
                    on_progress=self._on_progress,
                    on_retry=self._on_retry,
                )
            except ShutdownInterrupt as exc:
                exc.result = ExecutionResult(
                    execution_id=context.execution_id,
                    success=False,
                    error=ErrorInfo.from_exception(exc),
                    status=context.status,
                    metrics=self._metrics(context),
                )
                raise
            except Exception as exc:
                error = await self._handle_failure(context, contract, exc)
                if error is exc:
                    raise
                raise error from exc
            return await self._handle_success(context, contract, output)
        finally:
            self._in_flight.pop(context.execution_id, None)
            self._adjust_workload(-1)

    async def _handle_success(
        self, context: ExecutionContext, contract: DelegationContract | None, output: Any
    ) -> ExecutionResult:
        result = ExecutionResult(
            execution_id=context.execution_id,
            success=True,
            output=output,
            status=ExecutionStatus.COMPLETED,
            metrics=self._metrics(context),
        )
        report = self.engine.reporter(context, self._on_progress)
        result.verification = self._verify(True, contract)
        if result.verification is not None:
            await report(0.5, Phase.VERIFICATION, "output validated")
            await report(1.0, Phase.VERIFICATION, "verification complete")
        self._render(result, contract)
        await report(1.0, Phase.COMPLETION, "delegation finalized")

        if contract is not None:
            contract.transition(ContractStatus.COMPLETED)
        await self._learn(context, result)
        await self._notify("on_task_completed", context, result, contract)
        await self._reassess()
        return result

    async def _handle_failure(
        self,
        context: ExecutionContext,
        contract: DelegationContract | None,
        exc: Exception,
    ) -> ExecutionError:
        """Record a failed execution and build the exception to raise."""
        policy = contract.retry_policy if contract else None
        timed_out = isinstance(exc, ExecutionTimeout)
        result = ExecutionResult(
            execution_id=context.execution_id,
            success=False,
            error=ErrorInfo.from_exception(exc, retryable=should_retry(exc, policy)),
            status=ExecutionStatus.TIMEOUT if timed_out else ExecutionStatus.FAILED,
            metrics=self._metrics(context),
            verification=self._verify(False, contract),
        )
        self._render(result, contract)
        if contract is not None:
            contract.transition(ContractStatus.TIMEOUT if timed_out else ContractStatus.FAILED)
        await self._learn(context, result)
        await self._notify("on_task_failed", context, result, contract)
        await self._reassess()

        logger.warning(
            "Execution %s failed after %d attempt(s): %s", context.execution_id, context.attempts, exc
        )
        if isinstance(exc, ExecutionError):
            exc.result = result
            return exc
        return ExecutionFailure(f"Task execution failed: {exc}", original=exc, result=result)

    def _metrics(self, context: ExecutionContext) -> ExecutionMetrics:
        usage = context.resource_usage
        return ExecutionMetrics(
            execution_time_ms=context.elapsed_ms,
            memory_used_mb=usage.memory_mb,
            network_requests=usage.network_calls,
            attempts=max(1, context.attempts),
        )

    def _verify(
        self, success: bool, contract: DelegationContract | None
    ) -> VerificationResult | None:
        policy = contract.verification_policy if contract else VerificationPolicy.DIRECT_INSPECTION
        if policy == VerificationPolicy.NONE:
            return None
        quality = self.VERIFIED_QUALITY if success else 0.0
        findings = ["Task completed successfully", "Output validated"] if success else [
            "Task execution failed"
        ]
        verified = success
        threshold = contract.success_criteria.quality_threshold if contract else None
        if success and threshold is not None and quality < threshold:
            verified = False
            findings.append(f"Quality {quality:.2f} below required {threshold:.2f}")
        return VerificationResult(
            verified=verified, method=policy, quality_score=quality, findings=findings
        )

    def _render(self, result: ExecutionResult, contract: DelegationContract | None) -> None:
        if self.verification_formatter is None:
            return
        try:
            result.rendered = dict(self.verification_formatter(result, contract))
        except Exception:
            logger.warning("Verification formatter failed for %s", result.execution_id, exc_info=True)

    async def _learn(self, context: ExecutionContext, result: ExecutionResult) -> None:
        record = TaskRecord(
            execution_id=context.execution_id,
            task_description=context.task_description,
            success=result.success,
            duration_ms=result.metrics.execution_time_ms,
            capability_ids=tuple(context.capability_ids),
            quality_score=result.verification.quality_score if result.verification else None,
            contract_id=context.contract_id,
        )
        self.history.record(record)
        self.assessor.record_execution(record)

    async def _reassess(self) -> None:
        await self.assess_capabilities()

    async def assess_capabilities(
        self, capability_ids: Iterable[str] | None = None
    ) -> list[CapabilityAssessment]:
        """Run self-assessment and notify listeners of applied changes."""
        assessments = self.assessor.assess(capability_ids)
        for assessment in assessments:
            if assessment.applied:
                change = self.assessor.confidence_history(assessment.capability_id)[-1]
                await self._notify("on_confidence_updated", self.agent_id, change)
        return assessments

    def _adjust_workload(self, delta: int) -> None:
        if self.agent_id not in self.registry:
            return
        if delta > 0:
            self.registry.increment_workload(self.agent_id)
        else:
            self.registry.decrement_workload(self.agent_id)

    # ── Shutdown ───────────────────────────────────────────────────────────

    async def shutdown(self) -> list[ExecutionContext]:
        """Mark in-flight work failed, stop retries, and notify listeners."""
        interrupted = self.engine.shutdown()
        for context, contract in list(self._in_flight.values()):
            if contract is None or contract.is_terminal:
                continue
            if contract.can_transition(ContractStatus.FAILED):
                contract.transition(ContractStatus.FAILED)
            else:
                contract.transition(ContractStatus.CANCELLED)
        await self._notify("on_shutdown", interrupted)
        return interrupted
