"""
Tests for the agent runtime.

Covers: negotiation, execution, failure and timeout reporting, listener
order, workload bookkeeping, concurrency limits, verification, learning
and shutdown.
"""

import asyncio

import pytest

from conftest import make_capability, make_contract, make_manifest
from delegator.config import RuntimeConfig
from delegator.errors import (
    ExecutionFailure,
    ExecutionTimeout,
    InvalidTransitionError,
    ResourceUnavailableError,
    ShutdownInterrupt,
    ValidationError,
)
from delegator.execution.assessment import AssessmentPolicy
from delegator.models.contracts import (
    ContractMetadata,
    ContractStatus,
    RequiredCapability,
    RetryPolicy,
    SuccessCriteria,
    VerificationPolicy,
)
from delegator.models.execution import ExecutionStatus
from delegator.registry.capability_registry import CapabilityRegistry
from delegator.runtime import AgentRuntime, RuntimeListener, simulated_handler

pytestmark = pytest.mark.anyio


class Recorder(RuntimeListener):
    def __init__(self):
        self.calls = []
        self.results = []
        self.changes = []
        self.interrupted = None

    async def on_contract_received(self, contract):
        self.calls.append("received")

    async def on_contract_accepted(self, contract, decision):
        self.calls.append("accepted")

    async def on_contract_rejected(self, contract, decision):
        self.calls.append("rejected")

    async def on_task_started(self, context, contract):
        self.calls.append("started")

    async def on_progress(self, update):
        self.calls.append(f"progress:{update.phase}")

    async def on_retry(self, context, attempt, error, delay_ms):
        self.calls.append(f"retry:{attempt}")

    async def on_task_completed(self, context, result, contract):
        self.calls.append("completed")
        self.results.append(result)

    async def on_task_failed(self, context, result, contract):
        self.calls.append("failed")
        self.results.append(result)

    async def on_confidence_updated(self, agent_id, change):
        self.changes.append((agent_id, change))

    async def on_shutdown(self, interrupted):
        self.interrupted = interrupted


def _runtime(registry, handler=None, config=None, **kwargs):
    return AgentRuntime(
        config or RuntimeConfig(agent_id="agent-a"),
        registry,
        handler or simulated_handler(steps=2, step_delay_s=0),
        **kwargs,
    )


def _gated_handler(started, release):
    async def body(context, report):
        started.set()
        await release.wait()
        return "released"

    return body


# ═══════════════════════════════════════════════════════════════════════════
# NEGOTIATION
# ═══════════════════════════════════════════════════════════════════════════


class TestNegotiation:
    async def test_accept(self, registry):
        recorder = Recorder()
        runtime = _runtime(registry, listeners=[recorder])
        contract = make_contract()
        decision = await runtime.negotiate(contract)
        assert decision.can_accept
        assert contract.status == ContractStatus.ACCEPTED
        assert recorder.calls == ["received", "accepted"]

    async def test_reject(self, registry):
        recorder = Recorder()
        runtime = _runtime(registry, listeners=[recorder])
        contract = make_contract(timeout_ms=50, task_description="z" * 200)
        outcome = await runtime.delegate(contract)
        assert not outcome.accepted
        assert outcome.result is None
        assert "timeout" in outcome.decision.reason
        assert contract.status == ContractStatus.REJECTED
        assert recorder.calls == ["received", "rejected"]

    async def test_saturated_manifest_rejects(self, registry):
        registry.register_manifest(make_manifest("agent-a", current_workload=5,
                                                 max_concurrent_tasks=5))
        decision = await _runtime(registry).negotiate(make_contract())
        assert "maximum concurrent" in decision.reason

    async def test_wrong_delegatee(self, registry):
        runtime = _runtime(registry)
        with pytest.raises(ValidationError, match="addressed to agent-b"):
            await runtime.negotiate(make_contract(delegatee_agent_id="agent-b"))

    async def test_only_pending_contracts(self, registry):
        runtime = _runtime(registry)
        contract = make_contract()
        await runtime.negotiate(contract)
        with pytest.raises(InvalidTransitionError):
            await runtime.negotiate(contract)

    async def test_evaluate_has_no_side_effects(self, registry):
        recorder = Recorder()
        runtime = _runtime(registry, listeners=[recorder])
        contract = make_contract()
        assert runtime.evaluate_contract(contract).can_accept
        assert contract.status == ContractStatus.PENDING
        assert recorder.calls == []

    async def test_execute_requires_acceptance(self, registry):
        with pytest.raises(InvalidTransitionError):
            await _runtime(registry).execute_contract(make_contract())

    def test_manifest_must_match_agent(self, registry):
        with pytest.raises(ValidationError):
            _runtime(registry, manifest=make_manifest("agent-z"))

    def test_manifest_is_registered(self):
        registry = CapabilityRegistry()
        runtime = _runtime(registry, manifest=make_manifest("agent-a"))
        assert "agent-a" in registry
        assert runtime.agent_info()["overall_confidence"] == pytest.approx(0.85)


# ═══════════════════════════════════════════════════════════════════════════
# EXECUTION
# ═══════════════════════════════════════════════════════════════════════════


class TestExecution:
    async def test_successful_delegation(self, registry):
        recorder = Recorder()
        runtime = _runtime(registry, listeners=[recorder])
        contract = make_contract(
            metadata=ContractMetadata(extra={"parameters": {"language": "python"}})
        )
        outcome = await runtime.delegate(contract)

        assert outcome.accepted
        result = outcome.result
        assert result.success
        assert result.status == ExecutionStatus.COMPLETED
        assert result.output["parameters"] == {"language": "python"}
        assert result.metrics.attempts == 1
        assert result.verification.verified
        assert result.verification.quality_score == 0.85
        assert result.verification.findings == ["Task completed successfully", "Output validated"]
        assert contract.status == ContractStatus.COMPLETED
        assert recorder.calls == [
            "received",
            "accepted",
            "started",
            "progress:execution",
            "progress:execution",
            "progress:verification",
            "progress:verification",
            "progress:completion",
            "completed",
        ]

    async def test_workload_restored(self, registry):
        runtime = _runtime(registry)
        await runtime.delegate(make_contract())
        assert registry.get_workload("agent-a") == 0
        assert runtime.in_flight == []

    async def test_history_and_reputation(self, registry):
        runtime = _runtime(registry)
        await runtime.delegate(make_contract())
        assert len(runtime.history) == 1
        snapshot = runtime.history.snapshot()
        assert snapshot.tasks_completed == 1
        assert snapshot.score == pytest.approx(0.7 + 0.3 * 0.85)

    async def test_failure_raises_execution_failure(self, registry):
        recorder = Recorder()
        handler = simulated_handler(steps=2, step_delay_s=0, fail_with=RuntimeError("boom"))
        runtime = _runtime(registry, handler=handler, listeners=[recorder])
        contract = make_contract()

        with pytest.raises(ExecutionFailure) as info:
            await runtime.delegate(contract)
        error = info.value
        assert isinstance(error.original, RuntimeError)
        assert "Task execution failed: boom" in str(error)
        assert error.result.success is False
        assert error.result.status == ExecutionStatus.FAILED
        assert error.result.error.code == "RuntimeError"
        assert error.result.verification.findings == ["Task execution failed"]
        assert contract.status == ContractStatus.FAILED
        assert recorder.calls[-1] == "failed"
        assert registry.get_workload("agent-a") == 0
        assert runtime.history.snapshot().consecutive_failures == 1

    async def test_timeout_raises_execution_timeout(self, registry):
        handler = simulated_handler(steps=1, step_delay_s=1)
        runtime = _runtime(registry, handler=handler, estimator=lambda description: 1)
        contract = make_contract(timeout_ms=20)

        with pytest.raises(ExecutionTimeout) as info:
            await runtime.delegate(contract)
        assert info.value.result.status == ExecutionStatus.TIMEOUT
        assert info.value.result.error.retryable is True
        assert contract.status == ContractStatus.TIMEOUT

    async def test_retry_notified(self, registry):
        recorder = Recorder()
        attempts = []

        async def flaky(context, report):
            attempts.append(context.attempts)
            if len(attempts) < 2:
                raise ConnectionError("connection reset")
            return "ok"

        runtime = _runtime(registry, handler=flaky, listeners=[recorder])
        contract = make_contract(retry_policy=RetryPolicy(max_retries=2, initial_delay_ms=0))
        outcome = await runtime.delegate(contract)
        assert outcome.result.output == "ok"
        assert outcome.result.metrics.attempts == 2
        assert "retry:2" in recorder.calls

    async def test_task_without_contract(self, registry):
        runtime = _runtime(registry)
        result = await runtime.execute_task(
            "Summarize", parameters={"n": 1}, capability_ids=["code_generation"]
        )
        assert result.success
        assert result.output["task"] == "Summarize"
        assert runtime.history.recent(1)[0].capability_ids == ("code_generation",)

    async def test_unregistered_agent_runs(self, registry):
        runtime = _runtime(registry, config=RuntimeConfig(agent_id="solo"))
        result = await runtime.execute_task("Standalone work")
        assert result.success
        assert "solo" not in registry

    async def test_concurrency_limit(self, registry):
        registry.register_manifest(make_manifest("agent-a", max_concurrent_tasks=1))
        started, release = asyncio.Event(), asyncio.Event()
        runtime = _runtime(registry, handler=_gated_handler(started, release))

        first = asyncio.create_task(runtime.execute_task("first"))
        await started.wait()
        assert registry.get_workload("agent-a") == 1
        with pytest.raises(ResourceUnavailableError, match="Maximum concurrent task limit"):
            await runtime.execute_task("second")
        release.set()
        assert (await first).output == "released"
        assert registry.get_workload("agent-a") == 0

    async def test_failing_listener_is_isolated(self, registry):
        class Broken(RuntimeListener):
            async def on_task_started(self, context, contract):
                raise RuntimeError("listener down")

        recorder = Recorder()
        runtime = _runtime(registry, listeners=[Broken(), recorder])
        outcome = await runtime.delegate(make_contract())
        assert outcome.result.success
        assert "completed" in recorder.calls

    async def test_remove_listener(self, registry):
        recorder = Recorder()
        runtime = _runtime(registry, listeners=[recorder])
        runtime.remove_listener(recorder)
        await runtime.delegate(make_contract())
        assert recorder.calls == []


# ═══════════════════════════════════════════════════════════════════════════
# VERIFICATION & LEARNING
# ═══════════════════════════════════════════════════════════════════════════


class TestVerification:
    async def test_no_verification(self, registry):
        recorder = Recorder()
        runtime = _runtime(registry, listeners=[recorder])
        contract = make_contract(verification_policy=VerificationPolicy.NONE)
        outcome = await runtime.delegate(contract)
        assert outcome.result.verification is None
        assert "progress:verification" not in recorder.calls

    async def test_quality_threshold(self, registry):
        contract = make_contract(success_criteria=SuccessCriteria(quality_threshold=0.9))
        outcome = await _runtime(registry).delegate(contract)
        verification = outcome.result.verification
        assert verification.verified is False
        assert "Quality 0.85 below required 0.90" in verification.findings
        assert outcome.result.success

    async def test_formatter(self, registry):
        def formatter(result, contract):
            return {"text": f"{contract.contract_id}: {result.status}"}

        runtime = _runtime(registry, verification_formatter=formatter)
        outcome = await runtime.delegate(make_contract())
        assert outcome.result.rendered == {"text": "contract-1: completed"}

    async def test_failing_formatter_ignored(self, registry):
        def formatter(result, contract):
            raise KeyError("template")

        runtime = _runtime(registry, verification_formatter=formatter)
        outcome = await runtime.delegate(make_contract())
        assert outcome.result.success
        assert outcome.result.rendered == {}


class TestLearning:
    async def test_confidence_update_notified(self):
        registry = CapabilityRegistry()
        recorder = Recorder()
        config = RuntimeConfig(
            agent_id="agent-a", assessment=AssessmentPolicy(update_threshold=0.04)
        )
        runtime = _runtime(
            registry,
            config=config,
            manifest=make_manifest("agent-a", make_capability(confidence_level=0.5)),
            listeners=[recorder],
        )
        contract = make_contract(required_capabilities=[RequiredCapability("code_generation")])
        await runtime.delegate(contract)

        cap = registry.get_manifest("agent-a").get_capability("code_generation")
        assert cap.confidence_level == pytest.approx(0.55)
        assert cap.successful_completions == 101
        [(agent_id, change)] = recorder.changes
        assert agent_id == "agent-a"
        assert change.current == pytest.approx(0.55)


# ═══════════════════════════════════════════════════════════════════════════
# SHUTDOWN
# ═══════════════════════════════════════════════════════════════════════════


class TestShutdown:
    async def test_shutdown_interrupts_in_flight(self, registry):
        recorder = Recorder()
        started, release = asyncio.Event(), asyncio.Event()
        runtime = _runtime(registry, handler=_gated_handler(started, release),
                           listeners=[recorder])
        contract = make_contract()
        await runtime.negotiate(contract)
        task = asyncio.create_task(runtime.execute_contract(contract))
        await started.wait()

        interrupted = await runtime.shutdown()
        assert len(interrupted) == 1
        assert interrupted[0].status == ExecutionStatus.FAILED
        assert recorder.interrupted == interrupted
        assert contract.status == ContractStatus.FAILED

        release.set()
        with pytest.raises(ShutdownInterrupt) as info:
            await task
        assert info.value.result.success is False
        assert "completed" not in recorder.calls
        assert "failed" not in recorder.calls
        assert registry.get_workload("agent-a") == 0

    async def test_no_work_after_shutdown(self, registry):
        runtime = _runtime(registry)
        await runtime.shutdown()
        with pytest.raises(ShutdownInterrupt):
            await runtime.execute_task("late")
