"""
Tests for contract admission.

Covers: gate order, each rejection reason, acceptance confidence,
duration estimation and reputation tracking.
"""

from datetime import timedelta

import pytest

from conftest import make_capability, make_contract, make_manifest
from delegator.admission.engine import AdmissionEngine, AgentState, ResourceLimits
from delegator.admission.estimator import estimate_task_duration
from delegator.admission.reputation import ReputationSnapshot, TaskHistory
from delegator.models.capabilities import ResourceRequirements, TLPLevel, utcnow
from delegator.models.contracts import (
    AdmissionGate,
    ContractMetadata,
    HumanReviewFirebreak,
    MaxDepthFirebreak,
    PermissionToken,
    RequiredCapability,
    ReputationRequirements,
    TLPEscalationFirebreak,
)
from delegator.models.execution import TaskRecord


@pytest.fixture
def engine(registry):
    return AdmissionEngine(registry)


@pytest.fixture
def state():
    return AgentState(agent_id="agent-a")


# ═══════════════════════════════════════════════════════════════════════════
# ACCEPTANCE
# ═══════════════════════════════════════════════════════════════════════════


class TestAcceptance:
    def test_accepts_plain_contract(self, engine, state):
        decision = engine.evaluate(make_contract(), state)
        assert decision.can_accept
        assert decision.reason == "All admission checks passed"
        assert decision.gate is None
        # 0.30 * 0.8 + 0.20 + 0.20 + 0.15 + 0.15
        assert decision.confidence == pytest.approx(0.94)
        assert decision.estimated_completion_ms == estimate_task_duration("Write a parser")

    def test_capability_match_uses_held_confidence(self, engine, state):
        contract = make_contract(required_capabilities=[RequiredCapability("code_generation")])
        decision = engine.evaluate(contract, state)
        assert decision.assessment.capability_match == pytest.approx(0.85)
        assert decision.confidence == pytest.approx(0.955)

    def test_complexity_penalty(self, engine, state):
        contract = make_contract(metadata=ContractMetadata(estimated_complexity=8))
        assert engine.evaluate(contract, state).confidence == pytest.approx(0.94 * 0.9)

    def test_timing_ratio_penalty(self, engine, state):
        contract = make_contract(timeout_ms=7000)
        estimated = estimate_task_duration(contract.task_description)
        expected = 0.94 * (1 - (estimated / 7000 - 0.8) * 2)
        assert engine.evaluate(contract, state).confidence == pytest.approx(expected)

    def test_workload_capacity(self, engine):
        decision = engine.evaluate(make_contract(), AgentState("agent-a", current_workload=1))
        assert decision.assessment.workload_capacity == pytest.approx(0.8)

    def test_resource_availability(self, engine, state):
        contract = make_contract(resource_requirements=ResourceRequirements(memory_mb=1024))
        decision = engine.evaluate(contract, state)
        assert decision.can_accept
        assert decision.assessment.resource_availability == pytest.approx(0.75)

    def test_default_timeout_applies(self, registry, state):
        engine = AdmissionEngine(registry, default_timeout_ms=1000)
        decision = engine.evaluate(make_contract(timeout_ms=None), state)
        assert decision.gate == AdmissionGate.TIMEOUT
        assert "limit: 1000ms" in decision.reason

    def test_custom_estimator(self, registry, state):
        engine = AdmissionEngine(registry, estimator=lambda description: 42)
        assert engine.evaluate(make_contract(), state).estimated_completion_ms == 42

    def test_decision_document(self, engine, state):
        doc = engine.evaluate(make_contract(), state).to_dict()
        assert doc["can_accept"] is True
        assert doc["gate"] is None
        assert set(doc["assessment"]) == {
            "capability_match",
            "resource_availability",
            "workload_capacity",
            "reputation_compliance",
            "firebreak_compliance",
        }


# ═══════════════════════════════════════════════════════════════════════════
# REJECTION GATES
# ═══════════════════════════════════════════════════════════════════════════


class TestRejection:
    def test_short_timeout_long_description(self, engine, state):
        contract = make_contract(timeout_ms=50, task_description="x" * 200)
        decision = engine.evaluate(contract, state)
        assert not decision.can_accept
        assert "timeout" in decision.reason
        assert decision.reason == "Task may exceed timeout (estimated: 15000ms, limit: 50ms)"
        assert decision.confidence == 0.0

    def test_depth_firebreak(self, engine, state):
        contract = make_contract(
            firebreaks=[MaxDepthFirebreak(threshold=3)],
            metadata=ContractMetadata(delegation_depth=5),
        )
        decision = engine.evaluate(contract, state)
        assert decision.can_accept is False
        assert "depth" in decision.reason
        assert decision.reason == (
            "Firebreak violation: Delegation depth 5 exceeds firebreak limit 3"
        )
        assert decision.firebreak_violation is not None
        assert decision.firebreak_violation.actual == 5

    def test_saturated_agent(self, registry, engine, state):
        registry.register_manifest(make_manifest("agent-a", current_workload=5,
                                                 max_concurrent_tasks=5))
        decision = engine.evaluate(make_contract(), state)
        assert not decision.can_accept
        assert "maximum concurrent" in decision.reason
        assert decision.gate == AdmissionGate.CONCURRENCY

    def test_state_overrides_manifest_workload(self, engine):
        decision = engine.evaluate(
            make_contract(), AgentState("agent-a", current_workload=2, max_concurrent_tasks=2)
        )
        assert decision.reason == "Agent at maximum concurrent tasks (2/2)"

    def test_concurrency_checked_before_reputation(self, engine):
        contract = make_contract(
            reputation_requirements=ReputationRequirements(min_tasks_completed=10)
        )
        decision = engine.evaluate(contract, AgentState("agent-a", current_workload=5))
        assert decision.gate == AdmissionGate.CONCURRENCY

    def test_reputation(self, engine, state):
        contract = make_contract(
            reputation_requirements=ReputationRequirements(
                min_tasks_completed=10, required_specializations=["compilers"]
            )
        )
        decision = engine.evaluate(contract, state)
        assert decision.gate == AdmissionGate.REPUTATION
        assert decision.reason.startswith("Reputation requirements not met: ")
        assert "0 tasks completed, 10 required" in decision.reason
        assert "missing specializations: compilers" in decision.reason

    def test_reputation_score_and_failures(self, engine):
        contract = make_contract(
            reputation_requirements=ReputationRequirements(
                min_security_score=0.8, max_consecutive_failures=1
            )
        )
        reputation = ReputationSnapshot(score=0.9, consecutive_failures=3)
        decision = engine.evaluate(contract, AgentState("agent-a", reputation=reputation))
        assert "3 consecutive failures exceeds limit 1" in decision.reason
        assert "reputation" not in decision.reason.split(": ", 1)[1]

    def test_manifest_confidence_requirement(self, engine, state):
        contract = make_contract(
            reputation_requirements=ReputationRequirements(min_confidence_score=0.9)
        )
        decision = engine.evaluate(contract, state)
        assert "confidence 0.85 below required 0.90" in decision.reason

    def test_expired_permission_token(self, engine, state):
        token = PermissionToken(
            token_id="tok",
            scopes=["repo"],
            actions=["read"],
            resources=["src/"],
            expires_at=utcnow() - timedelta(minutes=1),
        )
        decision = engine.evaluate(make_contract(permission_token=token), state)
        assert decision.gate == AdmissionGate.PERMISSION
        assert decision.reason == "Permission validation failed: Permission token expired"

    def test_empty_permission_token(self, engine, state):
        decision = engine.evaluate(make_contract(permission_token=PermissionToken("tok")), state)
        assert decision.reason == (
            "Permission validation failed: No permission scopes granted; "
            "No permitted actions specified; No permitted resources specified"
        )

    def test_tlp_firebreak(self, engine, state):
        contract = make_contract(
            tlp_classification=TLPLevel.RED,
            firebreaks=[TLPEscalationFirebreak(max_level=TLPLevel.GREEN)],
        )
        decision = engine.evaluate(contract, state)
        assert decision.gate == AdmissionGate.FIREBREAK
        assert "TLP escalation" in decision.reason

    def test_human_review_blocks(self, engine, state):
        decision = engine.evaluate(make_contract(firebreaks=[HumanReviewFirebreak()]), state)
        assert decision.reason == (
            "Firebreak violation: Human review firebreak requires manual approval"
        )

    def test_insufficient_memory(self, engine, state):
        contract = make_contract(resource_requirements=ResourceRequirements(memory_mb=8192))
        decision = engine.evaluate(contract, state)
        assert decision.gate == AdmissionGate.RESOURCES
        assert decision.reason == (
            "Insufficient resources: memory 8192MB requested, 4096MB available"
        )

    def test_unlimited_resource(self, engine):
        contract = make_contract(resource_requirements=ResourceRequirements(memory_mb=8192))
        state = AgentState("agent-a", resource_limits=ResourceLimits(memory_mb=None))
        assert engine.evaluate(contract, state).can_accept

    def test_missing_capability(self, engine, state):
        contract = make_contract(required_capabilities=[RequiredCapability("translation")])
        decision = engine.evaluate(contract, state)
        assert decision.reason == "Capability mismatch: Missing required capability: translation"

    def test_capability_below_min_confidence(self, engine, state):
        contract = make_contract(
            required_capabilities=[RequiredCapability("code_generation", min_confidence=0.9)]
        )
        decision = engine.evaluate(contract, state)
        assert decision.gate == AdmissionGate.CAPABILITIES
        assert "below required 0.90" in decision.reason

    def test_unregistered_agent(self, engine):
        contract = make_contract(required_capabilities=[RequiredCapability("code_generation")])
        decision = engine.evaluate(contract, AgentState("ghost"))
        assert decision.gate == AdmissionGate.CAPABILITIES


# ═══════════════════════════════════════════════════════════════════════════
# DURATION ESTIMATE
# ═══════════════════════════════════════════════════════════════════════════


class TestEstimator:
    def test_base(self):
        assert estimate_task_duration("") == 5000

    def test_per_character(self):
        assert estimate_task_duration("x" * 10) == 5500

    def test_length_cap(self):
        assert estimate_task_duration("x" * 300) == 20_000
        assert estimate_task_duration("x" * 3000) == 20_000

    def test_keyword_doubles(self):
        plain = estimate_task_duration("Write a report")
        assert estimate_task_duration("Write a detailed report") == (
            2 * (5000 + len("Write a detailed report") * 50)
        )
        assert plain == 5000 + len("Write a report") * 50

    def test_keyword_case_insensitive(self):
        assert estimate_task_duration("FULL audit") == 2 * (5000 + 10 * 50)

    def test_monotonic(self):
        lengths = [estimate_task_duration("y" * n) for n in range(0, 400, 25)]
        assert lengths == sorted(lengths)


# ═══════════════════════════════════════════════════════════════════════════
# REPUTATION
# ═══════════════════════════════════════════════════════════════════════════


def _record(success, quality=None, n=0):
    return TaskRecord(
        execution_id=f"exec-{n}",
        task_description="task",
        success=success,
        duration_ms=100.0,
        quality_score=quality,
    )


class TestTaskHistory:
    def test_neutral_when_empty(self):
        history = TaskHistory()
        assert history.reputation_score() == 0.5
        assert history.snapshot() == ReputationSnapshot()

    def test_score_defaults_quality(self):
        history = TaskHistory()
        for i, success in enumerate([True, True, True, False]):
            history.record(_record(success, n=i))
        # 0.7 * 0.75 + 0.3 * 0.5
        assert history.reputation_score() == pytest.approx(0.675)

    def test_score_uses_quality(self):
        history = TaskHistory()
        history.record(_record(True, quality=1.0))
        history.record(_record(True, quality=0.6))
        assert history.reputation_score() == pytest.approx(0.7 + 0.3 * 0.8)

    def test_window_is_last_twenty(self):
        history = TaskHistory()
        for i in range(10):
            history.record(_record(False, n=i))
        for i in range(20):
            history.record(_record(True, quality=1.0, n=10 + i))
        assert history.reputation_score() == pytest.approx(1.0)

    def test_consecutive_failures(self):
        history = TaskHistory()
        for success in [False, True, False, False]:
            history.record(_record(success))
        snapshot = history.snapshot()
        assert snapshot.consecutive_failures == 2
        assert snapshot.tasks_completed == 1
        assert snapshot.total_tasks == 4

    def test_ring_buffer_evicts_oldest(self):
        history = TaskHistory(maxlen=3)
        for i in range(5):
            history.record(_record(True, n=i))
        assert len(history) == 3
        assert [r.execution_id for r in history] == ["exec-2", "exec-3", "exec-4"]

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            TaskHistory(maxlen=0)
