"""
Admission Engine — Decides Whether a Delegatee Can Accept a Contract

Gates run in a fixed order and stop at the first failure:

    1. Concurrency   - current workload below max_concurrent_tasks
    2. Reputation    - contract's reputation requirements met
    3. Permission    - permission token valid (if present)
    4. Firebreaks    - no firebreak tripped
    5. Resources     - requested resources within agent limits
    6. Capabilities  - every required capability held, at the required confidence
    7. Timeout       - estimated duration within timeout_ms

A failed gate is returned as an ``AcceptanceDecision`` with ``can_accept``
false and a readable reason; evaluation never raises for a rejection.

Confidence for an accepted contract:

    confidence = 0.30 * capability_match
               + 0.20 * resource_availability
               + 0.20 * workload_capacity
               + 0.15 * reputation_compliance
               + 0.15 * firebreak_compliance

then x0.9 when estimated_complexity > 7, and x(1 - (ratio - 0.8) * 2) when
estimated_time / timeout exceeds 0.8. Clamped to [0.0, 1.0].

Usage:
    from delegator.admission import AdmissionEngine, AgentState

    engine = AdmissionEngine(registry)
    decision = engine.evaluate(contract, AgentState(agent_id="agent-a"))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from delegator.admission.estimator import DurationEstimator, estimate_task_duration
from delegator.admission.reputation import ReputationSnapshot
from delegator.models.capabilities import CapabilityManifest
from delegator.models.contracts import (
    AcceptanceDecision,
    AdmissionGate,
    Assessment,
    DelegationContract,
)
from delegator.registry.capability_registry import CapabilityRegistry
from delegator.safety.firebreaks import check_firebreaks
from delegator.safety.guardrails import check_permission_token

logger = logging.getLogger(__name__)

CAPABILITY_WEIGHT = 0.30
RESOURCE_WEIGHT = 0.20
WORKLOAD_WEIGHT = 0.20
REPUTATION_WEIGHT = 0.15
FIREBREAK_WEIGHT = 0.15

DEFAULT_CAPABILITY_MATCH = 0.8
COMPLEXITY_THRESHOLD = 7
COMPLEXITY_PENALTY = 0.9
TIMING_RATIO_THRESHOLD = 0.8
TIMING_PENALTY_SLOPE = 2.0
DEFAULT_TIMEOUT_MS = 300_000


@dataclass
class ResourceLimits:
    """Resources the evaluating agent can commit to one task. ``None`` = unlimited."""

    memory_mb: float | None = 4096
    cpu_percent: float | None = 400
    disk_mb: float | None = 10_240
    network_mbps: float | None = 1000

    def to_dict(self) -> dict[str, float | None]:
        return {
            "memory_mb": self.memory_mb,
            "cpu_percent": self.cpu_percent,
            "disk_mb": self.disk_mb,
            "network_mbps": self.network_mbps,
        }


@dataclass
class AgentState:
    """The evaluating agent's own view of itself at decision time.

    ``current_workload`` and ``max_concurrent_tasks`` fall back to the
    registered manifest when left as None.
    """

    agent_id: str
    current_workload: int | None = None
    max_concurrent_tasks: int | None = None
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    reputation: ReputationSnapshot = field(default_factory=ReputationSnapshot)


class AdmissionEngine:
    """Pure decision function over the registry, a contract, and the agent's state."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        estimator: DurationEstimator = estimate_task_duration,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.registry = registry
        self.estimator = estimator
        self.default_timeout_ms = default_timeout_ms

    def evaluate(self, contract: DelegationContract, state: AgentState) -> AcceptanceDecision:
        manifest = self.registry.get_manifest(state.agent_id)
        estimated_ms = self.estimator(contract.task_description)
        timeout_ms = contract.timeout_ms or self.default_timeout_ms
        assessment = Assessment()

        # ── GATE 1: CONCURRENCY ────────────────────────────────────────────
        workload, max_tasks = self._workload(state, manifest)
        if workload >= max_tasks:
            return self._reject(
                contract,
                AdmissionGate.CONCURRENCY,
                f"Agent at maximum concurrent tasks ({workload}/{max_tasks})",
                estimated_ms,
                assessment,
            )
        assessment.workload_capacity = max(0.0, 1.0 - workload / max_tasks)

        # ── GATE 2: REPUTATION ─────────────────────────────────────────────
        problems = self._reputation_problems(contract, state.reputation, manifest)
        if problems:
            return self._reject(
                contract,
                AdmissionGate.REPUTATION,
                f"Reputation requirements not met: {'; '.join(problems)}",
                estimated_ms,
                assessment,
            )
        assessment.reputation_compliance = 1.0

        # ── GATE 3: PERMISSION TOKEN ───────────────────────────────────────
        permission = check_permission_token(contract.permission_token)
        if not permission.passed:
            return self._reject(
                contract,
                AdmissionGate.PERMISSION,
                f"Permission validation failed: {permission.violation}",
                estimated_ms,
                assessment,
            )

        # ── GATE 4: FIREBREAKS ─────────────────────────────────────────────
        firebreaks = check_firebreaks(contract, estimated_ms)
        if not firebreaks.passed:
            decision = self._reject(
                contract,
                AdmissionGate.FIREBREAK,
                f"Firebreak violation: {firebreaks.violation}",
                estimated_ms,
                assessment,
            )
            decision.firebreak_violation = firebreaks.details[0]
            return decision
        assessment.firebreak_compliance = 1.0

        # ── GATE 5: RESOURCES ──────────────────────────────────────────────
        shortfalls, availability = self._resource_fit(contract, state.resource_limits)
        if shortfalls:
            return self._reject(
                contract,
                AdmissionGate.RESOURCES,
                f"Insufficient resources: {'; '.join(shortfalls)}",
                estimated_ms,
                assessment,
            )
        assessment.resource_availability = availability

        # ── GATE 6: CAPABILITIES ───────────────────────────────────────────
        mismatch, match_score = self._capability_fit(contract, manifest)
        if mismatch:
            return self._reject(
                contract,
                AdmissionGate.CAPABILITIES,
                f"Capability mismatch: {mismatch}",
                estimated_ms,
                assessment,
            )
        assessment.capability_match = match_score

        # ── GATE 7: TIMEOUT FEASIBILITY ────────────────────────────────────
        if estimated_ms > timeout_ms:
            return self._reject(
                contract,
                AdmissionGate.TIMEOUT,
                f"Task may exceed timeout (estimated: {estimated_ms}ms, limit: {timeout_ms}ms)",
                estimated_ms,
                assessment,
            )

        confidence = self._confidence(contract, assessment, estimated_ms, timeout_ms)
        logger.info(
            "Contract %s accepted by %s (confidence %.2f)",
            contract.contract_id,
            state.agent_id,
            confidence,
        )
        return AcceptanceDecision(
            can_accept=True,
            reason="All admission checks passed",
            confidence=confidence,
            estimated_completion_ms=estimated_ms,
            assessment=assessment,
        )

    # ── Gate helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _workload(state: AgentState, manifest: CapabilityManifest | None) -> tuple[int, int]:
        workload = state.current_workload
        if workload is None:
            workload = manifest.current_workload if manifest else 0
        max_tasks = state.max_concurrent_tasks
        if max_tasks is None:
            max_tasks = manifest.max_concurrent_tasks if manifest else 5
        return workload, max(1, max_tasks)

    @staticmethod
    def _reputation_problems(
        contract: DelegationContract,
        reputation: ReputationSnapshot,
        manifest: CapabilityManifest | None,
    ) -> list[str]:
        requirements = contract.reputation_requirements
        if requirements is None:
            return []

        problems = []
        if (
            requirements.min_security_score is not None
            and reputation.score < requirements.min_security_score
        ):
            problems.append(
                f"reputation {reputation.score:.2f} below required "
                f"{requirements.min_security_score:.2f}"
            )
        if (
            requirements.min_tasks_completed is not None
            and reputation.tasks_completed < requirements.min_tasks_completed
        ):
            problems.append(
                f"{reputation.tasks_completed} tasks completed, "
                f"{requirements.min_tasks_completed} required"
            )
        if requirements.min_confidence_score is not None:
            overall = manifest.overall_confidence if manifest else 0.0
            if overall < requirements.min_confidence_score:
                problems.append(
                    f"confidence {overall:.2f} below required "
                    f"{requirements.min_confidence_score:.2f}"
                )
        if (
            requirements.max_consecutive_failures is not None
            and reputation.consecutive_failures > requirements.max_consecutive_failures
        ):
            problems.append(
                f"{reputation.consecutive_failures} consecutive failures exceeds "
                f"limit {requirements.max_consecutive_failures}"
            )
        if requirements.required_specializations:
            held = {s.lower() for s in manifest.specializations} if manifest else set()
            missing = [s for s in requirements.required_specializations if s.lower() not in held]
            if missing:
                problems.append(f"missing specializations: {', '.join(missing)}")
        return problems

    @staticmethod
    def _resource_fit(
        contract: DelegationContract, limits: ResourceLimits
    ) -> tuple[list[str], float]:
        requested = contract.resource_requirements
        if requested is None:
            return [], 1.0

        checks = [
            ("memory", requested.memory_mb, limits.memory_mb, "MB"),
            (
                "cpu",
                requested.cpu_cores * 100 if requested.cpu_cores is not None else None,
                limits.cpu_percent,
                "%",
            ),
            ("disk", requested.disk_mb, limits.disk_mb, "MB"),
            ("network", requested.network_mbps, limits.network_mbps, "Mbps"),
        ]
        shortfalls = []
        availability = 1.0
        for name, amount, limit, unit in checks:
            if amount is None or limit is None:
                continue
            if amount > limit:
                shortfalls.append(f"{name} {amount:g}{unit} requested, {limit:g}{unit} available")
            elif limit > 0:
                availability *= 1.0 - amount / limit
        return shortfalls, max(0.0, availability)

    @staticmethod
    def _capability_fit(
        contract: DelegationContract, manifest: CapabilityManifest | None
    ) -> tuple[str | None, float]:
        if not contract.required_capabilities:
            return None, DEFAULT_CAPABILITY_MATCH

        confidences = []
        for required in contract.required_capabilities:
            capability = manifest.get_capability(required.capability_id) if manifest else None
            if capability is None:
                return f"Missing required capability: {required.capability_id}", 0.0
            if capability.confidence_level < required.min_confidence:
                return (
                    f"{required.capability_id} confidence {capability.confidence_level:.2f} "
                    f"below required {required.min_confidence:.2f}",
                    0.0,
                )
            confidences.append(capability.confidence_level)
        return None, sum(confidences) / len(confidences)

    @staticmethod
    def _confidence(
        contract: DelegationContract,
        assessment: Assessment,
        estimated_ms: int,
        timeout_ms: int,
    ) -> float:
        confidence = (
            CAPABILITY_WEIGHT * assessment.capability_match
            + RESOURCE_WEIGHT * assessment.resource_availability
            + WORKLOAD_WEIGHT * assessment.workload_capacity
            + REPUTATION_WEIGHT * assessment.reputation_compliance
            + FIREBREAK_WEIGHT * assessment.firebreak_compliance
        )
        complexity = contract.metadata.estimated_complexity
        if complexity is not None and complexity > COMPLEXITY_THRESHOLD:
            confidence *= COMPLEXITY_PENALTY

        ratio = estimated_ms / timeout_ms if timeout_ms > 0 else 0.0
        if ratio > TIMING_RATIO_THRESHOLD:
            confidence *= max(0.0, 1.0 - (ratio - TIMING_RATIO_THRESHOLD) * TIMING_PENALTY_SLOPE)
        return max(0.0, min(1.0, confidence))

    @staticmethod
    def _reject(
        contract: DelegationContract,
        gate: AdmissionGate,
        reason: str,
        estimated_ms: int,
        assessment: Assessment,
    ) -> AcceptanceDecision:
        logger.info("Contract %s rejected at %s gate: %s", contract.contract_id, gate, reason)
        return AcceptanceDecision(
            can_accept=False,
            reason=reason,
            confidence=0.0,
            estimated_completion_ms=estimated_ms,
            assessment=assessment,
            gate=gate,
        )
