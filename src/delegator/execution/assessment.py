"""
Capability Self-Assessment

After each task an agent revisits its advertised confidence. For every
capability it takes the most recent matched outcomes (default 10):

    success rate > 0.9  -> confidence + 0.05 (capped at 1.0)
    success rate < 0.7  -> confidence - 0.1  (floored at 0.1)
    otherwise           -> unchanged

The new value is written to the registry, and kept in a bounded
per-capability history, only when it differs from the current value by more
than the update threshold (0.1).
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from delegator.admission.reputation import TaskHistory
from delegator.models.capabilities import Capability, format_timestamp, utcnow
from delegator.models.execution import TaskRecord
from delegator.registry.capability_registry import CapabilityRegistry
from delegator.registry.matchers import ExactIdMatcher, TaskMatcher

logger = logging.getLogger(__name__)


@dataclass
class AssessmentPolicy:
    window: int = 10
    high_success_threshold: float = 0.9
    low_success_threshold: float = 0.7
    raise_step: float = 0.05
    lower_step: float = 0.1
    confidence_cap: float = 1.0
    confidence_floor: float = 0.1
    update_threshold: float = 0.1
    history_size: int = 50

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValueError(f"window must be >= 1, got {self.window}")
        if self.history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {self.history_size}")
        if not 0.0 <= self.confidence_floor <= self.confidence_cap <= 1.0:
            raise ValueError("confidence bounds must satisfy 0 <= floor <= cap <= 1")


@dataclass(frozen=True)
class ConfidenceChange:
    capability_id: str
    previous: float
    current: float
    success_rate: float
    sample_size: int
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability_id": self.capability_id,
            "previous": self.previous,
            "current": self.current,
            "success_rate": self.success_rate,
            "sample_size": self.sample_size,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass
class CapabilityAssessment:
    capability_id: str
    sample_size: int
    success_rate: float | None
    previous_confidence: float
    proposed_confidence: float
    applied: bool = False


class CapabilityAssessor:
    """Adjusts one agent's capability confidence from its own track record."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        agent_id: str,
        history: TaskHistory,
        matcher: TaskMatcher | None = None,
        policy: AssessmentPolicy | None = None,
    ) -> None:
        self.registry = registry
        self.agent_id = agent_id
        self.history = history
        self.matcher = matcher or ExactIdMatcher()
        self.policy = policy or AssessmentPolicy()
        self._confidence_history: dict[str, deque[ConfidenceChange]] = {}

    def matched_records(self, capability: Capability, limit: int | None = None) -> list[TaskRecord]:
        """Most recent records matching ``capability``, oldest first."""
        limit = limit or self.policy.window
        matched: list[TaskRecord] = []
        for record in reversed(list(self.history)):
            if self.matcher.matches(capability, record.task_description, record.capability_ids):
                matched.append(record)
                if len(matched) >= limit:
                    break
        matched.reverse()
        return matched

    def propose(self, current: float, success_rate: float) -> float:
        policy = self.policy
        if success_rate > policy.high_success_threshold:
            return min(policy.confidence_cap, current + policy.raise_step)
        if success_rate < policy.low_success_threshold:
            return max(policy.confidence_floor, current - policy.lower_step)
        return current

    def assess(self, capability_ids: Iterable[str] | None = None) -> list[CapabilityAssessment]:
        """Assess capabilities (all by default) and apply significant changes."""
        manifest = self.registry.get_manifest(self.agent_id)
        if manifest is None:
            return []
        wanted = set(capability_ids) if capability_ids is not None else None

        results = []
        for capability in manifest.capabilities:
            if wanted is not None and capability.capability_id not in wanted:
                continue
            records = self.matched_records(capability)
            current = capability.confidence_level
            if not records:
                results.append(
                    CapabilityAssessment(capability.capability_id, 0, None, current, current)
                )
                continue

            success_rate = sum(1 for r in records if r.success) / len(records)
            proposed = self.propose(current, success_rate)
            assessment = CapabilityAssessment(
                capability_id=capability.capability_id,
                sample_size=len(records),
                success_rate=success_rate,
                previous_confidence=current,
                proposed_confidence=proposed,
            )
            if abs(proposed - current) > self.policy.update_threshold:
                assessment.applied = self.registry.update_confidence(
                    self.agent_id, capability.capability_id, proposed
                )
                if assessment.applied:
                    self._remember(
                        ConfidenceChange(
                            capability_id=capability.capability_id,
                            previous=current,
                            current=proposed,
                            success_rate=success_rate,
                            sample_size=len(records),
                        )
                    )
                    logger.info(
                        "Confidence for %s/%s: %.2f -> %.2f (success rate %.2f over %d)",
                        self.agent_id,
                        capability.capability_id,
                        current,
                        proposed,
                        success_rate,
                        len(records),
                    )
            results.append(assessment)
        return results

    def record_execution(self, record: TaskRecord) -> list[str]:
        """Fold a finished task into the statistics of every capability it matches."""
        manifest = self.registry.get_manifest(self.agent_id)
        if manifest is None:
            return []
        updated = []
        for capability in manifest.capabilities:
            if not self.matcher.matches(
                capability, record.task_description, record.capability_ids
            ):
                continue
            records = self.matched_records(capability)
            success_rate = (
                sum(1 for r in records if r.success) / len(records) if records else None
            )
            if self.registry.record_capability_outcome(
                self.agent_id,
                capability.capability_id,
                success=record.success,
                success_rate=success_rate,
                duration_ms=record.duration_ms,
            ):
                updated.append(capability.capability_id)
        return updated

    def confidence_history(self, capability_id: str) -> list[ConfidenceChange]:
        return list(self._confidence_history.get(capability_id, ()))

    def _remember(self, change: ConfidenceChange) -> None:
        history = self._confidence_history.setdefault(
            change.capability_id, deque(maxlen=self.policy.history_size)
        )
        history.append(change)
