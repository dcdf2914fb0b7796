"""
Capability Registry — Indexes and Scores Agent Capability Manifests

Stores one manifest per agent and answers ranked capability queries.

Scoring (per surviving capability, clamped to [0.0, 1.0]):

    score = confidence
          + success_rate * 0.2
          + min(completions / 100, 0.2)
          - workload_ratio * 0.3
          + 0.1 if agent is available

Priority (floored at 0):

    priority = 50
             + 30 if the capability was explicitly required
             + 20 * confidence
             + availability bonus (+20 / -10 / -20 / -30 for
               available / busy / maintenance / offline)
             - 15 * workload_ratio

Results sort by priority, then score, both descending.

All reads and writes go through one lock so a query never sees a workload
counter or confidence value mid-update. Returned manifests and capabilities
are copies.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import replace
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping

from delegator.errors import AgentNotFoundError, ValidationError
from delegator.models.capabilities import (
    Availability,
    Capability,
    CapabilityManifest,
    CapabilityMatch,
    CapabilityQuery,
    check_unit_interval,
    utcnow,
)

logger = logging.getLogger(__name__)

SUCCESS_RATE_WEIGHT = 0.2
COMPLETIONS_CAP = 0.2
WORKLOAD_PENALTY = 0.3
AVAILABILITY_BONUS = 0.1

PRIORITY_BASE = 50.0
PRIORITY_EXACT_MATCH = 30.0
PRIORITY_CONFIDENCE = 20.0
PRIORITY_WORKLOAD = 15.0
PRIORITY_AVAILABILITY = {
    Availability.AVAILABLE: 20.0,
    Availability.BUSY: -10.0,
    Availability.MAINTENANCE: -20.0,
    Availability.OFFLINE: -30.0,
}

_UPDATABLE_FIELDS = frozenset(
    {
        "agent_name",
        "version",
        "capabilities",
        "availability",
        "current_workload",
        "max_concurrent_tasks",
        "specializations",
    }
)


class RegistryEvent(StrEnum):
    MANIFEST_REGISTERED = "manifest_registered"
    MANIFEST_UPDATED = "manifest_updated"
    MANIFEST_DELETED = "manifest_deleted"
    WORKLOAD_UPDATED = "workload_updated"
    CAPABILITY_UPDATED = "capability_updated"


RegistryListener = Callable[[RegistryEvent, CapabilityManifest], None]


def capability_score(capability: Capability, manifest: CapabilityManifest) -> float:
    """Score a capability in the context of its agent's load and availability."""
    score = capability.confidence_level
    score += capability.success_rate * SUCCESS_RATE_WEIGHT
    score += min(capability.successful_completions / 100.0, COMPLETIONS_CAP)
    if manifest.max_concurrent_tasks > 0:
        score -= manifest.workload_ratio * WORKLOAD_PENALTY
    if manifest.availability == Availability.AVAILABLE:
        score += AVAILABILITY_BONUS
    return max(0.0, min(1.0, score))


def match_priority(
    capability: Capability, manifest: CapabilityManifest, required: Iterable[str] = ()
) -> float:
    priority = PRIORITY_BASE
    if capability.capability_id in set(required):
        priority += PRIORITY_EXACT_MATCH
    priority += capability.confidence_level * PRIORITY_CONFIDENCE
    priority += PRIORITY_AVAILABILITY.get(manifest.availability, 0.0)
    priority -= manifest.workload_ratio * PRIORITY_WORKLOAD
    return max(0.0, priority)


class CapabilityRegistry:
    """
    In-process registry of capability manifests.

    Instances are independent; pass one explicitly to the components that
    need it.
    """

    def __init__(self) -> None:
        self._manifests: dict[str, CapabilityManifest] = {}
        self._lock = threading.RLock()
        self._listeners: list[RegistryListener] = []

    # ── Listeners ──────────────────────────────────────────────────────────

    def subscribe(self, listener: RegistryListener) -> None:
        """Register a callback invoked after each successful mutation."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: RegistryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: RegistryEvent, manifest: CapabilityManifest) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, manifest)
            except Exception:
                logger.warning("Registry listener failed for %s", event, exc_info=True)

    # ── Manifest CRUD ──────────────────────────────────────────────────────

    def register_manifest(self, manifest: CapabilityManifest) -> CapabilityManifest:
        """Register (or replace) an agent's manifest.

        Raises:
            ValidationError: a capability confidence or success rate is
                outside [0, 1]. Nothing is stored in that case.
        """
        stored = copy.deepcopy(manifest)
        self._validate(stored)
        now = utcnow()
        with self._lock:
            previous = self._manifests.get(stored.agent_id)
            if previous is not None:
                stored.created_at = previous.created_at
            stored.updated_at = now
            stored.recompute_confidence()
            self._manifests[stored.agent_id] = stored
            snapshot = copy.deepcopy(stored)
        logger.debug("Registered manifest for %s (%d capabilities)",
                     snapshot.agent_id, len(snapshot.capabilities))
        self._notify(RegistryEvent.MANIFEST_REGISTERED, snapshot)
        return snapshot

    def update_manifest(self, agent_id: str, changes: Mapping[str, Any]) -> CapabilityManifest:
        """Merge ``changes`` into the stored manifest.

        Capabilities may be given as ``Capability`` objects or dicts. The
        overall confidence is re-derived when capabilities change.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update manifest fields: {sorted(unknown)}")

        fields = dict(changes)
        if "capabilities" in fields:
            fields["capabilities"] = [
                c if isinstance(c, Capability) else Capability.from_dict(c)
                for c in fields["capabilities"]
            ]
        if "availability" in fields:
            try:
                fields["availability"] = Availability(fields["availability"])
            except ValueError:
                raise ValidationError(f"Unknown availability: {fields['availability']}") from None

        with self._lock:
            current = self._manifests.get(agent_id)
            if current is None:
                raise AgentNotFoundError(agent_id)
            updated = replace(copy.deepcopy(current), **fields)
            self._validate(updated)
            updated.updated_at = utcnow()
            self._manifests[agent_id] = updated
            snapshot = copy.deepcopy(updated)
        self._notify(RegistryEvent.MANIFEST_UPDATED, snapshot)
        return snapshot

    def get_manifest(self, agent_id: str) -> CapabilityManifest | None:
        with self._lock:
            manifest = self._manifests.get(agent_id)
            return copy.deepcopy(manifest) if manifest else None

    def list_manifests(self) -> list[CapabilityManifest]:
        with self._lock:
            return [copy.deepcopy(m) for m in self._manifests.values()]

    def delete_manifest(self, agent_id: str) -> bool:
        with self._lock:
            manifest = self._manifests.pop(agent_id, None)
        if manifest is None:
            return False
        self._notify(RegistryEvent.MANIFEST_DELETED, manifest)
        return True

    def clear(self) -> None:
        with self._lock:
            self._manifests.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._manifests)

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._manifests

    # ── Availability & workload ────────────────────────────────────────────

    def update_availability(self, agent_id: str, availability: Availability | str) -> None:
        try:
            state = Availability(availability)
        except ValueError:
            raise ValidationError(f"Unknown availability: {availability}") from None
        with self._lock:
            manifest = self._require(agent_id)
            manifest.availability = state
            manifest.updated_at = utcnow()
            snapshot = copy.deepcopy(manifest)
        self._notify(RegistryEvent.MANIFEST_UPDATED, snapshot)

    def update_workload(self, agent_id: str, workload: int) -> int:
        if workload < 0:
            raise ValidationError(f"workload must be >= 0, got {workload}")
        return self._set_workload(agent_id, lambda _: workload)

    def increment_workload(self, agent_id: str) -> int:
        return self._set_workload(agent_id, lambda current: current + 1)

    def decrement_workload(self, agent_id: str) -> int:
        return self._set_workload(agent_id, lambda current: max(0, current - 1))

    def get_workload(self, agent_id: str) -> int:
        with self._lock:
            return self._require(agent_id).current_workload

    def _set_workload(self, agent_id: str, fn: Callable[[int], int]) -> int:
        with self._lock:
            manifest = self._require(agent_id)
            manifest.current_workload = fn(manifest.current_workload)
            manifest.updated_at = utcnow()
            snapshot = copy.deepcopy(manifest)
        self._notify(RegistryEvent.WORKLOAD_UPDATED, snapshot)
        return snapshot.current_workload

    # ── Confidence ─────────────────────────────────────────────────────────

    def update_confidence(self, agent_id: str, capability_id: str, confidence: float) -> bool:
        """Set one capability's confidence and recompute the overall mean.

        Returns False when the agent or capability is unknown.
        """
        check_unit_interval("confidence_level", confidence)
        with self._lock:
            manifest = self._manifests.get(agent_id)
            capability = manifest.get_capability(capability_id) if manifest else None
            if manifest is None or capability is None:
                return False
            capability.confidence_level = confidence
            capability.last_updated = utcnow()
            manifest.recompute_confidence()
            manifest.updated_at = capability.last_updated
            snapshot = copy.deepcopy(manifest)
        self._notify(RegistryEvent.CAPABILITY_UPDATED, snapshot)
        return True

    def record_capability_outcome(
        self,
        agent_id: str,
        capability_id: str,
        success: bool,
        success_rate: float | None = None,
        duration_ms: float | None = None,
    ) -> bool:
        """Fold one execution outcome into a capability's statistics."""
        if success_rate is not None:
            check_unit_interval("success_rate", success_rate)
        with self._lock:
            manifest = self._manifests.get(agent_id)
            capability = manifest.get_capability(capability_id) if manifest else None
            if manifest is None or capability is None:
                return False
            if success:
                capability.successful_completions += 1
            if success_rate is not None:
                capability.success_rate = success_rate
            if duration_ms is not None and success:
                capability.completion_time_estimate_ms = int(
                    (capability.completion_time_estimate_ms + duration_ms) / 2
                )
            capability.last_updated = utcnow()
            snapshot = copy.deepcopy(manifest)
        self._notify(RegistryEvent.CAPABILITY_UPDATED, snapshot)
        return True

    # ── Queries ────────────────────────────────────────────────────────────

    def query_capabilities(self, query: CapabilityQuery | None = None) -> list[CapabilityMatch]:
        """Return scored matches for ``query``, best first."""
        query = query or CapabilityQuery()
        required = set(query.required_capabilities)
        excluded = set(query.exclude_agents)
        matches: list[CapabilityMatch] = []

        with self._lock:
            for manifest in self._manifests.values():
                if manifest.agent_id in excluded:
                    continue
                if query.only_available and manifest.availability != Availability.AVAILABLE:
                    continue
                if required and not required.issubset(manifest.capability_ids):
                    continue

                for capability in manifest.capabilities:
                    if required and capability.capability_id not in required:
                        continue
                    if not self._passes_filters(capability, query):
                        continue
                    matches.append(
                        CapabilityMatch(
                            agent_id=manifest.agent_id,
                            capability=copy.deepcopy(capability),
                            score=capability_score(capability, manifest),
                            priority=match_priority(capability, manifest, required),
                            availability=manifest.availability,
                            current_workload=manifest.current_workload,
                            max_concurrent_tasks=manifest.max_concurrent_tasks,
                            match_reasons=self._match_reasons(capability, query),
                            warnings=self._warnings(capability, manifest),
                        )
                    )

        matches.sort(key=lambda m: (m.priority, m.score), reverse=True)
        return matches

    @staticmethod
    def _passes_filters(capability: Capability, query: CapabilityQuery) -> bool:
        if query.min_confidence is not None and capability.confidence_level < query.min_confidence:
            return False
        if (
            query.max_completion_time_ms is not None
            and capability.completion_time_estimate_ms > query.max_completion_time_ms
        ):
            return False
        if (
            query.required_clearance is not None
            and capability.tlp_clearance != query.required_clearance
        ):
            return False
        if query.min_success_rate is not None and capability.success_rate < query.min_success_rate:
            return False
        if (
            query.min_completions is not None
            and capability.successful_completions < query.min_completions
        ):
            return False
        if query.task_patterns:
            supported = [p.lower() for p in capability.supported_patterns]
            if not any(
                pattern.lower() in candidate
                for pattern in query.task_patterns
                for candidate in supported
            ):
                return False
        if query.required_tags:
            tags = {t.lower() for t in capability.tags}
            if not all(tag.lower() in tags for tag in query.required_tags):
                return False
        return True

    @staticmethod
    def _match_reasons(capability: Capability, query: CapabilityQuery) -> list[str]:
        reasons = []
        if capability.capability_id in query.required_capabilities:
            reasons.append(f"Exact capability match: {capability.capability_id}")
        if query.min_confidence is not None:
            reasons.append(
                f"Confidence {capability.confidence_level:.2f} >= {query.min_confidence:.2f}"
            )
        if query.min_success_rate is not None:
            reasons.append(
                f"Success rate {capability.success_rate:.2f} >= {query.min_success_rate:.2f}"
            )
        if query.task_patterns:
            reasons.append("Supports requested task patterns")
        if query.required_tags:
            reasons.append(f"Has required tags: {', '.join(query.required_tags)}")
        return reasons

    @staticmethod
    def _warnings(capability: Capability, manifest: CapabilityManifest) -> list[str]:
        warnings = []
        ratio = manifest.workload_ratio
        if ratio > 0.8:
            warnings.append(f"High workload: {ratio:.0%} of capacity")
        if capability.success_rate < 0.8:
            warnings.append(f"Low success rate: {capability.success_rate:.0%}")
        if capability.successful_completions < 5:
            warnings.append(f"Limited track record: {capability.successful_completions} completions")
        if capability.limitations:
            warnings.append(f"Limitations: {', '.join(capability.limitations)}")
        return warnings

    def find_by_specialization(self, specialization: str) -> list[CapabilityManifest]:
        """Agents whose specializations overlap ``specialization`` (substring, either way)."""
        needle = specialization.lower()
        with self._lock:
            return [
                copy.deepcopy(m)
                for m in self._manifests.values()
                if any(needle in s.lower() or s.lower() in needle for s in m.specializations)
            ]

    def calculate_match_score(self, agent_id: str, required_ids: Iterable[str]) -> float:
        """Mean confidence of held capabilities times the fraction of ``required_ids`` held."""
        required = list(dict.fromkeys(required_ids))
        with self._lock:
            manifest = self._manifests.get(agent_id)
            if manifest is None or not required:
                return 0.0
            held = [manifest.get_capability(cid) for cid in required]
            confidences = [c.confidence_level for c in held if c is not None]
        if not confidences:
            return 0.0
        avg_confidence = sum(confidences) / len(confidences)
        return avg_confidence * (len(confidences) / len(required))

    def rank_agents(self, required_ids: Iterable[str], limit: int = 5) -> list[tuple[str, float]]:
        required = list(required_ids)
        with self._lock:
            agent_ids = list(self._manifests)
        ranked = [(agent_id, self.calculate_match_score(agent_id, required)) for agent_id in agent_ids]
        ranked = [item for item in ranked if item[1] > 0]
        ranked.sort(key=lambda item: item[1], reverse=True)
        return ranked[:limit]

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            manifests = list(self._manifests.values())
            by_availability = {str(state): 0 for state in Availability}
            for m in manifests:
                by_availability[str(m.availability)] += 1
            total_caps = sum(len(m.capabilities) for m in manifests)
            avg_conf = (
                sum(m.overall_confidence for m in manifests) / len(manifests) if manifests else 0.0
            )
            return {
                "total_agents": len(manifests),
                "total_capabilities": total_caps,
                "by_availability": by_availability,
                "average_confidence": round(avg_conf, 4),
                "total_workload": sum(m.current_workload for m in manifests),
            }

    # ── Internals ──────────────────────────────────────────────────────────

    def _require(self, agent_id: str) -> CapabilityManifest:
        manifest = self._manifests.get(agent_id)
        if manifest is None:
            raise AgentNotFoundError(agent_id)
        return manifest

    @staticmethod
    def _validate(manifest: CapabilityManifest) -> None:
        if not manifest.agent_id:
            raise ValidationError("agent_id is required")
        seen: set[str] = set()
        for capability in manifest.capabilities:
            check_unit_interval(f"{capability.capability_id}.confidence_level",
                                capability.confidence_level)
            check_unit_interval(f"{capability.capability_id}.success_rate",
                                capability.success_rate)
            if capability.capability_id in seen:
                raise ValidationError(f"Duplicate capability: {capability.capability_id}")
            seen.add(capability.capability_id)
