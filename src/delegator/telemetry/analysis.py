"""
Chain Analysis & Anomaly Detection

Works over any collection of recorded ``TelemetryEvent`` objects (from a
sink query, the engine's in-memory window, or a file).

Anomaly severity is ``critical`` when the observed value reaches the
multiplier below, ``warning`` otherwise:

    excessive depth     >= 1.5 x max_depth
    excessive duration  >= 2.0 x max_duration_ms
    low success rate    <= 0.5 x min_success_rate
    excessive retries   >= 2.0 x max_retries
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Iterable

from delegator.errors import ChainNotFoundError
from delegator.models.capabilities import format_timestamp
from delegator.telemetry.events import (
    COMPLETION_EVENT_TYPES,
    EventType,
    TelemetryEvent,
)

DEPTH_CRITICAL_MULTIPLIER = 1.5
DURATION_CRITICAL_MULTIPLIER = 2.0
SUCCESS_CRITICAL_MULTIPLIER = 0.5
RETRY_CRITICAL_MULTIPLIER = 2.0


@dataclass(frozen=True)
class TimelineEntry:
    timestamp: datetime
    event_type: EventType
    contract_id: str
    agent_id: str
    chain_depth: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "event_type": str(self.event_type),
            "contract_id": self.contract_id,
            "agent_id": self.agent_id,
            "chain_depth": self.chain_depth,
        }


@dataclass
class ChainAnalysis:
    root_delegation_id: str
    total_contracts: int
    max_depth: int
    participants: list[str]
    duration_ms: float
    success_rate: float
    average_execution_time_ms: float
    average_negotiation_time_ms: float
    average_confidence: float
    total_retries: int
    status_counts: dict[str, int]
    completions: int = 0
    timeline: list[TimelineEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_delegation_id": self.root_delegation_id,
            "total_contracts": self.total_contracts,
            "max_depth": self.max_depth,
            "participants": list(self.participants),
            "duration_ms": round(self.duration_ms, 2),
            "success_rate": round(self.success_rate, 4),
            "average_execution_time_ms": round(self.average_execution_time_ms, 2),
            "average_negotiation_time_ms": round(self.average_negotiation_time_ms, 2),
            "average_confidence": round(self.average_confidence, 4),
            "total_retries": self.total_retries,
            "status_counts": dict(self.status_counts),
            "completions": self.completions,
            "timeline": [t.to_dict() for t in self.timeline],
        }


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def analyze_chain(events: Iterable[TelemetryEvent], root_id: str) -> ChainAnalysis:
    """Summarize every recorded event belonging to the chain rooted at ``root_id``.

    Raises:
        ChainNotFoundError: no event belongs to the chain
    """
    chain_events = sorted(
        (e for e in events if e.root_id == root_id), key=lambda e: e.timestamp
    )
    if not chain_events:
        raise ChainNotFoundError(f"No events found for chain {root_id}")

    contracts = {e.contract_id for e in chain_events}
    max_depth = max(e.chain_correlation.chain_depth for e in chain_events)

    participants: list[str] = []
    for event in chain_events:
        for agent_id in (event.agent_id, *event.chain_correlation.chain_participants):
            if agent_id and agent_id not in participants:
                participants.append(agent_id)

    started = [e.chain_correlation.chain_started_at for e in chain_events]
    finished = [
        e.chain_correlation.chain_completed_at
        for e in chain_events
        if e.chain_correlation.chain_completed_at is not None
    ]
    start = min(started) if started else chain_events[0].timestamp
    end = max(finished) if finished else chain_events[-1].timestamp
    duration_ms = max(0.0, (end - start).total_seconds() * 1000.0)

    completed = sum(1 for e in chain_events if e.event_type == EventType.TASK_COMPLETED)
    failed = sum(1 for e in chain_events if e.event_type == EventType.TASK_FAILED)
    success_rate = completed / (completed + failed) if completed + failed else 0.0

    metrics = [e.performance_metrics for e in chain_events if e.performance_metrics is not None]

    latest_status: dict[str, str] = {}
    for event in chain_events:
        latest_status[event.contract_id] = str(event.chain_correlation.chain_status)

    return ChainAnalysis(
        root_delegation_id=root_id,
        total_contracts=len(contracts),
        max_depth=max_depth,
        participants=participants,
        duration_ms=duration_ms,
        success_rate=success_rate,
        average_execution_time_ms=_mean([m.execution_time_ms for m in metrics]),
        average_negotiation_time_ms=_mean([m.negotiation_time_ms for m in metrics]),
        average_confidence=_mean([m.quality_metrics.confidence_level for m in metrics]),
        total_retries=sum(m.quality_metrics.retry_count for m in metrics),
        status_counts=dict(Counter(latest_status.values())),
        completions=completed + failed,
        timeline=[
            TimelineEntry(
                timestamp=e.timestamp,
                event_type=e.event_type,
                contract_id=e.contract_id,
                agent_id=e.agent_id,
                chain_depth=e.chain_correlation.chain_depth,
            )
            for e in chain_events
        ],
    )


# ── Anomalies ─────────────────────────────────────────────────────────────


class AnomalyType(StrEnum):
    EXCESSIVE_DEPTH = "excessive_depth"
    EXCESSIVE_DURATION = "excessive_duration"
    LOW_SUCCESS_RATE = "low_success_rate"
    EXCESSIVE_RETRIES = "excessive_retries"


class AnomalySeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AnomalyThresholds:
    max_depth: int = 10
    max_duration_ms: float = 300_000
    min_success_rate: float = 0.8
    max_retries: int = 5


@dataclass(frozen=True)
class ChainAnomaly:
    root_delegation_id: str
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    observed: float
    threshold: float
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_delegation_id": self.root_delegation_id,
            "anomaly_type": str(self.anomaly_type),
            "severity": str(self.severity),
            "observed": self.observed,
            "threshold": self.threshold,
            "description": self.description,
        }


def _severity(critical: bool) -> AnomalySeverity:
    return AnomalySeverity.CRITICAL if critical else AnomalySeverity.WARNING


def find_anomalies(
    events: Iterable[TelemetryEvent], thresholds: AnomalyThresholds | None = None
) -> list[ChainAnomaly]:
    """Analyze each chain in ``events`` and flag values past ``thresholds``.

    Low success rate is only judged for chains with at least one completion
    or failure event.
    """
    thresholds = thresholds or AnomalyThresholds()
    by_root: dict[str, list[TelemetryEvent]] = defaultdict(list)
    for event in events:
        by_root[event.root_id].append(event)

    anomalies: list[ChainAnomaly] = []
    for root_id, chain_events in by_root.items():
        analysis = analyze_chain(chain_events, root_id)

        if analysis.max_depth > thresholds.max_depth:
            anomalies.append(
                ChainAnomaly(
                    root_id,
                    AnomalyType.EXCESSIVE_DEPTH,
                    _severity(
                        analysis.max_depth >= thresholds.max_depth * DEPTH_CRITICAL_MULTIPLIER
                    ),
                    analysis.max_depth,
                    thresholds.max_depth,
                    f"Chain depth {analysis.max_depth} exceeds {thresholds.max_depth}",
                )
            )
        if analysis.duration_ms > thresholds.max_duration_ms:
            anomalies.append(
                ChainAnomaly(
                    root_id,
                    AnomalyType.EXCESSIVE_DURATION,
                    _severity(
                        analysis.duration_ms
                        >= thresholds.max_duration_ms * DURATION_CRITICAL_MULTIPLIER
                    ),
                    analysis.duration_ms,
                    thresholds.max_duration_ms,
                    f"Chain duration {analysis.duration_ms:.0f}ms exceeds "
                    f"{thresholds.max_duration_ms:.0f}ms",
                )
            )
        if analysis.completions and analysis.success_rate < thresholds.min_success_rate:
            anomalies.append(
                ChainAnomaly(
                    root_id,
                    AnomalyType.LOW_SUCCESS_RATE,
                    _severity(
                        analysis.success_rate
                        <= thresholds.min_success_rate * SUCCESS_CRITICAL_MULTIPLIER
                    ),
                    analysis.success_rate,
                    thresholds.min_success_rate,
                    f"Success rate {analysis.success_rate:.0%} below "
                    f"{thresholds.min_success_rate:.0%}",
                )
            )
        if analysis.total_retries > thresholds.max_retries:
            anomalies.append(
                ChainAnomaly(
                    root_id,
                    AnomalyType.EXCESSIVE_RETRIES,
                    _severity(
                        analysis.total_retries
                        >= thresholds.max_retries * RETRY_CRITICAL_MULTIPLIER
                    ),
                    analysis.total_retries,
                    thresholds.max_retries,
                    f"{analysis.total_retries} retries exceeds {thresholds.max_retries}",
                )
            )
    return anomalies


# ── Performance summary ───────────────────────────────────────────────────


@dataclass
class PerformanceSummary:
    start: datetime | None
    end: datetime | None
    total_events: int
    total_contracts: int
    total_chains: int
    completed: int
    failed: int
    success_rate: float
    average_execution_time_ms: float
    average_lifecycle_time_ms: float
    events_by_type: dict[str, int]
    events_by_severity: dict[str, int]
    busiest_agents: list[tuple[str, int]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
            "total_events": self.total_events,
            "total_contracts": self.total_contracts,
            "total_chains": self.total_chains,
            "completed": self.completed,
            "failed": self.failed,
            "success_rate": round(self.success_rate, 4),
            "average_execution_time_ms": round(self.average_execution_time_ms, 2),
            "average_lifecycle_time_ms": round(self.average_lifecycle_time_ms, 2),
            "events_by_type": dict(self.events_by_type),
            "events_by_severity": dict(self.events_by_severity),
            "busiest_agents": [list(a) for a in self.busiest_agents],
        }


def generate_performance_summary(
    events: Iterable[TelemetryEvent],
    start: datetime | None = None,
    end: datetime | None = None,
    top_agents: int = 5,
) -> PerformanceSummary:
    """Aggregate events inside [start, end] (either bound optional)."""
    window = [
        e
        for e in events
        if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
    ]
    completed = sum(1 for e in window if e.event_type == EventType.TASK_COMPLETED)
    failed = sum(1 for e in window if e.event_type == EventType.TASK_FAILED)
    metrics = [
        e.performance_metrics
        for e in window
        if e.performance_metrics is not None and e.event_type in COMPLETION_EVENT_TYPES
    ]
    agent_counts = Counter(e.agent_id for e in window)
    return PerformanceSummary(
        start=start,
        end=end,
        total_events=len(window),
        total_contracts=len({e.contract_id for e in window}),
        total_chains=len({e.root_id for e in window}),
        completed=completed,
        failed=failed,
        success_rate=completed / (completed + failed) if completed + failed else 0.0,
        average_execution_time_ms=_mean([m.execution_time_ms for m in metrics]),
        average_lifecycle_time_ms=_mean([m.total_lifecycle_time_ms for m in metrics]),
        events_by_type=dict(Counter(str(e.event_type) for e in window)),
        events_by_severity=dict(Counter(str(e.severity) for e in window)),
        busiest_agents=agent_counts.most_common(top_agents),
    )
