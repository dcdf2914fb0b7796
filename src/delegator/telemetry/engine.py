"""
Telemetry Correlation Engine

Buffers lifecycle events, correlates them into delegation chains, and
flushes them to pluggable sinks.

Recording:
- events below ``min_severity`` or outside the ``sampling_rate`` are dropped
- accepted events go to the buffer and a bounded in-memory window

Flushing (swap-then-drain):
- triggered when the buffer reaches ``buffer_size``, by a periodic timer, or
  on every event when ``flush_interval_ms`` is 0
- the buffer is swapped out before any await, so new events land in a fresh
  buffer while the old one drains
- all sinks are written concurrently; a failing sink is logged and skipped

Chain correlation:
- created on the first reference to a contract id; the root defaults to the
  contract itself, or to the parent's root when a parent is known
- updated in place afterwards; depth and participants only grow, status
  leaves ``active`` once
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from delegator.execution.checkpoints import ProgressUpdate
from delegator.models.contracts import (
    AcceptanceDecision,
    DelegationContract,
    FirebreakViolation,
)
from delegator.models.execution import ErrorInfo, ExecutionResult
from delegator.telemetry.events import (
    ChainCorrelation,
    ChainStatus,
    EventType,
    PerformanceMetrics,
    Severity,
    TelemetryEvent,
    TelemetryQueryFilter,
)
from delegator.telemetry.sinks import TelemetrySink

logger = logging.getLogger(__name__)

EventListener = Callable[[TelemetryEvent], None]


@dataclass
class TelemetryConfig:
    enabled: bool = True
    buffer_size: int = 100
    flush_interval_ms: int = 5000
    sampling_rate: float = 1.0
    min_severity: Severity = Severity.INFO
    max_events_in_memory: int = 10_000
    enable_chain_correlation: bool = True

    def __post_init__(self) -> None:
        if self.buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {self.buffer_size}")
        if self.flush_interval_ms < 0:
            raise ValueError(f"flush_interval_ms must be >= 0, got {self.flush_interval_ms}")
        if not 0.0 <= self.sampling_rate <= 1.0:
            raise ValueError(f"sampling_rate must be in [0.0, 1.0], got {self.sampling_rate}")
        if self.max_events_in_memory < 1:
            raise ValueError(
                f"max_events_in_memory must be >= 1, got {self.max_events_in_memory}"
            )
        self.min_severity = Severity(self.min_severity)


class TelemetryEngine:
    """Per-agent telemetry pipeline."""

    def __init__(
        self,
        agent_id: str,
        config: TelemetryConfig | None = None,
        sinks: Sequence[TelemetrySink] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.config = config or TelemetryConfig()
        self.sinks: list[TelemetrySink] = list(sinks or [])
        self._rng = rng or random.Random()
        self._buffer: list[TelemetryEvent] = []
        self._recent: deque[TelemetryEvent] = deque(maxlen=self.config.max_events_in_memory)
        self._chains: dict[str, ChainCorrelation] = {}
        self._listeners: list[EventListener] = []
        self._flush_task: asyncio.Task[None] | None = None
        self._closed = False
        self.dropped_events = 0

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic flush timer (no-op when the interval is 0)."""
        if self._flush_task is None and self.config.flush_interval_ms > 0:
            self._flush_task = asyncio.create_task(self._periodic_flush())

    async def _periodic_flush(self) -> None:
        interval = self.config.flush_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            await self.flush()

    async def close(self) -> None:
        """Stop the timer, drain the buffer and close sinks."""
        if self._closed:
            return
        self._closed = True
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception:
                logger.warning("Failed to close telemetry sink %s", sink.name, exc_info=True)

    async def __aenter__(self) -> TelemetryEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    def add_listener(self, listener: EventListener) -> None:
        """Register a callback that sees every recorded event."""
        self._listeners.append(listener)

    # ── Recording & flushing ───────────────────────────────────────────────

    async def record(self, event: TelemetryEvent) -> bool:
        """Buffer ``event`` if it passes severity and sampling filters."""
        if not self.config.enabled:
            return False
        if self._closed:
            logger.debug("Telemetry engine closed; dropping %s", event.event_type)
            return False
        if event.severity.rank < self.config.min_severity.rank:
            return False
        if self.config.sampling_rate < 1.0 and self._rng.random() >= self.config.sampling_rate:
            self.dropped_events += 1
            return False

        self._buffer.append(event)
        self._recent.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Telemetry listener failed for %s", event.event_type, exc_info=True)

        if self.config.flush_interval_ms == 0 or len(self._buffer) >= self.config.buffer_size:
            await self.flush()
        return True

    async def flush(self) -> int:
        """Write buffered events to every sink. Returns the number drained."""
        events, self._buffer = self._buffer, []
        if not events or not self.sinks:
            return len(events)
        results = await asyncio.gather(
            *(sink.write_events(events) for sink in self.sinks), return_exceptions=True
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Telemetry sink %s failed to write %d event(s): %s",
                    sink.name,
                    len(events),
                    result,
                )
        logger.debug("Flushed %d telemetry event(s) to %d sink(s)", len(events), len(self.sinks))
        return len(events)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def recent_events(self) -> list[TelemetryEvent]:
        return list(self._recent)

    async def query_events(self, query: TelemetryQueryFilter | None = None) -> list[TelemetryEvent]:
        """Query every queryable sink (or the in-memory window if none), newest first."""
        query = query or TelemetryQueryFilter()
        queryable = [s for s in self.sinks if s.queryable]
        if not queryable:
            return query.apply(self._recent)

        results = await asyncio.gather(
            *(sink.query_events(query) for sink in queryable), return_exceptions=True
        )
        merged: dict[str, TelemetryEvent] = {}
        for sink, result in zip(queryable, results):
            if isinstance(result, BaseException):
                logger.warning("Telemetry sink %s query failed: %s", sink.name, result)
                continue
            for event in result:
                merged.setdefault(event.event_id, event)
        return query.apply(merged.values())

    # ── Chain correlation ──────────────────────────────────────────────────

    def get_chain(self, contract_id: str) -> ChainCorrelation | None:
        chain = self._chains.get(contract_id)
        return chain.snapshot() if chain else None

    def chains(self) -> dict[str, ChainCorrelation]:
        return {cid: chain.snapshot() for cid, chain in self._chains.items()}

    def _correlate(
        self,
        contract_id: str,
        parent_id: str | None = None,
        root_id: str | None = None,
        depth: int | None = None,
        participants: Iterable[str] = (),
    ) -> tuple[ChainCorrelation, bool]:
        """Return the chain record for ``contract_id``, creating it on first reference."""
        participants = [p for p in participants if p]
        existing = self._chains.get(contract_id)
        if existing is not None:
            if depth is not None:
                existing.raise_depth(depth)
            existing.add_participants(*participants)
            return existing, False

        parent = self._chains.get(parent_id) if parent_id else None
        if root_id is None:
            if parent is not None:
                root_id = parent.root_delegation_id
            else:
                root_id = parent_id or contract_id
        if depth is None:
            depth = parent.chain_depth + 1 if parent is not None else 0

        root = self._chains.get(root_id) if root_id != contract_id else None
        chain = ChainCorrelation(
            root_delegation_id=root_id,
            parent_delegation_id=parent_id,
            chain_depth=depth,
        )
        if root is not None:
            chain.chain_started_at = root.chain_started_at
            root.count_contracts(root.total_chain_contracts + 1)
            root.add_participants(*participants)
            chain.add_participants(*root.chain_participants)
            chain.count_contracts(root.total_chain_contracts)
        chain.add_participants(*participants)
        self._chains[contract_id] = chain
        logger.debug("Chain record for %s created (root %s, depth %d)", contract_id, root_id, depth)
        return chain, True

    async def _emit(
        self,
        event_type: EventType,
        contract_id: str,
        chain: ChainCorrelation,
        severity: Severity = Severity.INFO,
        event_data: dict[str, Any] | None = None,
        execution_id: str | None = None,
        performance_metrics: PerformanceMetrics | None = None,
        agent_id: str | None = None,
    ) -> TelemetryEvent:
        event = TelemetryEvent(
            event_type=event_type,
            agent_id=agent_id or self.agent_id,
            contract_id=contract_id,
            chain_correlation=chain.snapshot(),
            severity=severity,
            event_data=event_data or {},
            execution_id=execution_id,
            performance_metrics=performance_metrics,
        )
        await self.record(event)
        return event

    async def _chain_for(self, contract_id: str, **kwargs: Any) -> ChainCorrelation:
        chain, created = self._correlate(contract_id, **kwargs)
        if created and self.config.enable_chain_correlation:
            event_type = (
                EventType.CHAIN_CREATED
                if chain.root_delegation_id == contract_id
                else EventType.CHAIN_UPDATED
            )
            await self._emit(
                event_type,
                contract_id,
                chain,
                event_data={
                    "root_delegation_id": chain.root_delegation_id,
                    "chain_depth": chain.chain_depth,
                    "total_chain_contracts": chain.total_chain_contracts,
                },
            )
        return chain

    # ── Lifecycle events ───────────────────────────────────────────────────

    async def log_contract_created(self, contract: DelegationContract) -> TelemetryEvent:
        metadata = contract.metadata
        chain = await self._chain_for(
            contract.contract_id,
            parent_id=metadata.parent_contract_id,
            root_id=metadata.root_contract_id,
            depth=metadata.delegation_depth,
            participants=(contract.delegator_agent_id, contract.delegatee_agent_id),
        )
        return await self._emit(
            EventType.CONTRACT_CREATED,
            contract.contract_id,
            chain,
            event_data={
                "task_id": contract.task_id,
                "delegator_agent_id": contract.delegator_agent_id,
                "delegatee_agent_id": contract.delegatee_agent_id,
                "priority": contract.priority,
                "timeout_ms": contract.timeout_ms,
                "verification_policy": str(contract.verification_policy),
                "required_capabilities": [
                    r.capability_id for r in contract.required_capabilities
                ],
            },
        )

    async def log_contract_accepted(
        self, contract_id: str, decision: AcceptanceDecision
    ) -> TelemetryEvent:
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        return await self._emit(
            EventType.CONTRACT_ACCEPTED,
            contract_id,
            chain,
            event_data={
                "confidence": decision.confidence,
                "estimated_completion_ms": decision.estimated_completion_ms,
                "assessment": decision.assessment.to_dict(),
            },
        )

    async def log_contract_rejected(
        self, contract_id: str, decision: AcceptanceDecision
    ) -> TelemetryEvent:
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        if chain.finish(ChainStatus.CANCELLED):
            logger.debug("Chain record for %s closed after rejection", contract_id)
        return await self._emit(
            EventType.CONTRACT_REJECTED,
            contract_id,
            chain,
            severity=Severity.WARNING,
            event_data={"reason": decision.reason, "gate": str(decision.gate) if decision.gate else None},
        )

    async def log_progress(self, update: ProgressUpdate) -> TelemetryEvent:
        contract_id = update.contract_id or update.execution_id
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        return await self._emit(
            EventType.PROGRESS_UPDATE,
            contract_id,
            chain,
            event_data=update.to_dict(),
            execution_id=update.execution_id,
        )

    async def log_task_completed(
        self,
        contract_id: str,
        result: ExecutionResult,
        metrics: PerformanceMetrics | None = None,
    ) -> TelemetryEvent:
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        chain.finish(ChainStatus.COMPLETED)
        return await self._emit(
            EventType.TASK_COMPLETED,
            contract_id,
            chain,
            event_data={
                "success": result.success,
                "status": str(result.status),
                "verification": result.verification.to_dict() if result.verification else None,
                "metrics": result.metrics.to_dict(),
            },
            execution_id=result.execution_id,
            performance_metrics=metrics,
        )

    async def log_task_failed(
        self,
        contract_id: str,
        execution_id: str,
        error: ErrorInfo,
        metrics: PerformanceMetrics | None = None,
    ) -> TelemetryEvent:
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        chain.finish(ChainStatus.FAILED)
        return await self._emit(
            EventType.TASK_FAILED,
            contract_id,
            chain,
            severity=Severity.ERROR,
            event_data={"error": error.to_dict()},
            execution_id=execution_id,
            performance_metrics=metrics,
        )

    async def log_firebreak_triggered(
        self, contract_id: str, violation: FirebreakViolation
    ) -> TelemetryEvent:
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        return await self._emit(
            EventType.FIREBREAK_TRIGGERED,
            contract_id,
            chain,
            severity=Severity.WARNING,
            event_data=violation.to_dict(),
        )

    async def log_escalation(
        self, contract_id: str, reason: str, escalated_to: str | None = None
    ) -> TelemetryEvent:
        chain = await self._chain_for(
            contract_id, participants=(self.agent_id, escalated_to or "")
        )
        return await self._emit(
            EventType.ESCALATION,
            contract_id,
            chain,
            severity=Severity.WARNING,
            event_data={"reason": reason, "escalated_to": escalated_to},
        )

    async def log_performance(
        self, contract_id: str, metrics: PerformanceMetrics, execution_id: str | None = None
    ) -> TelemetryEvent:
        chain = await self._chain_for(contract_id, participants=(self.agent_id,))
        return await self._emit(
            EventType.PERFORMANCE_MEASURED,
            contract_id,
            chain,
            event_data=metrics.to_dict(),
            execution_id=execution_id,
            performance_metrics=metrics,
        )
