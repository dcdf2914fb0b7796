"""FastAPI server exposing the capability registry, admission and telemetry."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncGenerator
from typing import Any

import click
from fastapi import FastAPI
from fastapi.responses import StreamingResponse

from delegator import __version__
from delegator.admission.engine import AdmissionEngine, AgentState
from delegator.errors import AgentNotFoundError, ChainNotFoundError, DelegationError
from delegator.models.capabilities import CapabilityManifest, CapabilityQuery
from delegator.models.contracts import DelegationContract
from delegator.registry.capability_registry import CapabilityRegistry
from delegator.telemetry.analysis import AnomalyThresholds, analyze_chain, find_anomalies
from delegator.telemetry.engine import TelemetryConfig, TelemetryEngine
from delegator.telemetry.events import TelemetryEvent, TelemetryQueryFilter
from delegator.telemetry.sinks import InMemoryTelemetrySink

app = FastAPI(
    title="Agent Delegator API",
    version=__version__,
    description="Capability discovery, contract admission and delegation telemetry",
)

_start_time = time.monotonic()
_registry = CapabilityRegistry()
_admission = AdmissionEngine(_registry)
_sink = InMemoryTelemetrySink()
_telemetry = TelemetryEngine("api", TelemetryConfig(flush_interval_ms=0), sinks=[_sink])


def _error(exc: BaseException) -> dict[str, Any]:
    return {"error": str(exc)}


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - _start_time
    return {
        "status": "ok",
        "version": __version__,
        "uptime_seconds": round(uptime, 1),
        "agents": len(_registry),
    }


# ── Manifests ─────────────────────────────────────────────────────────────


@app.get("/api/manifests")
async def list_manifests() -> dict[str, Any]:
    manifests = [m.to_dict() for m in _registry.list_manifests()]
    return {"manifests": manifests, "count": len(manifests), "stats": _registry.get_stats()}


@app.post("/api/manifests")
async def register_manifest(request: dict[str, Any]) -> dict[str, Any]:
    """Register or replace a capability manifest."""
    if not request.get("agent_id"):
        return {"error": "agent_id is required"}
    try:
        stored = _registry.register_manifest(CapabilityManifest.from_dict(request))
    except (DelegationError, ValueError, KeyError, TypeError) as exc:
        return _error(exc)
    return {"status": "registered", "manifest": stored.to_dict()}


@app.get("/api/manifests/{agent_id}")
async def get_manifest(agent_id: str) -> dict[str, Any]:
    manifest = _registry.get_manifest(agent_id)
    if manifest is None:
        return _error(AgentNotFoundError(agent_id))
    return {"manifest": manifest.to_dict()}


@app.patch("/api/manifests/{agent_id}")
async def update_manifest(agent_id: str, request: dict[str, Any]) -> dict[str, Any]:
    try:
        updated = _registry.update_manifest(agent_id, request)
    except (DelegationError, ValueError, KeyError, TypeError) as exc:
        return _error(exc)
    return {"status": "updated", "manifest": updated.to_dict()}


@app.delete("/api/manifests/{agent_id}")
async def delete_manifest(agent_id: str) -> dict[str, Any]:
    if not _registry.delete_manifest(agent_id):
        return _error(AgentNotFoundError(agent_id))
    return {"status": "deleted", "agent_id": agent_id}


# ── Discovery & admission ─────────────────────────────────────────────────


@app.post("/api/capabilities/query")
async def query_capabilities(request: dict[str, Any]) -> dict[str, Any]:
    """Find capabilities matching the query, best first."""
    try:
        query = CapabilityQuery.from_dict(request)
    except (DelegationError, ValueError) as exc:
        return _error(exc)
    limit = request.get("limit")
    matches = _registry.query_capabilities(query)
    if limit is not None:
        matches = matches[: int(limit)]
    return {"matches": [m.to_dict() for m in matches], "count": len(matches)}


@app.post("/api/contracts/evaluate")
async def evaluate_contract(request: dict[str, Any]) -> dict[str, Any]:
    """Admission decision for a contract against its delegatee's manifest.

    The body is the contract document, optionally wrapped as
    ``{"contract": {...}, "agent_state": {...}}``.
    """
    document = request.get("contract", request)
    try:
        contract = DelegationContract.from_dict(document)
    except (DelegationError, ValueError, KeyError, TypeError) as exc:
        return _error(exc)

    overrides = request.get("agent_state") or {}
    state = AgentState(
        agent_id=contract.delegatee_agent_id,
        current_workload=overrides.get("current_workload"),
        max_concurrent_tasks=overrides.get("max_concurrent_tasks"),
    )
    decision = _admission.evaluate(contract, state)
    return {"contract_id": contract.contract_id, "decision": decision.to_dict()}


# ── Telemetry ─────────────────────────────────────────────────────────────


@app.get("/api/telemetry/events")
async def list_events(
    agent_id: str | None = None,
    contract_id: str | None = None,
    chain_root_id: str | None = None,
    event_type: str | None = None,
    severity: str | None = None,
    limit: int = 100,
) -> dict[str, Any]:
    """Recorded events, newest first."""
    try:
        query = TelemetryQueryFilter.from_params(
            agent_id=agent_id,
            contract_id=contract_id,
            chain_root_id=chain_root_id,
            event_types=[event_type] if event_type else [],
            severities=[severity] if severity else [],
            limit=limit,
        )
    except ValueError as exc:
        return _error(exc)
    events = await _telemetry.query_events(query)
    return {"events": [e.to_dict() for e in events], "count": len(events)}


@app.post("/api/telemetry/events")
async def ingest_events(request: dict[str, Any]) -> dict[str, Any]:
    """Accept event documents recorded by remote agents."""
    documents = request.get("events")
    if not isinstance(documents, list):
        return {"error": "events must be a list"}
    try:
        events = [TelemetryEvent.from_dict(d) for d in documents]
    except (ValueError, KeyError, TypeError) as exc:
        return _error(exc)
    accepted = 0
    for event in events:
        if await _telemetry.record(event):
            accepted += 1
    return {"accepted": accepted, "received": len(events)}


@app.get("/api/chains/{root_id}")
async def get_chain(root_id: str) -> dict[str, Any]:
    events = await _telemetry.query_events(TelemetryQueryFilter(chain_root_id=root_id))
    try:
        analysis = analyze_chain(events, root_id)
    except ChainNotFoundError as exc:
        return _error(exc)
    return {"analysis": analysis.to_dict()}


@app.get("/api/anomalies")
async def anomalies(
    max_depth: int = 10,
    max_duration_ms: float = 300_000,
    min_success_rate: float = 0.8,
    max_retries: int = 5,
) -> dict[str, Any]:
    events = await _telemetry.query_events(TelemetryQueryFilter())
    thresholds = AnomalyThresholds(max_depth, max_duration_ms, min_success_rate, max_retries)
    found = find_anomalies(events, thresholds)
    return {"anomalies": [a.to_dict() for a in found], "count": len(found)}


@app.get("/api/telemetry/stream")
async def stream() -> StreamingResponse:
    """SSE endpoint for newly recorded telemetry events."""

    async def event_generator() -> AsyncGenerator[str, None]:
        seen = {e.event_id for e in _sink.events}
        while True:
            fresh = [e for e in _sink.events if e.event_id not in seen]
            for event in fresh:
                seen.add(event.event_id)
                yield f"data: {json.dumps(event.to_dict(), default=str)}\n\n"
            await asyncio.sleep(1)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@click.command()
@click.option("--port", default=3850, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Delegator API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
