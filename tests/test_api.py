"""Tests for the FastAPI server."""

from __future__ import annotations

from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import make_capability, make_contract, make_manifest
from delegator.api import server
from delegator.api.server import app
from delegator.telemetry import ChainCorrelation, ChainStatus, EventType, Severity, TelemetryEvent

pytestmark = pytest.mark.anyio


@pytest.fixture(autouse=True)
def reset_state():
    server._registry.clear()
    server._sink.clear()
    yield
    server._registry.clear()
    server._sink.clear()


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _register(client: AsyncClient, *manifests) -> None:
    for manifest in manifests:
        response = await client.post("/api/manifests", json=manifest.to_dict())
        assert response.json()["status"] == "registered"


def _event_doc(contract_id: str, event_type: EventType, root: str = "root", **kwargs: Any) -> dict:
    chain = ChainCorrelation(root, chain_depth=kwargs.pop("depth", 0))
    if event_type == EventType.TASK_FAILED:
        chain.finish(ChainStatus.FAILED)
    return TelemetryEvent(
        event_type=event_type,
        agent_id=kwargs.pop("agent_id", "agent-a"),
        contract_id=contract_id,
        chain_correlation=chain,
        **kwargs,
    ).to_dict()


# ═══════════════════════════════════════════════════════════════════════════
# HEALTH & MANIFESTS
# ═══════════════════════════════════════════════════════════════════════════


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert "uptime_seconds" in data
    assert data["agents"] == 0


async def test_register_requires_agent_id(client: AsyncClient) -> None:
    response = await client.post("/api/manifests", json={"capabilities": []})
    assert response.status_code == 200
    assert "error" in response.json()


async def test_register_rejects_invalid_manifest(client: AsyncClient) -> None:
    response = await client.post(
        "/api/manifests", json={"agent_id": "x", "availability": "sleeping"}
    )
    assert "Unknown availability" in response.json()["error"]


async def test_manifest_lifecycle(client: AsyncClient) -> None:
    await _register(client, make_manifest("agent-a"))

    listed = (await client.get("/api/manifests")).json()
    assert listed["count"] == 1
    assert listed["stats"]["total_agents"] == 1

    fetched = (await client.get("/api/manifests/agent-a")).json()
    assert fetched["manifest"]["agent_id"] == "agent-a"

    updated = (
        await client.patch("/api/manifests/agent-a", json={"availability": "busy"})
    ).json()
    assert updated["status"] == "updated"
    assert updated["manifest"]["availability"] == "busy"

    deleted = (await client.delete("/api/manifests/agent-a")).json()
    assert deleted == {"status": "deleted", "agent_id": "agent-a"}
    missing = (await client.get("/api/manifests/agent-a")).json()
    assert missing["error"] == "Agent not registered: agent-a"


async def test_update_unknown_field(client: AsyncClient) -> None:
    await _register(client, make_manifest("agent-a"))
    response = await client.patch("/api/manifests/agent-a", json={"agent_id": "other"})
    assert "Cannot update manifest fields" in response.json()["error"]


async def test_delete_unknown(client: AsyncClient) -> None:
    response = await client.delete("/api/manifests/ghost")
    assert "error" in response.json()


# ═══════════════════════════════════════════════════════════════════════════
# DISCOVERY & ADMISSION
# ═══════════════════════════════════════════════════════════════════════════


async def test_query_capabilities(client: AsyncClient) -> None:
    await _register(
        client,
        make_manifest("agent-a"),
        make_manifest("agent-b", make_capability("review", confidence_level=0.7)),
    )
    response = await client.post(
        "/api/capabilities/query", json={"required_capabilities": ["review"]}
    )
    data = response.json()
    assert data["count"] == 1
    assert data["matches"][0]["agent_id"] == "agent-b"

    limited = (await client.post("/api/capabilities/query", json={"limit": 1})).json()
    assert limited["count"] == 1


async def test_query_invalid(client: AsyncClient) -> None:
    response = await client.post("/api/capabilities/query", json={"min_confidence": 3})
    assert "error" in response.json()


async def test_evaluate_accepts(client: AsyncClient) -> None:
    await _register(client, make_manifest("agent-a"))
    response = await client.post("/api/contracts/evaluate", json=make_contract().to_dict())
    data = response.json()
    assert data["contract_id"] == "contract-1"
    assert data["decision"]["can_accept"] is True


async def test_evaluate_with_agent_state(client: AsyncClient) -> None:
    await _register(client, make_manifest("agent-a"))
    response = await client.post(
        "/api/contracts/evaluate",
        json={"contract": make_contract().to_dict(), "agent_state": {"current_workload": 5}},
    )
    decision = response.json()["decision"]
    assert decision["can_accept"] is False
    assert decision["gate"] == "concurrency"


async def test_evaluate_invalid_contract(client: AsyncClient) -> None:
    response = await client.post("/api/contracts/evaluate", json={"contract": {}})
    assert "error" in response.json()


# ═══════════════════════════════════════════════════════════════════════════
# TELEMETRY
# ═══════════════════════════════════════════════════════════════════════════


async def test_ingest_and_list_events(client: AsyncClient) -> None:
    docs = [
        _event_doc("root", EventType.CONTRACT_CREATED),
        _event_doc("child", EventType.TASK_FAILED, depth=1, severity=Severity.ERROR),
    ]
    ingested = (await client.post("/api/telemetry/events", json={"events": docs})).json()
    assert ingested == {"accepted": 2, "received": 2}

    listed = (await client.get("/api/telemetry/events")).json()
    assert listed["count"] == 2

    errors = (await client.get("/api/telemetry/events", params={"severity": "error"})).json()
    assert [e["contract_id"] for e in errors["events"]] == ["child"]

    by_type = (
        await client.get(
            "/api/telemetry/events", params={"event_type": "delegation_contract_created"}
        )
    ).json()
    assert by_type["count"] == 1


async def test_ingest_requires_list(client: AsyncClient) -> None:
    response = await client.post("/api/telemetry/events", json={"events": "nope"})
    assert response.json() == {"error": "events must be a list"}


async def test_list_events_bad_filter(client: AsyncClient) -> None:
    response = await client.get("/api/telemetry/events", params={"severity": "loud"})
    assert "error" in response.json()


async def test_chain_analysis(client: AsyncClient) -> None:
    docs = [
        _event_doc("root", EventType.CONTRACT_CREATED),
        _event_doc("child", EventType.CONTRACT_CREATED, depth=1, agent_id="agent-b"),
        _event_doc("child", EventType.TASK_COMPLETED, depth=1, agent_id="agent-b"),
    ]
    await client.post("/api/telemetry/events", json={"events": docs})

    analysis = (await client.get("/api/chains/root")).json()["analysis"]
    assert analysis["total_contracts"] == 2
    assert analysis["max_depth"] == 1
    assert analysis["success_rate"] == 1.0
    assert len(analysis["timeline"]) == 3

    missing = (await client.get("/api/chains/elsewhere")).json()
    assert missing["error"] == "No events found for chain elsewhere"


async def test_anomalies(client: AsyncClient) -> None:
    docs = [_event_doc("root", EventType.TASK_FAILED)]
    await client.post("/api/telemetry/events", json={"events": docs})

    data = (await client.get("/api/anomalies")).json()
    assert data["count"] == 1
    assert data["anomalies"][0]["anomaly_type"] == "low_success_rate"
    assert data["anomalies"][0]["severity"] == "critical"

    relaxed = (await client.get("/api/anomalies", params={"min_success_rate": 0})).json()
    assert relaxed["count"] == 0
