"""Shared fixtures for the delegator test suite."""

from __future__ import annotations

from typing import Any

import pytest

from delegator.models.capabilities import Capability, CapabilityManifest
from delegator.models.contracts import DelegationContract
from delegator.registry.capability_registry import CapabilityRegistry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_capability(capability_id: str = "code_generation", **kwargs: Any) -> Capability:
    defaults: dict[str, Any] = {
        "name": capability_id.replace("_", " ").title(),
        "confidence_level": 0.85,
        "success_rate": 0.9,
        "successful_completions": 100,
        "completion_time_estimate_ms": 30_000,
    }
    defaults.update(kwargs)
    return Capability(capability_id=capability_id, **defaults)


def make_manifest(agent_id: str = "agent-a", *capabilities: Capability, **kwargs: Any) -> CapabilityManifest:
    return CapabilityManifest(
        agent_id=agent_id,
        agent_name=kwargs.pop("agent_name", agent_id.upper()),
        capabilities=list(capabilities) or [make_capability()],
        **kwargs,
    )


def make_contract(contract_id: str = "contract-1", **kwargs: Any) -> DelegationContract:
    fields: dict[str, Any] = {
        "task_id": f"task-{contract_id}",
        "delegator_agent_id": "orchestrator",
        "delegatee_agent_id": "agent-a",
        "task_description": "Write a parser",
        "timeout_ms": 60_000,
    }
    fields.update(kwargs)
    return DelegationContract(contract_id=contract_id, **fields)


@pytest.fixture
def registry() -> CapabilityRegistry:
    reg = CapabilityRegistry()
    reg.register_manifest(make_manifest("agent-a"))
    return reg
