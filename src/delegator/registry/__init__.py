"""Capability registry and task matchers."""

from delegator.registry.capability_registry import (
    CapabilityRegistry,
    RegistryEvent,
    capability_score,
    match_priority,
)
from delegator.registry.matchers import ExactIdMatcher, PatternMatcher, TaskMatcher

__all__ = [
    "CapabilityRegistry",
    "ExactIdMatcher",
    "PatternMatcher",
    "RegistryEvent",
    "TaskMatcher",
    "capability_score",
    "match_priority",
]
