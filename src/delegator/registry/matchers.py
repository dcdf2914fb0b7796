"""Task-to-capability matchers.

A matcher decides whether a task counts as an exercise of a capability. The
self-assessment loop uses it to pick the recent outcomes relevant to each
capability.

- ``ExactIdMatcher`` (default): the task declared the capability id.
- ``PatternMatcher``: the task text matches one of the capability's
  ``supported_patterns`` as a case-insensitive regex (plain substring when a
  pattern is not a valid regex).
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Protocol, Sequence

from delegator.models.capabilities import Capability


class TaskMatcher(Protocol):
    def matches(
        self, capability: Capability, task_description: str, capability_ids: Sequence[str]
    ) -> bool: ...


class ExactIdMatcher:
    """Match when the task explicitly names the capability."""

    def matches(
        self, capability: Capability, task_description: str, capability_ids: Sequence[str]
    ) -> bool:
        return capability.capability_id in capability_ids


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


class PatternMatcher:
    """Match task text against the capability's supported patterns."""

    def __init__(self, fallback_to_id: bool = True) -> None:
        self.fallback_to_id = fallback_to_id

    def matches(
        self, capability: Capability, task_description: str, capability_ids: Sequence[str]
    ) -> bool:
        if self.fallback_to_id and capability.capability_id in capability_ids:
            return True
        for pattern in capability.supported_patterns:
            compiled = _compile(pattern)
            if compiled is None:
                if pattern.lower() in task_description.lower():
                    return True
            elif compiled.search(task_description):
                return True
        return False
