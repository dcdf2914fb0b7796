"""
Retry policy evaluation.

Delay before retry n (n = 1 for the first retry), capped at max_delay_ms:

    none:        initial
    linear:      initial * n
    exponential: initial * 2^(n-1)

An error is retried only when it matches one of the policy's retry
conditions. When the policy leaves ``retry_conditions`` unset the default
set is timeout and network errors; an explicit empty list never retries.
"""

from __future__ import annotations

import asyncio

from delegator.errors import ExecutionTimeout, ResourceUnavailableError
from delegator.models.contracts import (
    DEFAULT_RETRY_CONDITIONS,
    BackoffStrategy,
    RetryCondition,
    RetryPolicy,
)

_TIMEOUT_MARKERS = ("timeout", "timed out")
_NETWORK_MARKERS = ("network", "econnreset", "enotfound", "econnrefused", "connection")
_RESOURCE_MARKERS = ("resource", "limit", "capacity")


def compute_retry_delay(retry_number: int, policy: RetryPolicy | None) -> int:
    """Milliseconds to wait before retry ``retry_number``."""
    if policy is None or retry_number < 1:
        return 0
    initial = policy.initial_delay_ms
    if policy.backoff_strategy == BackoffStrategy.LINEAR:
        delay = initial * retry_number
    elif policy.backoff_strategy == BackoffStrategy.EXPONENTIAL:
        delay = initial * 2 ** (retry_number - 1)
    else:
        delay = initial
    return min(delay, policy.max_delay_ms)


def classify_error(error: BaseException) -> set[RetryCondition]:
    """Map an exception to the retry conditions it satisfies."""
    conditions: set[RetryCondition] = set()
    if isinstance(error, (ExecutionTimeout, asyncio.TimeoutError, TimeoutError)):
        conditions.add(RetryCondition.TIMEOUT)
    if isinstance(error, ConnectionError):
        conditions.add(RetryCondition.NETWORK_ERROR)
    if isinstance(error, (ResourceUnavailableError, MemoryError)):
        conditions.add(RetryCondition.RESOURCE_UNAVAILABLE)

    message = str(error).lower()
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        conditions.add(RetryCondition.TIMEOUT)
    if any(marker in message for marker in _NETWORK_MARKERS):
        conditions.add(RetryCondition.NETWORK_ERROR)
    if any(marker in message for marker in _RESOURCE_MARKERS):
        conditions.add(RetryCondition.RESOURCE_UNAVAILABLE)
    return conditions


def should_retry(error: BaseException, policy: RetryPolicy | None) -> bool:
    allowed = policy.effective_conditions if policy else DEFAULT_RETRY_CONDITIONS
    return bool(classify_error(error) & set(allowed))
