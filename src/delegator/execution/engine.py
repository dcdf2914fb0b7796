"""
Execution Engine — Runs Accepted Work Under Timeout and Retry Discipline

Each attempt races the task body against the timeout with
``asyncio.wait_for``. Losing the race moves the execution to ``timeout`` and
raises ``ExecutionTimeout``, which is retryable. The retry wrapper makes
``1 + max_retries`` attempts, sleeping the policy's backoff delay between
them, and re-raises the last error once attempts run out or the error does
not match the policy's retry conditions.

Suspension points: the timeout race, the inter-retry delay, and whatever
progress pauses the task body makes.

Shutdown marks every in-flight execution failed and stops further retries;
work that finishes after shutdown is discarded with ``ShutdownInterrupt``.

Usage:
    from delegator.execution import ExecutionEngine

    engine = ExecutionEngine()
    output = await engine.run(context, body, timeout_ms=5000, retry_policy=policy)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from delegator.errors import ExecutionTimeout, ShutdownInterrupt
from delegator.execution.checkpoints import Phase, ProgressUpdate, checkpoints_for
from delegator.execution.retry import compute_retry_delay, should_retry
from delegator.models.contracts import RetryPolicy
from delegator.models.execution import ExecutionContext, ExecutionStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 300_000

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]
# (context, upcoming attempt number, error that triggered the retry, delay_ms)
RetryCallback = Callable[[ExecutionContext, int, BaseException, int], Awaitable[None]]


class ProgressReporter:
    """Handed to task bodies so they can report fractional progress."""

    def __init__(
        self,
        context: ExecutionContext,
        on_progress: ProgressCallback | None = None,
        is_closing: Callable[[], bool] = lambda: False,
    ) -> None:
        self.context = context
        self.on_progress = on_progress
        self._is_closing = is_closing

    async def __call__(
        self, fraction: float, phase: Phase = Phase.EXECUTION, message: str = ""
    ) -> ProgressUpdate:
        if phase == Phase.EXECUTION:
            fraction = self.context.set_progress(fraction)
        else:
            fraction = min(1.0, max(0.0, fraction))
        percentage = round(fraction * 100, 1)
        elapsed = self.context.elapsed_ms
        remaining = elapsed / fraction * (1.0 - fraction) if fraction > 0 else None

        update = ProgressUpdate(
            execution_id=self.context.execution_id,
            contract_id=self.context.contract_id,
            phase=Phase(phase),
            percentage=percentage,
            checkpoints=checkpoints_for(phase, percentage),
            elapsed_ms=elapsed,
            estimated_remaining_ms=remaining,
            message=message,
        )
        if self.on_progress is not None and not self._is_closing():
            await self.on_progress(update)
        return update


TaskBody = Callable[[ExecutionContext, ProgressReporter], Awaitable[Any]]


class ExecutionEngine:
    """Timeout/retry executor for one agent's task set."""

    def __init__(self, default_timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self.default_timeout_ms = default_timeout_ms
        self._active: dict[str, ExecutionContext] = {}
        self._closing = False
        self._shutdown_event = asyncio.Event()

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def active_executions(self) -> list[ExecutionContext]:
        return list(self._active.values())

    def reporter(
        self, context: ExecutionContext, on_progress: ProgressCallback | None = None
    ) -> ProgressReporter:
        return ProgressReporter(context, on_progress, lambda: self._closing)

    async def run(
        self,
        context: ExecutionContext,
        body: TaskBody,
        timeout_ms: int | None = None,
        retry_policy: RetryPolicy | None = None,
        on_progress: ProgressCallback | None = None,
        on_retry: RetryCallback | None = None,
    ) -> Any:
        """Run ``body`` to completion, retrying per ``retry_policy``.

        Returns:
            Whatever the task body returned

        Raises:
            ExecutionTimeout: the final attempt timed out
            ShutdownInterrupt: the engine shut down while the task was in flight
            Exception: the final attempt's own error, unchanged
        """
        if self._closing:
            raise ShutdownInterrupt(f"Engine shut down; {context.execution_id} not started")

        timeout_ms = timeout_ms or self.default_timeout_ms
        reporter = self.reporter(context, on_progress)
        self._active[context.execution_id] = context
        try:
            return await self._run_with_retry(context, body, timeout_ms, retry_policy,
                                              reporter, on_retry)
        finally:
            self._active.pop(context.execution_id, None)

    async def _run_with_retry(
        self,
        context: ExecutionContext,
        body: TaskBody,
        timeout_ms: int,
        policy: RetryPolicy | None,
        reporter: ProgressReporter,
        on_retry: RetryCallback | None,
    ) -> Any:
        max_attempts = 1 + (policy.max_retries if policy else 0)
        last_error: BaseException | None = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1 and last_error is not None:
                delay_ms = compute_retry_delay(attempt - 1, policy)
                logger.info(
                    "Retrying %s (attempt %d/%d) in %dms after: %s",
                    context.execution_id,
                    attempt,
                    max_attempts,
                    delay_ms,
                    last_error,
                )
                if on_retry is not None:
                    await on_retry(context, attempt, last_error, delay_ms)
                await self._pause(delay_ms)

            try:
                return await self._attempt(context, body, timeout_ms, reporter)
            except ShutdownInterrupt:
                raise
            except Exception as exc:
                last_error = exc
                if self._closing:
                    raise ShutdownInterrupt(
                        f"Execution {context.execution_id} interrupted by shutdown"
                    ) from exc
                if attempt >= max_attempts or not should_retry(exc, policy):
                    raise

        raise AssertionError("unreachable")  # pragma: no cover

    async def _attempt(
        self,
        context: ExecutionContext,
        body: TaskBody,
        timeout_ms: int,
        reporter: ProgressReporter,
    ) -> Any:
        if self._closing:
            raise ShutdownInterrupt(f"Execution {context.execution_id} interrupted by shutdown")
        context.attempts += 1
        context.transition(ExecutionStatus.RUNNING)

        try:
            output = await asyncio.wait_for(body(context, reporter), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            if self._closing:
                raise ShutdownInterrupt(
                    f"Execution {context.execution_id} interrupted by shutdown"
                ) from None
            context.transition(ExecutionStatus.TIMEOUT)
            raise ExecutionTimeout(
                f"Task execution timeout after {timeout_ms}ms", timeout_ms=timeout_ms
            ) from None
        except Exception:
            if not self._closing:
                context.transition(ExecutionStatus.FAILED)
            raise

        if self._closing:
            raise ShutdownInterrupt(
                f"Execution {context.execution_id} finished after shutdown; result discarded"
            )
        context.transition(ExecutionStatus.COMPLETED)
        return output

    async def _pause(self, delay_ms: int) -> None:
        if self._closing:
            raise ShutdownInterrupt("Engine shut down during retry delay")
        if delay_ms <= 0:
            return
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay_ms / 1000.0)
        except asyncio.TimeoutError:
            return
        raise ShutdownInterrupt("Engine shut down during retry delay")

    def shutdown(self) -> list[ExecutionContext]:
        """Stop accepting work and mark in-flight executions failed.

        Returns:
            The executions that were in flight
        """
        self._closing = True
        self._shutdown_event.set()
        interrupted = list(self._active.values())
        for context in interrupted:
            if context.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
                context.transition(ExecutionStatus.FAILED)
        if interrupted:
            logger.warning("Shutdown interrupted %d in-flight execution(s)", len(interrupted))
        return interrupted
