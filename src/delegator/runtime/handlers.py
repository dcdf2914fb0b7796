"""Ready-made task bodies.

The provider layer that really performs a task is opaque to the runtime: any
``async (context, report) -> output`` callable works. ``simulated_handler``
stands in for it in the CLI and in tests.
"""

from __future__ import annotations

import asyncio
from typing import Any

from delegator.execution.engine import ProgressReporter, TaskBody
from delegator.models.execution import ExecutionContext


def simulated_handler(
    steps: int = 4,
    step_delay_s: float = 0.05,
    fail_with: BaseException | None = None,
    output: Any = None,
) -> TaskBody:
    """Build a task body that reports progress over ``steps`` pauses.

    Args:
        steps: Number of progress steps (default: 4, one per execution checkpoint)
        step_delay_s: Pause between steps in seconds
        fail_with: Exception raised after the first step, if given
        output: Value returned on success (default: a summary dict)
    """
    if steps < 1:
        raise ValueError(f"steps must be >= 1, got {steps}")

    async def body(context: ExecutionContext, report: ProgressReporter) -> Any:
        for step in range(1, steps + 1):
            await asyncio.sleep(step_delay_s)
            await report(step / steps, message=f"step {step}/{steps}")
            if fail_with is not None:
                raise fail_with
        if output is not None:
            return output
        return {
            "task": context.task_description,
            "parameters": dict(context.parameters),
            "steps": steps,
        }

    return body
