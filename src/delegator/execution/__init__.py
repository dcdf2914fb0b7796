"""Task execution: timeout/retry engine, checkpoints and self-assessment."""

from delegator.execution.assessment import (
    AssessmentPolicy,
    CapabilityAssessment,
    CapabilityAssessor,
    ConfidenceChange,
)
from delegator.execution.checkpoints import (
    CHECKPOINTS,
    Checkpoint,
    Phase,
    ProgressUpdate,
    checkpoints_for,
    completed_checkpoints,
)
from delegator.execution.engine import ExecutionEngine, ProgressReporter, TaskBody
from delegator.execution.retry import classify_error, compute_retry_delay, should_retry

__all__ = [
    "AssessmentPolicy",
    "CHECKPOINTS",
    "CapabilityAssessment",
    "CapabilityAssessor",
    "Checkpoint",
    "ConfidenceChange",
    "ExecutionEngine",
    "Phase",
    "ProgressReporter",
    "ProgressUpdate",
    "TaskBody",
    "checkpoints_for",
    "classify_error",
    "completed_checkpoints",
    "compute_retry_delay",
    "should_retry",
]
