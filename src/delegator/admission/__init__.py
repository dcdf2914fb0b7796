"""Contract admission: gates, reputation and duration estimation."""

from delegator.admission.engine import AdmissionEngine, AgentState, ResourceLimits
from delegator.admission.estimator import estimate_task_duration
from delegator.admission.reputation import ReputationSnapshot, TaskHistory

__all__ = [
    "AdmissionEngine",
    "AgentState",
    "ReputationSnapshot",
    "ResourceLimits",
    "TaskHistory",
    "estimate_task_duration",
]
