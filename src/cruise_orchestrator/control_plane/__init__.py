"""Control-plane public API."""

from cruise_orchestrator.control_plane.approval import (
    ApprovalPoller,
    ApprovalRejectedError,
    ApprovalSource,
    ApprovalSourceError,
    ApprovalTimeoutError,
)
from cruise_orchestrator.control_plane.build import WatcherTaskRunner
from cruise_orchestrator.control_plane.phase import ReviewPhaseConfig, ReviewPhaseSupervisor
from cruise_orchestrator.control_plane.scheduler import (
    TaskAttempt,
    TaskOutcome,
    TaskRunner,
    WaveExecutor,
    retry_prompt,
)

__all__ = [
    "ApprovalPoller",
    "ApprovalRejectedError",
    "ApprovalSource",
    "ApprovalSourceError",
    "ApprovalTimeoutError",
    "ReviewPhaseConfig",
    "ReviewPhaseSupervisor",
    "TaskAttempt",
    "TaskOutcome",
    "TaskRunner",
    "WaveExecutor",
    "retry_prompt",
]
