"""Domain models for plans, tasks, build results and run identifiers."""

from cruise_orchestrator.domain.ids import generate_run_id, short_id
from cruise_orchestrator.domain.models import (
    BuildResult,
    Plan,
    Task,
    TaskComplexity,
    TaskCounts,
    TaskResult,
    TaskStatus,
)

__all__ = [
    "BuildResult",
    "Plan",
    "Task",
    "TaskComplexity",
    "TaskCounts",
    "TaskResult",
    "TaskStatus",
    "generate_run_id",
    "short_id",
]
