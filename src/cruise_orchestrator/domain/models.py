"""Task, plan and build-result models."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Set


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.SKIPPED})


class TaskComplexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of delegated work and its dependency edges."""

    id: str
    subject: str
    description: str = ""
    dependencies: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    complexity: TaskComplexity = TaskComplexity.MEDIUM
    component: str | None = None
    acceptance_criteria: tuple[str, ...] = ()
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("task id must not be empty")
        if self.id in self.dependencies:
            raise ValueError(f"task {self.id!r} must not depend on itself")
        if len(set(self.dependencies)) != len(self.dependencies):
            raise ValueError(f"task {self.id!r} lists a dependency more than once")

    def is_ready(self, completed: Set[str]) -> bool:
        """Pending and every dependency already completed."""
        return self.status is TaskStatus.PENDING and all(
            dependency in completed for dependency in self.dependencies
        )

    def with_status(
        self,
        status: TaskStatus,
        *,
        error: str | None = None,
        now: datetime | None = None,
    ) -> Task:
        timestamp = now if now is not None else datetime.now(tz=UTC)
        started_at = self.started_at
        finished_at = self.finished_at
        if status is TaskStatus.IN_PROGRESS and started_at is None:
            started_at = timestamp
        if status.is_terminal:
            finished_at = timestamp
        return replace(
            self,
            status=status,
            error=error,
            started_at=started_at,
            finished_at=finished_at,
        )


@dataclass(frozen=True, slots=True)
class TaskCounts:
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.blocked + self.skipped


class Plan:
    """Ordered, ID-unique collection of tasks; insertion order is significant."""

    __slots__ = ("_tasks", "title")

    def __init__(self, title: str, tasks: Iterable[Task] = ()) -> None:
        self.title = title
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise ValueError(f"duplicate task id {task.id!r}")
            self._tasks[task.id] = task

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(tuple(self._tasks.values()))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"unknown task: {task_id}") from None

    def replace_task(self, task: Task) -> None:
        if task.id not in self._tasks:
            raise KeyError(f"unknown task: {task.id}")
        self._tasks[task.id] = task

    def completed_ids(self) -> frozenset[str]:
        return frozenset(
            task.id for task in self._tasks.values() if task.status is TaskStatus.COMPLETED
        )

    def ready_tasks(self) -> tuple[Task, ...]:
        completed = self.completed_ids()
        return tuple(task for task in self._tasks.values() if task.is_ready(completed))

    def task_counts(self) -> TaskCounts:
        counts = Counter(task.status for task in self._tasks.values())
        return TaskCounts(
            pending=counts[TaskStatus.PENDING],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            completed=counts[TaskStatus.COMPLETED],
            blocked=counts[TaskStatus.BLOCKED],
            skipped=counts[TaskStatus.SKIPPED],
        )


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of executing one task, including retries."""

    task_id: str
    status: TaskStatus
    attempts: int
    duration_secs: float = 0.0
    error: str | None = None
    summary: str = ""
    pr_url: str | None = None

    def __post_init__(self) -> None:
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if not self.status.is_terminal:
            raise ValueError(f"task result status must be terminal, got {self.status.value}")


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Aggregate result of executing a plan wave by wave."""

    tasks: tuple[TaskResult, ...]
    waves: tuple[tuple[str, ...], ...] = field(default_factory=tuple)

    def _count(self, status: TaskStatus) -> int:
        return sum(1 for result in self.tasks if result.status is status)

    @property
    def completed_count(self) -> int:
        return self._count(TaskStatus.COMPLETED)

    @property
    def blocked_count(self) -> int:
        return self._count(TaskStatus.BLOCKED)

    @property
    def skipped_count(self) -> int:
        return self._count(TaskStatus.SKIPPED)

    @property
    def success_rate(self) -> float:
        if not self.tasks:
            return 0.0
        return self.completed_count / len(self.tasks)

    @property
    def max_parallelism(self) -> int:
        return max((len(wave) for wave in self.waves), default=0)

    @property
    def is_complete(self) -> bool:
        return bool(self.tasks) and self.completed_count == len(self.tasks)

    def summary(self) -> str:
        return (
            f"{self.completed_count} of {len(self.tasks)} tasks completed, "
            f"{self.blocked_count} blocked, {self.skipped_count} skipped"
        )


__all__ = [
    "BuildResult",
    "Plan",
    "Task",
    "TaskComplexity",
    "TaskCounts",
    "TaskResult",
    "TaskStatus",
]
