"""Wave-by-wave plan execution with retry-once-then-block semantics."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from cruise_orchestrator.domain.models import BuildResult, Plan, Task, TaskResult, TaskStatus
from cruise_orchestrator.observability.logging import correlation_scope
from cruise_orchestrator.planning.task_graph import compute_waves, validate_plan
from cruise_orchestrator.utils.concurrency import WorkerPool

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_UNSCHEDULABLE_STATUSES = frozenset({TaskStatus.BLOCKED, TaskStatus.SKIPPED})


@dataclass(frozen=True, slots=True)
class TaskAttempt:
    """Context handed to a task runner for one attempt."""

    attempt: int
    previous_error: str | None = None

    @property
    def is_retry(self) -> bool:
        return self.attempt > 1


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    succeeded: bool
    summary: str = ""
    error: str | None = None
    pr_url: str | None = None

    @classmethod
    def success(cls, summary: str = "", *, pr_url: str | None = None) -> TaskOutcome:
        return cls(succeeded=True, summary=summary, pr_url=pr_url)

    @classmethod
    def failure(cls, error: str, *, summary: str = "") -> TaskOutcome:
        return cls(succeeded=False, summary=summary, error=error)


class TaskRunner(Protocol):
    async def __call__(self, task: Task, attempt: TaskAttempt) -> TaskOutcome: ...


class WaveExecutor:
    """
    Execute a validated plan one wave at a time.

    Wave ``k + 1`` starts only after every task of wave ``k`` is terminal. A
    failed task is retried once with the first error as context and then
    marked blocked. Tasks downstream of a blocked or skipped task are skipped.
    """

    __slots__ = ("_runner", "_max_parallel", "_retry_failed_once", "_on_task_finished")

    def __init__(
        self,
        runner: TaskRunner,
        *,
        max_parallel: int = 3,
        retry_failed_once: bool = True,
        on_task_finished: Callable[[TaskResult], None] | None = None,
    ) -> None:
        if max_parallel <= 0:
            raise ValueError("max_parallel must be > 0")
        self._runner = runner
        self._max_parallel = max_parallel
        self._retry_failed_once = retry_failed_once
        self._on_task_finished = on_task_finished

    @property
    def max_parallel(self) -> int:
        return self._max_parallel

    async def execute(self, plan: Plan) -> BuildResult:
        validate_plan(plan.tasks)
        waves = compute_waves(plan.tasks)
        results: dict[str, TaskResult] = {}

        for index, wave in enumerate(waves, start=1):
            runnable: list[Task] = []
            for task_id in wave:
                task = plan.get(task_id)
                if task.status is TaskStatus.COMPLETED:
                    self._record(results, TaskResult(task_id, TaskStatus.COMPLETED, attempts=0))
                    continue
                blocked_by = [
                    dependency
                    for dependency in task.dependencies
                    if dependency in plan and plan.get(dependency).status in _UNSCHEDULABLE_STATUSES
                ]
                if blocked_by:
                    reason = f"dependencies not completed: {', '.join(blocked_by)}"
                    plan.replace_task(task.with_status(TaskStatus.SKIPPED, error=reason))
                    logger.warning("Skipping task %s: %s", task_id, reason)
                    self._record(
                        results,
                        TaskResult(task_id, TaskStatus.SKIPPED, attempts=0, error=reason),
                    )
                    continue
                runnable.append(task)

            logger.info(
                "Starting wave %d/%d with %d runnable task(s)", index, len(waves), len(runnable)
            )
            pool: WorkerPool[TaskResult] = WorkerPool(max_concurrency=self._max_parallel)
            async for result in pool.run(self._run_task(plan, task) for task in runnable):
                self._record(results, result)

        ordered = tuple(results[task.id] for task in plan if task.id in results)
        build = BuildResult(tasks=ordered, waves=tuple(waves))
        logger.info("Build finished: %s", build.summary())
        return build

    async def _run_task(self, plan: Plan, task: Task) -> TaskResult:
        with correlation_scope(task_id=task.id):
            plan.replace_task(task.with_status(TaskStatus.IN_PROGRESS))
            started = time.monotonic()
            max_attempts = 2 if self._retry_failed_once else 1
            previous_error: str | None = None
            outcome = TaskOutcome.failure("task was not attempted")
            attempt_number = 0

            for attempt_number in range(1, max_attempts + 1):
                attempt = TaskAttempt(attempt=attempt_number, previous_error=previous_error)
                try:
                    outcome = await self._runner(plan.get(task.id), attempt)
                except Exception as exc:  # noqa: BLE001 - runner failures become task outcomes
                    logger.exception("Task %s raised on attempt %d", task.id, attempt_number)
                    outcome = TaskOutcome.failure(f"{type(exc).__name__}: {exc}")
                if outcome.succeeded:
                    break
                previous_error = outcome.error or "task failed without an error message"
                logger.warning(
                    "Task %s failed on attempt %d: %s", task.id, attempt_number, previous_error
                )

            duration = time.monotonic() - started
            status = TaskStatus.COMPLETED if outcome.succeeded else TaskStatus.BLOCKED
            error = None if outcome.succeeded else previous_error
            plan.replace_task(plan.get(task.id).with_status(status, error=error))
            return TaskResult(
                task_id=task.id,
                status=status,
                attempts=attempt_number,
                duration_secs=duration,
                error=error,
                summary=outcome.summary,
                pr_url=outcome.pr_url,
            )

    def _record(self, results: dict[str, TaskResult], result: TaskResult) -> None:
        results[result.task_id] = result
        if self._on_task_finished is not None:
            self._on_task_finished(result)


def retry_prompt(task: Task, attempt: TaskAttempt) -> str:
    """Task prompt with the previous attempt's error appended on retries."""
    lines = [f"# Task {task.id}: {task.subject}"]
    if task.description:
        lines.extend(["", task.description])
    if task.acceptance_criteria:
        lines.extend(["", "Acceptance criteria:"])
        lines.extend(f"- {criterion}" for criterion in task.acceptance_criteria)
    if attempt.previous_error:
        lines.extend(
            [
                "",
                "A previous attempt at this task failed with the following error. "
                "Address it in this attempt:",
                attempt.previous_error,
            ]
        )
    return "\n".join(lines)


__all__ = [
    "TaskAttempt",
    "TaskOutcome",
    "TaskRunner",
    "WaveExecutor",
    "retry_prompt",
]
