"""Run plan tasks through the lifecycle watcher."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cruise_orchestrator.control_plane.scheduler import TaskOutcome, retry_prompt

if TYPE_CHECKING:
    from collections.abc import Callable

    from cruise_orchestrator.control_plane.scheduler import TaskAttempt
    from cruise_orchestrator.domain.models import Task
    from cruise_orchestrator.lifecycle.watcher import RunReport, Watcher

logger = logging.getLogger(__name__)


class WatcherTaskRunner:
    """``TaskRunner`` that gives every attempt its own transient sandbox."""

    __slots__ = ("_watcher", "_on_report")

    def __init__(
        self,
        watcher: Watcher,
        *,
        on_report: Callable[[Task, RunReport], None] | None = None,
    ) -> None:
        self._watcher = watcher
        self._on_report = on_report

    async def __call__(self, task: Task, attempt: TaskAttempt) -> TaskOutcome:
        report = await self._watcher.run(
            retry_prompt(task, attempt),
            task=task,
            title=f"{task.id}: {task.subject}",
        )
        if self._on_report is not None:
            self._on_report(task, report)
        if report.succeeded:
            pr_url = report.collaborator_handle.url if report.collaborator_handle else None
            return TaskOutcome.success(report.summary, pr_url=pr_url)
        if report.partial_success:
            logger.warning(
                "Task %s left %d commit(s) on %s before failing",
                task.id,
                len(report.commits),
                report.branch,
            )
        return TaskOutcome.failure(report.error or report.summary, summary=report.summary)


__all__ = ["WatcherTaskRunner"]
