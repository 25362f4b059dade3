"""
Terminal rendering for the ``cruise`` CLI.

``CLIRenderer`` wraps a rich ``Console`` and exposes the small set of output
patterns the commands need. Colour is disabled by ``--no-color``, by a
non-empty ``NO_COLOR`` variable, or when stdout is not a terminal.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cruise_orchestrator.config.schema import ConfigValidationIssue
    from cruise_orchestrator.domain.models import BuildResult, Plan
    from cruise_orchestrator.persistence.phase_state import PhaseState
    from cruise_orchestrator.review.pipeline import PipelineResult

_STATUS_STYLES = {
    "completed": "green",
    "succeeded": "green",
    "approved": "green",
    "merged": "green",
    "blocked": "red",
    "failed": "red",
    "rejected": "red",
    "closed": "red",
    "timed_out": "red",
    "skipped": "yellow",
    "needs_changes": "yellow",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin rich-backed renderer; every method writes to one console."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        console: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self._console = (
            console
            if console is not None
            else Console(no_color=not self._color, highlight=False, soft_wrap=True)
        )

    @property
    def console(self) -> Console:
        return self._console

    def heading(self, text: str) -> None:
        self._console.print(text, style="bold")

    def kv(self, key: str, value: object) -> None:
        self._console.print(f"{key}: {value}", markup=False)

    def text(self, line: str) -> None:
        self._console.print(line, markup=False)

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(title, style="bold")

    def warning(self, text: str) -> None:
        self._console.print(f"  Warning: {text}", style="yellow", markup=False)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(f"  {prefix}{entry}", markup=False)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; rows whose first status-like cell is known get coloured."""

        if not rows:
            return
        table = Table(title=title, show_lines=False, title_justify="left")
        for header in headers:
            table.add_column(header)
        for row in rows:
            style = next((_STATUS_STYLES[cell] for cell in row if cell in _STATUS_STYLES), None)
            table.add_row(*(str(cell) for cell in row), style=style)
        self._console.print(table)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(f"  $ {step}", markup=False)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


def render_plan(renderer: CLIRenderer, plan: Plan, waves: Sequence[Sequence[str]]) -> None:
    renderer.heading(f"Plan: {plan.title}")
    renderer.kv("Tasks", len(plan))
    renderer.kv("Waves", len(waves))
    rows = [
        (str(index), task_id, plan.get(task_id).subject, plan.get(task_id).complexity.value)
        for index, wave in enumerate(waves, start=1)
        for task_id in wave
    ]
    renderer.table(("Wave", "Task", "Subject", "Complexity"), rows, title="Execution waves")


def render_build(renderer: CLIRenderer, result: BuildResult) -> None:
    renderer.heading("Build result")
    renderer.kv("Summary", result.summary())
    renderer.kv("Success rate", f"{result.success_rate:.0%}")
    rows = [
        (
            item.task_id,
            item.status.value,
            str(item.attempts),
            f"{item.duration_secs:.1f}s",
            item.pr_url or item.error or "",
        )
        for item in result.tasks
    ]
    renderer.table(("Task", "Status", "Attempts", "Duration", "Detail"), rows, title="Tasks")
    summaries = [f"{item.task_id}: {item.summary}" for item in result.tasks if item.summary]
    if renderer.verbose and summaries:
        renderer.section("Run summaries:")
        renderer.items(summaries)


def render_pipeline(renderer: CLIRenderer, result: PipelineResult) -> None:
    renderer.heading("Review round")
    renderer.kv("Approved", "yes" if result.approved else "no")
    renderer.kv("Fixed", f"{result.fixed_count} of {len(result.fixes)}")
    verdict_rows = [
        (
            verdict.domain.label,
            verdict.verdict.value,
            str(len(verdict.findings)),
            "inconclusive" if verdict.inconclusive else verdict.summary,
        )
        for verdict in result.verdicts
    ]
    renderer.table(("Domain", "Verdict", "Findings", "Note"), verdict_rows, title="Verdicts")
    if result.unresolvable:
        renderer.section("Unresolvable findings:")
        renderer.items(
            [
                f"[{finding.domain.value}] {finding.path}"
                f"{f':{finding.line}' if finding.line is not None else ''}"
                f" ({finding.reason.value})"
                for finding in result.unresolvable
            ]
        )
    if result.callback_errors:
        renderer.section("Progress callback errors:")
        for error in result.callback_errors:
            renderer.warning(error)


def render_phase_state(renderer: CLIRenderer, state: PhaseState) -> None:
    renderer.kv("Sandbox", state.sandbox_location)
    renderer.kv("Branch", state.branch_name)
    renderer.kv("Phase", state.phase.value)
    if state.pr_url is not None:
        renderer.kv("Pull request", state.pr_url)
    renderer.kv("Completed rounds", state.completed_rounds)
    renderer.kv("Pending findings", len(state.pending_comment_ids))
    renderer.kv("Last activity", state.last_activity)


def render_config_warnings(
    renderer: CLIRenderer,
    warnings: Sequence[ConfigValidationIssue],
) -> None:
    if not warnings:
        return
    renderer.section("Config warnings:")
    for issue in warnings:
        renderer.warning(issue.render())


__all__ = [
    "CLIRenderer",
    "create_renderer",
    "render_build",
    "render_config_warnings",
    "render_phase_state",
    "render_pipeline",
    "render_plan",
]
