"""Renderer output tests against an in-memory rich console."""

from __future__ import annotations

import io

import pytest
from rich.console import Console

from cruise_orchestrator.domain.models import BuildResult, Plan, Task, TaskResult, TaskStatus
from cruise_orchestrator.persistence.phase_state import PhaseState
from cruise_orchestrator.planning.task_graph import compute_waves
from cruise_orchestrator.review.domains import ReviewDomain
from cruise_orchestrator.review.parsing import Verdict
from cruise_orchestrator.review.pipeline import PipelineResult, ReviewVerdict
from cruise_orchestrator.ui.render import (
    CLIRenderer,
    render_build,
    render_phase_state,
    render_pipeline,
    render_plan,
)


def _renderer(*, verbose: bool = False) -> tuple[CLIRenderer, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, width=160, no_color=True, highlight=False)
    return CLIRenderer(no_color=True, verbose=verbose, console=console), buffer


def test_plan_rendering_lists_each_wave() -> None:
    plan = Plan(
        title="Login",
        tasks=(
            Task(id="schema", subject="Add users table"),
            Task(id="api", subject="Login endpoint", dependencies=("schema",)),
        ),
    )
    renderer, buffer = _renderer()

    render_plan(renderer, plan, compute_waves(plan.tasks))

    out = buffer.getvalue()
    assert "Plan: Login" in out
    assert "Waves: 2" in out
    assert "Add users table" in out
    assert "Login endpoint" in out


def test_build_rendering_shows_summary_and_details() -> None:
    result = BuildResult(
        tasks=(
            TaskResult("schema", TaskStatus.COMPLETED, 1, 3.0, pr_url="https://x/pull/1"),
            TaskResult("api", TaskStatus.BLOCKED, 2, 8.5, error="idle timeout"),
        ),
    )
    renderer, buffer = _renderer()

    render_build(renderer, result)

    out = buffer.getvalue()
    assert result.summary() in out
    assert "50%" in out
    assert "https://x/pull/1" in out
    assert "idle timeout" in out
    assert "Run summaries:" not in out


def test_verbose_build_rendering_lists_run_summaries() -> None:
    result = BuildResult(
        tasks=(TaskResult("schema", TaskStatus.COMPLETED, 1, summary="Added users table"),),
    )
    renderer, buffer = _renderer(verbose=True)

    render_build(renderer, result)

    assert "schema: Added users table" in buffer.getvalue()


def test_phase_state_rendering() -> None:
    state = PhaseState(
        sandbox_location="/tmp/sb",
        branch_name="feature/login",
        pr_url="https://github.com/acme/app/pull/7",
        pending_comment_ids=(1, 2),
    )
    renderer, buffer = _renderer()

    render_phase_state(renderer, state)

    out = buffer.getvalue()
    assert "Branch: feature/login" in out
    assert "Pull request: https://github.com/acme/app/pull/7" in out
    assert "Pending findings: 2" in out


def test_pipeline_rendering_lists_callback_errors() -> None:
    result = PipelineResult(
        verdicts=(ReviewVerdict(ReviewDomain.SECURITY, Verdict.APPROVED, summary="clean"),),
        callback_errors=("on_fixed: OSError: disk full",),
    )
    renderer, buffer = _renderer()

    render_pipeline(renderer, result)

    out = buffer.getvalue()
    assert "Approved: yes" in out
    assert "Security" in out
    assert "Progress callback errors:" in out
    assert "Warning: on_fixed: OSError: disk full" in out


def test_empty_table_and_steps_print_nothing() -> None:
    renderer, buffer = _renderer()

    renderer.table(("A",), [])
    renderer.next_steps([])

    assert buffer.getvalue() == ""


def test_text_is_not_parsed_as_markup() -> None:
    renderer, buffer = _renderer()

    renderer.text("[bold]literal[/bold]")

    assert "[bold]literal[/bold]" in buffer.getvalue()


@pytest.mark.parametrize(("flag", "env"), [(True, ""), (False, "1")])
def test_color_is_disabled_by_flag_or_environment(
    monkeypatch: pytest.MonkeyPatch, flag: bool, env: str
) -> None:
    monkeypatch.setenv("NO_COLOR", env)

    renderer = CLIRenderer(no_color=flag)

    assert renderer.console.no_color
