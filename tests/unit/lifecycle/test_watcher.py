"""Lifecycle watcher scenarios driven by scripted runner streams."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cruise_orchestrator.domain.models import Task, TaskComplexity
from cruise_orchestrator.integration_plane.integrator import IntegrationError, IntegrationResult
from cruise_orchestrator.lifecycle.monitor import TimeoutConfig
from cruise_orchestrator.lifecycle.operator import Abort
from cruise_orchestrator.lifecycle.permissions import DenialKind, PermissionDenial, Widen
from cruise_orchestrator.lifecycle.watcher import (
    DefaultEvaluator,
    RecoveryStrategy,
    RunStatus,
    Termination,
    Watcher,
    WatcherConfig,
    WatcherState,
)
from cruise_orchestrator.runner.base import (
    CommitEvent,
    FileAccess,
    FileEvent,
    OutputLine,
    PermissionDenied,
    RunFailed,
    RunSucceeded,
)
from cruise_orchestrator.sandbox.handles import PersistentHandle
from cruise_orchestrator.sandbox.manifest import SandboxManifest
from cruise_orchestrator.vcs.base import PullRequest
from fakes import FakeRunner, MemorySandbox, ScriptedStream

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from cruise_orchestrator.lifecycle.permissions import PermissionFix
    from cruise_orchestrator.sandbox.handles import SandboxHandle

FAST = TimeoutConfig(idle_seconds=5.0, total_seconds=30.0, tick_seconds=0.01)


def _denied(kind: DenialKind, detail: str) -> PermissionDenied:
    return PermissionDenied((PermissionDenial(kind, detail),))


def _watcher(
    sandbox: MemorySandbox,
    runner: FakeRunner,
    *,
    strategy: RecoveryStrategy = RecoveryStrategy.MODERATE,
    max_escalations: int = 1,
    timeouts: TimeoutConfig = FAST,
    **kwargs: object,
) -> Watcher:
    config = WatcherConfig(timeouts=timeouts, strategy=strategy, max_escalations=max_escalations)
    return Watcher(sandbox, runner, config=config, **kwargs)  # type: ignore[arg-type]


@pytest.fixture
def sandbox(tmp_path: Path) -> MemorySandbox:
    return MemorySandbox(tmp_path / "sandboxes")


async def test_successful_run_records_progress_and_releases_sandbox(
    sandbox: MemorySandbox,
) -> None:
    runner = FakeRunner(
        ScriptedStream(
            [
                OutputLine("starting"),
                FileEvent("src/app.py", FileAccess.READ),
                FileEvent("src/app.py", FileAccess.WRITE),
                CommitEvent("abc1234", "Add feature"),
                RunSucceeded("all done"),
            ]
        )
    )

    report = await _watcher(sandbox, runner).run("Add a feature")

    assert report.status is RunStatus.SUCCEEDED
    assert report.termination is Termination.COMPLETED
    assert report.files_changed == ("src/app.py",)
    assert report.commits == ("abc1234",)
    assert report.output_text == "all done"
    assert report.run_id.startswith("run-")
    assert report.transitions == (
        WatcherState.EVALUATING,
        WatcherState.PROVISIONED,
        WatcherState.RUNNING,
        WatcherState.SUCCEEDED,
    )
    assert sandbox.cleaned == sandbox.created
    assert runner.calls[0].location == sandbox.created[0].location


async def test_sandbox_failure_is_fatal_and_never_spawns(tmp_path: Path) -> None:
    sandbox = MemorySandbox(tmp_path, fail_create=True)
    runner = FakeRunner(ScriptedStream([RunSucceeded()]))

    report = await _watcher(sandbox, runner).run("anything")

    assert report.status is RunStatus.FAILED
    assert report.termination is Termination.SANDBOX_FAILED
    assert "disk full" in (report.error or "")
    assert runner.calls == []


async def test_idle_timeout_terminates_the_subprocess(sandbox: MemorySandbox) -> None:
    stream = ScriptedStream([OutputLine("thinking")], hang=True)
    timeouts = TimeoutConfig(idle_seconds=0.05, total_seconds=30.0, tick_seconds=0.01)

    report = await _watcher(sandbox, FakeRunner(stream), timeouts=timeouts).run("stall")

    assert report.status is RunStatus.TIMED_OUT
    assert report.termination is Termination.IDLE_TIMEOUT
    assert report.transitions[-1] is WatcherState.TIMED_OUT
    assert stream.terminated
    assert sandbox.cleaned == sandbox.created


async def test_total_timeout_applies_to_a_chatty_run(sandbox: MemorySandbox) -> None:
    stream = ScriptedStream(interval=0.005, chatter=True)
    timeouts = TimeoutConfig(idle_seconds=5.0, total_seconds=0.1, tick_seconds=0.01)

    report = await _watcher(sandbox, FakeRunner(stream), timeouts=timeouts).run("loop")

    assert report.termination is Termination.TOTAL_TIMEOUT
    assert report.progress.output_lines > 0
    assert stream.terminated


async def test_moderate_recovery_widens_once_and_reuses_the_sandbox(
    sandbox: MemorySandbox,
) -> None:
    runner = FakeRunner(
        ScriptedStream([_denied(DenialKind.TOOL, "WebFetch")]),
        ScriptedStream([RunSucceeded("ok")]),
    )

    report = await _watcher(sandbox, runner).run("fetch docs")

    assert report.succeeded
    assert report.escalations == 1
    assert WatcherState.RECOVERING in report.transitions
    assert "WebFetch" not in runner.calls[0].manifest.allowed_tools
    assert "WebFetch" in runner.calls[1].manifest.allowed_tools
    assert runner.calls[0].location == runner.calls[1].location
    assert len(sandbox.created) == 1
    assert [denial.detail for denial in report.permission_errors] == ["WebFetch"]


async def test_moderate_recovery_stops_at_the_escalation_limit(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(
        ScriptedStream([_denied(DenialKind.TOOL, "WebFetch")]),
        ScriptedStream([_denied(DenialKind.FILE_WRITE, "docs/index.md")]),
    )

    report = await _watcher(sandbox, runner).run("fetch docs")

    assert report.status is RunStatus.FAILED
    assert report.termination is Termination.ESCALATIONS_EXHAUSTED
    assert report.escalations == 1
    assert len(runner.calls) == 2


async def test_zero_escalations_disables_moderate_recovery(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(ScriptedStream([_denied(DenialKind.TOOL, "WebFetch")]))

    report = await _watcher(sandbox, runner, max_escalations=0).run("fetch docs")

    assert report.termination is Termination.ESCALATIONS_EXHAUSTED
    assert report.escalations == 0


async def test_aggressive_recovery_ignores_the_escalation_limit(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(
        ScriptedStream([_denied(DenialKind.TOOL, "WebFetch")]),
        ScriptedStream([_denied(DenialKind.FILE_WRITE, "docs/index.md")]),
        ScriptedStream([_denied(DenialKind.COMMAND, "make docs")]),
        ScriptedStream([RunSucceeded()]),
    )

    report = await _watcher(
        sandbox, runner, strategy=RecoveryStrategy.AGGRESSIVE, max_escalations=0
    ).run("build docs")

    assert report.succeeded
    assert report.escalations == 3
    final = runner.calls[-1].manifest
    assert "docs/**" in final.writable_paths
    assert "make docs" in final.allowed_commands


async def test_unfixable_denial_fails_the_run(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(ScriptedStream([_denied(DenialKind.NETWORK, "pypi.org")]))

    report = await _watcher(sandbox, runner).run("install")

    assert report.termination is Termination.PERMISSION_UNFIXABLE
    assert "pypi.org" in (report.error or "")


class _Operator:
    def __init__(self, *, approve: bool) -> None:
        self._approve = approve
        self.asked: list[tuple[Sequence[PermissionDenial], PermissionFix]] = []

    async def decide(
        self,
        denials: Sequence[PermissionDenial],
        proposed: PermissionFix,
    ) -> Widen | Abort:
        self.asked.append((denials, proposed))
        if self._approve and isinstance(proposed, Widen):
            return proposed
        return Abort("operator said no")


async def test_interactive_recovery_suspends_for_the_operator(sandbox: MemorySandbox) -> None:
    operator = _Operator(approve=True)
    runner = FakeRunner(
        ScriptedStream([_denied(DenialKind.TOOL, "WebFetch")]),
        ScriptedStream([RunSucceeded()]),
    )

    report = await _watcher(
        sandbox, runner, strategy=RecoveryStrategy.INTERACTIVE, operator=operator
    ).run("fetch")

    assert report.succeeded
    assert WatcherState.SUSPENDED in report.transitions
    assert WatcherState.RECOVERING not in report.transitions
    assert len(operator.asked) == 1


async def test_interactive_abort_ends_the_run(sandbox: MemorySandbox) -> None:
    operator = _Operator(approve=False)
    runner = FakeRunner(ScriptedStream([_denied(DenialKind.TOOL, "WebFetch")]))

    report = await _watcher(
        sandbox, runner, strategy=RecoveryStrategy.INTERACTIVE, operator=operator
    ).run("fetch")

    assert report.termination is Termination.OPERATOR_ABORTED
    assert report.error == "operator said no"


def test_interactive_strategy_requires_an_operator(sandbox: MemorySandbox) -> None:
    with pytest.raises(ValueError, match="operator"):
        _watcher(sandbox, FakeRunner(), strategy=RecoveryStrategy.INTERACTIVE)


async def test_runner_failure_keeps_partial_commits(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(
        ScriptedStream([CommitEvent("deadbee", "wip"), RunFailed("exit code 1", 1)])
    )

    report = await _watcher(sandbox, runner).run("work")

    assert report.termination is Termination.RUNNER_FAILED
    assert report.partial_success
    assert "partial success" in report.summary


async def test_stream_without_terminal_event_is_a_failure(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(ScriptedStream([OutputLine("bye")]))

    report = await _watcher(sandbox, runner).run("work")

    assert report.termination is Termination.RUNNER_FAILED
    assert "without a terminal event" in (report.error or "")


async def test_spawn_failure_is_a_runner_failure(sandbox: MemorySandbox) -> None:
    report = await _watcher(sandbox, FakeRunner()).run("work")

    assert report.termination is Termination.RUNNER_FAILED
    assert "failed to spawn" in (report.error or "")
    assert sandbox.cleaned == sandbox.created


async def test_persistent_handle_is_reused_and_kept(sandbox: MemorySandbox) -> None:
    handle = sandbox.create(SandboxManifest(), persistent=True, branch="feature/x")
    assert isinstance(handle, PersistentHandle)
    runner = FakeRunner(ScriptedStream([RunSucceeded()]))

    report = await _watcher(sandbox, runner).run(
        "review", manifest=SandboxManifest.read_only(), handle=handle
    )

    assert report.succeeded
    assert report.branch == "feature/x"
    assert sandbox.cleaned == []
    assert len(sandbox.created) == 1


async def test_evaluation_failure(sandbox: MemorySandbox) -> None:
    class _Broken:
        async def evaluate(self, prompt: str, task: Task | None) -> SandboxManifest:
            raise RuntimeError("no manifest")

    report = await _watcher(sandbox, FakeRunner(), evaluator=_Broken()).run("x")

    assert report.termination is Termination.EVALUATION_FAILED
    assert sandbox.created == []


async def test_default_evaluator_scopes_writes_to_component() -> None:
    task = Task(id="t1", subject="s", complexity=TaskComplexity.LOW, component="src/api/")

    manifest = await DefaultEvaluator().evaluate("prompt", task)

    assert manifest.writable_paths == ("src/api/**",)
    assert "Bash" not in manifest.allowed_tools
    assert manifest.complexity is TaskComplexity.LOW


class _Integrator:
    base_ref = "origin/main"

    def __init__(self, *, fail: bool = False) -> None:
        self._fail = fail
        self.titles: list[str] = []

    async def integrate(
        self,
        handle: SandboxHandle,
        *,
        title: str,
        body: str = "",
        repair: object = None,
    ) -> IntegrationResult:
        self.titles.append(title)
        if self._fail:
            raise IntegrationError("push rejected", commits=("c0ffee1",))
        return IntegrationResult(
            commits=("c0ffee1",),
            files_changed=("src/app.py",),
            pull_request=PullRequest(number=3, url="https://github.com/acme/app/pull/3"),
        )


async def test_integration_attaches_the_pull_request(sandbox: MemorySandbox) -> None:
    integrator = _Integrator()
    runner = FakeRunner(ScriptedStream([RunSucceeded("summary")]))
    task = Task(id="t7", subject="Add login")

    report = await _watcher(sandbox, runner, integrator=integrator).run("login", task=task)

    assert report.succeeded
    assert WatcherState.INTEGRATING in report.transitions
    assert report.collaborator_handle is not None
    assert report.collaborator_handle.number == 3
    assert report.commits == ("c0ffee1",)
    assert integrator.titles == ["t7: Add login"]


async def test_integration_failure_reports_existing_commits(sandbox: MemorySandbox) -> None:
    runner = FakeRunner(ScriptedStream([RunSucceeded()]))

    report = await _watcher(sandbox, runner, integrator=_Integrator(fail=True)).run("x")

    assert report.termination is Termination.INTEGRATION_FAILED
    assert report.partial_success
    assert report.to_dict()["commits"] == ["c0ffee1"]
