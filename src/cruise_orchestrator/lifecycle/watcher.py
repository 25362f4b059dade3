"""
Lifecycle state machine for one delegated run.

A ``Watcher`` takes a prompt from manifest evaluation through sandbox
provisioning, a monitored subprocess run, permission recovery and optional
integration, and always returns a ``RunReport``:

    evaluating -> provisioned -> running -> recovering -> running
                                         -> suspended  -> running
                                         -> integrating -> succeeded | failed
                                         -> succeeded | failed | timed_out

Timeouts are polled on every monitoring tick rather than signalled, so a
run that keeps producing output still ends once its total budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Final, Protocol

from cruise_orchestrator.domain.ids import generate_run_id
from cruise_orchestrator.domain.models import TaskComplexity
from cruise_orchestrator.integration_plane.git_ops import GitCommandError
from cruise_orchestrator.integration_plane.integrator import (
    IntegrationError,
    conflict_repair_prompt,
)
from cruise_orchestrator.lifecycle.monitor import ProgressState, TimeoutConfig, TimeoutReason
from cruise_orchestrator.lifecycle.operator import Abort
from cruise_orchestrator.lifecycle.permissions import (
    CannotFix,
    DefaultClassifier,
    Widen,
    classify_all,
)
from cruise_orchestrator.observability.logging import (
    correlation_scope,
    get_active_logging_handle,
)
from cruise_orchestrator.runner.base import (
    CommitEvent,
    FileAccess,
    FileEvent,
    OutputLine,
    PermissionDenied,
    RunFailed,
    RunSucceeded,
    ToolCall,
    is_terminal,
)
from cruise_orchestrator.sandbox.handles import (
    PersistentHandle,
    SandboxCleanupError,
    TransientHandle,
)
from cruise_orchestrator.sandbox.manifest import SandboxManifest
from cruise_orchestrator.vcs.base import VcsError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from cruise_orchestrator.domain.models import Task
    from cruise_orchestrator.integration_plane.git_ops import ConflictFile
    from cruise_orchestrator.integration_plane.integrator import Integrator
    from cruise_orchestrator.lifecycle.monitor import ProgressSummary
    from cruise_orchestrator.lifecycle.operator import Operator
    from cruise_orchestrator.lifecycle.permissions import PermissionClassifier, PermissionDenial
    from cruise_orchestrator.runner.base import Runner, RunEvent, RunStream, TerminalEvent
    from cruise_orchestrator.sandbox.handles import Sandbox, SandboxHandle
    from cruise_orchestrator.sandbox.manifest import ManifestDelta
    from cruise_orchestrator.vcs.base import PullRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_ESCALATIONS: Final[int] = 1
_STREAM_END: Final[object] = object()

_TOOLS_BY_COMPLEXITY: Final[dict[TaskComplexity, tuple[str, ...]]] = {
    TaskComplexity.LOW: ("Read", "Glob", "Grep", "Edit"),
    TaskComplexity.MEDIUM: ("Read", "Glob", "Grep", "Edit", "Write", "Bash"),
    TaskComplexity.HIGH: ("Read", "Glob", "Grep", "Edit", "Write", "Bash", "Task", "WebFetch"),
}
_REPAIR_TOOLS: Final[tuple[str, ...]] = ("Read", "Glob", "Grep", "Edit", "Write")


class WatcherState(StrEnum):
    EVALUATING = "evaluating"
    PROVISIONED = "provisioned"
    RUNNING = "running"
    RECOVERING = "recovering"
    SUSPENDED = "suspended"
    INTEGRATING = "integrating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (WatcherState.SUCCEEDED, WatcherState.FAILED, WatcherState.TIMED_OUT)


class RecoveryStrategy(StrEnum):
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    INTERACTIVE = "interactive"


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class Termination(StrEnum):
    """Why a run reached its terminal state."""

    COMPLETED = "completed"
    IDLE_TIMEOUT = "idle_timeout"
    TOTAL_TIMEOUT = "total_timeout"
    EVALUATION_FAILED = "evaluation_failed"
    SANDBOX_FAILED = "sandbox_failed"
    RUNNER_FAILED = "runner_failed"
    PERMISSION_UNFIXABLE = "permission_unfixable"
    ESCALATIONS_EXHAUSTED = "escalations_exhausted"
    OPERATOR_ABORTED = "operator_aborted"
    INTEGRATION_FAILED = "integration_failed"


_TIMEOUT_TERMINATIONS: Final[dict[TimeoutReason, Termination]] = {
    TimeoutReason.IDLE: Termination.IDLE_TIMEOUT,
    TimeoutReason.TOTAL: Termination.TOTAL_TIMEOUT,
}


@dataclass(frozen=True, slots=True)
class WatcherConfig:
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    strategy: RecoveryStrategy = RecoveryStrategy.MODERATE
    max_escalations: int = DEFAULT_MAX_ESCALATIONS

    def __post_init__(self) -> None:
        if self.max_escalations < 0:
            raise ValueError("max_escalations must be >= 0")


class ManifestEvaluator(Protocol):
    async def evaluate(self, prompt: str, task: Task | None) -> SandboxManifest: ...


class DefaultEvaluator:
    """Derive a manifest from task complexity; the component scopes write access."""

    __slots__ = ()

    async def evaluate(self, prompt: str, task: Task | None) -> SandboxManifest:
        complexity = task.complexity if task is not None else TaskComplexity.MEDIUM
        component = task.component.strip("/") if task is not None and task.component else ""
        writable = (f"{component}/**",) if component else ("**",)
        return SandboxManifest(
            readable_paths=("**",),
            writable_paths=writable,
            allowed_tools=_TOOLS_BY_COMPLEXITY[complexity],
            complexity=complexity,
        )


@dataclass(frozen=True, slots=True)
class RunReport:
    """Final record of one lifecycle run, produced for every terminal state."""

    status: RunStatus
    run_id: str
    termination: Termination
    duration_secs: float
    summary: str
    progress: ProgressSummary
    files_changed: tuple[str, ...] = ()
    commits: tuple[str, ...] = ()
    output_text: str = ""
    collaborator_handle: PullRequest | None = None
    permission_errors: tuple[PermissionDenial, ...] = ()
    applied_fixes: tuple[ManifestDelta, ...] = ()
    escalations: int = 0
    transitions: tuple[WatcherState, ...] = ()
    branch: str | None = None
    error: str | None = None
    log_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def partial_success(self) -> bool:
        """Failed run whose work already exists as commits."""
        return self.status is RunStatus.FAILED and bool(self.commits)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "run_id": self.run_id,
            "termination": self.termination.value,
            "duration_secs": round(self.duration_secs, 3),
            "summary": self.summary,
            "files_changed": list(self.files_changed),
            "commits": list(self.commits),
            "pull_request": (
                self.collaborator_handle.to_dict() if self.collaborator_handle else None
            ),
            "permission_errors": [denial.describe() for denial in self.permission_errors],
            "applied_fixes": [delta.describe() for delta in self.applied_fixes],
            "escalations": self.escalations,
            "transitions": [state.value for state in self.transitions],
            "branch": self.branch,
            "error": self.error,
            "log_path": self.log_path.as_posix() if self.log_path else None,
            "progress": self.progress.to_dict(),
        }


@dataclass(slots=True)
class _RunContext:
    run_id: str
    prompt: str
    task: Task | None
    progress: ProgressState
    transitions: list[WatcherState] = field(default_factory=list)
    denials: list[PermissionDenial] = field(default_factory=list)
    applied_fixes: list[ManifestDelta] = field(default_factory=list)
    escalations: int = 0
    handle: SandboxHandle | None = None
    result_text: str = ""


class Watcher:
    """Drive one prompt through the lifecycle; see the module docstring."""

    def __init__(
        self,
        sandbox: Sandbox,
        runner: Runner,
        *,
        config: WatcherConfig | None = None,
        classifier: PermissionClassifier | None = None,
        evaluator: ManifestEvaluator | None = None,
        operator: Operator | None = None,
        integrator: Integrator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sandbox = sandbox
        self._runner = runner
        self._config = config if config is not None else WatcherConfig()
        self._classifier = classifier if classifier is not None else DefaultClassifier()
        self._evaluator = evaluator if evaluator is not None else DefaultEvaluator()
        self._operator = operator
        self._integrator = integrator
        self._clock = clock
        if self._config.strategy is RecoveryStrategy.INTERACTIVE and operator is None:
            raise ValueError("interactive recovery requires an operator")

    @property
    def config(self) -> WatcherConfig:
        return self._config

    def with_integrator(self, integrator: Integrator | None) -> Watcher:
        return Watcher(
            self._sandbox,
            self._runner,
            config=self._config,
            classifier=self._classifier,
            evaluator=self._evaluator,
            operator=self._operator,
            integrator=integrator,
            clock=self._clock,
        )

    async def run(
        self,
        prompt: str,
        *,
        task: Task | None = None,
        manifest: SandboxManifest | None = None,
        handle: PersistentHandle | None = None,
        title: str | None = None,
        run_id: str | None = None,
    ) -> RunReport:
        """
        Run ``prompt`` to a terminal state.

        A caller-supplied ``PersistentHandle`` is reused and never cleaned up;
        otherwise a transient sandbox is created and released when the run ends.
        """
        context = _RunContext(
            run_id=run_id or generate_run_id(),
            prompt=prompt,
            task=task,
            progress=ProgressState(clock=self._clock),
        )
        with correlation_scope(task_id=task.id if task is not None else None):
            try:
                return await self._run(context, manifest, handle, title)
            finally:
                if isinstance(context.handle, TransientHandle):
                    await self._release(context.handle)

    async def _run(
        self,
        context: _RunContext,
        manifest: SandboxManifest | None,
        handle: PersistentHandle | None,
        title: str | None,
    ) -> RunReport:
        self._enter(context, WatcherState.EVALUATING)
        if manifest is None:
            try:
                manifest = await self._evaluator.evaluate(context.prompt, context.task)
            except Exception as exc:  # noqa: BLE001 - evaluation failure is a run outcome
                logger.exception("Manifest evaluation failed for run %s", context.run_id)
                return self._finish(context, Termination.EVALUATION_FAILED, error=str(exc))

        if handle is not None:
            context.handle = handle
        else:
            try:
                context.handle = await asyncio.to_thread(self._sandbox.create, manifest)
            except Exception as exc:  # noqa: BLE001 - provisioning failure is fatal, never retried
                logger.error("Sandbox provisioning failed for run %s: %s", context.run_id, exc)
                return self._finish(
                    context,
                    Termination.SANDBOX_FAILED,
                    error=f"{type(exc).__name__}: {exc}",
                )
        self._enter(context, WatcherState.PROVISIONED)
        location = self._sandbox.path(context.handle)

        while True:
            self._enter(context, WatcherState.RUNNING)
            outcome = await self._execute(context, manifest, location)

            if isinstance(outcome, TimeoutReason):
                return self._finish(
                    context,
                    _TIMEOUT_TERMINATIONS[outcome],
                    error=f"{outcome.value} timeout exceeded",
                )
            if isinstance(outcome, RunFailed):
                return self._finish(context, Termination.RUNNER_FAILED, error=outcome.message)
            if isinstance(outcome, RunSucceeded):
                context.result_text = outcome.result_text
                break

            context.denials.extend(outcome.denials)
            decision = await self._recover(context, outcome.denials)
            if isinstance(decision, tuple):
                termination, reason = decision
                return self._finish(context, termination, error=reason)
            manifest = manifest.widen(decision.delta)
            context.applied_fixes.append(decision.delta)
            context.escalations += 1
            logger.info(
                "Widened manifest for run %s (escalation %d): %s",
                context.run_id,
                context.escalations,
                decision.delta.describe(),
            )
            context.progress.touch()

        if self._integrator is None:
            return self._finish(context, Termination.COMPLETED)
        return await self._integrate(context, title)

    async def _execute(
        self,
        context: _RunContext,
        manifest: SandboxManifest,
        location: Path,
    ) -> TerminalEvent | TimeoutReason:
        try:
            stream = await self._runner.spawn(manifest, context.prompt, location)
        except Exception as exc:  # noqa: BLE001 - spawn failures end the run as failed
            context.progress.other_errors += 1
            return RunFailed(f"failed to spawn {self._runner.name}: {exc}")

        queue: asyncio.Queue[object] = asyncio.Queue()
        pump = asyncio.create_task(_pump(stream, queue))
        timeouts = self._config.timeouts
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=timeouts.tick_seconds)
                except TimeoutError:
                    item = None
                if item is _STREAM_END:
                    context.progress.other_errors += 1
                    return RunFailed("runner stream ended without a terminal event")
                if isinstance(item, Exception):
                    context.progress.other_errors += 1
                    return RunFailed(f"runner stream raised {type(item).__name__}: {item}")
                if item is not None:
                    event: RunEvent = item  # type: ignore[assignment]
                    _record(context.progress, event)
                    if is_terminal(event):
                        return event  # type: ignore[return-value]

                reason = context.progress.check_timeout(timeouts)
                if reason is not None:
                    await self._handle_timeout(context, stream, reason)
                    return reason
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _handle_timeout(
        self,
        context: _RunContext,
        stream: RunStream,
        reason: TimeoutReason,
    ) -> None:
        progress = context.progress
        recent = "\n".join(progress.recent_output) or "(no output)"
        logger.error(
            "Run %s timed out (%s) after %.1fs, idle %.1fs; last %d output line(s):\n%s",
            context.run_id,
            reason.value,
            progress.total_duration(),
            progress.idle_duration(),
            len(progress.recent_output),
            recent,
        )
        try:
            await stream.terminate()
        except Exception:  # noqa: BLE001 - a failed kill must not mask the timeout
            logger.exception("Failed to terminate subprocess for run %s", context.run_id)

    async def _recover(
        self,
        context: _RunContext,
        denials: Sequence[PermissionDenial],
    ) -> Widen | tuple[Termination, str]:
        described = "; ".join(denial.describe() for denial in denials)
        logger.warning("Run %s hit permission denial(s): %s", context.run_id, described)
        strategy = self._config.strategy

        if strategy is RecoveryStrategy.INTERACTIVE:
            assert self._operator is not None  # noqa: S101 - checked in __init__
            proposed = classify_all(self._classifier, denials)
            self._enter(context, WatcherState.SUSPENDED)
            decision = await self._operator.decide(denials, proposed)
            if isinstance(decision, Abort):
                return Termination.OPERATOR_ABORTED, decision.reason
            return decision

        self._enter(context, WatcherState.RECOVERING)
        if (
            strategy is RecoveryStrategy.MODERATE
            and context.escalations >= self._config.max_escalations
        ):
            return (
                Termination.ESCALATIONS_EXHAUSTED,
                f"escalation limit {self._config.max_escalations} reached: {described}",
            )
        fix = classify_all(self._classifier, denials)
        if isinstance(fix, CannotFix):
            return Termination.PERMISSION_UNFIXABLE, fix.reason
        return fix

    async def _integrate(self, context: _RunContext, title: str | None) -> RunReport:
        assert self._integrator is not None  # noqa: S101
        assert context.handle is not None  # noqa: S101
        self._enter(context, WatcherState.INTEGRATING)
        summary_title = title or _default_title(context)
        try:
            result = await self._integrator.integrate(
                context.handle,
                title=summary_title,
                body=context.result_text,
                repair=self._repair_conflicts,
            )
        except (IntegrationError, GitCommandError, VcsError) as exc:
            logger.error("Integration failed for run %s: %s", context.run_id, exc)
            return self._finish(
                context,
                Termination.INTEGRATION_FAILED,
                error=str(exc),
                commits=getattr(exc, "commits", ()),
                files_changed=getattr(exc, "files_changed", ()),
            )
        return self._finish(
            context,
            Termination.COMPLETED,
            commits=result.commits,
            files_changed=result.files_changed,
            pull_request=result.pull_request,
        )

    async def _repair_conflicts(
        self,
        handle: SandboxHandle,
        conflicts: tuple[ConflictFile, ...],
    ) -> bool:
        """Resolve large merge conflicts with a fresh lifecycle in the same sandbox."""
        assert self._integrator is not None  # noqa: S101
        manifest = SandboxManifest(
            readable_paths=("**",),
            writable_paths=tuple(conflict.path for conflict in conflicts),
            allowed_tools=_REPAIR_TOOLS,
            complexity=TaskComplexity.HIGH,
        )
        shared = PersistentHandle(
            sandbox=self._sandbox,
            sandbox_id=handle.sandbox_id,
            location=handle.location,
            branch=handle.branch,
            manifest=manifest,
        )
        report = await self.with_integrator(None).run(
            conflict_repair_prompt(self._integrator.base_ref, conflicts),
            manifest=manifest,
            handle=shared,
        )
        return report.succeeded

    async def _release(self, handle: TransientHandle) -> None:
        try:
            await handle.aclose()
        except SandboxCleanupError:
            logger.exception("Failed to clean up sandbox %s", handle.sandbox_id)

    def _enter(self, context: _RunContext, state: WatcherState) -> None:
        previous = context.transitions[-1] if context.transitions else None
        context.transitions.append(state)
        logger.info(
            "Run %s: %s -> %s",
            context.run_id,
            previous.value if previous is not None else "start",
            state.value,
        )

    def _finish(
        self,
        context: _RunContext,
        termination: Termination,
        *,
        error: str | None = None,
        commits: tuple[str, ...] = (),
        files_changed: tuple[str, ...] = (),
        pull_request: PullRequest | None = None,
    ) -> RunReport:
        if termination is Termination.COMPLETED:
            status, state = RunStatus.SUCCEEDED, WatcherState.SUCCEEDED
        elif termination in _TIMEOUT_TERMINATIONS.values():
            status, state = RunStatus.TIMED_OUT, WatcherState.TIMED_OUT
        else:
            status, state = RunStatus.FAILED, WatcherState.FAILED
        self._enter(context, state)

        progress = context.progress
        progress.permission_errors = len(context.denials)
        snapshot = progress.snapshot()
        all_commits = tuple(dict.fromkeys((*snapshot.commits, *commits)))
        all_files = tuple(dict.fromkeys((*snapshot.files_written, *files_changed)))
        output_text = context.result_text or "\n".join(progress.recent_output)
        log_handle = get_active_logging_handle()

        report = RunReport(
            status=status,
            run_id=context.run_id,
            termination=termination,
            duration_secs=snapshot.total_duration_secs,
            summary=_summarize(status, termination, snapshot, all_commits, all_files, error),
            progress=snapshot,
            files_changed=all_files,
            commits=all_commits,
            output_text=output_text,
            collaborator_handle=pull_request,
            permission_errors=tuple(context.denials),
            applied_fixes=tuple(context.applied_fixes),
            escalations=context.escalations,
            transitions=tuple(context.transitions),
            branch=context.handle.branch if context.handle is not None else None,
            error=error,
            log_path=log_handle.log_path if log_handle is not None else None,
        )
        log = logger.info if report.succeeded else logger.warning
        log("Run %s finished: %s", context.run_id, report.summary)
        return report


async def _pump(stream: RunStream, queue: asyncio.Queue[object]) -> None:
    try:
        async for event in stream:
            await queue.put(event)
    except Exception as exc:  # noqa: BLE001 - surfaced to the monitor loop as a failure
        await queue.put(exc)
    else:
        await queue.put(_STREAM_END)


def _record(progress: ProgressState, event: RunEvent) -> None:
    if isinstance(event, OutputLine):
        progress.record_output(event.text, label=event.stream.value)
    elif isinstance(event, FileEvent):
        if event.access is FileAccess.WRITE:
            progress.record_file_write(event.path)
        else:
            progress.record_file_read(event.path)
    elif isinstance(event, CommitEvent):
        progress.record_commit(event.sha)
    elif isinstance(event, ToolCall):
        progress.record_tool_call(event.tool)
    elif isinstance(event, RunFailed):
        progress.other_errors += 1
    elif isinstance(event, PermissionDenied):
        progress.touch()


def _default_title(context: _RunContext) -> str:
    if context.task is not None:
        return f"{context.task.id}: {context.task.subject}"
    first_line = context.prompt.strip().splitlines()[0] if context.prompt.strip() else "changes"
    return first_line[:72]


def _summarize(
    status: RunStatus,
    termination: Termination,
    progress: ProgressSummary,
    commits: tuple[str, ...],
    files: tuple[str, ...],
    error: str | None,
) -> str:
    counts = f"{len(files)} file(s) changed, {len(commits)} commit(s)"
    if status is RunStatus.SUCCEEDED:
        return f"succeeded in {progress.total_duration_secs:.1f}s: {counts}"
    if status is RunStatus.TIMED_OUT:
        kind = "idle" if termination is Termination.IDLE_TIMEOUT else "total"
        return f"timed out ({kind}) after {progress.total_duration_secs:.1f}s: {counts}"
    detail = f": {error}" if error else ""
    partial = f" (partial success: {counts})" if commits else ""
    return f"failed ({termination.value}){detail}{partial}"


__all__ = [
    "DEFAULT_MAX_ESCALATIONS",
    "DefaultEvaluator",
    "ManifestEvaluator",
    "RecoveryStrategy",
    "RunReport",
    "RunStatus",
    "Termination",
    "Watcher",
    "WatcherConfig",
    "WatcherState",
]
