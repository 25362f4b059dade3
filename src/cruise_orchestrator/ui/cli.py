"""Command-line interface router for cruise-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from cruise_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    LoadedConfig,
    load_config_with_warnings,
)
from cruise_orchestrator.control_plane import (
    ApprovalPoller,
    ApprovalRejectedError,
    ApprovalTimeoutError,
    ReviewPhaseConfig,
    ReviewPhaseSupervisor,
    WatcherTaskRunner,
    WaveExecutor,
)
from cruise_orchestrator.domain.ids import generate_run_id
from cruise_orchestrator.domain.models import Plan
from cruise_orchestrator.integration_plane import run_git
from cruise_orchestrator.integration_plane.integrator import Integrator
from cruise_orchestrator.lifecycle import (
    ConsoleOperator,
    RecoveryStrategy,
    TimeoutConfig,
    Watcher,
    WatcherConfig,
)
from cruise_orchestrator.observability import correlation_scope, setup_logging, shutdown_logging
from cruise_orchestrator.persistence import PhaseName, PhaseStateError, load_phase_state
from cruise_orchestrator.planning import PlanLoadError, compute_waves, load_plan, plan_to_dict
from cruise_orchestrator.review import ReviewDomain
from cruise_orchestrator.runner import ClaudeCliRunner, GeminiCliRunner
from cruise_orchestrator.sandbox import WorktreeSandbox
from cruise_orchestrator.ui.render import (
    CLIRenderer,
    create_renderer,
    render_build,
    render_config_warnings,
    render_phase_state,
    render_pipeline,
    render_plan,
)
from cruise_orchestrator.utils.backoff import Backoff
from cruise_orchestrator.vcs import GitHubCli, PullRequest

DEFAULT_REVIEW_ROUNDS: Final[int] = 1
_FINAL_PHASES: Final[frozenset[PhaseName]] = frozenset({PhaseName.APPROVED, PhaseName.REJECTED})


@dataclass(slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Collaborators:
    sandbox: WorktreeSandbox
    vcs: GitHubCli
    watcher: Watcher
    reviewer: Watcher


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="cruise",
        description=(
            "cruise-orchestrator: supervise Claude Code runs in git-worktree sandboxes.\n\n"
            "Common workflows:\n"
            "  cruise plan plan.yaml          Validate a plan and show its waves\n"
            "  cruise build plan.yaml         Execute a plan wave by wave\n"
            "  cruise review 42               Review and fix an open pull request\n"
            "  cruise resume <sandbox>        Continue an interrupted review phase\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to cruise TOML config (default: ./cruise.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Validate a plan file and show its execution waves",
    )
    plan_parser.add_argument("plan_path", help="Path to a YAML or JSON plan file")
    plan_parser.set_defaults(handler=_cmd_plan)

    # build ---------------------------------------------------------------
    build_parser_ = subparsers.add_parser(
        "build",
        parents=[common],
        help="Execute a plan wave by wave, one sandbox per task",
    )
    build_parser_.add_argument("plan_path", help="Path to a YAML or JSON plan file")
    build_parser_.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Override build.max_parallel.",
    )
    build_parser_.add_argument(
        "--strategy",
        choices=[strategy.value for strategy in RecoveryStrategy],
        default=None,
        help="Override recovery.strategy.",
    )
    build_parser_.set_defaults(handler=_cmd_build)

    # await-approval ------------------------------------------------------
    approval_parser = subparsers.add_parser(
        "await-approval",
        parents=[common],
        help="Poll a pull request until it is approved, merged or closed",
    )
    approval_parser.add_argument("pr", help="Pull request number, URL or branch")
    approval_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Override approval.timeout_seconds.",
    )
    approval_parser.set_defaults(handler=_cmd_await_approval)

    # review --------------------------------------------------------------
    review_parser = subparsers.add_parser(
        "review",
        parents=[common],
        help="Run concurrent domain reviews on a pull request and fix findings",
    )
    review_parser.add_argument("pr", help="Pull request number, URL or branch")
    review_parser.add_argument(
        "--branch",
        default=None,
        help="Head branch to review (default: the pull request's head branch).",
    )
    _add_review_options(review_parser)
    review_parser.set_defaults(handler=_cmd_review)

    # resume --------------------------------------------------------------
    resume_parser = subparsers.add_parser(
        "resume",
        parents=[common],
        help="Resume a review phase from its persistent sandbox",
    )
    resume_parser.add_argument("sandbox", help="Sandbox directory holding .cruise/phase-state.json")
    resume_parser.add_argument(
        "--status",
        action="store_true",
        help="Only show the saved phase state.",
    )
    _add_review_options(resume_parser)
    resume_parser.set_defaults(handler=_cmd_resume)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective config and any warnings",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def _add_review_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--domain",
        dest="domains",
        action="append",
        default=None,
        help="Review domain to run (repeatable; default: review.domains).",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=DEFAULT_REVIEW_ROUNDS,
        help="Maximum review rounds; stops early once every domain approves.",
    )
    parser.add_argument(
        "--rotate-domains",
        dest="rotate_domains",
        action="store_true",
        help="Review one domain per round in review order (default: review.rotate_domains).",
    )
    parser.add_argument(
        "--await-approval",
        dest="await_approval",
        action="store_true",
        help="Wait for approval after the review rounds.",
    )
    parser.add_argument(
        "--keep-sandbox",
        action="store_true",
        help="Keep the persistent sandbox after a finished phase.",
    )


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_plan(args: argparse.Namespace) -> int:
    plan_path = _resolve_path(args.plan_path, _repo_root(args))
    plan = _load_plan(plan_path)
    waves = compute_waves(plan.tasks)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "plan",
                "plan": plan_to_dict(plan),
                "waves": [list(wave) for wave in waves],
            }
        )
        return 0

    render_plan(_get_renderer(args), plan, waves)
    return 0


def _cmd_build(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    overrides: dict[str, object] = {}
    if args.max_parallel is not None:
        overrides["build.max_parallel"] = args.max_parallel
    if args.strategy is not None:
        overrides["recovery.strategy"] = args.strategy
    loaded = _load_effective_config(args, overrides)
    config = loaded.config
    plan = _load_plan(_resolve_path(args.plan_path, repo_root))
    renderer = _get_renderer(args)
    if not _flag(args, "json"):
        render_config_warnings(renderer, loaded.warnings)

    collaborators = _build_collaborators(config, repo_root, integrate=True)
    executor = WaveExecutor(
        WatcherTaskRunner(collaborators.watcher),
        max_parallel=config["build"]["max_parallel"],
        retry_failed_once=config["build"]["retry_failed_once"],
    )
    run_id = generate_run_id()
    with _command_logging(config, run_id):
        result = asyncio.run(executor.execute(plan))

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "build",
                "run_id": run_id,
                "summary": result.summary(),
                "complete": result.is_complete,
                "waves": [list(wave) for wave in result.waves],
                "tasks": [
                    {
                        "task_id": item.task_id,
                        "status": item.status.value,
                        "attempts": item.attempts,
                        "duration_secs": round(item.duration_secs, 3),
                        "error": item.error,
                        "pr_url": item.pr_url,
                    }
                    for item in result.tasks
                ],
            }
        )
    else:
        render_build(renderer, result)
    return 0 if result.is_complete else 1


def _cmd_await_approval(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args).config
    approval = config["approval"]
    timeout = args.timeout if args.timeout is not None else approval["timeout_seconds"]
    vcs = _github(config, repo_root)
    backoff = Backoff(
        approval["poll_initial_seconds"],
        approval["poll_max_seconds"],
        multiplier=approval["multiplier"],
    )

    async def _wait() -> tuple[PullRequest, str]:
        pr = await vcs.view_pr(args.pr)
        status = await ApprovalPoller(vcs, backoff).poll_for_approval(pr, timeout)
        return pr, status.value

    run_id = generate_run_id()
    with _command_logging(config, run_id):
        try:
            pr, status = asyncio.run(_wait())
        except ApprovalRejectedError as exc:
            return _report_outcome(args, "await-approval", "rejected", str(exc), 1)
        except ApprovalTimeoutError as exc:
            return _report_outcome(args, "await-approval", "timed_out", str(exc), 1)

    return _report_outcome(args, "await-approval", status, f"{pr.url} is {status}", 0)


def _cmd_review(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    loaded = _load_effective_config(args)
    config = loaded.config
    collaborators = _build_collaborators(config, repo_root, integrate=False)
    supervisor = _supervisor(config, collaborators, args)
    remote = config["integration"]["remote"]

    async def _review() -> dict[str, Any]:
        pr = await collaborators.vcs.view_pr(args.pr)
        branch = args.branch or pr.branch
        if not branch:
            raise CLIError(f"cannot determine the head branch of {pr.url}; pass --branch", 2)
        pr = PullRequest(number=pr.number, url=pr.url, branch=branch, base=pr.base, repo=pr.repo)
        # The worktree needs a local branch tracking the pull request head.
        await asyncio.to_thread(
            run_git, ["fetch", remote, f"{branch}:{branch}"], cwd=repo_root, check=False
        )
        await supervisor.start(pr)
        return await _drive_phase(supervisor, args, phase=PhaseName.STARTED)

    run_id = generate_run_id()
    with _command_logging(config, run_id), correlation_scope(phase="review"):
        payload = asyncio.run(_review())
    return _finish_phase(args, "review", payload, loaded)


def _cmd_resume(args: argparse.Namespace) -> int:
    location = Path(args.sandbox).expanduser().resolve()
    if _flag(args, "status"):
        try:
            state = load_phase_state(location)
        except PhaseStateError as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        if _flag(args, "json"):
            _emit_json({"command": "resume", "state": state.to_dict()})
        else:
            render_phase_state(_get_renderer(args), state)
        return 0

    repo_root = _repo_root(args)
    loaded = _load_effective_config(args)
    config = loaded.config
    collaborators = _build_collaborators(config, repo_root, integrate=False)
    supervisor = _supervisor(config, collaborators, args)

    async def _resume() -> dict[str, Any]:
        try:
            state = await supervisor.resume(location)
        except PhaseStateError as exc:
            raise CLIError(str(exc), exit_code=2) from exc
        return await _drive_phase(supervisor, args, phase=state.phase)

    run_id = generate_run_id()
    with _command_logging(config, run_id), correlation_scope(phase="resume"):
        payload = asyncio.run(_resume())
    return _finish_phase(args, "resume", payload, loaded)


def _cmd_config(args: argparse.Namespace) -> int:
    loaded = _load_effective_config(args)
    payload: dict[str, object] = {
        "command": "config",
        "source": loaded.source.as_posix() if loaded.source is not None else None,
        "config": loaded.config,
        "warnings": [
            {"path": issue.path, "message": issue.message} for issue in loaded.warnings
        ],
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Config file", payload["source"] or "(defaults)")
    renderer.text(json.dumps(loaded.config, indent=2, sort_keys=True, ensure_ascii=False))
    render_config_warnings(renderer, loaded.warnings)
    return 0


# ---------------------------------------------------------------------------
# Review phase driving
# ---------------------------------------------------------------------------


async def _drive_phase(
    supervisor: ReviewPhaseSupervisor,
    args: argparse.Namespace,
    *,
    phase: PhaseName,
) -> dict[str, Any]:
    rounds: list[dict[str, object]] = []
    approval: str | None = None
    if phase not in _FINAL_PHASES and phase is not PhaseName.AWAITING_APPROVAL:
        domains = _selected_domains(args)
        rotating = domains is None and supervisor.config.rotate_domains
        for _ in range(max(1, args.rounds)):
            result = await supervisor.run_round(domains)
            rounds.append(result.to_dict())
            if not _flag(args, "json"):
                render_pipeline(_get_renderer(args), result)
            # A rotated round covers one domain; approval counts once polish is reached.
            reviewed = {verdict.domain for verdict in result.verdicts}
            if rotating and ReviewDomain.GENERAL_POLISH not in reviewed:
                continue
            if result.approved and not supervisor.pending:
                break

    wait = _flag(args, "await_approval") or phase is PhaseName.AWAITING_APPROVAL
    if wait and phase not in _FINAL_PHASES:
        try:
            approval = (await supervisor.await_approval()).value
        except ApprovalRejectedError:
            approval = "rejected"
        except ApprovalTimeoutError:
            approval = "timed_out"

    state = supervisor.state
    finished = state is not None and state.phase in _FINAL_PHASES
    if finished and not _flag(args, "keep_sandbox"):
        await supervisor.cleanup()
    return {
        "rounds": rounds,
        "approval": approval,
        "state": state.to_dict() if state is not None else None,
        "sandbox_kept": not finished or _flag(args, "keep_sandbox"),
    }


def _finish_phase(
    args: argparse.Namespace,
    command: str,
    payload: Mapping[str, Any],
    loaded: LoadedConfig,
) -> int:
    approval = payload.get("approval")
    rejected = approval in {"rejected", "timed_out"}
    rounds = payload.get("rounds") or []
    unapproved = bool(rounds) and not rounds[-1].get("approved", False)

    if _flag(args, "json"):
        _emit_json({"command": command, **payload})
    else:
        renderer = _get_renderer(args)
        render_config_warnings(renderer, loaded.warnings)
        state = payload.get("state")
        location = state.get("sandbox_location") if isinstance(state, Mapping) else None
        if isinstance(state, Mapping):
            renderer.kv("Phase", state.get("phase"))
            renderer.kv("Sandbox", location)
        if approval is not None:
            renderer.kv("Approval", approval)
        if payload.get("sandbox_kept") and location is not None:
            renderer.next_steps([f"cruise resume {location}"])
    return 1 if rejected or (unapproved and approval is None) else 0


def _selected_domains(args: argparse.Namespace) -> tuple[ReviewDomain, ...] | None:
    raw = getattr(args, "domains", None)
    if not raw:
        return None
    try:
        return tuple(ReviewDomain.parse(value) for value in raw)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


# ---------------------------------------------------------------------------
# Helpers: config, collaborators, rendering
# ---------------------------------------------------------------------------


def _build_collaborators(
    config: Mapping[str, Any],
    repo_root: Path,
    *,
    integrate: bool,
) -> _Collaborators:
    integration = config["integration"]
    runner_cfg = config["runner"]
    sandbox = WorktreeSandbox(
        repo_root,
        config["paths"]["worktree_root"],
        base_ref=integration["base_branch"],
    )
    vcs = _github(config, repo_root)
    watcher_config = _watcher_config(config)
    operator = (
        ConsoleOperator() if watcher_config.strategy is RecoveryStrategy.INTERACTIVE else None
    )
    integrator = (
        Integrator(
            vcs,
            base_branch=integration["base_branch"],
            remote=integration["remote"],
            conflict_threshold=integration["conflict_threshold"],
        )
        if integrate
        else None
    )
    watcher = Watcher(
        sandbox,
        ClaudeCliRunner(binary=runner_cfg["primary_binary"], model=runner_cfg.get("model")),
        config=watcher_config,
        operator=operator,
        integrator=integrator,
    )
    reviewer = Watcher(
        sandbox,
        _reviewer_runner(runner_cfg),
        config=watcher_config,
        operator=operator,
    )
    return _Collaborators(sandbox=sandbox, vcs=vcs, watcher=watcher, reviewer=reviewer)


def _reviewer_runner(runner_cfg: Mapping[str, Any]) -> ClaudeCliRunner | GeminiCliRunner:
    if runner_cfg["reviewer"] == "gemini":
        # The primary model names a Claude model, so it is not inherited here.
        return GeminiCliRunner(
            binary=runner_cfg["reviewer_binary"],
            model=runner_cfg.get("reviewer_model"),
            name="reviewer",
        )
    return ClaudeCliRunner(
        binary=runner_cfg["reviewer_binary"],
        model=runner_cfg.get("reviewer_model", runner_cfg.get("model")),
        name="reviewer",
    )


def _watcher_config(config: Mapping[str, Any]) -> WatcherConfig:
    timeouts = config["timeouts"]
    recovery = config["recovery"]
    return WatcherConfig(
        timeouts=TimeoutConfig(
            idle_seconds=timeouts["idle_seconds"],
            total_seconds=timeouts["total_seconds"],
            tick_seconds=timeouts["tick_seconds"],
        ),
        strategy=RecoveryStrategy(recovery["strategy"]),
        max_escalations=recovery["max_escalations"],
    )


def _review_phase_config(
    config: Mapping[str, Any], *, rotate_domains: bool = False
) -> ReviewPhaseConfig:
    review = config["review"]
    approval = config["approval"]
    return ReviewPhaseConfig(
        domains=tuple(ReviewDomain(value) for value in review["domains"]),
        max_concurrent_reviewers=review["max_concurrent_reviewers"],
        channel_capacity=review["channel_capacity"],
        poll_initial_seconds=approval["poll_initial_seconds"],
        poll_max_seconds=approval["poll_max_seconds"],
        poll_multiplier=approval["multiplier"],
        approval_timeout_seconds=approval["timeout_seconds"],
        remote=config["integration"]["remote"],
        rotate_domains=rotate_domains or review["rotate_domains"],
    )


def _supervisor(
    config: Mapping[str, Any],
    collaborators: _Collaborators,
    args: argparse.Namespace,
) -> ReviewPhaseSupervisor:
    if getattr(args, "rounds", DEFAULT_REVIEW_ROUNDS) < 1:
        raise CLIError("--rounds must be >= 1", exit_code=2)
    return ReviewPhaseSupervisor(
        collaborators.sandbox,
        collaborators.reviewer,
        collaborators.vcs,
        config=_review_phase_config(config, rotate_domains=_flag(args, "rotate_domains")),
        fixer=collaborators.watcher,
    )


def _github(config: Mapping[str, Any], repo_root: Path) -> GitHubCli:
    return GitHubCli(cwd=repo_root, base_branch=config["integration"]["base_branch"])


@contextmanager
def _command_logging(config: Mapping[str, Any], run_id: str) -> Iterator[None]:
    setup_logging(config["observability"], run_id=run_id, log_dir=config["paths"]["log_dir"])
    try:
        yield
    finally:
        shutdown_logging()


def _report_outcome(
    args: argparse.Namespace,
    command: str,
    status: str,
    message: str,
    exit_code: int,
) -> int:
    if _flag(args, "json"):
        _emit_json({"command": command, "status": status, "message": message})
    else:
        renderer = _get_renderer(args)
        if exit_code == 0:
            renderer.text(message)
        else:
            renderer.warning(message)
    return exit_code


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _repo_root(args: argparse.Namespace) -> Path:
    candidate = Path(str(getattr(args, "repo_root", "."))).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _resolve_path(raw: str, repo_root: Path) -> Path:
    candidate = Path(raw).expanduser()
    return candidate.resolve() if candidate.is_absolute() else (repo_root / candidate).resolve()


def _load_plan(path: Path) -> Plan:
    try:
        return load_plan(path)
    except PlanLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_effective_config(
    args: argparse.Namespace,
    overrides: Mapping[str, object] | None = None,
) -> LoadedConfig:
    config_path = getattr(args, "config_path", None)
    try:
        return load_config_with_warnings(config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
