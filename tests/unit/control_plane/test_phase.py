"""Review phase supervisor: persistence across rounds, restarts and approval."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from cruise_orchestrator.control_plane.approval import ApprovalRejectedError
from cruise_orchestrator.control_plane.phase import ReviewPhaseConfig, ReviewPhaseSupervisor
from cruise_orchestrator.persistence.phase_state import PhaseName, PhaseStateError, PhaseStateStore
from cruise_orchestrator.review.domains import ReviewDomain
from cruise_orchestrator.sandbox.handles import PersistentHandle
from cruise_orchestrator.vcs.base import ApprovalStatus, PullRequest
from fakes import FakeClock, FakeVcs, MemorySandbox, ScriptedWatcher, make_report

if TYPE_CHECKING:
    from pathlib import Path

    from cruise_orchestrator.lifecycle.watcher import RunReport

PR = PullRequest(number=7, url="https://github.com/acme/app/pull/7", branch="feature/login")

_FINDINGS = json.dumps(
    {
        "verdict": "needs_changes",
        "summary": "two problems",
        "suggestions": [
            {"file": "src/auth.py", "line": 10, "issue": "plain password", "suggestion": "hash"},
            {"file": "src/db.py", "line": 4, "issue": "sql concat", "suggestion": "bind"},
        ],
    }
)


def _security_finds_issues(domain: ReviewDomain) -> RunReport:
    if domain is ReviewDomain.SECURITY:
        return make_report(output_text=_FINDINGS)
    return make_report(output_text='{"verdict": "approved"}')


def _approve_all(domain: ReviewDomain) -> RunReport:
    return make_report(output_text='{"verdict": "approved", "summary": "fine"}')


class _Sleeper:
    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self._clock.advance(seconds)


def _supervisor(
    sandbox: MemorySandbox,
    vcs: FakeVcs,
    watcher: ScriptedWatcher,
    clock: FakeClock,
    **config: object,
) -> ReviewPhaseSupervisor:
    return ReviewPhaseSupervisor(
        sandbox,
        watcher,  # type: ignore[arg-type]
        vcs,
        config=ReviewPhaseConfig(**config),  # type: ignore[arg-type]
        clock=clock,
        sleep=_Sleeper(clock),
    )


@pytest.fixture
def sandbox(tmp_path: Path) -> MemorySandbox:
    return MemorySandbox(tmp_path / "sandboxes")


async def test_start_provisions_persistent_sandbox_and_saves_state(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    supervisor = _supervisor(sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock)

    state = await supervisor.start(PR)

    handle = supervisor.handle
    assert isinstance(handle, PersistentHandle)
    assert handle.branch == "feature/login"
    assert state.phase is PhaseName.STARTED
    assert state.pr_number == 7
    saved = PhaseStateStore(handle.location).load()
    assert saved.pr_url == PR.url
    assert saved.backoff_interval_secs == 5.0


async def test_start_twice_is_an_error(sandbox: MemorySandbox, clock: FakeClock) -> None:
    supervisor = _supervisor(sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock)
    await supervisor.start(PR)

    with pytest.raises(RuntimeError, match="already started"):
        await supervisor.start(PR)


async def test_round_without_findings_is_approved(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    supervisor = _supervisor(sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock)
    await supervisor.start(PR)

    result = await supervisor.run_round()

    assert result.approved
    assert len(result.verdicts) == 5
    state = supervisor.state
    assert state is not None
    assert state.completed_rounds == 1
    assert state.phase is PhaseName.REVIEWING
    assert state.current_review_domain is None


async def test_rotated_rounds_review_one_domain_each_then_polish(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    watcher = ScriptedWatcher(_approve_all)
    supervisor = _supervisor(sandbox, FakeVcs(), watcher, clock, rotate_domains=True)
    await supervisor.start(PR)

    reviewed: list[tuple[ReviewDomain, ...]] = []
    for _ in range(7):
        result = await supervisor.run_round()
        reviewed.append(tuple(verdict.domain for verdict in result.verdicts))

    assert reviewed == [
        (ReviewDomain.SECURITY,),
        (ReviewDomain.TECHNICAL_FEASIBILITY,),
        (ReviewDomain.TASK_GRANULARITY,),
        (ReviewDomain.DEPENDENCY_COMPLETENESS,),
        (ReviewDomain.GENERAL_POLISH,),
        (ReviewDomain.GENERAL_POLISH,),
        (ReviewDomain.GENERAL_POLISH,),
    ]
    assert [domain for event, domain in watcher.review_log if event == "start"] == [
        domains[0] for domains in reviewed
    ]


async def test_explicit_domains_override_rotation(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    supervisor = _supervisor(
        sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock, rotate_domains=True
    )
    await supervisor.start(PR)

    result = await supervisor.run_round([ReviewDomain.SECURITY, ReviewDomain.GENERAL_POLISH])

    assert [verdict.domain for verdict in result.verdicts] == [
        ReviewDomain.SECURITY,
        ReviewDomain.GENERAL_POLISH,
    ]


async def test_unfixed_findings_stay_pending_and_survive_restart(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    vcs = FakeVcs()
    watcher = ScriptedWatcher(_security_finds_issues, fix_succeeds=lambda path: False)
    first = _supervisor(sandbox, vcs, watcher, clock)
    await first.start(PR)

    result = await first.run_round([ReviewDomain.SECURITY, ReviewDomain.GENERAL_POLISH])

    assert not result.approved
    assert result.fixed_count == 0
    assert [queued.finding_id for queued in first.pending] == [100, 101]
    handle = first.handle
    assert handle is not None
    saved = PhaseStateStore(handle.location).load()
    assert saved.pending_comment_ids == (100, 101)
    assert saved.finding_domains == {100: "security", 101: "security"}

    # One finding was resolved elsewhere while the supervisor was down.
    vcs.open_findings = [item for item in vcs.open_findings if item.id != 101]
    second = _supervisor(sandbox, vcs, ScriptedWatcher(_approve_all), clock)
    resumed = await second.resume(handle.location)

    assert resumed.completed_rounds == 1
    assert [queued.finding_id for queued in second.pending] == [100]
    assert second.pending[0].domain is ReviewDomain.SECURITY
    assert PhaseStateStore(handle.location).load().pending_comment_ids == (100,)


async def test_resume_without_state_fails(
    sandbox: MemorySandbox, clock: FakeClock, tmp_path: Path
) -> None:
    supervisor = _supervisor(sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock)

    with pytest.raises(PhaseStateError, match="no phase state"):
        await supervisor.resume(tmp_path)


async def test_await_approval_persists_backoff_and_final_phase(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    vcs = FakeVcs(approvals=[ApprovalStatus.OPEN, ApprovalStatus.OPEN, ApprovalStatus.APPROVED])
    supervisor = _supervisor(sandbox, vcs, ScriptedWatcher(_approve_all), clock)
    await supervisor.start(PR)

    status = await supervisor.await_approval(timeout=3600)

    assert status is ApprovalStatus.APPROVED
    state = supervisor.state
    assert state is not None
    assert state.phase is PhaseName.APPROVED
    assert state.backoff_interval_secs == 10.0


async def test_rejection_is_saved_before_raising(sandbox: MemorySandbox, clock: FakeClock) -> None:
    vcs = FakeVcs(approvals=[ApprovalStatus.CLOSED])
    supervisor = _supervisor(sandbox, vcs, ScriptedWatcher(_approve_all), clock)
    await supervisor.start(PR)

    with pytest.raises(ApprovalRejectedError):
        await supervisor.await_approval(timeout=60)

    handle = supervisor.handle
    assert handle is not None
    assert PhaseStateStore(handle.location).load().phase is PhaseName.REJECTED


async def test_resume_restores_the_backoff_interval(
    sandbox: MemorySandbox, clock: FakeClock
) -> None:
    vcs = FakeVcs(approvals=[ApprovalStatus.OPEN])
    first = _supervisor(sandbox, vcs, ScriptedWatcher(_approve_all), clock)
    await first.start(PR)
    with pytest.raises(TimeoutError):
        await first.await_approval(timeout=30)
    handle = first.handle
    assert handle is not None

    second = _supervisor(sandbox, vcs, ScriptedWatcher(_approve_all), clock)
    state = await second.resume(handle.location)

    assert state.phase is PhaseName.AWAITING_APPROVAL
    assert state.backoff_interval_secs == 20.0
    assert second.backoff.current == 20.0


async def test_cleanup_releases_the_sandbox(sandbox: MemorySandbox, clock: FakeClock) -> None:
    supervisor = _supervisor(sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock)
    await supervisor.start(PR)
    handle = supervisor.handle

    await supervisor.cleanup()

    assert sandbox.cleaned == [handle]
    assert supervisor.handle is None


async def test_operations_require_start(sandbox: MemorySandbox, clock: FakeClock) -> None:
    supervisor = _supervisor(sandbox, FakeVcs(), ScriptedWatcher(_approve_all), clock)

    with pytest.raises(RuntimeError, match="not been started"):
        await supervisor.run_round()
