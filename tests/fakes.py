"""In-memory collaborators shared by the unit tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from cruise_orchestrator.lifecycle.monitor import ProgressSummary
from cruise_orchestrator.lifecycle.watcher import RunReport, RunStatus, Termination
from cruise_orchestrator.review.domains import ReviewDomain
from cruise_orchestrator.runner.base import OutputLine, RunEvent
from cruise_orchestrator.sandbox.handles import (
    PersistentHandle,
    SandboxCreationError,
    SandboxHandle,
    TransientHandle,
)
from cruise_orchestrator.sandbox.manifest import SandboxManifest
from cruise_orchestrator.vcs.base import (
    ApprovalStatus,
    PullRequest,
    ReviewComment,
    VcsError,
)


class FakeClock:
    """Monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedStream:
    """Yield ``events`` in order; optionally keep the run open until terminated."""

    def __init__(
        self,
        events: Iterable[RunEvent] = (),
        *,
        interval: float = 0.0,
        hang: bool = False,
        chatter: bool = False,
    ) -> None:
        self._events = list(events)
        self._interval = interval
        self._hang = hang
        self._chatter = chatter
        self._stopped = asyncio.Event()
        self.terminated = False

    def __aiter__(self) -> AsyncIterator[RunEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RunEvent]:
        for event in self._events:
            if self._interval:
                await asyncio.sleep(self._interval)
            yield event
        if self._chatter:
            while not self._stopped.is_set():
                await asyncio.sleep(self._interval or 0.005)
                yield OutputLine("still working")
        if self._hang:
            await self._stopped.wait()

    async def terminate(self) -> None:
        self.terminated = True
        self._stopped.set()


@dataclass
class SpawnCall:
    manifest: SandboxManifest
    prompt: str
    location: Path


class FakeRunner:
    """Hand out pre-built streams, one per ``spawn``."""

    def __init__(self, *streams: ScriptedStream, name: str = "fake") -> None:
        self.name = name
        self._streams = list(streams)
        self.calls: list[SpawnCall] = []
        self.spawned: list[ScriptedStream] = []

    async def spawn(self, manifest: SandboxManifest, prompt: str, location: Path) -> ScriptedStream:
        self.calls.append(SpawnCall(manifest, prompt, location))
        if not self._streams:
            raise RuntimeError("no scripted stream left")
        stream = self._streams.pop(0)
        self.spawned.append(stream)
        return stream


class MemorySandbox:
    """Sandbox that hands out directories under ``root`` without touching git."""

    def __init__(self, root: Path, *, fail_create: bool = False) -> None:
        self._root = root
        self._fail_create = fail_create
        self._counter = 0
        self.created: list[SandboxHandle] = []
        self.cleaned: list[SandboxHandle] = []

    def create(
        self,
        manifest: SandboxManifest,
        *,
        persistent: bool = False,
        branch: str | None = None,
    ) -> SandboxHandle:
        if self._fail_create:
            raise SandboxCreationError("disk full")
        self._counter += 1
        sandbox_id = f"sb-{self._counter}"
        location = self._root / sandbox_id
        location.mkdir(parents=True, exist_ok=True)
        handle_type = PersistentHandle if persistent else TransientHandle
        handle = handle_type(
            sandbox=self,
            sandbox_id=sandbox_id,
            location=location,
            branch=branch or f"cruise/{sandbox_id}",
            manifest=manifest,
        )
        self.created.append(handle)
        return handle

    def attach(self, location: Path, branch: str, manifest: SandboxManifest) -> PersistentHandle:
        return PersistentHandle(
            sandbox=self,
            sandbox_id=location.name,
            location=location,
            branch=branch,
            manifest=manifest,
        )

    def path(self, handle: SandboxHandle) -> Path:
        return handle.location

    def cleanup(self, handle: SandboxHandle) -> None:
        self.cleaned.append(handle)
        handle.mark_released()


@dataclass
class FakeVcs:
    """Review host double; finding ids are allocated sequentially from 100."""

    approvals: list[ApprovalStatus] = field(default_factory=list)
    fail_post_paths: set[str] = field(default_factory=set)
    orphan_ids: set[int] = field(default_factory=set)
    open_findings: list[ReviewComment] = field(default_factory=list)
    posted: list[ReviewComment] = field(default_factory=list)
    replies: list[tuple[int, str]] = field(default_factory=list)
    resolved: list[int] = field(default_factory=list)
    approval_checks: int = 0
    _next_id: int = 100

    async def create_pr(self, branch: str, title: str, body: str) -> PullRequest:
        return PullRequest(number=7, url="https://github.com/acme/app/pull/7", branch=branch)

    async def post_finding(self, pr: PullRequest, path: str, line: int, body: str) -> ReviewComment:
        if path in self.fail_post_paths:
            raise VcsError(f"line {line} of {path} is not part of the diff")
        comment = ReviewComment(id=self._next_id, path=path, body=body, line=line)
        self._next_id += 1
        self.posted.append(comment)
        self.open_findings.append(comment)
        return comment

    async def post_reply(self, pr: PullRequest, finding_id: int, body: str) -> None:
        self.replies.append((finding_id, body))

    async def resolve_finding(self, pr: PullRequest, finding_id: int) -> bool:
        if finding_id in self.orphan_ids:
            return False
        self.resolved.append(finding_id)
        self.open_findings = [item for item in self.open_findings if item.id != finding_id]
        return True

    async def check_approval(self, pr: PullRequest) -> ApprovalStatus:
        self.approval_checks += 1
        if not self.approvals:
            return ApprovalStatus.OPEN
        if len(self.approvals) == 1:
            return self.approvals[0]
        return self.approvals.pop(0)

    async def pending_findings(self, pr: PullRequest) -> Sequence[ReviewComment]:
        return tuple(self.open_findings)


def make_report(
    *,
    succeeded: bool = True,
    output_text: str = "",
    error: str | None = None,
    commits: tuple[str, ...] = (),
) -> RunReport:
    status = RunStatus.SUCCEEDED if succeeded else RunStatus.FAILED
    termination = Termination.COMPLETED if succeeded else Termination.RUNNER_FAILED
    return RunReport(
        status=status,
        run_id="run-01ARZ3NDEKTSV4RRFFQ69G5FAV",
        termination=termination,
        duration_secs=0.1,
        summary="succeeded" if succeeded else f"failed: {error}",
        progress=ProgressSummary(),
        commits=commits,
        output_text=output_text,
        error=error,
    )


ReviewerScript = Callable[[ReviewDomain], RunReport | Exception]


class ScriptedWatcher:
    """
    Watcher double keyed on prompt shape.

    Reviewer prompts are answered by ``reviewer`` after ``delay`` seconds, or
    the domain's entry in ``delays``; ``review_log`` records each reviewer's
    start and end in order. Fix prompts append a line to the finding's file
    inside the handle so there is something to commit.
    """

    def __init__(
        self,
        reviewer: ReviewerScript,
        *,
        fix_succeeds: Callable[[str], bool] = lambda path: True,
        delay: float = 0.01,
        delays: Mapping[ReviewDomain, float] | None = None,
    ) -> None:
        self._reviewer = reviewer
        self._fix_succeeds = fix_succeeds
        self._delay = delay
        self._delays = dict(delays or {})
        self.active_reviewers = 0
        self.peak_reviewers = 0
        self.fix_order: list[str] = []
        self.manifests: list[SandboxManifest] = []
        self.review_log: list[tuple[str, ReviewDomain]] = []

    def with_integrator(self, integrator: object) -> ScriptedWatcher:
        return self

    async def run(
        self,
        prompt: str,
        *,
        manifest: SandboxManifest | None = None,
        handle: PersistentHandle | None = None,
        **_: object,
    ) -> RunReport:
        if manifest is not None:
            self.manifests.append(manifest)
        if prompt.startswith("## Code Review Request"):
            return await self._review(prompt)
        return self._fix(prompt, manifest, handle)

    async def _review(self, prompt: str) -> RunReport:
        domain = next(item for item in ReviewDomain if f"Request: {item.label}\n" in prompt)
        self.active_reviewers += 1
        self.peak_reviewers = max(self.peak_reviewers, self.active_reviewers)
        self.review_log.append(("start", domain))
        try:
            await asyncio.sleep(self._delays.get(domain, self._delay))
        finally:
            self.active_reviewers -= 1
            self.review_log.append(("end", domain))
        outcome = self._reviewer(domain)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def _fix(
        self,
        prompt: str,
        manifest: SandboxManifest | None,
        handle: PersistentHandle | None,
    ) -> RunReport:
        assert manifest is not None
        assert handle is not None
        path = manifest.writable_paths[0]
        self.fix_order.append(path)
        if not self._fix_succeeds(path):
            return make_report(succeeded=False, error="fixer gave up")
        target = handle.location / path
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle_file:
            handle_file.write(f"fixed: {len(self.fix_order)}\n")
        return make_report()


__all__ = [
    "FakeClock",
    "FakeRunner",
    "FakeVcs",
    "MemorySandbox",
    "ScriptedStream",
    "ScriptedWatcher",
    "SpawnCall",
    "make_report",
]
