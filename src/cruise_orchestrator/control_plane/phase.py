"""
Persistent review phase: one sandbox, many review rounds, approval wait.

``ReviewPhaseSupervisor`` owns a ``PersistentHandle`` for the pull request's
branch and writes ``PhaseState`` after every transition (finding queued,
finding fixed, round completed, each approval wait), so a crashed supervisor
can ``resume`` from the sandbox directory. Cleanup is always explicit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

from cruise_orchestrator.constants import DEFAULT_REMOTE
from cruise_orchestrator.control_plane.approval import ApprovalPoller, ApprovalRejectedError
from cruise_orchestrator.persistence.phase_state import (
    PhaseName,
    PhaseState,
    PhaseStateError,
    PhaseStateStore,
)
from cruise_orchestrator.review.channel import QueuedComment
from cruise_orchestrator.review.domains import ALL_DOMAINS, ReviewDomain
from cruise_orchestrator.review.pipeline import (
    DEFAULT_CHANNEL_CAPACITY,
    DEFAULT_MAX_CONCURRENT_REVIEWERS,
    ReviewPipeline,
)
from cruise_orchestrator.sandbox.handles import PersistentHandle, SandboxCreationError
from cruise_orchestrator.sandbox.manifest import SandboxManifest
from cruise_orchestrator.utils.backoff import Backoff
from cruise_orchestrator.vcs.base import PullRequest

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from cruise_orchestrator.lifecycle.watcher import Watcher
    from cruise_orchestrator.review.pipeline import FixRecord, PipelineResult
    from cruise_orchestrator.sandbox.handles import Sandbox
    from cruise_orchestrator.vcs.base import ApprovalStatus, VcsCollaborator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INITIAL_SECONDS: Final[float] = 5.0
DEFAULT_POLL_MAX_SECONDS: Final[float] = 300.0
DEFAULT_APPROVAL_TIMEOUT_SECONDS: Final[float] = 86_400.0


@dataclass(frozen=True, slots=True)
class ReviewPhaseConfig:
    domains: tuple[ReviewDomain, ...] = ALL_DOMAINS
    max_concurrent_reviewers: int = DEFAULT_MAX_CONCURRENT_REVIEWERS
    channel_capacity: int = DEFAULT_CHANNEL_CAPACITY
    poll_initial_seconds: float = DEFAULT_POLL_INITIAL_SECONDS
    poll_max_seconds: float = DEFAULT_POLL_MAX_SECONDS
    poll_multiplier: float = 2.0
    approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    remote: str = DEFAULT_REMOTE
    env_overrides: Mapping[str, str] = field(default_factory=dict)
    # One domain per round in review order, ending on general polish.
    rotate_domains: bool = False

    def __post_init__(self) -> None:
        if self.approval_timeout_seconds <= 0:
            raise ValueError("approval_timeout_seconds must be > 0")
        object.__setattr__(self, "domains", tuple(self.domains))

    def new_backoff(self) -> Backoff:
        return Backoff(
            self.poll_initial_seconds,
            self.poll_max_seconds,
            multiplier=self.poll_multiplier,
        )


class ReviewPhaseSupervisor:
    """Drive review rounds and the approval wait for one pull request."""

    def __init__(
        self,
        sandbox: Sandbox,
        watcher: Watcher,
        vcs: VcsCollaborator,
        *,
        config: ReviewPhaseConfig | None = None,
        fixer: Watcher | None = None,
        context: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sandbox = sandbox
        self._watcher = watcher
        self._fixer = fixer
        self._vcs = vcs
        self._config = config if config is not None else ReviewPhaseConfig()
        self._context = context
        self._clock = clock
        self._sleep = sleep
        self._backoff = self._config.new_backoff()
        self._handle: PersistentHandle | None = None
        self._pr: PullRequest | None = None
        self._state: PhaseState | None = None
        self._store: PhaseStateStore | None = None
        self._pending: tuple[QueuedComment, ...] = ()

    @property
    def handle(self) -> PersistentHandle | None:
        return self._handle

    @property
    def state(self) -> PhaseState | None:
        return self._state

    @property
    def pull_request(self) -> PullRequest | None:
        return self._pr

    @property
    def pending(self) -> tuple[QueuedComment, ...]:
        return self._pending

    @property
    def config(self) -> ReviewPhaseConfig:
        return self._config

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    async def start(self, pr: PullRequest) -> PhaseState:
        """Provision a persistent sandbox on the pull request's branch and save state."""
        if self._handle is not None:
            raise RuntimeError("review phase already started")
        if not pr.branch:
            raise ValueError("pull request has no head branch")
        handle = await asyncio.to_thread(
            self._sandbox.create,
            SandboxManifest.read_only(),
            persistent=True,
            branch=pr.branch,
        )
        if not isinstance(handle, PersistentHandle):
            raise SandboxCreationError(f"sandbox returned a non-persistent handle for {pr.branch}")
        self._bind(handle, pr)
        self._save(
            PhaseState(
                sandbox_location=handle.location.as_posix(),
                branch_name=handle.branch,
                pr_url=pr.url,
                pr_number=pr.number,
                backoff_interval_secs=self._backoff.current,
            )
        )
        logger.info("Review phase for %s started in %s", pr.url, handle.location)
        return self._require_state()

    async def resume(self, location: Path | str) -> PhaseState:
        """Re-attach to a saved sandbox and reload the findings still awaiting a fix."""
        if self._handle is not None:
            raise RuntimeError("review phase already started")
        store = PhaseStateStore(location)
        state = await asyncio.to_thread(store.load)
        if state.pr_url is None or state.pr_number is None:
            raise PhaseStateError(f"{store.path} records no pull request")
        handle = await asyncio.to_thread(
            self._sandbox.attach,
            Path(state.sandbox_location),
            state.branch_name,
            SandboxManifest.read_only(),
        )
        pr = PullRequest(number=state.pr_number, url=state.pr_url, branch=state.branch_name)
        self._bind(handle, pr)
        if state.backoff_interval_secs > 0:
            self._backoff.restore(state.backoff_interval_secs)
        self._state = state

        self._pending = await self._reload_pending(pr, state)
        logger.info(
            "Resumed review phase for %s at %s: %d round(s) done, %d finding(s) pending",
            pr.url,
            state.phase.value,
            state.completed_rounds,
            len(self._pending),
        )
        return state

    async def run_round(self, domains: Sequence[ReviewDomain] | None = None) -> PipelineResult:
        handle, pr = self._require_started()
        state = self._require_state()
        if domains is not None:
            selected = tuple(domains)
        elif self._config.rotate_domains:
            selected = (ReviewDomain.for_iteration(state.completed_rounds + 1),)
        else:
            selected = self._config.domains
        self._save(
            state.touched(
                phase=PhaseName.REVIEWING,
                current_review_domain=",".join(domain.value for domain in selected) or None,
            )
        )
        pipeline = ReviewPipeline(
            self._watcher,
            handle,
            self._vcs,
            pr,
            domains=selected,
            max_concurrent_reviewers=self._config.max_concurrent_reviewers,
            channel_capacity=self._config.channel_capacity,
            fixer=self._fixer,
            context=self._context,
            remote=self._config.remote,
            env_overrides=self._config.env_overrides,
            on_queued=self._on_queued,
            on_fixed=self._on_fixed,
        )
        result = await pipeline.run(pending=self._pending)

        self._pending = tuple(record.queued for record in result.fixes if not record.fixed)
        state = self._require_state()
        self._save(
            state.touched(
                completed_rounds=state.completed_rounds + 1,
                current_review_domain=None,
            )
        )
        logger.info(
            "Review round %d for %s done: approved=%s, %d still pending",
            state.completed_rounds + 1,
            pr.url,
            result.approved,
            len(self._pending),
        )
        return result

    async def await_approval(self, timeout: float | None = None) -> ApprovalStatus:
        _, pr = self._require_started()
        self._save(self._require_state().touched(phase=PhaseName.AWAITING_APPROVAL))
        poller = ApprovalPoller(
            self._vcs,
            self._backoff,
            clock=self._clock,
            sleep=self._sleep,
            on_wait=self._on_wait,
        )
        budget = timeout if timeout is not None else self._config.approval_timeout_seconds
        try:
            status = await poller.poll_for_approval(pr, budget)
        except ApprovalRejectedError:
            self._save(self._require_state().touched(phase=PhaseName.REJECTED))
            raise
        self._save(self._require_state().touched(phase=PhaseName.APPROVED))
        return status

    async def cleanup(self) -> None:
        handle, _ = self._require_started()
        await asyncio.to_thread(self._sandbox.cleanup, handle)
        logger.info("Cleaned up review sandbox %s", handle.location)
        self._handle = None
        self._store = None

    async def _reload_pending(
        self,
        pr: PullRequest,
        state: PhaseState,
    ) -> tuple[QueuedComment, ...]:
        if not state.pending_comment_ids:
            return ()
        wanted = set(state.pending_comment_ids)
        open_findings = {
            comment.id: comment
            for comment in await self._vcs.pending_findings(pr)
            if comment.id in wanted
        }
        missing = [
            finding_id
            for finding_id in state.pending_comment_ids
            if finding_id not in open_findings
        ]
        if missing:
            logger.warning(
                "Dropping %d pending finding(s) no longer open on %s: %s",
                len(missing),
                pr.url,
                ", ".join(str(item) for item in missing),
            )
            self._save(state.without_pending(missing))

        pending: list[QueuedComment] = []
        for finding_id in state.pending_comment_ids:
            comment = open_findings.get(finding_id)
            if comment is None:
                continue
            domain_value = state.finding_domains.get(finding_id, ReviewDomain.GENERAL_POLISH.value)
            pending.append(
                QueuedComment(
                    domain=ReviewDomain.parse(domain_value),
                    comment=comment,
                    target=pr.number,
                    repo=pr.repo,
                )
            )
        return tuple(pending)

    def _on_queued(self, queued: QueuedComment) -> None:
        self._save(self._require_state().with_queued(queued.finding_id, queued.domain.value))

    def _on_fixed(self, record: FixRecord) -> None:
        if record.fixed:
            self._save(self._require_state().with_fixed(record.queued.finding_id))

    def _on_wait(self, interval: float) -> None:
        self._save(self._require_state().touched(backoff_interval_secs=interval))

    def _bind(self, handle: PersistentHandle, pr: PullRequest) -> None:
        self._handle = handle
        self._pr = pr
        self._store = PhaseStateStore(handle.location)

    def _save(self, state: PhaseState) -> None:
        if self._store is None:
            raise RuntimeError("review phase has not been started")
        self._store.save(state)
        self._state = state

    def _require_state(self) -> PhaseState:
        if self._state is None:
            raise RuntimeError("review phase has not been started")
        return self._state

    def _require_started(self) -> tuple[PersistentHandle, PullRequest]:
        if self._handle is None or self._pr is None:
            raise RuntimeError("review phase has not been started")
        return self._handle, self._pr


__all__ = [
    "DEFAULT_APPROVAL_TIMEOUT_SECONDS",
    "DEFAULT_POLL_INITIAL_SECONDS",
    "DEFAULT_POLL_MAX_SECONDS",
    "ReviewPhaseConfig",
    "ReviewPhaseSupervisor",
]
