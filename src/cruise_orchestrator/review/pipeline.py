"""
Concurrent review/fix pipeline over one pull request.

Every review domain gets its own read-only lifecycle run, gated by a
``BoundedSemaphore``. Reviewers post line-anchored findings on the pull
request and queue them on a bounded ``FixerChannel``; a single fixer drains
the channel in FIFO order, committing, pushing, replying in the finding's
thread and resolving it. The fixer stops on ``AllReviewersComplete``, which
the channel emits once the last reviewer's sender is closed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final, TypeVar

from cruise_orchestrator.constants import DEFAULT_REMOTE
from cruise_orchestrator.domain.models import TaskComplexity
from cruise_orchestrator.integration_plane.git_ops import GitCommandError, GitWorkspace
from cruise_orchestrator.integration_plane.integrator import COMMIT_PREFIX
from cruise_orchestrator.observability.logging import correlation_scope
from cruise_orchestrator.review.channel import AllReviewersComplete, FixerChannel, QueuedComment
from cruise_orchestrator.review.domains import ALL_DOMAINS
from cruise_orchestrator.review.parsing import ReviewParseError, Verdict, parse_review_response
from cruise_orchestrator.review.prompts import fix_prompt, reviewer_prompt
from cruise_orchestrator.sandbox.manifest import SandboxManifest
from cruise_orchestrator.utils.concurrency import BoundedSemaphore
from cruise_orchestrator.vcs.base import VcsError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from cruise_orchestrator.lifecycle.watcher import Watcher
    from cruise_orchestrator.review.channel import Sender
    from cruise_orchestrator.review.domains import ReviewDomain
    from cruise_orchestrator.review.parsing import ReviewSuggestion
    from cruise_orchestrator.sandbox.handles import PersistentHandle
    from cruise_orchestrator.vcs.base import PullRequest, ReviewComment, VcsCollaborator

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# A reviewer that cannot produce a verdict does not block the pull request.
REVIEWER_FAILURE_POLICY: Final[str] = "fail_open"
DEFAULT_MAX_CONCURRENT_REVIEWERS: Final[int] = 3
DEFAULT_CHANNEL_CAPACITY: Final[int] = 16
_FIXER_TOOLS: Final[tuple[str, ...]] = ("Read", "Glob", "Grep", "Edit", "Write")


class UnresolvableReason(StrEnum):
    NO_LINE_CONTEXT = "no_line_context"
    POST_FAILED = "post_failed"
    THREAD_NOT_FOUND = "thread_not_found"


@dataclass(frozen=True, slots=True)
class ReviewVerdict:
    domain: ReviewDomain
    verdict: Verdict
    inconclusive: bool = False
    findings: tuple[ReviewComment, ...] = ()
    summary: str = ""
    error: str | None = None

    @property
    def approved(self) -> bool:
        return self.verdict is Verdict.APPROVED

    def to_dict(self) -> dict[str, object]:
        return {
            "domain": self.domain.value,
            "verdict": self.verdict.value,
            "inconclusive": self.inconclusive,
            "findings": [comment.id for comment in self.findings],
            "summary": self.summary,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class FixRecord:
    queued: QueuedComment
    fixed: bool
    commit: str | None = None
    replied: bool = False
    resolved: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "finding_id": self.queued.finding_id,
            "domain": self.queued.domain.value,
            "path": self.queued.comment.path,
            "fixed": self.fixed,
            "commit": self.commit,
            "replied": self.replied,
            "resolved": self.resolved,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class UnresolvableFinding:
    """A finding the pipeline could not carry through to a resolved thread."""

    domain: ReviewDomain
    path: str
    body: str
    reason: UnresolvableReason
    line: int | None = None
    finding_id: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "domain": self.domain.value,
            "path": self.path,
            "line": self.line,
            "finding_id": self.finding_id,
            "reason": self.reason.value,
            "body": self.body,
        }


@dataclass(frozen=True, slots=True)
class PipelineResult:
    verdicts: tuple[ReviewVerdict, ...] = ()
    fixes: tuple[FixRecord, ...] = ()
    unresolvable: tuple[UnresolvableFinding, ...] = ()
    callback_errors: tuple[str, ...] = ()

    @property
    def approved(self) -> bool:
        return all(verdict.approved for verdict in self.verdicts)

    @property
    def fixed_count(self) -> int:
        return sum(1 for record in self.fixes if record.fixed)

    @property
    def inconclusive_domains(self) -> tuple[ReviewDomain, ...]:
        return tuple(verdict.domain for verdict in self.verdicts if verdict.inconclusive)

    def to_dict(self) -> dict[str, object]:
        return {
            "approved": self.approved,
            "verdicts": [verdict.to_dict() for verdict in self.verdicts],
            "fixes": [record.to_dict() for record in self.fixes],
            "unresolvable": [finding.to_dict() for finding in self.unresolvable],
            "callback_errors": list(self.callback_errors),
        }


@dataclass(frozen=True, slots=True)
class _ReviewerOutcome:
    verdict: ReviewVerdict
    unresolvable: tuple[UnresolvableFinding, ...] = ()
    callback_errors: tuple[str, ...] = ()


class ReviewPipeline:
    """See the module docstring; ``run`` may be called once per review round."""

    def __init__(
        self,
        watcher: Watcher,
        handle: PersistentHandle,
        vcs: VcsCollaborator,
        pr: PullRequest,
        *,
        domains: Sequence[ReviewDomain] = ALL_DOMAINS,
        max_concurrent_reviewers: int = DEFAULT_MAX_CONCURRENT_REVIEWERS,
        channel_capacity: int = DEFAULT_CHANNEL_CAPACITY,
        fixer: Watcher | None = None,
        context: str = "",
        remote: str = DEFAULT_REMOTE,
        env_overrides: Mapping[str, str] | None = None,
        on_queued: Callable[[QueuedComment], None] | None = None,
        on_fixed: Callable[[FixRecord], None] | None = None,
    ) -> None:
        if max_concurrent_reviewers <= 0:
            raise ValueError("max_concurrent_reviewers must be > 0")
        if channel_capacity <= 0:
            raise ValueError("channel_capacity must be > 0")
        if len(set(domains)) != len(domains):
            raise ValueError("domains must not repeat")
        self._reviewer = watcher.with_integrator(None)
        self._fixer = (fixer or watcher).with_integrator(None)
        self._handle = handle
        self._vcs = vcs
        self._pr = pr
        self._domains = tuple(domains)
        self._channel_capacity = channel_capacity
        self._semaphore = BoundedSemaphore(max_concurrent_reviewers)
        self._context = context
        self._remote = remote
        self._workspace = GitWorkspace(handle.location, env_overrides=env_overrides)
        self._on_queued = on_queued
        self._on_fixed = on_fixed

    @property
    def semaphore(self) -> BoundedSemaphore:
        return self._semaphore

    @property
    def domains(self) -> tuple[ReviewDomain, ...]:
        return self._domains

    async def run(self, *, pending: Sequence[QueuedComment] = ()) -> PipelineResult:
        """
        Review every domain and fix what they find.

        ``pending`` findings, e.g. reloaded after a restart, are queued for the
        fixer ahead of anything the reviewers produce.
        """
        if not self._domains and not pending:
            return PipelineResult()

        channel = FixerChannel(self._channel_capacity)
        # All senders exist before any reviewer starts so completion cannot fire early.
        replay = channel.open_sender("pending") if pending else None
        senders = [(domain, channel.open_sender(domain.value)) for domain in self._domains]
        logger.info(
            "Starting review of %s: %d domain(s), %d reviewer slot(s), %d pending finding(s)",
            self._pr.url,
            len(self._domains),
            self._semaphore.limit,
            len(pending),
        )

        fixer_task = asyncio.create_task(self._fix_all(channel))
        replay_tasks = [asyncio.create_task(_replay(replay, pending))] if replay else []
        reviewer_tasks = [
            asyncio.create_task(self._review(domain, sender)) for domain, sender in senders
        ]
        everything = (fixer_task, *replay_tasks, *reviewer_tasks)
        try:
            # A fixer that dies stops draining the channel, so it is watched
            # alongside the reviewers instead of after them.
            done, _ = await asyncio.wait(everything, return_when=asyncio.FIRST_EXCEPTION)
            for task in everything:
                if task in done and task.exception() is not None:
                    task.result()
            outcomes = [task.result() for task in reviewer_tasks]
            fixes, fix_unresolvable, fix_errors = fixer_task.result()
        except BaseException:
            for task in everything:
                task.cancel()
            await asyncio.gather(*everything, return_exceptions=True)
            raise

        unresolvable = [item for outcome in outcomes for item in outcome.unresolvable]
        unresolvable.extend(fix_unresolvable)
        callback_errors = [error for outcome in outcomes for error in outcome.callback_errors]
        callback_errors.extend(fix_errors)
        result = PipelineResult(
            verdicts=tuple(outcome.verdict for outcome in outcomes),
            fixes=tuple(fixes),
            unresolvable=tuple(unresolvable),
            callback_errors=tuple(callback_errors),
        )
        logger.info(
            "Review of %s finished: approved=%s, %d fix(es), %d unresolvable, peak reviewers %d",
            self._pr.url,
            result.approved,
            result.fixed_count,
            len(result.unresolvable),
            self._semaphore.peak_in_use,
        )
        return result

    async def _review(self, domain: ReviewDomain, sender: Sender) -> _ReviewerOutcome:
        async with sender:
            with correlation_scope(domain=domain.value):
                async with self._semaphore.permit():
                    verdict, suggestions = await self._run_reviewer(domain)
                if verdict.verdict is not Verdict.NEEDS_CHANGES:
                    return _ReviewerOutcome(verdict)
                return await self._publish(verdict, suggestions, sender)

    async def _run_reviewer(
        self,
        domain: ReviewDomain,
    ) -> tuple[ReviewVerdict, tuple[ReviewSuggestion, ...]]:
        prompt = reviewer_prompt(domain, self._context)
        try:
            report = await self._reviewer.run(
                prompt,
                manifest=SandboxManifest.read_only(),
                handle=self._handle,
                title=f"{domain.label} review",
            )
        except Exception as exc:  # noqa: BLE001 - reviewer failures follow the failure policy
            logger.exception("Reviewer %s raised", domain.value)
            return _inconclusive(domain, f"{type(exc).__name__}: {exc}"), ()
        if not report.succeeded:
            return _inconclusive(domain, report.error or report.summary), ()

        try:
            parsed = parse_review_response(report.output_text)
        except ReviewParseError as exc:
            return _inconclusive(domain, str(exc)), ()
        if parsed.verdict is Verdict.FAILED:
            return _inconclusive(domain, "reviewer reported an unrecognized verdict"), ()

        logger.info(
            "Reviewer %s: %s with %d suggestion(s)",
            domain.value,
            parsed.verdict.value,
            len(parsed.suggestions),
        )
        verdict = ReviewVerdict(domain=domain, verdict=parsed.verdict, summary=parsed.summary)
        return verdict, parsed.suggestions

    async def _publish(
        self,
        verdict: ReviewVerdict,
        suggestions: tuple[ReviewSuggestion, ...],
        sender: Sender,
    ) -> _ReviewerOutcome:
        domain = verdict.domain
        posted: list[ReviewComment] = []
        unresolvable: list[UnresolvableFinding] = []
        callback_errors: list[str] = []
        for suggestion in suggestions:
            if suggestion.line is None:
                logger.warning(
                    "Reviewer %s finding on %s has no line; reporting as unresolvable",
                    domain.value,
                    suggestion.file,
                )
                unresolvable.append(
                    _unresolvable(domain, suggestion, UnresolvableReason.NO_LINE_CONTEXT)
                )
                continue
            try:
                comment = await self._vcs.post_finding(
                    self._pr,
                    suggestion.file,
                    suggestion.line,
                    suggestion.comment_body(),
                )
            except VcsError as exc:
                logger.warning(
                    "Failed to post %s finding on %s: %s", domain.value, suggestion.file, exc
                )
                unresolvable.append(
                    _unresolvable(domain, suggestion, UnresolvableReason.POST_FAILED)
                )
                continue
            posted.append(comment)
            queued = QueuedComment(
                domain=domain,
                comment=comment,
                target=self._pr.number,
                repo=self._pr.repo,
            )
            await sender.send(queued)
            error = _notify(self._on_queued, queued, "on_queued")
            if error is not None:
                callback_errors.append(error)

        return _ReviewerOutcome(
            verdict=ReviewVerdict(
                domain=domain,
                verdict=verdict.verdict,
                findings=tuple(posted),
                summary=verdict.summary,
            ),
            unresolvable=tuple(unresolvable),
            callback_errors=tuple(callback_errors),
        )

    async def _fix_all(
        self,
        channel: FixerChannel,
    ) -> tuple[list[FixRecord], list[UnresolvableFinding], list[str]]:
        records: list[FixRecord] = []
        unresolvable: list[UnresolvableFinding] = []
        callback_errors: list[str] = []
        while True:
            message = await channel.receive()
            if isinstance(message, AllReviewersComplete):
                logger.info("All reviewers complete; fixer processed %d finding(s)", len(records))
                return records, unresolvable, callback_errors
            queued = message.queued
            with correlation_scope(
                domain=queued.domain.value,
                finding_id=str(queued.finding_id),
            ):
                record = await self._fix_one(queued)
            records.append(record)
            if record.fixed and not record.resolved:
                unresolvable.append(
                    UnresolvableFinding(
                        domain=queued.domain,
                        path=queued.comment.path,
                        body=queued.comment.body,
                        reason=UnresolvableReason.THREAD_NOT_FOUND,
                        line=queued.comment.line,
                        finding_id=queued.finding_id,
                    )
                )
            error = _notify(self._on_fixed, record, "on_fixed")
            if error is not None:
                callback_errors.append(error)

    async def _fix_one(self, queued: QueuedComment) -> FixRecord:
        """One fixer round; failures are recorded on the ``FixRecord``, never raised."""
        comment = queued.comment
        manifest = SandboxManifest(
            readable_paths=("**",),
            writable_paths=(comment.path,),
            allowed_tools=_FIXER_TOOLS,
            complexity=TaskComplexity.MEDIUM,
        )
        try:
            report = await self._fixer.run(
                fix_prompt(queued, self._context),
                manifest=manifest,
                handle=self._handle,
                title=f"Fix {queued.domain.value} finding {queued.finding_id}",
            )
        except Exception as exc:  # noqa: BLE001 - a failed fix round never aborts the pipeline
            logger.exception("Fixer raised on finding %d", queued.finding_id)
            return FixRecord(queued=queued, fixed=False, error=f"{type(exc).__name__}: {exc}")
        if not report.succeeded:
            logger.warning("Fixer failed on finding %d: %s", queued.finding_id, report.summary)
            return FixRecord(queued=queued, fixed=False, error=report.error or report.summary)

        message = f"{COMMIT_PREFIX} Address {queued.domain.value} finding on {comment.path}"
        try:
            commit = await asyncio.to_thread(self._workspace.commit_all, message)
            if commit is None:
                return FixRecord(queued=queued, fixed=False, error="fixer produced no changes")
            await asyncio.to_thread(self._workspace.push, self._remote, self._handle.branch)
        except GitCommandError as exc:
            logger.error("Failed to publish fix for finding %d: %s", queued.finding_id, exc)
            return FixRecord(queued=queued, fixed=False, error=str(exc))

        replied = False
        resolved = False
        try:
            await self._vcs.post_reply(self._pr, queued.finding_id, f"Fixed in commit {commit}")
            replied = True
            resolved = await self._vcs.resolve_finding(self._pr, queued.finding_id)
        except VcsError as exc:
            logger.warning("Could not close thread for finding %d: %s", queued.finding_id, exc)
        if not resolved:
            logger.warning(
                "Finding %d fixed in %s but its thread is still open", queued.finding_id, commit
            )
        return FixRecord(
            queued=queued,
            fixed=True,
            commit=commit,
            replied=replied,
            resolved=resolved,
        )


async def _replay(sender: Sender, pending: Sequence[QueuedComment]) -> None:
    async with sender:
        for queued in pending:
            await sender.send(queued)


def _notify(callback: Callable[[_T], None] | None, item: _T, name: str) -> str | None:
    """Run a progress callback; its failure is logged and returned, never raised."""
    if callback is None:
        return None
    try:
        callback(item)
    except Exception as exc:  # noqa: BLE001 - progress callbacks never stop the pipeline
        logger.exception("%s callback failed", name)
        return f"{name}: {type(exc).__name__}: {exc}"
    return None


def _inconclusive(domain: ReviewDomain, error: str) -> ReviewVerdict:
    logger.warning(
        "Reviewer %s produced no verdict (%s); counting as approved under %s policy",
        domain.value,
        error,
        REVIEWER_FAILURE_POLICY,
    )
    return ReviewVerdict(
        domain=domain,
        verdict=Verdict.APPROVED,
        inconclusive=True,
        error=error,
    )


def _unresolvable(
    domain: ReviewDomain,
    suggestion: ReviewSuggestion,
    reason: UnresolvableReason,
) -> UnresolvableFinding:
    return UnresolvableFinding(
        domain=domain,
        path=suggestion.file,
        body=suggestion.comment_body(),
        reason=reason,
        line=suggestion.line,
    )


__all__ = [
    "DEFAULT_CHANNEL_CAPACITY",
    "DEFAULT_MAX_CONCURRENT_REVIEWERS",
    "REVIEWER_FAILURE_POLICY",
    "FixRecord",
    "PipelineResult",
    "ReviewPipeline",
    "ReviewVerdict",
    "UnresolvableFinding",
    "UnresolvableReason",
]
