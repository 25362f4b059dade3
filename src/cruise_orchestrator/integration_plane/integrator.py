"""Commit, merge-check, push and open a pull request for a finished run."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from cruise_orchestrator.constants import DEFAULT_BASE_BRANCH, DEFAULT_REMOTE
from cruise_orchestrator.integration_plane.git_ops import (
    ConflictFile,
    GitCommandError,
    GitWorkspace,
)
from cruise_orchestrator.sandbox.handles import SandboxHandle
from cruise_orchestrator.vcs.base import VcsError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cruise_orchestrator.vcs.base import PullRequest, VcsCollaborator

logger = logging.getLogger(__name__)

COMMIT_PREFIX: Final[str] = "[cruise-control]"
DEFAULT_CONFLICT_THRESHOLD: Final[int] = 2

ConflictRepair = Callable[[SandboxHandle, tuple[ConflictFile, ...]], Awaitable[bool]]


class IntegrationError(RuntimeError):
    """Integration stopped; ``commits`` lists work that already exists on the branch."""

    def __init__(
        self,
        message: str,
        *,
        commits: tuple[str, ...] = (),
        files_changed: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message)
        self.commits = commits
        self.files_changed = files_changed


@dataclass(frozen=True, slots=True)
class IntegrationResult:
    commits: tuple[str, ...] = ()
    files_changed: tuple[str, ...] = ()
    pull_request: PullRequest | None = None
    conflicts_resolved: tuple[str, ...] = ()
    repaired: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.commits)


class Integrator:
    """
    Publish a sandbox branch.

    Conflicts with the base branch are detected by merging it into the sandbox
    without committing. When every conflicting file has at most
    ``conflict_threshold`` conflict blocks the sandbox side is kept; larger
    conflicts are handed to ``repair`` and must leave no markers behind.
    """

    def __init__(
        self,
        vcs: VcsCollaborator,
        *,
        base_branch: str = DEFAULT_BASE_BRANCH,
        remote: str = DEFAULT_REMOTE,
        conflict_threshold: int = DEFAULT_CONFLICT_THRESHOLD,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        if conflict_threshold < 0:
            raise ValueError("conflict_threshold must be >= 0")
        self._vcs = vcs
        self._base_branch = base_branch
        self._remote = remote
        self._conflict_threshold = conflict_threshold
        self._env_overrides = dict(env_overrides or {})

    @property
    def base_ref(self) -> str:
        return f"{self._remote}/{self._base_branch}"

    async def integrate(
        self,
        handle: SandboxHandle,
        *,
        title: str,
        body: str = "",
        repair: ConflictRepair | None = None,
    ) -> IntegrationResult:
        workspace = GitWorkspace(handle.location, env_overrides=self._env_overrides)
        try:
            await asyncio.to_thread(workspace.commit_all, f"{COMMIT_PREFIX} {title}")
            await asyncio.to_thread(workspace.fetch, self._remote, self._base_branch)
            commits = await asyncio.to_thread(workspace.commits_since, self.base_ref)
        except GitCommandError as exc:
            raise IntegrationError(f"failed to prepare branch {handle.branch}: {exc}") from exc
        if not commits:
            logger.info("Branch %s has no changes relative to %s", handle.branch, self.base_ref)
            return IntegrationResult()

        resolved, repaired = await self._merge_base(workspace, handle, repair, commits)
        commits = await asyncio.to_thread(workspace.commits_since, self.base_ref)
        files_changed = await asyncio.to_thread(workspace.changed_files, self.base_ref)

        try:
            await asyncio.to_thread(workspace.push, self._remote, handle.branch)
        except GitCommandError as exc:
            raise IntegrationError(
                f"push of {handle.branch} failed: {exc}",
                commits=commits,
                files_changed=files_changed,
            ) from exc
        try:
            pull_request = await self._vcs.create_pr(handle.branch, title, body)
        except VcsError as exc:
            raise IntegrationError(
                f"pull request creation for {handle.branch} failed: {exc}",
                commits=commits,
                files_changed=files_changed,
            ) from exc

        return IntegrationResult(
            commits=commits,
            files_changed=files_changed,
            pull_request=pull_request,
            conflicts_resolved=resolved,
            repaired=repaired,
        )

    async def _merge_base(
        self,
        workspace: GitWorkspace,
        handle: SandboxHandle,
        repair: ConflictRepair | None,
        commits: tuple[str, ...],
    ) -> tuple[tuple[str, ...], bool]:
        try:
            attempt = await asyncio.to_thread(workspace.start_merge, self.base_ref)
        except GitCommandError as exc:
            raise IntegrationError(f"merge check failed: {exc}", commits=commits) from exc
        if attempt.clean:
            return (), False

        paths = tuple(conflict.path for conflict in attempt.conflicts)
        merge_message = f"{COMMIT_PREFIX} Merge {self.base_ref} into {handle.branch}"
        if attempt.all_simple(self._conflict_threshold):
            await asyncio.to_thread(workspace.resolve_keeping_ours, paths)
            await asyncio.to_thread(workspace.conclude_merge, merge_message)
            logger.info("Auto-resolved %d conflicting file(s): %s", len(paths), ", ".join(paths))
            return paths, False

        if repair is None:
            await asyncio.to_thread(workspace.abort_merge)
            raise IntegrationError(
                f"{len(paths)} conflicting file(s) exceed the auto-resolve threshold",
                commits=commits,
            )

        logger.info("Spawning conflict repair for %s", ", ".join(paths))
        try:
            repaired = await repair(handle, attempt.conflicts)
        except Exception as exc:
            await asyncio.to_thread(workspace.abort_merge)
            raise IntegrationError(f"conflict repair raised: {exc}", commits=commits) from exc

        if await asyncio.to_thread(workspace.merge_in_progress):
            unresolved = await asyncio.to_thread(workspace.stage_resolved, paths)
            if not repaired or unresolved:
                await asyncio.to_thread(workspace.abort_merge)
                remaining = ", ".join(unresolved) if unresolved else "repair run failed"
                raise IntegrationError(f"conflicts not repaired: {remaining}", commits=commits)
            await asyncio.to_thread(workspace.conclude_merge, merge_message)
        elif not repaired:
            raise IntegrationError("conflict repair run failed", commits=commits)
        await asyncio.to_thread(workspace.commit_all, f"{COMMIT_PREFIX} Conflict repair")
        return paths, True


def conflict_repair_prompt(base_ref: str, conflicts: tuple[ConflictFile, ...]) -> str:
    lines = [
        f"A merge of {base_ref} into this branch is in progress and has conflicts.",
        "Resolve every conflict so that both sides' intent is preserved, remove all",
        "conflict markers and leave the files ready to stage. Do not commit.",
        "",
        "Conflicting files:",
    ]
    lines.extend(
        f"- {conflict.path} ({conflict.marker_count} conflict blocks)" for conflict in conflicts
    )
    return "\n".join(lines)


__all__ = [
    "COMMIT_PREFIX",
    "DEFAULT_CONFLICT_THRESHOLD",
    "ConflictRepair",
    "conflict_repair_prompt",
    "IntegrationError",
    "IntegrationResult",
    "Integrator",
]
