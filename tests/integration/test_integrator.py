"""Integration tests for publishing sandbox branches to a bare remote."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cruise_orchestrator.integration_plane.git_ops import ConflictFile, GitWorkspace
from cruise_orchestrator.integration_plane.integrator import (
    COMMIT_PREFIX,
    IntegrationError,
    Integrator,
    conflict_repair_prompt,
)
from cruise_orchestrator.sandbox.manifest import SandboxManifest
from cruise_orchestrator.sandbox.worktree import WorktreeSandbox
from cruise_orchestrator.vcs.base import PullRequest, VcsError
from fakes import FakeVcs
from helpers import git

if TYPE_CHECKING:
    from pathlib import Path

    from cruise_orchestrator.sandbox.handles import SandboxHandle

_LINES = [f"line {index}\n" for index in range(60)]


def _edited(prefix: str, indexes: tuple[int, ...]) -> str:
    return "".join(
        f"{prefix} {index}\n" if index in indexes else line for index, line in enumerate(_LINES)
    )


class _BrokenVcs(FakeVcs):
    async def create_pr(self, branch: str, title: str, body: str) -> PullRequest:
        raise VcsError("gh pr create failed: no permission")


@pytest.fixture
def sandbox(git_repo: Path) -> WorktreeSandbox:
    (git_repo / "data.txt").write_text("".join(_LINES), encoding="utf-8")
    git(git_repo, "add", "data.txt")
    git(git_repo, "commit", "--quiet", "-m", "data")
    git(git_repo, "push", "--quiet", "origin", "main")
    return WorktreeSandbox(git_repo)


def _advance_main(repo: Path, path: str, content: str) -> None:
    (repo / path).write_text(content, encoding="utf-8")
    git(repo, "commit", "--quiet", "-am", f"main edits {path}")
    git(repo, "push", "--quiet", "origin", "main")


def _remote_has(repo: Path, branch: str) -> bool:
    return bool(git(repo, "ls-remote", "--heads", "origin", branch).stdout.strip())


@pytest.mark.integration
async def test_publishes_commits_and_opens_pull_request(
    sandbox: WorktreeSandbox, git_repo: Path
) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/greet")
    (handle.location / "hello.txt").write_text("hello\n", encoding="utf-8")

    result = await Integrator(FakeVcs()).integrate(handle, title="Add greeting")

    assert result.has_changes
    assert len(result.commits) == 1
    assert result.files_changed == ("hello.txt",)
    assert result.pull_request is not None
    assert result.pull_request.branch == "task/greet"
    assert _remote_has(git_repo, "task/greet")
    subject = git(handle.location, "log", "-1", "--format=%s").stdout.strip()
    assert subject == f"{COMMIT_PREFIX} Add greeting"


@pytest.mark.integration
async def test_branch_without_changes_is_not_published(
    sandbox: WorktreeSandbox, git_repo: Path
) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/noop")

    result = await Integrator(FakeVcs()).integrate(handle, title="Nothing")

    assert not result.has_changes
    assert result.pull_request is None
    assert not _remote_has(git_repo, "task/noop")


@pytest.mark.integration
async def test_small_conflicts_keep_the_sandbox_side(
    sandbox: WorktreeSandbox, git_repo: Path
) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/small")
    _advance_main(git_repo, "data.txt", _edited("main", (5,)))
    (handle.location / "data.txt").write_text(_edited("sandbox", (5,)), encoding="utf-8")

    result = await Integrator(FakeVcs()).integrate(handle, title="Edit data")

    assert result.conflicts_resolved == ("data.txt",)
    assert not result.repaired
    text = (handle.location / "data.txt").read_text(encoding="utf-8")
    assert "sandbox 5" in text
    assert "<<<<<<<" not in text
    assert _remote_has(git_repo, "task/small")


@pytest.mark.integration
async def test_large_conflicts_without_repair_fail_cleanly(
    sandbox: WorktreeSandbox, git_repo: Path
) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/large")
    _advance_main(git_repo, "data.txt", _edited("main", (5, 25, 45)))
    (handle.location / "data.txt").write_text(_edited("sandbox", (5, 25, 45)), encoding="utf-8")

    with pytest.raises(IntegrationError, match="exceed the auto-resolve threshold") as excinfo:
        await Integrator(FakeVcs(), conflict_threshold=2).integrate(handle, title="Edit data")

    assert len(excinfo.value.commits) == 1
    assert not GitWorkspace(handle.location).merge_in_progress()
    assert not _remote_has(git_repo, "task/large")


@pytest.mark.integration
async def test_large_conflicts_are_handed_to_repair(
    sandbox: WorktreeSandbox, git_repo: Path
) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/repair")
    _advance_main(git_repo, "data.txt", _edited("main", (5, 25, 45)))
    (handle.location / "data.txt").write_text(_edited("sandbox", (5, 25, 45)), encoding="utf-8")
    seen: list[tuple[ConflictFile, ...]] = []

    async def repair(target: SandboxHandle, conflicts: tuple[ConflictFile, ...]) -> bool:
        seen.append(conflicts)
        merged = _edited("merged", (5, 25, 45))
        (target.location / "data.txt").write_text(merged, encoding="utf-8")
        return True

    result = await Integrator(FakeVcs()).integrate(handle, title="Edit data", repair=repair)

    assert seen == [(ConflictFile(path="data.txt", marker_count=3),)]
    assert result.repaired
    assert result.conflicts_resolved == ("data.txt",)
    assert "merged 25" in (handle.location / "data.txt").read_text(encoding="utf-8")
    assert not GitWorkspace(handle.location).merge_in_progress()


@pytest.mark.integration
async def test_failed_repair_aborts_the_merge(sandbox: WorktreeSandbox, git_repo: Path) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/unrepaired")
    _advance_main(git_repo, "data.txt", _edited("main", (5, 25, 45)))
    (handle.location / "data.txt").write_text(_edited("sandbox", (5, 25, 45)), encoding="utf-8")

    async def repair(target: SandboxHandle, conflicts: tuple[ConflictFile, ...]) -> bool:
        return False

    with pytest.raises(IntegrationError, match="conflicts not repaired: data.txt"):
        await Integrator(FakeVcs()).integrate(handle, title="Edit data", repair=repair)

    assert not GitWorkspace(handle.location).merge_in_progress()


@pytest.mark.integration
async def test_pull_request_failure_keeps_pushed_commits(
    sandbox: WorktreeSandbox, git_repo: Path
) -> None:
    handle = sandbox.create(SandboxManifest.read_only(), branch="task/nopr")
    (handle.location / "hello.txt").write_text("hello\n", encoding="utf-8")

    with pytest.raises(IntegrationError, match="no permission") as excinfo:
        await Integrator(_BrokenVcs()).integrate(handle, title="Add greeting")

    assert len(excinfo.value.commits) == 1
    assert excinfo.value.files_changed == ("hello.txt",)
    assert _remote_has(git_repo, "task/nopr")


def test_repair_prompt_lists_conflicts() -> None:
    prompt = conflict_repair_prompt(
        "origin/main", (ConflictFile("a.py", 3), ConflictFile("b.py", 4))
    )

    assert "origin/main" in prompt
    assert "- a.py (3 conflict blocks)" in prompt
    assert "Do not commit." in prompt


def test_negative_threshold_is_rejected() -> None:
    with pytest.raises(ValueError, match="conflict_threshold"):
        Integrator(FakeVcs(), conflict_threshold=-1)
