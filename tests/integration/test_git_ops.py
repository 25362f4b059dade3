"""Integration tests for sandbox git operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cruise_orchestrator.integration_plane.git_ops import (
    GitCommandError,
    GitWorkspace,
    count_conflict_markers,
    run_git,
)
from helpers import git

if TYPE_CHECKING:
    from pathlib import Path


def _diverge(repo: Path, path: str, ours: str, theirs: str) -> None:
    """Leave ``feature`` checked out with ``path`` edited differently than on ``main``."""
    git(repo, "checkout", "--quiet", "-b", "feature")
    (repo / path).write_text(ours, encoding="utf-8")
    git(repo, "commit", "--quiet", "-am", "ours")
    git(repo, "checkout", "--quiet", "main")
    (repo / path).write_text(theirs, encoding="utf-8")
    git(repo, "commit", "--quiet", "-am", "theirs")
    git(repo, "checkout", "--quiet", "feature")


def test_count_conflict_markers() -> None:
    text = "<<<<<<< HEAD\na\n=======\nb\n>>>>>>> main\nplain\n<<<<<<< HEAD\n"
    assert count_conflict_markers(text) == 2
    assert count_conflict_markers("no markers <<<<<<< mid-line\n") == 0


@pytest.mark.integration
def test_run_git_raises_with_stderr(git_repo: Path) -> None:
    with pytest.raises(GitCommandError) as excinfo:
        run_git(["rev-parse", "--verify", "no-such-ref"], cwd=git_repo)

    assert excinfo.value.returncode != 0
    assert excinfo.value.command[:2] == ("git", "rev-parse")
    assert "git command failed" in str(excinfo.value)
    assert run_git(["rev-parse", "--verify", "no-such-ref"], cwd=git_repo, check=False).returncode


@pytest.mark.integration
def test_commit_all_skips_sandbox_state(git_repo: Path) -> None:
    workspace = GitWorkspace(git_repo)
    state_dir = git_repo / ".cruise"
    state_dir.mkdir()
    (state_dir / "phase-state.json").write_text("{}", encoding="utf-8")

    assert not workspace.has_changes()
    assert workspace.commit_all("nothing to do") is None

    (git_repo / "app.py").write_text("print('hi')\n", encoding="utf-8")
    assert workspace.has_changes()
    sha = workspace.commit_all("  Add app  ")

    assert sha == workspace.head()
    assert git(git_repo, "log", "-1", "--format=%s").stdout.strip() == "Add app"
    assert workspace.commits_since("origin/main") == (sha,)
    assert workspace.changed_files("origin/main") == ("app.py",)
    with pytest.raises(ValueError, match="must not be empty"):
        workspace.commit_all("   ")


@pytest.mark.integration
def test_current_branch_and_push(git_repo: Path) -> None:
    git(git_repo, "checkout", "--quiet", "-b", "task/one")
    workspace = GitWorkspace(git_repo)
    (git_repo / "one.txt").write_text("1\n", encoding="utf-8")
    workspace.commit_all("one")

    workspace.push("origin", "task/one")

    assert workspace.current_branch() == "task/one"
    remote_heads = git(git_repo, "ls-remote", "--heads", "origin", "task/one").stdout
    assert workspace.head() in remote_heads


@pytest.mark.integration
def test_clean_merge_is_not_left_in_progress(git_repo: Path) -> None:
    git(git_repo, "checkout", "--quiet", "-b", "feature")
    (git_repo / "feature.txt").write_text("f\n", encoding="utf-8")
    git(git_repo, "add", "feature.txt")
    git(git_repo, "commit", "--quiet", "-m", "feature")
    workspace = GitWorkspace(git_repo)
    head = workspace.head()

    attempt = workspace.start_merge("main")

    assert attempt.clean
    assert not workspace.merge_in_progress()
    assert workspace.head() == head


@pytest.mark.integration
def test_conflicting_merge_reports_marker_counts(git_repo: Path) -> None:
    _diverge(git_repo, "README.md", "# demo\nours\n", "# demo\ntheirs\n")
    workspace = GitWorkspace(git_repo)

    attempt = workspace.start_merge("main")

    assert not attempt.clean
    assert [(item.path, item.marker_count) for item in attempt.conflicts] == [("README.md", 1)]
    assert attempt.all_simple(2)
    assert workspace.merge_in_progress()
    assert workspace.conflicted_paths() == ("README.md",)

    workspace.resolve_keeping_ours(["README.md"])
    merge_sha = workspace.conclude_merge("merge main")

    assert not workspace.merge_in_progress()
    assert (git_repo / "README.md").read_text(encoding="utf-8") == "# demo\nours\n"
    parents = git(git_repo, "rev-list", "--parents", "-n", "1", merge_sha).stdout.split()
    assert len(parents) == 3


@pytest.mark.integration
def test_stage_resolved_reports_files_with_markers(git_repo: Path) -> None:
    _diverge(git_repo, "README.md", "# demo\nours\n", "# demo\ntheirs\n")
    workspace = GitWorkspace(git_repo)
    workspace.start_merge("main")

    assert workspace.stage_resolved(["README.md"]) == ("README.md",)

    (git_repo / "README.md").write_text("# demo\nboth\n", encoding="utf-8")
    assert workspace.stage_resolved(["README.md"]) == ()
    workspace.abort_merge()
    assert not workspace.merge_in_progress()


@pytest.mark.integration
def test_detached_head_is_rejected(git_repo: Path) -> None:
    git(git_repo, "checkout", "--quiet", "--detach")

    with pytest.raises(GitCommandError, match="detached HEAD"):
        GitWorkspace(git_repo).current_branch()
