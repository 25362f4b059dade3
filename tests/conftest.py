"""Shared fixtures: deterministic clocks and throwaway git repositories."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fakes import FakeClock
from helpers import git

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Cruise Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "cruise@example.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Cruise Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "cruise@example.invalid")


@pytest.fixture
def git_repo(tmp_path: Path, isolated_git_env: None) -> Path:
    """Repository on ``main`` with one commit and a bare ``origin`` remote."""
    remote = tmp_path / "origin.git"
    repo = tmp_path / "repo"
    git(tmp_path, "init", "--quiet", "--bare", "--initial-branch=main", str(remote))
    git(tmp_path, "init", "--quiet", "--initial-branch=main", str(repo))
    (repo / "README.md").write_text("# demo\n", encoding="utf-8")
    (repo / ".gitignore").write_text(".cruise/\n", encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", "initial")
    git(repo, "remote", "add", "origin", str(remote))
    git(repo, "push", "--quiet", "origin", "main")
    return repo
