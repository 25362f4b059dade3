"""Git CLI wrapper scoped to one sandbox working tree."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from cruise_orchestrator.constants import SANDBOX_STATE_DIR

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

CONFLICT_MARKER: Final[str] = "<<<<<<<"
# Sandbox bookkeeping never enters commits.
_EXCLUDE_STATE: Final[str] = f":(exclude){SANDBOX_STATE_DIR}"


class GitCommandError(RuntimeError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class ConflictFile:
    path: str
    marker_count: int

    def is_simple(self, threshold: int) -> bool:
        return self.marker_count <= threshold


@dataclass(frozen=True, slots=True)
class MergeAttempt:
    """Outcome of merging the base branch into the sandbox branch without committing."""

    clean: bool
    conflicts: tuple[ConflictFile, ...] = ()

    def all_simple(self, threshold: int) -> bool:
        return all(conflict.is_simple(threshold) for conflict in self.conflicts)


def run_git(
    args: Sequence[str],
    *,
    cwd: Path,
    check: bool = True,
    input_text: str | None = None,
    env_overrides: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``git`` non-interactively with system config ignored."""
    command = ("git", *args)
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    if env_overrides:
        env.update(env_overrides)

    completed = subprocess.run(
        command,
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        input=input_text,
        check=False,
    )
    result = CommandResult(
        command=command,
        cwd=cwd.as_posix(),
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )
    if check and result.returncode != 0:
        raise GitCommandError(
            command=result.command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


def count_conflict_markers(text: str) -> int:
    return sum(1 for line in text.splitlines() if line.startswith(CONFLICT_MARKER))


class GitWorkspace:
    """Operations on a checked-out sandbox branch."""

    __slots__ = ("path", "_env_overrides")

    def __init__(self, path: Path | str, *, env_overrides: Mapping[str, str] | None = None) -> None:
        self.path = Path(path).resolve()
        self._env_overrides = dict(env_overrides or {})

    def current_branch(self) -> str:
        branch = self._git(["branch", "--show-current"]).stdout.strip()
        if not branch:
            raise GitCommandError(
                command=("git", "branch", "--show-current"),
                returncode=0,
                stdout="",
                stderr="detached HEAD is not supported",
            )
        return branch

    def head(self) -> str:
        return self._git(["rev-parse", "HEAD"]).stdout.strip()

    def has_changes(self) -> bool:
        status = self._git(["status", "--porcelain", "--", ".", _EXCLUDE_STATE]).stdout
        return bool(status.strip())

    def commit_all(self, message: str) -> str | None:
        """Stage everything except sandbox state and commit; ``None`` when nothing changed."""
        if not message.strip():
            raise ValueError("commit message must not be empty")
        self.ensure_identity()
        self._git(["add", "--all", "--", ".", _EXCLUDE_STATE])
        staged = self._git(["diff", "--cached", "--name-only"]).stdout.strip()
        if not staged:
            return None
        self._git(["commit", "--no-gpg-sign", "--quiet", "-m", message.strip()])
        return self.head()

    def commits_since(self, base_ref: str) -> tuple[str, ...]:
        output = self._git(["rev-list", "--reverse", f"{base_ref}..HEAD"]).stdout
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def changed_files(self, base_ref: str) -> tuple[str, ...]:
        output = self._git(["diff", "--name-only", f"{base_ref}...HEAD"]).stdout
        return tuple(sorted({line.strip() for line in output.splitlines() if line.strip()}))

    def fetch(self, remote: str, branch: str) -> None:
        self._git(["fetch", "--quiet", remote, branch])

    def push(self, remote: str, branch: str) -> None:
        self._git(["push", "--quiet", "-u", remote, branch])

    def start_merge(self, ref: str) -> MergeAttempt:
        """
        Merge ``ref`` into the current branch with ``--no-commit``.

        A clean merge is aborted again (the branch already merges cleanly). On
        conflicts the merge is left in progress for resolution and each
        conflicted file's marker count is reported.
        """
        self.ensure_identity()
        result = self._git(["merge", "--no-commit", "--no-ff", ref], check=False)
        conflicted = self.conflicted_paths()
        if result.returncode == 0 and not conflicted:
            self.abort_merge()
            return MergeAttempt(clean=True)
        if not conflicted:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        conflicts = tuple(
            ConflictFile(path=path, marker_count=self._marker_count(path)) for path in conflicted
        )
        return MergeAttempt(clean=False, conflicts=conflicts)

    def conflicted_paths(self) -> tuple[str, ...]:
        output = self._git(["diff", "--name-only", "--diff-filter=U"]).stdout
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def resolve_keeping_ours(self, paths: Iterable[str]) -> None:
        for path in paths:
            self._git(["checkout", "--ours", "--", path])
            self._git(["add", "--", path])

    def stage_resolved(self, paths: Iterable[str]) -> tuple[str, ...]:
        """Stage files that no longer contain markers; return those that still do."""
        unresolved: list[str] = []
        for path in paths:
            if self._marker_count(path) > 0:
                unresolved.append(path)
                continue
            self._git(["add", "--", path])
        return tuple(unresolved)

    def conclude_merge(self, message: str) -> str:
        self._git(["commit", "--no-gpg-sign", "--quiet", "--no-edit", "-m", message])
        return self.head()

    def merge_in_progress(self) -> bool:
        probe = self._git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], check=False)
        return probe.returncode == 0

    def abort_merge(self) -> None:
        self._git(["merge", "--abort"], check=False)

    def ensure_identity(self) -> None:
        if self._git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._git(["config", "--local", "user.name", "cruise-orchestrator"])
        if self._git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._git(["config", "--local", "user.email", "cruise@example.invalid"])

    def _marker_count(self, path: str) -> int:
        try:
            text = (self.path / path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return 0
        return count_conflict_markers(text)

    def _git(self, args: Sequence[str], *, check: bool = True) -> CommandResult:
        return run_git(args, cwd=self.path, check=check, env_overrides=self._env_overrides)


__all__ = [
    "CONFLICT_MARKER",
    "CommandResult",
    "ConflictFile",
    "GitCommandError",
    "GitWorkspace",
    "MergeAttempt",
    "count_conflict_markers",
    "run_git",
]
