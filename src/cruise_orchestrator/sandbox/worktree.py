"""Git-worktree-backed ``Sandbox`` implementation."""

from __future__ import annotations

import itertools
import json
import logging
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from cruise_orchestrator.constants import (
    SANDBOX_BRANCH_PREFIX,
    SANDBOX_METADATA_FILENAME,
    SANDBOX_STATE_DIR,
    WORKTREES_DIR,
)
from cruise_orchestrator.integration_plane.git_ops import GitCommandError, run_git
from cruise_orchestrator.sandbox.handles import (
    PersistentHandle,
    SandboxCleanupError,
    SandboxCreationError,
    SandboxHandle,
    TransientHandle,
)
from cruise_orchestrator.utils.fs import is_relative_to, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from cruise_orchestrator.integration_plane.git_ops import CommandResult
    from cruise_orchestrator.sandbox.manifest import SandboxManifest

logger = logging.getLogger(__name__)

_UNSAFE_DIR_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorktreeSandbox:
    """Provision one ``git worktree`` per sandbox under ``worktree_root``."""

    def __init__(
        self,
        repo_root: str | Path,
        worktree_root: str | Path | None = None,
        *,
        base_ref: str = "HEAD",
        now_fn: Callable[[], datetime] | None = None,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        resolved_repo = Path(repo_root).expanduser().resolve(strict=True)
        if not resolved_repo.is_dir():
            raise NotADirectoryError(f"{resolved_repo} is not a directory")

        if worktree_root is None:
            resolved_root = resolved_repo.joinpath(*WORKTREES_DIR.parts)
        else:
            candidate = Path(worktree_root).expanduser()
            resolved_root = (
                candidate.resolve(strict=False)
                if candidate.is_absolute()
                else (resolved_repo / candidate).resolve(strict=False)
            )

        self._repo_root = resolved_repo
        self._worktree_root = resolved_root
        self._base_ref = base_ref
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._env_overrides = dict(env_overrides or {})
        self._counter = itertools.count(1)
        self._lock = threading.RLock()

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def worktree_root(self) -> Path:
        return self._worktree_root

    def create(
        self,
        manifest: SandboxManifest,
        *,
        persistent: bool = False,
        branch: str | None = None,
    ) -> SandboxHandle:
        with self._lock:
            branch_name = branch if branch is not None else self._next_branch_name()
            sandbox_id = _UNSAFE_DIR_CHARS.sub("-", branch_name).strip("-")
            location = self._worktree_root / sandbox_id
            if location.exists() or location.is_symlink():
                raise SandboxCreationError(f"sandbox directory already exists: {location}")

            created_branch = not self._branch_exists(branch_name)
            if created_branch:
                add_args = ["worktree", "add", "--quiet", "-b", branch_name, str(location)]
                add_args.append(self._base_ref)
            else:
                add_args = ["worktree", "add", "--quiet", str(location), branch_name]

            try:
                self._worktree_root.mkdir(parents=True, exist_ok=True)
                self._git(add_args)
            except (GitCommandError, OSError) as exc:
                raise SandboxCreationError(
                    f"failed to create worktree for {branch_name}: {exc}"
                ) from exc

            handle_type = PersistentHandle if persistent else TransientHandle
            handle = handle_type(
                sandbox=self,
                sandbox_id=sandbox_id,
                location=location.resolve(strict=False),
                branch=branch_name,
                manifest=manifest,
            )
            try:
                self._write_metadata(handle, created_branch=created_branch)
            except OSError as exc:
                self._remove_worktree(handle, delete_branch=created_branch)
                raise SandboxCreationError(f"failed to write sandbox metadata: {exc}") from exc

            logger.info(
                "Created %s sandbox %s on branch %s",
                "persistent" if persistent else "transient",
                handle.location,
                branch_name,
            )
            return handle

    def attach(self, location: Path, branch: str, manifest: SandboxManifest) -> PersistentHandle:
        resolved = Path(location).expanduser().resolve(strict=False)
        if not resolved.is_dir():
            raise SandboxCreationError(f"sandbox directory does not exist: {resolved}")
        probe = run_git(
            ["rev-parse", "--is-inside-work-tree"],
            cwd=resolved,
            check=False,
            env_overrides=self._env_overrides,
        )
        if probe.returncode != 0 or probe.stdout.strip() != "true":
            raise SandboxCreationError(f"not a git working tree: {resolved}")
        return PersistentHandle(
            sandbox=self,
            sandbox_id=resolved.name,
            location=resolved,
            branch=branch,
            manifest=manifest,
        )

    def path(self, handle: SandboxHandle) -> Path:
        if handle.released:
            raise ValueError(f"sandbox {handle.sandbox_id} has already been cleaned up")
        return handle.location

    def cleanup(self, handle: SandboxHandle) -> None:
        if handle.released:
            return
        with self._lock:
            metadata = self._read_metadata(handle.location)
            delete_branch = bool(metadata.get("created_branch", False))
            try:
                self._remove_worktree(handle, delete_branch=delete_branch)
            except (GitCommandError, OSError, ValueError) as exc:
                raise SandboxCleanupError(
                    f"failed to clean up sandbox {handle.location}: {exc}"
                ) from exc
            handle.mark_released()
            logger.info("Cleaned up sandbox %s", handle.location)

    def _next_branch_name(self) -> str:
        timestamp = self._now_fn().astimezone(UTC).strftime("%Y%m%d%H%M%S")
        return f"{SANDBOX_BRANCH_PREFIX}/sandbox-{timestamp}-{next(self._counter)}"

    def _remove_worktree(self, handle: SandboxHandle, *, delete_branch: bool) -> None:
        location = handle.location
        root = self._worktree_root.resolve(strict=False)
        if not is_relative_to(location.parent.resolve(strict=False) / location.name, root):
            raise ValueError(f"sandbox path is outside worktree root: {location}")

        self._git(["worktree", "remove", "--force", str(location)], check=False)
        if location.exists() or location.is_symlink():
            safe_delete(location, root)
        self._git(["worktree", "prune"], check=False)

        if delete_branch and self._branch_exists(handle.branch):
            self._git(["branch", "-D", handle.branch])

    def _write_metadata(self, handle: SandboxHandle, *, created_branch: bool) -> None:
        state_dir = handle.location / SANDBOX_STATE_DIR
        state_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "sandbox_id": handle.sandbox_id,
            "branch": handle.branch,
            "created_branch": created_branch,
            "persistent": handle.persistent,
            "created_at": _ensure_utc(self._now_fn()).isoformat(),
            "manifest": handle.manifest.to_dict(),
        }
        (state_dir / SANDBOX_METADATA_FILENAME).write_text(
            json.dumps(payload, sort_keys=True, indent=2) + "\n",
            encoding="utf-8",
        )

    def _read_metadata(self, location: Path) -> dict[str, object]:
        metadata_path = location / SANDBOX_STATE_DIR / SANDBOX_METADATA_FILENAME
        if not metadata_path.is_file() or metadata_path.is_symlink():
            return {}
        try:
            payload = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return payload if isinstance(payload, dict) else {}

    def _branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def _git(self, args: Sequence[str], *, check: bool = True) -> CommandResult:
        return run_git(args, cwd=self._repo_root, check=check, env_overrides=self._env_overrides)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = ["WorktreeSandbox"]
