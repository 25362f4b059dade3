"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git defaults.
DEFAULT_BASE_BRANCH: Final[str] = "main"
DEFAULT_REMOTE: Final[str] = "origin"
SANDBOX_BRANCH_PREFIX: Final[str] = "cruise"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
PHASE_STATE_SCHEMA_VERSION: Final[int] = 1
PLAN_SCHEMA_VERSION: Final[int] = 1

# Runtime paths (relative to the repository or sandbox root).
WORKTREES_DIR: Final[PurePosixPath] = PurePosixPath(".cruise/worktrees")
SANDBOX_STATE_DIR: Final[str] = ".cruise"
PHASE_STATE_FILENAME: Final[str] = "phase-state.json"
SANDBOX_METADATA_FILENAME: Final[str] = "sandbox.json"

# Tools understood by the Claude Code CLI.
KNOWN_TOOLS: Final[frozenset[str]] = frozenset(
    {
        "Read",
        "Write",
        "Edit",
        "Bash",
        "Glob",
        "Grep",
        "LS",
        "Task",
        "WebFetch",
        "WebSearch",
        "NotebookEdit",
        "NotebookRead",
    }
)
READ_ONLY_TOOLS: Final[tuple[str, ...]] = ("Read", "Glob", "Grep")

# Marker a reviewer leaves on a PR once no further findings are expected.
REVIEW_COMPLETE_MARKER: Final[str] = "[REVIEW COMPLETE]"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_REMOTE",
    "KNOWN_TOOLS",
    "PHASE_STATE_FILENAME",
    "PHASE_STATE_SCHEMA_VERSION",
    "PLAN_SCHEMA_VERSION",
    "READ_ONLY_TOOLS",
    "REVIEW_COMPLETE_MARKER",
    "SANDBOX_BRANCH_PREFIX",
    "SANDBOX_METADATA_FILENAME",
    "SANDBOX_STATE_DIR",
    "WORKTREES_DIR",
]
