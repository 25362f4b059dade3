"""Git operations on sandbox branches."""

from cruise_orchestrator.integration_plane.git_ops import (
    CommandResult,
    ConflictFile,
    GitCommandError,
    GitWorkspace,
    MergeAttempt,
    run_git,
)

__all__ = [
    "CommandResult",
    "ConflictFile",
    "GitCommandError",
    "GitWorkspace",
    "MergeAttempt",
    "run_git",
]
