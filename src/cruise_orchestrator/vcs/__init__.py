"""VCS collaborator interface and the GitHub CLI adapter."""

from cruise_orchestrator.vcs.base import (
    ApprovalStatus,
    PullRequest,
    ReviewComment,
    VcsCollaborator,
    VcsError,
)
from cruise_orchestrator.vcs.github import GhResult, GitHubCli

__all__ = [
    "ApprovalStatus",
    "GhResult",
    "GitHubCli",
    "PullRequest",
    "ReviewComment",
    "VcsCollaborator",
    "VcsError",
]
