"""VCS collaborator interface: pull requests, review threads and approval state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence


class VcsError(RuntimeError):
    """Raised when the hosting service or its CLI rejects a request."""


class ApprovalStatus(StrEnum):
    OPEN = "open"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"

    @property
    def is_accepted(self) -> bool:
        return self in (ApprovalStatus.APPROVED, ApprovalStatus.MERGED)


@dataclass(frozen=True, slots=True)
class PullRequest:
    number: int
    url: str
    branch: str = ""
    base: str = ""
    repo: str = ""

    def __post_init__(self) -> None:
        if self.number <= 0:
            raise ValueError("number must be > 0")
        if not self.url:
            raise ValueError("url must not be empty")

    def to_dict(self) -> dict[str, object]:
        return {
            "number": self.number,
            "url": self.url,
            "branch": self.branch,
            "base": self.base,
            "repo": self.repo,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> PullRequest:
        number = payload.get("number")
        url = payload.get("url")
        if not isinstance(number, int) or not isinstance(url, str):
            raise ValueError("pull request requires integer 'number' and string 'url'")
        return cls(
            number=number,
            url=url,
            branch=str(payload.get("branch", "")),
            base=str(payload.get("base", "")),
            repo=str(payload.get("repo", "")),
        )


@dataclass(frozen=True, slots=True)
class ReviewComment:
    """A line-anchored review comment; ``id`` identifies its thread."""

    id: int
    path: str
    body: str
    line: int | None = None

    @property
    def has_line_context(self) -> bool:
        return self.line is not None


@runtime_checkable
class VcsCollaborator(Protocol):
    async def create_pr(self, branch: str, title: str, body: str) -> PullRequest: ...

    async def post_finding(
        self,
        pr: PullRequest,
        path: str,
        line: int,
        body: str,
    ) -> ReviewComment: ...

    async def post_reply(self, pr: PullRequest, finding_id: int, body: str) -> None:
        """Reply inside the finding's thread, never as a top-level comment."""
        ...

    async def resolve_finding(self, pr: PullRequest, finding_id: int) -> bool:
        """Mark the finding's thread resolved; ``False`` when no thread matches."""
        ...

    async def check_approval(self, pr: PullRequest) -> ApprovalStatus: ...

    async def pending_findings(self, pr: PullRequest) -> Sequence[ReviewComment]: ...


__all__ = [
    "ApprovalStatus",
    "PullRequest",
    "ReviewComment",
    "VcsCollaborator",
    "VcsError",
]
