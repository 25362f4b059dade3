"""GitHub ``VcsCollaborator`` backed by the ``gh`` CLI.

Authentication is delegated to ``gh auth``; this adapter never reads tokens.
Replies are posted to the review-comment thread they answer, and threads are
resolved through the GraphQL ``resolveReviewThread`` mutation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from cruise_orchestrator.vcs.base import ApprovalStatus, PullRequest, ReviewComment, VcsError

logger = logging.getLogger(__name__)

DEFAULT_GH_BINARY: Final[str] = "gh"
_THREADS_QUERY: Final[str] = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 100) {
        nodes {
          id
          isResolved
          comments(first: 100) { nodes { databaseId } }
        }
      }
    }
  }
}
"""
_RESOLVE_MUTATION: Final[str] = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) { thread { id isResolved } }
}
"""


@dataclass(frozen=True, slots=True)
class GhResult:
    returncode: int
    stdout: str
    stderr: str


GhExecutor = Callable[[Sequence[str], Path | None], Awaitable[GhResult]]


async def run_gh(args: Sequence[str], cwd: Path | None) -> GhResult:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd is not None else None,
    )
    stdout, stderr = await process.communicate()
    return GhResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def parse_pr_number(url: str) -> int:
    tail = url.strip().rstrip("/").rsplit("/", 1)[-1]
    try:
        number = int(tail)
    except ValueError as exc:
        raise VcsError(f"cannot determine pull request number from {url!r}") from exc
    if number <= 0:
        raise VcsError(f"cannot determine pull request number from {url!r}")
    return number


def approval_from_view(payload: dict[str, Any]) -> ApprovalStatus:
    state = payload.get("state")
    if state == "MERGED":
        return ApprovalStatus.MERGED
    if state == "CLOSED":
        return ApprovalStatus.CLOSED
    if state == "OPEN" and payload.get("reviewDecision") == "APPROVED":
        return ApprovalStatus.APPROVED
    return ApprovalStatus.OPEN


class GitHubCli:
    """``gh``-driven pull request operations for one repository checkout."""

    def __init__(
        self,
        *,
        cwd: Path | str | None = None,
        repo: str | None = None,
        base_branch: str = "main",
        binary: str = DEFAULT_GH_BINARY,
        executor: GhExecutor | None = None,
    ) -> None:
        self._cwd = Path(cwd) if cwd is not None else None
        self._repo = repo
        self._base_branch = base_branch
        self._binary = binary
        self._executor: GhExecutor = executor if executor is not None else run_gh

    async def repo_name(self) -> str:
        """``owner/name`` of the repository, resolved once via ``gh repo view``."""
        if self._repo is None:
            output = await self._gh(
                ["repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"]
            )
            name = output.strip()
            if "/" not in name:
                raise VcsError(f"unexpected repository name from gh: {name!r}")
            self._repo = name
        return self._repo

    async def create_pr(self, branch: str, title: str, body: str) -> PullRequest:
        output = await self._gh(
            [
                "pr",
                "create",
                "--title",
                title,
                "--body",
                body,
                "--head",
                branch,
                "--base",
                self._base_branch,
            ]
        )
        url = output.strip().splitlines()[-1] if output.strip() else ""
        if not url:
            raise VcsError("gh pr create returned no pull request URL")
        pr = PullRequest(
            number=parse_pr_number(url),
            url=url,
            branch=branch,
            base=self._base_branch,
            repo=await self.repo_name(),
        )
        logger.info("Opened pull request #%d for %s", pr.number, branch)
        return pr

    async def view_pr(self, reference: str) -> PullRequest:
        """Look up an existing pull request by number, URL or branch."""
        payload = await self._gh_json(
            ["pr", "view", reference, "--json", "number,url,headRefName,baseRefName"]
        )
        if not isinstance(payload, dict):
            raise VcsError(f"unexpected gh pr view output for {reference!r}")
        return PullRequest(
            number=int(payload.get("number", 0)),
            url=str(payload.get("url", "")),
            branch=str(payload.get("headRefName", "")),
            base=str(payload.get("baseRefName", "")),
            repo=await self.repo_name(),
        )

    async def post_finding(
        self,
        pr: PullRequest,
        path: str,
        line: int,
        body: str,
    ) -> ReviewComment:
        repo = pr.repo or await self.repo_name()
        head = await self._gh_json(["pr", "view", str(pr.number), "--json", "headRefOid"])
        commit = head.get("headRefOid") if isinstance(head, dict) else None
        if not isinstance(commit, str) or not commit:
            raise VcsError(f"cannot determine head commit of pull request #{pr.number}")
        payload = await self._gh_json(
            [
                "api",
                "-X",
                "POST",
                f"repos/{repo}/pulls/{pr.number}/comments",
                "-f",
                f"body={body}",
                "-f",
                f"commit_id={commit}",
                "-f",
                f"path={path}",
                "-F",
                f"line={line}",
                "-f",
                "side=RIGHT",
            ]
        )
        comment = _comment_from_api(payload)
        if comment is None:
            raise VcsError(f"gh api returned no comment id for finding on {path}:{line}")
        return comment

    async def post_reply(self, pr: PullRequest, finding_id: int, body: str) -> None:
        repo = pr.repo or await self.repo_name()
        await self._gh(
            [
                "api",
                "-X",
                "POST",
                f"repos/{repo}/pulls/{pr.number}/comments/{finding_id}/replies",
                "-f",
                f"body={body}",
            ]
        )

    async def resolve_finding(self, pr: PullRequest, finding_id: int) -> bool:
        repo = pr.repo or await self.repo_name()
        owner, _, name = repo.partition("/")
        payload = await self._gh_json(
            [
                "api",
                "graphql",
                "-f",
                f"query={_THREADS_QUERY}",
                "-f",
                f"owner={owner}",
                "-f",
                f"name={name}",
                "-F",
                f"number={pr.number}",
            ]
        )
        thread_id = _thread_for_comment(payload, finding_id)
        if thread_id is None:
            logger.warning("No review thread on #%d matches finding %d", pr.number, finding_id)
            return False
        await self._gh(
            [
                "api",
                "graphql",
                "-f",
                f"query={_RESOLVE_MUTATION}",
                "-f",
                f"threadId={thread_id}",
            ]
        )
        return True

    async def check_approval(self, pr: PullRequest) -> ApprovalStatus:
        payload = await self._gh_json(["pr", "view", pr.url, "--json", "state,reviewDecision"])
        if not isinstance(payload, dict):
            raise VcsError(f"unexpected gh pr view output for {pr.url}")
        return approval_from_view(payload)

    async def pending_findings(self, pr: PullRequest) -> tuple[ReviewComment, ...]:
        """Top-level line comments of the pull request (replies excluded)."""
        repo = pr.repo or await self.repo_name()
        payload = await self._gh_json(
            ["api", "--paginate", f"repos/{repo}/pulls/{pr.number}/comments"]
        )
        if not isinstance(payload, list):
            raise VcsError(f"unexpected comments payload for #{pr.number}")
        comments: list[ReviewComment] = []
        for item in payload:
            if not isinstance(item, dict) or item.get("in_reply_to_id") is not None:
                continue
            if item.get("position") is None and item.get("line") is None:
                continue
            comment = _comment_from_api(item)
            if comment is not None:
                comments.append(comment)
        return tuple(comments)

    async def _gh(self, args: Sequence[str]) -> str:
        command = [self._binary, *args]
        try:
            result = await self._executor(command, self._cwd)
        except OSError as exc:
            raise VcsError(f"failed to run {self._binary}: {exc}") from exc
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or "(no output)"
            raise VcsError(f"{self._binary} {' '.join(args[:2])} failed: {detail}")
        return result.stdout

    async def _gh_json(self, args: Sequence[str]) -> Any:
        output = await self._gh(args)
        try:
            return json.loads(output)
        except ValueError as exc:
            raise VcsError(f"failed to parse {self._binary} output: {exc}") from exc


def _comment_from_api(payload: object) -> ReviewComment | None:
    if not isinstance(payload, dict):
        return None
    comment_id = payload.get("id")
    path = payload.get("path")
    if not isinstance(comment_id, int) or comment_id <= 0 or not isinstance(path, str) or not path:
        return None
    line = payload.get("line")
    return ReviewComment(
        id=comment_id,
        path=path,
        body=str(payload.get("body", "")),
        line=line if isinstance(line, int) else None,
    )


def _thread_for_comment(payload: object, comment_id: int) -> str | None:
    try:
        pull_request = payload["data"]["repository"]["pullRequest"]  # type: ignore[index]
        threads = pull_request["reviewThreads"]["nodes"]
    except (KeyError, TypeError):
        return None
    if not isinstance(threads, list):
        return None
    for thread in threads:
        if not isinstance(thread, dict):
            continue
        nodes = (thread.get("comments") or {}).get("nodes") or []
        if any(isinstance(node, dict) and node.get("databaseId") == comment_id for node in nodes):
            thread_id = thread.get("id")
            return thread_id if isinstance(thread_id, str) else None
    return None


__all__ = [
    "DEFAULT_GH_BINARY",
    "GhExecutor",
    "GhResult",
    "GitHubCli",
    "approval_from_view",
    "parse_pr_number",
    "run_gh",
]
