"""Prompt text for reviewer and fixer runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from cruise_orchestrator.review.channel import QueuedComment
    from cruise_orchestrator.review.domains import ReviewDomain

RESPONSE_FORMAT: Final[str] = """\
Respond with a JSON object:
```json
{
  "verdict": "approved" | "needs_changes",
  "summary": "one paragraph",
  "suggestions": [
    {
      "file": "path/to/file",
      "line": 42,
      "issue": "description of issue",
      "suggestion": "how to fix it"
    }
  ]
}
```"""


def reviewer_prompt(domain: ReviewDomain, context: str, diff: str = "") -> str:
    sections = [
        f"## Code Review Request: {domain.label}",
        "Review the changes on this branch. Do not modify any files.",
        f"### Focus\n\n{domain.focus}",
    ]
    if context.strip():
        sections.append(f"### Original Task\n\n{context.strip()}")
    if diff.strip():
        sections.append(f"### Changes Made\n\n```diff\n{diff.rstrip()}\n```")
    sections.append(
        "Only report issues you can anchor to a file and line where possible. "
        "Use \"approved\" when nothing in your focus area needs to change."
    )
    sections.append(f"### Response Format\n\n{RESPONSE_FORMAT}")
    return "\n\n".join(sections) + "\n"


def fix_prompt(queued: QueuedComment, context: str = "") -> str:
    comment = queued.comment
    location = comment.path if comment.line is None else f"{comment.path} (line {comment.line})"
    sections = [
        "## Fix Request",
        f"A {queued.domain.label.lower()} reviewer left the following finding on {location}:",
        comment.body.strip(),
        f"Change only {comment.path} unless the fix cannot be made without touching "
        "another file. Do not commit; the orchestrator commits and pushes your changes.",
    ]
    if context.strip():
        sections.insert(1, f"### Original Task\n\n{context.strip()}")
    return "\n\n".join(sections) + "\n"


__all__ = ["RESPONSE_FORMAT", "fix_prompt", "reviewer_prompt"]
