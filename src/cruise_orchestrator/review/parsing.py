"""Best-effort extraction of a structured review from free-form reviewer output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

_FENCED_JSON: Final[re.Pattern[str]] = re.compile(
    r"```(?:json)?[ \t]*\n(?P<body>.*?)\n[ \t]*```", re.DOTALL | re.IGNORECASE
)


class ReviewParseError(ValueError):
    """Raised when reviewer output contains no usable JSON review object."""


class Verdict(StrEnum):
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ReviewSuggestion:
    file: str
    issue: str
    suggestion: str
    line: int | None = None

    def __post_init__(self) -> None:
        if not self.file.strip():
            raise ValueError("file must not be empty")
        if self.line is not None and self.line <= 0:
            raise ValueError("line must be > 0")

    def comment_body(self) -> str:
        return f"**Issue:** {self.issue}\n\n**Suggestion:** {self.suggestion}"


@dataclass(frozen=True, slots=True)
class ParsedReview:
    verdict: Verdict
    suggestions: tuple[ReviewSuggestion, ...] = ()
    summary: str = ""


def parse_review_response(response: str) -> ParsedReview:
    """
    Parse reviewer output.

    A fenced ``json`` block wins; otherwise the span from the first ``{`` to the
    last ``}`` is tried. Unknown verdict strings map to ``Verdict.FAILED``.
    Suggestions missing ``file``, ``issue`` or ``suggestion`` are skipped.
    """
    payload = _extract_object(response)
    verdict_value = payload.get("verdict")
    if not isinstance(verdict_value, str):
        raise ReviewParseError("review object has no string 'verdict'")
    try:
        verdict = Verdict(verdict_value.strip().lower())
    except ValueError:
        verdict = Verdict.FAILED

    suggestions: list[ReviewSuggestion] = []
    raw_suggestions = payload.get("suggestions")
    if isinstance(raw_suggestions, list):
        for item in raw_suggestions:
            suggestion = _parse_suggestion(item)
            if suggestion is not None:
                suggestions.append(suggestion)

    summary = payload.get("summary")
    return ParsedReview(
        verdict=verdict,
        suggestions=tuple(suggestions),
        summary=summary if isinstance(summary, str) else "",
    )


def _extract_object(response: str) -> Mapping[str, object]:
    candidates = [match.group("body") for match in _FENCED_JSON.finditer(response)]
    start = response.find("{")
    end = response.rfind("}")
    if start != -1 and end > start:
        candidates.append(response[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ReviewParseError("no JSON review object found in reviewer output")


def _parse_suggestion(item: object) -> ReviewSuggestion | None:
    if not isinstance(item, dict):
        return None
    file = item.get("file")
    issue = item.get("issue")
    text = item.get("suggestion")
    if not isinstance(file, str) or not file.strip():
        return None
    if not isinstance(issue, str) or not isinstance(text, str):
        return None
    line = item.get("line")
    # bool is an int subclass; reject it along with non-positive numbers
    if isinstance(line, bool) or not isinstance(line, int) or line <= 0:
        line = None
    return ReviewSuggestion(file=file.strip(), issue=issue, suggestion=text, line=line)


__all__ = [
    "ParsedReview",
    "ReviewParseError",
    "ReviewSuggestion",
    "Verdict",
    "parse_review_response",
]
