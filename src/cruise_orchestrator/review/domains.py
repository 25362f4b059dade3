"""Review domains and the focus each reviewer is asked to apply."""

from __future__ import annotations

from enum import StrEnum
from typing import Final


class ReviewDomain(StrEnum):
    SECURITY = "security"
    TECHNICAL_FEASIBILITY = "technical_feasibility"
    TASK_GRANULARITY = "task_granularity"
    DEPENDENCY_COMPLETENESS = "dependency_completeness"
    GENERAL_POLISH = "general_polish"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").capitalize()

    @property
    def focus(self) -> str:
        return _FOCUS[self]

    @classmethod
    def for_iteration(cls, iteration: int) -> ReviewDomain:
        """Domain for the 1-based review ``iteration``; later rounds are polish."""
        if iteration < 1:
            raise ValueError("iteration must be >= 1")
        ordered = tuple(cls)
        return ordered[iteration - 1] if iteration <= len(ordered) else cls.GENERAL_POLISH

    @classmethod
    def parse(cls, value: str) -> ReviewDomain:
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            choices = ", ".join(domain.value for domain in cls)
            raise ValueError(f"unknown review domain {value!r}; expected one of {choices}") from exc


_FOCUS: Final[dict[ReviewDomain, str]] = {
    ReviewDomain.SECURITY: (
        "Review for security gaps: authentication, secrets management, injection "
        "vulnerabilities, input validation. Suggest mitigations."
    ),
    ReviewDomain.TECHNICAL_FEASIBILITY: (
        "Review technical approach: Is the tech stack appropriate? Are there better "
        "alternatives? Is the approach sound?"
    ),
    ReviewDomain.TASK_GRANULARITY: (
        "Review task sizing: Are tasks too large to parallelize effectively? Too small "
        "to be meaningful? Suggest splits or merges."
    ),
    ReviewDomain.DEPENDENCY_COMPLETENESS: (
        "Review dependencies: Are there missing dependency links? Tasks that could run "
        "in parallel but are serialized unnecessarily?"
    ),
    ReviewDomain.GENERAL_POLISH: (
        "Final review: Any remaining issues with the plan? Clarity, completeness, "
        "feasibility concerns?"
    ),
}

ALL_DOMAINS: Final[tuple[ReviewDomain, ...]] = tuple(ReviewDomain)

__all__ = ["ALL_DOMAINS", "ReviewDomain"]
