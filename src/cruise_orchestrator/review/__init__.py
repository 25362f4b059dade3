"""Multi-domain review of a pull request with a single serial fixer."""

from cruise_orchestrator.review.channel import (
    AllReviewersComplete,
    ChannelClosedError,
    Fix,
    FixerChannel,
    FixerMessage,
    QueuedComment,
    Sender,
)
from cruise_orchestrator.review.domains import ALL_DOMAINS, ReviewDomain
from cruise_orchestrator.review.parsing import (
    ParsedReview,
    ReviewParseError,
    ReviewSuggestion,
    Verdict,
    parse_review_response,
)
from cruise_orchestrator.review.pipeline import (
    REVIEWER_FAILURE_POLICY,
    FixRecord,
    PipelineResult,
    ReviewPipeline,
    ReviewVerdict,
    UnresolvableFinding,
    UnresolvableReason,
)

__all__ = [
    "ALL_DOMAINS",
    "REVIEWER_FAILURE_POLICY",
    "AllReviewersComplete",
    "ChannelClosedError",
    "Fix",
    "FixRecord",
    "FixerChannel",
    "FixerMessage",
    "ParsedReview",
    "PipelineResult",
    "QueuedComment",
    "ReviewDomain",
    "ReviewParseError",
    "ReviewPipeline",
    "ReviewSuggestion",
    "ReviewVerdict",
    "Sender",
    "UnresolvableFinding",
    "UnresolvableReason",
    "Verdict",
    "parse_review_response",
]
