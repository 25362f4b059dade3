"""
Crash-recovery state for a long-running review phase.

The state lives inside the sandbox at ``.cruise/phase-state.json`` so that a
restarted supervisor can find its pull request, the backoff interval it was
waiting on, and the findings that were queued but not yet fixed. There is no
locking; one supervisor owns one sandbox.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from cruise_orchestrator.constants import (
    PHASE_STATE_FILENAME,
    PHASE_STATE_SCHEMA_VERSION,
    SANDBOX_STATE_DIR,
)
from cruise_orchestrator.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


class PhaseStateError(ValueError):
    """Raised when a phase-state file is missing, unreadable or malformed."""


class PhaseName(StrEnum):
    STARTED = "started"
    REVIEWING = "reviewing"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class PhaseState:
    sandbox_location: str
    branch_name: str
    phase: PhaseName = PhaseName.STARTED
    pr_url: str | None = None
    pr_number: int | None = None
    current_review_domain: str | None = None
    last_activity: str = field(default_factory=_utc_now_iso)
    backoff_interval_secs: float = 0.0
    pending_comment_ids: tuple[int, ...] = ()
    finding_domains: Mapping[int, str] = field(default_factory=dict)
    completed_rounds: int = 0
    schema_version: int = PHASE_STATE_SCHEMA_VERSION

    def __post_init__(self) -> None:
        if not self.branch_name.strip():
            raise ValueError("branch_name must not be empty")
        if self.backoff_interval_secs < 0:
            raise ValueError("backoff_interval_secs must be >= 0")
        if self.completed_rounds < 0:
            raise ValueError("completed_rounds must be >= 0")
        if (self.pr_url is None) != (self.pr_number is None):
            raise ValueError("pr_url and pr_number must be set together")
        object.__setattr__(self, "pending_comment_ids", tuple(self.pending_comment_ids))
        object.__setattr__(self, "finding_domains", dict(self.finding_domains))

    @property
    def has_pull_request(self) -> bool:
        return self.pr_number is not None

    def touched(self, **changes: object) -> PhaseState:
        """Copy with ``changes`` applied and ``last_activity`` set to now."""
        return replace(self, last_activity=_utc_now_iso(), **changes)  # type: ignore[arg-type]

    def with_queued(self, finding_id: int, domain: str) -> PhaseState:
        if finding_id in self.pending_comment_ids:
            return self
        return self.touched(
            pending_comment_ids=(*self.pending_comment_ids, finding_id),
            finding_domains={**self.finding_domains, finding_id: domain},
        )

    def with_fixed(self, finding_id: int) -> PhaseState:
        domains = {key: value for key, value in self.finding_domains.items() if key != finding_id}
        return self.touched(
            pending_comment_ids=tuple(
                pending for pending in self.pending_comment_ids if pending != finding_id
            ),
            finding_domains=domains,
        )

    def without_pending(self, finding_ids: Iterable[int]) -> PhaseState:
        dropped = set(finding_ids)
        return self.touched(
            pending_comment_ids=tuple(
                pending for pending in self.pending_comment_ids if pending not in dropped
            ),
            finding_domains={
                key: value for key, value in self.finding_domains.items() if key not in dropped
            },
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "sandbox_location": self.sandbox_location,
            "branch_name": self.branch_name,
            "pr_url": self.pr_url,
            "pr_number": self.pr_number,
            "phase": self.phase.value,
            "current_review_domain": self.current_review_domain,
            "last_activity": self.last_activity,
            "backoff_interval_secs": self.backoff_interval_secs,
            "pending_comment_ids": list(self.pending_comment_ids),
            "finding_domains": {str(key): value for key, value in self.finding_domains.items()},
            "completed_rounds": self.completed_rounds,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> PhaseState:
        version = payload.get("schema_version", PHASE_STATE_SCHEMA_VERSION)
        if version != PHASE_STATE_SCHEMA_VERSION:
            raise PhaseStateError(f"unsupported phase-state schema_version {version!r}")
        pending = payload.get("pending_comment_ids", [])
        domains = payload.get("finding_domains", {})
        if not isinstance(pending, list) or not all(_is_int(item) for item in pending):
            raise PhaseStateError("phase state field 'pending_comment_ids' must be a list of ints")
        if not isinstance(domains, dict):
            raise PhaseStateError("phase state field 'finding_domains' must be an object")
        try:
            return cls(
                sandbox_location=_require_str(payload, "sandbox_location"),
                branch_name=_require_str(payload, "branch_name"),
                phase=PhaseName(payload.get("phase", PhaseName.STARTED.value)),
                pr_url=_optional_str(payload, "pr_url"),
                pr_number=_optional_int(payload, "pr_number"),
                current_review_domain=_optional_str(payload, "current_review_domain"),
                last_activity=_require_str(payload, "last_activity"),
                backoff_interval_secs=_number(payload, "backoff_interval_secs"),
                pending_comment_ids=tuple(pending),
                finding_domains={int(key): str(value) for key, value in domains.items()},
                completed_rounds=_optional_int(payload, "completed_rounds") or 0,
            )
        except PhaseStateError:
            raise
        except ValueError as exc:
            raise PhaseStateError(f"malformed phase state: {exc}") from exc


class PhaseStateStore:
    """Read and write ``PhaseState`` for one sandbox."""

    __slots__ = ("_path",)

    def __init__(self, sandbox_path: Path | str) -> None:
        self._path = Path(sandbox_path) / SANDBOX_STATE_DIR / PHASE_STATE_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def save(self, state: PhaseState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(self._path, json.dumps(state.to_dict(), sort_keys=True, indent=2) + "\n")

    def load(self) -> PhaseState:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise PhaseStateError(f"no phase state at {self._path}") from exc
        except OSError as exc:
            raise PhaseStateError(f"cannot read {self._path}: {exc}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PhaseStateError(f"{self._path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise PhaseStateError(f"{self._path} must contain a JSON object")
        return PhaseState.from_dict(payload)


def load_phase_state(location: Path | str) -> PhaseState:
    return PhaseStateStore(location).load()


def _require_str(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise PhaseStateError(f"phase state field {key!r} must be a string")
    return value


def _optional_str(payload: Mapping[str, object], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PhaseStateError(f"phase state field {key!r} must be a string or null")
    return value


def _optional_int(payload: Mapping[str, object], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if not _is_int(value):
        raise PhaseStateError(f"phase state field {key!r} must be an integer or null")
    return value  # type: ignore[return-value]


def _number(payload: Mapping[str, object], key: str) -> float:
    value = payload.get(key, 0.0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PhaseStateError(f"phase state field {key!r} must be a number")
    return float(value)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


__all__ = [
    "PhaseName",
    "PhaseState",
    "PhaseStateError",
    "PhaseStateStore",
    "load_phase_state",
]
