"""Per-run progress tracking and idle/total timeout evaluation."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Callable

DEFAULT_IDLE_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_TOTAL_TIMEOUT_SECONDS: Final[float] = 1800.0
DEFAULT_TICK_SECONDS: Final[float] = 1.0
RECENT_OUTPUT_LINES: Final[int] = 50


class TimeoutReason(StrEnum):
    IDLE = "idle"
    TOTAL = "total"


@dataclass(frozen=True, slots=True)
class TimeoutConfig:
    idle_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    total_seconds: float = DEFAULT_TOTAL_TIMEOUT_SECONDS
    tick_seconds: float = DEFAULT_TICK_SECONDS

    def __post_init__(self) -> None:
        if self.idle_seconds <= 0:
            raise ValueError("idle_seconds must be > 0")
        if self.total_seconds <= 0:
            raise ValueError("total_seconds must be > 0")
        if self.tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class ProgressSummary:
    """Immutable snapshot of a run's progress."""

    files_read: tuple[str, ...] = ()
    files_written: tuple[str, ...] = ()
    commits: tuple[str, ...] = ()
    output_lines: int = 0
    permission_errors: int = 0
    other_errors: int = 0
    total_duration_secs: float = 0.0
    idle_duration_secs: float = 0.0

    @property
    def has_activity(self) -> bool:
        return bool(self.files_read or self.files_written or self.commits or self.output_lines)

    def to_dict(self) -> dict[str, object]:
        return {
            "files_read": list(self.files_read),
            "files_written": list(self.files_written),
            "commits": list(self.commits),
            "output_lines": self.output_lines,
            "permission_errors": self.permission_errors,
            "other_errors": self.other_errors,
            "total_duration_secs": round(self.total_duration_secs, 3),
            "idle_duration_secs": round(self.idle_duration_secs, 3),
        }


@dataclass(slots=True)
class ProgressState:
    """Mutable progress owned by one run; every recorded event counts as activity."""

    clock: Callable[[], float] = time.monotonic
    files_read: dict[str, None] = field(default_factory=dict)
    files_written: dict[str, None] = field(default_factory=dict)
    commits_made: list[str] = field(default_factory=list)
    output_line_count: int = 0
    permission_errors: int = 0
    other_errors: int = 0
    recent_output: deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_OUTPUT_LINES))
    start_time: float = field(init=False)
    last_activity: float = field(init=False)

    def __post_init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        now = self.clock()
        self.start_time = now
        self.last_activity = now
        self.files_read.clear()
        self.files_written.clear()
        self.commits_made.clear()
        self.output_line_count = 0
        self.permission_errors = 0
        self.other_errors = 0
        self.recent_output.clear()

    def touch(self) -> None:
        self.last_activity = self.clock()

    def record_output(self, line: str, *, label: str = "stdout") -> None:
        self.output_line_count += 1
        self.recent_output.append(f"[{label}] {line}")
        self.touch()

    def record_file_read(self, path: str) -> None:
        self.files_read[path] = None
        self.recent_output.append(f"[file_read] {path}")
        self.touch()

    def record_file_write(self, path: str) -> None:
        self.files_written[path] = None
        self.recent_output.append(f"[file_write] {path}")
        self.touch()

    def record_commit(self, sha: str) -> None:
        self.commits_made.append(sha)
        self.recent_output.append(f"[commit] {sha}")
        self.touch()

    def record_tool_call(self, tool: str) -> None:
        self.recent_output.append(f"[tool_call] {tool}")
        self.touch()

    def idle_duration(self) -> float:
        return self.clock() - self.last_activity

    def total_duration(self) -> float:
        return self.clock() - self.start_time

    def check_timeout(self, config: TimeoutConfig) -> TimeoutReason | None:
        """Idle is evaluated before total; both are strict ``>`` comparisons."""
        if self.idle_duration() > config.idle_seconds:
            return TimeoutReason.IDLE
        if self.total_duration() > config.total_seconds:
            return TimeoutReason.TOTAL
        return None

    def snapshot(self) -> ProgressSummary:
        return ProgressSummary(
            files_read=tuple(self.files_read),
            files_written=tuple(self.files_written),
            commits=tuple(self.commits_made),
            output_lines=self.output_line_count,
            permission_errors=self.permission_errors,
            other_errors=self.other_errors,
            total_duration_secs=self.total_duration(),
            idle_duration_secs=self.idle_duration(),
        )


__all__ = [
    "DEFAULT_IDLE_TIMEOUT_SECONDS",
    "DEFAULT_TICK_SECONDS",
    "DEFAULT_TOTAL_TIMEOUT_SECONDS",
    "RECENT_OUTPUT_LINES",
    "ProgressState",
    "ProgressSummary",
    "TimeoutConfig",
    "TimeoutReason",
]
