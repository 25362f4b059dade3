"""Runner collaborator interface and the events a run stream yields."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from cruise_orchestrator.lifecycle.permissions import PermissionDenial
    from cruise_orchestrator.sandbox.manifest import SandboxManifest


class OutputStream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


class FileAccess(StrEnum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True, slots=True)
class OutputLine:
    text: str
    stream: OutputStream = OutputStream.STDOUT


@dataclass(frozen=True, slots=True)
class FileEvent:
    path: str
    access: FileAccess


@dataclass(frozen=True, slots=True)
class CommitEvent:
    sha: str
    message: str = ""


@dataclass(frozen=True, slots=True)
class ToolCall:
    tool: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class RunSucceeded:
    result_text: str = ""


@dataclass(frozen=True, slots=True)
class PermissionDenied:
    denials: tuple[PermissionDenial, ...]


@dataclass(frozen=True, slots=True)
class RunFailed:
    message: str
    exit_code: int | None = None


ProgressEvent = OutputLine | FileEvent | CommitEvent | ToolCall
TerminalEvent = RunSucceeded | PermissionDenied | RunFailed
RunEvent = ProgressEvent | TerminalEvent


def is_terminal(event: RunEvent) -> bool:
    return isinstance(event, (RunSucceeded, PermissionDenied, RunFailed))


@runtime_checkable
class RunStream(Protocol):
    """
    Events from one subprocess invocation.

    Iteration yields progress events and ends after exactly one terminal
    event. ``terminate`` force-stops the subprocess; it is safe to call more
    than once and after the stream has finished.
    """

    def __aiter__(self) -> AsyncIterator[RunEvent]: ...

    async def terminate(self) -> None: ...


@runtime_checkable
class Runner(Protocol):
    name: str

    async def spawn(self, manifest: SandboxManifest, prompt: str, location: Path) -> RunStream: ...


__all__ = [
    "CommitEvent",
    "FileAccess",
    "FileEvent",
    "OutputLine",
    "OutputStream",
    "PermissionDenied",
    "ProgressEvent",
    "RunEvent",
    "RunFailed",
    "RunStream",
    "RunSucceeded",
    "Runner",
    "TerminalEvent",
    "ToolCall",
    "is_terminal",
]
