"""Subprocess plumbing shared by the CLI runner adapters.

Each adapter supplies the command line and a line parser; this module spawns
the process, merges stdout and stderr into one event stream, runs permission
detection over every output line and derives the terminal event.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from typing import TYPE_CHECKING, Final, Protocol

from cruise_orchestrator.runner.base import (
    CommitEvent,
    OutputLine,
    OutputStream,
    PermissionDenied,
    RunFailed,
    RunSucceeded,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping, Sequence
    from pathlib import Path

    from cruise_orchestrator.lifecycle.permissions import PermissionDenial, PermissionDetector
    from cruise_orchestrator.runner.base import RunEvent
    from cruise_orchestrator.sandbox.manifest import SandboxManifest

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SECONDS: Final[float] = 5.0
# ``git commit`` summary line, e.g. ``[cruise/sandbox-1 3f2a9c1] Fix parser``.
_COMMIT_LINE = re.compile(
    r"^\[(?P<branch>[^\s\]]+)(?: \(root-commit\))? (?P<sha>[0-9a-f]{7,40})\] (?P<message>.*)$"
)
_ENV_REFERENCE = re.compile(r"^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)\}$")
_EOF: Final[object] = object()


class RunnerUnavailableError(RuntimeError):
    """Raised when the CLI binary cannot be located."""


class StreamParser(Protocol):
    """Stateful translation of one process's stdout lines into run events."""

    @property
    def result_text(self) -> str: ...

    def parse(self, line: str) -> list[RunEvent]: ...


def resolve_binary(binary: str, *, setting: str) -> str:
    resolved = shutil.which(binary)
    if resolved is None:
        raise RunnerUnavailableError(
            f"{binary} CLI not found on PATH. Install it or configure {setting}."
        )
    return resolved


def build_environment(
    manifest: SandboxManifest,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Process environment for a run; ``${NAME}`` values resolve from ``base``."""
    source = dict(os.environ if base is None else base)
    env = dict(source)
    for key, value in manifest.environment.items():
        match = _ENV_REFERENCE.match(value)
        if match is None:
            env[key] = value
        elif match.group("name") in source:
            env[key] = source[match.group("name")]
    for secret in manifest.secrets:
        if secret in source:
            env[secret] = source[secret]
    return env


def plain_line_events(text: str) -> list[RunEvent]:
    commit = _COMMIT_LINE.match(text)
    if commit is not None:
        return [CommitEvent(commit.group("sha"), commit.group("message")), OutputLine(text)]
    return [OutputLine(text)]


async def start_process(
    command: Sequence[str],
    location: Path,
    env: Mapping[str, str],
) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(location),
        env=dict(env),
    )


class CliRunStream:
    """Events of one CLI subprocess; see ``RunStream``."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        parser: StreamParser,
        detector: PermissionDetector,
        label: str,
    ) -> None:
        self._process = process
        self._parser = parser
        self._detector = detector
        self._label = label
        self._terminated = False

    @property
    def pid(self) -> int:
        return self._process.pid

    def __aiter__(self) -> AsyncIterator[RunEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[RunEvent]:
        queue: asyncio.Queue[tuple[OutputStream, str] | object] = asyncio.Queue()
        readers = [
            asyncio.create_task(self._pump(self._process.stdout, OutputStream.STDOUT, queue)),
            asyncio.create_task(self._pump(self._process.stderr, OutputStream.STDERR, queue)),
        ]
        denials: list[PermissionDenial] = []
        open_streams = len(readers)
        try:
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                stream, line = item  # type: ignore[misc]
                if stream is OutputStream.STDOUT:
                    events = self._parser.parse(line)
                else:
                    events = [OutputLine(line, OutputStream.STDERR)] if line.strip() else []
                for event in events:
                    if isinstance(event, OutputLine):
                        denial = self._detector.analyze(event.text)
                        if denial is not None:
                            denials.append(denial)
                    yield event
            returncode = await self._process.wait()
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        if denials:
            yield PermissionDenied(tuple(denials))
        elif self._terminated:
            yield RunFailed("terminated", returncode)
        elif returncode != 0:
            yield RunFailed(f"{self._label} exited with code {returncode}", returncode)
        else:
            yield RunSucceeded(self._parser.result_text)

    @staticmethod
    async def _pump(
        reader: asyncio.StreamReader | None,
        stream: OutputStream,
        queue: asyncio.Queue[tuple[OutputStream, str] | object],
    ) -> None:
        try:
            if reader is None:
                return
            while True:
                raw = await reader.readline()
                if not raw:
                    return
                await queue.put((stream, raw.decode("utf-8", errors="replace").rstrip("\r\n")))
        finally:
            queue.put_nowait(_EOF)

    async def terminate(self) -> None:
        if self._process.returncode is not None:
            return
        self._terminated = True
        try:
            self._process.terminate()
            await asyncio.wait_for(self._process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except TimeoutError:
            logger.warning("%s process %s ignored SIGTERM; killing", self._label, self.pid)
            self._process.kill()
            await self._process.wait()


__all__ = [
    "CliRunStream",
    "RunnerUnavailableError",
    "StreamParser",
    "build_environment",
    "plain_line_events",
    "resolve_binary",
    "start_process",
]
