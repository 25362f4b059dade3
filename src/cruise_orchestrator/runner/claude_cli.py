"""Runner adapter for the Claude Code CLI in ``stream-json`` print mode.

The CLI manages its own authentication; this adapter only builds the command
line from a manifest and translates its ``stream-json`` output. Process
handling lives in ``runner.process``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Final

from cruise_orchestrator.lifecycle.permissions import PermissionDetector
from cruise_orchestrator.runner.base import FileAccess, FileEvent, OutputLine, ToolCall
from cruise_orchestrator.runner.process import (
    CliRunStream,
    RunnerUnavailableError,
    build_environment,
    plain_line_events,
    resolve_binary,
    start_process,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from cruise_orchestrator.runner.base import RunEvent
    from cruise_orchestrator.sandbox.manifest import SandboxManifest

logger = logging.getLogger(__name__)

DEFAULT_BINARY: Final[str] = "claude"
_READ_TOOLS: Final[frozenset[str]] = frozenset({"Read", "NotebookRead"})
_WRITE_TOOLS: Final[frozenset[str]] = frozenset({"Write", "Edit", "NotebookEdit"})


def build_command(
    binary: str,
    manifest: SandboxManifest,
    prompt: str,
    *,
    model: str | None = None,
) -> list[str]:
    args = [
        binary,
        "--print",
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--verbose",
    ]
    if model:
        args.extend(["--model", model])
    if manifest.allowed_tools:
        args.extend(["--allowedTools", ",".join(manifest.allowed_tools)])
    args.extend(["-p", prompt])
    return args


def parse_stream_line(line: str) -> list[RunEvent]:
    """Translate one ``stream-json`` stdout line into progress events."""
    text = line.strip()
    if not text:
        return []
    try:
        payload = json.loads(text)
    except ValueError:
        return plain_line_events(text)
    if not isinstance(payload, dict):
        return [OutputLine(text)]

    event_type = payload.get("type")
    if event_type == "assistant":
        return _assistant_events(payload)
    if event_type == "user":
        result = payload.get("tool_use_result")
        if isinstance(result, dict):
            file_path = result.get("filePath")
            if isinstance(file_path, str) and file_path:
                if result.get("type") in ("create", "update"):
                    return [FileEvent(file_path, FileAccess.WRITE)]
                if result.get("type") == "read":
                    return [FileEvent(file_path, FileAccess.READ)]
        return [OutputLine(text)]
    return [OutputLine(text)]


def _assistant_events(payload: dict[str, Any]) -> list[RunEvent]:
    message = payload.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    events: list[RunEvent] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            for text_line in str(block.get("text", "")).splitlines():
                if text_line.strip():
                    events.extend(plain_line_events(text_line.strip()))
        elif block.get("type") == "tool_use":
            events.append(_tool_use_event(block))
    return events


def _tool_use_event(block: dict[str, Any]) -> RunEvent:
    tool = str(block.get("name", "unknown"))
    tool_input = block.get("input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    file_path = tool_input.get("file_path") or tool_input.get("notebook_path")
    if isinstance(file_path, str) and file_path:
        if tool in _READ_TOOLS:
            return FileEvent(file_path, FileAccess.READ)
        if tool in _WRITE_TOOLS:
            return FileEvent(file_path, FileAccess.WRITE)
    detail = json.dumps(tool_input, sort_keys=True) if tool_input else ""
    return ToolCall(tool, detail)


def _result_text(line: str) -> str | None:
    try:
        payload = json.loads(line)
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get("type") == "result":
        result = payload.get("result")
        return result if isinstance(result, str) else ""
    return None


class ClaudeStreamParser:
    """Progress events per line; the closing ``result`` line becomes the run's text."""

    def __init__(self) -> None:
        self.result_text = ""

    def parse(self, line: str) -> list[RunEvent]:
        final = _result_text(line)
        if final is not None:
            self.result_text = final
            return []
        return parse_stream_line(line)


class ClaudeCliRunner:
    """Spawn ``claude --print`` inside a sandbox with the manifest's tool set."""

    def __init__(
        self,
        *,
        binary: str = DEFAULT_BINARY,
        model: str | None = None,
        name: str = "claude",
        environment: Mapping[str, str] | None = None,
        detector: PermissionDetector | None = None,
    ) -> None:
        self.name = name
        self._binary = binary
        self._model = model
        self._environment = dict(environment) if environment is not None else None
        self._detector = detector if detector is not None else PermissionDetector()

    def resolve_binary(self) -> str:
        return resolve_binary(self._binary, setting="runner.primary_binary")

    async def spawn(
        self,
        manifest: SandboxManifest,
        prompt: str,
        location: Path,
    ) -> CliRunStream:
        command = build_command(self.resolve_binary(), manifest, prompt, model=self._model)
        logger.debug(
            "Spawning %s in %s (tools=%s)",
            self.name,
            location,
            ",".join(manifest.allowed_tools) or "default",
        )
        process = await start_process(
            command, location, build_environment(manifest, self._environment)
        )
        return CliRunStream(
            process, parser=ClaudeStreamParser(), detector=self._detector, label="claude"
        )


__all__ = [
    "DEFAULT_BINARY",
    "ClaudeCliRunner",
    "ClaudeStreamParser",
    "RunnerUnavailableError",
    "build_command",
    "build_environment",
    "parse_stream_line",
]
