"""Runner adapter for the Gemini CLI, used for read-only review runs.

``--approval-mode plan`` keeps the CLI from editing the checkout, so the
manifest's tool list is not forwarded. Both the current ``stream-json``
shape (``type`` of ``tool_use``/``tool_result``/``message``) and the older
``tool_call``/``function_call`` records are understood.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Final

from cruise_orchestrator.lifecycle.permissions import PermissionDetector
from cruise_orchestrator.runner.base import FileAccess, FileEvent, OutputLine, ToolCall
from cruise_orchestrator.runner.process import (
    CliRunStream,
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

DEFAULT_BINARY: Final[str] = "gemini"
_READ_TOOLS: Final[frozenset[str]] = frozenset(
    {"read_file", "ReadFile", "Read", "read_many_files"}
)
_WRITE_TOOLS: Final[frozenset[str]] = frozenset(
    {"write_file", "WriteFile", "Write", "edit_file", "EditFile", "Edit", "replace"}
)
_PATH_KEYS: Final[tuple[str, ...]] = ("file_path", "path", "absolute_path")
# Stops the CLI from fanning a review out into sub-agents.
_RUN_ENVIRONMENT: Final[dict[str, str]] = {"FORK_JOIN_DISABLED": "1"}


def build_command(binary: str, prompt: str, *, model: str | None = None) -> list[str]:
    args = [binary, "--approval-mode", "plan", "--output-format", "stream-json"]
    if model:
        args.extend(["--model", model])
    args.extend(["--prompt", prompt])
    return args


def parse_stream_line(line: str) -> list[RunEvent]:
    """Translate one Gemini ``stream-json`` stdout line into progress events."""
    text = line.strip()
    if not text:
        return []
    try:
        payload = json.loads(text)
    except ValueError:
        return plain_line_events(text)
    if not isinstance(payload, dict):
        return [OutputLine(text)]

    call = payload.get("tool_call") or payload.get("function_call")
    if isinstance(call, dict):
        arguments = call.get("args", call.get("arguments"))
        return [_tool_event(str(call.get("name", "unknown")), arguments)]
    result = payload.get("tool_result") or payload.get("function_result")
    if isinstance(result, dict):
        return _tool_result_events(result, text)

    event_type = payload.get("type")
    if event_type == "tool_use":
        return [_tool_event(str(payload.get("tool_name", "unknown")), payload.get("parameters"))]
    if event_type == "message" and payload.get("role") == "assistant":
        content = payload.get("content")
        if not isinstance(content, str):
            return []
        events: list[RunEvent] = []
        for text_line in content.splitlines():
            if text_line.strip():
                events.extend(plain_line_events(text_line.strip()))
        return events
    if event_type in ("init", "result") or (
        event_type == "message" and payload.get("role") == "user"
    ):
        return []
    return [OutputLine(text)]


def _tool_event(tool: str, arguments: Any) -> RunEvent:
    if not isinstance(arguments, dict):
        return ToolCall(tool, "")
    for key in _PATH_KEYS:
        file_path = arguments.get(key)
        if isinstance(file_path, str) and file_path:
            if tool in _READ_TOOLS:
                return FileEvent(file_path, FileAccess.READ)
            if tool in _WRITE_TOOLS:
                return FileEvent(file_path, FileAccess.WRITE)
            break
    detail = json.dumps(arguments, sort_keys=True) if arguments else ""
    return ToolCall(tool, detail)


def _tool_result_events(result: dict[str, Any], text: str) -> list[RunEvent]:
    file_path = result.get("file_path")
    if isinstance(file_path, str) and file_path:
        if result.get("type") in ("write", "create", "edit"):
            return [FileEvent(file_path, FileAccess.WRITE)]
        if result.get("type") == "read":
            return [FileEvent(file_path, FileAccess.READ)]
    return [OutputLine(text)]


class GeminiStreamParser:
    """Progress events per line; assistant message text becomes the run's text.

    The closing ``result`` record carries only statistics, so the reply is
    assembled from ``message`` records. ``delta`` chunks continue the current
    paragraph; whole messages start a new line.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []

    @property
    def result_text(self) -> str:
        return "".join(self._chunks).strip()

    def parse(self, line: str) -> list[RunEvent]:
        self._collect(line)
        return parse_stream_line(line)

    def _collect(self, line: str) -> None:
        try:
            payload = json.loads(line)
        except ValueError:
            return
        if not isinstance(payload, dict):
            return
        if payload.get("type") != "message" or payload.get("role") != "assistant":
            return
        content = payload.get("content")
        if not isinstance(content, str):
            return
        if self._chunks and not payload.get("delta"):
            self._chunks.append("\n")
        self._chunks.append(content)


class GeminiCliRunner:
    """Spawn ``gemini --approval-mode plan`` for a read-only review."""

    def __init__(
        self,
        *,
        binary: str = DEFAULT_BINARY,
        model: str | None = None,
        name: str = "gemini-cli",
        environment: Mapping[str, str] | None = None,
        detector: PermissionDetector | None = None,
    ) -> None:
        self.name = name
        self._binary = binary
        self._model = model
        self._environment = dict(environment) if environment is not None else None
        self._detector = detector if detector is not None else PermissionDetector()

    def resolve_binary(self) -> str:
        return resolve_binary(self._binary, setting="runner.reviewer_binary")

    async def spawn(
        self,
        manifest: SandboxManifest,
        prompt: str,
        location: Path,
    ) -> CliRunStream:
        command = build_command(self.resolve_binary(), prompt, model=self._model)
        env = build_environment(manifest, self._environment)
        env.update(_RUN_ENVIRONMENT)
        logger.debug("Spawning %s in %s (approval mode plan)", self.name, location)
        process = await start_process(command, location, env)
        return CliRunStream(
            process, parser=GeminiStreamParser(), detector=self._detector, label="gemini"
        )


__all__ = [
    "DEFAULT_BINARY",
    "GeminiCliRunner",
    "GeminiStreamParser",
    "build_command",
    "parse_stream_line",
]
