"""Runner collaborator interface and the Claude and Gemini CLI adapters."""

from cruise_orchestrator.runner.base import (
    CommitEvent,
    FileAccess,
    FileEvent,
    OutputLine,
    OutputStream,
    PermissionDenied,
    RunEvent,
    RunFailed,
    Runner,
    RunStream,
    RunSucceeded,
    ToolCall,
)
from cruise_orchestrator.runner.claude_cli import ClaudeCliRunner
from cruise_orchestrator.runner.gemini_cli import GeminiCliRunner
from cruise_orchestrator.runner.process import RunnerUnavailableError

__all__ = [
    "ClaudeCliRunner",
    "CommitEvent",
    "FileAccess",
    "FileEvent",
    "GeminiCliRunner",
    "OutputLine",
    "OutputStream",
    "PermissionDenied",
    "RunEvent",
    "RunFailed",
    "RunStream",
    "RunSucceeded",
    "Runner",
    "RunnerUnavailableError",
    "ToolCall",
]
