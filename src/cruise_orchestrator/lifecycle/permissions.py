"""Permission-denial detection in subprocess output and fix classification."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final, Protocol

from cruise_orchestrator.sandbox.manifest import ManifestDelta

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


class DenialKind(StrEnum):
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    COMMAND = "command"
    TOOL = "tool"
    ENVIRONMENT = "environment"
    SECRET = "secret"
    NETWORK = "network"

    @property
    def is_file_access(self) -> bool:
        return self in (DenialKind.FILE_READ, DenialKind.FILE_WRITE)


@dataclass(frozen=True, slots=True)
class PermissionDenial:
    """One capability the subprocess was refused, as reported in its output."""

    kind: DenialKind
    detail: str
    raw_line: str = ""

    def describe(self) -> str:
        return f"{self.kind.value}: {self.detail}"


@dataclass(frozen=True, slots=True)
class Widen:
    delta: ManifestDelta


@dataclass(frozen=True, slots=True)
class CannotFix:
    reason: str


PermissionFix = Widen | CannotFix


class PermissionClassifier(Protocol):
    def classify(self, denial: PermissionDenial) -> PermissionFix: ...


# Matching is case-insensitive substring search; kinds are tried in this order.
_FILE_READ_PATTERNS: Final[tuple[str, ...]] = (
    "permission denied:",
    "cannot read",
    "eacces",
    "read access denied",
    "cannot open",
    "no such file or directory",
)
_FILE_WRITE_PATTERNS: Final[tuple[str, ...]] = (
    "cannot write to:",
    "cannot write",
    "write access denied",
    "read-only file system",
    "erofs",
)
_COMMAND_PATTERNS: Final[tuple[str, ...]] = (
    "command not allowed:",
    "command not found",
    "permission denied:",
    "not permitted",
)
_TOOL_PATTERNS: Final[tuple[str, ...]] = (
    "tool '",
    "is not enabled",
    "tool not available",
    "disabled tool",
)
_ENV_PATTERNS: Final[tuple[str, ...]] = (
    "environment variable",
    "not set",
    "undefined variable",
    "missing env",
)
_SECRET_PATTERNS: Final[tuple[str, ...]] = (
    "api key required",
    "secret not provided",
    "authentication required",
    "missing credential",
    "token required",
)
_NETWORK_PATTERNS: Final[tuple[str, ...]] = (
    "network access denied",
    "connection refused",
    "enetunreach",
    "network unreachable",
    "blocked by policy",
)

_QUOTED = re.compile(r"(['\"])(?P<value>[^'\"]*?)\1")
_TOOL_NAME = re.compile(r"Tool '(?P<tool>[^']+)'")
_ENV_NAME = re.compile(r"^[A-Z_]{3,}$")
_NON_IDENT = re.compile(r"[^A-Za-z0-9_]")
_NON_HOST = re.compile(r"^[^A-Za-z0-9]+|[^A-Za-z0-9.-]+$")


class PermissionDetector:
    """Recognise permission failures in free-form CLI output lines."""

    __slots__ = ()

    def analyze(self, line: str) -> PermissionDenial | None:
        lowered = line.lower()

        if _matches(lowered, _FILE_READ_PATTERNS):
            path = _extract_path(line)
            if path is not None:
                return PermissionDenial(DenialKind.FILE_READ, path, line)
        if _matches(lowered, _FILE_WRITE_PATTERNS):
            path = _extract_path(line)
            if path is not None:
                return PermissionDenial(DenialKind.FILE_WRITE, path, line)
        if _matches(lowered, _COMMAND_PATTERNS):
            command = _extract_command(line)
            if command is not None:
                return PermissionDenial(DenialKind.COMMAND, command, line)
        if _matches(lowered, _TOOL_PATTERNS):
            match = _TOOL_NAME.search(line)
            if match is not None:
                return PermissionDenial(DenialKind.TOOL, match.group("tool"), line)
        if _matches(lowered, _ENV_PATTERNS):
            variable = _extract_env_var(line)
            if variable is not None:
                return PermissionDenial(DenialKind.ENVIRONMENT, variable, line)
        if _matches(lowered, _SECRET_PATTERNS):
            secret = _extract_secret(line)
            if secret is not None:
                return PermissionDenial(DenialKind.SECRET, secret, line)
        if _matches(lowered, _NETWORK_PATTERNS):
            return PermissionDenial(DenialKind.NETWORK, _extract_host(line), line)
        return None

    def analyze_all(self, lines: Iterable[str]) -> tuple[PermissionDenial, ...]:
        found: list[PermissionDenial] = []
        for line in lines:
            denial = self.analyze(line)
            if denial is not None:
                found.append(denial)
        return tuple(found)


class DefaultClassifier:
    """Map each denial kind to the manifest widening that would satisfy it."""

    __slots__ = ()

    def classify(self, denial: PermissionDenial) -> PermissionFix:
        match denial.kind:
            case DenialKind.FILE_READ:
                return Widen(ManifestDelta(readable_paths=(path_to_pattern(denial.detail),)))
            case DenialKind.FILE_WRITE:
                return Widen(ManifestDelta(writable_paths=(path_to_pattern(denial.detail),)))
            case DenialKind.COMMAND:
                return Widen(ManifestDelta(allowed_commands=(denial.detail,)))
            case DenialKind.TOOL:
                return Widen(ManifestDelta(allowed_tools=(denial.detail,)))
            case DenialKind.ENVIRONMENT:
                # The value is resolved from the secrets store at spawn time.
                return Widen(ManifestDelta(environment={denial.detail: f"${{{denial.detail}}}"}))
            case DenialKind.SECRET:
                return Widen(ManifestDelta(secrets=(denial.detail,)))
            case DenialKind.NETWORK:
                return CannotFix(f"Network access to {denial.detail} requires manual approval")
        return CannotFix(f"Unsupported permission denial: {denial.describe()}")


def classify_all(
    classifier: PermissionClassifier,
    denials: Sequence[PermissionDenial],
) -> PermissionFix:
    """Combine per-denial fixes: any ``CannotFix`` wins, otherwise deltas are merged."""
    if not denials:
        return CannotFix("No permission denial to classify")
    combined = ManifestDelta()
    for denial in denials:
        fix = classifier.classify(denial)
        if isinstance(fix, CannotFix):
            return fix
        combined = combined.merge(fix.delta)
    return Widen(combined)


def path_to_pattern(path: str) -> str:
    """Grant the containing directory: ``src/app/main.py`` becomes ``src/app/**``."""
    parent = PurePosixPath(path).parent
    if str(parent) in ("", "."):
        return "**"
    return f"{parent.as_posix().rstrip('/')}/**"


def _matches(lowered: str, patterns: Sequence[str]) -> bool:
    return any(pattern in lowered for pattern in patterns)


def _extract_path(line: str) -> str | None:
    _, colon, rest = line.partition(":")
    rest = rest.strip()
    if colon and rest.startswith(("/", "./")):
        return rest.split()[0].strip("'\"")
    for quoted in _QUOTED.finditer(line):
        value = quoted.group("value")
        if "/" in value or "\\" in value:
            return value
    return None


def _extract_command(line: str) -> str | None:
    marker = "Command not allowed:"
    if marker in line:
        command = line.split(marker, 1)[1].strip()
        return command or None
    if "command not found" in line:
        command = line.split(":", 1)[0].strip()
        return command or None
    return None


def _extract_env_var(line: str) -> str | None:
    words = line.split()
    for index, word in enumerate(words):
        if _ENV_NAME.fullmatch(word) and "_" in word:
            return word
        if word == "variable" and index + 1 < len(words):
            candidate = _NON_IDENT.sub("", words[index + 1])
            if candidate:
                return candidate
    return None


def _extract_secret(line: str) -> str | None:
    lowered = line.lower()
    if "api key" in lowered:
        return "API_KEY"
    if "token required" in lowered:
        return "AUTH_TOKEN"
    for word in line.split():
        clean = _NON_IDENT.sub("", word.replace("-", "_"))
        lowered_word = clean.lower()
        if any(term in lowered_word for term in ("token", "key", "secret")):
            return clean.upper()
    return None


def _extract_host(line: str) -> str:
    for word in line.split():
        if "://" in word:
            return word
        if "." in word and not word.startswith(".") and not word.endswith("."):
            clean = _NON_HOST.sub("", word)
            if "." in clean:
                return clean
    return "unknown host"


__all__ = [
    "CannotFix",
    "DefaultClassifier",
    "DenialKind",
    "PermissionClassifier",
    "PermissionDenial",
    "PermissionDetector",
    "PermissionFix",
    "Widen",
    "classify_all",
    "path_to_pattern",
]
