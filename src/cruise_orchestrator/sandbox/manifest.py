"""Capability envelope granted to one subprocess run."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

from cruise_orchestrator.constants import KNOWN_TOOLS, READ_ONLY_TOOLS
from cruise_orchestrator.domain.models import TaskComplexity

if TYPE_CHECKING:
    from collections.abc import Iterable

_SYSTEM_WRITE_PREFIXES: Final[tuple[str, ...]] = ("/etc", "/usr")
_SENSITIVE_SEGMENTS: Final[tuple[str, ...]] = (".ssh",)


def _freeze_environment(value: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(value))


def _merge_unique(existing: tuple[str, ...], additions: Iterable[str]) -> tuple[str, ...]:
    merged = list(existing)
    for item in additions:
        if item not in merged:
            merged.append(item)
    return tuple(merged)


@dataclass(frozen=True, slots=True)
class ManifestDelta:
    """Capabilities to add to a manifest; the payload of a widening fix."""

    readable_paths: tuple[str, ...] = ()
    writable_paths: tuple[str, ...] = ()
    allowed_tools: tuple[str, ...] = ()
    allowed_commands: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    secrets: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "environment", _freeze_environment(self.environment))

    @property
    def is_empty(self) -> bool:
        return not (
            self.readable_paths
            or self.writable_paths
            or self.allowed_tools
            or self.allowed_commands
            or self.environment
            or self.secrets
        )

    def merge(self, other: ManifestDelta) -> ManifestDelta:
        return ManifestDelta(
            readable_paths=_merge_unique(self.readable_paths, other.readable_paths),
            writable_paths=_merge_unique(self.writable_paths, other.writable_paths),
            allowed_tools=_merge_unique(self.allowed_tools, other.allowed_tools),
            allowed_commands=_merge_unique(self.allowed_commands, other.allowed_commands),
            environment={**self.environment, **other.environment},
            secrets=_merge_unique(self.secrets, other.secrets),
        )

    def describe(self) -> str:
        parts: list[str] = []
        for label, values in (
            ("read", self.readable_paths),
            ("write", self.writable_paths),
            ("tools", self.allowed_tools),
            ("commands", self.allowed_commands),
            ("env", tuple(self.environment)),
            ("secrets", self.secrets),
        ):
            if values:
                parts.append(f"{label}: {', '.join(values)}")
        return "; ".join(parts) if parts else "no changes"


@dataclass(frozen=True, slots=True)
class SandboxManifest:
    """Immutable for the lifetime of a run; widening returns a new manifest."""

    readable_paths: tuple[str, ...] = ()
    writable_paths: tuple[str, ...] = ()
    allowed_tools: tuple[str, ...] = ()
    allowed_commands: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    secrets: tuple[str, ...] = ()
    complexity: TaskComplexity = TaskComplexity.MEDIUM

    def __post_init__(self) -> None:
        object.__setattr__(self, "environment", _freeze_environment(self.environment))

    @classmethod
    def read_only(cls, complexity: TaskComplexity = TaskComplexity.LOW) -> SandboxManifest:
        return cls(readable_paths=("**",), allowed_tools=READ_ONLY_TOOLS, complexity=complexity)

    def widen(self, delta: ManifestDelta) -> SandboxManifest:
        """Return a manifest with ``delta`` added; existing entries keep their order."""
        return SandboxManifest(
            readable_paths=_merge_unique(self.readable_paths, delta.readable_paths),
            writable_paths=_merge_unique(self.writable_paths, delta.writable_paths),
            allowed_tools=_merge_unique(self.allowed_tools, delta.allowed_tools),
            allowed_commands=_merge_unique(self.allowed_commands, delta.allowed_commands),
            environment={**self.environment, **delta.environment},
            secrets=_merge_unique(self.secrets, delta.secrets),
            complexity=self.complexity,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "readable_paths": list(self.readable_paths),
            "writable_paths": list(self.writable_paths),
            "allowed_tools": list(self.allowed_tools),
            "allowed_commands": list(self.allowed_commands),
            "environment": dict(self.environment),
            "secrets": list(self.secrets),
            "complexity": self.complexity.value,
        }


def validate_manifest(manifest: SandboxManifest) -> tuple[str, ...]:
    """Return non-fatal warnings about a manifest; never raises."""
    warnings: list[str] = []
    for tool in manifest.allowed_tools:
        if tool not in KNOWN_TOOLS:
            warnings.append(f"unknown tool {tool!r} in allowed_tools")
    for label, patterns in (
        ("readable_paths", manifest.readable_paths),
        ("writable_paths", manifest.writable_paths),
    ):
        for pattern in patterns:
            if "**" in pattern:
                warnings.append(f"recursive glob {pattern!r} in {label} may grant broad access")
    for pattern in manifest.writable_paths:
        if pattern.startswith(_SYSTEM_WRITE_PREFIXES) or any(
            segment in pattern for segment in _SENSITIVE_SEGMENTS
        ):
            warnings.append(f"writable path {pattern!r} touches a sensitive system location")
    return tuple(warnings)


__all__ = ["ManifestDelta", "SandboxManifest", "validate_manifest"]
