"""Sandbox manifests, handles and the git-worktree provisioner."""

from cruise_orchestrator.sandbox.handles import (
    PersistentHandle,
    Sandbox,
    SandboxCleanupError,
    SandboxCreationError,
    SandboxHandle,
    TransientHandle,
)
from cruise_orchestrator.sandbox.manifest import ManifestDelta, SandboxManifest, validate_manifest
from cruise_orchestrator.sandbox.worktree import WorktreeSandbox

__all__ = [
    "ManifestDelta",
    "PersistentHandle",
    "Sandbox",
    "SandboxCleanupError",
    "SandboxCreationError",
    "SandboxHandle",
    "SandboxManifest",
    "TransientHandle",
    "WorktreeSandbox",
    "validate_manifest",
]
