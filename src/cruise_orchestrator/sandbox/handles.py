"""Sandbox collaborator interface and the two handle ownership variants."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Protocol, runtime_checkable

if TYPE_CHECKING:
    from types import TracebackType

    from cruise_orchestrator.sandbox.manifest import SandboxManifest


class SandboxCreationError(RuntimeError):
    """Raised when an isolated environment cannot be provisioned."""


class SandboxCleanupError(RuntimeError):
    """Raised when tearing down an isolated environment fails."""


class SandboxHandle:
    """
    Reference to one provisioned sandbox.

    Subclasses decide who is responsible for cleanup: ``TransientHandle``
    releases the sandbox when its scope ends, ``PersistentHandle`` only when
    ``Sandbox.cleanup`` is called explicitly.
    """

    __slots__ = ("sandbox_id", "location", "branch", "manifest", "_sandbox", "_released")

    persistent: ClassVar[bool] = False

    def __init__(
        self,
        *,
        sandbox: Sandbox,
        sandbox_id: str,
        location: Path,
        branch: str,
        manifest: SandboxManifest,
    ) -> None:
        self._sandbox = sandbox
        self.sandbox_id = sandbox_id
        self.location = Path(location)
        self.branch = branch
        self.manifest = manifest
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def mark_released(self) -> None:
        self._released = True

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(sandbox_id={self.sandbox_id!r}, "
            f"location={self.location.as_posix()!r}, branch={self.branch!r}, "
            f"released={self._released})"
        )


class TransientHandle(SandboxHandle):
    """Sandbox released automatically when the owning scope ends."""

    __slots__ = ()

    def close(self) -> None:
        if not self._released:
            self._sandbox.cleanup(self)

    async def aclose(self) -> None:
        if not self._released:
            await asyncio.to_thread(self._sandbox.cleanup, self)

    def __enter__(self) -> TransientHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    async def __aenter__(self) -> TransientHandle:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()


class PersistentHandle(SandboxHandle):
    """Sandbox shared across lifecycle runs; never released implicitly."""

    __slots__ = ()

    persistent: ClassVar[bool] = True


@runtime_checkable
class Sandbox(Protocol):
    """Provisioner of isolated working environments."""

    def create(
        self,
        manifest: SandboxManifest,
        *,
        persistent: bool = False,
        branch: str | None = None,
    ) -> SandboxHandle: ...

    def attach(self, location: Path, branch: str, manifest: SandboxManifest) -> PersistentHandle:
        """Re-open an existing persistent sandbox, e.g. after a supervisor restart."""
        ...

    def path(self, handle: SandboxHandle) -> Path: ...

    def cleanup(self, handle: SandboxHandle) -> None: ...


__all__ = [
    "PersistentHandle",
    "Sandbox",
    "SandboxCleanupError",
    "SandboxCreationError",
    "SandboxHandle",
    "TransientHandle",
]
