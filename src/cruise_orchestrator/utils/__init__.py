"""Shared utilities: backoff, async concurrency primitives and filesystem helpers."""

from cruise_orchestrator.utils.backoff import Backoff
from cruise_orchestrator.utils.concurrency import BoundedSemaphore, WorkerPool
from cruise_orchestrator.utils.fs import atomic_write, safe_delete

__all__ = [
    "Backoff",
    "BoundedSemaphore",
    "WorkerPool",
    "atomic_write",
    "safe_delete",
]
