"""Poll an external approval signal on a capped exponential interval."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Protocol

from cruise_orchestrator.vcs.base import ApprovalStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from cruise_orchestrator.utils.backoff import Backoff
    from cruise_orchestrator.vcs.base import PullRequest

logger = logging.getLogger(__name__)


class ApprovalTimeoutError(TimeoutError):
    def __init__(self, elapsed: float, timeout: float) -> None:
        super().__init__(f"approval not granted within {timeout:.0f}s (elapsed {elapsed:.0f}s)")
        self.elapsed = elapsed
        self.timeout = timeout


class ApprovalRejectedError(RuntimeError):
    """The pull request was closed without being approved or merged."""

    def __init__(self, target: str) -> None:
        super().__init__(f"{target} was closed without approval")
        self.target = target


class ApprovalSourceError(RuntimeError):
    """The approval source could not be queried; polling stops."""


class ApprovalSource(Protocol):
    async def check_approval(self, pr: PullRequest) -> ApprovalStatus: ...


class ApprovalPoller:
    """
    Wait for approval with backoff between checks.

    Each iteration first compares elapsed time against the timeout, then
    checks the source exactly once. ``on_wait`` receives the interval about
    to be slept so callers can persist it for resumption.
    """

    __slots__ = ("_source", "_backoff", "_clock", "_sleep", "_on_wait")

    def __init__(
        self,
        source: ApprovalSource,
        backoff: Backoff,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_wait: Callable[[float], None] | None = None,
    ) -> None:
        self._source = source
        self._backoff = backoff
        self._clock = clock
        self._sleep = sleep
        self._on_wait = on_wait

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    async def poll_for_approval(self, target: PullRequest, timeout: float) -> ApprovalStatus:
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        started = self._clock()
        checks = 0
        while True:
            elapsed = self._clock() - started
            if elapsed >= timeout:
                raise ApprovalTimeoutError(elapsed, timeout)

            checks += 1
            try:
                status = await self._source.check_approval(target)
            except Exception as exc:
                raise ApprovalSourceError(
                    f"approval check for {target.url} failed: {exc}"
                ) from exc

            if status.is_accepted:
                logger.info("%s is %s after %d check(s)", target.url, status.value, checks)
                return status
            if status is ApprovalStatus.CLOSED:
                raise ApprovalRejectedError(target.url)

            interval = self._backoff.current
            logger.debug("%s still open; next check in %.0fs", target.url, interval)
            if self._on_wait is not None:
                self._on_wait(interval)
            await self._sleep(interval)
            self._backoff.next()


__all__ = [
    "ApprovalPoller",
    "ApprovalRejectedError",
    "ApprovalSource",
    "ApprovalSourceError",
    "ApprovalTimeoutError",
]
