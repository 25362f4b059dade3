"""Bounded many-reviewers-to-one-fixer channel."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType

    from cruise_orchestrator.review.domains import ReviewDomain
    from cruise_orchestrator.vcs.base import ReviewComment


class ChannelClosedError(RuntimeError):
    """Raised when sending on a closed sender or receiving past completion."""


@dataclass(frozen=True, slots=True)
class QueuedComment:
    """A posted finding waiting for the fixer; ``target`` is the PR number."""

    domain: ReviewDomain
    comment: ReviewComment
    target: int
    repo: str = ""

    @property
    def finding_id(self) -> int:
        return self.comment.id


@dataclass(frozen=True, slots=True)
class Fix:
    queued: QueuedComment


@dataclass(frozen=True, slots=True)
class AllReviewersComplete:
    pass


FixerMessage = Fix | AllReviewersComplete


class Sender:
    """Producer handle; closing the last open sender completes the channel."""

    __slots__ = ("_channel", "_closed", "name")

    def __init__(self, channel: FixerChannel, name: str) -> None:
        self._channel = channel
        self._closed = False
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, queued: QueuedComment) -> None:
        if self._closed:
            raise ChannelClosedError(f"sender {self.name!r} is closed")
        await self._channel._put(Fix(queued))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._sender_closed()

    async def __aenter__(self) -> Sender:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()


class FixerChannel:
    """
    FIFO queue of ``FixerMessage`` holding at most ``capacity`` findings.

    ``AllReviewersComplete`` is enqueued exactly once, when the last sender
    closes. A sender's messages are all enqueued before its close returns, so
    the completion message is always behind every finding. The completion
    message does not take a finding slot, so closing a sender never waits on
    the fixer.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._queue: asyncio.Queue[FixerMessage] = asyncio.Queue()
        self._slots = asyncio.Semaphore(capacity)
        self._open_senders = 0
        self._opened = 0
        self._completed = False
        self._drained = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def open_senders(self) -> int:
        return self._open_senders

    @property
    def completed(self) -> bool:
        return self._completed

    def qsize(self) -> int:
        return self._queue.qsize()

    def open_sender(self, name: str | None = None) -> Sender:
        if self._completed:
            raise ChannelClosedError("channel already completed; no new senders")
        self._open_senders += 1
        self._opened += 1
        return Sender(self, name or f"sender-{self._opened}")

    async def receive(self) -> FixerMessage:
        if self._drained:
            raise ChannelClosedError("channel completion already received")
        message = await self._queue.get()
        if isinstance(message, AllReviewersComplete):
            self._drained = True
        else:
            self._slots.release()
        return message

    async def _put(self, message: Fix) -> None:
        if self._completed:
            raise ChannelClosedError("channel already completed")
        await self._slots.acquire()
        self._queue.put_nowait(message)

    def _sender_closed(self) -> None:
        self._open_senders -= 1
        if self._open_senders == 0 and not self._completed:
            self._completed = True
            self._queue.put_nowait(AllReviewersComplete())


__all__ = [
    "AllReviewersComplete",
    "ChannelClosedError",
    "Fix",
    "FixerChannel",
    "FixerMessage",
    "QueuedComment",
    "Sender",
]
