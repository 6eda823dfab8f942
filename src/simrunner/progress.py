"""Progress events emitted by the automation chains.

Each long-running engine call gets its own :class:`ProgressStream`. Chains
only ever *produce* events; consumers either iterate the stream
asynchronously or register plain listeners. Nothing a consumer does can feed
back into chain logic.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress message. Ephemeral, never persisted."""

    operation: str
    message: str
    percentage: Optional[int] = None
    terminal: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def active(self) -> bool:
        return not self.terminal


ProgressListener = Callable[[ProgressEvent], None]


class ProgressStream:
    """One-way progress channel for a single chain invocation.

    Events are delivered to registered listeners immediately and buffered in
    an unbounded queue for ``async for`` consumers. Iteration ends after the
    terminal event.
    """

    def __init__(self, operation: str, listeners: Optional[List[ProgressListener]] = None):
        self.operation = operation
        self._listeners: List[ProgressListener] = list(listeners or [])
        self._queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue()
        self._closed = False
        self.history: List[ProgressEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def emit(self, message: str, percentage: Optional[int] = None) -> None:
        """Publish a non-terminal event."""
        self._publish(ProgressEvent(self.operation, message, _clamp(percentage)))

    def finish(self, message: str, percentage: Optional[int] = 100) -> None:
        """Publish the terminal event and close the stream."""
        if self._closed:
            return
        self._publish(
            ProgressEvent(self.operation, message, _clamp(percentage), terminal=True)
        )
        self._closed = True

    def fail(self, message: str) -> None:
        """Publish a terminal event for an aborted chain."""
        self.finish(message, percentage=None)

    def _publish(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.debug("Dropping progress event on closed stream: %s", event.message)
            return
        self.history.append(event)
        self._queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # listeners must never break a chain
                logger.exception("Progress listener failed for %s", self.operation)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return


def _clamp(percentage: Optional[int]) -> Optional[int]:
    if percentage is None:
        return None
    return max(0, min(100, int(percentage)))
