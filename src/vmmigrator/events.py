"""Progress and session events shared between the pipeline and the UI."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeAlias

from vmmigrator.models import ProgressUpdate

__all__ = [
    "ConnectionEvent",
    "EventBus",
    "ProgressEvent",
]


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of one task pool, published after every poll."""

    job: str  # "shutdown", "export" or "import"
    update: ProgressUpdate
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ConnectionEvent:
    """The SSH session to the target came up or went away."""

    status: str  # "connected" or "disconnected"
    latency: float | None  # Milliseconds to establish the session


Event: TypeAlias = ProgressEvent | ConnectionEvent


class EventBus:
    """Fans events out to any number of subscribers.

    Publishers never wait: every subscriber owns an unbounded queue, and a
    slow terminal cannot stall the polling loops.
    """

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[Event | None]] = []
        self._closed = False

    def subscribe(self) -> asyncio.Queue[Event | None]:
        """Return a queue receiving every event published from now on.

        ``None`` on the queue means the bus was closed.
        """
        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def publish(self, event: Event) -> None:
        if self._closed:
            return
        for queue in self._queues:
            queue.put_nowait(event)

    def close(self) -> None:
        """Wake every subscriber with the end-of-stream marker."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)
