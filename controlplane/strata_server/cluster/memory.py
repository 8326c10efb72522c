"""
In-memory change bus.

Used for single-process deployments, unit tests, and integration tests that
run several members (each with its own ConfigStore) inside one event loop.

Invariants:
    - All notices are lost on process exit
    - Each subscriber receives every notice published after it subscribed,
      in publish order
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from .base import ChangeBusConnectionError, ChangeNotice

logger = logging.getLogger(__name__)

_CLOSED = object()


class InMemoryChangeBus:
    """Fan-out bus backed by one asyncio.Queue per subscriber.

    Example:
        >>> bus = InMemoryChangeBus()
        >>> await bus.connect()
        >>> async for notice in bus.subscribe("node-2"):
        ...     print(notice.revision)
    """

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue] = {}
        self._connected = False
        self.published: list[ChangeNotice] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryChangeBus connected")

    async def close(self) -> None:
        self._connected = False
        for queue in self._queues.values():
            queue.put_nowait(_CLOSED)
        logger.debug("InMemoryChangeBus closed")

    async def publish(self, notice: ChangeNotice) -> None:
        if not self._connected:
            raise ChangeBusConnectionError("Not connected")
        self.published.append(notice)
        for queue in self._queues.values():
            queue.put_nowait(notice)
        logger.debug(
            "Change notice published",
            extra={"origin": notice.origin, "revision": notice.revision},
        )

    async def subscribe(self, member_id: str) -> AsyncIterator[ChangeNotice]:
        if not self._connected:
            raise ChangeBusConnectionError("Not connected")
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[member_id] = queue
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if self._queues.get(member_id) is queue:
                del self._queues[member_id]

    def subscriber_count(self) -> int:
        """Number of active subscriptions (testing helper)."""
        return len(self._queues)
