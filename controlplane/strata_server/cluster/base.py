"""
Base protocol and types for the cluster change bus.

After every commit a member publishes a ChangeNotice. Other members consume
the notices and reload their config snapshot from the shared durable store.

Invariants:
    - A ChangeNotice carries metadata only; documents are never shipped on the bus
    - Notices from one origin are published in revision order
    - Every member sees every notice (no shared consumer group)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep ChangeNotice.from_bytes tolerant of unknown keys so mixed-version
      members can coexist during rolling upgrades
"""

from __future__ import annotations

import json
import logging
import time
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ClusterConfig

logger = logging.getLogger(__name__)


class ChangeBusError(Exception):
    """Base exception for change bus operations."""

    pass


class ChangeBusConnectionError(ChangeBusError):
    """Connection to the bus backend failed."""

    pass


class NoticeSerializationError(ChangeBusError):
    """Failed to serialize/deserialize a notice."""

    pass


@dataclass(frozen=True)
class ChangeNotice:
    """Announcement that a member committed a new config revision.

    Attributes:
        origin: node_id of the committing member
        revision: Revision produced by the commit
        collections: Collections touched by the commit
        timestamp_ms: Commit time (milliseconds)
    """

    origin: str
    revision: int
    collections: tuple[str, ...] = ()
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "revision": self.revision,
            "collections": list(self.collections),
            "timestamp_ms": self.timestamp_ms,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> ChangeNotice:
        """Parse a notice from the wire.

        Raises:
            NoticeSerializationError: If the payload is not a valid notice
        """
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls(
                origin=str(data["origin"]),
                revision=int(data["revision"]),
                collections=tuple(data.get("collections") or ()),
                timestamp_ms=int(data.get("timestamp_ms") or 0),
            )
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            raise NoticeSerializationError(f"Invalid change notice: {e}") from e


@runtime_checkable
class ChangeBus(Protocol):
    """Protocol for change bus backends.

    Example:
        >>> bus = InMemoryChangeBus()
        >>> await bus.connect()
        >>> await bus.publish(ChangeNotice(origin="node-1", revision=7))
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            ChangeBusConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources; active subscriptions end."""
        ...

    @abstractmethod
    async def publish(self, notice: ChangeNotice) -> None:
        """Publish a notice to every member.

        Raises:
            ChangeBusConnectionError: If not connected
            ChangeBusError: For other publish failures
        """
        ...

    @abstractmethod
    def subscribe(self, member_id: str) -> AsyncIterator[ChangeNotice]:
        """Yield notices published after the subscription started.

        Args:
            member_id: Identity of the subscribing member
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_change_bus(config: ClusterConfig) -> ChangeBus:
    """Factory function to create a change bus from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BusBackend

    if config.bus_backend == BusBackend.KAFKA:
        from .kafka import KafkaChangeBus

        return KafkaChangeBus(config)
    if config.bus_backend == BusBackend.MEMORY:
        from .memory import InMemoryChangeBus

        return InMemoryChangeBus()
    raise ValueError(f"Unsupported change bus backend: {config.bus_backend}")
