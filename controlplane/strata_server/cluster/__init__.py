"""
Cluster change propagation.

Members share one durable config file. After a commit the committing member
publishes a ChangeNotice; every other member's ChangePropagator reloads its
snapshot. Backends:
- In-memory (single process, tests)
- Kafka/Redpanda (multi-member deployments)
"""

from .base import (
    ChangeBus,
    ChangeBusConnectionError,
    ChangeBusError,
    ChangeNotice,
    NoticeSerializationError,
    create_change_bus,
)
from .memory import InMemoryChangeBus
from .propagator import ChangePropagator

__all__ = [
    "ChangeBus",
    "ChangeBusError",
    "ChangeBusConnectionError",
    "NoticeSerializationError",
    "ChangeNotice",
    "create_change_bus",
    "InMemoryChangeBus",
    "ChangePropagator",
]
