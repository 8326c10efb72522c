"""
Config store: versioned, indexed, atomically-updated cluster configuration.

- ConfigStore: in-memory snapshot + commit pipeline
- StoreData: immutable indexed snapshot
- ChangeBatch: inserts/updates/removals applied all-or-nothing
- DurableStore: SQLite persistence with revision compare-and-swap
"""

from .changes import ChangeBatch
from .config_store import ConfigStore
from .data import StoreData, SystemView
from .durable import DurableStore, RevisionMismatchError
from .ids import IdGenerator, generate_id, is_valid_id
from .schemas import COLLECTIONS

__all__ = [
    "COLLECTIONS",
    "ChangeBatch",
    "ConfigStore",
    "DurableStore",
    "IdGenerator",
    "RevisionMismatchError",
    "StoreData",
    "SystemView",
    "generate_id",
    "is_valid_id",
]
