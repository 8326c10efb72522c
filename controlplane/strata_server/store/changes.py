"""
Change batches for the config store.

A ChangeBatch groups inserts, updates and removals across any number of
collections. The store applies a batch all-or-nothing.

Wire/dict form:
    {
        "insert": {"pools": [{"_id": ..., "system": ..., "name": ...}]},
        "update": {"systems": [{"_id": ..., "debug_level": 0, "$unset": {"owner": 1}}]},
        "remove": {"roles": ["<id>", ...]},
    }

Update documents are partial: keys other than ``_id`` and ``$unset`` are
shallow-merged into the stored document; ``$unset`` names fields to drop.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from ..errors import ValidationError

UNSET = "$unset"


@dataclass
class ChangeBatch:
    """Inserts, partial updates and removals to apply atomically.

    Attributes:
        insert: collection -> full documents to insert
        update: collection -> partial documents (must carry ``_id``)
        remove: collection -> ids to remove
    """

    insert: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    update: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    remove: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeBatch:
        """Build a batch from its dict form (documents are deep-copied).

        Raises:
            ValidationError: If the top-level shape is wrong
        """
        unknown = set(data) - {"insert", "update", "remove"}
        if unknown:
            raise ValidationError(
                "Unknown change kinds", errors=[f"unknown key '{k}'" for k in sorted(unknown)]
            )
        batch = cls()
        for kind in ("insert", "update", "remove"):
            section = data.get(kind) or {}
            if not isinstance(section, dict):
                raise ValidationError(f"'{kind}' must map collection names to lists")
            for collection, items in section.items():
                if not isinstance(items, list):
                    raise ValidationError(f"'{kind}.{collection}' must be a list")
                getattr(batch, kind)[collection] = copy.deepcopy(items)
        return batch

    def to_dict(self) -> dict[str, Any]:
        return {
            "insert": copy.deepcopy(self.insert),
            "update": copy.deepcopy(self.update),
            "remove": copy.deepcopy(self.remove),
        }

    def add_insert(self, collection: str, doc: dict[str, Any]) -> ChangeBatch:
        self.insert.setdefault(collection, []).append(doc)
        return self

    def add_update(self, collection: str, doc: dict[str, Any]) -> ChangeBatch:
        self.update.setdefault(collection, []).append(doc)
        return self

    def add_remove(self, collection: str, doc_id: str) -> ChangeBatch:
        self.remove.setdefault(collection, []).append(doc_id)
        return self

    def collections(self) -> set[str]:
        return set(self.insert) | set(self.update) | set(self.remove)

    def is_empty(self) -> bool:
        return not any(
            items for section in (self.insert, self.update, self.remove) for items in section.values()
        )

    def __len__(self) -> int:
        return sum(
            len(items) for section in (self.insert, self.update, self.remove) for items in section.values()
        )


def coerce_batch(changes: ChangeBatch | dict[str, Any]) -> ChangeBatch:
    if isinstance(changes, ChangeBatch):
        return ChangeBatch.from_dict(changes.to_dict())
    if isinstance(changes, dict):
        return ChangeBatch.from_dict(changes)
    raise ValidationError(f"Unsupported change batch type: {type(changes).__name__}")


def apply_update(current: dict[str, Any], partial: dict[str, Any]) -> dict[str, Any]:
    """Return ``current`` with ``partial`` merged in (``current`` is not mutated)."""
    merged = copy.deepcopy(current)
    for key, value in partial.items():
        if key in ("_id", UNSET):
            continue
        merged[key] = copy.deepcopy(value)
    for key in partial.get(UNSET) or {}:
        if key != "_id":
            merged.pop(key, None)
    return merged
