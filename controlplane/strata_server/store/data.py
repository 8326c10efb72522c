"""
Indexed, read-only snapshot of the configuration.

StoreData is rebuilt as a whole new object for every commit and swapped in
by the ConfigStore, so a reader holding a reference always sees one
consistent revision with fully built indexes.

Invariants:
    - Snapshots are never mutated after construction; callers that need to
      change a document copy it and submit a ChangeBatch
    - Every index is derived from ``collections`` only
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .schemas import COLLECTIONS

Doc = dict[str, Any]


@dataclass
class SystemView:
    """Per-system name indexes.

    Attributes:
        system: The system document
        pools_by_name: Pool name -> pool
        tiers_by_name: Tier name -> tier
        tieringpolicies_by_name: Policy name -> policy
        buckets_by_name: Bucket name -> bucket
        roles_by_account: Account id -> role names held in this system
    """

    system: Doc
    pools_by_name: dict[str, Doc] = field(default_factory=dict)
    tiers_by_name: dict[str, Doc] = field(default_factory=dict)
    tieringpolicies_by_name: dict[str, Doc] = field(default_factory=dict)
    buckets_by_name: dict[str, Doc] = field(default_factory=dict)
    roles_by_account: dict[str, list[str]] = field(default_factory=dict)


_BY_NAME_ATTR = {
    "pools": "pools_by_name",
    "tiers": "tiers_by_name",
    "tieringpolicies": "tieringpolicies_by_name",
    "buckets": "buckets_by_name",
}


class StoreData:
    """Immutable view of all collections at one revision."""

    def __init__(self, collections: dict[str, dict[str, Doc]], revision: int) -> None:
        self._collections = {name: dict(collections.get(name, {})) for name in COLLECTIONS}
        self.revision = revision
        self._by_id: dict[str, Doc] = {}
        self.systems_by_name: dict[str, Doc] = {}
        self.accounts_by_email: dict[str, Doc] = {}
        self._views: dict[str, SystemView] = {}
        self._build_indexes()

    @classmethod
    def empty(cls) -> StoreData:
        return cls({}, 0)

    def _build_indexes(self) -> None:
        for docs in self._collections.values():
            self._by_id.update(docs)

        for system in self._collections["systems"].values():
            self.systems_by_name[system["name"]] = system
            self._views[system["_id"]] = SystemView(system=system)

        for account in self._collections["accounts"].values():
            self.accounts_by_email[account["email"].lower()] = account

        for collection, attr in _BY_NAME_ATTR.items():
            for doc in self._collections[collection].values():
                view = self._views.get(doc.get("system"))
                if view is not None:
                    getattr(view, attr)[doc["name"]] = doc

        for role in self._collections["roles"].values():
            view = self._views.get(role["system"])
            if view is not None:
                view.roles_by_account.setdefault(role["account"], []).append(role["role"])

    # Lookups

    def get_by_id(self, doc_id: str | None) -> Doc | None:
        if doc_id is None:
            return None
        return self._by_id.get(doc_id)

    def get(self, collection: str, doc_id: str | None) -> Doc | None:
        """Look ``doc_id`` up in one collection only."""
        if doc_id is None:
            return None
        return self._collections[collection].get(doc_id)

    def docs(self, collection: str) -> list[Doc]:
        return list(self._collections[collection].values())

    def raw(self) -> dict[str, dict[str, Doc]]:
        """Collections keyed by id. Treat as read-only."""
        return self._collections

    def count(self, collection: str) -> int:
        return len(self._collections[collection])

    def system_view(self, system_id: str) -> SystemView | None:
        return self._views.get(system_id)

    def find_account_by_email(self, email: str) -> Doc | None:
        return self.accounts_by_email.get(email.lower())

    def system_docs(self, collection: str, system_id: str) -> list[Doc]:
        """Documents of ``collection`` that belong to ``system_id``."""
        return [d for d in self._collections[collection].values() if d.get("system") == system_id]

    def roles_of(self, account_id: str) -> list[Doc]:
        return [r for r in self._collections["roles"].values() if r["account"] == account_id]

    # Collection shortcuts

    @property
    def systems(self) -> list[Doc]:
        return self.docs("systems")

    @property
    def pools(self) -> list[Doc]:
        return self.docs("pools")

    @property
    def tiers(self) -> list[Doc]:
        return self.docs("tiers")

    @property
    def tieringpolicies(self) -> list[Doc]:
        return self.docs("tieringpolicies")

    @property
    def buckets(self) -> list[Doc]:
        return self.docs("buckets")

    @property
    def accounts(self) -> list[Doc]:
        return self.docs("accounts")

    @property
    def roles(self) -> list[Doc]:
        return self.docs("roles")

    @property
    def clusters(self) -> list[Doc]:
        return self.docs("clusters")

    def canonical_json(self) -> str:
        """Deterministic serialization of every collection (used for comparisons)."""
        return json.dumps(
            {"revision": self.revision, "collections": self._collections},
            sort_keys=True,
            separators=(",", ":"),
        )

    def __repr__(self) -> str:
        counts = ", ".join(f"{n}={len(d)}" for n, d in self._collections.items() if d)
        return f"StoreData(revision={self.revision}, {counts})"
