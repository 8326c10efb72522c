"""
Collection schemas for the config store.

Each durable collection has:
    - a JSON schema every document must satisfy after a batch is applied
    - a list of reference fields pointing at other collections
    - an optional uniqueness rule (name within a system, email, ...)

Reference paths use a small notation:
    "system"        scalar field
    "pools[]"       every element of a list field
    "tiers[].tier"  a field of every element of a list field

Deferred references are documented here but not checked at commit time
(a System's owner Account is created by a later provisioning step).

How to change safely:
    - Adding an optional property is always safe
    - Adding a required property breaks loading of existing documents;
      backfill them first
    - Never rename a collection; collection names are part of the durable format
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

from jsonschema import Draft202012Validator

ID_PATTERN = "^[0-9a-f]{24}$"

_ID = {"type": "string", "pattern": ID_PATTERN}
_NAME = {"type": "string", "minLength": 1}


def _doc_schema(required: list[str], properties: dict[str, Any]) -> dict[str, Any]:
    props: dict[str, Any] = {"_id": _ID}
    props.update(properties)
    return {
        "type": "object",
        "required": ["_id", *required],
        "properties": props,
        "additionalProperties": True,
    }


COLLECTION_SCHEMAS: dict[str, dict[str, Any]] = {
    "systems": _doc_schema(
        ["name"],
        {
            "name": _NAME,
            "owner": _ID,
            "resources": {"type": "object"},
            "n2n_config": {"type": "object"},
            "debug_level": {"type": "integer", "minimum": 0},
            "upgrade": {"type": "object"},
            "last_stats_report": {"type": "integer"},
            "maintenance_mode": {"type": "integer"},
            "base_address": {"type": "string"},
            "phone_home_proxy_address": {"type": "string"},
            "remote_syslog_config": {"type": "object"},
            "freemium_cap": {"type": "object"},
        },
    ),
    "pools": _doc_schema(
        ["system", "name"],
        {
            "system": _ID,
            "name": _NAME,
            "cloud_pool_info": {"type": "object"},
            "demo_pool": {"type": "boolean"},
            "nodes": {"type": "array", "items": {"type": "string"}},
        },
    ),
    "tiers": _doc_schema(
        ["system", "name", "pools"],
        {
            "system": _ID,
            "name": _NAME,
            "pools": {"type": "array", "items": _ID},
            "data_placement": {"type": "string"},
            "replicas": {"type": "integer", "minimum": 1},
        },
    ),
    "tieringpolicies": _doc_schema(
        ["system", "name", "tiers"],
        {
            "system": _ID,
            "name": _NAME,
            "tiers": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["tier", "order"],
                    "properties": {
                        "tier": _ID,
                        "order": {"type": "integer", "minimum": 0},
                    },
                },
            },
        },
    ),
    "buckets": _doc_schema(
        ["system", "name", "tiering"],
        {
            "system": _ID,
            "name": _NAME,
            "tiering": _ID,
            "demo_bucket": {"type": "boolean"},
            "storage_stats": {"type": "object"},
        },
    ),
    "accounts": _doc_schema(
        ["name", "email"],
        {
            "name": _NAME,
            "email": {"type": "string", "minLength": 3},
            "is_support": {"type": "boolean"},
            "allowed_buckets": {"type": "array", "items": _ID},
            "access_keys": {"type": "array"},
        },
    ),
    "roles": _doc_schema(
        ["account", "system", "role"],
        {
            "account": _ID,
            "system": _ID,
            "role": {"type": "string", "enum": ["admin", "user", "viewer", "operator"]},
        },
    ),
    "clusters": _doc_schema(
        ["owner_secret"],
        {
            "owner_secret": {"type": "string", "minLength": 1},
            "cluster_id": {"type": "string"},
            "owner_address": {"type": "string"},
            "debug_level": {"type": "integer", "minimum": 0},
            "dns_servers": {"type": "array", "items": {"type": "string"}},
            "timezone": {"type": "string"},
            "ntp_server": {"type": "string"},
        },
    ),
}

COLLECTIONS: tuple[str, ...] = tuple(COLLECTION_SCHEMAS)


@dataclass(frozen=True)
class Reference:
    """A field of ``collection`` that holds ids of ``target`` documents."""

    collection: str
    path: str
    target: str
    deferred: bool = False

    def values(self, doc: dict[str, Any]) -> Iterator[Any]:
        """Yield every id this reference holds in ``doc``."""
        head, _, tail = self.path.partition(".")
        if head.endswith("[]"):
            items = doc.get(head[:-2]) or []
            for item in items:
                if tail:
                    if isinstance(item, dict) and item.get(tail) is not None:
                        yield item[tail]
                elif item is not None:
                    yield item
        elif doc.get(head) is not None:
            yield doc[head]


REFERENCES: tuple[Reference, ...] = (
    Reference("systems", "owner", "accounts", deferred=True),
    Reference("pools", "system", "systems"),
    Reference("tiers", "system", "systems"),
    Reference("tiers", "pools[]", "pools"),
    Reference("tieringpolicies", "system", "systems"),
    Reference("tieringpolicies", "tiers[].tier", "tiers"),
    Reference("buckets", "system", "systems"),
    Reference("buckets", "tiering", "tieringpolicies"),
    Reference("roles", "account", "accounts"),
    Reference("roles", "system", "systems"),
)


@dataclass(frozen=True)
class UniqueKey:
    """``field`` is unique within ``scope`` (or cluster-wide if scope is None)."""

    collection: str
    field: str
    scope: str | None = None
    casefold: bool = False

    def key(self, doc: dict[str, Any]) -> tuple[Any, Any] | None:
        value = doc.get(self.field)
        if value is None:
            return None
        if self.casefold and isinstance(value, str):
            value = value.lower()
        return (doc.get(self.scope) if self.scope else None, value)


UNIQUE_KEYS: tuple[UniqueKey, ...] = (
    UniqueKey("systems", "name"),
    UniqueKey("pools", "name", scope="system"),
    UniqueKey("tiers", "name", scope="system"),
    UniqueKey("tieringpolicies", "name", scope="system"),
    UniqueKey("buckets", "name", scope="system"),
    UniqueKey("accounts", "email", casefold=True),
)

_VALIDATORS = {
    name: Draft202012Validator(schema) for name, schema in COLLECTION_SCHEMAS.items()
}


def schema_errors(collection: str, doc: dict[str, Any]) -> list[str]:
    """Return human-readable schema violations for ``doc`` (empty if valid)."""
    validator = _VALIDATORS[collection]
    errors = []
    for err in sorted(validator.iter_errors(doc), key=lambda e: [str(p) for p in e.path]):
        where = "/".join(str(p) for p in err.path) or "<root>"
        errors.append(f"{collection}[{doc.get('_id')}].{where}: {err.message}")
    return errors
