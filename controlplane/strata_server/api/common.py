"""
Sub-schemas shared by several API tables.

Tables copy what they need into their own ``definitions`` so each table
compiles on its own.
"""

from __future__ import annotations

from typing import Any

ADMIN = {"system": "admin"}
ACCOUNT_ONLY = {"system": False}
ANY_SESSION = {"account": False, "system": False}
ANONYMOUS = False

STORAGE_INFO: dict[str, Any] = {
    "type": "object",
    "properties": {
        "total": {"type": "integer"},
        "free": {"type": "integer"},
        "used": {"type": "integer"},
        "used_other": {"type": "integer"},
        "unavailable_free": {"type": "integer"},
        "reserved": {"type": "integer"},
        "limit": {"type": "integer"},
        "alloc": {"type": "integer"},
        "real": {"type": "integer"},
    },
}

NODE_IDENTITY: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "peer_id": {"type": "string"},
        "rpc_address": {"type": "string"},
    },
    "anyOf": [{"required": ["id"]}, {"required": ["name"]}],
}

NODES_AGGREGATE_INFO: dict[str, Any] = {
    "type": "object",
    "properties": {
        "count": {"type": "integer"},
        "online": {"type": "integer"},
        "has_issues": {"type": "integer"},
    },
}

UNDELETABLE_ENUM: dict[str, Any] = {
    "type": "string",
    "enum": ["NOT_EMPTY", "IN_USE", "DEFAULT_RESOURCE"],
}

NODES_AGGREGATE: dict[str, Any] = {
    "type": "object",
    "properties": {
        "nodes": {"$ref": "#/$defs/nodes_aggregate_info"},
        "storage": {"$ref": "#/$defs/storage_info"},
        "groups": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "nodes": {"$ref": "#/$defs/nodes_aggregate_info"},
                    "storage": {"$ref": "#/$defs/storage_info"},
                },
            },
        },
    },
}

ROLE_ENUM: dict[str, Any] = {"type": "string", "enum": ["admin", "user", "viewer", "operator"]}

ACCESS_KEYS: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["access_key", "secret_key"],
        "properties": {
            "access_key": {"type": "string"},
            "secret_key": {"type": "string"},
        },
    },
}


def by_name() -> dict[str, Any]:
    """Params schema of the many methods that only take a ``name``."""
    return {
        "type": "object",
        "required": ["name"],
        "properties": {"name": {"type": "string", "minLength": 1}},
    }
