"""
POOLS API

Pools are named groups of storage nodes or a cloud storage target. Every
method requires the caller to be an admin of the session's system.
"""

from __future__ import annotations

from ..rpc.schema import ApiSchema
from .common import (
    ADMIN,
    NODE_IDENTITY,
    NODES_AGGREGATE_INFO,
    STORAGE_INFO,
    UNDELETABLE_ENUM,
    by_name,
)

POOL_API = ApiSchema.from_dict(
    {
        "id": "pool_api",
        "methods": {
            "create_nodes_pool": {
                "doc": "Create Pool",
                "params": {"$ref": "#/$defs/pool_definition"},
                "auth": ADMIN,
            },
            "create_cloud_pool": {
                "doc": "Create Cloud Pool",
                "params": {
                    "type": "object",
                    "required": ["name", "connection", "target_bucket"],
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "connection": {"type": "string"},
                        "target_bucket": {"type": "string"},
                    },
                },
                "auth": ADMIN,
            },
            "update_pool": {
                "doc": "Update Pool",
                "params": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {
                        "name": {"type": "string"},
                        "new_name": {"type": "string", "minLength": 1},
                    },
                },
                "auth": ADMIN,
            },
            "list_pool_nodes": {
                "doc": "List Pool Nodes",
                "params": by_name(),
                "reply": {"$ref": "#/$defs/pool_definition"},
                "auth": ADMIN,
            },
            "read_pool": {
                "doc": "Read Pool Information",
                "params": by_name(),
                "reply": {"$ref": "#/$defs/pool_extended_info"},
                "auth": ADMIN,
            },
            "delete_pool": {
                "doc": "Delete Pool",
                "params": by_name(),
                "auth": ADMIN,
            },
            "assign_nodes_to_pool": {
                "doc": "Add nodes to Pool",
                "params": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {
                        "name": {"type": "string"},
                        "nodes": {
                            "type": "array",
                            "items": {"$ref": "#/$defs/node_identity"},
                        },
                    },
                },
                "auth": ADMIN,
            },
            "get_associated_buckets": {
                "doc": "Return list of buckets which are using this pool",
                "params": by_name(),
                "reply": {"type": "array", "items": {"type": "string"}},
                "auth": ADMIN,
            },
        },
        "definitions": {
            "node_identity": NODE_IDENTITY,
            "nodes_aggregate_info": NODES_AGGREGATE_INFO,
            "storage_info": STORAGE_INFO,
            "undeletable_enum": UNDELETABLE_ENUM,
            "pool_definition": {
                "type": "object",
                "required": ["name", "nodes"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "nodes": {
                        "type": "array",
                        "items": {"$ref": "#/$defs/node_identity"},
                    },
                },
            },
            "pool_extended_info": {
                "type": "object",
                "required": ["name", "storage"],
                "properties": {
                    "name": {"type": "string"},
                    "nodes": {"$ref": "#/$defs/nodes_aggregate_info"},
                    "storage": {"$ref": "#/$defs/storage_info"},
                    "undeletable": {"$ref": "#/$defs/undeletable_enum"},
                    "demo_pool": {"type": "boolean"},
                    "cloud_info": {
                        "type": "object",
                        "properties": {
                            "endpoint": {"type": "string"},
                            "target_bucket": {"type": "string"},
                        },
                    },
                },
            },
        },
    }
)
