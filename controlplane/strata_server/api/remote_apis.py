"""
Tables of services hosted by other members.

The control plane calls these by name; declaring them here lets the
registry validate params before a call leaves the process. The node,
object and bucket read methods back the status view of ``read_system``.
"""

from __future__ import annotations

from ..rpc.schema import ApiSchema
from .common import ACCESS_KEYS, ADMIN, NODES_AGGREGATE, NODES_AGGREGATE_INFO, STORAGE_INFO

_TARGET_SECRET = {"type": "string", "minLength": 1}

HOSTED_AGENTS_API = ApiSchema.from_dict(
    {
        "id": "hosted_agents_api",
        "methods": {
            "create_agent": {
                "doc": "Start agents hosted by the server process",
                "params": {
                    "type": "object",
                    "required": ["name", "scale"],
                    "properties": {
                        "name": {"type": "string"},
                        "demo": {"type": "boolean"},
                        "access_keys": ACCESS_KEYS,
                        "scale": {"type": "integer", "minimum": 1},
                        "storage_limit": {"type": "integer", "minimum": 0},
                    },
                },
                "auth": ADMIN,
            },
        },
    }
)

CLUSTER_SERVER_API = ApiSchema.from_dict(
    {
        "id": "cluster_server_api",
        "methods": {
            "update_time_config": {
                "doc": "Set timezone/NTP/epoch on a cluster member",
                "params": {
                    "type": "object",
                    "required": ["target_secret"],
                    "properties": {
                        "target_secret": _TARGET_SECRET,
                        "timezone": {"type": "string"},
                        "ntp_server": {"type": "string"},
                        "epoch": {"type": "integer"},
                    },
                },
                "auth": ADMIN,
            },
            "update_dns_servers": {
                "doc": "Set DNS servers on a cluster member",
                "params": {
                    "type": "object",
                    "required": ["target_secret", "dns_servers"],
                    "properties": {
                        "target_secret": _TARGET_SECRET,
                        "dns_servers": {"type": "array", "items": {"type": "string"}},
                    },
                },
                "auth": ADMIN,
            },
        },
    }
)

NODE_API = ApiSchema.from_dict(
    {
        "id": "node_api",
        "methods": {
            "sync_monitor_to_store": {
                "doc": "Make the node monitor pick up changed system settings",
                "params": {"type": "object"},
                "auth": ADMIN,
            },
            "aggregate_nodes": {
                "doc": "Aggregate node counts and storage by pool",
                "params": {
                    "type": "object",
                    "properties": {
                        "pool_names": {"type": ["array", "null"], "items": {"type": "string"}},
                        "skip_cloud_nodes": {"type": "boolean"},
                    },
                },
                "reply": {"$ref": "#/$defs/nodes_aggregate"},
                "auth": ADMIN,
            },
            "collect_agent_diagnostics": {
                "doc": "Fetch a diagnostics blob from one agent",
                "params": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {"id": {"type": "string"}, "name": {"type": "string"}},
                },
                "reply": {
                    "type": "object",
                    "properties": {"data": {"type": "string"}},
                },
                "auth": ADMIN,
            },
        },
        "definitions": {
            "nodes_aggregate": NODES_AGGREGATE,
            "nodes_aggregate_info": NODES_AGGREGATE_INFO,
            "storage_info": STORAGE_INFO,
        },
    }
)

OBJECT_API = ApiSchema.from_dict(
    {
        "id": "object_api",
        "methods": {
            "aggregate_objects_count": {
                "doc": "Object counts keyed by bucket id; '' holds unattributed objects",
                "params": {"type": "object"},
                "reply": {"type": "object", "additionalProperties": {"type": "integer"}},
                "auth": ADMIN,
            },
        },
    }
)

BUCKET_API = ApiSchema.from_dict(
    {
        "id": "bucket_api",
        "methods": {
            "get_cloud_sync": {
                "doc": "Cloud sync descriptor of one bucket",
                "params": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {"name": {"type": "string"}},
                },
                "reply": {"type": "object"},
                "auth": ADMIN,
            },
        },
    }
)

REMOTE_APIS: tuple[ApiSchema, ...] = (
    HOSTED_AGENTS_API,
    CLUSTER_SERVER_API,
    NODE_API,
    OBJECT_API,
    BUCKET_API,
)
