"""
SYSTEM API

Tenant lifecycle (create/read/update/delete), roles, network settings,
phone-home and syslog settings, activity log and diagnostics.
"""

from __future__ import annotations

from ..rpc.schema import ApiSchema
from .common import (
    ACCESS_KEYS,
    ADMIN,
    ANONYMOUS,
    ANY_SESSION,
    NODES_AGGREGATE_INFO,
    ROLE_ENUM,
    STORAGE_INFO,
)

_NO_PARAMS = {"type": "object", "additionalProperties": False}

_EMAIL_ROLE = {
    "type": "object",
    "required": ["email", "role"],
    "properties": {
        "email": {"type": "string", "minLength": 3},
        "role": {"$ref": "#/$defs/role_enum"},
    },
}

_ACTIVITY_FILTER = {
    "type": "object",
    "properties": {
        "event": {"type": "string"},
        "events": {"type": "array", "items": {"type": "string"}},
        "since": {"type": "integer"},
        "till": {"type": "integer"},
        "skip": {"type": "integer", "minimum": 0},
        "limit": {"type": "integer", "minimum": 1},
    },
}

SYSTEM_API = ApiSchema.from_dict(
    {
        "id": "system_api",
        "methods": {
            "create_system": {
                "doc": "Create a new system",
                "params": {
                    "type": "object",
                    "required": ["name", "email", "password"],
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "email": {"type": "string", "minLength": 3},
                        "password": {"type": "string", "minLength": 1},
                        "activation_code": {"type": "string"},
                        "access_keys": ACCESS_KEYS,
                        "time_config": {"$ref": "#/$defs/time_config"},
                        "dns_servers": {"type": "array", "items": {"type": "string"}},
                        "dns_name": {"type": "string"},
                    },
                },
                "reply": {
                    "type": "object",
                    "required": ["token"],
                    "properties": {"token": {"type": "string"}},
                },
                "auth": ANONYMOUS,
            },
            "read_system": {
                "doc": "Read the status view of the session's system",
                "params": _NO_PARAMS,
                "reply": {"$ref": "#/$defs/system_full_info"},
                "auth": ADMIN,
            },
            "update_system": {
                "doc": "Rename the system",
                "params": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {"name": {"type": "string", "minLength": 1}},
                },
                "auth": ADMIN,
            },
            "delete_system": {
                "doc": "Delete the system and everything it owns",
                "params": _NO_PARAMS,
                "auth": ADMIN,
            },
            "list_systems": {
                "doc": "List systems visible to the caller",
                "params": _NO_PARAMS,
                "reply": {
                    "type": "object",
                    "required": ["systems"],
                    "properties": {
                        "systems": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["name"],
                                "properties": {"name": {"type": "string"}},
                            },
                        }
                    },
                },
                "auth": ANY_SESSION,
            },
            "add_role": {
                "doc": "Grant a role in the system to an account",
                "params": _EMAIL_ROLE,
                "auth": ADMIN,
            },
            "remove_role": {
                "doc": "Revoke a role in the system from an account",
                "params": _EMAIL_ROLE,
                "auth": ADMIN,
            },
            "set_maintenance_mode": {
                "doc": "Enter maintenance mode for a number of minutes",
                "params": {
                    "type": "object",
                    "required": ["duration"],
                    "properties": {"duration": {"type": "number", "minimum": 0}},
                },
                "auth": ADMIN,
            },
            "set_last_stats_report_time": {
                "doc": "Record when statistics were last reported",
                "params": {
                    "type": "object",
                    "required": ["last_stats_report"],
                    "properties": {"last_stats_report": {"type": "integer"}},
                },
                "auth": ADMIN,
            },
            "update_n2n_config": {
                "doc": "Replace the node-to-node connectivity config",
                "params": {
                    "type": "object",
                    "required": ["config"],
                    "properties": {"config": {"$ref": "#/$defs/n2n_config"}},
                },
                "auth": ADMIN,
            },
            "update_base_address": {
                "doc": "Set the address agents use to reach the system",
                "params": {
                    "type": "object",
                    "required": ["base_address"],
                    "properties": {"base_address": {"type": "string", "minLength": 1}},
                },
                "auth": ADMIN,
            },
            "update_hostname": {
                "doc": "Derive the base address from a DNS hostname",
                "params": {
                    "type": "object",
                    "required": ["hostname"],
                    "properties": {"hostname": {"type": "string", "minLength": 1}},
                },
                "auth": ADMIN,
            },
            "update_phone_home_config": {
                "doc": "Set or clear the phone-home proxy",
                "params": {
                    "type": "object",
                    "required": ["proxy_address"],
                    "properties": {"proxy_address": {"type": ["string", "null"]}},
                },
                "auth": ADMIN,
            },
            "phone_home_capacity_notified": {
                "doc": "Mark the capacity-cap notification as shown",
                "params": _NO_PARAMS,
                "auth": ADMIN,
            },
            "configure_remote_syslog": {
                "doc": "Enable or disable forwarding to a remote syslog server",
                "params": {
                    "type": "object",
                    "required": ["enabled"],
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "protocol": {"type": "string", "enum": ["TCP", "UDP"]},
                        "address": {"type": "string"},
                        "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                    },
                },
                "auth": ADMIN,
            },
            "read_activity_log": {
                "doc": "Read audit entries of the system",
                "params": _ACTIVITY_FILTER,
                "reply": {
                    "type": "object",
                    "required": ["logs"],
                    "properties": {"logs": {"type": "array", "items": {"type": "object"}}},
                },
                "auth": ADMIN,
            },
            "export_activity_log": {
                "doc": "Export audit entries to a CSV file; returns its public path",
                "params": _ACTIVITY_FILTER,
                "reply": {"type": "string"},
                "auth": ADMIN,
            },
            "diagnose_system": {
                "doc": "Pack server diagnostics; returns the archive path",
                "params": _NO_PARAMS,
                "reply": {"type": "string"},
                "auth": ADMIN,
            },
            "diagnose_node": {
                "doc": "Pack server and agent diagnostics; returns the archive path",
                "params": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {
                        "id": {"type": "string"},
                        "name": {"type": "string"},
                    },
                },
                "reply": {"type": "string"},
                "auth": ADMIN,
            },
            "log_frontend_stack_trace": {
                "doc": "Log a stack trace reported by the console",
                "params": {
                    "type": "object",
                    "required": ["stack_trace"],
                    "properties": {"stack_trace": {}},
                },
                "auth": ADMIN,
            },
            "validate_activation": {
                "doc": "Check an activation code with the license server",
                "params": {
                    "type": "object",
                    "required": ["code"],
                    "properties": {
                        "code": {"type": "string"},
                        "email": {"type": "string"},
                    },
                },
                "reply": {
                    "type": "object",
                    "required": ["valid"],
                    "properties": {
                        "valid": {"type": "boolean"},
                        "reason": {"type": "string"},
                    },
                },
                "auth": ANONYMOUS,
            },
        },
        "definitions": {
            "role_enum": ROLE_ENUM,
            "storage_info": STORAGE_INFO,
            "nodes_aggregate_info": NODES_AGGREGATE_INFO,
            "time_config": {
                "type": "object",
                "properties": {
                    "timezone": {"type": "string"},
                    "ntp_server": {"type": "string"},
                    "epoch": {"type": "integer"},
                },
            },
            "n2n_config": {
                "type": "object",
                "properties": {
                    "tcp_tls": {"type": "boolean"},
                    "tcp_active": {"type": "boolean"},
                    "tcp_permanent_passive": {
                        "oneOf": [
                            {"type": "boolean"},
                            {"type": "integer"},
                            {
                                "type": "object",
                                "properties": {
                                    "min": {"type": "integer"},
                                    "max": {"type": "integer"},
                                    "port": {"type": "integer"},
                                },
                            },
                        ]
                    },
                    "tcp_transient_passive": {"type": ["boolean", "object"]},
                    "tcp_simultaneous_open": {"type": ["boolean", "object"]},
                    "udp_dtls": {"type": "boolean"},
                    "udp_port": {"type": ["boolean", "integer"]},
                    "stun_servers": {"type": "array", "items": {"type": "string"}},
                },
            },
            "system_full_info": {
                "type": "object",
                "required": [
                    "name",
                    "objects",
                    "roles",
                    "buckets",
                    "pools",
                    "storage",
                    "nodes",
                    "maintenance_mode",
                    "version",
                    "upgrade",
                ],
                "properties": {
                    "name": {"type": "string"},
                    "objects": {"type": "integer"},
                    "roles": {"type": "array"},
                    "buckets": {"type": "array"},
                    "pools": {"type": "array"},
                    "tiers": {"type": "array"},
                    "storage": {"$ref": "#/$defs/storage_info"},
                    "nodes": {"$ref": "#/$defs/nodes_aggregate_info"},
                    "owner": {"type": ["object", "null"]},
                    "last_stats_report": {"type": "integer"},
                    "maintenance_mode": {
                        "type": "object",
                        "required": ["state"],
                        "properties": {
                            "state": {"type": "boolean"},
                            "till": {"type": "integer"},
                        },
                    },
                    "ssl_port": {"type": "integer"},
                    "web_port": {"type": "integer"},
                    "web_links": {"type": "object"},
                    "n2n_config": {"type": "object"},
                    "ip_address": {"type": "string"},
                    "dns_name": {"type": "string"},
                    "base_address": {"type": "string"},
                    "remote_syslog_config": {"type": ["object", "null"]},
                    "phone_home_config": {"type": "object"},
                    "version": {"type": "string"},
                    "debug_level": {"type": "integer"},
                    "upgrade": {
                        "type": "object",
                        "properties": {
                            "status": {"type": "string"},
                            "message": {"type": "string"},
                        },
                    },
                    "system_cap": {"type": "integer"},
                    "cluster": {"type": "object"},
                    "accounts": {"type": "array"},
                },
            },
        },
    }
)
