"""
ACCOUNTS API

``create_account`` is anonymous only for the owner account of a system that
is being provisioned (``new_system_parameters``); any other creation needs
an admin session, which the handler checks itself.
"""

from __future__ import annotations

from ..rpc.schema import ApiSchema
from .common import ACCESS_KEYS, ADMIN, ANONYMOUS

_ACCOUNT_INFO = {
    "type": "object",
    "required": ["name", "email"],
    "properties": {
        "name": {"type": "string"},
        "email": {"type": "string"},
        "is_support": {"type": "boolean"},
        "has_login": {"type": "boolean"},
        "allowed_buckets": {"type": "array", "items": {"type": "string"}},
        "systems": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "roles"],
                "properties": {
                    "name": {"type": "string"},
                    "roles": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}

ACCOUNT_API = ApiSchema.from_dict(
    {
        "id": "account_api",
        "methods": {
            "create_account": {
                "doc": "Create an account",
                "params": {
                    "type": "object",
                    "required": ["name", "email", "password"],
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "email": {"type": "string", "minLength": 3},
                        "password": {"type": "string", "minLength": 1},
                        "access_keys": ACCESS_KEYS,
                        "allowed_buckets": {"type": "array", "items": {"type": "string"}},
                        "new_system_parameters": {
                            "type": "object",
                            "required": ["account_id", "allowed_buckets", "new_system_id"],
                            "properties": {
                                "account_id": {"type": "string"},
                                "allowed_buckets": {
                                    "type": "array",
                                    "items": {"type": "string"},
                                },
                                "new_system_id": {"type": "string"},
                            },
                        },
                    },
                },
                "reply": {
                    "type": "object",
                    "required": ["token"],
                    "properties": {
                        "token": {"type": "string"},
                        "access_keys": ACCESS_KEYS,
                    },
                },
                "auth": ANONYMOUS,
            },
            "list_accounts": {
                "doc": "List accounts holding a role in the session's system",
                "params": {"type": "object"},
                "reply": {
                    "type": "object",
                    "required": ["accounts"],
                    "properties": {
                        "accounts": {"type": "array", "items": {"$ref": "#/$defs/account_info"}}
                    },
                },
                "auth": ADMIN,
            },
            "read_account": {
                "doc": "Read one account by email",
                "params": {
                    "type": "object",
                    "required": ["email"],
                    "properties": {"email": {"type": "string"}},
                },
                "reply": {"$ref": "#/$defs/account_info"},
                "auth": ADMIN,
            },
        },
        "definitions": {"account_info": _ACCOUNT_INFO},
    }
)
