"""
API tables for the control plane RPC surface.

Locally hosted: system_api, pool_api, account_api.
Declared for outgoing calls: hosted_agents_api, cluster_server_api,
node_api, object_api, bucket_api.
"""

from .account_api import ACCOUNT_API
from .pool_api import POOL_API
from .remote_apis import (
    BUCKET_API,
    CLUSTER_SERVER_API,
    HOSTED_AGENTS_API,
    NODE_API,
    OBJECT_API,
    REMOTE_APIS,
)
from .system_api import SYSTEM_API

__all__ = [
    "ACCOUNT_API",
    "BUCKET_API",
    "CLUSTER_SERVER_API",
    "HOSTED_AGENTS_API",
    "NODE_API",
    "OBJECT_API",
    "POOL_API",
    "REMOTE_APIS",
    "SYSTEM_API",
]
