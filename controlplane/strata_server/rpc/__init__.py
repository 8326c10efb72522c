"""
RPC layer: API tables, sessions, the service registry and the HTTP transport.
"""

from .auth import Session, SessionManager, authorize
from .registry import RpcRegistry, RpcRequest, RpcTransport
from .schema import ApiSchema, AuthRule, MethodDef
from .transport import HttpRpcTransport, RpcServer, create_rpc_app

__all__ = [
    "ApiSchema",
    "AuthRule",
    "HttpRpcTransport",
    "MethodDef",
    "RpcRegistry",
    "RpcRequest",
    "RpcServer",
    "RpcTransport",
    "Session",
    "SessionManager",
    "authorize",
    "create_rpc_app",
]
