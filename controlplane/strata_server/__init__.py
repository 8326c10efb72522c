"""
Strata control plane - configuration and tenant management for a scale-out
object-storage platform.

This package implements the control plane built on:
- A versioned, atomically updated config store (SQLite + in-memory indexes)
- Schema-validated, auth-scoped RPC services, local or on peers
- A provisioning saga that creates tenants and configures the cluster
- Change notices on a cluster bus so every member reloads after a commit

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  Console /  │────▶│  RPC server │────▶│   RpcRegistry   │
    │   peers     │     │  (aiohttp)  │     │ (schema + auth) │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                   ┌─────────────────────────────────┼──────────────┐
                   ▼                                 ▼              ▼
            ┌─────────────┐                  ┌─────────────┐  ┌──────────┐
            │ system_api  │                  │  pool_api   │  │ peers    │
            │ saga/status │                  │ account_api │  │ (httpx)  │
            └──────┬──────┘                  └──────┬──────┘  └──────────┘
                   └───────────────┬───────────────┘
                                   ▼
                        ┌─────────────────────┐      ┌──────────────┐
                        │     ConfigStore     │─────▶│  Change bus  │
                        │ (snapshot + SQLite) │      │ (Kafka/mem)  │
                        └─────────────────────┘      └──────────────┘

Invariants:
    - Only the ConfigStore writes configuration, one atomic batch at a time
    - Every RPC call is validated against its method schema before it runs
    - A tenant is committed whole or not at all; later provisioning steps
      report partial failures instead of rolling back

How to change safely:
    - Collections and RPC method names are part of the durable/wire format
    - New RPC methods need a table entry in api/ and a handler in services/
"""

from ._version import __version__

__all__ = ["__version__"]
