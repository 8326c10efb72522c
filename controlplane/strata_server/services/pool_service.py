"""
pool_api implementation.

A pool lists the storage nodes it groups (by node name or id), or carries
``cloud_pool_info`` for a cloud target. A node belongs to at most one pool
of a system; assigning it elsewhere moves it in the same batch.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import NotFoundError, ValidationError
from ..store.changes import ChangeBatch

if TYPE_CHECKING:
    from ..rpc.registry import RpcRequest
    from ..store.config_store import ConfigStore
    from ..store.data import StoreData
    from .collaborators import NodesAggregator

logger = logging.getLogger(__name__)


def node_key(identity: dict[str, Any]) -> str:
    return identity.get("name") or identity["id"]


def pool_undeletable(data: StoreData, pool: dict[str, Any]) -> str | None:
    """Why ``pool`` cannot be deleted, or None."""
    for tier in data.system_docs("tiers", pool["system"]):
        if pool["_id"] in tier.get("pools", []):
            return "IN_USE"
    if pool.get("nodes"):
        return "NOT_EMPTY"
    return None


class PoolService:
    """Handlers of ``pool_api``."""

    def __init__(self, store: ConfigStore, nodes: NodesAggregator) -> None:
        self.store = store
        self.nodes = nodes

    def _pool(self, req: RpcRequest, name: str | None = None) -> dict[str, Any]:
        name = name or req.params["name"]
        view = self.store.data.system_view(req.system["_id"])
        pool = view.pools_by_name.get(name) if view else None
        if pool is None:
            raise NotFoundError("Pool not found", resource_type="pool", resource_id=name)
        return pool

    def _move_nodes(
        self, batch: ChangeBatch, system_id: str, target_id: str, keys: list[str]
    ) -> None:
        """Drop ``keys`` from every other pool of the system."""
        moving = set(keys)
        for pool in self.store.data.system_docs("pools", system_id):
            if pool["_id"] == target_id:
                continue
            remaining = [n for n in pool.get("nodes", []) if n not in moving]
            if len(remaining) != len(pool.get("nodes", [])):
                batch.add_update("pools", {"_id": pool["_id"], "nodes": remaining})

    async def create_nodes_pool(self, req: RpcRequest) -> None:
        system_id = req.system["_id"]
        keys = [node_key(n) for n in req.params.get("nodes", [])]
        pool_id = self.store.generate_id()
        batch = ChangeBatch().add_insert(
            "pools",
            {"_id": pool_id, "system": system_id, "name": req.params["name"], "nodes": keys},
        )
        self._move_nodes(batch, system_id, pool_id, keys)
        await self.store.make_changes(batch)
        logger.info("Pool created", extra={"pool": req.params["name"], "nodes": len(keys)})

    async def create_cloud_pool(self, req: RpcRequest) -> None:
        connection_name = req.params["connection"]
        connections = (req.account or {}).get("external_connections") or []
        connection = next((c for c in connections if c.get("name") == connection_name), None)
        if connection is None:
            raise NotFoundError(
                "External connection not found",
                resource_type="external_connection",
                resource_id=connection_name,
            )
        cloud_info = {
            "endpoint": connection.get("endpoint", ""),
            "endpoint_type": connection.get("endpoint_type", "AWS"),
            "target_bucket": req.params["target_bucket"],
            "connection": connection_name,
        }
        if connection.get("access_key"):
            cloud_info["access_key"] = connection["access_key"]
        await self.store.make_changes(
            {
                "insert": {
                    "pools": [
                        {
                            "_id": self.store.generate_id(),
                            "system": req.system["_id"],
                            "name": req.params["name"],
                            "nodes": [],
                            "cloud_pool_info": cloud_info,
                        }
                    ]
                }
            }
        )

    async def update_pool(self, req: RpcRequest) -> None:
        pool = self._pool(req)
        new_name = req.params.get("new_name")
        if not new_name or new_name == pool["name"]:
            return
        await self.store.make_changes({"update": {"pools": [{"_id": pool["_id"], "name": new_name}]}})

    async def list_pool_nodes(self, req: RpcRequest) -> dict[str, Any]:
        pool = self._pool(req)
        return {"name": pool["name"], "nodes": [{"name": n} for n in pool.get("nodes", [])]}

    async def read_pool(self, req: RpcRequest) -> dict[str, Any]:
        pool = self._pool(req)
        aggregate = await self.nodes.aggregate_nodes_by_pool(
            [pool["name"]], req.system["_id"], False, req.auth_token
        )
        group = ((aggregate or {}).get("groups") or {}).get(pool["name"]) or {}
        info: dict[str, Any] = {
            "name": pool["name"],
            "nodes": {"count": 0, "online": 0, "has_issues": 0, **(group.get("nodes") or {})},
            "storage": {
                "total": 0,
                "free": 0,
                "unavailable_free": 0,
                "alloc": 0,
                "real": 0,
                **(group.get("storage") or {}),
            },
        }
        undeletable = pool_undeletable(self.store.data, pool)
        if undeletable:
            info["undeletable"] = undeletable
        if pool.get("demo_pool"):
            info["demo_pool"] = True
        if pool.get("cloud_pool_info"):
            info["cloud_info"] = {
                "endpoint": pool["cloud_pool_info"].get("endpoint", ""),
                "target_bucket": pool["cloud_pool_info"].get("target_bucket", ""),
            }
        return info

    async def delete_pool(self, req: RpcRequest) -> None:
        pool = self._pool(req)
        reason = pool_undeletable(self.store.data, pool)
        if reason:
            raise ValidationError(
                f"Pool {pool['name']} cannot be deleted",
                errors=[f"pool is {reason.lower().replace('_', ' ')}"],
                details={"reason": reason},
            )
        await self.store.make_changes({"remove": {"pools": [pool["_id"]]}})

    async def assign_nodes_to_pool(self, req: RpcRequest) -> None:
        pool = self._pool(req)
        keys = [node_key(n) for n in req.params.get("nodes", [])]
        if not keys:
            return
        current = list(pool.get("nodes", []))
        merged = current + [k for k in keys if k not in current]
        batch = ChangeBatch().add_update("pools", {"_id": pool["_id"], "nodes": merged})
        self._move_nodes(batch, req.system["_id"], pool["_id"], keys)
        await self.store.make_changes(batch)

    async def get_associated_buckets(self, req: RpcRequest) -> list[str]:
        pool = self._pool(req)
        data = self.store.data
        system_id = req.system["_id"]
        tier_ids = {
            t["_id"] for t in data.system_docs("tiers", system_id) if pool["_id"] in t.get("pools", [])
        }
        policy_ids = {
            p["_id"]
            for p in data.system_docs("tieringpolicies", system_id)
            if any(entry["tier"] in tier_ids for entry in p.get("tiers", []))
        }
        return sorted(
            b["name"] for b in data.system_docs("buckets", system_id) if b["tiering"] in policy_ids
        )
