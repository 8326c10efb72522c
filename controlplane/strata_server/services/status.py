"""
Status view of one system (``system_api.read_system``).

The composer reads the config snapshot once, then fans out to the node,
object and cloud-sync readers and to ``account_api.list_accounts`` in
parallel, and folds everything into a single reply.

Invariants:
    - All config-derived fields come from one snapshot
    - Counts and sizes are Python ints, so sums above 2**53 stay exact
    - The object count is the unattributed count plus the counts of the
      system's own buckets
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from .pool_service import pool_undeletable

if TYPE_CHECKING:
    from ..config import ServerConfig
    from ..rpc.registry import RpcRegistry
    from ..store.config_store import ConfigStore
    from ..store.data import StoreData
    from .collaborators import CloudSyncReader, NodesAggregator, ObjectCounter

logger = logging.getLogger(__name__)

STORAGE_DEFAULTS = {"total": 0, "free": 0, "unavailable_free": 0, "alloc": 0, "real": 0}
NODES_DEFAULTS = {"count": 0, "online": 0, "has_issues": 0}
# largest integer a JSON client parsing numbers as doubles keeps exact
MAX_SAFE_INTEGER = 2**53 - 1


def versioned_resource(resource: str, version: str) -> str:
    resource = resource.replace("strata-setup", f"strata-setup-{version}")
    return resource.replace("strata-s3rest", f"strata-s3rest-{version}")


def get_system_web_links(system: dict[str, Any], version: str) -> dict[str, str]:
    """Public download links of the system's installer resources."""
    links = {}
    for key, value in (system.get("resources") or {}).items():
        if isinstance(value, str) and value:
            links[key] = "/public/" + versioned_resource(value, version)
    return links


def default_base_address(host: str, ssl_port: int) -> str:
    return f"wss://{host}:{ssl_port}"


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _storage(aggregate: dict[str, Any] | None) -> dict[str, Any]:
    storage = dict(STORAGE_DEFAULTS)
    storage.update((aggregate or {}).get("storage") or {})
    return storage


def _nodes(aggregate: dict[str, Any] | None) -> dict[str, Any]:
    nodes = dict(NODES_DEFAULTS)
    nodes.update((aggregate or {}).get("nodes") or {})
    return nodes


class SystemStatusComposer:
    """Builds the ``read_system`` reply.

    Example:
        >>> composer = SystemStatusComposer(store, nodes, objects, cloud_sync, registry, config)
        >>> info = await composer.compose(req.system, req.auth_token)
    """

    def __init__(
        self,
        store: ConfigStore,
        nodes: NodesAggregator,
        objects: ObjectCounter,
        cloud_sync: CloudSyncReader,
        registry: RpcRegistry,
        config: ServerConfig,
    ) -> None:
        self.store = store
        self.nodes = nodes
        self.objects = objects
        self.cloud_sync = cloud_sync
        self.registry = registry
        self.config = config

    async def compose(self, system: dict[str, Any], auth_token: str | None) -> dict[str, Any]:
        data = self.store.data
        system_id = system["_id"]
        system = data.get("systems", system_id) or system
        buckets = sorted(data.system_docs("buckets", system_id), key=lambda b: b["name"])

        (
            nodes_no_cloud,
            nodes_with_cloud,
            objects_count,
            cloud_syncs,
            accounts_reply,
        ) = await asyncio.gather(
            self.nodes.aggregate_nodes_by_pool(None, system_id, True, auth_token),
            self.nodes.aggregate_nodes_by_pool(None, system_id, False, auth_token),
            self.objects.aggregate_objects_count(system_id, auth_token),
            asyncio.gather(*(self.cloud_sync.get_cloud_sync(b, auth_token) for b in buckets)),
            self.registry.call(
                "account_api",
                "list_accounts",
                {},
                auth_token=auth_token,
                timeout=self.config.rpc.timeout_seconds,
            ),
        )

        objects_count = objects_count or {}
        objects = objects_count.get("", 0) + sum(objects_count.get(b["_id"], 0) for b in buckets)

        storage = _storage(nodes_no_cloud)
        storage["used"] = sum((b.get("storage_stats") or {}).get("objects_size", 0) for b in buckets)

        reply: dict[str, Any] = {
            "name": system["name"],
            "objects": objects,
            "roles": self._roles(data, system_id),
            "buckets": [
                self._bucket_info(data, b, objects_count, cloud_sync)
                for b, cloud_sync in zip(buckets, cloud_syncs)
            ],
            "pools": self._pools(data, system_id, nodes_with_cloud),
            "tiers": self._tiers(data, system_id),
            "storage": storage,
            "nodes": _nodes(nodes_no_cloud),
            "owner": self._owner(data, system),
            "last_stats_report": system.get("last_stats_report", 0),
            "maintenance_mode": self._maintenance_mode(system),
            "ssl_port": self.config.provisioning.ssl_port,
            "web_port": self.config.provisioning.web_port,
            "web_links": get_system_web_links(system, self.config.version),
            "n2n_config": dict(system.get("n2n_config") or {}),
            "remote_syslog_config": system.get("remote_syslog_config"),
            "phone_home_config": self._phone_home_config(system),
            "version": self.config.version,
            "debug_level": system.get("debug_level", 0),
            "upgrade": self._upgrade(system),
            "system_cap": self._system_cap(system),
            "cluster": self._cluster(data),
            "accounts": (accounts_reply or {}).get("accounts", []),
        }
        reply.update(self._addresses(system))
        return reply

    def _roles(self, data: StoreData, system_id: str) -> list[dict[str, Any]]:
        view = data.system_view(system_id)
        if view is None:
            return []
        out = []
        for account_id, roles in sorted(view.roles_by_account.items()):
            account = data.get("accounts", account_id)
            if account is None:
                continue
            out.append(
                {
                    "roles": sorted(roles),
                    "account": {"name": account["name"], "email": account["email"]},
                }
            )
        return out

    @staticmethod
    def _bucket_info(
        data: StoreData,
        bucket: dict[str, Any],
        objects_count: dict[str, int],
        cloud_sync: dict[str, Any] | None,
    ) -> dict[str, Any]:
        policy = data.get("tieringpolicies", bucket["tiering"])
        stats = bucket.get("storage_stats") or {}
        info: dict[str, Any] = {
            "name": bucket["name"],
            "tiering": policy["name"] if policy else None,
            "num_objects": objects_count.get(bucket["_id"], 0),
            "storage": {"used": stats.get("objects_size", 0)},
        }
        if bucket.get("demo_bucket"):
            info["demo_bucket"] = True
        if cloud_sync:
            info["cloud_sync"] = cloud_sync
        return info

    @staticmethod
    def _pools(
        data: StoreData, system_id: str, aggregate: dict[str, Any] | None
    ) -> list[dict[str, Any]]:
        groups = (aggregate or {}).get("groups") or {}
        out = []
        for pool in sorted(data.system_docs("pools", system_id), key=lambda p: p["name"]):
            group = groups.get(pool["name"])
            info: dict[str, Any] = {
                "name": pool["name"],
                "nodes": _nodes(group),
                "storage": _storage(group),
            }
            if pool.get("demo_pool"):
                info["demo_pool"] = True
            if pool.get("cloud_pool_info"):
                cloud = pool["cloud_pool_info"]
                info["cloud_info"] = {
                    "endpoint": cloud.get("endpoint", ""),
                    "target_bucket": cloud.get("target_bucket", ""),
                }
            undeletable = pool_undeletable(data, pool)
            if undeletable:
                info["undeletable"] = undeletable
            out.append(info)
        return out

    @staticmethod
    def _tiers(data: StoreData, system_id: str) -> list[dict[str, Any]]:
        out = []
        for tier in sorted(data.system_docs("tiers", system_id), key=lambda t: t["name"]):
            pools = [data.get("pools", p) for p in tier.get("pools", [])]
            out.append(
                {
                    "name": tier["name"],
                    "pools": [p["name"] for p in pools if p],
                    "data_placement": tier.get("data_placement", "SPREAD"),
                }
            )
        return out

    @staticmethod
    def _owner(data: StoreData, system: dict[str, Any]) -> dict[str, Any] | None:
        owner = data.get("accounts", system.get("owner"))
        if owner is None:
            return None
        return {"name": owner["name"], "email": owner["email"]}

    @staticmethod
    def _maintenance_mode(system: dict[str, Any]) -> dict[str, Any]:
        now_ms = int(time.time() * 1000)
        till = system.get("maintenance_mode")
        if till and till > now_ms:
            return {"state": True, "till": till}
        return {"state": False}

    @staticmethod
    def _phone_home_config(system: dict[str, Any]) -> dict[str, Any]:
        cap = system.get("freemium_cap") or {}
        config: dict[str, Any] = {
            "upgraded_cap_notification": bool(
                cap.get("phone_home_upgraded") and not cap.get("phone_home_notified")
            ),
        }
        if cap.get("phone_home_unable_comm"):
            config["phone_home_unable_comm"] = True
        if system.get("phone_home_proxy_address"):
            config["proxy_address"] = system["phone_home_proxy_address"]
        return config

    @staticmethod
    def _upgrade(system: dict[str, Any]) -> dict[str, str]:
        upgrade = system.get("upgrade")
        if not upgrade:
            return {"status": "UNAVAILABLE", "message": ""}
        return {
            "status": upgrade.get("status", "UNAVAILABLE"),
            "message": upgrade.get("error", ""),
        }

    @staticmethod
    def _system_cap(system: dict[str, Any]) -> int:
        cap = (system.get("freemium_cap") or {}).get("cap_terabytes")
        return cap if cap else MAX_SAFE_INTEGER

    def _cluster(self, data: StoreData) -> dict[str, Any]:
        local = self.store.get_local_cluster_info()
        info: dict[str, Any] = {"members": data.count("clusters")}
        if local is not None:
            info.update(
                {
                    "cluster_id": local.get("cluster_id", ""),
                    "owner_address": local.get("owner_address", ""),
                    "debug_level": local.get("debug_level", 0),
                }
            )
            if local.get("dns_servers"):
                info["dns_servers"] = list(local["dns_servers"])
            if local.get("timezone"):
                info["timezone"] = local["timezone"]
        return info

    def _addresses(self, system: dict[str, Any]) -> dict[str, str]:
        node_address = self.config.cluster.node_address
        base_address = system.get("base_address") or default_base_address(
            node_address, self.config.provisioning.ssl_port
        )
        out = {"base_address": base_address, "ip_address": node_address}
        host = urlsplit(base_address).hostname
        if host and system.get("base_address"):
            if _is_ip(host):
                out["ip_address"] = host
            else:
                out["dns_name"] = host
        return out
