"""
Default documents for new tenants.

These builders only shape documents; ids come from the config store so a
whole tenant graph can be cross-referenced before anything is committed.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..store.changes import ChangeBatch

if TYPE_CHECKING:
    from ..store.config_store import ConfigStore

DEFAULT_POOL_NAME = "default_pool"
DEFAULT_BUCKET_NAME = "files"

AGENT_INSTALLER = "strata-setup.exe"
S3REST_INSTALLER = "strata-s3rest.exe"
LINUX_AGENT_INSTALLER = "strata-setup"

N2N_PASSIVE_PORT_MIN = 60100
N2N_PASSIVE_PORT_MAX = 60600
FREEMIUM_CAP_TERABYTES = 20


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
        if value == 0:
            return out


def name_suffix(now_ms: int | None = None) -> str:
    """``#<ms since epoch in base 36>``, appended to tier and policy names."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return "#" + _base36(now_ms)


def new_system_defaults(system_id: str, name: str, owner_account_id: str) -> dict[str, Any]:
    return {
        "_id": system_id,
        "name": name,
        "owner": owner_account_id,
        "resources": {
            "agent_installer": AGENT_INSTALLER,
            "s3rest_installer": S3REST_INSTALLER,
            "linux_agent_installer": LINUX_AGENT_INSTALLER,
        },
        "n2n_config": {
            "tcp_tls": True,
            "tcp_active": True,
            "tcp_permanent_passive": {
                "min": N2N_PASSIVE_PORT_MIN,
                "max": N2N_PASSIVE_PORT_MAX,
            },
            "udp_dtls": True,
            "udp_port": True,
        },
        "debug_level": 0,
        "upgrade": {"path": "", "status": "UNAVAILABLE", "error": ""},
        "last_stats_report": 0,
        "freemium_cap": {
            "phone_home_upgraded": False,
            "phone_home_notified": False,
            "cap_terabytes": FREEMIUM_CAP_TERABYTES,
        },
    }


def new_pool_defaults(pool_id: str, name: str, system_id: str) -> dict[str, Any]:
    return {"_id": pool_id, "system": system_id, "name": name, "nodes": []}


def new_tier_defaults(tier_id: str, name: str, system_id: str, pool_ids: list[str]) -> dict[str, Any]:
    return {
        "_id": tier_id,
        "system": system_id,
        "name": name,
        "pools": list(pool_ids),
        "data_placement": "SPREAD",
        "replicas": 3,
    }


def new_policy_defaults(
    policy_id: str, name: str, system_id: str, tiers: list[dict[str, Any]]
) -> dict[str, Any]:
    return {"_id": policy_id, "system": system_id, "name": name, "tiers": list(tiers)}


def new_bucket_defaults(bucket_id: str, name: str, system_id: str, policy_id: str) -> dict[str, Any]:
    return {
        "_id": bucket_id,
        "system": system_id,
        "name": name,
        "tiering": policy_id,
        "storage_stats": {
            "chunks_capacity": 0,
            "objects_size": 0,
            "objects_count": 0,
            "last_update": int(time.time() * 1000),
        },
    }


def new_cluster_info(cluster_id: str, owner_secret: str, owner_address: str) -> dict[str, Any]:
    return {
        "_id": cluster_id,
        "owner_secret": owner_secret,
        "cluster_id": str(uuid.uuid4()),
        "owner_address": owner_address,
        "debug_level": 0,
    }


@dataclass
class TenantGraph:
    """Documents of one new tenant, ready to commit.

    Attributes:
        system: The system document
        pools/tiers/policies/buckets: Default set first, then the demo set
        allowed_buckets: Bucket ids the owner account may access
    """

    system: dict[str, Any]
    pools: list[dict[str, Any]] = field(default_factory=list)
    tiers: list[dict[str, Any]] = field(default_factory=list)
    policies: list[dict[str, Any]] = field(default_factory=list)
    buckets: list[dict[str, Any]] = field(default_factory=list)

    @property
    def allowed_buckets(self) -> list[str]:
        return [b["_id"] for b in self.buckets]

    def to_batch(self) -> ChangeBatch:
        batch = ChangeBatch()
        batch.insert["systems"] = [self.system]
        batch.insert["pools"] = list(self.pools)
        batch.insert["tiers"] = list(self.tiers)
        batch.insert["tieringpolicies"] = list(self.policies)
        batch.insert["buckets"] = list(self.buckets)
        return batch


def _add_bucket_set(
    graph: TenantGraph,
    store: ConfigStore,
    pool_name: str,
    bucket_name: str,
    suffix: str,
    demo: bool,
) -> None:
    system_id = graph.system["_id"]
    pool = new_pool_defaults(store.generate_id(), pool_name, system_id)
    tier = new_tier_defaults(store.generate_id(), bucket_name + suffix, system_id, [pool["_id"]])
    policy = new_policy_defaults(
        store.generate_id(), bucket_name + suffix, system_id, [{"tier": tier["_id"], "order": 0}]
    )
    bucket = new_bucket_defaults(store.generate_id(), bucket_name, system_id, policy["_id"])
    if demo:
        pool["demo_pool"] = True
        bucket["demo_bucket"] = True
    graph.pools.append(pool)
    graph.tiers.append(tier)
    graph.policies.append(policy)
    graph.buckets.append(bucket)


def new_system_changes(
    store: ConfigStore,
    name: str,
    owner_account_id: str,
    demo_enabled: bool = False,
    demo_pool_name: str = "demo_pool",
    demo_bucket_name: str = "demo_bucket",
) -> TenantGraph:
    """Build a tenant graph: System, default Pool/Tier/Policy/Bucket and,
    when ``demo_enabled``, a demo-flagged set of the same shape."""
    suffix = name_suffix()
    graph = TenantGraph(system=new_system_defaults(store.generate_id(), name, owner_account_id))
    _add_bucket_set(graph, store, DEFAULT_POOL_NAME, DEFAULT_BUCKET_NAME, suffix, demo=False)
    if demo_enabled:
        _add_bucket_set(graph, store, demo_pool_name, demo_bucket_name, suffix, demo=True)
    return graph
