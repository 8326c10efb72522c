"""
Unit tests for default tenant documents.
"""

import pytest

from controlplane.strata_server.services.defaults import (
    DEFAULT_BUCKET_NAME,
    DEFAULT_POOL_NAME,
    name_suffix,
    new_cluster_info,
    new_system_changes,
)
from controlplane.strata_server.store import is_valid_id


class TestNameSuffix:
    def test_base36_of_milliseconds(self):
        assert name_suffix(0) == "#0"
        assert name_suffix(35) == "#z"
        assert name_suffix(36) == "#10"
        assert name_suffix(36**3 + 35) == "#100z"
        assert name_suffix(1704164645678) == "#lqvrmo8e"

    def test_defaults_to_now(self):
        assert name_suffix().startswith("#")


class TestNewSystemChanges:
    """Tests for the tenant graph builder."""

    @pytest.mark.asyncio
    async def test_default_set(self, store):
        owner = store.generate_id()
        graph = new_system_changes(store, "alpha", owner)

        assert graph.system["name"] == "alpha"
        assert graph.system["owner"] == owner
        assert is_valid_id(graph.system["_id"])
        assert [p["name"] for p in graph.pools] == [DEFAULT_POOL_NAME]
        assert [b["name"] for b in graph.buckets] == [DEFAULT_BUCKET_NAME]

        tier, policy, bucket = graph.tiers[0], graph.policies[0], graph.buckets[0]
        assert tier["name"].startswith(DEFAULT_BUCKET_NAME + "#")
        assert policy["name"] == tier["name"]
        assert tier["pools"] == [graph.pools[0]["_id"]]
        assert policy["tiers"] == [{"tier": tier["_id"], "order": 0}]
        assert bucket["tiering"] == policy["_id"]
        assert graph.allowed_buckets == [bucket["_id"]]
        assert "demo_pool" not in graph.pools[0]

    @pytest.mark.asyncio
    async def test_demo_set(self, store):
        graph = new_system_changes(
            store, "alpha", store.generate_id(), demo_enabled=True, demo_pool_name="dp", demo_bucket_name="db"
        )

        assert [p["name"] for p in graph.pools] == [DEFAULT_POOL_NAME, "dp"]
        assert [b["name"] for b in graph.buckets] == [DEFAULT_BUCKET_NAME, "db"]
        assert graph.pools[1]["demo_pool"] is True
        assert graph.buckets[1]["demo_bucket"] is True
        assert len(graph.allowed_buckets) == 2

    @pytest.mark.asyncio
    async def test_system_defaults(self, store):
        system = new_system_changes(store, "alpha", store.generate_id()).system

        assert system["debug_level"] == 0
        assert system["n2n_config"]["tcp_permanent_passive"] == {"min": 60100, "max": 60600}
        assert system["freemium_cap"]["cap_terabytes"] == 20
        assert system["upgrade"]["status"] == "UNAVAILABLE"
        assert set(system["resources"]) == {"agent_installer", "s3rest_installer", "linux_agent_installer"}

    @pytest.mark.asyncio
    async def test_graph_commits_as_one_batch(self, store):
        graph = new_system_changes(store, "alpha", store.generate_id(), demo_enabled=True)

        await store.make_changes(graph.to_batch())

        assert store.revision == 1
        view = store.data.system_view(graph.system["_id"])
        assert set(view.pools_by_name) == {DEFAULT_POOL_NAME, "demo_pool"}
        assert set(view.buckets_by_name) == {DEFAULT_BUCKET_NAME, "demo_bucket"}

    def test_cluster_info(self):
        info = new_cluster_info("c" * 24, "secret", "10.0.0.5")
        assert info["owner_address"] == "10.0.0.5"
        assert info["debug_level"] == 0
        assert len(info["cluster_id"]) == 36
