"""
Integration tests for pool_api.

Tests cover:
- Node pools: create, assign (moving nodes between pools), list, rename
- Deletion guards (IN_USE, NOT_EMPTY)
- Cloud pools from the account's external connections
- Associated buckets
"""

import pytest

from controlplane.strata_server.errors import NotFoundError, ValidationError


@pytest.fixture
async def token(platform):
    return await platform.create_system("alpha", "owner@example.com")


def pool_nodes(platform, name):
    system = platform.store.data.systems_by_name["alpha"]
    return platform.store.data.system_view(system["_id"]).pools_by_name[name]["nodes"]


class TestNodePools:
    """Tests for pools of storage nodes."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, platform, token):
        await platform.call(
            "pool_api", "create_nodes_pool", {"name": "fast", "nodes": [{"name": "n1"}, {"id": "n2"}]}, token
        )

        reply = await platform.call("pool_api", "list_pool_nodes", {"name": "fast"}, token)

        assert reply == {"name": "fast", "nodes": [{"name": "n1"}, {"name": "n2"}]}

    @pytest.mark.asyncio
    async def test_new_pool_takes_nodes_from_other_pools(self, platform, token):
        await platform.call(
            "pool_api", "create_nodes_pool", {"name": "fast", "nodes": [{"name": "n1"}, {"name": "n2"}]}, token
        )

        await platform.call("pool_api", "create_nodes_pool", {"name": "slow", "nodes": [{"name": "n2"}]}, token)

        assert pool_nodes(platform, "fast") == ["n1"]
        assert pool_nodes(platform, "slow") == ["n2"]

    @pytest.mark.asyncio
    async def test_assign_moves_nodes(self, platform, token):
        await platform.call(
            "pool_api", "create_nodes_pool", {"name": "fast", "nodes": [{"name": "n1"}, {"name": "n2"}]}, token
        )
        revision = platform.store.revision

        await platform.call(
            "pool_api", "assign_nodes_to_pool", {"name": "default_pool", "nodes": [{"name": "n2"}]}, token
        )

        assert platform.store.revision == revision + 1
        assert pool_nodes(platform, "fast") == ["n1"]
        assert pool_nodes(platform, "default_pool") == ["n2"]

    @pytest.mark.asyncio
    async def test_duplicate_name_in_system(self, platform, token):
        with pytest.raises(ValidationError):
            await platform.call("pool_api", "create_nodes_pool", {"name": "default_pool", "nodes": []}, token)

    @pytest.mark.asyncio
    async def test_rename(self, platform, token):
        await platform.call("pool_api", "create_nodes_pool", {"name": "fast", "nodes": []}, token)

        await platform.call("pool_api", "update_pool", {"name": "fast", "new_name": "faster"}, token)

        reply = await platform.call("pool_api", "list_pool_nodes", {"name": "faster"}, token)
        assert reply["nodes"] == []
        with pytest.raises(NotFoundError):
            await platform.call("pool_api", "read_pool", {"name": "fast"}, token)


class TestReadPool:
    """Tests for read_pool."""

    @pytest.mark.asyncio
    async def test_aggregates_and_undeletable_reason(self, platform, token):
        platform.nodes.with_cloud = {
            "groups": {"default_pool": {"nodes": {"count": 2, "online": 1}, "storage": {"total": 64}}}
        }

        info = await platform.call("pool_api", "read_pool", {"name": "default_pool"}, token)

        assert info["name"] == "default_pool"
        assert info["nodes"] == {"count": 2, "online": 1, "has_issues": 0}
        assert info["storage"]["total"] == 64
        assert info["storage"]["free"] == 0
        assert info["undeletable"] == "IN_USE"
        system = platform.store.data.systems_by_name["alpha"]
        assert platform.nodes.calls[-1] == (["default_pool"], system["_id"], False)

    @pytest.mark.asyncio
    async def test_not_empty(self, platform, token):
        await platform.call("pool_api", "create_nodes_pool", {"name": "fast", "nodes": [{"name": "n1"}]}, token)

        info = await platform.call("pool_api", "read_pool", {"name": "fast"}, token)

        assert info["undeletable"] == "NOT_EMPTY"


class TestDeletePool:
    """Tests for delete_pool."""

    @pytest.mark.asyncio
    async def test_pool_used_by_a_tier(self, platform, token):
        with pytest.raises(ValidationError) as exc_info:
            await platform.call("pool_api", "delete_pool", {"name": "default_pool"}, token)
        assert exc_info.value.details["reason"] == "IN_USE"

    @pytest.mark.asyncio
    async def test_pool_with_nodes(self, platform, token):
        await platform.call("pool_api", "create_nodes_pool", {"name": "fast", "nodes": [{"name": "n1"}]}, token)

        with pytest.raises(ValidationError) as exc_info:
            await platform.call("pool_api", "delete_pool", {"name": "fast"}, token)
        assert exc_info.value.details["reason"] == "NOT_EMPTY"

    @pytest.mark.asyncio
    async def test_empty_pool(self, platform, token):
        await platform.call("pool_api", "create_nodes_pool", {"name": "fast", "nodes": []}, token)

        await platform.call("pool_api", "delete_pool", {"name": "fast"}, token)

        system = platform.store.data.systems_by_name["alpha"]
        assert "fast" not in platform.store.data.system_view(system["_id"]).pools_by_name


class TestCloudPools:
    """Tests for create_cloud_pool."""

    @pytest.mark.asyncio
    async def test_unknown_connection(self, platform, token):
        with pytest.raises(NotFoundError):
            await platform.call(
                "pool_api",
                "create_cloud_pool",
                {"name": "cloud", "connection": "aws", "target_bucket": "backup"},
                token,
            )

    @pytest.mark.asyncio
    async def test_from_external_connection(self, platform, token):
        owner = platform.store.data.find_account_by_email("owner@example.com")
        connection = {
            "name": "aws",
            "endpoint": "https://s3.amazonaws.com",
            "endpoint_type": "AWS",
            "access_key": "AK",
        }
        await platform.store.make_changes(
            {"update": {"accounts": [{"_id": owner["_id"], "external_connections": [connection]}]}}
        )

        await platform.call(
            "pool_api",
            "create_cloud_pool",
            {"name": "cloud", "connection": "aws", "target_bucket": "backup"},
            token,
        )
        info = await platform.call("pool_api", "read_pool", {"name": "cloud"}, token)

        assert info["cloud_info"] == {"endpoint": "https://s3.amazonaws.com", "target_bucket": "backup"}
        assert "undeletable" not in info


class TestAssociatedBuckets:
    @pytest.mark.asyncio
    async def test_buckets_through_tiers_and_policies(self, platform, token):
        await platform.call("pool_api", "create_nodes_pool", {"name": "fast", "nodes": []}, token)

        assert await platform.call(
            "pool_api", "get_associated_buckets", {"name": "default_pool"}, token
        ) == ["files"]
        assert await platform.call("pool_api", "get_associated_buckets", {"name": "fast"}, token) == []
