"""
Integration tests for the create_system provisioning saga.

Runs system_api.create_system through the registry with the real store,
account service and status composer; license server and remote peers are
fakes.

Tests cover:
- Happy path (documents, owner account, token, activity)
- Demo mode and optional configuration steps
- Capacity limit
- License failures before anything is committed
- Partial failures after commit
"""

import asyncio
import dataclasses

import pytest

from controlplane.strata_server.config import RpcConfig
from controlplane.strata_server.errors import (
    ExternalDependencyError,
    FatalPartialFailureError,
    ResourceLimitError,
    ValidationError,
)
from tests.conftest import build_platform, make_config


class TestCreateSystem:
    """Happy-path provisioning."""

    @pytest.mark.asyncio
    async def test_creates_tenant_graph_and_owner(self, platform):
        token = await platform.create_system("alpha", "owner@example.com")

        data = platform.store.data
        system = data.systems_by_name["alpha"]
        view = data.system_view(system["_id"])
        owner = data.find_account_by_email("owner@example.com")

        assert set(view.pools_by_name) == {"default_pool"}
        assert set(view.buckets_by_name) == {"files"}
        assert system["owner"] == owner["_id"]
        assert view.roles_by_account == {owner["_id"]: ["admin"]}
        assert owner["allowed_buckets"] == [view.buckets_by_name["files"]["_id"]]
        assert owner["password"] != "pa55word"

        session = platform.sessions.resolve(token)
        assert session.account["_id"] == owner["_id"]
        assert session.system["_id"] == system["_id"]

    @pytest.mark.asyncio
    async def test_registers_local_cluster_member_once(self, platform):
        await platform.create_system("alpha", "a@example.com")
        await platform.create_system("beta", "b@example.com")

        clusters = platform.store.data.clusters
        assert len(clusters) == 1
        assert clusters[0]["owner_address"] == "10.0.0.5"
        assert platform.store.get_local_cluster_info() is not None

    @pytest.mark.asyncio
    async def test_license_gets_system_info_without_credentials(self, platform):
        await platform.create_system(
            "alpha",
            "owner@example.com",
            activation_code="ABC-123",
            access_keys=[{"access_key": "AK", "secret_key": "SK"}],
        )

        code, email, info = platform.license.activations[0]
        assert code == "ABC-123"
        assert email == "owner@example.com"
        assert info["name"] == "alpha"
        assert "password" not in info
        assert "access_keys" not in info

    @pytest.mark.asyncio
    async def test_supplied_access_keys_are_kept(self, platform):
        await platform.create_system(
            "alpha", "owner@example.com", access_keys=[{"access_key": "AK", "secret_key": "SK"}]
        )
        owner = platform.store.data.find_account_by_email("owner@example.com")
        assert owner["access_keys"] == [{"access_key": "AK", "secret_key": "SK"}]

    @pytest.mark.asyncio
    async def test_records_activity(self, platform):
        token = await platform.create_system("alpha", "owner@example.com")

        reply = await platform.call("system_api", "read_activity_log", {}, token)

        assert [log["event"] for log in reply["logs"]] == ["conf.create_system"]
        assert reply["logs"][0]["desc"] == ["alpha was created by owner@example.com"]
        assert reply["logs"][0]["actor"] == {"email": "owner@example.com"}

    @pytest.mark.asyncio
    async def test_no_remote_calls_without_options(self, platform):
        await platform.create_system("alpha", "owner@example.com")
        assert platform.transport.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_creations(self, platform):
        await asyncio.gather(
            platform.create_system("alpha", "a@example.com"),
            platform.create_system("beta", "b@example.com"),
        )
        assert set(platform.store.data.systems_by_name) == {"alpha", "beta"}


class TestCreateSystemOptions:
    """Demo mode and the optional configuration steps."""

    @pytest.mark.asyncio
    async def test_demo_mode(self, store, data_dir):
        platform = build_platform(store, make_config(data_dir, demo_enabled=True, num_demo_nodes=2))

        token = await platform.create_system("alpha", "owner@example.com")

        data = store.data
        view = data.system_view(data.systems_by_name["alpha"]["_id"])
        assert set(view.pools_by_name) == {"default_pool", "demo_pool"}
        assert view.pools_by_name["demo_pool"]["demo_pool"] is True
        assert view.buckets_by_name["demo_bucket"]["demo_bucket"] is True
        owner = data.find_account_by_email("owner@example.com")
        assert len(owner["allowed_buckets"]) == 2

        [(_, _, params, auth_token)] = platform.transport.called("hosted_agents_api.create_agent")
        assert params["scale"] == 2
        assert params["demo"] is True
        assert params["access_keys"] == owner["access_keys"]
        assert auth_token == token

    @pytest.mark.asyncio
    async def test_time_dns_and_hostname(self, platform):
        token = await platform.create_system(
            "alpha",
            "owner@example.com",
            time_config={"timezone": "UTC", "ntp_server": "pool.ntp.org"},
            dns_servers=["8.8.8.8"],
            dns_name="s3.example.com",
        )

        [(_, _, time_params, time_token)] = platform.transport.called(
            "cluster_server_api.update_time_config"
        )
        assert time_params == {
            "timezone": "UTC",
            "ntp_server": "pool.ntp.org",
            "target_secret": "test-secret",
        }
        assert time_token == token

        [(_, _, dns_params, _)] = platform.transport.called("cluster_server_api.update_dns_servers")
        assert dns_params["dns_servers"] == ["8.8.8.8"]

        system = platform.store.data.systems_by_name["alpha"]
        assert system["base_address"] == "wss://s3.example.com:8443"
        assert platform.store.get_local_cluster_info()["owner_address"] == "s3.example.com"
        assert platform.transport.called("node_api.sync_monitor_to_store")


class TestCreateSystemFailures:
    """Failures before and after the commit."""

    @pytest.mark.asyncio
    async def test_capacity_limit(self, store, data_dir):
        platform = build_platform(store, make_config(data_dir, max_systems=1))
        await platform.create_system("a", "a@example.com")
        await platform.create_system("b", "b@example.com")

        with pytest.raises(ResourceLimitError) as exc_info:
            await platform.create_system("c", "c@example.com")

        assert exc_info.value.code == "RESOURCE_LIMIT"
        assert set(store.data.systems_by_name) == {"a", "b"}
        assert store.data.find_account_by_email("c@example.com") is None

    @pytest.mark.asyncio
    async def test_license_refusal_commits_nothing(self, platform):
        platform.license.fail_with = ExternalDependencyError("Activation code is not valid")

        with pytest.raises(ExternalDependencyError) as exc_info:
            await platform.create_system("alpha", "owner@example.com")

        assert exc_info.value.message == "Activation code is not valid"
        assert platform.store.revision == 0
        assert len(platform.activity_log) == 0

    @pytest.mark.asyncio
    async def test_license_timeout_is_external_dependency(self, platform):
        platform.license.fail_with = asyncio.TimeoutError()

        with pytest.raises(ExternalDependencyError):
            await platform.create_system("alpha", "owner@example.com")
        assert platform.store.revision == 0

    @pytest.mark.asyncio
    async def test_unexpected_license_error_is_wrapped(self, platform):
        platform.license.fail_with = RuntimeError("boom")

        with pytest.raises(ExternalDependencyError) as exc_info:
            await platform.create_system("alpha", "owner@example.com")
        assert "boom" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_duplicate_email_commits_nothing(self, platform):
        await platform.create_system("alpha", "owner@example.com")
        revision = platform.store.revision

        with pytest.raises(ValidationError):
            await platform.create_system("beta", "OWNER@example.com")

        assert platform.store.revision == revision
        assert "beta" not in platform.store.data.systems_by_name

    @pytest.mark.asyncio
    async def test_duplicate_name_commits_nothing(self, platform):
        await platform.create_system("alpha", "a@example.com")
        revision = platform.store.revision

        with pytest.raises(ValidationError):
            await platform.create_system("alpha", "b@example.com")

        assert platform.store.revision == revision

    @pytest.mark.asyncio
    async def test_invalid_params_never_reach_the_saga(self, platform):
        with pytest.raises(ValidationError):
            await platform.call("system_api", "create_system", {"name": "alpha", "email": "a@b.c"})
        assert platform.license.activations == []

    @pytest.mark.asyncio
    async def test_failure_after_commit_is_fatal_partial(self, store, data_dir):
        platform = build_platform(store, make_config(data_dir, demo_enabled=True))
        platform.transport.failures["hosted_agents_api.create_agent"] = ExternalDependencyError(
            "agents host down"
        )

        with pytest.raises(FatalPartialFailureError) as exc_info:
            await platform.create_system("alpha", "owner@example.com")

        err = exc_info.value
        system = store.data.systems_by_name["alpha"]
        assert err.system_id == system["_id"]
        assert err.system_name == "alpha"
        assert err.failed_step == "create_demo_agents"
        assert err.completed_steps[-2:] == ["commit", "create_account"]
        assert err.details["cause"] == "agents host down"
        # committed state stays; the owner account exists
        assert store.data.find_account_by_email("owner@example.com") is not None

    @pytest.mark.asyncio
    async def test_timeout_after_commit_is_fatal_partial(self, store, data_dir):
        config = dataclasses.replace(make_config(data_dir), rpc=RpcConfig(timeout_seconds=0.05))
        platform = build_platform(store, config)
        platform.transport.delays["cluster_server_api.update_dns_servers"] = 1

        with pytest.raises(FatalPartialFailureError) as exc_info:
            await platform.create_system("alpha", "owner@example.com", dns_servers=["1.1.1.1"])

        assert exc_info.value.failed_step == "configure_dns"
        assert exc_info.value.details["cause"] == "timeout"
        assert "alpha" in store.data.systems_by_name
