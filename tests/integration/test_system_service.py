"""
Integration tests for system_api beyond create_system.

Tests cover:
- read_system status view
- list_systems visibility
- Role management
- Network, phone-home and syslog settings
- Activity log export, diagnostics and activation checks
- delete_system cascade
"""

import os
import tarfile
import time

import pytest

from controlplane.strata_server.errors import (
    AuthError,
    ExternalDependencyError,
    NotFoundError,
    ValidationError,
)
from controlplane.strata_server.services.activity_log import CSV_HEADER, ActivityQuery


@pytest.fixture
async def token(platform):
    """Session token of the owner of system "alpha"."""
    return await platform.create_system("alpha", "owner@example.com")


@pytest.fixture
def alpha(platform, token):
    return platform.store.data.systems_by_name["alpha"]


async def add_member(platform, token, email="member@example.com"):
    reply = await platform.call(
        "account_api",
        "create_account",
        {"name": "member", "email": email, "password": "pw"},
        token,
    )
    return reply["token"]


async def add_support_account(platform):
    account_id = platform.store.generate_id()
    await platform.store.make_changes(
        {
            "insert": {
                "accounts": [
                    {
                        "_id": account_id,
                        "name": "support",
                        "email": "support@example.com",
                        "is_support": True,
                    }
                ]
            }
        }
    )
    return account_id


class TestReadSystem:
    """Tests for the read_system status view."""

    @pytest.mark.asyncio
    async def test_defaults_of_a_new_system(self, platform, token):
        info = await platform.call("system_api", "read_system", {}, token)

        assert info["name"] == "alpha"
        assert info["objects"] == 0
        assert info["owner"] == {"name": "alpha", "email": "owner@example.com"}
        assert info["roles"] == [
            {"roles": ["admin"], "account": {"name": "alpha", "email": "owner@example.com"}}
        ]
        assert [b["name"] for b in info["buckets"]] == ["files"]
        assert info["buckets"][0]["tiering"].startswith("files#")
        assert info["pools"][0]["name"] == "default_pool"
        assert info["pools"][0]["undeletable"] == "IN_USE"
        assert info["maintenance_mode"] == {"state": False}
        assert info["upgrade"] == {"status": "UNAVAILABLE", "message": ""}
        assert info["system_cap"] == 20
        assert info["version"] == "0.4.0"
        assert info["cluster"]["members"] == 1
        assert [a["email"] for a in info["accounts"]] == ["owner@example.com"]

    @pytest.mark.asyncio
    async def test_phone_home_unable_comm_reported(self, platform, token, alpha):
        info = await platform.call("system_api", "read_system", {}, token)
        assert "phone_home_unable_comm" not in info["phone_home_config"]

        cap = dict(alpha["freemium_cap"], phone_home_unable_comm=True)
        await platform.store.make_changes(
            {"update": {"systems": [{"_id": alpha["_id"], "freemium_cap": cap}]}}
        )
        info = await platform.call("system_api", "read_system", {}, token)

        assert info["phone_home_config"]["phone_home_unable_comm"] is True

    @pytest.mark.asyncio
    async def test_uncapped_system_reports_max_safe_integer(self, platform, token, alpha):
        await platform.store.make_changes(
            {"update": {"systems": [{"_id": alpha["_id"], "$unset": {"freemium_cap": 1}}]}}
        )

        info = await platform.call("system_api", "read_system", {}, token)

        assert info["system_cap"] == 2**53 - 1

    @pytest.mark.asyncio
    async def test_addresses_and_web_links(self, platform, token):
        info = await platform.call("system_api", "read_system", {}, token)

        assert info["base_address"] == "wss://10.0.0.5:8443"
        assert info["ip_address"] == "10.0.0.5"
        assert "dns_name" not in info
        assert info["ssl_port"] == 8443
        assert info["web_links"] == {
            "agent_installer": "/public/strata-setup-0.4.0.exe",
            "s3rest_installer": "/public/strata-s3rest-0.4.0.exe",
            "linux_agent_installer": "/public/strata-setup-0.4.0",
        }

    @pytest.mark.asyncio
    async def test_object_count_is_exact_above_two_to_the_53(self, platform, token, alpha):
        bucket = platform.store.data.system_view(alpha["_id"]).buckets_by_name["files"]
        platform.objects.counts = {"": 2**53, bucket["_id"]: 5, "bucket-of-another-system": 100}

        info = await platform.call("system_api", "read_system", {}, token)

        assert info["objects"] == 2**53 + 5
        assert info["buckets"][0]["num_objects"] == 5

    @pytest.mark.asyncio
    async def test_nodes_and_storage_aggregates(self, platform, token):
        platform.nodes.no_cloud = {
            "nodes": {"count": 3, "online": 2},
            "storage": {"total": 100, "free": 40},
        }
        platform.nodes.with_cloud = {
            "groups": {"default_pool": {"nodes": {"count": 3, "online": 2}, "storage": {"total": 100}}}
        }

        info = await platform.call("system_api", "read_system", {}, token)

        assert info["nodes"] == {"count": 3, "online": 2, "has_issues": 0}
        assert info["storage"]["total"] == 100
        assert info["storage"]["free"] == 40
        assert info["storage"]["used"] == 0
        assert info["pools"][0]["nodes"]["online"] == 2
        assert info["pools"][0]["storage"]["total"] == 100
        assert platform.cloud_sync.buckets == ["files"]

    @pytest.mark.asyncio
    async def test_maintenance_mode(self, platform, token):
        before = int(time.time() * 1000)
        await platform.call("system_api", "set_maintenance_mode", {"duration": 30}, token)

        info = await platform.call("system_api", "read_system", {}, token)

        assert info["maintenance_mode"]["state"] is True
        assert info["maintenance_mode"]["till"] >= before + 30 * 60000

    @pytest.mark.asyncio
    async def test_requires_admin_session(self, platform, token):
        with pytest.raises(AuthError):
            await platform.call("system_api", "read_system", {})

    @pytest.mark.asyncio
    async def test_support_reads_foreign_system(self, platform, token, alpha):
        support_id = await add_support_account(platform)
        support_token = platform.sessions.issue(support_id, alpha["_id"])

        info = await platform.call("system_api", "read_system", {}, support_token)

        assert info["name"] == "alpha"


class TestListSystems:
    """Tests for list_systems visibility."""

    @pytest.mark.asyncio
    async def test_account_sees_systems_it_has_roles_in(self, platform, token):
        await platform.create_system("beta", "other@example.com")

        reply = await platform.call("system_api", "list_systems", {}, token)

        assert reply == {"systems": [{"name": "alpha"}]}

    @pytest.mark.asyncio
    async def test_support_sees_all(self, platform, token):
        await platform.create_system("beta", "other@example.com")
        support_token = platform.sessions.issue(await add_support_account(platform))

        reply = await platform.call("system_api", "list_systems", {}, support_token)

        assert reply == {"systems": [{"name": "alpha"}, {"name": "beta"}]}

    @pytest.mark.asyncio
    async def test_system_bound_token(self, platform, alpha):
        system_token = platform.sessions.issue(None, alpha["_id"])

        reply = await platform.call("system_api", "list_systems", {}, system_token)

        assert reply == {"systems": [{"name": "alpha"}]}


class TestRoles:
    """Tests for add_role and remove_role."""

    @pytest.mark.asyncio
    async def test_add_role_is_idempotent(self, platform, token, alpha):
        await add_member(platform, token)
        member = platform.store.data.find_account_by_email("member@example.com")

        await platform.call("system_api", "add_role", {"email": "member@example.com", "role": "viewer"}, token)
        revision = platform.store.revision
        await platform.call("system_api", "add_role", {"email": "member@example.com", "role": "viewer"}, token)

        assert platform.store.revision == revision
        roles = platform.store.data.system_view(alpha["_id"]).roles_by_account[member["_id"]]
        assert sorted(roles) == ["admin", "viewer"]

    @pytest.mark.asyncio
    async def test_removed_admin_role_takes_effect_immediately(self, platform, token):
        member_token = await add_member(platform, token)
        await platform.call("system_api", "read_system", {}, member_token)

        await platform.call(
            "system_api", "remove_role", {"email": "member@example.com", "role": "admin"}, token
        )

        with pytest.raises(AuthError):
            await platform.call("system_api", "read_system", {}, member_token)

    @pytest.mark.asyncio
    async def test_unknown_account(self, platform, token):
        with pytest.raises(NotFoundError):
            await platform.call(
                "system_api", "add_role", {"email": "nobody@example.com", "role": "admin"}, token
            )

    @pytest.mark.asyncio
    async def test_unknown_role_is_rejected_by_params(self, platform, token):
        with pytest.raises(ValidationError):
            await platform.call(
                "system_api", "add_role", {"email": "owner@example.com", "role": "root"}, token
            )


class TestSettings:
    """Tests for the settings handlers."""

    @pytest.mark.asyncio
    async def test_base_address_with_hostname(self, platform, token, alpha):
        await platform.call(
            "system_api", "update_base_address", {"base_address": "wss://s3.example.com:443"}, token
        )

        info = await platform.call("system_api", "read_system", {}, token)
        assert info["base_address"] == "wss://s3.example.com:443"
        assert info["dns_name"] == "s3.example.com"
        assert info["cluster"]["owner_address"] == "s3.example.com"

        [entry] = platform.activity_log.read(alpha["_id"], ActivityQuery(event="conf.dns_address"))
        assert entry.desc == ["DNS Address was changed from not set to wss://s3.example.com:443"]

    @pytest.mark.asyncio
    async def test_base_address_with_ip(self, platform, token):
        await platform.call(
            "system_api", "update_base_address", {"base_address": "wss://192.168.1.10:8443"}, token
        )

        info = await platform.call("system_api", "read_system", {}, token)
        assert info["ip_address"] == "192.168.1.10"
        assert "dns_name" not in info

    @pytest.mark.asyncio
    async def test_monitor_sync_failure_keeps_change(self, platform, token, alpha):
        platform.transport.failures["node_api.sync_monitor_to_store"] = ExternalDependencyError(
            "node down"
        )

        await platform.call(
            "system_api", "update_n2n_config", {"config": {"tcp_active": False}}, token
        )

        system = platform.store.data.get("systems", alpha["_id"])
        assert system["n2n_config"] == {"tcp_active": False}
        assert platform.transport.called("node_api.sync_monitor_to_store")

    @pytest.mark.asyncio
    async def test_update_system_renames(self, platform, token):
        await platform.call("system_api", "update_system", {"name": "gamma"}, token)

        assert set(platform.store.data.systems_by_name) == {"gamma"}

    @pytest.mark.asyncio
    async def test_phone_home_proxy_set_and_clear(self, platform, token, alpha):
        await platform.call(
            "system_api", "update_phone_home_config", {"proxy_address": "http://proxy:3128"}, token
        )
        info = await platform.call("system_api", "read_system", {}, token)
        assert info["phone_home_config"]["proxy_address"] == "http://proxy:3128"

        await platform.call("system_api", "update_phone_home_config", {"proxy_address": None}, token)
        system = platform.store.data.get("systems", alpha["_id"])
        assert "phone_home_proxy_address" not in system

    @pytest.mark.asyncio
    async def test_capacity_notified(self, platform, token, alpha):
        await platform.call("system_api", "phone_home_capacity_notified", {}, token)

        cap = platform.store.data.get("systems", alpha["_id"])["freemium_cap"]
        assert cap["phone_home_notified"] is True
        assert cap["cap_terabytes"] == 20

    @pytest.mark.asyncio
    async def test_last_stats_report(self, platform, token):
        await platform.call(
            "system_api", "set_last_stats_report_time", {"last_stats_report": 1704164645678}, token
        )
        info = await platform.call("system_api", "read_system", {}, token)
        assert info["last_stats_report"] == 1704164645678


class TestRemoteSyslog:
    """Tests for configure_remote_syslog."""

    @pytest.mark.asyncio
    async def test_enable_requires_target(self, platform, token):
        with pytest.raises(ValidationError) as exc_info:
            await platform.call(
                "system_api", "configure_remote_syslog", {"enabled": True, "protocol": "TCP"}, token
            )

        assert exc_info.value.details["errors"] == [
            "'address' is required when enabled",
            "'port' is required when enabled",
        ]
        assert platform.syslog.reloads == []

    @pytest.mark.asyncio
    async def test_enable_and_disable(self, platform, token, alpha):
        settings = {"enabled": True, "protocol": "UDP", "address": "10.1.1.1", "port": 514}

        await platform.call("system_api", "configure_remote_syslog", settings, token)
        system = platform.store.data.get("systems", alpha["_id"])
        assert system["remote_syslog_config"] == {"protocol": "UDP", "address": "10.1.1.1", "port": 514}

        await platform.call("system_api", "configure_remote_syslog", {"enabled": False}, token)
        system = platform.store.data.get("systems", alpha["_id"])
        assert "remote_syslog_config" not in system
        assert platform.syslog.reloads == [settings, {"enabled": False}]


class TestActivityExport:
    """Tests for export_activity_log."""

    @pytest.mark.asyncio
    async def test_writes_csv_to_public_dir(self, platform, token):
        await platform.call(
            "system_api", "update_base_address", {"base_address": "wss://s3.example.com:443"}, token
        )

        path = await platform.call("system_api", "export_activity_log", {}, token)

        assert path == "/public/audit.csv"
        with open(os.path.join(platform.config.public_dir, "audit.csv")) as f:
            lines = f.read().split("\n")
        assert lines[0] == CSV_HEADER
        assert len(lines) == 3
        assert all(",owner@example.com," in line for line in lines[1:])
        assert any(
            line.endswith('"DNS Address was changed from not set to wss://s3.example.com:443"')
            for line in lines[1:]
        )

    @pytest.mark.asyncio
    async def test_event_filter(self, platform, token):
        await platform.call(
            "system_api", "update_base_address", {"base_address": "wss://s3.example.com:443"}, token
        )

        await platform.call(
            "system_api", "export_activity_log", {"event": "conf.create_system"}, token
        )

        with open(os.path.join(platform.config.public_dir, "audit.csv")) as f:
            lines = f.read().split("\n")
        assert len(lines) == 2
        assert ",conf.create_system," in lines[1]


class TestDiagnostics:
    """Tests for diagnose_system and diagnose_node."""

    @pytest.mark.asyncio
    async def test_diagnose_system(self, platform, token, alpha):
        path = await platform.call("system_api", "diagnose_system", {}, token)

        assert path == "/public/diagnostics.tgz"
        with tarfile.open(os.path.join(platform.config.public_dir, "diagnostics.tgz")) as tar:
            assert tar.getnames() == ["server.json"]
        [entry] = platform.activity_log.read(alpha["_id"], ActivityQuery(event="dbg.diagnose_system"))
        assert entry.desc == ["alpha diagnostics package was exported by owner@example.com"]

    @pytest.mark.asyncio
    async def test_diagnose_node(self, platform, token, alpha):
        platform.transport.replies["node_api.collect_agent_diagnostics"] = {"data": "agent log"}

        path = await platform.call("system_api", "diagnose_node", {"name": "node-1"}, token)

        assert path == "/public/diagnostics.tgz"
        [(_, _, params, _)] = platform.transport.called("node_api.collect_agent_diagnostics")
        assert params == {"name": "node-1"}
        with tarfile.open(os.path.join(platform.config.public_dir, "diagnostics.tgz")) as tar:
            assert tar.extractfile("agent_diagnostics.txt").read() == b"agent log"
        [entry] = platform.activity_log.read(alpha["_id"], ActivityQuery(event="dbg.diagnose_node"))
        assert entry.entities == {"node": {"name": "node-1"}}


class TestValidateActivation:
    """Tests for validate_activation."""

    @pytest.mark.asyncio
    async def test_valid_and_rejected_codes(self, platform):
        platform.license.rejected_codes.add("BAD")

        assert await platform.call("system_api", "validate_activation", {"code": "GOOD"}) == {
            "valid": True
        }
        assert await platform.call("system_api", "validate_activation", {"code": "BAD"}) == {
            "valid": False,
            "reason": "Activation code is not valid",
        }


class TestDeleteSystem:
    """Tests for delete_system."""

    @pytest.mark.asyncio
    async def test_cascades_to_system_documents(self, platform, token, alpha):
        await platform.create_system("beta", "other@example.com")

        await platform.call("system_api", "delete_system", {}, token)

        data = platform.store.data
        assert set(data.systems_by_name) == {"beta"}
        for collection in ("pools", "tiers", "tieringpolicies", "buckets", "roles"):
            assert data.system_docs(collection, alpha["_id"]) == []
        beta = data.systems_by_name["beta"]
        assert set(data.system_view(beta["_id"]).pools_by_name) == {"default_pool"}
        # accounts are cluster-wide and survive
        assert data.find_account_by_email("owner@example.com") is not None

    @pytest.mark.asyncio
    async def test_token_of_deleted_system_is_rejected(self, platform, token):
        await platform.call("system_api", "delete_system", {}, token)

        with pytest.raises(AuthError):
            await platform.call("system_api", "read_system", {}, token)


class TestAccounts:
    """Tests for account_api beyond provisioning."""

    @pytest.mark.asyncio
    async def test_read_account(self, platform, token):
        await add_member(platform, token)
        await platform.call(
            "system_api", "add_role", {"email": "member@example.com", "role": "viewer"}, token
        )

        info = await platform.call("account_api", "read_account", {"email": "MEMBER@example.com"}, token)

        assert info["email"] == "member@example.com"
        assert info["is_support"] is False
        assert info["systems"] == [{"name": "alpha", "roles": ["admin", "viewer"]}]

    @pytest.mark.asyncio
    async def test_create_account_needs_admin_session(self, platform, token):
        with pytest.raises(AuthError):
            await platform.call(
                "account_api",
                "create_account",
                {"name": "x", "email": "x@example.com", "password": "pw"},
            )

    @pytest.mark.asyncio
    async def test_anonymous_signup_rejected_on_provisioned_system(self, platform, alpha):
        intruder_id = platform.store.generate_id()
        before = platform.store.revision

        with pytest.raises(AuthError):
            await platform.call(
                "account_api",
                "create_account",
                {
                    "name": "intruder",
                    "email": "intruder@example.com",
                    "password": "pw",
                    "new_system_parameters": {
                        "account_id": intruder_id,
                        "allowed_buckets": [],
                        "new_system_id": alpha["_id"],
                    },
                },
            )

        assert platform.store.revision == before
        assert platform.store.data.find_account_by_email("intruder@example.com") is None

    @pytest.mark.asyncio
    async def test_anonymous_signup_rejected_for_owner_id_once_created(self, platform, alpha):
        with pytest.raises(AuthError):
            await platform.call(
                "account_api",
                "create_account",
                {
                    "name": "again",
                    "email": "again@example.com",
                    "password": "pw",
                    "new_system_parameters": {
                        "account_id": alpha["owner"],
                        "allowed_buckets": [],
                        "new_system_id": alpha["_id"],
                    },
                },
            )

    @pytest.mark.asyncio
    async def test_list_accounts_of_the_system(self, platform, token):
        await add_member(platform, token)
        await platform.create_system("beta", "other@example.com")

        reply = await platform.call("account_api", "list_accounts", {}, token)

        assert [a["email"] for a in reply["accounts"]] == ["member@example.com", "owner@example.com"]
