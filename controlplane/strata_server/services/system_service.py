"""
system_api implementation.

Handlers act on the system the caller's session is bound to. Creation and
the status view are delegated to the ProvisioningSaga and the
SystemStatusComposer; everything else is a single atomic batch against the
config store, sometimes followed by a collaborator call.

Invariants:
    - Every write goes through ConfigStore.make_changes
    - delete_system removes the system and everything scoped to it in one batch
    - Follow-up calls to node_api after a settings change are best effort;
      the change itself is already committed
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from ..errors import AuthError, ControlPlaneError, ExternalDependencyError, NotFoundError, ValidationError
from ..store.changes import UNSET, ChangeBatch
from .activity_log import ActivityEntry, ActivityQuery, write_activity_csv
from .provisioning import CreateSystemParams

if TYPE_CHECKING:
    from ..config import ServerConfig
    from ..rpc.registry import RpcRegistry, RpcRequest
    from ..store.config_store import ConfigStore
    from .activity_log import ActivityLog
    from .collaborators import DiagnosticsCollector, LicenseClient, SyslogConfigurator
    from .provisioning import ProvisioningSaga
    from .status import SystemStatusComposer

logger = logging.getLogger(__name__)

DIAGNOSTICS_FILE_NAME = "diagnostics.tgz"
_SYSTEM_SCOPED = ("roles", "buckets", "tieringpolicies", "tiers", "pools")


class SystemService:
    """Handlers of ``system_api``."""

    def __init__(
        self,
        store: ConfigStore,
        registry: RpcRegistry,
        saga: ProvisioningSaga,
        composer: SystemStatusComposer,
        activity_log: ActivityLog,
        license_client: LicenseClient,
        syslog: SyslogConfigurator,
        diagnostics: DiagnosticsCollector,
        config: ServerConfig,
    ) -> None:
        self.store = store
        self.registry = registry
        self.saga = saga
        self.composer = composer
        self.activity_log = activity_log
        self.license_client = license_client
        self.syslog = syslog
        self.diagnostics = diagnostics
        self.config = config

    def _system(self, req: RpcRequest) -> dict[str, Any]:
        system = self.store.data.get("systems", req.system["_id"])
        if system is None:
            raise NotFoundError(
                "System not found", resource_type="system", resource_id=req.system["_id"]
            )
        return system

    async def _update_system(self, system_id: str, **fields: Any) -> None:
        await self.store.make_changes({"update": {"systems": [{"_id": system_id, **fields}]}})

    def _record(self, req: RpcRequest, event: str, desc: str, **entities: dict[str, Any]) -> None:
        self.activity_log.record(
            ActivityEntry(
                event=event,
                system=req.system["_id"],
                actor=req.account["_id"] if req.account else None,
                desc=[desc],
                entities=entities,
            )
        )

    async def _sync_monitor(self, req: RpcRequest) -> None:
        try:
            await self.registry.call(
                "node_api",
                "sync_monitor_to_store",
                {},
                auth_token=req.auth_token,
                timeout=self.config.rpc.timeout_seconds,
            )
        except (ControlPlaneError, asyncio.TimeoutError) as e:
            logger.warning(
                f"Node monitor sync failed: {e}",
                extra={"system_id": req.system["_id"], "srv": req.srv},
            )

    # Lifecycle

    async def create_system(self, req: RpcRequest) -> dict[str, Any]:
        return await self.saga.run(CreateSystemParams.from_params(req.params))

    async def read_system(self, req: RpcRequest) -> dict[str, Any]:
        return await self.composer.compose(self._system(req), req.auth_token)

    async def update_system(self, req: RpcRequest) -> None:
        system = self._system(req)
        await self._update_system(system["_id"], name=req.params["name"])

    async def delete_system(self, req: RpcRequest) -> None:
        data = self.store.data
        system = self._system(req)
        batch = ChangeBatch()
        for collection in _SYSTEM_SCOPED:
            for doc in data.system_docs(collection, system["_id"]):
                batch.add_remove(collection, doc["_id"])
        batch.add_remove("systems", system["_id"])
        await self.store.make_changes(batch)
        logger.info(
            "System deleted",
            extra={"system_id": system["_id"], "system_name": system["name"], "documents": len(batch)},
        )

    async def list_systems(self, req: RpcRequest) -> dict[str, Any]:
        if req.account is None:
            if req.system is None:
                raise AuthError("list_systems requires authentication with account or system")
            return {"systems": [{"name": req.system["name"]}]}

        data = self.store.data
        if req.account.get("is_support"):
            systems = data.systems
        else:
            seen: dict[str, dict[str, Any]] = {}
            for role in data.roles_of(req.account["_id"]):
                system = data.get("systems", role["system"])
                if system is not None:
                    seen.setdefault(system["_id"], system)
            systems = list(seen.values())
        return {"systems": [{"name": s["name"]} for s in sorted(systems, key=lambda s: s["name"])]}

    # Roles

    def _find_account(self, email: str) -> dict[str, Any]:
        account = self.store.data.find_account_by_email(email)
        if account is None:
            raise NotFoundError("Account not found", resource_type="account", resource_id=email)
        return account

    async def add_role(self, req: RpcRequest) -> None:
        account = self._find_account(req.params["email"])
        system = self._system(req)
        view = self.store.data.system_view(system["_id"])
        if view and req.params["role"] in view.roles_by_account.get(account["_id"], []):
            return
        await self.store.make_changes(
            {
                "insert": {
                    "roles": [
                        {
                            "_id": self.store.generate_id(),
                            "account": account["_id"],
                            "system": system["_id"],
                            "role": req.params["role"],
                        }
                    ]
                }
            }
        )

    async def remove_role(self, req: RpcRequest) -> None:
        account = self._find_account(req.params["email"])
        system = self._system(req)
        ids = [
            r["_id"]
            for r in self.store.data.roles_of(account["_id"])
            if r["system"] == system["_id"] and r["role"] == req.params["role"]
        ]
        if ids:
            await self.store.make_changes({"remove": {"roles": ids}})

    # Settings

    async def set_maintenance_mode(self, req: RpcRequest) -> None:
        system = self._system(req)
        till = int(time.time() * 1000 + req.params["duration"] * 60000)
        await self._update_system(system["_id"], maintenance_mode=till)

    async def set_last_stats_report_time(self, req: RpcRequest) -> None:
        system = self._system(req)
        await self._update_system(
            system["_id"], last_stats_report=req.params["last_stats_report"]
        )

    async def update_n2n_config(self, req: RpcRequest) -> None:
        system = self._system(req)
        await self._update_system(system["_id"], n2n_config=req.params["config"])
        await self._sync_monitor(req)

    async def update_base_address(self, req: RpcRequest) -> None:
        system = self._system(req)
        base_address = req.params["base_address"]
        prior = system.get("base_address") or "not set"

        batch = ChangeBatch().add_update(
            "systems", {"_id": system["_id"], "base_address": base_address}
        )
        host = urlsplit(base_address).hostname
        local = self.store.get_local_cluster_info()
        if local is not None and host:
            batch.add_update("clusters", {"_id": local["_id"], "owner_address": host})
        await self.store.make_changes(batch)

        await self._sync_monitor(req)
        self._record(
            req,
            "conf.dns_address",
            f"DNS Address was changed from {prior} to {base_address}",
        )

    async def update_hostname(self, req: RpcRequest) -> None:
        base_address = f"wss://{req.params['hostname']}:{self.config.provisioning.ssl_port}"
        await self.update_base_address(
            dataclasses.replace(req, params={"base_address": base_address})
        )

    async def update_phone_home_config(self, req: RpcRequest) -> None:
        system = self._system(req)
        proxy = req.params["proxy_address"]
        if proxy is None:
            update: dict[str, Any] = {"_id": system["_id"], UNSET: {"phone_home_proxy_address": 1}}
        else:
            update = {"_id": system["_id"], "phone_home_proxy_address": proxy}
        await self.store.make_changes({"update": {"systems": [update]}})

    async def phone_home_capacity_notified(self, req: RpcRequest) -> None:
        system = self._system(req)
        cap = dict(system.get("freemium_cap") or {})
        cap["phone_home_notified"] = True
        await self._update_system(system["_id"], freemium_cap=cap)

    async def configure_remote_syslog(self, req: RpcRequest) -> None:
        system = self._system(req)
        params = req.params
        if params["enabled"]:
            missing = [k for k in ("protocol", "address", "port") if params.get(k) is None]
            if missing:
                raise ValidationError(
                    "Missing remote syslog settings",
                    errors=[f"'{k}' is required when enabled" for k in missing],
                )
            update: dict[str, Any] = {
                "_id": system["_id"],
                "remote_syslog_config": {
                    "protocol": params["protocol"],
                    "address": params["address"],
                    "port": params["port"],
                },
            }
        else:
            update = {"_id": system["_id"], UNSET: {"remote_syslog_config": 1}}
        await self.store.make_changes({"update": {"systems": [update]}})
        await self.syslog.reload(params)

    # Activity log

    async def read_activity_log(self, req: RpcRequest) -> dict[str, Any]:
        entries = self.activity_log.read(req.system["_id"], ActivityQuery.from_params(req.params))
        data = self.store.data
        return {"logs": [e.to_dict(data) for e in entries]}

    async def export_activity_log(self, req: RpcRequest) -> str:
        query = ActivityQuery.from_params(req.params)
        query.limit = req.params.get("limit")
        entries = self.activity_log.read(req.system["_id"], query)
        return write_activity_csv(entries, self.config.public_dir, self.store.data)

    # Diagnostics

    async def diagnose_system(self, req: RpcRequest) -> str:
        system = self._system(req)
        out_file = os.path.join(self.config.public_dir, DIAGNOSTICS_FILE_NAME)
        await self.diagnostics.pack_server_diagnostics(system, out_file)
        email = req.account["email"] if req.account else ""
        self._record(
            req,
            "dbg.diagnose_system",
            f"{system['name']} diagnostics package was exported by {email}",
        )
        return f"/public/{DIAGNOSTICS_FILE_NAME}"

    async def diagnose_node(self, req: RpcRequest) -> str:
        system = self._system(req)
        target = {k: req.params[k] for k in ("id", "name") if k in req.params}
        reply = await self.registry.call(
            "node_api",
            "collect_agent_diagnostics",
            target,
            auth_token=req.auth_token,
            timeout=self.config.rpc.timeout_seconds,
        )
        out_file = os.path.join(self.config.public_dir, DIAGNOSTICS_FILE_NAME)
        await self.diagnostics.pack_node_diagnostics(system, (reply or {}).get("data", ""), out_file)
        email = req.account["email"] if req.account else ""
        self._record(
            req,
            "dbg.diagnose_node",
            f"{req.params['name']} diagnostics package was exported by {email}",
            node={"name": req.params["name"]},
        )
        return f"/public/{DIAGNOSTICS_FILE_NAME}"

    async def log_frontend_stack_trace(self, req: RpcRequest) -> None:
        logger.error(
            "Frontend stack trace",
            extra={"stack_trace": req.params["stack_trace"], "system_id": req.system["_id"]},
        )

    # Licensing

    async def validate_activation(self, req: RpcRequest) -> dict[str, Any]:
        try:
            await self.license_client.validate_creation(
                req.params["code"], req.params.get("email")
            )
        except ExternalDependencyError as e:
            logger.info("Activation code rejected", extra={"reason": e.message})
            return {"valid": False, "reason": e.message}
        return {"valid": True}
