"""
Tenant provisioning saga (``system_api.create_system``).

Steps run in order against one ProvisioningContext:

    check_capacity       system count must not exceed max_systems
    validate_license     perform_activation on the license server
    build_documents      System + default Pool/Tier/Policy/Bucket (+ demo set)
    commit               one atomic make_changes batch
    create_account       account_api.create_account -> session token
    create_demo_agents   hosted_agents_api.create_agent (demo mode only)
    configure_time       cluster_server_api.update_time_config (if given)
    configure_dns        cluster_server_api.update_dns_servers (if given)
    configure_hostname   system_api.update_hostname (if given)

Invariants:
    - Nothing is persisted unless commit succeeds; errors before it
      propagate unchanged (a pre-commit timeout becomes EXTERNAL_DEPENDENCY)
    - Any error or timeout after commit becomes FatalPartialFailureError
      naming the committed system and the failed step; nothing is rolled back
    - Every outgoing call carries the RPC deadline
    - The saga is not idempotent; a retry after a partial failure collides
      with the committed system name

How to change safely:
    - Add new steps to ``ProvisioningSaga.steps`` at the position they run
    - A new post-commit step must tolerate the account already existing
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import (
    ControlPlaneError,
    ExternalDependencyError,
    FatalPartialFailureError,
    ResourceLimitError,
    ValidationError,
)
from .activity_log import ActivityEntry
from .defaults import TenantGraph, new_cluster_info, new_system_changes

if TYPE_CHECKING:
    from ..config import ServerConfig
    from ..rpc.registry import RpcRegistry
    from ..store.config_store import ConfigStore
    from .activity_log import ActivityLog
    from .collaborators import LicenseClient

logger = logging.getLogger(__name__)


@dataclass
class CreateSystemParams:
    """Validated ``create_system`` params."""

    name: str
    email: str
    password: str
    activation_code: str | None = None
    access_keys: list[dict[str, str]] | None = None
    time_config: dict[str, Any] | None = None
    dns_servers: list[str] | None = None
    dns_name: str | None = None

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> CreateSystemParams:
        return cls(
            name=params["name"],
            email=params["email"],
            password=params["password"],
            activation_code=params.get("activation_code"),
            access_keys=params.get("access_keys"),
            time_config=params.get("time_config"),
            dns_servers=params.get("dns_servers"),
            dns_name=params.get("dns_name"),
        )

    def system_info(self) -> dict[str, Any]:
        """What the license server gets: everything but credentials."""
        info: dict[str, Any] = {"name": self.name, "email": self.email}
        if self.activation_code is not None:
            info["activation_code"] = self.activation_code
        if self.time_config is not None:
            info["time_config"] = self.time_config
        if self.dns_servers is not None:
            info["dns_servers"] = self.dns_servers
        if self.dns_name is not None:
            info["dns_name"] = self.dns_name
        return info


@dataclass
class ProvisioningContext:
    """State carried between saga steps."""

    params: CreateSystemParams
    account_id: str | None = None
    graph: TenantGraph | None = None
    committed: bool = False
    token: str | None = None
    access_keys: list[dict[str, str]] | None = None
    completed_steps: list[str] = field(default_factory=list)

    @property
    def system_id(self) -> str | None:
        return self.graph.system["_id"] if self.graph else None


@dataclass(frozen=True)
class SagaStep:
    name: str
    run: Callable[[ProvisioningContext], Awaitable[None]]


class ProvisioningSaga:
    """Runs the create-system steps.

    Example:
        >>> saga = ProvisioningSaga(store, registry, license_client, activity_log, config)
        >>> reply = await saga.run(CreateSystemParams.from_params(params))
        >>> reply["token"]
    """

    def __init__(
        self,
        store: ConfigStore,
        registry: RpcRegistry,
        license_client: LicenseClient,
        activity_log: ActivityLog,
        config: ServerConfig,
    ) -> None:
        self.store = store
        self.registry = registry
        self.license_client = license_client
        self.activity_log = activity_log
        self.config = config
        self.steps: list[SagaStep] = [
            SagaStep("check_capacity", self.check_capacity),
            SagaStep("validate_license", self.validate_license),
            SagaStep("build_documents", self.build_documents),
            SagaStep("commit", self.commit),
            SagaStep("create_account", self.create_account),
            SagaStep("create_demo_agents", self.create_demo_agents),
            SagaStep("configure_time", self.configure_time),
            SagaStep("configure_dns", self.configure_dns),
            SagaStep("configure_hostname", self.configure_hostname),
        ]

    @property
    def rpc_timeout(self) -> float:
        return self.config.rpc.timeout_seconds

    async def run(self, params: CreateSystemParams) -> dict[str, Any]:
        """Provision a tenant and return ``{"token": ...}``.

        Raises:
            ResourceLimitError: Too many systems
            ExternalDependencyError: License server refused or failed
            ValidationError: Documents rejected by the store
            ConflictError: Concurrent commit; nothing was persisted
            FatalPartialFailureError: A step after commit failed
        """
        ctx = ProvisioningContext(params=params)
        logger.info("Provisioning system", extra={"system_name": params.name})

        for step in self.steps:
            try:
                await step.run(ctx)
            except Exception as e:
                if not ctx.committed:
                    if isinstance(e, asyncio.TimeoutError):
                        raise ExternalDependencyError(
                            f"Provisioning step {step.name} timed out"
                        ) from e
                    raise
                logger.error(
                    f"Provisioning step {step.name} failed after commit: {e}",
                    extra={
                        "system_id": ctx.system_id,
                        "system_name": params.name,
                        "completed_steps": list(ctx.completed_steps),
                    },
                    exc_info=True,
                )
                cause = "timeout" if isinstance(e, asyncio.TimeoutError) else str(e)
                raise FatalPartialFailureError(
                    f"System {params.name} was created but step {step.name} failed",
                    system_id=ctx.system_id,
                    system_name=params.name,
                    failed_step=step.name,
                    completed_steps=list(ctx.completed_steps),
                    cause=cause,
                ) from e
            ctx.completed_steps.append(step.name)

        logger.info(
            "System provisioned",
            extra={"system_id": ctx.system_id, "system_name": params.name},
        )
        return {"token": ctx.token}

    # Pre-commit steps

    async def check_capacity(self, ctx: ProvisioningContext) -> None:
        count = self.store.data.count("systems")
        limit = self.config.provisioning.max_systems
        if count > limit:
            raise ResourceLimitError(
                "Reached the maximum number of systems",
                details={"systems": count, "max_systems": limit},
            )

    async def validate_license(self, ctx: ProvisioningContext) -> None:
        try:
            await self.license_client.perform_activation(
                ctx.params.activation_code or "",
                ctx.params.email,
                ctx.params.system_info(),
            )
        except ExternalDependencyError:
            raise
        except Exception as e:
            message = e.message if isinstance(e, ControlPlaneError) else str(e)
            raise ExternalDependencyError(f"Activation failed: {message}") from e

    async def build_documents(self, ctx: ProvisioningContext) -> None:
        data = self.store.data
        if data.find_account_by_email(ctx.params.email) is not None:
            raise ValidationError(
                "Account already exists",
                errors=[f"email '{ctx.params.email}' is already registered"],
            )
        prov = self.config.provisioning
        ctx.account_id = self.store.generate_id()
        ctx.graph = new_system_changes(
            self.store,
            ctx.params.name,
            ctx.account_id,
            demo_enabled=prov.demo_enabled,
            demo_pool_name=prov.demo_pool_name,
            demo_bucket_name=prov.demo_bucket_name,
        )

    async def commit(self, ctx: ProvisioningContext) -> None:
        batch = ctx.graph.to_batch()
        if self.store.get_local_cluster_info() is None:
            batch.add_insert(
                "clusters",
                new_cluster_info(
                    self.store.generate_id(),
                    self.store.get_server_secret(),
                    self.config.cluster.node_address,
                ),
            )
        await self.store.make_changes(batch)
        ctx.committed = True

        self.activity_log.record(
            ActivityEntry(
                event="conf.create_system",
                system=ctx.system_id,
                actor=ctx.account_id,
                desc=[f"{ctx.params.name} was created by {ctx.params.email}"],
            )
        )

    # Post-commit steps

    async def create_account(self, ctx: ProvisioningContext) -> None:
        params: dict[str, Any] = {
            "name": ctx.params.name,
            "email": ctx.params.email,
            "password": ctx.params.password,
            "new_system_parameters": {
                "account_id": ctx.account_id,
                "allowed_buckets": ctx.graph.allowed_buckets,
                "new_system_id": ctx.system_id,
            },
        }
        if ctx.params.access_keys:
            params["access_keys"] = ctx.params.access_keys
        reply = await self.registry.call(
            "account_api", "create_account", params, timeout=self.rpc_timeout
        )
        ctx.token = reply["token"]
        ctx.access_keys = reply.get("access_keys")

    async def create_demo_agents(self, ctx: ProvisioningContext) -> None:
        prov = self.config.provisioning
        if not prov.demo_enabled:
            return
        params: dict[str, Any] = {
            "name": ctx.params.name,
            "demo": True,
            "scale": prov.num_demo_nodes,
            "storage_limit": prov.demo_nodes_storage_limit,
        }
        if ctx.access_keys:
            params["access_keys"] = ctx.access_keys
        await self.registry.call(
            "hosted_agents_api",
            "create_agent",
            params,
            auth_token=ctx.token,
            timeout=self.rpc_timeout,
        )

    async def configure_time(self, ctx: ProvisioningContext) -> None:
        if not ctx.params.time_config:
            return
        params = dict(ctx.params.time_config)
        params["target_secret"] = self.store.get_server_secret()
        await self.registry.call(
            "cluster_server_api",
            "update_time_config",
            params,
            auth_token=ctx.token,
            timeout=self.rpc_timeout,
        )

    async def configure_dns(self, ctx: ProvisioningContext) -> None:
        if not ctx.params.dns_servers:
            return
        await self.registry.call(
            "cluster_server_api",
            "update_dns_servers",
            {
                "target_secret": self.store.get_server_secret(),
                "dns_servers": ctx.params.dns_servers,
            },
            auth_token=ctx.token,
            timeout=self.rpc_timeout,
        )

    async def configure_hostname(self, ctx: ProvisioningContext) -> None:
        if not ctx.params.dns_name:
            return
        await self.registry.call(
            "system_api",
            "update_hostname",
            {"hostname": ctx.params.dns_name},
            auth_token=ctx.token,
            timeout=self.rpc_timeout,
        )
