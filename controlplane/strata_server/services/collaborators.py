"""
Interfaces of the collaborators the system services depend on, plus their
default implementations.

- NodesAggregator / ObjectCounter / CloudSyncReader: RPC-backed reads used
  by the status view (node_api, object_api, bucket_api on peers)
- LicenseClient: one POST per command to the license (phone-home) server
- SyslogConfigurator: writes an rsyslog forwarding fragment
- DiagnosticsCollector: packs a tar.gz of server (and agent) diagnostics

Every collaborator is injected, so tests replace any of them with fakes.
"""

from __future__ import annotations

import io
import json
import logging
import os
import tarfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from ..errors import ExternalDependencyError

if TYPE_CHECKING:
    from ..config import LicenseConfig
    from ..rpc.registry import RpcRegistry
    from ..store.config_store import ConfigStore

logger = logging.getLogger(__name__)


class NodesAggregator(Protocol):
    async def aggregate_nodes_by_pool(
        self,
        pool_names: list[str] | None,
        system_id: str,
        skip_cloud_nodes: bool,
        auth_token: str | None = None,
    ) -> dict[str, Any]:
        """Return ``{"nodes": {...}, "storage": {...}, "groups": {pool: {...}}}``."""
        ...


class ObjectCounter(Protocol):
    async def aggregate_objects_count(
        self, system_id: str, auth_token: str | None = None
    ) -> dict[str, int]:
        """Return object counts keyed by bucket id; ``""`` is unattributed."""
        ...


class CloudSyncReader(Protocol):
    async def get_cloud_sync(
        self, bucket: dict[str, Any], auth_token: str | None = None
    ) -> dict[str, Any]: ...


class LicenseClient(Protocol):
    async def perform_activation(
        self, code: str, email: str | None, system_info: dict[str, Any]
    ) -> str: ...

    async def validate_creation(self, code: str, email: str | None) -> str: ...


class SyslogConfigurator(Protocol):
    async def reload(self, params: dict[str, Any]) -> None: ...


class DiagnosticsCollector(Protocol):
    async def pack_server_diagnostics(self, system: dict[str, Any], out_file: str) -> str: ...

    async def pack_node_diagnostics(
        self, system: dict[str, Any], agent_data: str, out_file: str
    ) -> str: ...


# RPC-backed readers


class RpcNodesAggregator:
    """NodesAggregator backed by ``node_api.aggregate_nodes`` on a peer."""

    def __init__(self, registry: RpcRegistry, timeout: float | None = None) -> None:
        self.registry = registry
        self.timeout = timeout

    async def aggregate_nodes_by_pool(
        self,
        pool_names: list[str] | None,
        system_id: str,
        skip_cloud_nodes: bool,
        auth_token: str | None = None,
    ) -> dict[str, Any]:
        return await self.registry.call(
            "node_api",
            "aggregate_nodes",
            {"pool_names": pool_names, "skip_cloud_nodes": skip_cloud_nodes},
            auth_token=auth_token,
            timeout=self.timeout,
        )


class RpcObjectCounter:
    """ObjectCounter backed by ``object_api.aggregate_objects_count``."""

    def __init__(self, registry: RpcRegistry, timeout: float | None = None) -> None:
        self.registry = registry
        self.timeout = timeout

    async def aggregate_objects_count(
        self, system_id: str, auth_token: str | None = None
    ) -> dict[str, int]:
        return await self.registry.call(
            "object_api",
            "aggregate_objects_count",
            {},
            auth_token=auth_token,
            timeout=self.timeout,
        )


class RpcCloudSyncReader:
    """CloudSyncReader backed by ``bucket_api.get_cloud_sync``."""

    def __init__(self, registry: RpcRegistry, timeout: float | None = None) -> None:
        self.registry = registry
        self.timeout = timeout

    async def get_cloud_sync(
        self, bucket: dict[str, Any], auth_token: str | None = None
    ) -> dict[str, Any]:
        return await self.registry.call(
            "bucket_api",
            "get_cloud_sync",
            {"name": bucket["name"]},
            auth_token=auth_token,
            timeout=self.timeout,
        )


# License server


class HttpLicenseClient:
    """Talks to the license server: ``POST {base_url}/{command}``.

    In dev mode every command succeeds without a request.

    Example:
        >>> client = HttpLicenseClient(LicenseConfig(base_url="https://license.example"))
        >>> await client.validate_creation("ABC-123", "ops@example.com")
    """

    def __init__(self, config: LicenseConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_tls,
            )
        return self._client

    async def perform_activation(
        self, code: str, email: str | None, system_info: dict[str, Any]
    ) -> str:
        return await self._communicate("perform_activation", code, email, system_info)

    async def validate_creation(self, code: str, email: str | None) -> str:
        return await self._communicate("validate_creation", code, email)

    async def _communicate(
        self,
        command: str,
        code: str,
        email: str | None,
        system_info: dict[str, Any] | None = None,
    ) -> str:
        if self.config.dev_mode:
            return "ok"

        body: dict[str, Any] = {"code": (code or "").strip()}
        if email:
            body["Business Email"] = email.strip()
        if command == "perform_activation":
            body["system_info"] = system_info or {}

        url = f"{self.config.base_url.rstrip('/')}/{command}"
        logger.info("Sending request to license server", extra={"command": command, "url": url})
        try:
            response = await self._get_client().post(url, json=body)
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"License server unreachable: {e}") from e

        logger.info(
            "Received response from license server",
            extra={"command": command, "status": response.status_code},
        )
        if response.status_code != 200:
            raise ExternalDependencyError(
                response.text or f"License server answered HTTP {response.status_code}",
                details={"status": response.status_code, "command": command},
            )
        return response.text

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


# Syslog


class RsyslogConfigurator:
    """Writes (or removes) an rsyslog fragment forwarding everything remotely.

    The fragment is picked up by the next rsyslog reload; this class does not
    restart the daemon.
    """

    def __init__(self, fragment_path: str) -> None:
        self.fragment_path = Path(fragment_path)

    async def reload(self, params: dict[str, Any]) -> None:
        if not params.get("enabled"):
            if self.fragment_path.exists():
                self.fragment_path.unlink()
            logger.info("Remote syslog forwarding disabled")
            return

        prefix = "@@" if params["protocol"] == "TCP" else "@"
        line = f"*.* {prefix}{params['address']}:{params['port']}\n"
        self.fragment_path.parent.mkdir(parents=True, exist_ok=True)
        self.fragment_path.write_text(line, encoding="utf-8")
        logger.info(
            "Remote syslog forwarding configured",
            extra={"protocol": params["protocol"], "address": params["address"]},
        )


# Diagnostics


class TarDiagnosticsCollector:
    """Packs a tar.gz with the server's view of a system.

    The archive holds ``server.json`` (version, store revision, document
    counts and the system document without secrets) and, for node
    diagnostics, ``agent_diagnostics.txt``.
    """

    def __init__(self, store: ConfigStore, version: str) -> None:
        self.store = store
        self.version = version

    def _server_report(self, system: dict[str, Any]) -> bytes:
        data = self.store.data
        report = {
            "version": self.version,
            "collected_at": int(time.time() * 1000),
            "revision": data.revision,
            "counts": {name: data.count(name) for name in data.raw()},
            "system": system,
            "cluster_members": [
                {k: v for k, v in c.items() if k != "owner_secret"} for c in data.clusters
            ],
        }
        return json.dumps(report, indent=2, sort_keys=True).encode("utf-8")

    @staticmethod
    def _add_bytes(tar: tarfile.TarFile, name: str, payload: bytes) -> None:
        info = tarfile.TarInfo(name=name)
        info.size = len(payload)
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(payload))

    def _pack(self, out_file: str, entries: dict[str, bytes]) -> str:
        os.makedirs(os.path.dirname(out_file) or ".", exist_ok=True)
        with tarfile.open(out_file, "w:gz") as tar:
            for name, payload in entries.items():
                self._add_bytes(tar, name, payload)
        return out_file

    async def pack_server_diagnostics(self, system: dict[str, Any], out_file: str) -> str:
        return self._pack(out_file, {"server.json": self._server_report(system)})

    async def pack_node_diagnostics(
        self, system: dict[str, Any], agent_data: str, out_file: str
    ) -> str:
        return self._pack(
            out_file,
            {
                "server.json": self._server_report(system),
                "agent_diagnostics.txt": agent_data.encode("utf-8"),
            },
        )
