"""
Test doubles for the collaborators of the control plane services.
"""

import asyncio
from typing import Any

from controlplane.strata_server.errors import ExternalDependencyError

SECRET = "test-secret"


class FakeTransport:
    """RpcTransport answering remote calls from a table of canned replies.

    ``replies`` maps "service.method" to a value or to a callable taking the
    params; ``failures`` maps it to an exception; ``delays`` to seconds.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any, str | None]] = []
        self.replies: dict[str, Any] = {}
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}

    async def call(self, service: str, method: str, params: Any, auth_token: str | None) -> Any:
        key = f"{service}.{method}"
        self.calls.append((service, method, params, auth_token))
        if key in self.delays:
            await asyncio.sleep(self.delays[key])
        if key in self.failures:
            raise self.failures[key]
        reply = self.replies.get(key)
        return reply(params) if callable(reply) else reply

    def called(self, key: str) -> list[tuple[str, str, Any, str | None]]:
        return [c for c in self.calls if f"{c[0]}.{c[1]}" == key]


class FakeLicenseClient:
    def __init__(self) -> None:
        self.activations: list[tuple[str, str | None, dict[str, Any]]] = []
        self.fail_with: Exception | None = None
        self.rejected_codes: set[str] = set()

    async def perform_activation(self, code: str, email: str | None, system_info: dict[str, Any]) -> str:
        self.activations.append((code, email, system_info))
        if self.fail_with is not None:
            raise self.fail_with
        return "ok"

    async def validate_creation(self, code: str, email: str | None) -> str:
        if code in self.rejected_codes:
            raise ExternalDependencyError("Activation code is not valid")
        return "ok"


class FakeNodesAggregator:
    def __init__(self, no_cloud: dict[str, Any] | None = None, with_cloud: dict[str, Any] | None = None) -> None:
        self.no_cloud = no_cloud or {}
        self.with_cloud = with_cloud or {}
        self.calls: list[tuple[Any, str, bool]] = []

    async def aggregate_nodes_by_pool(self, pool_names, system_id, skip_cloud_nodes, auth_token=None):
        self.calls.append((pool_names, system_id, skip_cloud_nodes))
        return self.no_cloud if skip_cloud_nodes else self.with_cloud


class FakeObjectCounter:
    def __init__(self, counts: dict[str, int] | None = None) -> None:
        self.counts = counts or {}

    async def aggregate_objects_count(self, system_id, auth_token=None):
        return dict(self.counts)


class FakeCloudSyncReader:
    def __init__(self) -> None:
        self.buckets: list[str] = []

    async def get_cloud_sync(self, bucket, auth_token=None):
        self.buckets.append(bucket["name"])
        return {}


class RecordingSyslog:
    def __init__(self) -> None:
        self.reloads: list[dict[str, Any]] = []

    async def reload(self, params: dict[str, Any]) -> None:
        self.reloads.append(dict(params))
