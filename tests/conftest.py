"""
Shared fixtures: a loaded config store and a fully wired in-process
control plane with fake collaborators.
"""

import os
import tempfile
from dataclasses import dataclass

import pytest

from controlplane.strata_server.api import ACCOUNT_API, POOL_API, REMOTE_APIS, SYSTEM_API
from controlplane.strata_server.config import (
    ClusterConfig,
    LicenseConfig,
    ProvisioningConfig,
    RpcConfig,
    ServerConfig,
    StoreConfig,
)
from controlplane.strata_server.rpc import RpcRegistry, SessionManager
from controlplane.strata_server.services import (
    AccountService,
    InMemoryActivityLog,
    PoolService,
    ProvisioningSaga,
    SystemService,
    SystemStatusComposer,
    TarDiagnosticsCollector,
)
from controlplane.strata_server.store import ConfigStore, DurableStore
from tests.fakes import (
    SECRET,
    FakeCloudSyncReader,
    FakeLicenseClient,
    FakeNodesAggregator,
    FakeObjectCounter,
    FakeTransport,
    RecordingSyslog,
)


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def durable(data_dir):
    return DurableStore(os.path.join(data_dir, "config.db"), wal_mode=False)


@pytest.fixture
async def store(durable):
    """Config store after its initial load."""
    store = ConfigStore(durable, server_secret=SECRET)
    await store.load()
    return store


def make_config(data_dir: str, **provisioning) -> ServerConfig:
    return ServerConfig(
        rpc=RpcConfig(timeout_seconds=2.0),
        store=StoreConfig(data_dir=data_dir, wal_mode=False),
        cluster=ClusterConfig(server_secret=SECRET, node_address="10.0.0.5"),
        provisioning=ProvisioningConfig(**provisioning),
        license=LicenseConfig(dev_mode=True),
        public_dir=os.path.join(data_dir, "public"),
        syslog_fragment_path=os.path.join(data_dir, "rsyslog", "remote.conf"),
        version="0.4.0",
    )


@dataclass
class Platform:
    """Everything a test needs to drive the services through the registry."""

    config: ServerConfig
    store: ConfigStore
    sessions: SessionManager
    registry: RpcRegistry
    transport: FakeTransport
    license: FakeLicenseClient
    nodes: FakeNodesAggregator
    objects: FakeObjectCounter
    cloud_sync: FakeCloudSyncReader
    syslog: RecordingSyslog
    activity_log: InMemoryActivityLog
    saga: ProvisioningSaga

    async def create_system(self, name="alpha", email="owner@example.com", **params) -> str:
        params.setdefault("password", "pa55word")
        reply = await self.registry.call(
            "system_api", "create_system", {"name": name, "email": email, **params}
        )
        return reply["token"]

    async def call(self, service, method, params=None, token=None):
        return await self.registry.call(service, method, params or {}, auth_token=token)


def build_platform(store: ConfigStore, config: ServerConfig) -> Platform:
    sessions = SessionManager(store, SECRET)
    transport = FakeTransport()
    registry = RpcRegistry(store, sessions, transport)
    for api in REMOTE_APIS:
        registry.declare(api)

    license_client = FakeLicenseClient()
    nodes = FakeNodesAggregator()
    objects = FakeObjectCounter()
    cloud_sync = FakeCloudSyncReader()
    syslog = RecordingSyslog()
    activity_log = InMemoryActivityLog()

    composer = SystemStatusComposer(store, nodes, objects, cloud_sync, registry, config)
    saga = ProvisioningSaga(store, registry, license_client, activity_log, config)
    registry.register_service(
        SYSTEM_API,
        SystemService(
            store,
            registry,
            saga,
            composer,
            activity_log,
            license_client,
            syslog,
            TarDiagnosticsCollector(store, config.version),
            config,
        ),
    )
    registry.register_service(POOL_API, PoolService(store, nodes))
    registry.register_service(ACCOUNT_API, AccountService(store, sessions, bcrypt_rounds=4))

    return Platform(
        config=config,
        store=store,
        sessions=sessions,
        registry=registry,
        transport=transport,
        license=license_client,
        nodes=nodes,
        objects=objects,
        cloud_sync=cloud_sync,
        syslog=syslog,
        activity_log=activity_log,
        saga=saga,
    )


@pytest.fixture
def config(data_dir):
    return make_config(data_dir)


@pytest.fixture
def platform(store, config):
    return build_platform(store, config)
