"""
Control plane services: the handlers behind the RPC tables and the
background work around them.
"""

from .account_service import AccountService
from .activity_log import ActivityEntry, ActivityQuery, InMemoryActivityLog, write_activity_csv
from .collaborators import (
    HttpLicenseClient,
    RpcCloudSyncReader,
    RpcNodesAggregator,
    RpcObjectCounter,
    RsyslogConfigurator,
    TarDiagnosticsCollector,
)
from .pool_service import PoolService
from .provisioning import CreateSystemParams, ProvisioningContext, ProvisioningSaga
from .reconcile import BackoffPolicy, LoopState, ReconcileLoop, debug_level_normalizer
from .status import SystemStatusComposer
from .system_service import SystemService

__all__ = [
    "AccountService",
    "ActivityEntry",
    "ActivityQuery",
    "BackoffPolicy",
    "CreateSystemParams",
    "HttpLicenseClient",
    "InMemoryActivityLog",
    "LoopState",
    "PoolService",
    "ProvisioningContext",
    "ProvisioningSaga",
    "ReconcileLoop",
    "RpcCloudSyncReader",
    "RpcNodesAggregator",
    "RpcObjectCounter",
    "RsyslogConfigurator",
    "SystemService",
    "SystemStatusComposer",
    "TarDiagnosticsCollector",
    "debug_level_normalizer",
    "write_activity_csv",
]
