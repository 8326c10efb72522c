"""
Strata control plane server - main entry point.

This module starts the control plane with all components:
- Config store (SQLite-backed, in-memory indexed snapshot)
- Cluster change bus and propagator (peer commits -> reload)
- RPC registry with the system, pool and account services
- aiohttp RPC server
- Startup reconcile loop (debug level normalization)

Usage:
    strata-server
    python -m controlplane.strata_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - One ConfigStore per process, injected into every service
    - RPC requests are served only after the initial config load
    - Graceful shutdown stops background loops before closing the bus

How to change safely:
    - Register new services in ``Server.setup`` before the RPC app is built
    - Test the shutdown sequence when adding background tasks
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter

from .api import ACCOUNT_API, POOL_API, REMOTE_APIS, SYSTEM_API
from .cluster import ChangeBus, ChangePropagator, create_change_bus
from .config import ServerConfig
from .rpc import HttpRpcTransport, RpcRegistry, RpcServer, SessionManager, create_rpc_app
from .services import (
    AccountService,
    HttpLicenseClient,
    InMemoryActivityLog,
    PoolService,
    ProvisioningSaga,
    ReconcileLoop,
    RpcCloudSyncReader,
    RpcNodesAggregator,
    RpcObjectCounter,
    RsyslogConfigurator,
    SystemService,
    SystemStatusComposer,
    TarDiagnosticsCollector,
)
from .services.reconcile import BackoffPolicy, debug_level_normalizer
from .store import ConfigStore, DurableStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Server:
    """Control plane orchestrator.

    Attributes:
        config: Server configuration
        store: The process-wide ConfigStore
        registry: RPC registry holding local and remote service tables
        bus: Cluster change bus

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in setup())
        self.bus: ChangeBus | None = None
        self.store: ConfigStore | None = None
        self.sessions: SessionManager | None = None
        self.transport: HttpRpcTransport | None = None
        self.registry: RpcRegistry | None = None
        self.license_client: HttpLicenseClient | None = None
        self.activity_log = InMemoryActivityLog()
        self.rpc_server: RpcServer | None = None
        self.propagator: ChangePropagator | None = None
        self.reconcile_loop: ReconcileLoop | None = None

        self._tasks: list[asyncio.Task] = []

    async def setup(self) -> None:
        """Build and wire every component; load the config store."""
        config = self.config
        Path(config.store.data_dir).mkdir(parents=True, exist_ok=True)
        Path(config.public_dir).mkdir(parents=True, exist_ok=True)

        self.bus = create_change_bus(config.cluster)
        await self.bus.connect()

        durable = DurableStore(
            config.store.db_path,
            wal_mode=config.store.wal_mode,
            busy_timeout_ms=config.store.busy_timeout_ms,
        )
        self.store = ConfigStore(
            durable,
            bus=self.bus,
            server_secret=config.cluster.server_secret,
            node_id=config.cluster.node_id,
        )
        await self.store.load()

        self.sessions = SessionManager(self.store, config.cluster.server_secret)
        self.transport = HttpRpcTransport(config.rpc.peers, timeout=config.rpc.timeout_seconds)
        self.registry = RpcRegistry(self.store, self.sessions, self.transport)
        for api in REMOTE_APIS:
            self.registry.declare(api)

        self.license_client = HttpLicenseClient(config.license)
        timeout = config.rpc.timeout_seconds
        composer = SystemStatusComposer(
            self.store,
            RpcNodesAggregator(self.registry, timeout),
            RpcObjectCounter(self.registry, timeout),
            RpcCloudSyncReader(self.registry, timeout),
            self.registry,
            config,
        )
        saga = ProvisioningSaga(
            self.store, self.registry, self.license_client, self.activity_log, config
        )
        self.registry.register_service(
            SYSTEM_API,
            SystemService(
                self.store,
                self.registry,
                saga,
                composer,
                self.activity_log,
                self.license_client,
                RsyslogConfigurator(config.syslog_fragment_path),
                TarDiagnosticsCollector(self.store, config.version),
                config,
            ),
        )
        self.registry.register_service(
            POOL_API, PoolService(self.store, RpcNodesAggregator(self.registry, timeout))
        )
        self.registry.register_service(ACCOUNT_API, AccountService(self.store, self.sessions))

        self.propagator = ChangePropagator(self.bus, self.store)
        self.reconcile_loop = debug_level_normalizer(
            self.store, BackoffPolicy.from_config(config.reconcile)
        )

    def health(self) -> dict[str, Any]:
        ready = bool(self.store and self.store.is_finished_initial_load)
        payload: dict[str, Any] = {"healthy": ready}
        if ready:
            payload["revision"] = self.store.revision
        if self.propagator is not None:
            payload["propagator"] = self.propagator.stats
        if self.reconcile_loop is not None:
            payload["reconcile"] = self.reconcile_loop.state.value
        return payload

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting Strata control plane")
        self.config.log_config()
        self._running = True

        try:
            await self.setup()

            host, port = self.config.rpc.bind_address.rsplit(":", 1)
            self.rpc_server = RpcServer(
                create_rpc_app(self.registry, health_check=self.health), host, int(port)
            )
            await self.rpc_server.start()

            self._tasks.append(asyncio.create_task(self.propagator.start()))
            self._tasks.append(self.reconcile_loop.start())

            logger.info("Strata control plane started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping Strata control plane")

        if self.reconcile_loop:
            await self.reconcile_loop.stop()
        if self.propagator:
            await self.propagator.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.rpc_server:
            await self.rpc_server.stop()
        if self.store:
            await self.store.flush()
        if self.transport:
            await self.transport.aclose()
        if self.license_client:
            await self.license_client.aclose()
        if self.bus:
            await self.bus.close()

        self._running = False
        logger.info("Strata control plane stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
