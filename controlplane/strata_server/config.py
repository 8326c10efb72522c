"""
Configuration management for the Strata control plane.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for SERVER_SECRET
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class BusBackend(Enum):
    """Supported cluster change-bus backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


@dataclass(frozen=True)
class RpcConfig:
    """RPC server and client configuration.

    Attributes:
        bind_address: Address to bind the RPC HTTP server (host:port)
        peers: Mapping of service id to the base URL of the peer hosting it
        timeout_seconds: Default deadline for outgoing calls
    """

    bind_address: str = "0.0.0.0:5001"
    peers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> RpcConfig:
        """Load configuration from environment variables.

        RPC_PEERS has the form ``service=url,service=url``.
        """
        peers: dict[str, str] = {}
        raw = os.getenv("RPC_PEERS", "")
        for item in filter(None, (p.strip() for p in raw.split(","))):
            if "=" not in item:
                raise ValueError(f"Invalid RPC_PEERS entry '{item}', expected service=url")
            service, url = item.split("=", 1)
            peers[service.strip()] = url.strip()

        return cls(
            bind_address=os.getenv("RPC_BIND", "0.0.0.0:5001"),
            peers=peers,
            timeout_seconds=float(os.getenv("RPC_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class StoreConfig:
    """Durable config storage.

    Attributes:
        data_dir: Directory holding the SQLite file
        db_file: SQLite file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/strata"
    db_file: str = "config.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/strata"),
            db_file=os.getenv("STORE_DB_FILE", "config.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_file)


@dataclass(frozen=True)
class ClusterConfig:
    """Cluster membership and change propagation.

    Attributes:
        bus_backend: Which change bus to use
        kafka_brokers: Comma-separated list of broker addresses
        topic: Topic carrying change notices
        node_id: Identifier of this member (origin of published notices)
        node_address: Address other members use to reach this one
        server_secret: Shared secret identifying this member's cluster record
    """

    bus_backend: BusBackend = BusBackend.MEMORY
    kafka_brokers: str = "localhost:9092"
    topic: str = "strata-config-changes"
    node_id: str = "node-1"
    node_address: str = "127.0.0.1"
    server_secret: str = "dev-secret"

    @classmethod
    def from_env(cls) -> ClusterConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("CLUSTER_BUS", "memory").lower()
        try:
            backend = BusBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid CLUSTER_BUS '{backend_str}'. Must be one of: memory, kafka")

        return cls(
            bus_backend=backend,
            kafka_brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("CLUSTER_TOPIC", "strata-config-changes"),
            node_id=os.getenv("NODE_ID", "node-1"),
            node_address=os.getenv("NODE_ADDRESS", "127.0.0.1"),
            server_secret=os.getenv("SERVER_SECRET", "dev-secret"),
        )


@dataclass(frozen=True)
class ProvisioningConfig:
    """Tenant provisioning settings.

    Attributes:
        max_systems: Creation is refused once the system count exceeds this
        demo_enabled: Also create a demo pool/bucket and hosted demo agents
        num_demo_nodes: Number of demo agents to request
        demo_nodes_storage_limit: Storage limit per demo agent (bytes)
        demo_pool_name: Name of the demo pool
        demo_bucket_name: Name of the demo bucket
        ssl_port: Port advertised in derived base addresses
        web_port: Port of the management web server
    """

    max_systems: int = 20
    demo_enabled: bool = False
    num_demo_nodes: int = 3
    demo_nodes_storage_limit: int = 500 * 1024 * 1024
    demo_pool_name: str = "demo_pool"
    demo_bucket_name: str = "demo_bucket"
    ssl_port: int = 8443
    web_port: int = 8080

    @classmethod
    def from_env(cls) -> ProvisioningConfig:
        """Load configuration from environment variables."""
        return cls(
            max_systems=int(os.getenv("MAX_SYSTEMS", "20")),
            demo_enabled=_env_bool("LOCAL_AGENTS_ENABLED", "false"),
            num_demo_nodes=int(os.getenv("NUM_DEMO_NODES", "3")),
            demo_nodes_storage_limit=int(
                os.getenv("DEMO_NODES_STORAGE_LIMIT", str(500 * 1024 * 1024))
            ),
            demo_pool_name=os.getenv("DEMO_POOL_NAME", "demo_pool"),
            demo_bucket_name=os.getenv("DEMO_BUCKET_NAME", "demo_bucket"),
            ssl_port=int(os.getenv("SSL_PORT", "8443")),
            web_port=int(os.getenv("WEB_PORT", "8080")),
        )


@dataclass(frozen=True)
class LicenseConfig:
    """License (phone-home) server client settings.

    Attributes:
        base_url: Base URL; commands are POSTed to ``{base_url}/{command}``
        dev_mode: Skip the license server entirely
        timeout_seconds: HTTP timeout
        verify_tls: Verify the license server certificate
    """

    base_url: str = "https://phonehome.strata.example/api/license"
    dev_mode: bool = False
    timeout_seconds: float = 15.0
    verify_tls: bool = False

    @classmethod
    def from_env(cls) -> LicenseConfig:
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("PHONE_HOME_BASE_URL", "https://phonehome.strata.example/api/license"),
            dev_mode=_env_bool("DEV_MODE", "false"),
            timeout_seconds=float(os.getenv("LICENSE_TIMEOUT_SECONDS", "15")),
            verify_tls=_env_bool("LICENSE_VERIFY_TLS", "false"),
        )


@dataclass(frozen=True)
class ReconcileConfig:
    """Startup reconciliation loop timing.

    Attributes:
        initial_delay_ms: Delay before the first poll
        delay_ms: Delay after a failed poll
        max_delay_ms: Upper bound for the backoff delay
        backoff_factor: Multiplier applied to the delay after each failed poll
    """

    initial_delay_ms: int = 5000
    delay_ms: int = 5000
    max_delay_ms: int = 60000
    backoff_factor: float = 1.5

    @classmethod
    def from_env(cls) -> ReconcileConfig:
        """Load configuration from environment variables."""
        return cls(
            initial_delay_ms=int(os.getenv("RECONCILE_INITIAL_DELAY_MS", "5000")),
            delay_ms=int(os.getenv("RECONCILE_DELAY_MS", "5000")),
            max_delay_ms=int(os.getenv("RECONCILE_MAX_DELAY_MS", "60000")),
            backoff_factor=float(os.getenv("RECONCILE_BACKOFF_FACTOR", "1.5")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        rpc: RPC server/client configuration
        store: Durable storage configuration
        cluster: Cluster membership and propagation
        provisioning: Tenant provisioning settings
        license: License server client settings
        reconcile: Startup reconciliation timing
        observability: Logging configuration
        public_dir: Directory for exported files (audit CSV, diagnostics)
        syslog_fragment_path: rsyslog fragment written by configure_remote_syslog
        version: Version string reported by read_system
    """

    rpc: RpcConfig = field(default_factory=RpcConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    license: LicenseConfig = field(default_factory=LicenseConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    public_dir: str = "/var/lib/strata/public"
    syslog_fragment_path: str = "/etc/rsyslog.d/90-strata-remote.conf"
    version: str = "0.0.0"

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        from ._version import __version__

        config = cls(
            rpc=RpcConfig.from_env(),
            store=StoreConfig.from_env(),
            cluster=ClusterConfig.from_env(),
            provisioning=ProvisioningConfig.from_env(),
            license=LicenseConfig.from_env(),
            reconcile=ReconcileConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            public_dir=os.getenv("PUBLIC_DIR", "/var/lib/strata/public"),
            syslog_fragment_path=os.getenv(
                "SYSLOG_FRAGMENT_PATH", "/etc/rsyslog.d/90-strata-remote.conf"
            ),
            version=__version__,
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if ":" not in self.rpc.bind_address:
            raise ValueError("RPC_BIND must have the form host:port")
        if self.rpc.timeout_seconds <= 0:
            raise ValueError("RPC_TIMEOUT_SECONDS must be positive")
        if not self.cluster.server_secret:
            raise ValueError("SERVER_SECRET is required")
        if self.cluster.bus_backend == BusBackend.KAFKA and not self.cluster.kafka_brokers:
            raise ValueError("KAFKA_BROKERS is required when CLUSTER_BUS=kafka")
        if self.provisioning.max_systems < 0:
            raise ValueError("MAX_SYSTEMS must not be negative")
        if self.reconcile.backoff_factor < 1.0:
            raise ValueError("RECONCILE_BACKOFF_FACTOR must be >= 1.0")

        if self.cluster.server_secret == "dev-secret" and not self.license.dev_mode:
            logger.warning("SERVER_SECRET is the development default")

        if not os.path.exists(self.store.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.store.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "rpc_bind": self.rpc.bind_address,
                "rpc_peers": sorted(self.rpc.peers),
                "db_path": self.store.db_path,
                "cluster_bus": self.cluster.bus_backend.value,
                "kafka_brokers": self.cluster.kafka_brokers
                if self.cluster.bus_backend == BusBackend.KAFKA
                else None,
                "node_id": self.cluster.node_id,
                "max_systems": self.provisioning.max_systems,
                "demo_enabled": self.provisioning.demo_enabled,
                "license_dev_mode": self.license.dev_mode,
                "log_level": self.observability.log_level,
            },
        )
