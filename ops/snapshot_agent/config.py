"""
Configuration management for the snapshot agent.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation. The aggregate
AgentConfig is built once at process start and passed into every component;
nothing below this module reads the environment.

Invariants:
    - Optional settings have defaults matching the deployment manifests
    - Required settings (account name, account key for shared-key auth) have no default
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable; they are referenced by the container definitions
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Required configuration is missing or invalid."""

    pass


class StoreBackend(Enum):
    """Supported object store client implementations."""

    SHARED_KEY = "shared_key"
    CLI = "cli"


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'")


@dataclass(frozen=True)
class StoreConfig:
    """Object store configuration.

    Attributes:
        backend: Which client implementation to use
        account_name: Storage account name
        account_key: Base64 shared key (optional for the CLI backend)
        endpoint: Blob service endpoint (defaults to the public endpoint)
        container: Container holding the archives
        prefix: Key prefix for all archives
        namespace: Logical tenant partition under the prefix
        cli_path: Path of the management CLI executable
        timeout_seconds: HTTP request timeout
    """

    backend: StoreBackend = StoreBackend.SHARED_KEY
    account_name: str = ""
    account_key: str | None = None
    endpoint: str | None = None
    container: str = "pds-sqlite"
    prefix: str = "snapshots"
    namespace: str = "default"
    cli_path: str = "az"
    timeout_seconds: float = 300.0

    @property
    def namespace_prefix(self) -> str:
        """Listing prefix for this namespace, with trailing slash."""
        return f"{self.prefix}/{self.namespace}/"

    @property
    def endpoint_url(self) -> str:
        if self.endpoint:
            return self.endpoint.rstrip("/")
        return f"https://{self.account_name}.blob.core.windows.net"

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "shared_key").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ConfigError(
                f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: shared_key, cli"
            )

        return cls(
            backend=backend,
            account_name=os.getenv("AZURE_STORAGE_ACCOUNT_NAME", ""),
            account_key=os.getenv("AZURE_STORAGE_ACCOUNT_KEY") or None,
            endpoint=os.getenv("AZURE_STORAGE_ENDPOINT") or None,
            container=os.getenv("SNAPSHOT_CONTAINER", "pds-sqlite"),
            prefix=os.getenv("SNAPSHOT_PREFIX", "snapshots").strip("/"),
            namespace=os.getenv("SNAPSHOT_NAMESPACE", os.getenv("PDS_ID", "default")),
            cli_path=os.getenv("AZ_CLI_PATH", "az"),
            timeout_seconds=float(_int_env("HTTP_TIMEOUT_SECONDS", 300)),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot producer configuration.

    Attributes:
        data_dir: Live data root owned by the primary workload
        work_dir: Scratch directory for staging trees and archives
        interval_seconds: Wall-clock interval between iteration starts
        retain_count: Number of archives kept per namespace
        db_patterns: Glob patterns identifying SQLite database files
        busy_timeout_ms: SQLite busy timeout used by the capture connections
        compression_level: zstd compression level
        restore_wait_poll_seconds: Poll interval while waiting for the restore sentinel
    """

    data_dir: str = "/data"
    work_dir: str = "/work"
    interval_seconds: int = 15
    retain_count: int = 200
    db_patterns: tuple[str, ...] = ("*.sqlite",)
    busy_timeout_ms: int = 5000
    compression_level: int = 3
    restore_wait_poll_seconds: int = 2

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/data"),
            work_dir=os.getenv("WORK_DIR", "/work"),
            interval_seconds=_int_env("INTERVAL_SECONDS", 15),
            retain_count=_int_env("RETAIN_COUNT", 200),
            db_patterns=_split_list(os.getenv("DB_PATTERNS", "*.sqlite")),
            busy_timeout_ms=_int_env("SQLITE_BUSY_TIMEOUT_MS", 5000),
            compression_level=_int_env("ZSTD_LEVEL", 3),
            restore_wait_poll_seconds=_int_env("RESTORE_WAIT_POLL_SECONDS", 2),
        )


@dataclass(frozen=True)
class RestoreConfig:
    """Restore coordinator and auditor configuration.

    Attributes:
        sentinel_path: Marker written once restore has been attempted
        populated_markers: Names under the data root that indicate existing state
        min_archive_bytes: Size below which the auditor flags an archive
    """

    sentinel_path: str = "/data/.restore-complete"
    populated_markers: tuple[str, ...] = ("pds.sqlite", "actors")
    min_archive_bytes: int = 10240

    @classmethod
    def from_env(cls, data_dir: str) -> RestoreConfig:
        """Load configuration from environment variables."""
        return cls(
            sentinel_path=os.getenv(
                "SENTINEL_PATH", str(Path(data_dir) / ".restore-complete")
            ),
            populated_markers=_split_list(os.getenv("POPULATED_MARKERS", "pds.sqlite,actors")),
            min_archive_bytes=_int_env("MIN_ARCHIVE_BYTES", 10240),
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
class AgentConfig:
    """Complete agent configuration.

    Attributes:
        store: Object store configuration
        snapshot: Snapshot producer configuration
        restore: Restore and audit configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Load complete configuration from environment variables.

        Returns:
            AgentConfig with all sections populated from environment.

        Raises:
            ConfigError: If required configuration is missing or invalid.
        """
        snapshot = SnapshotConfig.from_env()
        config = cls(
            store=StoreConfig.from_env(),
            snapshot=snapshot,
            restore=RestoreConfig.from_env(snapshot.data_dir),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigError: If configuration is invalid.
        """
        if not self.store.account_name:
            raise ConfigError("AZURE_STORAGE_ACCOUNT_NAME is required")
        if self.store.backend == StoreBackend.SHARED_KEY and not self.store.account_key:
            raise ConfigError("AZURE_STORAGE_ACCOUNT_KEY is required when STORE_BACKEND=shared_key")
        if self.store.account_key:
            try:
                base64.b64decode(self.store.account_key, validate=True)
            except (binascii.Error, ValueError):
                raise ConfigError("AZURE_STORAGE_ACCOUNT_KEY is not valid base64")
        if not self.store.container:
            raise ConfigError("SNAPSHOT_CONTAINER must not be empty")
        if not self.store.namespace or "/" in self.store.namespace:
            raise ConfigError("SNAPSHOT_NAMESPACE must be a non-empty name without '/'")

        # Archive keys have one-second resolution
        if self.snapshot.interval_seconds < 1:
            raise ConfigError("INTERVAL_SECONDS must be at least 1")
        if self.snapshot.retain_count < 1:
            raise ConfigError("RETAIN_COUNT must be at least 1")
        if not self.snapshot.db_patterns:
            raise ConfigError("DB_PATTERNS must name at least one pattern")
        if self.restore.min_archive_bytes < 0:
            raise ConfigError("MIN_ARCHIVE_BYTES must not be negative")

        if not os.path.exists(self.snapshot.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.snapshot.data_dir}. "
                "It will be created by the restore step."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Agent configuration loaded",
            extra={
                "store_backend": self.store.backend.value,
                "account_name": self.store.account_name,
                "account_key_set": self.store.account_key is not None,
                "container": self.store.container,
                "namespace_prefix": self.store.namespace_prefix,
                "data_dir": self.snapshot.data_dir,
                "work_dir": self.snapshot.work_dir,
                "interval_seconds": self.snapshot.interval_seconds,
                "retain_count": self.snapshot.retain_count,
                "sentinel_path": self.restore.sentinel_path,
                "log_level": self.observability.log_level,
            },
        )
