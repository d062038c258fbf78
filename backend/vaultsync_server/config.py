"""
Configuration management for VaultSync Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for per-user SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/vaultsync"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/vaultsync"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync queue and retention configuration.

    Attributes:
        retention_days: Age after which completed items are purged
        cleanup_enabled: Whether the periodic retention sweep runs
        cleanup_interval_seconds: Interval between retention sweeps
        max_attempts: Failed items stop being retried after this many attempts
            (None = unlimited)
        backoff_base_ms: Base delay before a failed item is retried (0 = none)
        backoff_max_ms: Upper bound for the retry delay
        retry_unsupported: Whether items failing with an unsupported
            operation are retried on later drains
    """

    retention_days: int = 7
    cleanup_enabled: bool = True
    cleanup_interval_seconds: int = 3600
    max_attempts: int | None = None
    backoff_base_ms: int = 0
    backoff_max_ms: int = 300_000
    retry_unsupported: bool = True

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        max_attempts = os.getenv("SYNC_MAX_ATTEMPTS")
        return cls(
            retention_days=int(os.getenv("SYNC_RETENTION_DAYS", "7")),
            cleanup_enabled=_env_bool("SYNC_CLEANUP_ENABLED", "true"),
            cleanup_interval_seconds=int(os.getenv("SYNC_CLEANUP_INTERVAL_SECONDS", "3600")),
            max_attempts=int(max_attempts) if max_attempts else None,
            backoff_base_ms=int(os.getenv("SYNC_BACKOFF_BASE_MS", "0")),
            backoff_max_ms=int(os.getenv("SYNC_BACKOFF_MAX_MS", "300000")),
            retry_unsupported=_env_bool("SYNC_RETRY_UNSUPPORTED", "true"),
        )


@dataclass(frozen=True)
class NotificationConfig:
    """Notification fan-out configuration.

    Attributes:
        subscriber_buffer: Events buffered per subscriber before the oldest is dropped
        keepalive_seconds: Interval between SSE keepalive comments
    """

    subscriber_buffer: int = 100
    keepalive_seconds: int = 15

    @classmethod
    def from_env(cls) -> NotificationConfig:
        """Load configuration from environment variables."""
        return cls(
            subscriber_buffer=int(os.getenv("NOTIFY_SUBSCRIBER_BUFFER", "100")),
            keepalive_seconds=int(os.getenv("NOTIFY_KEEPALIVE_SECONDS", "15")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP request adapter configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("HTTP_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
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
        storage: Local storage configuration
        sync: Sync queue configuration
        notifications: Notification fan-out configuration
        http: HTTP adapter configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            sync=SyncConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.data_dir:
            raise ValueError("DATA_DIR must not be empty")

        if self.sync.retention_days < 1:
            raise ValueError("SYNC_RETENTION_DAYS must be at least 1")

        if self.sync.max_attempts is not None and self.sync.max_attempts < 1:
            raise ValueError("SYNC_MAX_ATTEMPTS must be at least 1 when set")

        if self.sync.backoff_base_ms < 0 or self.sync.backoff_max_ms < 0:
            raise ValueError("SYNC_BACKOFF_* values must not be negative")

        if self.notifications.subscriber_buffer < 1:
            raise ValueError("NOTIFY_SUBSCRIBER_BUFFER must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "retention_days": self.sync.retention_days,
                "cleanup_enabled": self.sync.cleanup_enabled,
                "max_attempts": self.sync.max_attempts,
                "log_level": self.observability.log_level,
            },
        )
