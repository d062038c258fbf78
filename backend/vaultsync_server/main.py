"""
VaultSync Server - Main entry point.

This module starts the VaultSync server with all components:
- Per-user SQLite stores (blobs, devices, security logs)
- Sync queue with the entity applier registry
- Notification hub
- HTTP server (REST + SSE)
- Retention sweep loop (completed sync items)

Usage:
    vaultsync-server
    python -m backend.vaultsync_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The data directory exists before the first request is served
    - Graceful shutdown closes notification streams before the HTTP server
    - All components share one UserDatabase

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter

from .api import create_http_app, run_http_server
from .apply import create_default_registry
from .config import ServerConfig
from .notify import InMemoryNotificationHub
from .storage import DeviceStore, EncryptedBlobStore, SecurityLogStore, UserDatabase
from .sync import CleanupLoop, RetryPolicy, SyncQueue

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
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """VaultSync Server orchestrator.

    Manages the lifecycle of all server components:
    - Stores and sync queue
    - Notification hub
    - HTTP server
    - Background retention sweep

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.database: UserDatabase | None = None
        self.blob_store: EncryptedBlobStore | None = None
        self.device_store: DeviceStore | None = None
        self.security_log_store: SecurityLogStore | None = None
        self.queue: SyncQueue | None = None
        self.hub: InMemoryNotificationHub | None = None
        self.cleanup_loop: CleanupLoop | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    def build(self) -> None:
        """Construct stores, queue and hub without starting anything."""
        data_dir = Path(self.config.storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)

        self.database = UserDatabase(
            data_dir=str(data_dir),
            wal_mode=self.config.storage.wal_mode,
            busy_timeout_ms=self.config.storage.busy_timeout_ms,
            cache_size_pages=self.config.storage.cache_size_pages,
        )
        self.blob_store = EncryptedBlobStore(self.database)
        self.device_store = DeviceStore(self.database)
        self.security_log_store = SecurityLogStore(self.database)

        registry = create_default_registry(
            self.device_store, self.blob_store, self.security_log_store
        )
        self.queue = SyncQueue(
            self.database,
            registry,
            retry_policy=RetryPolicy.from_config(self.config.sync),
            device_store=self.device_store,
            retention_days=self.config.sync.retention_days,
        )
        self.hub = InMemoryNotificationHub(self.config.notifications.subscriber_buffer)

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting VaultSync server")
        self.config.log_config()

        try:
            self.build()

            app = create_http_app(
                self.queue,
                self.blob_store,
                self.hub,
                config=self.config.http,
                notifications=self.config.notifications,
            )
            self._tasks.append(
                asyncio.create_task(
                    run_http_server(app, self.config.http.host, self.config.http.port)
                )
            )

            if self.config.sync.cleanup_enabled:
                self.cleanup_loop = CleanupLoop(
                    self.queue,
                    interval_seconds=self.config.sync.cleanup_interval_seconds,
                )
                self._tasks.append(asyncio.create_task(self.cleanup_loop.start()))

            self._running = True
            logger.info("VaultSync server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and not self._tasks:
            return

        logger.info("Stopping VaultSync server")

        if self.cleanup_loop:
            await self.cleanup_loop.stop()

        # Ends open SSE streams so the HTTP runner can shut down
        if self.hub:
            self.hub.close()

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self._running = False
        logger.info("VaultSync server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
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
