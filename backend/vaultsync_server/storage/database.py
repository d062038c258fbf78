"""
Per-user SQLite database for VaultSync.

Every user owns one SQLite file holding all of that user's authoritative
state:
- Sync queue items
- Encrypted blob records
- Device metadata
- Security log entries (append-only)
- Applied idempotency tokens

Keeping one file per user makes isolation structural: no query issued
through a user's connection can see another user's rows.

Invariants:
    - One SQLite file per user
    - Schema is created lazily on first connection to a file
    - Multi-statement writes run inside BEGIN IMMEDIATE transactions
    - The owning user_id is recorded inside the file (user_meta)

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and add an ALTER step, never rewrite tables
    - Use transactions for all write operations

Table schema:
    sync_queue:
        - item_id TEXT PRIMARY KEY (uuid hex)
        - user_id TEXT
        - seq INTEGER (insertion counter, ordering tie-breaker)
        - operation TEXT (CREATE | UPDATE | DELETE)
        - entity TEXT (device | blob | securityLog)
        - entity_id TEXT NULL
        - data_json TEXT
        - status TEXT (pending | syncing | completed | failed)
        - retry_count INTEGER
        - error TEXT NULL, error_code TEXT NULL
        - result_json TEXT NULL
        - created_at INTEGER, updated_at INTEGER (Unix ms)

    encrypted_blobs:
        - blob_id TEXT UNIQUE
        - user_id TEXT, namespace TEXT, item_key TEXT
        - ciphertext TEXT, nonce TEXT, mac TEXT, aad TEXT NULL
        - version INTEGER
        - created_at INTEGER, updated_at INTEGER
        - PRIMARY KEY (user_id, namespace, item_key)

    devices:
        - user_id TEXT, device_id TEXT
        - name, platform, sync_status TEXT, last_sync_at INTEGER NULL
        - is_online INTEGER, attributes_json TEXT
        - created_at INTEGER, updated_at INTEGER
        - PRIMARY KEY (user_id, device_id)

    security_logs:
        - user_id TEXT, log_id TEXT
        - event_type, severity, message, device_id TEXT
        - metadata_json TEXT, created_at INTEGER
        - PRIMARY KEY (user_id, log_id)

    applied_operations:
        - user_id TEXT, entity TEXT, idempotency_key TEXT
        - result_json TEXT, applied_at INTEGER
        - UNIQUE (user_id, entity, idempotency_key)
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import StorageUnavailableError

logger = logging.getLogger(__name__)

_SAFE_USER_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


class UserDatabase:
    """Manages the per-user SQLite files.

    Thread safety:
        Each connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> db = UserDatabase("/var/lib/vaultsync")
        >>> with db.connection("user_42") as conn:
        ...     conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the database manager.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._initialized: set[Path] = set()

    def _get_db_path(self, user_id: str) -> Path:
        """Get database file path for a user."""
        if not user_id:
            raise ValueError("user_id is required")
        if _SAFE_USER_ID.match(user_id):
            return self.data_dir / f"user_{user_id}.db"
        # Hash anything that could escape the directory or collide after sanitizing
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]
        return self.data_dir / f"user_h{digest}.db"

    def database_paths(self) -> list[Path]:
        """List all user database files."""
        if not self.data_dir.exists():
            return []
        return sorted(self.data_dir.glob("user_*.db"))

    @contextmanager
    def connection(self, user_id: str, create: bool = True) -> Iterator[sqlite3.Connection]:
        """Get a database connection for a user.

        Args:
            user_id: User identifier
            create: Whether to create the database if it does not exist

        Yields:
            SQLite connection

        Raises:
            StorageUnavailableError: If the database cannot be opened
        """
        db_path = self._get_db_path(user_id)
        if not create and not db_path.exists():
            raise StorageUnavailableError(
                f"User database not found: {user_id}", details={"user_id": user_id}
            )

        with self._open(db_path, owner=user_id) as conn:
            yield conn

    @contextmanager
    def connection_for_path(self, db_path: Path) -> Iterator[sqlite3.Connection]:
        """Open an existing user database by file path (used by sweeps)."""
        with self._open(db_path, owner=None) as conn:
            yield conn

    @contextmanager
    def _open(self, db_path: Path, owner: str | None) -> Iterator[sqlite3.Connection]:
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(
                f"Cannot open database {db_path.name}: {e}", details={"path": str(db_path)}
            ) from e

        conn.row_factory = sqlite3.Row
        try:
            try:
                conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
                conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")

                if db_path not in self._initialized:
                    self._create_schema(conn)
                    self._initialized.add(db_path)
                if owner is not None:
                    conn.execute(
                        "INSERT OR IGNORE INTO user_meta (key, value) VALUES ('user_id', ?)",
                        (owner,),
                    )
            except sqlite3.Error as e:
                raise StorageUnavailableError(
                    f"Cannot initialize database {db_path.name}: {e}",
                    details={"path": str(db_path)},
                ) from e

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            -- Schema version tracking
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            -- Offline mutation queue
            CREATE TABLE IF NOT EXISTS sync_queue (
                item_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                operation TEXT NOT NULL,
                entity TEXT NOT NULL,
                entity_id TEXT,
                data_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending',
                retry_count INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                error_code TEXT,
                result_json TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sync_queue_pending
                ON sync_queue(user_id, status, created_at, seq);
            CREATE INDEX IF NOT EXISTS idx_sync_queue_retention
                ON sync_queue(status, updated_at);

            -- Encrypted blobs, opaque to the server
            CREATE TABLE IF NOT EXISTS encrypted_blobs (
                blob_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                namespace TEXT NOT NULL,
                item_key TEXT NOT NULL,
                ciphertext TEXT NOT NULL,
                nonce TEXT NOT NULL,
                mac TEXT NOT NULL,
                aad TEXT,
                version INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (user_id, namespace, item_key)
            );

            -- Device metadata
            CREATE TABLE IF NOT EXISTS devices (
                user_id TEXT NOT NULL,
                device_id TEXT NOT NULL,
                name TEXT,
                platform TEXT,
                sync_status TEXT NOT NULL DEFAULT 'idle',
                last_sync_at INTEGER,
                is_online INTEGER NOT NULL DEFAULT 0,
                attributes_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (user_id, device_id)
            );

            -- Security log, append-only
            CREATE TABLE IF NOT EXISTS security_logs (
                user_id TEXT NOT NULL,
                log_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                severity TEXT NOT NULL DEFAULT 'info',
                message TEXT,
                device_id TEXT,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                PRIMARY KEY (user_id, log_id)
            );

            CREATE INDEX IF NOT EXISTS idx_security_logs_created
                ON security_logs(user_id, created_at DESC);

            -- Applied idempotency tokens
            CREATE TABLE IF NOT EXISTS applied_operations (
                user_id TEXT NOT NULL,
                entity TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                result_json TEXT,
                applied_at INTEGER NOT NULL,
                UNIQUE (user_id, entity, idempotency_key)
            );

            -- Record schema version
            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)


def lookup_applied(
    conn: sqlite3.Connection,
    user_id: str,
    entity: str,
    idempotency_key: str,
) -> dict[str, Any] | None:
    """Return the stored result for an already-applied idempotency key.

    Returns:
        The recorded result (possibly an empty dict), or None if the key
        has not been applied yet
    """
    row = conn.execute(
        """
        SELECT result_json FROM applied_operations
        WHERE user_id = ? AND entity = ? AND idempotency_key = ?
        """,
        (user_id, entity, idempotency_key),
    ).fetchone()
    if row is None:
        return None
    return json.loads(row["result_json"]) if row["result_json"] else {}


def record_applied(
    conn: sqlite3.Connection,
    user_id: str,
    entity: str,
    idempotency_key: str,
    result: dict[str, Any] | None,
) -> None:
    """Record an applied idempotency key in the caller's transaction."""
    conn.execute(
        """
        INSERT INTO applied_operations (user_id, entity, idempotency_key, result_json, applied_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            user_id,
            entity,
            idempotency_key,
            json.dumps(result) if result is not None else None,
            now_ms(),
        ),
    )
