"""
Append-only security log store for VaultSync.

Security events reported by devices (sign-ins, key rotations, failed
unlocks, ...) are appended here. There is no update or delete path.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..errors import NotFoundError, ValidationError
from .database import UserDatabase, lookup_applied, now_ms, record_applied

logger = logging.getLogger(__name__)

ENTITY = "securityLog"


@dataclass
class SecurityLogRecord:
    """A single security log entry."""

    log_id: str
    user_id: str
    event_type: str
    severity: str
    message: str | None
    device_id: str | None
    created_at: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.log_id,
            "eventType": self.event_type,
            "severity": self.severity,
            "message": self.message,
            "deviceId": self.device_id,
            "metadata": self.metadata,
            "createdAt": self.created_at,
        }


class SecurityLogStore:
    """Per-user append-only security log."""

    def __init__(self, database: UserDatabase) -> None:
        self.database = database

    async def append(
        self,
        user_id: str,
        event_type: str,
        severity: str = "info",
        message: str | None = None,
        device_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: int | None = None,
        idempotency_key: str | None = None,
    ) -> SecurityLogRecord:
        """Append an entry.

        A repeated idempotency_key returns the entry recorded the first time.

        Raises:
            ValidationError: If event_type is missing
        """
        if not event_type:
            raise ValidationError("eventType is required", field_name="eventType")

        log_id = uuid.uuid4().hex
        ts = created_at or now_ms()
        metadata = metadata or {}

        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if idempotency_key:
                    applied = lookup_applied(conn, user_id, ENTITY, idempotency_key)
                    if applied is not None:
                        conn.execute("ROLLBACK")
                        return self._get(conn, user_id, applied["id"])

                conn.execute(
                    """
                    INSERT INTO security_logs (user_id, log_id, event_type, severity,
                        message, device_id, metadata_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, log_id, event_type, severity, message, device_id,
                     json.dumps(metadata), ts),
                )
                if idempotency_key:
                    record_applied(conn, user_id, ENTITY, idempotency_key, {"id": log_id})

                conn.execute("COMMIT")

            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Appended security log",
            extra={"user_id": user_id, "log_id": log_id, "event_type": event_type},
        )

        return SecurityLogRecord(
            log_id=log_id,
            user_id=user_id,
            event_type=event_type,
            severity=severity,
            message=message,
            device_id=device_id,
            created_at=ts,
            metadata=metadata,
        )

    async def get_log(self, user_id: str, log_id: str) -> SecurityLogRecord:
        """Get an entry by id.

        Raises:
            NotFoundError: If the entry does not exist
        """
        with self.database.connection(user_id) as conn:
            return self._get(conn, user_id, log_id)

    async def list_logs(
        self,
        user_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SecurityLogRecord]:
        """List entries, newest first."""
        with self.database.connection(user_id) as conn:
            rows = conn.execute(
                """
                SELECT * FROM security_logs
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    async def count(self, user_id: str) -> int:
        """Number of entries for the user."""
        with self.database.connection(user_id) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM security_logs WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row["n"]

    def _get(self, conn: sqlite3.Connection, user_id: str, log_id: str) -> SecurityLogRecord:
        row = conn.execute(
            "SELECT * FROM security_logs WHERE user_id = ? AND log_id = ?",
            (user_id, log_id),
        ).fetchone()
        if not row:
            raise NotFoundError("Security log not found", details={"log_id": log_id})
        return self._row_to_record(row)

    @staticmethod
    def _row_to_record(row: Any) -> SecurityLogRecord:
        return SecurityLogRecord(
            log_id=row["log_id"],
            user_id=row["user_id"],
            event_type=row["event_type"],
            severity=row["severity"],
            message=row["message"],
            device_id=row["device_id"],
            created_at=row["created_at"],
            metadata=json.loads(row["metadata_json"]),
        )
