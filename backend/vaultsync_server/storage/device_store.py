"""
Device metadata store for VaultSync.

Stores the devices registered to an account together with their sync
bookkeeping (status, last sync time, online flag). Fields a client sends
that have no dedicated column are kept in a JSON attributes object.

Invariants:
    - Devices are scoped to their owner (PRIMARY KEY (user_id, device_id))
    - Updates use PATCH semantics: unspecified fields keep their value
    - Idempotency tokens are recorded in the same transaction as the mutation
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

ENTITY = "device"

# Wire name -> column name
_COLUMNS = {
    "name": "name",
    "platform": "platform",
    "syncStatus": "sync_status",
    "lastSyncAt": "last_sync_at",
    "isOnline": "is_online",
}

# Keys that never end up in attributes
_RESERVED = {"id", "userId", "idempotencyKey", "createdAt", "updatedAt"}


@dataclass
class DeviceRecord:
    """A device registered to an account."""

    device_id: str
    user_id: str
    name: str | None
    platform: str | None
    sync_status: str
    last_sync_at: int | None
    is_online: bool
    created_at: int
    updated_at: int
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.device_id,
            "name": self.name,
            "platform": self.platform,
            "syncStatus": self.sync_status,
            "lastSyncAt": self.last_sync_at,
            "isOnline": self.is_online,
            "attributes": self.attributes,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _split_fields(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a wire payload into column values and free-form attributes."""
    columns: dict[str, Any] = {}
    attributes: dict[str, Any] = {}
    for key, value in data.items():
        if key in _RESERVED:
            continue
        if key in _COLUMNS:
            column = _COLUMNS[key]
            if column == "is_online":
                value = 1 if value else 0
            columns[column] = value
        elif key == "attributes" and isinstance(value, dict):
            attributes.update(value)
        else:
            attributes[key] = value
    return columns, attributes


class DeviceStore:
    """Per-user device metadata store."""

    def __init__(self, database: UserDatabase) -> None:
        self.database = database

    async def create_device(
        self,
        user_id: str,
        data: dict[str, Any],
        device_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> DeviceRecord:
        """Insert a new device.

        Args:
            user_id: Owner
            data: Wire payload (name, platform, syncStatus, ...)
            device_id: Optional client-chosen id (generated if not provided)
            idempotency_key: Optional token; a repeated key returns the
                device created the first time

        Returns:
            Created DeviceRecord

        Raises:
            ValidationError: If a device with that id already exists
        """
        device_id = device_id or str(uuid.uuid4())
        columns, attributes = _split_fields(data)
        now = now_ms()

        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if idempotency_key:
                    applied = lookup_applied(conn, user_id, ENTITY, idempotency_key)
                    if applied is not None:
                        conn.execute("ROLLBACK")
                        return self._get(conn, user_id, applied["id"])

                try:
                    conn.execute(
                        """
                        INSERT INTO devices (user_id, device_id, name, platform, sync_status,
                            last_sync_at, is_online, attributes_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            user_id,
                            device_id,
                            columns.get("name"),
                            columns.get("platform"),
                            columns.get("sync_status") or "idle",
                            columns.get("last_sync_at"),
                            columns.get("is_online", 0),
                            json.dumps(attributes),
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as e:
                    raise ValidationError(
                        f"Device already exists: {device_id}", field_name="id"
                    ) from e

                if idempotency_key:
                    record_applied(conn, user_id, ENTITY, idempotency_key, {"id": device_id})

                record = self._get(conn, user_id, device_id)
                conn.execute("COMMIT")

            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.debug("Created device", extra={"user_id": user_id, "device_id": device_id})
        return record

    async def update_device(
        self,
        user_id: str,
        device_id: str,
        patch: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> DeviceRecord:
        """Patch a device.

        Raises:
            NotFoundError: If the device does not exist
        """
        columns, attributes = _split_fields(patch)
        now = now_ms()

        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if idempotency_key and lookup_applied(conn, user_id, ENTITY, idempotency_key) is not None:
                    conn.execute("ROLLBACK")
                    return self._get(conn, user_id, device_id)

                existing = self._get(conn, user_id, device_id)

                merged = dict(existing.attributes)
                merged.update(attributes)
                assignments = ", ".join(f"{column} = ?" for column in columns)
                params: list[Any] = list(columns.values())
                sql = "UPDATE devices SET "
                if assignments:
                    sql += assignments + ", "
                sql += "attributes_json = ?, updated_at = ? WHERE user_id = ? AND device_id = ?"
                params.extend([json.dumps(merged), now, user_id, device_id])
                conn.execute(sql, params)

                if idempotency_key:
                    record_applied(conn, user_id, ENTITY, idempotency_key, {"id": device_id})

                record = self._get(conn, user_id, device_id)
                conn.execute("COMMIT")

            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.debug("Updated device", extra={"user_id": user_id, "device_id": device_id})
        return record

    async def delete_device(
        self,
        user_id: str,
        device_id: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Delete a device.

        Returns:
            {"id": device_id, "deleted": True}

        Raises:
            NotFoundError: If the device does not exist
        """
        result = {"id": device_id, "deleted": True}

        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if idempotency_key and lookup_applied(conn, user_id, ENTITY, idempotency_key) is not None:
                    conn.execute("ROLLBACK")
                    return result

                cursor = conn.execute(
                    "DELETE FROM devices WHERE user_id = ? AND device_id = ?",
                    (user_id, device_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Device not found", details={"device_id": device_id})

                if idempotency_key:
                    record_applied(conn, user_id, ENTITY, idempotency_key, result)

                conn.execute("COMMIT")

            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.debug("Deleted device", extra={"user_id": user_id, "device_id": device_id})
        return result

    async def get_device(self, user_id: str, device_id: str) -> DeviceRecord:
        """Get a device.

        Raises:
            NotFoundError: If the device does not exist
        """
        with self.database.connection(user_id) as conn:
            return self._get(conn, user_id, device_id)

    async def list_devices(self, user_id: str) -> list[DeviceRecord]:
        """List the user's devices, oldest first."""
        with self.database.connection(user_id) as conn:
            rows = conn.execute(
                "SELECT * FROM devices WHERE user_id = ? ORDER BY created_at, device_id",
                (user_id,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _get(self, conn: sqlite3.Connection, user_id: str, device_id: str) -> DeviceRecord:
        row = conn.execute(
            "SELECT * FROM devices WHERE user_id = ? AND device_id = ?",
            (user_id, device_id),
        ).fetchone()
        if not row:
            raise NotFoundError("Device not found", details={"device_id": device_id})
        return self._row_to_record(row)

    @staticmethod
    def _row_to_record(row: Any) -> DeviceRecord:
        return DeviceRecord(
            device_id=row["device_id"],
            user_id=row["user_id"],
            name=row["name"],
            platform=row["platform"],
            sync_status=row["sync_status"],
            last_sync_at=row["last_sync_at"],
            is_online=bool(row["is_online"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            attributes=json.loads(row["attributes_json"]),
        )
