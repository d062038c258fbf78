"""
Encrypted blob store for VaultSync.

Authoritative key/value storage of opaque ciphertext records keyed by
(user_id, namespace, item_key). The server never parses ciphertext, nonce,
mac or aad; they are stored and returned verbatim.

Invariants:
    - At most one live record per (user_id, namespace, item_key)
    - Writes replace every payload field wholesale (no partial patching)
    - Version is caller-supplied; it is compared only when the caller
      asks for a conditional write (expected_version)
    - Lookups are always scoped to the caller's own database

How to change safely:
    - Never log or inspect ciphertext
    - Keep list() free of payload fields so listings stay small
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from ..errors import NotFoundError, ValidationError, VersionConflictError
from .database import UserDatabase, now_ms

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"


def parse_version(value: Any, field_name: str = "version") -> int:
    """Parse a caller-supplied blob version.

    Accepts non-negative ints and numeric strings ("2").

    Raises:
        ValidationError: If the value is not a non-negative integer
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field_name=field_name)
    if isinstance(value, int):
        version = value
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        version = int(value.strip())
    else:
        raise ValidationError(f"{field_name} must be an integer", field_name=field_name)

    if version < 0:
        raise ValidationError(f"{field_name} must not be negative", field_name=field_name)
    return version


@dataclass
class EncryptedBlobRecord:
    """A stored ciphertext record.

    Attributes:
        blob_id: Server-assigned identifier (used for queued deletes)
        user_id: Owner
        namespace: Client-chosen namespace
        item_key: Item key within the namespace
        ciphertext: Opaque ciphertext
        nonce: Opaque nonce
        mac: Opaque authentication tag
        aad: Optional opaque associated data
        version: Caller-maintained version
        created_at: Creation timestamp (Unix ms)
        updated_at: Last write timestamp (Unix ms)
    """

    blob_id: str
    user_id: str
    namespace: str
    item_key: str
    ciphertext: str
    nonce: str
    mac: str
    aad: str | None
    version: int
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        """Wire representation."""
        return {
            "id": self.blob_id,
            "namespace": self.namespace,
            "itemKey": self.item_key,
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "mac": self.mac,
            "aad": self.aad,
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class BlobDescriptor:
    """Lightweight listing entry (no ciphertext)."""

    namespace: str
    item_key: str
    version: int
    aad: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "itemKey": self.item_key,
            "version": self.version,
            "aad": self.aad,
        }


@dataclass
class BlobPutResult:
    """Outcome of a put."""

    blob_id: str
    namespace: str
    item_key: str
    version: int
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.blob_id,
            "namespace": self.namespace,
            "itemKey": self.item_key,
            "version": self.version,
            "created": self.created,
        }


class EncryptedBlobStore:
    """Versioned store of opaque encrypted records.

    Example:
        >>> store = EncryptedBlobStore(UserDatabase("/var/lib/vaultsync"))
        >>> await store.put("u1", "default", "k1", ct, nonce, mac, version=1)
        >>> record = await store.get("u1", "default", "k1")
    """

    def __init__(self, database: UserDatabase) -> None:
        self.database = database

    async def put(
        self,
        user_id: str,
        namespace: str,
        item_key: str,
        ciphertext: str,
        nonce: str,
        mac: str,
        version: int | str | None,
        aad: str | None = None,
        expected_version: int | str | None = None,
    ) -> BlobPutResult:
        """Upsert the record identified by (user_id, namespace, item_key).

        Args:
            user_id: Owner
            namespace: Namespace
            item_key: Item key
            ciphertext: Opaque ciphertext
            nonce: Opaque nonce
            mac: Opaque authentication tag
            version: Version to store, as given; required
            aad: Optional opaque associated data
            expected_version: If set, the write only succeeds when the stored
                version equals it (0 means the record must not exist yet)

        Returns:
            BlobPutResult with the stored key and version

        Raises:
            ValidationError: If a required field is missing or version is invalid
            VersionConflictError: If expected_version does not match
        """
        if not namespace:
            raise ValidationError("namespace is required", field_name="namespace")
        if not item_key:
            raise ValidationError("itemKey is required", field_name="itemKey")
        for name, value in (("ciphertext", ciphertext), ("nonce", nonce), ("mac", mac)):
            if not isinstance(value, str) or not value:
                raise ValidationError(f"{name} is required", field_name=name)
        if aad is not None and not isinstance(aad, str):
            raise ValidationError("aad must be a string", field_name="aad")

        if version is None or version == "":
            raise ValidationError("version is required", field_name="version")
        new_version = parse_version(version)
        expected = (
            parse_version(expected_version, "expectedVersion")
            if expected_version is not None
            else None
        )
        now = now_ms()

        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    """
                    SELECT blob_id, version FROM encrypted_blobs
                    WHERE user_id = ? AND namespace = ? AND item_key = ?
                    """,
                    (user_id, namespace, item_key),
                ).fetchone()

                if expected is not None:
                    current = row["version"] if row else None
                    matches = current == expected if row else expected == 0
                    if not matches:
                        raise VersionConflictError(item_key, expected, current)

                if row:
                    blob_id = row["blob_id"]
                    conn.execute(
                        """
                        UPDATE encrypted_blobs
                        SET ciphertext = ?, nonce = ?, mac = ?, aad = ?, version = ?,
                            updated_at = ?
                        WHERE user_id = ? AND namespace = ? AND item_key = ?
                        """,
                        (ciphertext, nonce, mac, aad, new_version, now,
                         user_id, namespace, item_key),
                    )
                else:
                    blob_id = uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO encrypted_blobs (blob_id, user_id, namespace, item_key,
                            ciphertext, nonce, mac, aad, version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (blob_id, user_id, namespace, item_key,
                         ciphertext, nonce, mac, aad, new_version, now, now),
                    )

                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Stored blob",
            extra={
                "user_id": user_id,
                "namespace": namespace,
                "item_key": item_key,
                "version": new_version,
                "created": row is None,
            },
        )

        return BlobPutResult(
            blob_id=blob_id,
            namespace=namespace,
            item_key=item_key,
            version=new_version,
            created=row is None,
        )

    async def get(self, user_id: str, namespace: str, item_key: str) -> EncryptedBlobRecord:
        """Get a record by its triple.

        Raises:
            NotFoundError: If the user has no record for the triple
        """
        with self.database.connection(user_id) as conn:
            row = conn.execute(
                """
                SELECT * FROM encrypted_blobs
                WHERE user_id = ? AND namespace = ? AND item_key = ?
                """,
                (user_id, namespace, item_key),
            ).fetchone()

        if not row:
            raise NotFoundError(
                "Blob not found", details={"namespace": namespace, "item_key": item_key}
            )
        return self._row_to_record(row)

    async def list(self, user_id: str, namespace: str | None = None) -> list[BlobDescriptor]:
        """List the user's records without payload fields.

        Args:
            user_id: Owner
            namespace: Optional namespace filter

        Returns:
            Descriptors ordered by namespace then item key
        """
        query = "SELECT namespace, item_key, version, aad FROM encrypted_blobs WHERE user_id = ?"
        params: list[Any] = [user_id]
        if namespace is not None:
            query += " AND namespace = ?"
            params.append(namespace)
        query += " ORDER BY namespace, item_key"

        with self.database.connection(user_id) as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            BlobDescriptor(
                namespace=row["namespace"],
                item_key=row["item_key"],
                version=row["version"],
                aad=row["aad"],
            )
            for row in rows
        ]

    async def delete(self, user_id: str, blob_id: str) -> EncryptedBlobRecord:
        """Delete a record by its server-assigned id.

        Returns:
            The removed record

        Raises:
            NotFoundError: If the user has no record with that id
        """
        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM encrypted_blobs WHERE user_id = ? AND blob_id = ?",
                    (user_id, blob_id),
                ).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    raise NotFoundError("Blob not found", details={"blob_id": blob_id})

                conn.execute(
                    "DELETE FROM encrypted_blobs WHERE user_id = ? AND blob_id = ?",
                    (user_id, blob_id),
                )
                conn.execute("COMMIT")

            except NotFoundError:
                raise
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Deleted blob", extra={"user_id": user_id, "blob_id": blob_id})
        return self._row_to_record(row)

    async def delete_item(self, user_id: str, namespace: str, item_key: str) -> EncryptedBlobRecord:
        """Delete a record by its triple.

        Raises:
            NotFoundError: If the user has no record for the triple
        """
        record = await self.get(user_id, namespace, item_key)
        return await self.delete(user_id, record.blob_id)

    @staticmethod
    def _row_to_record(row: Any) -> EncryptedBlobRecord:
        return EncryptedBlobRecord(
            blob_id=row["blob_id"],
            user_id=row["user_id"],
            namespace=row["namespace"],
            item_key=row["item_key"],
            ciphertext=row["ciphertext"],
            nonce=row["nonce"],
            mac=row["mac"],
            aad=row["aad"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
