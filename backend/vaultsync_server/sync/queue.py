"""
Durable per-user sync queue and the drain (reconciliation) loop.

Disconnected clients accumulate intended mutations and, on reconnect,
enqueue them one item per mutation. A drain replays a user's pending and
failed items, strictly in submission order, through the applier registry
and records each outcome on the item.

Invariants:
    - Items are applied in (created_at, seq) order, one at a time
    - Drains for the same user never overlap (per-user single-flight lock)
    - One item's failure never aborts the batch; only an unreachable
      backing store does
    - An item left 'syncing' by an interrupted drain is re-attempted by
      the next drain
    - Completed items are only removed by the retention sweep

How to change safely:
    - Keep status transitions in this module only
    - Test interrupted drains (cancel mid-batch) after any change to drain()
    - The queue provides no deduplication; idempotency belongs to appliers

Example:
    >>> queue = SyncQueue(database, registry)
    >>> await queue.enqueue("u1", "CREATE", "blob", data={...})
    >>> result = await queue.drain("u1")
    >>> result.successful
    1
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from ..errors import (
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
    VaultSyncError,
)
from ..storage.database import UserDatabase, now_ms
from .locks import UserLockRegistry
from .models import (
    ItemOutcome,
    Operation,
    SyncQueueItem,
    SyncResult,
    SyncStatus,
    SyncStatusSummary,
)
from .policy import RetryPolicy

if TYPE_CHECKING:
    from ..apply.base import ApplierRegistry
    from ..storage.device_store import DeviceStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7
DAY_MS = 24 * 60 * 60 * 1000

_DRAINABLE = (SyncStatus.PENDING, SyncStatus.FAILED, SyncStatus.SYNCING)
_PENDING = (SyncStatus.PENDING, SyncStatus.FAILED)


def _parse_operation(value: Any) -> Operation:
    if isinstance(value, Operation):
        return value
    try:
        return Operation(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown operation: {value}. Must be one of: CREATE, UPDATE, DELETE",
            field_name="operation",
        ) from None


class SyncQueue:
    """Per-user offline mutation queue.

    Attributes:
        database: Per-user SQLite databases
        registry: Entity applier registry
        retry_policy: Policy consulted for failed items
        retention_days: Default horizon for cleanup()

    Thread safety:
        Designed for a single event loop. Drains for different users run
        concurrently; drains for the same user are serialized.
    """

    def __init__(
        self,
        database: UserDatabase,
        registry: ApplierRegistry,
        retry_policy: RetryPolicy | None = None,
        device_store: DeviceStore | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        locks: UserLockRegistry | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the queue.

        Args:
            database: Per-user SQLite databases
            registry: Entity applier registry
            retry_policy: Retry policy (default: retry every failed item)
            device_store: Device store used by get_status()
            retention_days: Default horizon for cleanup()
            locks: Per-user drain locks (shared when several queues serve one process)
            clock: Source of Unix-ms timestamps
        """
        self.database = database
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.device_store = device_store
        self.retention_days = retention_days
        self._locks = locks or UserLockRegistry()
        self._clock = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        user_id: str,
        operation: Operation | str,
        entity: str,
        entity_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> SyncQueueItem:
        """Append one operation to the user's queue.

        Args:
            user_id: Owner (already authenticated upstream)
            operation: CREATE, UPDATE or DELETE
            entity: Entity tag (device, blob, securityLog)
            entity_id: Target record for UPDATE/DELETE
            data: Applier-specific payload

        Returns:
            The stored item with status=pending

        Raises:
            ValidationError: If the operation, entity or payload is invalid
        """
        items = await self.enqueue_batch(
            user_id,
            [{"operation": operation, "entity": entity, "entityId": entity_id, "data": data}],
        )
        return items[0]

    async def enqueue_batch(
        self,
        user_id: str,
        operations: Iterable[dict[str, Any]],
    ) -> list[SyncQueueItem]:
        """Append several operations atomically, preserving their order.

        Every entry is validated before anything is written; one invalid
        entry rejects the whole batch.

        Args:
            user_id: Owner
            operations: Dicts with operation, entity, entityId and data keys

        Returns:
            The stored items, in submission order

        Raises:
            ValidationError: If any entry is invalid
        """
        if not user_id:
            raise ValidationError("user_id is required", field_name="userId")

        prepared = [self._prepare(entry) for entry in operations]
        if not prepared:
            return []

        now = self._clock()
        items: list[SyncQueueItem] = []

        with self.database.connection(user_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) AS seq FROM sync_queue WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                seq = row["seq"]

                for operation, entity, entity_id, data in prepared:
                    seq += 1
                    item = SyncQueueItem(
                        item_id=uuid.uuid4().hex,
                        user_id=user_id,
                        seq=seq,
                        operation=operation,
                        entity=entity,
                        entity_id=entity_id,
                        data=data,
                        status=SyncStatus.PENDING,
                        retry_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    conn.execute(
                        """
                        INSERT INTO sync_queue (item_id, user_id, seq, operation, entity,
                            entity_id, data_json, status, retry_count, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                        """,
                        (
                            item.item_id,
                            user_id,
                            seq,
                            operation.value,
                            entity,
                            entity_id,
                            json.dumps(data),
                            SyncStatus.PENDING.value,
                            now,
                            now,
                        ),
                    )
                    items.append(item)

                conn.execute("COMMIT")

            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

        logger.info(
            "Enqueued sync items",
            extra={
                "user_id": user_id,
                "count": len(items),
                "entities": sorted({item.entity for item in items}),
            },
        )
        return items

    def _prepare(
        self, entry: dict[str, Any]
    ) -> tuple[Operation, str, str | None, dict[str, Any]]:
        if not isinstance(entry, dict):
            raise ValidationError("Queue entry must be an object")

        operation = _parse_operation(entry.get("operation"))
        entity = entry.get("entity")
        if not isinstance(entity, str) or not entity:
            raise ValidationError("entity is required", field_name="entity")

        entity_id = entry.get("entityId")
        if entity_id is not None and not isinstance(entity_id, str):
            raise ValidationError("entityId must be a string", field_name="entityId")

        data = entry.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("data must be an object", field_name="data")

        self.registry.validate(operation, entity, entity_id, data)
        return operation, entity, entity_id, data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_pending(self, user_id: str) -> list[SyncQueueItem]:
        """Pending and failed items for the user, in submission order."""
        return self._load(user_id, _PENDING)

    async def get_item(self, user_id: str, item_id: str) -> SyncQueueItem:
        """Get one of the user's items.

        Raises:
            NotFoundError: If the user has no such item
        """
        with self.database.connection(user_id) as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE user_id = ? AND item_id = ?",
                (user_id, item_id),
            ).fetchone()
        if not row:
            raise NotFoundError("Sync item not found", details={"item_id": item_id})
        return SyncQueueItem.from_row(row)

    async def get_status(self, user_id: str) -> SyncStatusSummary:
        """Queue counts per status, devices and the last completed sync."""
        with self.database.connection(user_id) as conn:
            counts = {
                row["status"]: row["n"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM sync_queue WHERE user_id = ? GROUP BY status",
                    (user_id,),
                )
            }
            last = conn.execute(
                "SELECT MAX(updated_at) AS ts FROM sync_queue WHERE user_id = ? AND status = ?",
                (user_id, SyncStatus.COMPLETED.value),
            ).fetchone()

        devices: list[dict[str, Any]] = []
        if self.device_store is not None:
            devices = [
                {
                    "id": d.device_id,
                    "name": d.name,
                    "syncStatus": d.sync_status,
                    "lastSyncAt": d.last_sync_at,
                    "isOnline": d.is_online,
                }
                for d in await self.device_store.list_devices(user_id)
            ]

        return SyncStatusSummary(
            pending=counts.get(SyncStatus.PENDING.value, 0),
            syncing=counts.get(SyncStatus.SYNCING.value, 0),
            completed=counts.get(SyncStatus.COMPLETED.value, 0),
            failed=counts.get(SyncStatus.FAILED.value, 0),
            devices=devices,
            last_sync=last["ts"] if last else None,
        )

    def _load(self, user_id: str, statuses: tuple[SyncStatus, ...]) -> list[SyncQueueItem]:
        placeholders = ", ".join("?" for _ in statuses)
        try:
            with self.database.connection(user_id) as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM sync_queue
                    WHERE user_id = ? AND status IN ({placeholders})
                    ORDER BY created_at ASC, seq ASC
                    """,
                    (user_id, *(s.value for s in statuses)),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"Cannot read sync queue: {e}", details={"user_id": user_id}
            ) from e
        return [SyncQueueItem.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, user_id: str) -> SyncResult:
        """Replay the user's pending and failed items.

        The pending set is snapshotted once; items enqueued during the drain
        wait for the next one.

        Returns:
            SyncResult with per-item outcomes

        Raises:
            StorageUnavailableError: If the backing store is unreachable;
                items already completed stay completed
        """
        async with self._locks.hold(user_id):
            items = self._load(user_id, _DRAINABLE)
            result = SyncResult()
            started = self._clock()

            if items:
                logger.info("Draining sync queue", extra={"user_id": user_id, "items": len(items)})

            for item in items:
                if not self.retry_policy.should_attempt(item, started):
                    result.outcomes.append(
                        ItemOutcome(item_id=item.item_id, success=False, skipped=True)
                    )
                    continue

                if item.status == SyncStatus.SYNCING:
                    logger.info(
                        "Resuming interrupted sync item",
                        extra={"user_id": user_id, "item_id": item.item_id},
                    )

                result.outcomes.append(await self._process(item))

            if items:
                logger.info(
                    "Drain finished",
                    extra={
                        "user_id": user_id,
                        "processed": result.processed,
                        "successful": result.successful,
                        "failed": result.failed,
                        "skipped": result.skipped,
                    },
                )
            return result

    async def _process(self, item: SyncQueueItem) -> ItemOutcome:
        self._transition(item, SyncStatus.SYNCING)

        try:
            # A resumed item replays under the same token, so a mutation that
            # committed before the interruption is not applied twice
            applied = await self.registry.dispatch(
                item.user_id,
                item.operation,
                item.entity,
                item.entity_id,
                item.data,
                idempotency_key=f"queue:{item.item_id}",
            )
        except StorageUnavailableError:
            raise
        except VaultSyncError as e:
            return self._fail(item, e.message, e.code)
        except Exception as e:
            logger.error(
                f"Unexpected error applying sync item: {e}",
                exc_info=True,
                extra={"user_id": item.user_id, "item_id": item.item_id},
            )
            return self._fail(item, str(e) or type(e).__name__, "INTERNAL")

        self._transition(item, SyncStatus.COMPLETED, result=applied)
        logger.debug(
            "Applied sync item",
            extra={
                "user_id": item.user_id,
                "item_id": item.item_id,
                "entity": item.entity,
                "operation": item.operation.value,
            },
        )
        return ItemOutcome(item_id=item.item_id, success=True, result=applied)

    def _fail(self, item: SyncQueueItem, message: str, code: str) -> ItemOutcome:
        self._transition(item, SyncStatus.FAILED, error=message, error_code=code)
        logger.warning(
            "Sync item failed",
            extra={
                "user_id": item.user_id,
                "item_id": item.item_id,
                "entity": item.entity,
                "operation": item.operation.value,
                "error_code": code,
                "retry_count": item.retry_count + 1,
            },
        )
        return ItemOutcome(item_id=item.item_id, success=False, error=message, error_code=code)

    def _transition(
        self,
        item: SyncQueueItem,
        status: SyncStatus,
        result: Any = None,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        """Persist a status transition.

        Raises:
            StorageUnavailableError: If the write cannot be performed
        """
        now = self._clock()
        if status == SyncStatus.FAILED:
            sql = """
                UPDATE sync_queue
                SET status = ?, retry_count = retry_count + 1, error = ?, error_code = ?,
                    updated_at = ?
                WHERE user_id = ? AND item_id = ?
            """
            params: tuple[Any, ...] = (status.value, error, error_code, now,
                                       item.user_id, item.item_id)
        elif status == SyncStatus.COMPLETED:
            sql = """
                UPDATE sync_queue
                SET status = ?, error = NULL, error_code = NULL, result_json = ?, updated_at = ?
                WHERE user_id = ? AND item_id = ?
            """
            params = (status.value, json.dumps(result, default=str), now,
                      item.user_id, item.item_id)
        else:
            sql = "UPDATE sync_queue SET status = ?, updated_at = ? WHERE user_id = ? AND item_id = ?"
            params = (status.value, now, item.user_id, item.item_id)

        try:
            with self.database.connection(item.user_id) as conn:
                conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageUnavailableError(
                f"Cannot update sync item: {e}",
                details={"user_id": item.user_id, "item_id": item.item_id},
            ) from e

        item.status = status
        item.updated_at = now
        if status == SyncStatus.FAILED:
            item.retry_count += 1
            item.error = error
            item.error_code = error_code
        elif status == SyncStatus.COMPLETED:
            item.error = None
            item.error_code = None
            item.result = result

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup(self, retention_days: int | None = None) -> int:
        """Delete completed items older than the retention horizon, across all users.

        The status/age predicate is evaluated by SQLite per row inside the
        DELETE, so an item that a concurrent drain has moved to 'syncing'
        is never removed.

        Args:
            retention_days: Horizon in days (default: the queue's retention_days)

        Returns:
            Number of deleted items
        """
        days = retention_days if retention_days is not None else self.retention_days
        cutoff = self._clock() - days * DAY_MS
        deleted = 0

        for db_path in self.database.database_paths():
            try:
                with self.database.connection_for_path(db_path) as conn:
                    cursor = conn.execute(
                        "DELETE FROM sync_queue WHERE status = ? AND updated_at < ?",
                        (SyncStatus.COMPLETED.value, cutoff),
                    )
                    deleted += cursor.rowcount
            except (StorageUnavailableError, sqlite3.Error) as e:
                logger.error(
                    f"Sync queue cleanup failed for {db_path.name}: {e}",
                    extra={"path": str(db_path)},
                )

        logger.info(f"Cleaned up {deleted} completed sync items", extra={"retention_days": days})
        return deleted

    def is_draining(self, user_id: str) -> bool:
        """Whether a drain is currently running for the user."""
        return self._locks.is_held(user_id)
