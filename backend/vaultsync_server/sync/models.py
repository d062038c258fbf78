"""
Data types for the sync queue.

Attributes are snake_case in Python; to_dict() produces the camelCase wire
shape clients already use.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Operation(str, Enum):
    """Mutation kinds a client can queue."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncStatus(str, Enum):
    """Queue item lifecycle.

    pending -> syncing -> (completed | failed); failed items are picked up
    again by the next drain.
    """

    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncQueueItem:
    """A queued offline mutation.

    Attributes:
        item_id: Unique identifier assigned at enqueue
        user_id: Owner
        seq: Per-user insertion counter (ordering tie-breaker)
        operation: CREATE, UPDATE or DELETE
        entity: Entity tag selecting the applier
        entity_id: Target record for UPDATE/DELETE
        data: Applier-specific payload
        status: Lifecycle status
        retry_count: Number of failed outcomes so far
        error: Last failure reason (only while failed)
        error_code: Machine-readable class of the last failure
        result: Applier result of the successful apply
        created_at: Enqueue timestamp (Unix ms)
        updated_at: Last transition timestamp (Unix ms)
    """

    item_id: str
    user_id: str
    seq: int
    operation: Operation
    entity: str
    entity_id: str | None
    data: dict[str, Any]
    status: SyncStatus
    retry_count: int
    created_at: int
    updated_at: int
    error: str | None = None
    error_code: str | None = None
    result: Any = None

    @classmethod
    def from_row(cls, row: Any) -> SyncQueueItem:
        """Build from a sync_queue row."""
        return cls(
            item_id=row["item_id"],
            user_id=row["user_id"],
            seq=row["seq"],
            operation=Operation(row["operation"]),
            entity=row["entity"],
            entity_id=row["entity_id"],
            data=json.loads(row["data_json"]),
            status=SyncStatus(row["status"]),
            retry_count=row["retry_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error=row["error"],
            error_code=row["error_code"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire representation (payload data included, it is already ciphertext
        or client metadata)."""
        return {
            "id": self.item_id,
            "userId": self.user_id,
            "operation": self.operation.value,
            "entity": self.entity,
            "entityId": self.entity_id,
            "data": self.data,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "error": self.error,
            "errorCode": self.error_code,
            "result": self.result,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ItemOutcome:
    """Per-item outcome of a drain.

    Attributes:
        item_id: Queue item id
        success: Whether the applier succeeded
        result: Applier result on success
        error: Failure reason on failure
        error_code: Failure class on failure
        skipped: Item was left untouched by the retry policy
    """

    item_id: str
    success: bool
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.item_id, "success": self.success}
        if self.skipped:
            data["skipped"] = True
        if self.success:
            data["result"] = self.result
        elif not self.skipped:
            data["error"] = self.error
            data["errorCode"] = self.error_code
        return data


@dataclass
class SyncResult:
    """Aggregate result of one drain."""

    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if not o.skipped)

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success and not o.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class SyncStatusSummary:
    """Per-user queue counts, devices and last completed sync."""

    pending: int
    syncing: int
    completed: int
    failed: int
    devices: list[dict[str, Any]] = field(default_factory=list)
    last_sync: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": {
                "pending": self.pending,
                "syncing": self.syncing,
                "completed": self.completed,
                "failed": self.failed,
            },
            "devices": self.devices,
            "lastSync": self.last_sync,
        }
