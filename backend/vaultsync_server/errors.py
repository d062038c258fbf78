"""
Error types for VaultSync Server.

This module defines the error taxonomy shared by the stores, the appliers
and the sync queue:
- VaultSyncError: Base exception
- ValidationError: Rejected at enqueue/put time, never queued
- NotFoundError: Blob, device or queue item missing
- TransientApplierError: Backing store hiccup, eligible for a future drain
- UnsupportedOperationError: Operation not valid for the entity
- VersionConflictError: Conditional blob write lost the race
- StorageUnavailableError: Backing storage itself is unreachable

Invariants:
    - All errors inherit from VaultSyncError
    - Every error carries a stable code for programmatic handling
    - Messages never include ciphertext or payload contents
"""

from __future__ import annotations

from typing import Any


class VaultSyncError(Exception):
    """Base exception for all VaultSync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    default_code = "VAULTSYNC_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable error body."""
        return {"error": self.message, "error_code": self.code, "details": self.details}


class ValidationError(VaultSyncError):
    """Request or payload is malformed.

    Raised when:
    - Operation or entity is not in the known set
    - Required payload field is missing
    - Blob version is not an integer
    """

    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, details={"field": field_name} if field_name else None)
        self.field_name = field_name


class NotFoundError(VaultSyncError):
    """Requested record does not exist for this user."""

    default_code = "NOT_FOUND"


class TransientApplierError(VaultSyncError):
    """Applier hit a recoverable storage failure.

    The queue records the item as failed; a later drain retries it.
    """

    default_code = "TRANSIENT"


class UnsupportedOperationError(VaultSyncError):
    """Operation is not supported for this entity.

    Retrying will fail again; the submitted operation must be corrected.
    """

    default_code = "UNSUPPORTED_OPERATION"

    def __init__(self, entity: str, operation: str) -> None:
        super().__init__(
            f"Operation {operation} not supported for {entity}",
            details={"entity": entity, "operation": operation},
        )
        self.entity = entity
        self.operation = operation


class VersionConflictError(VaultSyncError):
    """Conditional blob write found a different stored version."""

    default_code = "VERSION_CONFLICT"

    def __init__(
        self,
        item_key: str,
        expected_version: int,
        current_version: int | None,
    ) -> None:
        super().__init__(
            f"Version conflict on {item_key}: expected {expected_version}, "
            f"found {current_version}",
            details={
                "item_key": item_key,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.item_key = item_key
        self.expected_version = expected_version
        self.current_version = current_version


class StorageUnavailableError(VaultSyncError):
    """Backing storage cannot be opened or queried.

    This is the only error that aborts a whole drain.
    """

    default_code = "STORAGE_UNAVAILABLE"
