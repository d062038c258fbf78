"""
Sync module for VaultSync - the offline mutation queue.

This module handles:
- Queue item types and status lifecycle
- Enqueue, pending listing, drain and retention cleanup
- Retry policy and per-user drain locks

Invariants:
    - Items for a user are applied in submission order
    - Drains for one user never overlap
    - Only completed items are ever purged
"""

from .cleanup import CleanupLoop
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
from .queue import DEFAULT_RETENTION_DAYS, SyncQueue

__all__ = [
    "DEFAULT_RETENTION_DAYS",
    "CleanupLoop",
    "ItemOutcome",
    "Operation",
    "RetryPolicy",
    "SyncQueue",
    "SyncQueueItem",
    "SyncResult",
    "SyncStatus",
    "SyncStatusSummary",
    "UserLockRegistry",
]
