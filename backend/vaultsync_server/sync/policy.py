"""
Retry policy consulted by the drain loop.

The queue tracks retry_count but never decides on its own when to stop
retrying; the caller injects a RetryPolicy. The default policy retries every
failed item on every drain.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..config import SyncConfig
from ..errors import UnsupportedOperationError
from .models import SyncQueueItem, SyncStatus


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether a failed item is attempted in the current drain.

    Attributes:
        max_attempts: Stop retrying once retry_count reaches this (None = never stop)
        backoff_base_ms: Delay after the first failure; doubles per failure (0 = no delay)
        backoff_max_ms: Upper bound for the delay
        retry_unsupported: Retry items that failed with an unsupported operation
    """

    max_attempts: int | None = None
    backoff_base_ms: int = 0
    backoff_max_ms: int = 300_000
    retry_unsupported: bool = True

    @classmethod
    def from_config(cls, config: SyncConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_ms=config.backoff_base_ms,
            backoff_max_ms=config.backoff_max_ms,
            retry_unsupported=config.retry_unsupported,
        )

    def backoff_ms(self, retry_count: int) -> int:
        """Delay required after the given number of failures."""
        if self.backoff_base_ms <= 0 or retry_count <= 0:
            return 0
        delay = self.backoff_base_ms * (2 ** (retry_count - 1))
        return min(delay, self.backoff_max_ms)

    def should_attempt(self, item: SyncQueueItem, now_ms: int) -> bool:
        """Whether the drain should (re)apply this item now.

        Pending and stale syncing items are always attempted.
        """
        if item.status != SyncStatus.FAILED:
            return True

        if self.max_attempts is not None and item.retry_count >= self.max_attempts:
            return False

        if not self.retry_unsupported and item.error_code == UnsupportedOperationError.default_code:
            return False

        return now_ms - item.updated_at >= self.backoff_ms(item.retry_count)
