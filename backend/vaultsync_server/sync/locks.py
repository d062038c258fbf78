"""
Per-user single-flight locks for the drain loop.

Two overlapping drains for the same user must not interleave, otherwise a
later UPDATE could be applied before an earlier CREATE. Drains for different
users run freely in parallel.

Invariants:
    - At most one holder per user_id at a time
    - A lock entry exists only while someone holds or waits for it
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class UserLockRegistry:
    """Reference-counted asyncio locks keyed by user_id.

    Usage:
        async with registry.hold(user_id):
            ...  # exclusive for this user

    Entries are evicted when the last holder/waiter leaves, so memory stays
    bounded by the number of users currently draining.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(user_id)
        if entry is None:
            entry = self._entries[user_id] = _Entry()
        entry.refs += 1

        try:
            if entry.lock.locked():
                logger.debug("Waiting for in-flight drain", extra={"user_id": user_id})
            async with entry.lock:
                yield
        finally:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(user_id) is entry:
                del self._entries[user_id]

    def is_held(self, user_id: str) -> bool:
        """Whether a drain is currently running for the user."""
        entry = self._entries.get(user_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
