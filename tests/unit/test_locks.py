"""
Unit tests for the per-user drain locks.
"""

import asyncio

import pytest

from backend.vaultsync_server.sync import UserLockRegistry


class TestUserLockRegistry:
    """Tests for UserLockRegistry."""

    @pytest.mark.asyncio
    async def test_same_user_serialized(self):
        locks = UserLockRegistry()
        events = []

        async def worker(name):
            async with locks.hold("u1"):
                events.append(f"{name}:start")
                await asyncio.sleep(0.01)
                events.append(f"{name}:end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )

    @pytest.mark.asyncio
    async def test_different_users_concurrent(self):
        locks = UserLockRegistry()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("u1"):
                await asyncio.wait_for(inside.wait(), 1)

        async def other():
            async with locks.hold("u2"):
                inside.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_entries_evicted_when_idle(self):
        locks = UserLockRegistry()

        async with locks.hold("u1"):
            assert locks.is_held("u1")
            assert len(locks) == 1

        assert not locks.is_held("u1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = UserLockRegistry()

        with pytest.raises(RuntimeError):
            async with locks.hold("u1"):
                raise RuntimeError("boom")

        assert len(locks) == 0
