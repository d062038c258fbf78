"""
Unit tests for the device metadata store.

Tests cover:
- Create with generated and client-chosen ids
- Patch semantics and attribute merging
- Delete and not-found handling
- Idempotency tokens
"""

import tempfile

import pytest

from backend.vaultsync_server.errors import NotFoundError, ValidationError
from backend.vaultsync_server.storage import DeviceStore, UserDatabase


class TestDeviceStore:
    """Tests for DeviceStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create device store."""
        return DeviceStore(UserDatabase(data_dir, wal_mode=False))

    @pytest.mark.asyncio
    async def test_create_device(self, store):
        """Known fields land in columns, the rest in attributes."""
        device = await store.create_device(
            "u1", {"name": "Laptop", "platform": "linux", "isOnline": True, "model": "X1"}
        )

        assert device.device_id
        assert device.name == "Laptop"
        assert device.platform == "linux"
        assert device.is_online is True
        assert device.sync_status == "idle"
        assert device.attributes == {"model": "X1"}

    @pytest.mark.asyncio
    async def test_create_with_client_id(self, store):
        """A client-chosen id is kept."""
        device = await store.create_device("u1", {"name": "Phone"}, device_id="phone-1")

        assert device.device_id == "phone-1"
        assert (await store.get_device("u1", "phone-1")).name == "Phone"

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        """Creating the same id twice is a validation error."""
        await store.create_device("u1", {"name": "Phone"}, device_id="phone-1")

        with pytest.raises(ValidationError):
            await store.create_device("u1", {"name": "Other"}, device_id="phone-1")

    @pytest.mark.asyncio
    async def test_update_patches_fields(self, store):
        """Unspecified fields keep their value; attributes merge."""
        await store.create_device(
            "u1", {"name": "Laptop", "platform": "linux", "model": "X1"}, device_id="d1"
        )

        updated = await store.update_device(
            "u1", "d1", {"syncStatus": "synced", "lastSyncAt": 1700000000000, "color": "red"}
        )

        assert updated.name == "Laptop"
        assert updated.platform == "linux"
        assert updated.sync_status == "synced"
        assert updated.last_sync_at == 1700000000000
        assert updated.attributes == {"model": "X1", "color": "red"}

    @pytest.mark.asyncio
    async def test_update_missing_device(self, store):
        """Updating an unknown device is not found."""
        with pytest.raises(NotFoundError):
            await store.update_device("u1", "nope", {"name": "x"})

    @pytest.mark.asyncio
    async def test_delete_device(self, store):
        """Deleted devices are gone."""
        await store.create_device("u1", {"name": "Laptop"}, device_id="d1")

        result = await store.delete_device("u1", "d1")

        assert result == {"id": "d1", "deleted": True}
        with pytest.raises(NotFoundError):
            await store.get_device("u1", "d1")

    @pytest.mark.asyncio
    async def test_delete_missing_device(self, store):
        with pytest.raises(NotFoundError):
            await store.delete_device("u1", "nope")

    @pytest.mark.asyncio
    async def test_create_idempotent(self, store):
        """A repeated idempotency key returns the first device."""
        first = await store.create_device("u1", {"name": "Laptop"}, idempotency_key="key-1")
        second = await store.create_device("u1", {"name": "Laptop"}, idempotency_key="key-1")

        assert second.device_id == first.device_id
        assert len(await store.list_devices("u1")) == 1

    @pytest.mark.asyncio
    async def test_delete_idempotent(self, store):
        """Replaying a delete with its key succeeds without error."""
        await store.create_device("u1", {"name": "Laptop"}, device_id="d1")

        await store.delete_device("u1", "d1", idempotency_key="del-1")
        result = await store.delete_device("u1", "d1", idempotency_key="del-1")

        assert result["deleted"] is True

    @pytest.mark.asyncio
    async def test_devices_scoped_to_user(self, store):
        """Users only see their own devices."""
        await store.create_device("u1", {"name": "A"}, device_id="d1")
        await store.create_device("u2", {"name": "B"}, device_id="d1")

        assert [d.name for d in await store.list_devices("u1")] == ["A"]
        assert [d.name for d in await store.list_devices("u2")] == ["B"]
