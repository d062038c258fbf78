"""
Unit tests for entity appliers and the applier registry.

Tests cover:
- Registry registration and dispatch
- Enqueue-time validation per entity
- Device, blob and securityLog apply semantics
- Unsupported operations
- Wrapping of raw SQLite errors
"""

import sqlite3
import tempfile

import pytest

from backend.vaultsync_server.apply import (
    ApplierRegistry,
    EntityApplier,
    create_default_registry,
)
from backend.vaultsync_server.errors import (
    NotFoundError,
    TransientApplierError,
    UnsupportedOperationError,
    ValidationError,
)
from backend.vaultsync_server.storage import (
    DeviceStore,
    EncryptedBlobStore,
    SecurityLogStore,
    UserDatabase,
)
from backend.vaultsync_server.sync.models import Operation


def blob_data(**overrides):
    data = {"itemKey": "k1", "ciphertext": "ct", "nonce": "n", "mac": "m", "version": 1}
    data.update(overrides)
    return data


class TestApplierRegistry:
    """Tests for ApplierRegistry."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def database(self, data_dir):
        return UserDatabase(data_dir, wal_mode=False)

    @pytest.fixture
    def stores(self, database):
        return (
            DeviceStore(database),
            EncryptedBlobStore(database),
            SecurityLogStore(database),
        )

    @pytest.fixture
    def registry(self, stores):
        return create_default_registry(*stores)

    def test_default_entities(self, registry):
        assert registry.entities == ["blob", "device", "securityLog"]

    def test_unknown_entity(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.get("report")
        assert exc_info.value.field_name == "entity"

    def test_duplicate_registration(self, registry, stores):
        from backend.vaultsync_server.apply import DeviceApplier

        with pytest.raises(ValueError):
            registry.register(DeviceApplier(stores[0]))

    def test_register_custom_entity(self):
        """A new entity type is a registration."""

        class NoteApplier(EntityApplier):
            entity = "note"
            operations = frozenset({Operation.CREATE})

            async def apply(self, user_id, operation, entity_id, data):
                return {"ok": True}

        registry = ApplierRegistry()
        registry.register(NoteApplier())

        assert registry.entities == ["note"]

    def test_validate_skips_unsupported_operation(self, registry):
        """securityLog DELETE is accepted at enqueue time."""
        registry.validate(Operation.DELETE, "securityLog", "log-1", {})

    def test_validate_device_update_requires_entity_id(self, registry):
        with pytest.raises(ValidationError):
            registry.validate(Operation.UPDATE, "device", None, {"name": "x"})

    def test_validate_blob_requires_fields(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.validate(Operation.CREATE, "blob", None, {"itemKey": "k1"})
        assert exc_info.value.field_name == "ciphertext"

    def test_validate_blob_version(self, registry):
        with pytest.raises(ValidationError):
            registry.validate(Operation.CREATE, "blob", None, blob_data(version="v2"))

    def test_validate_blob_delete_needs_target(self, registry):
        with pytest.raises(ValidationError):
            registry.validate(Operation.DELETE, "blob", None, {})

    def test_validate_security_log_requires_event_type(self, registry):
        with pytest.raises(ValidationError):
            registry.validate(Operation.CREATE, "securityLog", None, {"message": "x"})

    def test_validate_security_log_metadata_shape(self, registry):
        with pytest.raises(ValidationError):
            registry.validate(
                Operation.CREATE, "securityLog", None, {"eventType": "login", "metadata": [1]}
            )

    @pytest.mark.asyncio
    async def test_security_log_delete_unsupported(self, registry):
        with pytest.raises(UnsupportedOperationError) as exc_info:
            await registry.dispatch("u1", Operation.DELETE, "securityLog", "log-1", {})
        assert "not supported for securityLog" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_security_log_update_unsupported(self, registry):
        with pytest.raises(UnsupportedOperationError):
            await registry.dispatch("u1", Operation.UPDATE, "securityLog", "log-1", {"eventType": "x"})

    @pytest.mark.asyncio
    async def test_security_log_create(self, registry, stores):
        result = await registry.dispatch(
            "u1", Operation.CREATE, "securityLog", None, {"eventType": "login", "severity": "high"}
        )

        assert result["eventType"] == "login"
        assert await stores[2].count("u1") == 1

    @pytest.mark.asyncio
    async def test_device_lifecycle(self, registry, stores):
        created = await registry.dispatch(
            "u1", Operation.CREATE, "device", None, {"id": "d1", "name": "Laptop"}
        )
        assert created["id"] == "d1"

        updated = await registry.dispatch(
            "u1", Operation.UPDATE, "device", "d1", {"isOnline": True}
        )
        assert updated["isOnline"] is True
        assert updated["name"] == "Laptop"

        deleted = await registry.dispatch("u1", Operation.DELETE, "device", "d1", {})
        assert deleted == {"id": "d1", "deleted": True}

        with pytest.raises(NotFoundError):
            await registry.dispatch("u1", Operation.UPDATE, "device", "d1", {"name": "x"})

    @pytest.mark.asyncio
    async def test_blob_create_then_update_is_one_record(self, registry, stores):
        await registry.dispatch("u1", Operation.CREATE, "blob", None, blob_data())
        await registry.dispatch(
            "u1", Operation.UPDATE, "blob", None, blob_data(ciphertext="ct2", version="2")
        )

        descriptors = await stores[1].list("u1")
        record = await stores[1].get("u1", "default", "k1")

        assert len(descriptors) == 1
        assert record.ciphertext == "ct2"
        assert record.version == 2

    @pytest.mark.asyncio
    async def test_blob_create_retried_is_idempotent(self, registry, stores):
        await registry.dispatch("u1", Operation.CREATE, "blob", None, blob_data())
        await registry.dispatch("u1", Operation.CREATE, "blob", None, blob_data())

        assert len(await stores[1].list("u1")) == 1

    @pytest.mark.asyncio
    async def test_blob_rejects_foreign_owner(self, registry):
        with pytest.raises(ValidationError):
            await registry.dispatch("u1", Operation.CREATE, "blob", None, blob_data(userId="u2"))

    @pytest.mark.asyncio
    async def test_blob_delete_by_entity_id(self, registry, stores):
        created = await registry.dispatch("u1", Operation.CREATE, "blob", None, blob_data())

        result = await registry.dispatch("u1", Operation.DELETE, "blob", created["id"], {})

        assert result["deleted"] is True
        assert await stores[1].list("u1") == []

    @pytest.mark.asyncio
    async def test_blob_delete_by_item_key(self, registry, stores):
        await registry.dispatch("u1", Operation.CREATE, "blob", None, blob_data(namespace="notes"))

        await registry.dispatch(
            "u1", Operation.DELETE, "blob", None, {"namespace": "notes", "itemKey": "k1"}
        )

        assert await stores[1].list("u1") == []

    @pytest.mark.asyncio
    async def test_sqlite_error_becomes_transient(self):
        """Raw SQLite failures inside an applier are reported as transient."""

        class LockedApplier(EntityApplier):
            entity = "locked"
            operations = frozenset({Operation.CREATE})

            async def apply(self, user_id, operation, entity_id, data):
                raise sqlite3.OperationalError("database is locked")

        registry = ApplierRegistry()
        registry.register(LockedApplier())

        with pytest.raises(TransientApplierError) as exc_info:
            await registry.dispatch("u1", Operation.CREATE, "locked", None, {})
        assert exc_info.value.code == "TRANSIENT"

    @pytest.mark.asyncio
    async def test_dispatch_fills_missing_idempotency_key(self):
        seen = []

        class RecordingApplier(EntityApplier):
            entity = "note"
            operations = frozenset({Operation.CREATE})

            async def apply(self, user_id, operation, entity_id, data):
                seen.append(data.get("idempotencyKey"))
                return {}

        registry = ApplierRegistry()
        registry.register(RecordingApplier())
        payload = {"text": "hi"}

        await registry.dispatch("u1", Operation.CREATE, "note", None, payload, idempotency_key="queue:1")
        await registry.dispatch(
            "u1", Operation.CREATE, "note", None, {"idempotencyKey": "client"}, idempotency_key="queue:2"
        )

        assert seen == ["queue:1", "client"]
        assert "idempotencyKey" not in payload
