"""
Unit tests for the encrypted blob store.

Tests cover:
- Put/get round trip and wholesale replacement
- Per-user isolation
- Version parsing and compare-and-swap
- Listing without ciphertext
- Deletes by id and by triple
"""

import tempfile

import pytest

from backend.vaultsync_server.errors import NotFoundError, ValidationError, VersionConflictError
from backend.vaultsync_server.storage import EncryptedBlobStore, UserDatabase, parse_version


class TestEncryptedBlobStore:
    """Tests for EncryptedBlobStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        """Create blob store."""
        return EncryptedBlobStore(UserDatabase(data_dir, wal_mode=False))

    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        """Stored fields come back verbatim."""
        await store.put("u1", "default", "k1", "ct1", "n1", "m1", "1")

        record = await store.get("u1", "default", "k1")

        assert record.ciphertext == "ct1"
        assert record.nonce == "n1"
        assert record.mac == "m1"
        assert record.aad is None
        assert record.version == 1

    @pytest.mark.asyncio
    async def test_put_replaces_wholesale(self, store):
        """A second put replaces every payload field."""
        first = await store.put("u1", "default", "k1", "ct1", "n1", "m1", "1", aad="aad1")
        second = await store.put("u1", "default", "k1", "ct2", "n2", "m2", "2")

        record = await store.get("u1", "default", "k1")

        assert first.created is True
        assert second.created is False
        assert second.blob_id == first.blob_id
        assert (record.ciphertext, record.nonce, record.mac, record.aad, record.version) == (
            "ct2",
            "n2",
            "m2",
            None,
            2,
        )

    @pytest.mark.asyncio
    async def test_get_is_scoped_to_owner(self, store):
        """Another user's record at the same key is invisible."""
        await store.put("u1", "default", "k1", "ct1", "n1", "m1", version=1)

        with pytest.raises(NotFoundError):
            await store.get("u2", "default", "k1")

    @pytest.mark.asyncio
    async def test_namespaces_are_distinct(self, store):
        """Same item key in two namespaces is two records."""
        await store.put("u1", "passwords", "k1", "a", "n", "m", version=1)
        await store.put("u1", "notes", "k1", "b", "n", "m", version=1)

        assert (await store.get("u1", "passwords", "k1")).ciphertext == "a"
        assert (await store.get("u1", "notes", "k1")).ciphertext == "b"

    @pytest.mark.asyncio
    async def test_invalid_version_rejected(self, store):
        """Non-numeric version is a validation error."""
        with pytest.raises(ValidationError):
            await store.put("u1", "default", "k1", "ct", "n", "m", version="two")

    @pytest.mark.asyncio
    async def test_missing_version_rejected(self, store):
        """Every write carries a version."""
        with pytest.raises(ValidationError) as exc_info:
            await store.put("u1", "default", "k1", "ct", "n", "m", version=None)

        assert exc_info.value.field_name == "version"
        with pytest.raises(NotFoundError):
            await store.get("u1", "default", "k1")

    @pytest.mark.asyncio
    async def test_missing_ciphertext_rejected(self, store):
        """Ciphertext, nonce and mac are required."""
        with pytest.raises(ValidationError) as exc_info:
            await store.put("u1", "default", "k1", "", "n", "m", version=1)

        assert exc_info.value.field_name == "ciphertext"

    @pytest.mark.asyncio
    async def test_last_writer_wins_without_expected_version(self, store):
        """Without expected_version a lower version still overwrites."""
        await store.put("u1", "default", "k1", "ct5", "n", "m", version=5)
        await store.put("u1", "default", "k1", "ct3", "n", "m", version=3)

        record = await store.get("u1", "default", "k1")
        assert record.version == 3
        assert record.ciphertext == "ct3"

    @pytest.mark.asyncio
    async def test_stale_expected_version_conflicts(self, store):
        """A stale expected_version fails and leaves the record unchanged."""
        await store.put("u1", "default", "k1", "ct1", "n", "m", version=1)
        await store.put("u1", "default", "k1", "ct2", "n", "m", version=2, expected_version=1)

        with pytest.raises(VersionConflictError):
            await store.put("u1", "default", "k1", "ct3", "n", "m", version=2, expected_version=1)

        record = await store.get("u1", "default", "k1")
        assert record.ciphertext == "ct2"
        assert record.version == 2

    @pytest.mark.asyncio
    async def test_expected_version_zero_means_absent(self, store):
        """expected_version=0 only succeeds for a new record."""
        result = await store.put("u1", "default", "k1", "ct", "n", "m", version=1, expected_version=0)
        assert result.created is True

        with pytest.raises(VersionConflictError):
            await store.put("u1", "default", "k1", "ct", "n", "m", version=1, expected_version=0)

    @pytest.mark.asyncio
    async def test_list_omits_ciphertext(self, store):
        """Listing returns descriptors only."""
        await store.put("u1", "default", "b", "ct", "n", "m", aad="x", version=2)
        await store.put("u1", "default", "a", "ct", "n", "m", version=1)
        await store.put("u2", "default", "c", "ct", "n", "m", version=1)

        descriptors = await store.list("u1")

        assert [d.item_key for d in descriptors] == ["a", "b"]
        assert descriptors[1].to_dict() == {
            "namespace": "default",
            "itemKey": "b",
            "version": 2,
            "aad": "x",
        }

    @pytest.mark.asyncio
    async def test_list_by_namespace(self, store):
        """Namespace filter narrows the listing."""
        await store.put("u1", "default", "a", "ct", "n", "m", version=1)
        await store.put("u1", "notes", "b", "ct", "n", "m", version=1)

        descriptors = await store.list("u1", namespace="notes")

        assert [d.item_key for d in descriptors] == ["b"]

    @pytest.mark.asyncio
    async def test_delete_by_id(self, store):
        """Delete by blob id removes the record."""
        result = await store.put("u1", "default", "k1", "ct", "n", "m", version=1)

        removed = await store.delete("u1", result.blob_id)

        assert removed.item_key == "k1"
        with pytest.raises(NotFoundError):
            await store.get("u1", "default", "k1")

    @pytest.mark.asyncio
    async def test_delete_other_users_blob_not_found(self, store):
        """A blob id owned by someone else cannot be deleted."""
        result = await store.put("u1", "default", "k1", "ct", "n", "m", version=1)

        with pytest.raises(NotFoundError):
            await store.delete("u2", result.blob_id)

        assert (await store.get("u1", "default", "k1")).ciphertext == "ct"

    @pytest.mark.asyncio
    async def test_delete_item_by_triple(self, store):
        """Delete by triple removes the record."""
        await store.put("u1", "default", "k1", "ct", "n", "m", version=1)

        await store.delete_item("u1", "default", "k1")

        assert await store.list("u1") == []


class TestParseVersion:
    """Tests for parse_version."""

    def test_accepts_int_and_numeric_string(self):
        assert parse_version(3) == 3
        assert parse_version("2") == 2
        assert parse_version(" 7 ") == 7

    @pytest.mark.parametrize("value", ["abc", "1.5", None, True, -1, "-3", 2.0])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_version(value)
