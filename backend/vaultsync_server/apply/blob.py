"""
Blob applier.

CREATE and UPDATE share one upsert path keyed by (user_id, namespace,
item_key), so a CREATE retried after a transient failure can never produce
a duplicate record. DELETE removes the record named by entity_id.
"""

from __future__ import annotations

from typing import Any

from ..errors import ValidationError
from ..storage.blob_store import DEFAULT_NAMESPACE, EncryptedBlobStore, parse_version
from ..sync.models import Operation
from .base import EntityApplier

BLOB = "blob"

_REQUIRED_WRITE_FIELDS = ("itemKey", "ciphertext", "nonce", "mac", "version")


class BlobApplier(EntityApplier):
    """Applies queued encrypted-blob mutations.

    The owner is always the queue item's user; a payload naming another user
    is rejected. ``data.expectedVersion`` turns the write into a
    compare-and-swap.
    """

    entity = BLOB
    operations = frozenset({Operation.CREATE, Operation.UPDATE, Operation.DELETE})

    def __init__(self, store: EncryptedBlobStore) -> None:
        self.store = store

    def validate(self, operation: Operation, entity_id: str | None, data: dict[str, Any]) -> None:
        if operation == Operation.DELETE:
            if not entity_id and not data.get("itemKey"):
                raise ValidationError(
                    "entityId or itemKey is required for blob DELETE", field_name="entityId"
                )
            return

        missing = [name for name in _REQUIRED_WRITE_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required blob fields: {missing}", field_name=missing[0]
            )
        parse_version(data["version"])
        if data.get("expectedVersion") is not None:
            parse_version(data["expectedVersion"], "expectedVersion")

    async def apply(
        self,
        user_id: str,
        operation: Operation,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        owner = data.get("userId")
        if owner is not None and owner != user_id:
            raise ValidationError("Blob payload names a different owner", field_name="userId")

        namespace = data.get("namespace") or DEFAULT_NAMESPACE

        if operation in (Operation.CREATE, Operation.UPDATE):
            self.validate(operation, entity_id, data)
            result = await self.store.put(
                user_id,
                namespace,
                data["itemKey"],
                ciphertext=data["ciphertext"],
                nonce=data["nonce"],
                mac=data["mac"],
                aad=data.get("aad"),
                version=data["version"],
                expected_version=data.get("expectedVersion"),
            )
            return result.to_dict()

        if operation == Operation.DELETE:
            if entity_id:
                record = await self.store.delete(user_id, entity_id)
            else:
                record = await self.store.delete_item(user_id, namespace, data["itemKey"])
            return {
                "id": record.blob_id,
                "namespace": record.namespace,
                "itemKey": record.item_key,
                "deleted": True,
            }

        raise self._unsupported(operation)
