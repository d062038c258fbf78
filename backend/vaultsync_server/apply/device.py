"""Device applier: CREATE inserts, UPDATE patches, DELETE removes."""

from __future__ import annotations

from typing import Any

from ..errors import ValidationError
from ..storage.device_store import DeviceStore
from ..sync.models import Operation
from .base import EntityApplier

DEVICE = "device"


class DeviceApplier(EntityApplier):
    """Applies queued device mutations.

    ``data.id`` lets a client choose the device id on CREATE, and
    ``data.idempotencyKey`` makes resubmitted operations apply once.
    """

    entity = DEVICE
    operations = frozenset({Operation.CREATE, Operation.UPDATE, Operation.DELETE})

    def __init__(self, store: DeviceStore) -> None:
        self.store = store

    def validate(self, operation: Operation, entity_id: str | None, data: dict[str, Any]) -> None:
        if operation in (Operation.UPDATE, Operation.DELETE) and not entity_id:
            raise ValidationError(
                f"entityId is required for device {operation.value}", field_name="entityId"
            )
        device_id = data.get("id")
        if device_id is not None and not isinstance(device_id, str):
            raise ValidationError("device id must be a string", field_name="id")

    async def apply(
        self,
        user_id: str,
        operation: Operation,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        idempotency_key = data.get("idempotencyKey")

        if operation == Operation.CREATE:
            record = await self.store.create_device(
                user_id,
                data,
                device_id=data.get("id") or entity_id,
                idempotency_key=idempotency_key,
            )
            return record.to_dict()

        if operation == Operation.UPDATE:
            record = await self.store.update_device(
                user_id, entity_id, data, idempotency_key=idempotency_key
            )
            return record.to_dict()

        if operation == Operation.DELETE:
            return await self.store.delete_device(
                user_id, entity_id, idempotency_key=idempotency_key
            )

        raise self._unsupported(operation)
