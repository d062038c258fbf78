"""Security log applier: append-only, CREATE is the only supported operation."""

from __future__ import annotations

from typing import Any

from ..errors import ValidationError
from ..storage.security_log_store import SecurityLogStore
from ..sync.models import Operation
from .base import EntityApplier

SECURITY_LOG = "securityLog"


class SecurityLogApplier(EntityApplier):
    entity = SECURITY_LOG
    operations = frozenset({Operation.CREATE})

    def __init__(self, store: SecurityLogStore) -> None:
        self.store = store

    def validate(self, operation: Operation, entity_id: str | None, data: dict[str, Any]) -> None:
        if not data.get("eventType"):
            raise ValidationError("eventType is required", field_name="eventType")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", field_name="metadata")
        created_at = data.get("createdAt")
        if created_at is not None and (isinstance(created_at, bool) or not isinstance(created_at, int)):
            raise ValidationError("createdAt must be Unix milliseconds", field_name="createdAt")

    async def apply(
        self,
        user_id: str,
        operation: Operation,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        if operation != Operation.CREATE:
            raise self._unsupported(operation)

        record = await self.store.append(
            user_id,
            event_type=data.get("eventType", ""),
            severity=data.get("severity") or "info",
            message=data.get("message"),
            device_id=data.get("deviceId"),
            metadata=data.get("metadata"),
            created_at=data.get("createdAt"),
            idempotency_key=data.get("idempotencyKey"),
        )
        return record.to_dict()
