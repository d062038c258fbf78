"""
Applier interface and registry.

An applier translates one queued operation into one authoritative-storage
mutation for a single entity type. The registry maps entity tags to
appliers, so adding an entity type is a register() call rather than a new
branch in the queue.

Invariants:
    - Appliers never touch the queue or the notification hub
    - Applying the same operation twice converges to the same state
      (by upsert key or by idempotency token)
    - Unknown entity/operation combinations fail with a typed error,
      never silently

How to change safely:
    - New appliers must be idempotent under retry
    - Keep validate() cheap and free of storage access
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any

from ..errors import (
    TransientApplierError,
    UnsupportedOperationError,
    ValidationError,
    VaultSyncError,
)
from ..sync.models import Operation

logger = logging.getLogger(__name__)


class EntityApplier(ABC):
    """Base class for entity appliers.

    Subclasses set ``entity`` and ``operations`` and implement ``apply``.
    """

    entity: str = ""
    operations: frozenset[Operation] = frozenset()

    def supports(self, operation: Operation) -> bool:
        return operation in self.operations

    def validate(self, operation: Operation, entity_id: str | None, data: dict[str, Any]) -> None:
        """Check payload shape at enqueue time.

        Only supported operations are checked here; an unsupported one is
        accepted into the queue and fails deterministically when drained.

        Raises:
            ValidationError: If the payload is malformed
        """

    @abstractmethod
    async def apply(
        self,
        user_id: str,
        operation: Operation,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply the operation.

        Returns:
            JSON-serializable description of the mutated record

        Raises:
            VaultSyncError: Typed failure recorded on the queue item
        """

    def _unsupported(self, operation: Operation) -> UnsupportedOperationError:
        return UnsupportedOperationError(self.entity, operation.value)


class ApplierRegistry:
    """Dispatch table from entity tag to applier.

    Example:
        >>> registry = ApplierRegistry()
        >>> registry.register(DeviceApplier(device_store))
        >>> result = await registry.dispatch("u1", Operation.CREATE, "device", None, {...})
    """

    def __init__(self) -> None:
        self._appliers: dict[str, EntityApplier] = {}

    def register(self, applier: EntityApplier) -> None:
        """Register an applier for its entity tag.

        Raises:
            ValueError: If the tag is empty or already registered
        """
        if not applier.entity:
            raise ValueError("Applier must declare an entity tag")
        if applier.entity in self._appliers:
            raise ValueError(f"Applier already registered for entity: {applier.entity}")
        self._appliers[applier.entity] = applier
        logger.debug("Registered applier", extra={"entity": applier.entity})

    @property
    def entities(self) -> list[str]:
        return sorted(self._appliers)

    def get(self, entity: str) -> EntityApplier:
        """Look up the applier for an entity tag.

        Raises:
            ValidationError: If no applier is registered for the tag
        """
        applier = self._appliers.get(entity)
        if applier is None:
            raise ValidationError(f"Unknown entity type: {entity}", field_name="entity")
        return applier

    def validate(
        self,
        operation: Operation,
        entity: str,
        entity_id: str | None,
        data: dict[str, Any],
    ) -> None:
        """Enqueue-time validation for one operation."""
        applier = self.get(entity)
        if applier.supports(operation):
            applier.validate(operation, entity_id, data)

    async def dispatch(
        self,
        user_id: str,
        operation: Operation,
        entity: str,
        entity_id: str | None,
        data: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Route one operation to its applier.

        Raw SQLite failures raised inside an applier are reported as
        TransientApplierError so the queue can retry them later.

        Args:
            idempotency_key: Token used when the payload carries no
                ``idempotencyKey`` of its own
        """
        applier = self.get(entity)
        if not applier.supports(operation):
            raise applier._unsupported(operation)

        if idempotency_key and not data.get("idempotencyKey"):
            data = {**data, "idempotencyKey": idempotency_key}

        try:
            return await applier.apply(user_id, operation, entity_id, data)
        except VaultSyncError:
            raise
        except sqlite3.Error as e:
            raise TransientApplierError(
                f"Storage error while applying {entity} {operation.value}: {e}",
                details={"entity": entity, "operation": operation.value},
            ) from e
