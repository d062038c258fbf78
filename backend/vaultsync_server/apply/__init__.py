"""
Apply module for VaultSync - replaying queued operations.

This module handles:
- The applier interface and entity-tag registry
- Device, blob and security-log appliers

Invariants:
    - Each applier maps one queued operation to one storage mutation
    - Appliers are idempotent under retry
    - Unsupported operations fail with UnsupportedOperationError

How to change safely:
    - Register new entity types through ApplierRegistry.register()
    - Verify idempotency with duplicate-submission tests
"""

from __future__ import annotations

from ..storage import DeviceStore, EncryptedBlobStore, SecurityLogStore
from .base import ApplierRegistry, EntityApplier
from .blob import BLOB, BlobApplier
from .device import DEVICE, DeviceApplier
from .security_log import SECURITY_LOG, SecurityLogApplier


def create_default_registry(
    device_store: DeviceStore,
    blob_store: EncryptedBlobStore,
    security_log_store: SecurityLogStore,
) -> ApplierRegistry:
    """Registry with the device, blob and securityLog appliers."""
    registry = ApplierRegistry()
    registry.register(DeviceApplier(device_store))
    registry.register(BlobApplier(blob_store))
    registry.register(SecurityLogApplier(security_log_store))
    return registry


__all__ = [
    "ApplierRegistry",
    "EntityApplier",
    "BlobApplier",
    "DeviceApplier",
    "SecurityLogApplier",
    "BLOB",
    "DEVICE",
    "SECURITY_LOG",
    "create_default_registry",
]
