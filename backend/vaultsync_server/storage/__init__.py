"""
Storage module for VaultSync - authoritative per-user state.

This module handles:
- Per-user SQLite databases (one file per user)
- Encrypted blob records (opaque, versioned)
- Device metadata
- Append-only security logs

Invariants:
    - No query can cross users: every store goes through the user's own file
    - Ciphertext is stored and returned verbatim, never inspected
    - SQLite uses WAL mode for concurrent reads during writes

How to change safely:
    - Test schema migrations thoroughly before deployment
    - Use transactions for all multi-statement operations
"""

from .blob_store import (
    DEFAULT_NAMESPACE,
    BlobDescriptor,
    BlobPutResult,
    EncryptedBlobRecord,
    EncryptedBlobStore,
    parse_version,
)
from .database import UserDatabase, now_ms
from .device_store import DeviceRecord, DeviceStore
from .security_log_store import SecurityLogRecord, SecurityLogStore

__all__ = [
    "UserDatabase",
    "now_ms",
    "DEFAULT_NAMESPACE",
    "BlobDescriptor",
    "BlobPutResult",
    "EncryptedBlobRecord",
    "EncryptedBlobStore",
    "parse_version",
    "DeviceRecord",
    "DeviceStore",
    "SecurityLogRecord",
    "SecurityLogStore",
]
