"""
VaultSync Server - offline-first sync backend for end-to-end encrypted data.

Clients encrypt locally and never send plaintext. While offline they queue
their intended mutations; on reconnect they enqueue them here and ask the
server to drain the queue, which replays each operation, in order, against
the user's authoritative records.

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│    HTTP     │────▶│   Sync Queue    │
    │  (offline)  │     │   Adapter   │     │ (per-user, FIFO)│
    └─────────────┘     └──────┬──────┘     └────────┬────────┘
           ▲                   │                     │ drain
           │ SSE               │                     ▼
    ┌──────┴──────┐            │            ┌─────────────────┐
    │ Notification│            │            │ Applier Registry│
    │     Hub     │            │            │ device | blob | │
    └─────────────┘            │            │   securityLog   │
                               │            └────────┬────────┘
                               ▼                     ▼
                        ┌─────────────────────────────────────┐
                        │   Per-user SQLite (user_<id>.db)    │
                        │ sync_queue, encrypted_blobs, devices│
                        │ security_logs, applied_operations   │
                        └─────────────────────────────────────┘

Invariants:
    - Ciphertext is opaque: stored and returned verbatim, never inspected
    - A user's queue is applied in submission order, one drain at a time
    - Notifications are best-effort and never replace the queue's durability
    - The user_id is resolved upstream and trusted as given

How to change safely:
    - New entity types are new appliers registered in the ApplierRegistry
    - Schema changes bump SCHEMA_VERSION in storage/database.py
"""

from ._version import __version__

__all__ = ["__version__"]
