"""
VaultSync Test Suite.

This package contains:
- unit/: Unit tests (stores, appliers, policy, locks, notifications, config)
- integration/: Integration tests (sync queue end to end, HTTP adapter)
"""
