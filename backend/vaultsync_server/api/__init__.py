"""
API module for VaultSync server.

This module provides the external interface:
- HTTP server (JSON REST plus an SSE notification stream)

Invariants:
    - All user-scoped operations require X-User-ID
    - Handlers delegate to the sync queue, blob store and notification hub

How to change safely:
    - Add new endpoints, don't modify existing response shapes
"""

from .http_server import ERROR_STATUS, USER_HEADER, create_http_app, run_http_server

__all__ = [
    "ERROR_STATUS",
    "USER_HEADER",
    "create_http_app",
    "run_http_server",
]
