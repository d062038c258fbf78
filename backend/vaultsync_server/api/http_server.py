"""
HTTP server implementation for VaultSync.

A thin request adapter over the sync queue, the blob store and the
notification hub. Authentication happens upstream: the authenticating proxy
resolves the caller and forwards the user id in the X-User-ID header, which
this layer trusts as-is.

Invariants:
    - Every user-scoped endpoint requires X-User-ID
    - JSON request/response format (SSE for the notification stream)
    - Errors are returned as {"error", "error_code", "details"}

How to change safely:
    - Keep handlers free of business logic; it belongs in the queue and stores
    - Add new endpoints under /v1, never change existing response shapes
    - Keep ERROR_STATUS in sync with errors.py
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from ..config import HttpConfig, NotificationConfig
from ..errors import (
    NotFoundError,
    StorageUnavailableError,
    TransientApplierError,
    UnsupportedOperationError,
    ValidationError,
    VaultSyncError,
    VersionConflictError,
)
from ..notify.hub import NotificationHub
from ..storage.blob_store import DEFAULT_NAMESPACE, EncryptedBlobStore
from ..sync.queue import SyncQueue

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-ID"

ERROR_STATUS = {
    ValidationError.default_code: 400,
    UnsupportedOperationError.default_code: 400,
    NotFoundError.default_code: 404,
    VersionConflictError.default_code: 409,
    TransientApplierError.default_code: 503,
    StorageUnavailableError.default_code: 503,
}


@dataclass
class Services:
    """Collaborators the handlers operate on."""

    queue: SyncQueue
    blob_store: EncryptedBlobStore
    hub: NotificationHub
    notifications: NotificationConfig


def create_http_app(
    queue: SyncQueue,
    blob_store: EncryptedBlobStore,
    hub: NotificationHub,
    config: HttpConfig | None = None,
    notifications: NotificationConfig | None = None,
) -> web.Application:
    """Create the HTTP application.

    Args:
        queue: Sync queue
        blob_store: Encrypted blob store
        hub: Notification hub
        config: HTTP configuration (CORS origins)
        notifications: Notification configuration (SSE keepalive)

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    services = Services(
        queue=queue,
        blob_store=blob_store,
        hub=hub,
        notifications=notifications or NotificationConfig(),
    )
    app = web.Application()

    app.router.add_get("/v1/sync/status", lambda r: handle_sync_status(r, services))
    app.router.add_get("/v1/sync/pending", lambda r: handle_sync_pending(r, services))
    app.router.add_get("/v1/sync/items/{item_id}", lambda r: handle_sync_item(r, services))
    app.router.add_post("/v1/sync/queue", lambda r: handle_sync_enqueue(r, services))
    app.router.add_post("/v1/sync/process", lambda r: handle_sync_process(r, services))
    app.router.add_post("/v1/sync/cleanup", lambda r: handle_sync_cleanup(r, services))
    app.router.add_get("/v1/blobs", lambda r: handle_list_blobs(r, services))
    app.router.add_get("/v1/blobs/{item_key}", lambda r: handle_get_blob(r, services))
    app.router.add_put("/v1/blobs/{item_key}", lambda r: handle_put_blob(r, services))
    app.router.add_get(
        "/v1/notifications/stream",
        lambda r: handle_notification_stream(r, services, config),
    )
    app.router.add_get("/v1/health", lambda r: handle_health(r, services))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        if not response.prepared:
            apply_cors_headers(request, response, config)
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except VaultSyncError as e:
            status = ERROR_STATUS.get(e.code, 500)
            if status >= 500:
                logger.error(f"HTTP request failed: {e.message}", extra={"error_code": e.code})
            response = web.json_response(e.to_dict(), status=status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            response = web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

        # Error responses never pass back through cors_middleware
        apply_cors_headers(request, response, config)
        return response

    app.middlewares.insert(0, error_middleware)

    return app


def apply_cors_headers(
    request: web.Request, response: web.StreamResponse, config: HttpConfig
) -> None:
    origin = request.headers.get("Origin", "*")
    if "*" in config.cors_origins or origin in config.cors_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = f"Content-Type, {USER_HEADER}"


def extract_user(request: web.Request) -> str:
    """Extract the authenticated user id.

    Raises:
        web.HTTPUnauthorized: If the header is missing
    """
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id:
        raise web.HTTPUnauthorized(
            text=json.dumps({"error": f"{USER_HEADER} header is required"}),
            content_type="application/json",
        )
    return user_id


async def read_json(request: web.Request, required: bool = True) -> Any:
    """Parse the request body.

    Raises:
        web.HTTPBadRequest: If the body is not valid JSON
    """
    if not required and not request.body_exists:
        return {}
    try:
        return await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body"}),
            content_type="application/json",
        ) from None


# ----------------------------------------------------------------------
# Sync queue
# ----------------------------------------------------------------------


async def handle_sync_status(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/sync/status - Queue counts, devices and last sync."""
    user_id = extract_user(request)
    summary = await services.queue.get_status(user_id)
    return web.json_response(summary.to_dict())


async def handle_sync_pending(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/sync/pending - Pending and failed items in order."""
    user_id = extract_user(request)
    items = await services.queue.list_pending(user_id)
    return web.json_response({"items": [item.to_dict() for item in items], "count": len(items)})


async def handle_sync_item(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/sync/items/{item_id} - Poll one item."""
    user_id = extract_user(request)
    item = await services.queue.get_item(user_id, request.match_info["item_id"])
    return web.json_response(item.to_dict())


async def handle_sync_enqueue(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/sync/queue - Enqueue one operation or a batch.

    Body is either a single operation
    ``{"operation", "entity", "entityId", "data"}`` or
    ``{"operations": [...]}`` for an atomic, ordered batch.
    """
    user_id = extract_user(request)
    body = await read_json(request)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")

    if "operations" in body:
        operations = body["operations"]
        if not isinstance(operations, list) or not operations:
            raise ValidationError("operations must be a non-empty list", field_name="operations")
        items = await services.queue.enqueue_batch(user_id, operations)
        return web.json_response({"items": [item.to_dict() for item in items]}, status=201)

    item = await services.queue.enqueue(
        user_id,
        body.get("operation"),
        body.get("entity"),
        entity_id=body.get("entityId"),
        data=body.get("data"),
    )
    return web.json_response(item.to_dict(), status=201)


async def handle_sync_process(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/sync/process - Drain the caller's queue."""
    user_id = extract_user(request)
    result = await services.queue.drain(user_id)
    return web.json_response(result.to_dict())


async def handle_sync_cleanup(request: web.Request, services: Services) -> web.Response:
    """Handle POST /v1/sync/cleanup - Retention sweep across all users.

    Operator endpoint; the periodic CleanupLoop normally does this.
    """
    body = await read_json(request, required=False)
    retention_days = body.get("retentionDays") if isinstance(body, dict) else None
    if retention_days is not None and (
        isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 0
    ):
        raise ValidationError("retentionDays must be a non-negative integer", field_name="retentionDays")

    deleted = await services.queue.cleanup(retention_days)
    return web.json_response({"deleted": deleted})


# ----------------------------------------------------------------------
# Encrypted blobs
# ----------------------------------------------------------------------


async def handle_list_blobs(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/blobs - List descriptors (no ciphertext)."""
    user_id = extract_user(request)
    namespace = request.query.get("namespace")
    descriptors = await services.blob_store.list(user_id, namespace=namespace)
    return web.json_response({"items": [d.to_dict() for d in descriptors]})


async def handle_get_blob(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/blobs/{item_key} - Fetch one record."""
    user_id = extract_user(request)
    namespace = request.query.get("namespace", DEFAULT_NAMESPACE)
    record = await services.blob_store.get(user_id, namespace, request.match_info["item_key"])
    return web.json_response(record.to_dict())


async def handle_put_blob(request: web.Request, services: Services) -> web.Response:
    """Handle PUT /v1/blobs/{item_key} - Upsert one record."""
    user_id = extract_user(request)
    namespace = request.query.get("namespace", DEFAULT_NAMESPACE)
    body = await read_json(request)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")

    result = await services.blob_store.put(
        user_id,
        namespace,
        request.match_info["item_key"],
        ciphertext=body.get("ciphertext"),
        nonce=body.get("nonce"),
        mac=body.get("mac"),
        aad=body.get("aad"),
        version=body.get("version"),
        expected_version=body.get("expectedVersion"),
    )
    return web.json_response(result.to_dict(), status=201 if result.created else 200)


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------


async def handle_notification_stream(
    request: web.Request, services: Services, config: HttpConfig
) -> web.StreamResponse:
    """Handle GET /v1/notifications/stream - Server-Sent Events.

    Only events published after the stream opens are delivered. A comment
    line is written every keepalive interval so proxies keep the connection.
    """
    user_id = extract_user(request)
    keepalive = services.notifications.keepalive_seconds

    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )
    apply_cors_headers(request, response, config)

    async with services.hub.subscribe(user_id) as subscription:
        await response.prepare(request)
        logger.info("Notification stream opened", extra={"user_id": user_id})

        try:
            while True:
                try:
                    event = await subscription.get(timeout=keepalive)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue

                if event is None:
                    break

                payload = json.dumps(event.to_dict())
                await response.write(f"event: {event.type}\ndata: {payload}\n\n".encode())
        except ConnectionResetError:
            pass
        finally:
            logger.info("Notification stream closed", extra={"user_id": user_id})

    return response


async def handle_health(request: web.Request, services: Services) -> web.Response:
    """Handle GET /v1/health - Health check."""
    return web.json_response(
        {"healthy": True, "entities": services.queue.registry.entities}
    )


async def run_http_server(
    app: web.Application,
    host: str = "0.0.0.0",
    port: int = 8080,
) -> None:
    """Run the HTTP server until cancelled.

    Args:
        app: Application from create_http_app()
        host: Host to bind to
        port: Port to listen on
    """
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server running on http://{host}:{port}")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
