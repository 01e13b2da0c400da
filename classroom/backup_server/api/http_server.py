"""
HTTP server for backup operators.

This module exposes the BackupSubsystem operator surface as a small JSON API:

    GET  /v1/health              live database integrity
    GET  /v1/backup/status       status registry and configuration summary
    GET  /v1/backup/snapshots    local snapshots, newest first
    GET  /v1/backup/logs         tail of the run log file (?limit=20)
    POST /v1/backup/trigger      run the pipeline now
    POST /v1/backup/email        run the pipeline with email delivery only
    POST /v1/backup/restore      replace the live database with a snapshot

Invariants:
    - Mutating routes require "Authorization: Bearer <OPERATOR_TOKEN>" when
      a token is configured
    - BackupError subclasses map to stable status codes (see ERROR_STATUS)
    - JSON request/response format

How to change safely:
    - Add routes additively under /v1
    - Keep the failed-run body identical to BackupRun.to_dict()
"""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..config import HttpConfig
from ..delivery import Channel
from ..errors import (
    BackupAlreadyRunningError,
    BackupError,
    InvalidSnapshotError,
    SnapshotNotFoundError,
)
from ..history import DEFAULT_TAIL_LINES
from ..subsystem import BackupSubsystem

logger = logging.getLogger(__name__)

SUBSYSTEM_KEY = web.AppKey("subsystem", BackupSubsystem)

ERROR_STATUS: dict[type[BackupError], int] = {
    BackupAlreadyRunningError: 409,
    SnapshotNotFoundError: 404,
    InvalidSnapshotError: 400,
}


def _json_error(status: int, message: str, code: str, details: dict[str, Any] | None = None) -> web.Response:
    body = {"error": message, "error_code": code}
    if details:
        body["details"] = details
    return web.json_response(body, status=status)


def create_http_app(
    subsystem: BackupSubsystem,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the operator HTTP application.

    Args:
        subsystem: Backup subsystem serving the requests
        config: HTTP configuration (operator token)

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()
    app[SUBSYSTEM_KEY] = subsystem

    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/backup/status", handle_status)
    app.router.add_get("/v1/backup/snapshots", handle_list_snapshots)
    app.router.add_get("/v1/backup/logs", handle_logs)
    app.router.add_post("/v1/backup/trigger", handle_trigger)
    app.router.add_post("/v1/backup/email", handle_email)
    app.router.add_post("/v1/backup/restore", handle_restore)

    # Operator token check on mutating routes
    @web.middleware
    async def auth_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "POST" and config.operator_token:
            header = request.headers.get("Authorization", "")
            scheme, _, token = header.partition(" ")
            if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), config.operator_token):
                return _json_error(401, "Missing or invalid operator token", "UNAUTHORIZED")
        return await handler(request)

    # Add error handler
    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BackupError as e:
            status = next(
                (code for error_type, code in ERROR_STATUS.items() if isinstance(e, error_type)),
                500,
            )
            if status >= 500:
                logger.error(f"Backup operation failed: {e}", extra={"error_code": e.code})
            return _json_error(status, e.message, e.code, e.details)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return _json_error(500, str(e), "INTERNAL")

    app.middlewares.append(error_middleware)
    app.middlewares.append(auth_middleware)

    return app


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body", "error_code": "BAD_REQUEST"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object", "error_code": "BAD_REQUEST"}),
            content_type="application/json",
        )
    return body


def _run_response(run: Any) -> web.Response:
    status = 200 if run.succeeded else 500
    return web.json_response(run.to_dict(), status=status)


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Live database integrity."""
    subsystem = request.app[SUBSYSTEM_KEY]
    report = await subsystem.check_integrity()
    result = {
        "healthy": report.valid,
        "database": report.reason,
        "is_running": subsystem.registry.is_running,
    }
    return web.json_response(result, status=200 if report.valid else 503)


async def handle_status(request: web.Request) -> web.Response:
    """Handle GET /v1/backup/status - Status registry."""
    return web.json_response(request.app[SUBSYSTEM_KEY].get_status())


async def handle_list_snapshots(request: web.Request) -> web.Response:
    """Handle GET /v1/backup/snapshots - Local snapshots."""
    snapshots = request.app[SUBSYSTEM_KEY].list_snapshots()
    return web.json_response(
        {"snapshots": [s.to_dict() for s in snapshots], "count": len(snapshots)}
    )


async def handle_logs(request: web.Request) -> web.Response:
    """Handle GET /v1/backup/logs - Run log tail."""
    try:
        limit = int(request.query.get("limit", DEFAULT_TAIL_LINES))
    except ValueError:
        return _json_error(400, "limit must be an integer", "BAD_REQUEST")

    subsystem = request.app[SUBSYSTEM_KEY]
    return web.json_response(
        {"enabled": subsystem.run_log.enabled, "lines": subsystem.read_run_log(limit)}
    )


async def handle_trigger(request: web.Request) -> web.Response:
    """Handle POST /v1/backup/trigger - Run the pipeline now."""
    body = await _read_json(request)

    channels = body.get("channels")
    if channels is not None:
        if not isinstance(channels, list) or not all(isinstance(c, str) for c in channels):
            return _json_error(400, "channels must be a list of channel names", "BAD_REQUEST")
        try:
            channels = [Channel.parse(c) for c in channels]
        except ValueError as e:
            return _json_error(400, str(e), "BAD_REQUEST")

    force = body.get("force", False)
    if not isinstance(force, bool):
        return _json_error(400, "force must be a boolean", "BAD_REQUEST")

    run = await request.app[SUBSYSTEM_KEY].trigger_backup(channels=channels, force=force)
    return _run_response(run)


async def handle_email(request: web.Request) -> web.Response:
    """Handle POST /v1/backup/email - Run the pipeline with email delivery only."""
    run = await request.app[SUBSYSTEM_KEY].trigger_backup(channels=[Channel.EMAIL])
    return _run_response(run)


async def handle_restore(request: web.Request) -> web.Response:
    """Handle POST /v1/backup/restore - Restore a named snapshot."""
    body = await _read_json(request)
    name = body.get("snapshot")
    if not isinstance(name, str) or not name or "/" in name or "\\" in name or name in {".", ".."}:
        return _json_error(400, "snapshot must be a snapshot filename", "BAD_REQUEST")

    result = await request.app[SUBSYSTEM_KEY].restore_from(name)
    return web.json_response(result)


async def start_http_server(
    subsystem: BackupSubsystem,
    config: HttpConfig,
) -> web.AppRunner:
    """Start serving the operator API.

    Returns:
        The AppRunner; call ``cleanup()`` on it to stop serving.
    """
    app = create_http_app(subsystem, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")
    return runner
