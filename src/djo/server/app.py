"""HTTP application for the job gateway.

This module provides the aiohttp Application with the job API, health
check endpoint, error mapping and the in-process worker pool.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any

from aiohttp import web
from aiohttp.web import RequestHandler

from djo import __version__
from djo.db.connection import ConnectionPool, DatabaseLockedError
from djo.jobs.engine import Engine
from djo.jobs.exceptions import OrchestratorError
from djo.server.api import API_PREFIX, setup_api_routes
from djo.server.api.errors import (
    DATABASE_UNAVAILABLE,
    INTERNAL_ERROR,
    SHUTTING_DOWN,
    api_error,
    orchestrator_error,
)
from djo.server.lifecycle import ServerLifecycle

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT = 5.0  # seconds


@dataclass
class HealthStatus:
    """Health check response payload."""

    status: str
    """Overall status: 'healthy', 'degraded', or 'unhealthy'."""

    database: str
    """Database connectivity: 'connected' or 'disconnected'."""

    uptime_seconds: float
    version: str
    shutting_down: bool = False
    workers_running: bool = False

    queues: dict[str, Any] = field(default_factory=dict)
    """Per-type job counts and shedding state."""

    dead_letters: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


async def check_database_health(pool: ConnectionPool) -> bool:
    """Run SELECT 1 in a thread, with a timeout."""

    def _sync_check() -> bool:
        try:
            pool.execute_read("SELECT 1")
            return True
        except sqlite3.Error as e:
            logger.warning("Database error during health check: %s", e)
            return False

    try:
        return await asyncio.wait_for(
            asyncio.to_thread(_sync_check), timeout=HEALTH_CHECK_TIMEOUT
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Database health check timed out after %.1fs", HEALTH_CHECK_TIMEOUT
        )
        return False


@web.middleware
async def error_middleware(
    request: web.Request, handler: RequestHandler
) -> web.StreamResponse:
    """Map engine and database exceptions to JSON error responses."""
    try:
        return await handler(request)
    except OrchestratorError as e:
        if e.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e)
        return orchestrator_error(e)
    except DatabaseLockedError as e:
        logger.warning(
            "Database busy during %s %s: %s", request.method, request.path, e
        )
        response = api_error(str(e), code=DATABASE_UNAVAILABLE, status=503)
        response.headers["Retry-After"] = "1"
        return response
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        return api_error("Internal server error", code=INTERNAL_ERROR, status=500)


@web.middleware
async def shutdown_middleware(
    request: web.Request, handler: RequestHandler
) -> web.StreamResponse:
    """Refuse new submissions once shutdown has started."""
    lifecycle: ServerLifecycle | None = request.app.get("lifecycle")
    if (
        request.method == "POST"
        and lifecycle is not None
        and lifecycle.is_shutting_down
    ):
        return api_error("Service is shutting down", code=SHUTTING_DOWN, status=503)
    return await handler(request)


async def _start_workers(app: web.Application) -> None:
    engine: Engine = app["engine"]
    pool = engine.worker_pool()
    await asyncio.to_thread(pool.start)
    app["worker_pool"] = pool


async def _stop_workers(app: web.Application) -> None:
    pool = app.get("worker_pool")
    if pool is None:
        return
    lifecycle: ServerLifecycle = app["lifecycle"]
    stopped = await asyncio.to_thread(pool.stop, lifecycle.shutdown_timeout)
    if not stopped:
        logger.warning("Worker pool did not stop cleanly")


async def _on_shutdown(app: web.Application) -> None:
    app["lifecycle"].initiate_shutdown()


def create_app(
    engine: Engine,
    *,
    run_workers: bool | None = None,
    lifecycle: ServerLifecycle | None = None,
) -> web.Application:
    """Create and configure the aiohttp Application.

    Args:
        engine: Wired engine; the caller owns it and closes it.
        run_workers: Start the worker pool with the app (default from
            ``config.server.run_workers``).
        lifecycle: Shared lifecycle state (created if not given).

    Returns:
        Configured aiohttp Application instance.
    """
    app = web.Application(middlewares=[error_middleware, shutdown_middleware])
    app["engine"] = engine
    app["lifecycle"] = lifecycle or ServerLifecycle(
        shutdown_timeout=engine.config.server.shutdown_timeout
    )
    app["worker_pool"] = None

    app.router.add_get("/health", health_handler)
    app.router.add_get(f"{API_PREFIX}/health", health_handler)
    setup_api_routes(app)

    if run_workers is None:
        run_workers = engine.config.server.run_workers
    if run_workers:
        app.on_startup.append(_start_workers)
        app.on_cleanup.append(_stop_workers)
    app.on_shutdown.append(_on_shutdown)

    return app


async def health_handler(request: web.Request) -> web.Response:
    """Handle GET /health requests.

    Returns JSON health status with appropriate HTTP status code:
    - 200: healthy (database connected, not shutting down)
    - 503: degraded/unhealthy (database disconnected or shutting down)
    """
    engine: Engine = request.app["engine"]
    lifecycle: ServerLifecycle = request.app["lifecycle"]
    worker_pool = request.app.get("worker_pool")

    db_connected = await check_database_health(engine.pool)

    stats: dict[str, Any] = {"jobs": {}, "deadLetters": 0}
    if db_connected:
        try:
            stats = await asyncio.to_thread(engine.coordinator.queue_stats)
        except (sqlite3.Error, DatabaseLockedError) as e:
            logger.warning("Failed to get queue metrics for health check: %s", e)

    if lifecycle.is_shutting_down:
        status = "unhealthy"
    elif not db_connected:
        status = "degraded"
    else:
        status = "healthy"

    health = HealthStatus(
        status=status,
        database="connected" if db_connected else "disconnected",
        uptime_seconds=round(lifecycle.uptime_seconds, 1),
        version=__version__,
        shutting_down=lifecycle.is_shutting_down,
        workers_running=bool(worker_pool and worker_pool.running),
        queues=stats["jobs"],
        dead_letters=stats["deadLetters"],
    )
    return web.json_response(
        health.to_dict(), status=200 if status == "healthy" else 503
    )
