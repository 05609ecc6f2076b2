"""API route modules for the Document Job Orchestrator gateway.

Each module handles a specific domain:

- jobs.py: Job submission, listing, detail and cancel endpoints
- events.py: Server-Sent Events stream of a job's events
- dead_letters.py: Dead-letter listing and reprocessing

All endpoints are registered under ``/api/v1/``. Job and dead-letter ids
are UUIDv4 strings.
"""

from aiohttp import web

from djo.server.api.dead_letters import get_dead_letter_routes
from djo.server.api.events import get_events_routes
from djo.server.api.jobs import get_job_routes

__all__ = [
    "API_PREFIX",
    "setup_api_routes",
]

API_PREFIX = "/api/v1"

_ROUTE_GETTERS = [
    get_job_routes,
    get_events_routes,
    get_dead_letter_routes,
]


def setup_api_routes(app: web.Application) -> None:
    """Register all API routes with the application.

    Args:
        app: aiohttp Application to configure.
    """
    for get_routes in _ROUTE_GETTERS:
        for method, suffix, handler in get_routes():
            app.router.add_route(method, f"{API_PREFIX}{suffix}", handler)
