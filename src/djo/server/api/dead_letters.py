"""API handlers for the dead-letter store.

Endpoints:
    GET /api/v1/dead-letters - List dead-letter records
    GET /api/v1/dead-letters/{record_id} - Get one record
    POST /api/v1/dead-letters/{record_id}/reprocess - Resubmit as a new job
"""

from __future__ import annotations

import asyncio
from typing import Any

from aiohttp import web

from djo.db.types import JobType
from djo.server.api.errors import INVALID_PARAMETER, api_error
from djo.server.api.jobs import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    get_coordinator,
    get_principal,
)


async def api_dead_letters_handler(request: web.Request) -> web.Response:
    """Handle GET /api/v1/dead-letters.

    Query parameters:
        type: Filter by job type.
        pendingOnly: "true" to hide reprocessed records.
        limit: Page size (1-500, default 50).
    """
    query = request.query
    job_type = None
    if query.get("type"):
        try:
            job_type = JobType(query["type"])
        except ValueError:
            return api_error(
                f"Invalid type value: '{query['type']}'", code=INVALID_PARAMETER
            )
    try:
        limit = int(query.get("limit", DEFAULT_LIST_LIMIT))
    except ValueError:
        return api_error("limit must be an integer", code=INVALID_PARAMETER)
    if not 1 <= limit <= MAX_LIST_LIMIT:
        return api_error(
            f"limit must be between 1 and {MAX_LIST_LIMIT}", code=INVALID_PARAMETER
        )
    pending_only = query.get("pendingOnly", "").lower() in ("1", "true", "yes")

    records = await asyncio.to_thread(
        get_coordinator(request).list_dead_letters,
        job_type=job_type,
        include_reprocessed=not pending_only,
        limit=limit,
    )
    return web.json_response(
        {"deadLetters": [r.to_dict() for r in records], "count": len(records)}
    )


async def api_dead_letter_detail_handler(request: web.Request) -> web.Response:
    """Handle GET /api/v1/dead-letters/{record_id}."""
    record = await asyncio.to_thread(
        get_coordinator(request).get_dead_letter, request.match_info["record_id"]
    )
    return web.json_response(record.to_dict())


async def api_reprocess_dead_letter_handler(request: web.Request) -> web.Response:
    """Handle POST /api/v1/dead-letters/{record_id}/reprocess.

    The new job is requested by the caller when ``X-Requested-By`` is set,
    otherwise by the original requester.
    """
    requested_by = request.headers.get("X-Requested-By") and get_principal(request)
    job = await asyncio.to_thread(
        get_coordinator(request).reprocess_dead_letter,
        request.match_info["record_id"],
        requested_by or None,
    )
    return web.json_response({"jobId": job.id, "job": job.to_dict()}, status=202)


def get_dead_letter_routes() -> list[tuple[str, str, Any]]:
    """Return (method, path suffix, handler) for dead-letter routes."""
    return [
        ("GET", "/dead-letters", api_dead_letters_handler),
        ("GET", "/dead-letters/{record_id}", api_dead_letter_detail_handler),
        (
            "POST",
            "/dead-letters/{record_id}/reprocess",
            api_reprocess_dead_letter_handler,
        ),
    ]
