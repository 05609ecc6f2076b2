"""API handlers for job endpoints.

Endpoints:
    POST /api/v1/jobs - Submit a job of any type
    POST /api/v1/convert - Submit a conversion job
    POST /api/v1/exports - Submit an export job
    POST /api/v1/ai/chat - Submit an AI chat job
    GET /api/v1/jobs - List jobs with filtering
    GET /api/v1/jobs/{job_id} - Get job detail
    POST /api/v1/jobs/{job_id}/cancel - Cancel a job

The caller principal is taken from the ``X-Requested-By`` header; an
idempotency key may be given in the ``Idempotency-Key`` header or as
``idempotencyKey`` in the request body.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

from djo.db.types import JobStatus, JobType
from djo.jobs.coordinator import LifecycleCoordinator
from djo.jobs.payloads import validate_payload
from djo.server.api.errors import (
    INVALID_JSON,
    INVALID_PARAMETER,
    INVALID_REQUEST,
    api_error,
)

logger = logging.getLogger(__name__)

ANONYMOUS_PRINCIPAL = "anonymous"
MAX_LIST_LIMIT = 500
DEFAULT_LIST_LIMIT = 50


def get_coordinator(request: web.Request) -> LifecycleCoordinator:
    return request.app["engine"].coordinator


def get_principal(request: web.Request) -> str:
    """Return the caller principal set by the fronting gateway."""
    return request.headers.get("X-Requested-By", "").strip() or ANONYMOUS_PRINCIPAL


async def read_json_object(
    request: web.Request,
) -> tuple[dict[str, Any] | None, web.Response | None]:
    """Parse the request body as a JSON object.

    Returns:
        Tuple of (body, None) on success or (None, error_response).
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, api_error("Request body is not valid JSON", code=INVALID_JSON)
    if not isinstance(body, dict):
        return None, api_error(
            "Request body must be a JSON object", code=INVALID_REQUEST
        )
    return body, None


def _pop_idempotency_key(request: web.Request, body: dict[str, Any]) -> str | None:
    from_body = body.pop("idempotencyKey", None)
    key = request.headers.get("Idempotency-Key") or from_body
    if key is None:
        return None
    return str(key)


async def _submit(
    request: web.Request,
    job_type: JobType,
    payload: Any,
    idempotency_key: str | None,
) -> web.Response:
    normalized = validate_payload(job_type, payload)
    coordinator = get_coordinator(request)
    job = await asyncio.to_thread(
        coordinator.submit,
        job_type,
        normalized,
        get_principal(request),
        idempotency_key,
    )
    return web.json_response({"jobId": job.id, "job": job.to_dict()}, status=202)


async def api_submit_job_handler(request: web.Request) -> web.Response:
    """Handle POST /api/v1/jobs - generic submission.

    Body:
        type: Job type (convert, export, ai).
        payload: Job payload object.
        idempotencyKey: Optional idempotency key.
    """
    body, error = await read_json_object(request)
    if error is not None:
        return error
    idempotency_key = _pop_idempotency_key(request, body)

    raw_type = body.get("type")
    try:
        job_type = JobType(raw_type)
    except ValueError:
        return api_error(
            f"Invalid type value: '{raw_type}'",
            code=INVALID_PARAMETER,
            details={"allowed": [t.value for t in JobType]},
        )
    return await _submit(request, job_type, body.get("payload"), idempotency_key)


def _typed_submit_handler(job_type: JobType):
    async def handler(request: web.Request) -> web.Response:
        body, error = await read_json_object(request)
        if error is not None:
            return error
        idempotency_key = _pop_idempotency_key(request, body)
        return await _submit(request, job_type, body, idempotency_key)

    handler.__name__ = f"api_submit_{job_type.value}_handler"
    handler.__doc__ = f"Handle submission of a {job_type.value} job (body = payload)."
    return handler


api_convert_handler = _typed_submit_handler(JobType.CONVERT)
api_export_handler = _typed_submit_handler(JobType.EXPORT)
api_ai_chat_handler = _typed_submit_handler(JobType.AI)


async def api_jobs_handler(request: web.Request) -> web.Response:
    """Handle GET /api/v1/jobs - list jobs, newest first.

    Query parameters:
        status: Filter by job status.
        type: Filter by job type.
        requestedBy: Filter by requester.
        limit: Page size (1-500, default 50).
    """
    query = request.query

    status = None
    if query.get("status"):
        try:
            status = JobStatus(query["status"])
        except ValueError:
            return api_error(
                f"Invalid status value: '{query['status']}'", code=INVALID_PARAMETER
            )

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

    coordinator = get_coordinator(request)
    jobs = await asyncio.to_thread(
        coordinator.list_jobs,
        status=status,
        job_type=job_type,
        requested_by=query.get("requestedBy") or None,
        limit=limit,
    )
    return web.json_response(
        {"jobs": [job.to_dict() for job in jobs], "count": len(jobs)}
    )


async def api_job_detail_handler(request: web.Request) -> web.Response:
    """Handle GET /api/v1/jobs/{job_id}."""
    job_id = request.match_info["job_id"]
    job = await asyncio.to_thread(get_coordinator(request).get, job_id)
    return web.json_response(job.to_dict())


async def api_cancel_job_handler(request: web.Request) -> web.Response:
    """Handle POST /api/v1/jobs/{job_id}/cancel.

    Terminal jobs are returned unchanged; running jobs are flagged and
    report ``cancelRequested: true`` until the worker stops.
    """
    job_id = request.match_info["job_id"]
    job = await asyncio.to_thread(get_coordinator(request).cancel, job_id)
    logger.info("Cancel of job %s requested by %s", job_id, get_principal(request))
    return web.json_response(job.to_dict())


def get_job_routes() -> list[tuple[str, str, Any]]:
    """Return (method, path suffix, handler) for job routes."""
    return [
        ("POST", "/jobs", api_submit_job_handler),
        ("GET", "/jobs", api_jobs_handler),
        ("GET", "/jobs/{job_id}", api_job_detail_handler),
        ("POST", "/jobs/{job_id}/cancel", api_cancel_job_handler),
        ("POST", "/convert", api_convert_handler),
        ("POST", "/exports", api_export_handler),
        ("POST", "/ai/chat", api_ai_chat_handler),
    ]
