"""Standardized API error response helper.

Provides a consistent error response format with machine-readable error codes
for all API endpoints. All error responses include:
- ``error``: Human-readable error message
- ``code``: Machine-readable error code string
- ``details`` (optional): Additional context for the error

Engine exceptions carry their own ``code`` and ``status`` and are turned
into responses by ``orchestrator_error``.
"""

from __future__ import annotations

import math
from typing import Any

from aiohttp import web

from djo.jobs.exceptions import (
    OrchestratorError,
    PayloadValidationError,
    RateLimitedError,
)

# --- Error code constants ---

INVALID_REQUEST = "INVALID_REQUEST"
INVALID_JSON = "INVALID_JSON"
INVALID_PARAMETER = "INVALID_PARAMETER"
VALIDATION_FAILED = "VALIDATION_FAILED"
NOT_FOUND = "NOT_FOUND"
JOB_NOT_FOUND = "JOB_NOT_FOUND"
IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
QUEUE_OVERLOADED = "QUEUE_OVERLOADED"
RATE_LIMITED = "RATE_LIMITED"
INTERNAL_ERROR = "INTERNAL_ERROR"
SHUTTING_DOWN = "SHUTTING_DOWN"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
DATABASE_UNAVAILABLE = "DATABASE_UNAVAILABLE"


def api_error(
    message: str,
    *,
    code: str,
    status: int = 400,
    details: Any = None,
) -> web.Response:
    """Create a standardized JSON error response.

    Args:
        message: Human-readable error description.
        code: Machine-readable error code (use constants from this module).
        status: HTTP status code (default 400).
        details: Optional additional context (string, list, or dict).

    Returns:
        aiohttp JSON response with ``{"error": ..., "code": ...}`` body.
    """
    body: dict[str, Any] = {"error": message, "code": code}
    if details is not None:
        body["details"] = details
    return web.json_response(body, status=status)


def orchestrator_error(error: OrchestratorError) -> web.Response:
    """Build the error response for an engine exception."""
    details = None
    if isinstance(error, PayloadValidationError) and error.details:
        details = error.details
    response = api_error(
        str(error), code=error.code, status=error.status, details=details
    )
    if isinstance(error, RateLimitedError):
        response.headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
    elif error.status == 503:
        response.headers["Retry-After"] = "10"
    return response
