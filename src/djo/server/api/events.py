"""Server-Sent Events (SSE) stream of job events.

Endpoints:
    GET /api/v1/jobs/{job_id}/events - Replay and follow a job's events

Events after ``Last-Event-ID`` (or the ``after`` query parameter) are
replayed first, then live events are streamed until the job reaches a
terminal status. Each SSE ``id`` is the event's ``seq``, so a reconnecting
client resumes exactly where it stopped. A client resuming past the final
event of a finished job gets a ``close`` event and the stream ends.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

from djo.db.types import JobEvent
from djo.server.api.errors import INVALID_PARAMETER, SERVICE_UNAVAILABLE, api_error
from djo.server.api.jobs import get_coordinator

logger = logging.getLogger(__name__)

# SSE configuration
SSE_HEARTBEAT_INTERVAL = 15  # seconds
SSE_WAIT_TIMEOUT = 1.0  # seconds - longest blocking wait per poll
SSE_WRITE_TIMEOUT = 5.0  # seconds - timeout for writing to slow clients
MAX_SSE_CONNECTIONS = 100


async def _write_sse(
    response: web.StreamResponse,
    payload: str,
    timeout: float = SSE_WRITE_TIMEOUT,
) -> bool:
    """Write raw SSE text, returning False if the client is gone."""
    try:
        await asyncio.wait_for(response.write(payload.encode("utf-8")), timeout)
        return True
    except asyncio.TimeoutError:
        logger.warning("SSE write timeout - slow client")
        return False
    except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError):
        logger.debug("SSE client disconnected")
        return False


def format_sse_event(
    event_type: str, data: dict[str, Any], event_id: int | None = None
) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_type}")
    lines.append(f"data: {json.dumps(data)}")
    return "\n".join(lines) + "\n\n"


def _parse_after(request: web.Request) -> int | None:
    raw = request.headers.get("Last-Event-ID") or request.query.get("after")
    if raw is None or raw == "":
        return None
    value = int(raw)
    if value < 0:
        raise ValueError(raw)
    return value


async def sse_job_events_handler(request: web.Request) -> web.StreamResponse:
    """Handle GET /api/v1/jobs/{job_id}/events."""
    job_id = request.match_info["job_id"]
    try:
        after = _parse_after(request)
    except ValueError:
        return api_error(
            "Last-Event-ID/after must be a non-negative integer",
            code=INVALID_PARAMETER,
        )

    connections = request.app.setdefault("_sse_connections", {"count": 0})
    if connections["count"] >= MAX_SSE_CONNECTIONS:
        resp = api_error(
            "Service temporarily unavailable - too many connections",
            code=SERVICE_UNAVAILABLE,
            status=503,
        )
        resp.headers["Retry-After"] = "10"
        return resp

    coordinator = get_coordinator(request)
    # Raises JobNotFoundError (404) before the stream is opened
    await asyncio.to_thread(coordinator.get, job_id)

    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    connections["count"] += 1
    lifecycle = request.app.get("lifecycle")
    loop = asyncio.get_running_loop()
    last_seq = after or 0
    last_write = loop.time()

    try:
        while True:
            if lifecycle is not None and lifecycle.is_shutting_down:
                await _write_sse(
                    response,
                    format_sse_event("close", {"reason": "server_shutdown"}),
                    timeout=1.0,
                )
                break

            events: list[JobEvent] = await asyncio.to_thread(
                coordinator.events.wait_for_events, job_id, last_seq, SSE_WAIT_TIMEOUT
            )
            if not events and await asyncio.to_thread(
                coordinator.events.is_finished, job_id
            ):
                # Already past the final event, or its events were purged
                events = await asyncio.to_thread(
                    coordinator.events.read, job_id, last_seq
                )
                if not events:
                    await _write_sse(
                        response,
                        format_sse_event(
                            "close", {"reason": "job_finished", "lastSeq": last_seq}
                        ),
                        timeout=1.0,
                    )
                    break
            if not events:
                if loop.time() - last_write >= SSE_HEARTBEAT_INTERVAL:
                    if not await _write_sse(response, ": keepalive\n\n"):
                        break
                    last_write = loop.time()
                continue

            finished = False
            for event in events:
                ok = await _write_sse(
                    response,
                    format_sse_event("job_event", event.to_dict(), event.seq),
                )
                if not ok:
                    return response
                last_seq = event.seq
                if event.status.is_terminal:
                    finished = True
                    break
            last_write = loop.time()
            if finished:
                break
    finally:
        connections["count"] -= 1

    await response.write_eof()
    return response


def get_events_routes() -> list[tuple[str, str, Any]]:
    """Return (method, path suffix, handler) for event routes."""
    return [("GET", "/jobs/{job_id}/events", sse_job_events_handler)]
