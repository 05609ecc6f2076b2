"""CLI serve command for the HTTP gateway.

This module provides the `djo serve` command that runs the job API and
the worker pool as a long-lived service suitable for systemd management.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

import click

from djo.cli import get_engine
from djo.cli.exit_codes import ExitCode
from djo.jobs.engine import Engine

logger = logging.getLogger(__name__)


async def run_server(
    engine: Engine,
    bind: str,
    port: int,
    run_workers: bool,
) -> int:
    """Run the gateway until SIGINT/SIGTERM.

    Args:
        engine: Wired engine serving the API.
        bind: Address to bind to.
        port: Port to bind to.
        run_workers: Start the worker pool in this process.

    Returns:
        Exit code (0 for clean shutdown, non-zero for errors).
    """
    from aiohttp import web

    from djo.server.app import create_app
    from djo.server.lifecycle import ServerLifecycle

    lifecycle = ServerLifecycle(shutdown_timeout=engine.config.server.shutdown_timeout)
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        lifecycle.initiate_shutdown()
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown, sig)

    app = create_app(engine, run_workers=run_workers, lifecycle=lifecycle)
    runner = web.AppRunner(app, shutdown_timeout=lifecycle.shutdown_timeout)
    await runner.setup()

    try:
        site = web.TCPSite(runner, bind, port)
        await site.start()
        logger.info(
            "djo gateway started on http://%s:%d (PID %d, workers %s)",
            bind,
            port,
            os.getpid(),
            "on" if run_workers else "off",
        )
        logger.info("Health endpoint: http://%s:%d/health", bind, port)
        await shutdown_event.wait()
    except OSError as e:
        logger.error("Cannot listen on %s:%d: %s", bind, port, e)
        return ExitCode.GENERAL_ERROR
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await runner.cleanup()
        logger.info("djo gateway stopped")

    return ExitCode.SUCCESS


@click.command("serve")
@click.option(
    "--bind",
    type=str,
    default=None,
    help="Address to bind to (default: 127.0.0.1).",
)
@click.option(
    "--port",
    "-p",
    type=click.IntRange(1, 65535),
    default=None,
    help="Port to bind to (default: 8320).",
)
@click.option(
    "--workers/--no-workers",
    "run_workers",
    default=None,
    help="Run the worker pool inside the server process.",
)
@click.pass_context
def serve_command(
    ctx: click.Context,
    bind: str | None,
    port: int | None,
    run_workers: bool | None,
) -> None:
    """Run the HTTP gateway.

    Serves the job API under /api/v1 with a health endpoint at /health.
    Handles graceful shutdown on SIGTERM (from systemd) or SIGINT (Ctrl+C).

    \b
    Examples:
        djo serve                           # Start with defaults
        djo serve --port 9000               # Custom port
        djo serve --no-workers              # API only; run workers elsewhere
        djo --log-json serve                # JSON logging for systemd
    """
    engine = get_engine(ctx)
    server = engine.config.server

    server_bind = bind if bind is not None else server.bind
    server_port = port if port is not None else server.port
    workers = run_workers if run_workers is not None else server.run_workers

    if workers and not engine.registry.job_types:
        logger.warning("No task handlers installed; jobs will stay pending")
    if server_port < 1024:
        logger.warning("Port %d is privileged and may require root", server_port)

    try:
        exit_code = asyncio.run(
            run_server(engine, server_bind, server_port, workers)
        )
    except KeyboardInterrupt:
        exit_code = ExitCode.INTERRUPTED
    sys.exit(exit_code)
