"""FastAPI application main entry point for the coordination server."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..models.node import NodeStatus
from ..services.config import get_config
from ..services.dependencies import get_command_dispatcher, get_node_registry
from .routes import commands, events, nodes, services

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

_ACTIVE_STATUSES = (NodeStatus.ONLINE, NodeStatus.BUSY, NodeStatus.DRAINING)

_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    502: "bad_gateway",
}


async def sweep_commands(shutdown: asyncio.Event, interval: float) -> None:
    """Background task that times out overdue pending commands."""
    dispatcher = get_command_dispatcher()
    while not shutdown.is_set():
        try:
            expired = dispatcher.sweep_expired()
            if expired:
                logger.info(f"Timed out {len(expired)} pending command(s)")
        except Exception as e:
            logger.error(f"Error in command sweep: {e}")

        try:
            await asyncio.wait_for(shutdown.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            continue


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage server lifecycle."""
    config = get_config()
    logger.info(f"Coordination server starting (auth {'on' if config.auth_token else 'off'})")

    shutdown = asyncio.Event()
    app.state.shutdown_event = shutdown
    sweep_task = asyncio.create_task(
        sweep_commands(shutdown, config.command_sweep_interval_seconds)
    )

    yield

    logger.info("Coordination server shutting down...")
    shutdown.set()
    try:
        await asyncio.wait_for(sweep_task, timeout=5.0)
    except asyncio.TimeoutError:
        sweep_task.cancel()
    logger.info("Coordination server stopped")


def create_app() -> FastAPI:
    """Build the API application from the current configuration."""
    config = get_config()

    application = FastAPI(
        title="Nexus Coordination Server",
        description="Node registry, command dispatch and event streaming for workspace nodes",
        version=VERSION,
        lifespan=lifespan,
    )

    wildcard = "*" in config.cors_origins
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=not wildcard,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        """Flatten structured details to ``{"error", "detail"}`` bodies."""
        if isinstance(exc.detail, dict):
            content = dict(exc.detail)
        else:
            content = {
                "error": _ERROR_CODES.get(exc.status_code, "error"),
                "detail": str(exc.detail),
            }
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(500)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "detail": str(exc)},
        )

    application.include_router(nodes.router, tags=["nodes"])
    application.include_router(commands.router, tags=["commands"])
    application.include_router(services.router, tags=["services"])
    application.include_router(events.router, tags=["events"])

    @application.get("/health")
    async def health():
        """Liveness and readiness. Never requires auth."""
        counts = get_node_registry().counts()
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_nodes": counts["total"],
            "active_nodes": sum(counts[s.value] for s in _ACTIVE_STATUSES),
            "version": VERSION,
        }

    return application


app = create_app()


def run_server(host: str | None = None, port: int | None = None) -> None:
    """
    Run the coordination server with uvicorn.

    Args:
        host: Bind address (default: COORD_HOST)
        port: Listen port (default: COORD_PORT)
    """
    import uvicorn

    config = get_config()
    host = host or config.host
    port = port or config.port

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Starting coordination server on {host}:{port}")

    # uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown.
    uvicorn.run(
        create_app(),
        host=host,
        port=port,
        log_level=config.log_level,
        access_log=True,
    )


__all__ = ["app", "create_app", "lifespan", "run_server"]
