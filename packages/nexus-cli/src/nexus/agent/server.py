"""
Node agent HTTP server.

Receives pushed commands from the coordination server on
``POST /api/v1/commands`` and runs the agent loop in the background.
Commands are acknowledged immediately; their results are reported to the
coordination server once they finish.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, status
from pydantic import BaseModel, Field

from .. import __version__
from ..config import Settings, get_settings
from .node import NodeAgent

logger = logging.getLogger(__name__)


class AgentCommand(BaseModel):
    """A command as pushed by the coordination server."""

    id: str = Field(..., min_length=1)
    node_id: str = ""
    type: str = "session"
    action: str = Field(..., min_length=1)
    target: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = None


class CommandAck(BaseModel):
    id: str
    accepted: bool


def create_agent_app(agent: NodeAgent, run_loop: bool = True) -> FastAPI:
    """Build the agent application around ``agent``.

    Args:
        agent: The node agent that executes commands.
        run_loop: Start the register/heartbeat loop with the app.
    """
    started_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Node agent {agent.node_id} starting...")
        shutdown = asyncio.Event()
        loop_task = asyncio.create_task(agent.run(shutdown)) if run_loop else None

        yield

        logger.info(f"Node agent {agent.node_id} shutting down...")
        shutdown.set()
        if loop_task is not None:
            try:
                await asyncio.wait_for(loop_task, timeout=10.0)
            except asyncio.TimeoutError:
                loop_task.cancel()
        logger.info("Node agent stopped")

    app = FastAPI(
        title="Nexus Node Agent",
        description="Executes workspace session commands for the coordination server",
        version=__version__,
        lifespan=lifespan,
    )

    def _check_token(authorization: Optional[str]) -> None:
        expected = agent.settings.auth_token
        if not expected:
            return
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), expected.encode()):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "unauthorized", "message": "Invalid or missing bearer token"},
            )

    @app.post("/api/v1/commands", response_model=CommandAck, status_code=status.HTTP_202_ACCEPTED)
    async def receive_command(
        command: AgentCommand,
        authorization: Optional[str] = Header(default=None),
    ):
        """Accept a pushed command and run it in the background."""
        _check_token(authorization)
        if command.node_id and command.node_id != agent.node_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "wrong_node",
                    "message": f"command is for {command.node_id}, this is {agent.node_id}",
                },
            )
        accepted = agent.submit(command.model_dump())
        if not accepted:
            logger.info(f"Ignoring duplicate command {command.id}")
        return CommandAck(id=command.id, accepted=accepted)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "node_id": agent.node_id,
            "registered": agent.registered,
            "mode": "push" if agent.push_enabled else "poll",
            "coordination_url": agent.client.base_url,
            "uptime_seconds": (datetime.now(timezone.utc) - started_at).total_seconds(),
            "version": __version__,
        }

    return app


def run_agent(settings: Optional[Settings] = None) -> None:
    """
    Run the node agent until interrupted.

    Args:
        settings: Agent settings (default: loaded from NEXUS_* environment)
    """
    import uvicorn

    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    agent = NodeAgent(settings)
    logger.info(
        f"Starting node agent {agent.node_id} on {settings.agent_host}:{settings.agent_port} "
        f"(server: {settings.coordination_url})"
    )

    uvicorn.run(
        create_agent_app(agent),
        host=settings.agent_host,
        port=settings.agent_port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


__all__ = ["AgentCommand", "create_agent_app", "run_agent"]


if __name__ == "__main__":
    run_agent()
