"""HTTP API routes for command results and lookup."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...models.command import (
    Command,
    CommandListResponse,
    CommandResultAck,
    CommandResultReport,
    CommandStatus,
)
from ...services.command_dispatcher import CommandDispatcher, CommandNotFoundError
from ...services.dependencies import get_command_dispatcher
from ..middleware import require_token

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_token)])


@router.post("/api/v1/commands/{command_id}/result", response_model=CommandResultAck)
async def report_command_result(
    command_id: str,
    report: CommandResultReport,
    dispatcher: CommandDispatcher = Depends(get_command_dispatcher),
):
    """Record a node's result for a command.

    Unknown, already finished or timed out commands are acknowledged with
    ``accepted: false`` rather than an error, so a node retrying after a
    lost response is harmless.
    """
    if report.id is not None and report.id != command_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "id_mismatch",
                "detail": f"Body id {report.id} does not match path id {command_id}",
            },
        )

    accepted = dispatcher.report_result(command_id, report)
    return CommandResultAck(id=command_id, accepted=accepted)


@router.get("/api/v1/commands/{command_id}", response_model=Command)
async def get_command(
    command_id: str,
    dispatcher: CommandDispatcher = Depends(get_command_dispatcher),
):
    try:
        return dispatcher.get(command_id)
    except CommandNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "detail": f"Command not found: {command_id}"},
        )


@router.get("/api/v1/commands", response_model=CommandListResponse)
async def list_commands(
    node_id: Optional[str] = Query(None, description="Filter by node ID"),
    command_status: Optional[CommandStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(100, ge=1, le=1000),
    dispatcher: CommandDispatcher = Depends(get_command_dispatcher),
):
    """Recent commands, newest first."""
    commands = dispatcher.list(node_id=node_id, status=command_status, limit=limit)
    return CommandListResponse(commands=commands, count=len(commands))
