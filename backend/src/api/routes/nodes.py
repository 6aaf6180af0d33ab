"""HTTP API routes for node registration, liveness and command dispatch."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...models.command import Command, CommandListResponse, CommandRequest, CommandStatus
from ...models.event import EventType
from ...models.node import (
    HeartbeatRequest,
    Node,
    NodeListResponse,
    NodeRegistration,
    NodeStatus,
    NodeStatusResponse,
    NodeUpdate,
)
from ...services.command_dispatcher import CommandDeliveryError, CommandDispatcher
from ...services.dependencies import (
    get_command_dispatcher,
    get_event_broadcaster,
    get_node_registry,
)
from ...services.event_broadcaster import EventBroadcaster
from ...services.node_registry import NodeNotFoundError, NodeRegistry
from ..middleware import require_token

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_token)])


def _node_not_found(node_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "not_found", "detail": f"Node not found: {node_id}"},
    )


def _parse_label(label: Optional[str]) -> Optional[tuple[str, str]]:
    if label is None:
        return None
    key, sep, value = label.partition("=")
    if not sep or not key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_label", "detail": "label filter must be key=value"},
        )
    return key, value


@router.post("/api/v1/nodes", response_model=Node, status_code=status.HTTP_201_CREATED)
async def register_node(
    registration: NodeRegistration,
    response: Response,
    registry: NodeRegistry = Depends(get_node_registry),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
):
    """Register a node. Re-registering a known ID refreshes it and returns 200."""
    node, created = registry.register(registration)
    if not created:
        response.status_code = status.HTTP_200_OK
    broadcaster.publish(
        EventType.NODE_REGISTERED,
        {"node": node.model_dump(mode="json"), "created": created},
    )
    return node


@router.get("/api/v1/nodes", response_model=NodeListResponse)
async def list_nodes(
    label: Optional[str] = Query(None, description="Filter by label, as key=value"),
    capability: Optional[str] = Query(None, description="Filter by capability name"),
    node_status: Optional[NodeStatus] = Query(None, alias="status", description="Filter by status"),
    registry: NodeRegistry = Depends(get_node_registry),
):
    """List registered nodes ordered by ID."""
    nodes = registry.list(label=_parse_label(label), capability=capability, status=node_status)
    return NodeListResponse(nodes=nodes, count=len(nodes))


@router.get("/api/v1/nodes/{node_id}", response_model=Node)
async def get_node(node_id: str, registry: NodeRegistry = Depends(get_node_registry)):
    try:
        return registry.get(node_id)
    except NodeNotFoundError:
        raise _node_not_found(node_id)


@router.get("/api/v1/nodes/{node_id}/status", response_model=NodeStatusResponse)
async def get_node_status(node_id: str, registry: NodeRegistry = Depends(get_node_registry)):
    """Liveness summary for one node."""
    try:
        node = registry.get(node_id)
    except NodeNotFoundError:
        raise _node_not_found(node_id)

    now = datetime.now(timezone.utc)
    return NodeStatusResponse(
        node_id=node.id,
        status=node.status,
        last_seen=node.last_seen,
        seconds_since_seen=max((now - node.last_seen).total_seconds(), 0.0),
        uptime_seconds=max((now - node.created_at).total_seconds(), 0.0),
    )


@router.put("/api/v1/nodes/{node_id}", response_model=Node)
async def update_node(
    node_id: str,
    update: NodeUpdate,
    registry: NodeRegistry = Depends(get_node_registry),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
):
    """Partially update a node. Omitted fields are left unchanged."""
    try:
        node = registry.update(node_id, update)
    except NodeNotFoundError:
        raise _node_not_found(node_id)

    broadcaster.publish(EventType.NODE_UPDATED, {"node": node.model_dump(mode="json")})
    return node


@router.delete("/api/v1/nodes/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_node(
    node_id: str,
    registry: NodeRegistry = Depends(get_node_registry),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
):
    try:
        node = registry.remove(node_id)
    except NodeNotFoundError:
        raise _node_not_found(node_id)

    broadcaster.publish(EventType.NODE_UNREGISTERED, {"node_id": node.id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/v1/nodes/{node_id}/heartbeat", response_model=Node)
async def heartbeat(
    node_id: str,
    body: Optional[HeartbeatRequest] = None,
    registry: NodeRegistry = Depends(get_node_registry),
    broadcaster: EventBroadcaster = Depends(get_event_broadcaster),
):
    """Refresh a node's last-seen time.

    An unknown node gets 404 and is expected to register again.
    """
    body = body or HeartbeatRequest()
    try:
        before = registry.get(node_id)
        node = registry.heartbeat(node_id, status=body.status, services=body.services)
    except NodeNotFoundError:
        raise _node_not_found(node_id)

    if before.status != node.status or body.services is not None:
        broadcaster.publish(EventType.NODE_UPDATED, {"node": node.model_dump(mode="json")})
    return node


@router.post(
    "/api/v1/nodes/{node_id}/commands",
    response_model=Command,
    status_code=status.HTTP_202_ACCEPTED,
)
async def dispatch_command(
    node_id: str,
    request: CommandRequest,
    dispatcher: CommandDispatcher = Depends(get_command_dispatcher),
):
    """Dispatch a command to a node.

    Returns the pending command; its result arrives later through
    ``POST /api/v1/commands/{id}/result``.
    """
    try:
        return await dispatcher.dispatch(node_id, request)
    except NodeNotFoundError:
        raise _node_not_found(node_id)
    except CommandDeliveryError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "delivery_failed",
                "detail": str(e),
                "command_id": e.command.id,
            },
        )


@router.get("/api/v1/nodes/{node_id}/commands", response_model=CommandListResponse)
async def list_node_commands(
    node_id: str,
    command_status: Optional[CommandStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    registry: NodeRegistry = Depends(get_node_registry),
    dispatcher: CommandDispatcher = Depends(get_command_dispatcher),
):
    """Commands dispatched to a node, newest first.

    Nodes without a push address poll this with ``status=pending``.
    """
    if not registry.exists(node_id):
        raise _node_not_found(node_id)
    commands = dispatcher.list(node_id=node_id, status=command_status, limit=limit)
    return CommandListResponse(commands=commands, count=len(commands))
