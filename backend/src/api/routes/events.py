"""WebSocket event stream."""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ...models.event import Event, EventType
from ...services.config import get_config
from ...services.dependencies import get_event_broadcaster, get_node_registry
from ...services.event_broadcaster import Subscriber

logger = logging.getLogger(__name__)

router = APIRouter()


def _authorized(websocket: WebSocket) -> bool:
    expected = get_config().auth_token
    if not expected:
        return True

    token: Optional[str] = websocket.query_params.get("token")
    if token is None:
        scheme, _, value = (websocket.headers.get("authorization") or "").partition(" ")
        if scheme.lower() == "bearer":
            token = value.strip()
    return bool(token) and hmac.compare_digest(token.encode(), expected.encode())


async def _forward(websocket: WebSocket, subscriber: Subscriber) -> None:
    while True:
        event = await subscriber.get()
        await websocket.send_text(event.model_dump_json())


async def _drain(websocket: WebSocket) -> None:
    # Incoming frames are ignored; this only notices the disconnect.
    while True:
        await websocket.receive_text()


@router.websocket("/ws")
async def event_stream(websocket: WebSocket):
    """Stream events to a client.

    The first message is ``initial_state`` with the current nodes; after
    that every published event is forwarded as JSON. A client that falls
    behind loses its oldest undelivered events.
    """
    await websocket.accept()
    if not _authorized(websocket):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    broadcaster = get_event_broadcaster()
    registry = get_node_registry()

    # Subscribe before the snapshot so no change between the two is missed.
    subscriber = broadcaster.subscribe()
    try:
        nodes = registry.list()
        initial = Event(
            type=EventType.INITIAL_STATE,
            data={
                "nodes": [n.model_dump(mode="json") for n in nodes],
                "count": len(nodes),
            },
        )
        await websocket.send_text(initial.model_dump_json())

        forward = asyncio.create_task(_forward(websocket, subscriber))
        drain = asyncio.create_task(_drain(websocket))
        done, pending = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Event stream error: {exc}")
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.unsubscribe(subscriber)
        logger.debug("Event stream client disconnected")
