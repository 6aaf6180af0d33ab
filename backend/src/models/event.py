"""Events broadcast to stream subscribers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType:
    """Event type constants."""

    INITIAL_STATE = "initial_state"

    NODE_REGISTERED = "node_registered"
    NODE_UPDATED = "node_updated"
    NODE_UNREGISTERED = "node_unregistered"

    COMMAND_DISPATCHED = "command_dispatched"
    COMMAND_RESULT = "command_result"
    COMMAND_TIMEOUT = "command_timeout"


class Event(BaseModel):
    """A state-change notification. Not persisted."""

    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)
