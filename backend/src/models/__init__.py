"""Pydantic models for data validation and serialization."""

from .command import (
    Command,
    CommandListResponse,
    CommandRequest,
    CommandResultAck,
    CommandResultReport,
    CommandStatus,
    CommandType,
    DeliveryMode,
)
from .event import Event, EventType
from .node import (
    HeartbeatRequest,
    Node,
    NodeListResponse,
    NodeRegistration,
    NodeService,
    NodeStatus,
    NodeStatusResponse,
    NodeUpdate,
    ServiceEntry,
    ServiceListResponse,
)

__all__ = [
    "Node",
    "NodeStatus",
    "NodeService",
    "NodeRegistration",
    "NodeUpdate",
    "HeartbeatRequest",
    "NodeListResponse",
    "NodeStatusResponse",
    "ServiceEntry",
    "ServiceListResponse",
    # Commands
    "Command",
    "CommandType",
    "CommandStatus",
    "CommandRequest",
    "CommandResultReport",
    "CommandResultAck",
    "CommandListResponse",
    "DeliveryMode",
    # Events
    "Event",
    "EventType",
]
