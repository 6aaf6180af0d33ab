"""Service layer for the coordination server."""

from .command_dispatcher import (
    CommandDeliveryError,
    CommandDispatcher,
    CommandNotFoundError,
    HttpNodeTransport,
)
from .config import AppConfig, get_config, reload_config
from .dependencies import (
    get_command_dispatcher,
    get_event_broadcaster,
    get_node_registry,
    reset_services,
)
from .event_broadcaster import EventBroadcaster, Subscriber
from .node_registry import NodeNotFoundError, NodeRegistry

__all__ = [
    "AppConfig",
    "get_config",
    "reload_config",
    "NodeRegistry",
    "NodeNotFoundError",
    "EventBroadcaster",
    "Subscriber",
    "CommandDispatcher",
    "CommandNotFoundError",
    "CommandDeliveryError",
    "HttpNodeTransport",
    "get_node_registry",
    "get_event_broadcaster",
    "get_command_dispatcher",
    "reset_services",
]
