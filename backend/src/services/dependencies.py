"""Process-wide service instances shared by the API routes."""

from __future__ import annotations

from typing import Optional

from .command_dispatcher import CommandDispatcher, HttpNodeTransport
from .config import get_config
from .event_broadcaster import EventBroadcaster
from .node_registry import NodeRegistry

_node_registry: Optional[NodeRegistry] = None
_event_broadcaster: Optional[EventBroadcaster] = None
_command_dispatcher: Optional[CommandDispatcher] = None


def get_node_registry() -> NodeRegistry:
    """Get the global node registry."""
    global _node_registry
    if _node_registry is None:
        config = get_config()
        _node_registry = NodeRegistry(
            stale_after=config.node_stale_seconds,
            offline_after=config.node_offline_seconds,
        )
    return _node_registry


def get_event_broadcaster() -> EventBroadcaster:
    """Get the global event broadcaster."""
    global _event_broadcaster
    if _event_broadcaster is None:
        _event_broadcaster = EventBroadcaster(max_queue_size=get_config().event_queue_size)
    return _event_broadcaster


def get_command_dispatcher() -> CommandDispatcher:
    """Get the global command dispatcher."""
    global _command_dispatcher
    if _command_dispatcher is None:
        config = get_config()
        _command_dispatcher = CommandDispatcher(
            registry=get_node_registry(),
            broadcaster=get_event_broadcaster(),
            transport=HttpNodeTransport(
                timeout=config.node_transport_timeout_seconds,
                auth_token=config.auth_token,
            ),
            timeout_seconds=config.command_timeout_seconds,
            history_limit=config.command_history_limit,
        )
    return _command_dispatcher


def reset_services() -> None:
    """Drop all global instances (for testing)."""
    global _node_registry, _event_broadcaster, _command_dispatcher
    if _event_broadcaster is not None:
        _event_broadcaster.clear()
    _node_registry = None
    _event_broadcaster = None
    _command_dispatcher = None


__all__ = [
    "get_command_dispatcher",
    "get_event_broadcaster",
    "get_node_registry",
    "reset_services",
]
