"""HTTP API route handlers."""

from . import commands, events, nodes, services

__all__ = ["commands", "events", "nodes", "services"]
