"""Node agent: registers this host with a coordination server and runs its commands."""

from .executor import CommandExecutor, CommandResult
from .node import NodeAgent

__all__ = ["CommandExecutor", "CommandResult", "NodeAgent"]
