"""Client for the coordination server API."""

from .client import CoordinationClient, CoordinationError

__all__ = ["CoordinationClient", "CoordinationError"]
