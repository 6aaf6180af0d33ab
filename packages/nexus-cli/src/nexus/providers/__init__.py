"""Session backends."""

from .base import SESSION_LABEL, ExecOptions, Provider, Session, SessionStatus
from .registry import get_provider, is_known_provider, provider_names

__all__ = [
    "SESSION_LABEL",
    "ExecOptions",
    "Provider",
    "Session",
    "SessionStatus",
    "get_provider",
    "is_known_provider",
    "provider_names",
]
