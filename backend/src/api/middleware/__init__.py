"""Request dependencies applied to API routes."""

from .auth_middleware import extract_bearer_token, require_token

__all__ = ["extract_bearer_token", "require_token"]
