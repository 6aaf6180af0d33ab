"""Authentication dependency helpers."""

from __future__ import annotations

import hmac
from typing import Annotated, Optional

from fastapi import Header, HTTPException, status

from ...services.config import get_config


def _unauthorized(message: str, error: str = "unauthorized") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message},
    )


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise _unauthorized("Authorization header required")

    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Authorization header must be in format: Bearer <token>")
    return token


def require_token(
    authorization: Annotated[Optional[str], Header(alias="Authorization")] = None,
) -> None:
    """
    Enforce the shared bearer token when COORD_AUTH_TOKEN is configured.

    With no token configured the API is open, which is how a single
    trusted host runs it.
    """
    expected = get_config().auth_token
    if not expected:
        return

    token = extract_bearer_token(authorization)
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise _unauthorized("Invalid token", error="invalid_token")


__all__ = ["extract_bearer_token", "require_token"]
