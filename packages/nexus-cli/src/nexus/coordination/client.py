"""Async HTTP client for the coordination server.

Responses are returned as plain dicts; this package does not depend on
the server's models.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..errors import NexusError

logger = logging.getLogger(__name__)


class CoordinationError(NexusError):
    """The coordination server was unreachable or rejected a request."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        identity: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, operation=operation, identity=identity)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if isinstance(detail, (dict, list)):
            return str(detail)
        if detail:
            return str(detail)
    return str(body)


class CoordinationClient:
    """Thin wrapper over the ``/api/v1`` endpoints."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings=None) -> "CoordinationClient":
        from ..config import get_settings

        settings = settings or get_settings()
        return cls(
            settings.coordination_url,
            auth_token=settings.auth_token,
            timeout=settings.request_timeout,
        )

    async def __aenter__(self) -> "CoordinationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        identity: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise CoordinationError(
                f"cannot reach coordination server at {self.base_url}: {e}",
                operation=operation,
                identity=identity,
            ) from e

        if response.status_code >= 400:
            raise CoordinationError(
                _error_message(response),
                operation=operation,
                identity=identity,
                status_code=response.status_code,
            )
        return response

    # ------------------------------------------------------------------
    # Server
    # ------------------------------------------------------------------

    async def health(self) -> Dict[str, Any]:
        response = await self._request("GET", "/health", operation="health")
        return response.json()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def register_node(self, registration: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/api/v1/nodes",
            operation="register",
            identity=registration.get("id"),
            json=registration,
        )
        return response.json()

    async def heartbeat(
        self,
        node_id: str,
        status: Optional[str] = None,
        services: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if status is not None:
            body["status"] = status
        if services is not None:
            body["services"] = services
        response = await self._request(
            "POST",
            f"/api/v1/nodes/{node_id}/heartbeat",
            operation="heartbeat",
            identity=node_id,
            json=body,
        )
        return response.json()

    async def update_node(self, node_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "PUT",
            f"/api/v1/nodes/{node_id}",
            operation="update",
            identity=node_id,
            json=changes,
        )
        return response.json()

    async def unregister_node(self, node_id: str) -> None:
        await self._request(
            "DELETE",
            f"/api/v1/nodes/{node_id}",
            operation="unregister",
            identity=node_id,
        )

    async def list_nodes(
        self,
        label: Optional[str] = None,
        capability: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            k: v
            for k, v in (("label", label), ("capability", capability), ("status", status))
            if v is not None
        }
        response = await self._request("GET", "/api/v1/nodes", operation="list nodes", params=params)
        return response.json().get("nodes", [])

    async def get_node(self, node_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/api/v1/nodes/{node_id}", operation="get node", identity=node_id
        )
        return response.json()

    async def node_status(self, node_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/api/v1/nodes/{node_id}/status", operation="node status", identity=node_id
        )
        return response.json()

    async def list_services(self) -> Dict[str, Any]:
        response = await self._request("GET", "/api/v1/services", operation="list services")
        return response.json()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_command(
        self,
        node_id: str,
        action: str,
        *,
        type: str = "session",
        target: str = "",
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "type": type,
            "action": action,
            "target": target,
            "params": params or {},
        }
        if timeout is not None:
            body["timeout"] = timeout
        response = await self._request(
            "POST",
            f"/api/v1/nodes/{node_id}/commands",
            operation=f"{type}.{action}",
            identity=node_id,
            json=body,
        )
        return response.json()

    async def pending_commands(self, node_id: str) -> List[Dict[str, Any]]:
        """Commands waiting for a node that polls instead of receiving pushes."""
        response = await self._request(
            "GET",
            f"/api/v1/nodes/{node_id}/commands",
            operation="poll",
            identity=node_id,
            params={"status": "pending"},
        )
        commands = response.json().get("commands", [])
        # oldest first so they run in dispatch order
        return list(reversed(commands))

    async def get_command(self, command_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/api/v1/commands/{command_id}", operation="get command", identity=command_id
        )
        return response.json()

    async def list_commands(
        self,
        node_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            k: v
            for k, v in (("node_id", node_id), ("status", status), ("limit", limit))
            if v is not None
        }
        response = await self._request(
            "GET", "/api/v1/commands", operation="list commands", params=params
        )
        return response.json().get("commands", [])

    async def report_result(
        self,
        command_id: str,
        *,
        node_id: str,
        status: str,
        output: str = "",
        error: str = "",
        duration: Optional[float] = None,
    ) -> bool:
        """Report a command's result. Returns whether the server accepted it."""
        body: Dict[str, Any] = {
            "id": command_id,
            "node_id": node_id,
            "status": status,
            "output": output,
            "error": error,
        }
        if duration is not None:
            body["duration"] = duration
        response = await self._request(
            "POST",
            f"/api/v1/commands/{command_id}/result",
            operation="report result",
            identity=command_id,
            json=body,
        )
        accepted = bool(response.json().get("accepted"))
        if not accepted:
            logger.warning(f"Server ignored result for {command_id} (late or duplicate)")
        return accepted


__all__ = ["CoordinationClient", "CoordinationError"]
