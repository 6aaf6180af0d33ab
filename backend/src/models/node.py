"""Pydantic models for execution nodes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class NodeStatus(str, Enum):
    """Node status.

    ``online``, ``busy`` and ``draining`` are reported by the node itself.
    ``stale`` and ``offline`` are derived from the age of its last heartbeat.
    """

    ONLINE = "online"
    BUSY = "busy"
    DRAINING = "draining"
    STALE = "stale"
    OFFLINE = "offline"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_capabilities(value: Any) -> Dict[str, Any]:
    # ["docker", "gpu"] -> {"docker": True, "gpu": True}
    if value is None:
        return {}
    if isinstance(value, (list, tuple, set)):
        return {str(item): True for item in value}
    return value


class NodeService(BaseModel):
    """A service a node declares (e.g. a workspace's web server)."""

    id: str = ""
    name: str = ""
    type: str = ""
    status: str = "unknown"
    port: int = Field(default=0, ge=0, le=65535)
    endpoint: str = ""
    health: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)


class NodeRegistration(BaseModel):
    """Payload for registering (or re-registering) a node."""

    id: str = Field(..., min_length=1, description="Stable node ID chosen by the node")
    name: str = Field(default="", description="Display name, defaults to the ID")
    provider: str = Field(default="docker", description="Provider the node runs sessions with")
    address: str = Field(default="", description="Host the server pushes commands to; empty to poll")
    port: int = Field(default=0, ge=0, le=65535)
    status: NodeStatus = NodeStatus.ONLINE
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    services: Dict[str, NodeService] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned or "/" in cleaned:
            raise ValueError("node id must be non-empty and contain no '/'")
        return cleaned

    @field_validator("capabilities", mode="before")
    @classmethod
    def _capabilities(cls, value: Any) -> Dict[str, Any]:
        return _normalize_capabilities(value)


class NodeUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: Optional[str] = None
    provider: Optional[str] = None
    address: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=0, le=65535)
    status: Optional[NodeStatus] = None
    capabilities: Optional[Dict[str, Any]] = None
    services: Optional[Dict[str, NodeService]] = None
    labels: Optional[Dict[str, str]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("capabilities", mode="before")
    @classmethod
    def _capabilities(cls, value: Any) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        return _normalize_capabilities(value)


class HeartbeatRequest(BaseModel):
    """Heartbeat body. Both fields are optional."""

    status: Optional[NodeStatus] = None
    services: Optional[Dict[str, NodeService]] = None


class Node(BaseModel):
    """A registered node as returned by the API."""

    id: str
    name: str
    provider: str
    status: NodeStatus
    address: str = ""
    port: int = 0
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    services: Dict[str, NodeService] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_seen: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def reachable(self) -> bool:
        """Whether commands can be pushed to the node."""
        return bool(self.address) and self.port > 0


class NodeListResponse(BaseModel):
    nodes: List[Node]
    count: int


class NodeStatusResponse(BaseModel):
    node_id: str
    status: NodeStatus
    last_seen: datetime
    seconds_since_seen: float
    uptime_seconds: float


class ServiceEntry(BaseModel):
    """A service in the cross-node listing."""

    node_id: str
    node_name: str
    node_status: NodeStatus
    service: NodeService


class ServiceListResponse(BaseModel):
    services: Dict[str, List[NodeService]]
    entries: List[ServiceEntry]
    nodes: int
    count: int

