"""Pydantic models for commands dispatched to nodes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CommandType(str, Enum):
    """What a command acts on."""

    SESSION = "session"
    SERVICE = "service"
    SYSTEM = "system"


class CommandStatus(str, Enum):
    """Command lifecycle. Everything but ``pending`` is terminal."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not CommandStatus.PENDING


class DeliveryMode(str, Enum):
    PUSH = "push"
    POLL = "poll"


class CommandRequest(BaseModel):
    """Body of ``POST /api/v1/nodes/{id}/commands``."""

    type: CommandType = CommandType.SESSION
    action: str = Field(..., min_length=1, description="e.g. create, start, exec, info")
    target: str = Field(default="", description="Session or service the action applies to")
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(
        default=None, gt=0, description="Seconds before a pending command times out"
    )


class Command(BaseModel):
    """A dispatched command and, once reported, its result."""

    id: str
    node_id: str
    type: CommandType
    action: str
    target: str = ""
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout: float
    status: CommandStatus = CommandStatus.PENDING
    delivery: DeliveryMode = DeliveryMode.PUSH
    output: str = ""
    error: str = ""
    duration: Optional[float] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None


class CommandResultReport(BaseModel):
    """Body of ``POST /api/v1/commands/{id}/result``, sent by the node."""

    id: Optional[str] = Field(default=None, description="Must match the path ID when given")
    node_id: Optional[str] = None
    status: CommandStatus
    output: str = ""
    error: str = ""
    duration: Optional[float] = Field(default=None, ge=0)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        # nodes may say "error" / "timeout"
        if isinstance(value, str):
            v = value.strip().lower()
            if v in {"error", "failure"}:
                return CommandStatus.FAILED.value
            if v == "timeout":
                return CommandStatus.TIMED_OUT.value
            return v
        return value

    @field_validator("status")
    @classmethod
    def _terminal_only(cls, value: CommandStatus) -> CommandStatus:
        if not value.is_terminal:
            raise ValueError("a result must carry a terminal status")
        return value


class CommandResultAck(BaseModel):
    """Response to a result report. ``accepted`` is False for ignored reports."""

    id: str
    accepted: bool


class CommandListResponse(BaseModel):
    commands: List[Command]
    count: int
