"""Routes commands to nodes and correlates their asynchronous results.

A dispatched command is stored as ``pending`` under a generated ID and
pushed to the node over HTTP (or left for the node to poll when it
registered without an address). The node later posts exactly one result.

- Results for unknown or already terminal commands are ignored.
- A pending command older than its timeout becomes ``timed_out``, which
  is terminal, so a late result is ignored too.
- Nothing is retried; command semantics may not be idempotent.

The lock guards only the command map and is never held across the
network call or event publication.
"""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, List, Optional, Protocol

import httpx

from ..models.command import (
    Command,
    CommandRequest,
    CommandResultReport,
    CommandStatus,
    DeliveryMode,
)
from ..models.event import EventType
from ..models.node import Node
from .event_broadcaster import EventBroadcaster
from .node_registry import NodeRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class CommandNotFoundError(Exception):
    def __init__(self, command_id: str):
        super().__init__(f"Command not found: {command_id}")
        self.command_id = command_id


class CommandDeliveryError(Exception):
    """The node could not be reached; the command is marked failed."""

    def __init__(self, command: Command, reason: str):
        super().__init__(f"Failed to deliver command {command.id} to node {command.node_id}: {reason}")
        self.command = command
        self.reason = reason


class NodeTransport(Protocol):
    async def deliver(self, node: Node, command: Command) -> None:
        ...


class HttpNodeTransport:
    """Pushes commands to a node agent's ``POST /api/v1/commands``."""

    def __init__(self, timeout: float = 10.0, auth_token: Optional[str] = None):
        self.timeout = timeout
        self.auth_token = auth_token

    async def deliver(self, node: Node, command: Command) -> None:
        host = node.address
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        url = f"http://{host}:{node.port}/api/v1/commands"
        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, json=command.model_dump(mode="json"), headers=headers)
            response.raise_for_status()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandDispatcher:
    """Dispatches commands and records their results."""

    def __init__(
        self,
        registry: NodeRegistry,
        broadcaster: Optional[EventBroadcaster] = None,
        transport: Optional[NodeTransport] = None,
        timeout_seconds: float = 300.0,
        history_limit: int = 1000,
        clock: Optional[Clock] = None,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.transport: NodeTransport = transport or HttpNodeTransport()
        self.timeout_seconds = timeout_seconds
        self.history_limit = history_limit
        self._clock: Clock = clock or _utcnow
        # insertion order == dispatch order
        self._commands: "OrderedDict[str, Command]" = OrderedDict()
        self._lock = Lock()

    async def dispatch(self, node_id: str, request: CommandRequest) -> Command:
        """Record a command for ``node_id`` and deliver it.

        Raises:
            NodeNotFoundError: The node is not registered. Nothing is sent.
            CommandDeliveryError: The push failed; the command is marked failed.
        """
        node = self.registry.get(node_id)

        command = Command(
            id=f"cmd_{uuid.uuid4().hex[:16]}",
            node_id=node.id,
            type=request.type,
            action=request.action,
            target=request.target,
            params=dict(request.params),
            timeout=request.timeout or self.timeout_seconds,
            delivery=DeliveryMode.PUSH if node.reachable else DeliveryMode.POLL,
            created_at=self._clock(),
        )
        with self._lock:
            self._commands[command.id] = command
            self._prune_locked()

        logger.info(
            f"Dispatching {command.type.value}.{command.action} ({command.id}) to node {node.id} "
            f"via {command.delivery.value}"
        )
        self._publish(EventType.COMMAND_DISPATCHED, {"command": command.model_dump(mode="json")})

        if command.delivery == DeliveryMode.PUSH:
            try:
                await self.transport.deliver(node, command.model_copy(deep=True))
            except Exception as e:
                reason = str(e) or e.__class__.__name__
                failed = self._finish(
                    command.id,
                    CommandStatus.FAILED,
                    error=f"delivery failed: {reason}",
                )
                logger.warning(f"Delivery of {command.id} to node {node.id} failed: {reason}")
                raise CommandDeliveryError(failed or command, reason) from e

        return self.get(command.id)

    def report_result(self, command_id: str, report: CommandResultReport) -> bool:
        """Mark a pending command terminal.

        Returns:
            True if the result was recorded, False if it was ignored
            (unknown command, already terminal, or sent by another node).
        """
        with self._lock:
            command = self._commands.get(command_id)
            if command is not None:
                expired = self._expire_locked(command, self._clock())
            else:
                expired = None
        if expired is not None:
            self._publish_timeout(expired)

        if command is None:
            logger.warning(f"Ignoring result for unknown command {command_id}")
            return False
        if report.node_id and report.node_id != command.node_id:
            logger.warning(
                f"Ignoring result for {command_id} from node {report.node_id} "
                f"(dispatched to {command.node_id})"
            )
            return False

        finished = self._finish(
            command_id,
            report.status,
            output=report.output,
            error=report.error,
            duration=report.duration,
        )
        if finished is None:
            logger.warning(f"Ignoring late or duplicate result for command {command_id}")
            return False
        logger.info(f"Command {command_id} finished: {finished.status.value}")
        return True

    def get(self, command_id: str) -> Command:
        """Current state of a command, applying the timeout policy."""
        with self._lock:
            command = self._commands.get(command_id)
            if command is None:
                raise CommandNotFoundError(command_id)
            expired = self._expire_locked(command, self._clock())
            snapshot = self._commands[command_id].model_copy(deep=True)
        if expired is not None:
            self._publish_timeout(expired)
        return snapshot

    def list(
        self,
        node_id: Optional[str] = None,
        status: Optional[CommandStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Command]:
        """Commands, newest first."""
        self.sweep_expired()
        with self._lock:
            commands = [c.model_copy(deep=True) for c in reversed(self._commands.values())]
        if node_id is not None:
            commands = [c for c in commands if c.node_id == node_id]
        if status is not None:
            commands = [c for c in commands if c.status == status]
        if limit is not None:
            commands = commands[:limit]
        return commands

    def sweep_expired(self) -> List[Command]:
        """Time out every overdue pending command and return them."""
        now = self._clock()
        expired: List[Command] = []
        with self._lock:
            for command in list(self._commands.values()):
                result = self._expire_locked(command, now)
                if result is not None:
                    expired.append(result)
        for command in expired:
            self._publish_timeout(command)
        return expired

    def clear(self) -> None:
        with self._lock:
            self._commands.clear()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._commands.values() if c.status == CommandStatus.PENDING)

    def _finish(
        self,
        command_id: str,
        status: CommandStatus,
        output: str = "",
        error: str = "",
        duration: Optional[float] = None,
    ) -> Optional[Command]:
        now = self._clock()
        with self._lock:
            command = self._commands.get(command_id)
            if command is None or command.status.is_terminal:
                return None
            if duration is None:
                duration = max((now - command.created_at).total_seconds(), 0.0)
            finished = command.model_copy(
                update={
                    "status": status,
                    "output": output,
                    "error": error,
                    "duration": duration,
                    "finished_at": now,
                }
            )
            self._commands[command_id] = finished
            self._prune_locked()
            snapshot = finished.model_copy(deep=True)

        self._publish(EventType.COMMAND_RESULT, {"command": snapshot.model_dump(mode="json")})
        return snapshot

    def _expire_locked(self, command: Command, now: datetime) -> Optional[Command]:
        if command.status != CommandStatus.PENDING:
            return None
        age = (now - command.created_at).total_seconds()
        if age < command.timeout:
            return None
        expired = command.model_copy(
            update={
                "status": CommandStatus.TIMED_OUT,
                "error": f"no result within {command.timeout:g}s",
                "duration": age,
                "finished_at": now,
            }
        )
        self._commands[command.id] = expired
        return expired.model_copy(deep=True)

    def _prune_locked(self) -> None:
        terminal = [cid for cid, c in self._commands.items() if c.status.is_terminal]
        excess = len(terminal) - self.history_limit
        for cid in terminal[:max(excess, 0)]:
            del self._commands[cid]

    def _publish_timeout(self, command: Command) -> None:
        logger.warning(f"Command {command.id} to node {command.node_id} timed out")
        self._publish(EventType.COMMAND_TIMEOUT, {"command": command.model_dump(mode="json")})

    def _publish(self, event_type: str, data: dict) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event_type, data)


__all__ = [
    "CommandDeliveryError",
    "CommandDispatcher",
    "CommandNotFoundError",
    "HttpNodeTransport",
    "NodeTransport",
]
