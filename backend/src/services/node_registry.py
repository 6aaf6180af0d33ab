"""In-memory registry of execution nodes.

All state lives behind one lock that is held only while the map is read
or mutated. Callers always receive copies, never the stored objects.

Liveness is computed when a node is read: a node whose last heartbeat is
older than ``stale_after`` is reported ``stale``, older than
``offline_after`` ``offline``. Nothing is evicted; removal is explicit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional

from ..models.node import (
    Node,
    NodeRegistration,
    NodeService,
    NodeStatus,
    NodeUpdate,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class NodeNotFoundError(Exception):
    """Raised when a node ID is not registered."""

    def __init__(self, node_id: str):
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _named_services(services: Dict[str, NodeService]) -> Dict[str, NodeService]:
    return {
        key: svc if svc.name else svc.model_copy(update={"name": key})
        for key, svc in services.items()
    }


class NodeRegistry:
    """Tracks registered nodes and their liveness."""

    def __init__(
        self,
        stale_after: float = 60.0,
        offline_after: float = 180.0,
        clock: Optional[Clock] = None,
    ):
        """Initialize the registry.

        Args:
            stale_after: Seconds since last heartbeat before a node is stale.
            offline_after: Seconds since last heartbeat before a node is offline.
            clock: Returns the current UTC time (injectable for tests).
        """
        self.stale_after = stale_after
        self.offline_after = max(offline_after, stale_after)
        self._clock: Clock = clock or _utcnow
        self._nodes: Dict[str, Node] = {}
        self._lock = Lock()

    def register(self, registration: NodeRegistration) -> tuple[Node, bool]:
        """Register a node, or refresh it if the ID is already known.

        Re-registration keeps ``created_at`` so a node that restarts is the
        same node.

        Returns:
            The stored node and whether it was newly created.
        """
        now = self._clock()
        with self._lock:
            existing = self._nodes.get(registration.id)
            node = Node(
                id=registration.id,
                name=registration.name or registration.id,
                provider=registration.provider,
                status=registration.status,
                address=registration.address,
                port=registration.port,
                capabilities=dict(registration.capabilities),
                services=_named_services(registration.services),
                labels=dict(registration.labels),
                metadata=dict(registration.metadata),
                last_seen=now,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._nodes[node.id] = node
            snapshot = self._snapshot(node, now)

        if existing:
            logger.info(f"Node {node.id} re-registered ({node.address or 'poll'}:{node.port})")
        else:
            logger.info(f"Node {node.id} registered ({node.address or 'poll'}:{node.port})")
        return snapshot, existing is None

    def get(self, node_id: str) -> Node:
        now = self._clock()
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            return self._snapshot(node, now)

    def exists(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._nodes

    def list(
        self,
        label: Optional[tuple[str, str]] = None,
        capability: Optional[str] = None,
        status: Optional[NodeStatus] = None,
    ) -> List[Node]:
        """All nodes, ordered by ID, optionally filtered."""
        now = self._clock()
        with self._lock:
            nodes = [self._snapshot(n, now) for n in self._nodes.values()]

        if label is not None:
            key, value = label
            nodes = [n for n in nodes if n.labels.get(key) == value]
        if capability is not None:
            nodes = [n for n in nodes if n.capabilities.get(capability)]
        if status is not None:
            nodes = [n for n in nodes if n.status == status]
        return sorted(nodes, key=lambda n: n.id)

    def update(self, node_id: str, update: NodeUpdate) -> Node:
        """Apply a partial update. Counts as a sign of life."""
        now = self._clock()
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        if "services" in changes:
            changes["services"] = _named_services(update.services or {})
        if "name" in changes and not changes["name"]:
            changes.pop("name")

        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise NodeNotFoundError(node_id)
            node = node.model_copy(update={**changes, "last_seen": now, "updated_at": now}, deep=True)
            self._nodes[node_id] = node
            snapshot = self._snapshot(node, now)

        logger.debug(f"Node {node_id} updated: {sorted(changes)}")
        return snapshot

    def update_status(self, node_id: str, status: NodeStatus) -> Node:
        return self.update(node_id, NodeUpdate(status=status))

    def heartbeat(
        self,
        node_id: str,
        status: Optional[NodeStatus] = None,
        services: Optional[Dict[str, NodeService]] = None,
    ) -> Node:
        """Refresh ``last_seen`` and optionally the reported status/services."""
        return self.update(node_id, NodeUpdate(status=status, services=services))

    def remove(self, node_id: str) -> Node:
        now = self._clock()
        with self._lock:
            node = self._nodes.pop(node_id, None)
            if node is None:
                raise NodeNotFoundError(node_id)
            snapshot = self._snapshot(node, now)
        logger.info(f"Node {node_id} unregistered")
        return snapshot

    def clear(self) -> None:
        with self._lock:
            self._nodes.clear()

    def counts(self) -> Dict[str, int]:
        """Number of nodes per effective status, plus ``total``."""
        nodes = self.list()
        counts: Dict[str, int] = {s.value: 0 for s in NodeStatus}
        for node in nodes:
            counts[node.status.value] += 1
        counts["total"] = len(nodes)
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def _effective_status(self, node: Node, now: datetime) -> NodeStatus:
        age = (now - node.last_seen).total_seconds()
        if age >= self.offline_after:
            return NodeStatus.OFFLINE
        if age >= self.stale_after and node.status != NodeStatus.OFFLINE:
            return NodeStatus.STALE
        return node.status

    def _snapshot(self, node: Node, now: datetime) -> Node:
        return node.model_copy(update={"status": self._effective_status(node, now)}, deep=True)


__all__ = ["NodeNotFoundError", "NodeRegistry"]
