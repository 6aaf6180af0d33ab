"""Node agent: keeps this host registered with the coordination server.

The agent registers on start, heartbeats on an interval (re-registering
if the server has forgotten it), executes dispatched commands and
reports their results. A node with an advertise address receives
commands by push through ``agent.server``; without one it polls.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import shutil
import socket
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Mapping, Optional, Set

from .. import __version__
from ..config import Settings
from ..coordination.client import CoordinationClient, CoordinationError
from ..providers.base import Provider
from ..providers.registry import get_provider, provider_names
from .executor import CommandExecutor

logger = logging.getLogger(__name__)

_SEEN_LIMIT = 500


def load_node_id(settings: Settings) -> str:
    """The configured node ID, or one generated once and kept in the state dir."""
    if settings.agent_node_id:
        return settings.agent_node_id

    id_file: Path = settings.agent_state_dir / "node_id"
    if id_file.exists():
        stored = id_file.read_text(encoding="utf-8").strip()
        if stored:
            return stored

    node_id = f"{socket.gethostname().split('.')[0]}-{uuid.uuid4().hex[:8]}"
    id_file.parent.mkdir(parents=True, exist_ok=True)
    id_file.write_text(node_id + "\n", encoding="utf-8")
    return node_id


def default_providers(preferred: str) -> Dict[str, Provider]:
    """The preferred provider plus every other one whose CLI is installed."""
    names = {name for name in provider_names() if shutil.which(name)}
    names.add(preferred.lower())
    return {name: get_provider(name) for name in sorted(names)}


class NodeAgent:
    """Registration, heartbeat and command loop for one node."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[CoordinationClient] = None,
        executor: Optional[CommandExecutor] = None,
        providers: Optional[Mapping[str, Provider]] = None,
    ):
        self.settings = settings
        self.node_id = load_node_id(settings)
        self.client = client or CoordinationClient.from_settings(settings)
        self.executor = executor or CommandExecutor(
            node_id=self.node_id,
            providers=providers or default_providers(settings.agent_provider),
            default_provider=settings.agent_provider,
            workspace_root=settings.agent_workspace_root,
            metadata={"platform": platform.system().lower()},
        )
        self.registered = False
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def push_enabled(self) -> bool:
        return bool(self.settings.agent_advertise_address)

    def registration(self) -> Dict[str, Any]:
        address = self.settings.agent_advertise_address or ""
        return {
            "id": self.node_id,
            "name": self.settings.agent_node_name,
            "provider": self.settings.agent_provider,
            "address": address,
            "port": self.settings.agent_port if address else 0,
            "status": "online",
            "capabilities": {name: True for name in self.executor.providers},
            "services": self.executor.service_report(address),
            "labels": dict(self.settings.agent_labels),
            "metadata": {
                "version": __version__,
                "hostname": socket.gethostname(),
                "platform": platform.platform(),
                "actions": self.executor.supported_actions,
            },
        }

    async def register(self) -> Dict[str, Any]:
        registration = await asyncio.to_thread(self.registration)
        node = await self.client.register_node(registration)
        self.registered = True
        mode = "push" if self.push_enabled else "poll"
        logger.info(f"Registered node {self.node_id} with {self.client.base_url} ({mode})")
        return node

    async def heartbeat(self) -> None:
        """Send one heartbeat; re-register if the server lost this node."""
        services = await asyncio.to_thread(
            self.executor.service_report, self.settings.agent_advertise_address or ""
        )
        try:
            await self.client.heartbeat(self.node_id, services=services)
        except CoordinationError as e:
            if not e.not_found:
                raise
            logger.info(f"Server does not know node {self.node_id}, registering again")
            self.registered = False
            await self.register()

    async def poll(self) -> int:
        """Run commands waiting for this node. Returns how many were started."""
        commands = await self.client.pending_commands(self.node_id)
        started = 0
        for command in commands:
            if self.accept(command):
                await self.handle_command(command)
                started += 1
        return started

    def accept(self, command: Mapping[str, Any]) -> bool:
        """Record a command ID; False if it was already taken.

        Guards against running a command twice when it is both pushed
        and seen by a poll.
        """
        command_id = str(command.get("id", ""))
        if not command_id or command_id in self._seen:
            return False
        self._seen.add(command_id)
        self._seen_order.append(command_id)
        while len(self._seen_order) > _SEEN_LIMIT:
            self._seen.discard(self._seen_order.popleft())
        return True

    def submit(self, command: Mapping[str, Any]) -> bool:
        """Schedule a pushed command in the background."""
        if not self.accept(command):
            return False
        task = asyncio.create_task(self.handle_command(dict(command)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def handle_command(self, command: Mapping[str, Any]) -> None:
        """Execute a command off the event loop and report the result."""
        result = await asyncio.to_thread(self.executor.execute, command)
        try:
            await self.client.report_result(result.id, **result.to_report(self.node_id))
        except CoordinationError as e:
            logger.error(f"Could not report result of {result.id}: {e}")

    async def run(self, shutdown: asyncio.Event) -> None:
        """Main loop until ``shutdown`` is set. Unregisters on the way out."""
        heartbeat_every = self.settings.heartbeat_interval
        poll_every = self.settings.command_poll_interval
        loop = asyncio.get_running_loop()
        next_heartbeat = loop.time()
        next_poll = loop.time()

        while not shutdown.is_set():
            try:
                if not self.registered:
                    await self.register()
                    next_heartbeat = loop.time() + heartbeat_every
                elif loop.time() >= next_heartbeat:
                    await self.heartbeat()
                    next_heartbeat = loop.time() + heartbeat_every

                if self.registered and not self.push_enabled and loop.time() >= next_poll:
                    await self.poll()
                    next_poll = loop.time() + poll_every
            except CoordinationError as e:
                logger.warning(f"Coordination server error: {e}")
            except Exception:
                logger.exception(f"Agent loop iteration failed for node {self.node_id}")

            wait = min(heartbeat_every, poll_every) if not self.push_enabled else heartbeat_every
            wait = max(min(wait, next_heartbeat - loop.time()), 0.5)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=wait)
            except asyncio.TimeoutError:
                continue

        await self.stop()

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self.registered:
            try:
                await self.client.unregister_node(self.node_id)
                logger.info(f"Unregistered node {self.node_id}")
            except CoordinationError as e:
                logger.warning(f"Could not unregister node {self.node_id}: {e}")
            self.registered = False
        await self.client.aclose()


__all__ = ["NodeAgent", "default_providers", "load_node_id"]
