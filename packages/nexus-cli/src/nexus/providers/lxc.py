"""Lightweight-container provider backed by the LXD ``lxc`` CLI.

LXD has no container labels, so the session identity is stored as the
``user.nexus.session.id`` config key. Service ports are published with
``proxy`` devices whose host side is a port the OS handed out for a
throwaway bind to port 0.
"""

from __future__ import annotations

import json
import logging
import re
import socket
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..core.process import ProcessResult, Runner
from ..errors import ProviderError, SessionNotFoundError
from .base import (
    SESSION_LABEL,
    WORKSPACE_MOUNT,
    ExecOptions,
    Provider,
    Session,
    SessionStatus,
    service_ports,
)

if TYPE_CHECKING:
    from ..core.project import ProjectConfig

logger = logging.getLogger(__name__)

LABEL_KEY = f"user.{SESSION_LABEL}"
PORT_DEVICE_PREFIX = "port-"

_STATES = {
    "running": SessionStatus.RUNNING,
    "stopped": SessionStatus.STOPPED,
    "frozen": SessionStatus.STOPPED,
    "starting": SessionStatus.CREATING,
    "stopping": SessionStatus.STOPPED,
    "error": SessionStatus.ERROR,
}


def allocate_host_port(host: str = "0.0.0.0") -> int:
    """Ask the OS for a free ephemeral port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class LxcProvider(Provider):
    name = "lxc"

    def __init__(
        self,
        runner: Optional[Runner] = None,
        timeout: float = 600.0,
        port_allocator=allocate_host_port,
    ):
        super().__init__(runner)
        self.timeout = timeout
        self._allocate_port = port_allocator

    def create(self, session_id: str, workspace_path: Path, config: "ProjectConfig") -> Session:
        name = instance_name(session_id)
        self.run(
            [
                "lxc", "init", config.lxc.image, name,
                "--config", f"limits.memory={config.lxc.memory}",
                "--config", f"{LABEL_KEY}={session_id}",
            ],
            timeout=self.timeout,
            identity=session_id,
        )
        self.run(
            [
                "lxc", "config", "device", "add", name, "workspace", "disk",
                f"source={Path(workspace_path).resolve()}",
                f"path={WORKSPACE_MOUNT}",
            ],
            timeout=self.timeout,
            identity=session_id,
        )

        services: Dict[int, int] = {}
        for port in service_ports(config):
            host_port = self._allocate_port()
            self.run(
                [
                    "lxc", "config", "device", "add", name, f"{PORT_DEVICE_PREFIX}{port}", "proxy",
                    f"listen=tcp:0.0.0.0:{host_port}",
                    f"connect=tcp:127.0.0.1:{port}",
                ],
                timeout=self.timeout,
                identity=session_id,
            )
            services[port] = host_port

        logger.info(f"Created lxc instance {name} for session {session_id} ({config.lxc.image})")
        return Session(
            id=name,
            provider=self.name,
            status=SessionStatus.PENDING,
            labels={SESSION_LABEL: session_id},
            services=services,
        )

    def start(self, session_id: str) -> None:
        self._checked(["lxc", "start", session_id], session_id)
        logger.info(f"Started lxc instance {session_id}")

    def stop(self, session_id: str) -> None:
        self._checked(["lxc", "stop", session_id], session_id)
        logger.info(f"Stopped lxc instance {session_id}")

    def destroy(self, session_id: str) -> None:
        # --force stops a running instance first; devices go with it
        self._checked(["lxc", "delete", session_id, "--force"], session_id)
        logger.info(f"Deleted lxc instance {session_id}")

    def exec(self, session_id: str, opts: ExecOptions) -> ProcessResult:
        args = ["lxc", "exec", session_id, "--cwd", WORKSPACE_MOUNT]
        for key, value in sorted(opts.env.items()):
            args += ["--env", f"{key}={value}"]
        args += ["--", *opts.cmd]
        return self.run(
            args,
            timeout=opts.timeout,
            capture=(opts.stdout or opts.stderr) and not opts.interactive,
            identity=session_id,
        )

    def list_sessions(self) -> List[Session]:
        result = self.run(["lxc", "list", "--format", "json"], timeout=self.timeout)
        try:
            instances = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ProviderError(f"unparseable lxc list output: {e}", operation="lxc list") from e

        sessions = []
        for instance in instances:
            config = instance.get("config") or {}
            identity = config.get(LABEL_KEY)
            if not identity:
                continue
            devices = instance.get("expanded_devices") or instance.get("devices") or {}
            sessions.append(
                Session(
                    id=instance.get("name", ""),
                    provider=self.name,
                    status=_STATES.get(str(instance.get("status", "")).lower(), SessionStatus.ERROR),
                    labels={SESSION_LABEL: identity},
                    services=parse_proxy_devices(devices),
                )
            )
        return sessions

    def _checked(self, args: List[str], session_id: str) -> ProcessResult:
        result = self.run(args, timeout=self.timeout, check=False, identity=session_id)
        if result.ok:
            return result
        if "not found" in result.output.lower():
            raise SessionNotFoundError(
                "no such instance",
                operation=" ".join(args[:2]),
                identity=session_id,
            )
        raise ProviderError(
            f"{' '.join(args[:2])} failed: {result.output or result.returncode}",
            operation=" ".join(args[:2]),
            identity=session_id,
            returncode=result.returncode,
            output=result.output,
        )


def instance_name(session_id: str) -> str:
    """LXD instance names: letters, digits and hyphens, at most 63 chars."""
    cleaned = re.sub(r"[^A-Za-z0-9-]", "-", session_id).strip("-")
    return f"nexus-{cleaned}"[:63].rstrip("-")


def parse_proxy_devices(devices: Dict[str, dict]) -> Dict[int, int]:
    """Map proxy devices to internal -> host port.

    ``{"type": "proxy", "listen": "tcp:0.0.0.0:49152",
    "connect": "tcp:127.0.0.1:3000"}`` becomes ``{3000: 49152}``.
    """
    mapping: Dict[int, int] = {}
    for device in devices.values():
        if device.get("type") != "proxy":
            continue
        listen = device.get("listen", "")
        connect = device.get("connect", "")
        try:
            host_port = int(listen.rsplit(":", 1)[1])
            internal = int(connect.rsplit(":", 1)[1])
        except (IndexError, ValueError):
            logger.debug(f"Skipping proxy device with unexpected addresses: {device}")
            continue
        mapping[internal] = host_port
    return mapping


__all__ = ["LxcProvider", "allocate_host_port", "instance_name", "parse_proxy_devices"]
