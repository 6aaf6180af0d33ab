"""Container-engine provider backed by the ``docker`` CLI."""

from __future__ import annotations

import json
import logging
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

DOCKER_SOCKET = "/var/run/docker.sock"

# docker State.Status -> session status
_STATES = {
    "created": SessionStatus.PENDING,
    "restarting": SessionStatus.CREATING,
    "running": SessionStatus.RUNNING,
    "paused": SessionStatus.STOPPED,
    "exited": SessionStatus.STOPPED,
    "removing": SessionStatus.STOPPED,
    "dead": SessionStatus.ERROR,
}


class DockerProvider(Provider):
    """Sessions are long-running ``/bin/bash`` containers.

    The worktree is bind-mounted at ``/workspace`` and every service port is
    published with an engine-assigned host port.
    """

    name = "docker"

    def __init__(self, runner: Optional[Runner] = None, timeout: float = 600.0):
        super().__init__(runner)
        # create may pull the image
        self.timeout = timeout

    def create(self, session_id: str, workspace_path: Path, config: "ProjectConfig") -> Session:
        image = config.docker.image
        args = [
            "docker", "create",
            "--tty", "--interactive",
            "--name", container_name(session_id),
            "--label", f"{SESSION_LABEL}={session_id}",
            "--volume", f"{Path(workspace_path).resolve()}:{WORKSPACE_MOUNT}",
            "--workdir", WORKSPACE_MOUNT,
        ]
        for port in service_ports(config):
            # container port only: the engine picks the host port
            args += ["--publish", str(port)]
        for service in config.services.values():
            for key, value in sorted(service.env.items()):
                args += ["--env", f"{key}={value}"]
        if config.docker.dind:
            args += ["--volume", f"{DOCKER_SOCKET}:{DOCKER_SOCKET}", "--privileged"]
        args += [image, "/bin/bash"]

        result = self.run(args, timeout=self.timeout, identity=session_id)
        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        if not container_id:
            raise ProviderError(
                "docker create returned no container ID",
                operation="docker create",
                identity=session_id,
                output=result.output,
            )

        logger.info(f"Created container {container_id[:12]} for session {session_id} ({image})")
        return Session(
            id=container_id[:12],
            provider=self.name,
            status=SessionStatus.PENDING,
            labels={SESSION_LABEL: session_id},
        )

    def start(self, session_id: str) -> None:
        self._checked(["docker", "start", session_id], session_id)
        logger.info(f"Started container {session_id}")

    def stop(self, session_id: str) -> None:
        self._checked(["docker", "stop", session_id], session_id)
        logger.info(f"Stopped container {session_id}")

    def destroy(self, session_id: str) -> None:
        # rm -f also releases the network and volume mounts of a never-started container
        self._checked(["docker", "rm", "-f", session_id], session_id)
        logger.info(f"Removed container {session_id}")

    def exec(self, session_id: str, opts: ExecOptions) -> ProcessResult:
        args = ["docker", "exec", "--workdir", WORKSPACE_MOUNT]
        if opts.interactive:
            args += ["--interactive", "--tty"]
        for key, value in sorted(opts.env.items()):
            args += ["--env", f"{key}={value}"]
        args.append(session_id)
        args += list(opts.cmd)
        return self.run(
            args,
            timeout=opts.timeout,
            capture=(opts.stdout or opts.stderr) and not opts.interactive,
            identity=session_id,
        )

    def list_sessions(self) -> List[Session]:
        ids = self.run(
            ["docker", "ps", "--all", "--quiet", "--no-trunc", "--filter", f"label={SESSION_LABEL}"],
            timeout=self.timeout,
        ).stdout.split()
        if not ids:
            return []

        result = self.run(["docker", "inspect", *ids], timeout=self.timeout, check=False)
        if not result.ok and not result.stdout.strip():
            if "no such" in result.stderr.lower():
                # removed between ps and inspect
                return []
            raise ProviderError(
                f"docker inspect failed: {result.output}",
                operation="docker inspect",
                returncode=result.returncode,
                output=result.output,
            )

        try:
            containers = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProviderError(f"unparseable docker inspect output: {e}", operation="docker inspect") from e

        return [self._to_session(c) for c in containers]

    def _to_session(self, container: dict) -> Session:
        state = (container.get("State") or {}).get("Status", "")
        labels = (container.get("Config") or {}).get("Labels") or {}
        ports = (container.get("NetworkSettings") or {}).get("Ports") or {}
        return Session(
            id=container.get("Id", "")[:12],
            provider=self.name,
            status=_STATES.get(state, SessionStatus.ERROR),
            labels=dict(labels),
            services=parse_port_bindings(ports),
        )

    def _checked(self, args: List[str], session_id: str) -> ProcessResult:
        result = self.run(args, timeout=self.timeout, check=False, identity=session_id)
        if result.ok:
            return result
        if "no such container" in result.output.lower():
            raise SessionNotFoundError(
                "no such container",
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


def container_name(session_id: str) -> str:
    return f"nexus-{session_id}"


def parse_port_bindings(ports: Dict[str, Optional[list]]) -> Dict[int, int]:
    """Map ``NetworkSettings.Ports`` to internal -> host port.

    ``{"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}`` becomes
    ``{3000: 49153}``. Unbound ports (``None`` while stopped) are skipped.
    """
    mapping: Dict[int, int] = {}
    for key, bindings in ports.items():
        if not bindings:
            continue
        port, _, proto = key.partition("/")
        if proto and proto != "tcp":
            continue
        for binding in bindings:
            host_port = binding.get("HostPort")
            if host_port:
                mapping[int(port)] = int(host_port)
                break
    return mapping


__all__ = ["DockerProvider", "container_name", "parse_port_bindings"]
