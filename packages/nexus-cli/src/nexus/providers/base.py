"""Execution provider contract.

A provider materializes a *session* (container, lightweight container or
VM) for a workspace, runs commands inside it and reports which host port
each internal service port was published on.

Port mapping: every service port is published with the host side left to
the backend (host port 0), so concurrent workspaces never collide. The
realized mapping is read back from the backend by ``list_sessions`` and is
never taken from configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from ..core.environment import resolve_port
from ..core.process import ProcessResult, Runner, run_process
from ..errors import ProviderError

if TYPE_CHECKING:
    from ..core.project import ProjectConfig

SESSION_LABEL = "nexus.session.id"
WORKSPACE_MOUNT = "/workspace"


class SessionStatus(str, Enum):
    """Session lifecycle states."""

    PENDING = "pending"
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class Session:
    """A session as reported by its provider.

    ``id`` is the backend-assigned ID. ``identity`` (the ``nexus.session.id``
    label) is the deterministic ``<project>-<workspace>`` name the
    controller looks sessions up by.
    """

    id: str
    provider: str
    status: SessionStatus = SessionStatus.PENDING
    labels: Dict[str, str] = field(default_factory=dict)
    services: Dict[int, int] = field(default_factory=dict)

    @property
    def identity(self) -> Optional[str]:
        return self.labels.get(SESSION_LABEL)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "status": self.status.value,
            "labels": dict(self.labels),
            "services": {str(k): v for k, v in self.services.items()},
        }


@dataclass
class ExecOptions:
    """A command to run inside a session."""

    cmd: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    stdout: bool = True
    stderr: bool = True
    timeout: Optional[float] = None
    interactive: bool = False


def service_ports(config: "ProjectConfig") -> List[int]:
    """Internal ports a session must publish, sorted and de-duplicated."""
    ports = {resolve_port(svc) for svc in config.services.values()}
    ports.update(config.docker.ports)
    ports.discard(0)
    return sorted(ports)


class Provider(ABC):
    """Uniform interface over a session backend."""

    name: str = ""

    def __init__(self, runner: Optional[Runner] = None):
        self._runner: Runner = runner or run_process

    def run(self, args: List[str], **kwargs) -> ProcessResult:
        kwargs.setdefault("operation", f"{self.name} {args[1] if len(args) > 1 else args[0]}")
        kwargs.setdefault("error_cls", ProviderError)
        return self._runner(args, **kwargs)

    @abstractmethod
    def create(self, session_id: str, workspace_path: Path, config: "ProjectConfig") -> Session:
        """Create (but do not start) a session labelled with ``session_id``.

        All service ports are declared for dynamic host-port allocation. On
        partial failure the caller cleans up with ``destroy``.
        """

    @abstractmethod
    def start(self, session_id: str) -> None:
        """Start a created session. ``session_id`` is the backend ID."""

    @abstractmethod
    def stop(self, session_id: str) -> None:
        """Stop a running session without releasing its resources."""

    @abstractmethod
    def destroy(self, session_id: str) -> None:
        """Release every backend resource held by the session, started or not."""

    @abstractmethod
    def exec(self, session_id: str, opts: ExecOptions) -> ProcessResult:
        """Run a command inside the session synchronously.

        Raises:
            ProviderError: The command exited non-zero; the exit status and
                output are attached.
        """

    @abstractmethod
    def list_sessions(self) -> List[Session]:
        """Every session this provider owns, queried fresh from the backend."""

    def find_session(self, identity: str) -> Optional[Session]:
        """The session labelled ``identity``, if any."""
        for session in self.list_sessions():
            if session.identity == identity:
                return session
        return None


__all__ = [
    "ExecOptions",
    "Provider",
    "SESSION_LABEL",
    "Session",
    "SessionStatus",
    "WORKSPACE_MOUNT",
    "service_ports",
]
