"""Runs dispatched commands against the local providers.

A command is a plain dict as sent by the coordination server::

    {"id": "cmd_...", "type": "session", "action": "create",
     "target": "", "params": {"session_id": "...", "workspace_path": "..."}}

Every command yields exactly one ``CommandResult``; handler failures
become ``failed`` results, never exceptions.
"""

from __future__ import annotations

import json
import logging
import platform
import re
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .. import __version__
from ..core.project import ProjectConfig, config_path, load_project_config
from ..errors import BackendError, NexusError, SessionNotFoundError, UnknownProviderError
from ..providers.base import ExecOptions, Provider, Session, SessionStatus

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class CommandResult:
    """Outcome of one command, in the shape the server accepts."""

    id: str
    status: str
    output: str = ""
    error: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_report(self, node_id: str) -> Dict[str, Any]:
        return {
            "node_id": node_id,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "duration": self.duration,
        }


class CommandFailed(Exception):
    """Raised by a handler to fail the command with a message."""


def _require(params: Mapping[str, Any], key: str, fallback: str = "") -> str:
    value = params.get(key) or fallback
    if not isinstance(value, str) or not value.strip():
        raise CommandFailed(f"{key} parameter required")
    return value.strip()


def _env_param(params: Mapping[str, Any]) -> Dict[str, str]:
    raw = params.get("env") or {}
    if not isinstance(raw, Mapping):
        raise CommandFailed("env parameter must be a mapping")
    return {str(k): str(v) for k, v in raw.items()}


def _timeout_param(params: Mapping[str, Any]) -> Optional[float]:
    raw = params.get("timeout")
    if raw is None or raw == "":
        return None
    # bool is an int subclass
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise CommandFailed("timeout parameter must be a number of seconds")
    try:
        timeout = float(raw)
    except ValueError:
        raise CommandFailed(f"timeout parameter must be a number of seconds, got {raw!r}") from None
    if timeout <= 0:
        raise CommandFailed("timeout parameter must be positive")
    return timeout


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class CommandExecutor:
    """Executes session, service and system commands on this node."""

    def __init__(
        self,
        node_id: str,
        providers: Mapping[str, Provider],
        default_provider: str = "docker",
        workspace_root: Optional[Path] = None,
        metadata: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.node_id = node_id
        self.providers = dict(providers)
        self.default_provider = default_provider
        self.workspace_root = workspace_root
        self.metadata = dict(metadata or {})
        self._clock = clock
        self._started = datetime.now(timezone.utc)
        # session identity -> provider name, for sessions this node created
        self._owned: Dict[str, str] = {}
        self._lock = Lock()

        self._handlers: Dict[Tuple[str, str], Callable[[Dict[str, Any], str], str]] = {
            ("session", "create"): self._session_create,
            ("session", "start"): self._session_start,
            ("session", "stop"): self._session_stop,
            ("session", "destroy"): self._session_destroy,
            ("session", "list"): self._session_list,
            ("session", "exec"): self._session_exec,
            ("service", "list"): self._service_list,
            ("service", "status"): self._service_status,
            ("system", "status"): self._system_status,
            ("system", "info"): self._system_info,
            ("system", "health"): self._system_health,
        }

    def execute(self, command: Mapping[str, Any]) -> CommandResult:
        """Run one command and report its outcome."""
        command_id = str(command.get("id", ""))
        kind = str(command.get("type", "session"))
        action = str(command.get("action", ""))
        params = command.get("params") or {}
        target = str(command.get("target") or "")

        started = self._clock()
        handler = self._handlers.get((kind, action))
        if handler is None:
            return CommandResult(
                id=command_id,
                status="failed",
                error=f"unknown {kind} command: {action}",
            )
        if not isinstance(params, Mapping):
            return CommandResult(id=command_id, status="failed", error="params must be an object")

        logger.info(f"Executing {kind}.{action} ({command_id})")
        try:
            output = handler(dict(params), target)
            status, error = "success", ""
        except CommandFailed as e:
            output, status, error = "", "failed", str(e)
        except BackendError as e:
            output, status, error = e.output, "failed", str(e)
        except NexusError as e:
            output, status, error = "", "failed", str(e)
        except Exception as e:
            logger.exception(f"Unexpected error in {kind}.{action} ({command_id})")
            output, status, error = "", "failed", f"internal error: {e}"

        duration = max(self._clock() - started, 0.0)
        if status == "failed":
            logger.warning(f"{kind}.{action} ({command_id}) failed: {error}")
        return CommandResult(
            id=command_id,
            status=status,
            output=output,
            error=error,
            duration=duration,
        )

    @property
    def supported_actions(self) -> List[str]:
        return sorted(f"{kind}.{action}" for kind, action in self._handlers)

    def service_report(self, address: str = "") -> Dict[str, Dict[str, Any]]:
        """Published ports of every session, keyed ``<session>:<port>``.

        This is the ``services`` payload sent with heartbeats.
        """
        host = address or "localhost"
        report: Dict[str, Dict[str, Any]] = {}
        for provider_name, session in self._sessions():
            identity = session.identity or session.id
            for internal, external in sorted(session.services.items()):
                key = f"{identity}:{internal}"
                report[key] = {
                    "id": key,
                    "name": key,
                    "type": provider_name,
                    "status": session.status.value,
                    "port": external,
                    "endpoint": f"http://{host}:{external}",
                    "labels": {"session": identity, "internal_port": str(internal)},
                }
        return report

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------

    def _session_create(self, params: Dict[str, Any], target: str) -> str:
        session_id = _require(params, "session_id", target)
        provider_name = str(params.get("provider") or self.default_provider)
        provider = self._provider(provider_name)

        workspace = self._workspace_path(params, session_id)
        config = self._project_config(params, workspace, session_id)

        if provider.find_session(session_id) is not None:
            raise CommandFailed(f"session {session_id} already exists")

        session = provider.create(session_id, workspace, config)
        with self._lock:
            self._owned[session_id] = provider_name

        if params.get("start", True):
            try:
                provider.start(session.id)
            except NexusError:
                self._destroy_quietly(provider, session.id)
                with self._lock:
                    self._owned.pop(session_id, None)
                raise
            return f"Session {session_id} created and started"
        return f"Session {session_id} created"

    def _session_start(self, params: Dict[str, Any], target: str) -> str:
        provider, session = self._locate(params, target)
        provider.start(session.id)
        return f"Session {session.identity or session.id} started"

    def _session_stop(self, params: Dict[str, Any], target: str) -> str:
        provider, session = self._locate(params, target)
        provider.stop(session.id)
        return f"Session {session.identity or session.id} stopped"

    def _session_destroy(self, params: Dict[str, Any], target: str) -> str:
        provider, session = self._locate(params, target)
        provider.destroy(session.id)
        with self._lock:
            self._owned.pop(session.identity or "", None)
        return f"Session {session.identity or session.id} destroyed"

    def _session_list(self, params: Dict[str, Any], target: str) -> str:
        return _dumps([session.to_dict() for _, session in self._sessions()])

    def _session_exec(self, params: Dict[str, Any], target: str) -> str:
        provider, session = self._locate(params, target)
        if session.status != SessionStatus.RUNNING:
            raise CommandFailed(f"session {session.identity or session.id} is {session.status.value}")

        raw = params.get("command")
        if isinstance(raw, list) and raw:
            cmd = [str(part) for part in raw]
        elif isinstance(raw, str) and raw.strip():
            cmd = ["/bin/sh", "-c", raw]
        else:
            raise CommandFailed("command parameter required")

        result = provider.exec(
            session.id,
            ExecOptions(cmd=cmd, env=_env_param(params), timeout=_timeout_param(params)),
        )
        return result.output

    # ------------------------------------------------------------------
    # Service commands
    # ------------------------------------------------------------------

    def _service_list(self, params: Dict[str, Any], target: str) -> str:
        return _dumps(self.service_report(str(params.get("address") or "")))

    def _service_status(self, params: Dict[str, Any], target: str) -> str:
        name = params.get("service") or target
        if not name:
            raise CommandFailed("service parameter required")
        report = self.service_report()
        service = report.get(name)
        if service is None:
            # a bare session identity lists all of its ports
            matches = {k: v for k, v in report.items() if k.split(":", 1)[0] == name}
            if not matches:
                raise CommandFailed(f"service {name} not found")
            return _dumps(matches)
        return _dumps(service)

    # ------------------------------------------------------------------
    # System commands
    # ------------------------------------------------------------------

    def _system_status(self, params: Dict[str, Any], target: str) -> str:
        sessions = self._sessions()
        return _dumps(
            {
                "node_id": self.node_id,
                "version": __version__,
                "provider": self.default_provider,
                "providers": sorted(self.providers),
                "sessions": len(sessions),
                "running": sum(1 for _, s in sessions if s.status == SessionStatus.RUNNING),
                "uptime_seconds": (datetime.now(timezone.utc) - self._started).total_seconds(),
            }
        )

    def _system_info(self, params: Dict[str, Any], target: str) -> str:
        info = {
            "node_id": self.node_id,
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "python": platform.python_version(),
            "version": __version__,
        }
        info.update(self.metadata)
        return _dumps(info)

    def _system_health(self, params: Dict[str, Any], target: str) -> str:
        providers: Dict[str, str] = {}
        for name, provider in sorted(self.providers.items()):
            try:
                provider.list_sessions()
                providers[name] = "available"
            except NexusError as e:
                providers[name] = f"unavailable: {e.message}"

        healthy = any(state == "available" for state in providers.values())
        return _dumps(
            {
                "status": "healthy" if healthy else "degraded",
                "node_id": self.node_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "providers": providers,
            }
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _provider(self, name: str) -> Provider:
        try:
            return self.providers[name]
        except KeyError:
            raise UnknownProviderError(
                f"provider {name} not available on this node",
                operation="session",
                identity=self.node_id,
            ) from None

    def _workspace_path(self, params: Dict[str, Any], session_id: str) -> Path:
        raw = params.get("workspace_path")
        if raw:
            path = Path(str(raw)).expanduser()
            if not path.is_dir():
                raise CommandFailed(f"workspace_path {path} does not exist")
            return path
        if self.workspace_root is None:
            raise CommandFailed("workspace_path parameter required")
        path = self.workspace_root / _UNSAFE.sub("-", session_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _project_config(self, params: Dict[str, Any], workspace: Path, session_id: str) -> ProjectConfig:
        inline = params.get("config")
        if isinstance(inline, dict):
            data = {"name": _UNSAFE.sub("-", session_id), **inline}
            try:
                return ProjectConfig.model_validate(data)
            except ValueError as e:
                raise CommandFailed(f"invalid config: {e}") from e
        if config_path(workspace).exists():
            return load_project_config(workspace)
        return ProjectConfig(name=_UNSAFE.sub("-", session_id).lstrip("._-") or "session")

    def _sessions(self) -> List[Tuple[str, Session]]:
        found: List[Tuple[str, Session]] = []
        for name, provider in sorted(self.providers.items()):
            try:
                found.extend((name, s) for s in provider.list_sessions())
            except BackendError as e:
                logger.warning(f"Cannot list {name} sessions: {e}")
        return found

    def _locate(self, params: Dict[str, Any], target: str) -> Tuple[Provider, Session]:
        ref = _require(params, "session_id", target)

        with self._lock:
            preferred = self._owned.get(ref)
        names = sorted(self.providers, key=lambda n: (n != preferred, n))
        for name in names:
            provider = self.providers[name]
            try:
                sessions = provider.list_sessions()
            except BackendError as e:
                logger.warning(f"Cannot list {name} sessions: {e}")
                continue
            for session in sessions:
                if ref in (session.identity, session.id):
                    return provider, session

        raise SessionNotFoundError(
            f"session {ref} not found",
            operation="session",
            identity=ref,
        )

    def _destroy_quietly(self, provider: Provider, session_id: str) -> None:
        try:
            provider.destroy(session_id)
        except NexusError as e:
            logger.warning(f"Cleanup of session {session_id} failed: {e}")


__all__ = ["CommandExecutor", "CommandFailed", "CommandResult"]
