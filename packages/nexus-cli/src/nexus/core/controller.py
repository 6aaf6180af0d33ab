"""Workspace lifecycle: create, up, down, remove, list.

A workspace moves through ``absent -> created -> running -> stopped ->
absent``. Within one call the order is fixed: worktree first, then the
session, then the service environment and hooks.

Sessions are never tracked in a file. They are found by asking every
known provider for the session labelled ``<project>-<workspace>``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import (
    BackendError,
    ConfigError,
    HookError,
    NexusError,
    NotFoundError,
    ProviderError,
    SessionNotFoundError,
    UnknownProviderError,
    WorkspaceExistsError,
    WorkspaceNotFoundError,
)
from ..providers.base import WORKSPACE_MOUNT, ExecOptions, Provider, Session, SessionStatus
from ..providers.registry import get_provider, provider_names
from .environment import (
    ServiceEndpoint,
    resolve_endpoints,
    service_environment,
    write_env_file,
)
from .process import ProcessResult, Runner, build_env, run_process
from .project import (
    CONFIG_DIR,
    ENV_FILE,
    HOOKS_DIR,
    ProjectConfig,
    find_project_root,
    load_project_config,
    worktree_name_for,
)
from .templates import AgentConfigGenerator, NullAgentConfigGenerator
from .worktree import WorktreeManager, validate_workspace_name

logger = logging.getLogger(__name__)

DEFAULT_HOOK_TIMEOUT = 600.0
LOCAL_UP_HOOK = f"{CONFIG_DIR}/{HOOKS_DIR}/up.sh"


@dataclass
class PortMapping:
    """A service's published port in a running workspace."""
    workspace: str
    service: str
    protocol: str
    internal_port: int
    external_port: int

    @property
    def url(self) -> str:
        return f"{self.protocol}://localhost:{self.external_port}"


@dataclass
class WorkspaceInfo:
    """One row of ``list``."""
    name: str
    status: str
    path: Optional[Path] = None
    provider: Optional[str] = None
    session_id: Optional[str] = None
    services: Dict[int, int] = field(default_factory=dict)


class WorkspaceController:
    """Orchestrates worktrees, providers, environment setup and hooks."""

    def __init__(
        self,
        root: Path,
        config: Optional[ProjectConfig] = None,
        providers: Optional[Dict[str, Provider]] = None,
        worktrees: Optional[WorktreeManager] = None,
        generator: Optional[AgentConfigGenerator] = None,
        hook_timeout: float = DEFAULT_HOOK_TIMEOUT,
        runner: Optional[Runner] = None,
    ):
        """
        Args:
            root: Project root (the directory holding ``.nexus/``).
            config: Preloaded configuration; loaded from ``root`` on first use if omitted.
            providers: Provider instances by name. When given, only these are
                consulted; otherwise every registered provider is.
            worktrees: Worktree manager; defaults to one rooted at ``root``.
            generator: Agent config generator run on create.
            hook_timeout: Seconds a hook may run before it is killed.
            runner: Process runner for host-side hooks.
        """
        self.root = Path(root).resolve()
        self._config = config
        self._providers: Dict[str, Provider] = dict(providers or {})
        self._providers_fixed = providers is not None
        self.worktrees = worktrees or WorktreeManager(self.root)
        self.generator = generator or NullAgentConfigGenerator()
        self.hook_timeout = hook_timeout
        self._runner: Runner = runner or run_process

    @classmethod
    def from_cwd(cls, cwd: Optional[Path] = None, **kwargs) -> "WorkspaceController":
        start = Path(cwd) if cwd else Path.cwd()
        root = find_project_root(start)
        if root is None:
            raise ConfigError(
                f"no {CONFIG_DIR}/ directory found above {start.resolve()} (run 'nexus init')",
                operation="find project",
            )
        return cls(root, **kwargs)

    @property
    def config(self) -> ProjectConfig:
        if self._config is None:
            self._config = load_project_config(self.root)
        return self._config

    def session_identity(self, name: str) -> str:
        return f"{self.config.name}-{name}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, name: str) -> Path:
        """Allocate a worktree for ``name`` and generate its agent configs."""
        validate_workspace_name(name)
        if self.worktrees.exists(name):
            raise WorkspaceExistsError(
                "worktree already exists", operation="create", identity=name
            )
        config = self.config

        path = self.worktrees.add(name)
        self.generator.generate(path, config)
        logger.info(f"Created workspace {name} at {path}")
        return path

    def up(self, name: str) -> WorkspaceInfo:
        """Start the workspace session and publish its services.

        An already running session is reused and only the service
        environment is refreshed. Any other session with the same identity
        is destroyed before a new one is created.

        Raises:
            WorkspaceNotFoundError: No worktree for ``name``.
            UnknownProviderError: The configured provider does not exist.
            ProviderError: Session creation or start failed.
            HookError: The setup hook failed; the session keeps running.
        """
        validate_workspace_name(name)
        path = self.worktrees.path_for(name)
        if not path.is_dir():
            raise WorkspaceNotFoundError(
                "no worktree (run 'nexus workspace create' first)", operation="up", identity=name
            )

        config = self.config
        provider = self._provider(config.provider)
        identity = self.session_identity(name)

        existing = provider.find_session(identity)
        if existing is not None and existing.status == SessionStatus.RUNNING:
            logger.info(f"Session {existing.id} for {identity} is already running")
            self._setup_environment(path, existing)
            return self._info(name, path, existing)

        if existing is not None:
            logger.info(f"Replacing {existing.status.value} session {existing.id} for {identity}")
            self._destroy_quietly(provider, existing.id)

        try:
            session = provider.create(identity, path, config)
        except NexusError:
            leftover = self._find_quietly(provider, identity)
            if leftover is not None:
                logger.error(f"Create failed for {identity}, removing partial session {leftover.id}")
                self._destroy_quietly(provider, leftover.id)
            raise

        try:
            provider.start(session.id)
        except NexusError:
            logger.error(f"Failed to start session {session.id} for {identity}, removing it")
            self._destroy_quietly(provider, session.id)
            raise

        # Host ports are only known once the session runs.
        live = provider.find_session(identity)
        if live is None:
            raise ProviderError(
                f"session {session.id} not listed after start", operation="up", identity=name
            )

        endpoints = self._setup_environment(path, live)
        env = self._hook_env(name, endpoints)
        self._run_setup_hook(provider, live, path, env, name)
        self._run_local_up_hook(path, env, name)

        logger.info(f"Workspace {name} is running in {provider.name} session {live.id}")
        return self._info(name, path, live)

    def down(self, name: str) -> Session:
        """Destroy the workspace session, keeping the worktree.

        Raises:
            SessionNotFoundError: No provider has a session for ``name``.
        """
        validate_workspace_name(name)
        identity = self.session_identity(name)

        matches = [(p, s) for p, s in self._all_sessions() if s.identity == identity]
        if not matches:
            raise SessionNotFoundError("no session", operation="down", identity=name)

        for provider, session in matches:
            if session.status == SessionStatus.RUNNING:
                self._run_teardown_hook(provider, session, name)
            provider.destroy(session.id)
            logger.info(f"Destroyed {provider.name} session {session.id} for {identity}")
        return matches[0][1]

    def remove(self, name: str) -> None:
        """Stop the workspace if needed and delete its worktree."""
        validate_workspace_name(name)
        had_session = True
        try:
            self.down(name)
        except NotFoundError:
            had_session = False
            logger.debug(f"No session to stop for {name}")

        if not self.worktrees.exists(name) and not had_session:
            raise WorkspaceNotFoundError("no such workspace", operation="remove", identity=name)

        self.worktrees.remove(name)
        logger.info(f"Removed workspace {name}")

    def list(self) -> List[WorkspaceInfo]:
        """Worktrees on disk and live sessions of this project, by name."""
        prefix = f"{self.config.name}-"
        by_name: Dict[str, Tuple[Provider, Session]] = {}
        for provider, session in self._all_sessions():
            identity = session.identity or ""
            if identity.startswith(prefix):
                by_name[identity[len(prefix):]] = (provider, session)

        infos = []
        for name in sorted(set(self.worktrees.list()) | set(by_name)):
            path = self.worktrees.root / name
            path = path if path.is_dir() else None
            if name in by_name:
                infos.append(self._info(name, path, by_name[name][1]))
            else:
                # .env is only written by up, so its presence means the
                # workspace has run before
                status = "stopped" if path is not None and (path / ENV_FILE).exists() else "created"
                infos.append(WorkspaceInfo(name=name, status=status, path=path))
        return infos

    # ------------------------------------------------------------------
    # Direct actions
    # ------------------------------------------------------------------

    def services(self, name: str) -> List[PortMapping]:
        """Published ports of a running workspace."""
        provider, session = self._running_session(name, "services")
        endpoints = resolve_endpoints(self.config.services, session.services)
        return [
            PortMapping(
                workspace=name,
                service=ep.name,
                protocol=ep.protocol,
                internal_port=ep.internal_port,
                external_port=ep.external_port,
            )
            for ep in endpoints
        ]

    def shell(self, name: str) -> ProcessResult:
        """Attach an interactive shell to the workspace session."""
        provider, session = self._running_session(name, "shell")
        return provider.exec(session.id, ExecOptions(cmd=["/bin/bash"], interactive=True))

    def exec(
        self,
        name: str,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        provider, session = self._running_session(name, "exec")
        return provider.exec(session.id, ExecOptions(cmd=list(cmd), env=dict(env or {}), timeout=timeout))

    def sessions(self) -> List[Session]:
        """Every nexus session across providers, including other projects'."""
        return [session for _, session in self._all_sessions()]

    def kill(self, ref: str) -> Session:
        """Destroy a session by backend ID (or prefix) or identity label."""
        for provider, session in self._all_sessions():
            if session.id == ref or session.identity == ref or (len(ref) >= 4 and session.id.startswith(ref)):
                provider.destroy(session.id)
                logger.info(f"Killed {provider.name} session {session.id} ({session.identity})")
                return session
        raise SessionNotFoundError("no such session", operation="kill", identity=ref)

    def detect_workspace(self, cwd: Optional[Path] = None) -> str:
        """Workspace name for a directory inside one of our worktrees."""
        start = Path(cwd) if cwd else Path.cwd()
        name = worktree_name_for(start)
        if name is None:
            raise WorkspaceNotFoundError(
                f"{start} is not inside a workspace; pass a name", operation="detect workspace"
            )
        return name

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _provider(self, name: str) -> Provider:
        key = name.lower()
        if key not in self._providers:
            if self._providers_fixed:
                raise UnknownProviderError(
                    "provider not available", operation="resolve provider", identity=name
                )
            self._providers[key] = get_provider(key)
        return self._providers[key]

    def _all_sessions(self) -> List[Tuple[Provider, Session]]:
        """Sessions from every known provider.

        Failures from the configured provider propagate. Others (a backend
        that is not installed here) are skipped.
        """
        configured = self.config.provider
        candidates = list(self._providers) if self._providers_fixed else provider_names()
        names = [configured] + [n for n in candidates if n != configured]

        found: List[Tuple[Provider, Session]] = []
        for name in names:
            try:
                provider = self._provider(name)
                sessions = provider.list_sessions()
            except BackendError as e:
                if name == configured:
                    raise
                logger.debug(f"Skipping provider {name}: {e}")
                continue
            found.extend((provider, s) for s in sessions)
        return found

    def _running_session(self, name: str, operation: str) -> Tuple[Provider, Session]:
        validate_workspace_name(name)
        identity = self.session_identity(name)
        for provider, session in self._all_sessions():
            if session.identity == identity and session.status == SessionStatus.RUNNING:
                return provider, session
        raise SessionNotFoundError("workspace is not running", operation=operation, identity=name)

    def _find_quietly(self, provider: Provider, identity: str) -> Optional[Session]:
        try:
            return provider.find_session(identity)
        except NexusError as e:
            logger.warning(f"Could not list {provider.name} sessions: {e}")
            return None

    def _destroy_quietly(self, provider: Provider, session_id: str) -> None:
        try:
            provider.destroy(session_id)
        except NotFoundError:
            pass
        except NexusError as e:
            logger.warning(f"Could not destroy session {session_id}: {e}")

    def _setup_environment(self, path: Path, session: Session) -> List[ServiceEndpoint]:
        endpoints = resolve_endpoints(self.config.services, session.services)
        write_env_file(path, endpoints)
        return endpoints

    def _hook_env(self, name: str, endpoints: List[ServiceEndpoint]) -> Dict[str, str]:
        env = service_environment(endpoints)
        env["BRANCH_NAME"] = name
        return env

    def _run_setup_hook(
        self, provider: Provider, session: Session, path: Path, env: Dict[str, str], name: str
    ) -> None:
        hook = self.config.hooks.setup
        if not hook:
            return
        if not (path / hook).is_file():
            raise HookError(f"setup hook {hook} not found in worktree", operation="up", identity=name)

        logger.info(f"Running setup hook {hook} in session {session.id}")
        try:
            provider.exec(
                session.id,
                ExecOptions(cmd=["/bin/bash", f"{WORKSPACE_MOUNT}/{hook}"], env=env, timeout=self.hook_timeout),
            )
        except NexusError as e:
            raise HookError(
                f"setup hook {hook} failed (session {session.id} left running): {e}",
                operation="up",
                identity=name,
            ) from e

    def _run_local_up_hook(self, path: Path, env: Dict[str, str], name: str) -> None:
        hook = self.config.hooks.up or LOCAL_UP_HOOK
        hook_path = path / hook
        if not hook_path.is_file():
            return

        logger.info(f"Running local up hook {hook_path}")
        try:
            self._runner(
                ["bash", str(hook_path)],
                cwd=path,
                env=build_env(env),
                timeout=self.hook_timeout,
                operation="up hook",
                identity=name,
            )
        except NexusError as e:
            logger.warning(f"Local up hook failed for {name}: {e}")

    def _run_teardown_hook(self, provider: Provider, session: Session, name: str) -> None:
        hook = self.config.hooks.teardown
        if not hook:
            return
        try:
            provider.exec(
                session.id,
                ExecOptions(cmd=["/bin/bash", f"{WORKSPACE_MOUNT}/{hook}"], timeout=self.hook_timeout),
            )
        except NexusError as e:
            logger.warning(f"Teardown hook failed for {name}: {e}")

    def _info(self, name: str, path: Optional[Path], session: Session) -> WorkspaceInfo:
        return WorkspaceInfo(
            name=name,
            status=session.status.value,
            path=path,
            provider=session.provider,
            session_id=session.id,
            services=dict(session.services),
        )


__all__ = ["PortMapping", "WorkspaceController", "WorkspaceInfo"]
