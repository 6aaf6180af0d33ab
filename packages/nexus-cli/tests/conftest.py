"""Shared fakes for the nexus package tests."""

import shutil
import subprocess
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from nexus.core.process import ProcessResult
from nexus.errors import BackendError, ProviderError, SessionNotFoundError
from nexus.providers.base import (
    SESSION_LABEL,
    ExecOptions,
    Provider,
    Session,
    SessionStatus,
    service_ports,
)


class FakeProvider(Provider):
    """In-memory provider.

    Host ports are handed out from ``port_base`` upwards at create time and
    are never reused across sessions. They only show up in ``list_sessions``
    while the session runs, like a container engine.
    """

    def __init__(self, name: str = "docker", port_base: int = 49152):
        super().__init__(runner=None)
        self.name = name
        self.port_base = port_base
        self.sessions: Dict[str, Session] = {}
        self.calls: List[Tuple[str, str]] = []
        self.exec_calls: List[Tuple[str, ExecOptions]] = []
        self.exec_output = ""
        self.exec_error: Optional[Exception] = None
        self.fail_create = False
        self.fail_start = False
        self.fail_list = False
        self._ports: Dict[str, Dict[int, int]] = {}
        self._counter = 0
        self._next_port = port_base

    def create(self, session_id, workspace_path, config):
        self.calls.append(("create", session_id))
        if self.fail_create:
            raise ProviderError("create failed", operation="create", identity=session_id)

        self._counter += 1
        backend_id = f"{self.name[:3]}{self._counter:09d}"
        ports = service_ports(config)
        self._ports[backend_id] = {}
        for port in ports:
            self._ports[backend_id][port] = self._next_port
            self._next_port += 1
        session = Session(
            id=backend_id,
            provider=self.name,
            status=SessionStatus.PENDING,
            labels={SESSION_LABEL: session_id},
        )
        self.sessions[backend_id] = session
        return replace(session)

    def start(self, session_id):
        self.calls.append(("start", session_id))
        if self.fail_start:
            raise ProviderError("start failed", operation="start", identity=session_id)
        session = self._get(session_id)
        session.status = SessionStatus.RUNNING
        session.services = dict(self._ports.get(session_id, {}))

    def stop(self, session_id):
        self.calls.append(("stop", session_id))
        session = self._get(session_id)
        session.status = SessionStatus.STOPPED
        session.services = {}

    def destroy(self, session_id):
        self.calls.append(("destroy", session_id))
        self._get(session_id)
        del self.sessions[session_id]

    def exec(self, session_id, opts):
        self._get(session_id)
        self.exec_calls.append((session_id, opts))
        if self.exec_error is not None:
            raise self.exec_error
        return ProcessResult(args=list(opts.cmd), returncode=0, stdout=self.exec_output)

    def list_sessions(self):
        if self.fail_list:
            raise ProviderError("backend unavailable", operation="list")
        return [
            replace(s, labels=dict(s.labels), services=dict(s.services))
            for s in self.sessions.values()
        ]

    def _get(self, session_id: str) -> Session:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise SessionNotFoundError("no such session", identity=session_id) from None


class FakeRunner:
    """Process runner that records calls and replays canned results.

    Honors ``check`` the way ``run_process`` does.
    """

    def __init__(self):
        self.calls: List[Tuple[List[str], dict]] = []
        self._responses: List[Tuple[List[str], ProcessResult]] = []

    def respond(self, prefix: List[str], stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self._responses.append(
            (prefix, ProcessResult(args=prefix, returncode=returncode, stdout=stdout, stderr=stderr))
        )

    def __call__(self, args, **kwargs) -> ProcessResult:
        argv = [str(a) for a in args]
        self.calls.append((argv, kwargs))

        result = ProcessResult(args=argv, returncode=0)
        for prefix, canned in self._responses:
            if argv[: len(prefix)] == prefix:
                result = replace(canned, args=argv)
                break

        if kwargs.get("check", True) and not result.ok:
            error_cls = kwargs.get("error_cls", BackendError)
            raise error_cls(
                f"{argv[0]} failed",
                operation=kwargs.get("operation"),
                identity=kwargs.get("identity"),
                returncode=result.returncode,
                output=result.output,
            )
        return result

    def commands(self) -> List[List[str]]:
        return [argv for argv, _ in self.calls]


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_provider():
    """Factory for extra providers with their own names."""
    return FakeProvider


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        [
            "git",
            "-c", "user.name=Nexus Test",
            "-c", "user.email=test@example.com",
            "-c", "commit.gpgsign=false",
            *args,
        ],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A git repository on branch main with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "--quiet")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    git(repo, "add", "README.md")
    git(repo, "commit", "--quiet", "-m", "initial")
    return repo


@pytest.fixture
def run_git():
    """``run_git(repo, *args)`` runs git in ``repo`` and returns its stdout."""
    return git
