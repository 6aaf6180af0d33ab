"""Run an external process with a captured environment and a timeout.

Every subprocess the workspace engine starts (git, docker, lxc, hook
scripts) goes through ``run_process`` so that timeouts and failures are
reported the same way.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence, Type, Union

from ..errors import BackendError, ProcessTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of a finished process."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, stderr last."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


# Signature shared by run_process and the fakes used in tests.
Runner = Callable[..., ProcessResult]


def build_env(extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Return the current process environment overlaid with ``extra``."""
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env


def run_process(
    args: Sequence[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    capture: bool = True,
    check: bool = True,
    input: Optional[str] = None,
    operation: Optional[str] = None,
    identity: Optional[str] = None,
    error_cls: Type[BackendError] = BackendError,
) -> ProcessResult:
    """Run ``args`` synchronously and return its result.

    Args:
        args: Executable and arguments.
        cwd: Working directory.
        env: Full environment for the child. ``None`` inherits ours.
        timeout: Seconds before the child is killed.
        capture: Capture stdout/stderr. When False the child inherits the
            terminal (interactive shells).
        check: Raise ``error_cls`` on a non-zero exit status.
        input: Text written to the child's stdin.
        operation: Operation name attached to raised errors.
        identity: Identity (workspace, session) attached to raised errors.
        error_cls: BackendError subclass raised on failure.

    Raises:
        ProcessTimeoutError: The child exceeded ``timeout`` and was killed.
        BackendError: The executable is missing, or it exited non-zero
            and ``check`` is set.
    """
    argv = [str(a) for a in args]
    operation = operation or argv[0]
    logger.debug(f"Running {' '.join(argv)} (cwd={cwd}, timeout={timeout})")

    try:
        completed = subprocess.run(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            timeout=timeout,
            capture_output=capture,
            text=True,
            input=input,
        )
    except subprocess.TimeoutExpired as e:
        raise ProcessTimeoutError(
            f"timed out after {timeout}s running {' '.join(argv)}",
            operation=operation,
            identity=identity,
            output=_decode(e.stdout) + _decode(e.stderr),
        ) from e
    except FileNotFoundError as e:
        raise error_cls(
            f"executable not found: {argv[0]}",
            operation=operation,
            identity=identity,
        ) from e

    result = ProcessResult(
        args=argv,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )

    if check and not result.ok:
        detail = result.output or f"exit status {result.returncode}"
        raise error_cls(
            f"{' '.join(argv[:3])} failed: {detail}",
            operation=operation,
            identity=identity,
            returncode=result.returncode,
            output=result.output,
        )
    return result


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


__all__ = ["ProcessResult", "Runner", "build_env", "run_process"]
