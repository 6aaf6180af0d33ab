"""
Node agent process management.

Provides start/stop/status operations for the agent. In the background
the agent runs as a detached process that writes its PID to
``~/.nexus/agent/agent.pid`` and its output to ``agent.log``.
"""

import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


class AgentManager:
    """
    Manages the node agent process lifecycle.

    - Starting the agent (foreground or detached)
    - Stopping it with SIGTERM, escalating to SIGKILL
    - Reporting status from the PID file and the agent's /health endpoint
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.pid_file: Path = self.settings.pid_file
        self.log_file: Path = self.settings.log_file
        self.port = self.settings.agent_port

    def _ensure_state_dir(self) -> None:
        self.settings.agent_state_dir.mkdir(parents=True, exist_ok=True)

    def _read_pid(self) -> Optional[int]:
        """Read PID from file, returns None if not found or invalid."""
        if not self.pid_file.exists():
            return None

        try:
            pid_str = self.pid_file.read_text().strip()
            if pid_str:
                return int(pid_str)
        except (ValueError, OSError) as e:
            logger.debug(f"Error reading PID file: {e}")

        return None

    def _write_pid(self, pid: int) -> None:
        self._ensure_state_dir()
        self.pid_file.write_text(str(pid))

    def _remove_pid(self) -> None:
        if self.pid_file.exists():
            try:
                self.pid_file.unlink()
            except OSError as e:
                logger.debug(f"Error removing PID file: {e}")

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # signal 0 only checks
            return True
        except OSError:
            return False

    def health(self) -> Optional[Dict[str, Any]]:
        """The agent's /health payload, or None if it does not answer."""
        try:
            response = httpx.get(f"{self.settings.agent_url}/health", timeout=2.0)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError):
            return None

    def start(self, foreground: bool = False) -> Dict[str, Any]:
        """
        Start the agent.

        Args:
            foreground: Block in this process instead of detaching.

        Returns:
            Dict with success, message and pid.
        """
        pid = self._read_pid()
        if pid and self._is_process_running(pid):
            return {
                "success": False,
                "message": f"Agent is already running (pid {pid})",
                "pid": pid,
            }
        if pid:
            logger.info(f"Removing stale PID file (process {pid} not running)")
            self._remove_pid()

        self._ensure_state_dir()
        if foreground:
            return self._run_foreground()
        return self._run_background()

    def _run_foreground(self) -> Dict[str, Any]:
        from .server import run_agent

        try:
            self._write_pid(os.getpid())
            run_agent(self.settings)
            return {"success": True, "message": "Agent stopped", "pid": None}
        except KeyboardInterrupt:
            return {"success": True, "message": "Agent stopped by user", "pid": None}
        finally:
            self._remove_pid()

    def _run_background(self) -> Dict[str, Any]:
        cmd = [sys.executable, "-m", "nexus.agent.server"]

        with open(self.log_file, "a") as log:
            log.write(f"\n{'=' * 60}\n")
            log.write(f"Starting agent at {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            log.write(f"Port: {self.port}\n")
            log.write(f"Coordination server: {self.settings.coordination_url}\n")
            log.write(f"{'=' * 60}\n")
            log.flush()

            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=log,
                    stderr=log,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                    cwd=str(Path.home()),
                )
            except OSError as e:
                return {"success": False, "message": f"Failed to start agent: {e}", "pid": None}

        self._write_pid(process.pid)

        for _ in range(20):
            time.sleep(0.25)
            if self.health() is not None:
                return {
                    "success": True,
                    "message": f"Agent started on port {self.port}",
                    "pid": process.pid,
                }
            if process.poll() is not None:
                break

        if process.poll() is not None:
            self._remove_pid()
            return {
                "success": False,
                "message": f"Agent exited during startup. Check {self.log_file}",
                "pid": None,
            }
        return {
            "success": True,
            "message": f"Agent started but not answering yet. Check {self.log_file}",
            "pid": process.pid,
        }

    def stop(self) -> Dict[str, Any]:
        """Stop the agent. Returns a dict with success and message."""
        pid = self._read_pid()
        if not pid:
            return {"success": False, "message": "No PID file found - agent may not be running"}

        if not self._is_process_running(pid):
            self._remove_pid()
            return {"success": True, "message": "Agent was not running (cleaned up stale PID file)"}

        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            self._remove_pid()
            return {"success": False, "message": f"Failed to send SIGTERM: {e}"}

        # Unregistering can take a request round trip; wait up to 10 seconds.
        for _ in range(100):
            if not self._is_process_running(pid):
                self._remove_pid()
                return {"success": True, "message": "Agent stopped gracefully"}
            time.sleep(0.1)

        try:
            os.kill(pid, signal.SIGKILL)
            time.sleep(0.1)
            self._remove_pid()
            return {"success": True, "message": "Agent force killed (SIGKILL)"}
        except OSError as e:
            return {"success": False, "message": f"Failed to kill agent: {e}"}

    def status(self) -> Dict[str, Any]:
        """Running state plus the agent's own health report when it answers."""
        pid = self._read_pid()
        health = self.health()

        if health is not None:
            return {
                "running": True,
                "pid": pid,
                "port": self.port,
                "node_id": health.get("node_id"),
                "registered": health.get("registered", False),
                "mode": health.get("mode"),
                "uptime_seconds": health.get("uptime_seconds"),
            }

        if pid and self._is_process_running(pid):
            return {
                "running": False,
                "pid": pid,
                "port": self.port,
                "message": "Process exists but not responding",
            }

        if pid:
            self._remove_pid()
        return {"running": False, "pid": None, "port": self.port, "message": "Agent not running"}


__all__ = ["AgentManager"]
