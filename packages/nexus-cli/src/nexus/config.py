"""
Nexus CLI and node agent configuration.

Settings are loaded from (in order of precedence):
1. Environment variables (prefixed with NEXUS_)
2. The user env file (~/.nexus/.env)

Key settings:
- NEXUS_COORDINATION_URL: Coordination server URL (default: http://localhost:3001)
- NEXUS_AUTH_TOKEN: Bearer token for the coordination server
- NEXUS_HOOK_TIMEOUT: Seconds a lifecycle hook may run (default: 600)

Node agent:
- NEXUS_AGENT_PORT: Port the agent listens on for dispatched commands (default: 8766)
- NEXUS_AGENT_ADVERTISE_ADDRESS: Address the server should push commands to.
  When unset the agent registers without an address and polls instead.
- NEXUS_AGENT_PROVIDER: Provider the agent runs sessions with (default: docker)
- NEXUS_HEARTBEAT_INTERVAL: Seconds between heartbeats (default: 30)
"""

import logging
import socket
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

NEXUS_HOME = Path.home() / ".nexus"


class Settings(BaseSettings):
    """Nexus configuration settings."""

    app_name: str = "Nexus"

    # Coordination server
    coordination_url: str = "http://localhost:3001"
    auth_token: Optional[str] = None
    request_timeout: float = 30.0

    # Workspaces
    default_provider: str = "docker"
    hook_timeout: float = 600.0
    exec_timeout: Optional[float] = None

    log_level: str = "INFO"

    # Node agent
    agent_host: str = "0.0.0.0"
    agent_port: int = Field(default=8766, ge=1, le=65535)
    agent_advertise_address: Optional[str] = None
    agent_node_id: Optional[str] = None
    agent_node_name: str = Field(default_factory=socket.gethostname)
    agent_provider: str = "docker"
    agent_labels: Dict[str, str] = Field(default_factory=dict)
    agent_state_dir: Path = NEXUS_HOME / "agent"
    agent_workspace_root: Path = NEXUS_HOME / "agent" / "workspaces"
    heartbeat_interval: float = Field(default=30.0, gt=0)
    command_poll_interval: float = Field(default=5.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_",
        env_file=str(NEXUS_HOME / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("coordination_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def pid_file(self) -> Path:
        return self.agent_state_dir / "agent.pid"

    @property
    def log_file(self) -> Path:
        return self.agent_state_dir / "agent.log"

    @property
    def agent_url(self) -> str:
        return f"http://127.0.0.1:{self.agent_port}"


# Global settings instance - created lazily
_settings: Optional[Settings] = None


def get_settings(force_reload: bool = False) -> Settings:
    """Get the global Settings instance."""
    global _settings
    if _settings is None or force_reload:
        _settings = Settings()
    return _settings


__all__ = ["NEXUS_HOME", "Settings", "get_settings"]
