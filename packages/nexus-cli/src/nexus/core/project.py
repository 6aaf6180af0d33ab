"""Project configuration: the ``.nexus/`` directory and its ``config.yaml``."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ConfigError, UnknownProviderError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".nexus"
CONFIG_FILE = "config.yaml"
HOOKS_DIR = "hooks"
WORKTREES_DIR = "worktrees"
ENV_FILE = ".env"

DEFAULT_IMAGE = "ubuntu:22.04"


# ============================================================================
# Configuration Models
# ============================================================================

class ServiceConfig(BaseModel):
    """A named process/port the workspace exposes.

    Other keys (``healthcheck``, ``depends_on``) are accepted and ignored.
    """

    model_config = ConfigDict(extra="ignore")

    command: str = Field(default="", description="Launch command, used to infer the port")
    port: int = Field(default=0, ge=0, le=65535, description="Internal port, 0 to infer")
    env: Dict[str, str] = Field(default_factory=dict)


class DockerConfig(BaseModel):
    """Container engine settings."""
    image: str = DEFAULT_IMAGE
    dind: bool = Field(default=False, description="Mount the host docker socket into the session")
    ports: List[int] = Field(default_factory=list, description="Extra internal ports to publish")


class LxcConfig(BaseModel):
    """Lightweight container settings."""
    image: str = DEFAULT_IMAGE
    memory: str = "512MB"


class HooksConfig(BaseModel):
    """Lifecycle hook script paths, relative to the worktree."""
    setup: str = Field(default="", description="Runs inside the session after start (required)")
    up: str = Field(default="", description="Runs on the host after start (best effort)")
    teardown: str = Field(default="", description="Runs inside the session before destroy (best effort)")


class ProjectConfig(BaseModel):
    """Complete ``.nexus/config.yaml`` configuration."""

    model_config = ConfigDict(extra="ignore")

    name: str
    provider: str = "docker"
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    lxc: LxcConfig = Field(default_factory=LxcConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("project name cannot be empty")
        if not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9._-]*", cleaned):
            raise ValueError(f"project name {value!r} may only contain letters, digits, '.', '_' and '-'")
        return cleaned

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Optional[str]) -> str:
        if value is None or str(value).strip() == "":
            return "docker"
        return str(value).strip().lower()

    @field_validator("services", mode="before")
    @classmethod
    def _allow_empty_services(cls, value):
        # "services:" with nothing under it parses as None
        return value or {}


# ============================================================================
# Paths
# ============================================================================

def find_project_root(start_path: Path = Path(".")) -> Optional[Path]:
    """Walk up from ``start_path`` to the first directory holding ``.nexus/``.

    A worktree is a full checkout and may carry its own ``.nexus/``, so a
    path inside ``.nexus/worktrees/<name>/`` resolves to the project that
    owns the worktree, not to the worktree itself.
    """
    current = start_path.resolve()
    owner = _worktree_owner(current)
    if owner is not None:
        return owner

    for _ in range(len(current.parts)):
        if (current / CONFIG_DIR).is_dir():
            return current
        if current == current.parent:
            break
        current = current.parent
    return None


def worktree_name_for(path: Path) -> Optional[str]:
    """Return the workspace name when ``path`` lies inside a worktree."""
    parts = path.resolve().parts
    for i in range(len(parts) - 2):
        if parts[i] == CONFIG_DIR and parts[i + 1] == WORKTREES_DIR:
            return parts[i + 2]
    return None


def _worktree_owner(path: Path) -> Optional[Path]:
    parts = path.parts
    for i in range(len(parts) - 2):
        if parts[i] == CONFIG_DIR and parts[i + 1] == WORKTREES_DIR:
            return Path(*parts[:i])
    return None


def config_path(root: Path) -> Path:
    return root / CONFIG_DIR / CONFIG_FILE


def worktrees_dir(root: Path) -> Path:
    return root / CONFIG_DIR / WORKTREES_DIR


# ============================================================================
# Loading
# ============================================================================

def load_project_config(root: Path) -> ProjectConfig:
    """Load and validate ``<root>/.nexus/config.yaml``.

    The provider name is checked against the provider table here so that
    a typo fails when the configuration is read, not on first use.

    Raises:
        ConfigError: The file is missing, unreadable or malformed.
        UnknownProviderError: ``provider`` names no registered provider.
    """
    path = config_path(root)
    if not path.exists():
        raise ConfigError(
            f"configuration not found at {path} (run 'nexus init')",
            operation="load config",
        )

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read {path}: {e}", operation="load config") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping", operation="load config")

    try:
        config = ProjectConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ConfigError(
            f"invalid {path}: {location}: {first.get('msg')}",
            operation="load config",
        ) from e

    from ..providers.registry import is_known_provider, provider_names

    if not is_known_provider(config.provider):
        raise UnknownProviderError(
            f"unknown provider {config.provider!r} (available: {', '.join(provider_names())})",
            operation="load config",
            identity=config.name,
        )

    logger.debug(f"Loaded project {config.name} (provider={config.provider}) from {path}")
    return config


def init_project(root: Path, name: Optional[str] = None, provider: str = "docker") -> Path:
    """Scaffold ``.nexus/`` under ``root`` and return the config path.

    Existing configuration is left untouched.
    """
    nexus_dir = root / CONFIG_DIR
    (nexus_dir / HOOKS_DIR).mkdir(parents=True, exist_ok=True)
    worktrees_dir(root).mkdir(parents=True, exist_ok=True)

    gitignore = nexus_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(f"{WORKTREES_DIR}/\n", encoding="utf-8")

    path = config_path(root)
    if path.exists():
        logger.info(f"Keeping existing configuration at {path}")
        return path

    project_name = name or re.sub(r"[^A-Za-z0-9._-]", "-", root.resolve().name) or "project"
    default = {
        "name": project_name,
        "provider": provider,
        "services": {},
        "docker": {"image": DEFAULT_IMAGE, "dind": False},
        "hooks": {"setup": "", "up": "", "teardown": ""},
    }
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(default, f, sort_keys=False)

    logger.info(f"Initialized project {project_name} at {nexus_dir}")
    return path


__all__ = [
    "CONFIG_DIR",
    "CONFIG_FILE",
    "ENV_FILE",
    "HOOKS_DIR",
    "WORKTREES_DIR",
    "DockerConfig",
    "HooksConfig",
    "LxcConfig",
    "ProjectConfig",
    "ServiceConfig",
    "config_path",
    "find_project_root",
    "init_project",
    "load_project_config",
    "worktree_name_for",
    "worktrees_dir",
]
