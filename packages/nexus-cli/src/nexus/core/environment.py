"""Service discovery and the per-worktree ``.env`` file.

For each declared service a URL line is produced::

    NEXUS_SERVICE_<NAME>_URL=<scheme>://localhost:<port>

The port is the provider's realized host port when a session is running,
or the internal port otherwise. Lines are sorted by service name so the
file is byte-identical across repeated runs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .project import ENV_FILE, ServiceConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "NEXUS"

# Launch-command conventions -> default port. First match wins.
_PORT_CONVENTIONS: list[tuple[re.Pattern, int]] = [
    (re.compile(r"npm run dev|npm start|yarn dev|yarn start|pnpm dev|next dev"), 3000),
    (re.compile(r"rails server|rails s\b"), 3000),
    (re.compile(r"python.*manage\.py.*runserver|django.*runserver|uvicorn|gunicorn"), 8000),
    (re.compile(r"flask run"), 5000),
    (re.compile(r"postgres"), 5432),
    (re.compile(r"mysql|mariadb"), 3306),
    (re.compile(r"mongo"), 27017),
    (re.compile(r"redis"), 6379),
]

_EXPLICIT_PORT = re.compile(r"(?:PORT=|--port[= ]|-p )(\d{2,5})\b", re.IGNORECASE)

# Name/command signatures -> URL scheme
_PROTOCOLS: list[tuple[tuple[str, ...], str]] = [
    (("postgres", "postgresql", "psql"), "postgresql"),
    (("mysql", "mariadb"), "mysql"),
    (("mongo", "mongodb"), "mongodb"),
    (("redis",), "redis"),
]


@dataclass(frozen=True)
class ServiceEndpoint:
    """A service resolved against a (possibly absent) session."""
    name: str
    protocol: str
    internal_port: int
    external_port: int

    @property
    def env_key(self) -> str:
        return service_env_key(self.name)

    @property
    def url(self) -> str:
        return f"{self.protocol}://localhost:{self.external_port}"


def detect_port(command: str) -> int:
    """Infer a service port from its launch command, 0 when unknown."""
    if not command:
        return 0
    explicit = _EXPLICIT_PORT.search(command)
    if explicit:
        return int(explicit.group(1))
    lowered = command.lower()
    for pattern, port in _PORT_CONVENTIONS:
        if pattern.search(lowered):
            return port
    return 0


def detect_protocol(name: str, command: str = "") -> str:
    haystack = f"{name} {command}".lower()
    for signatures, scheme in _PROTOCOLS:
        if any(sig in haystack for sig in signatures):
            return scheme
    return "http"


def resolve_port(service: ServiceConfig) -> int:
    """Explicit port, else one inferred from the command."""
    if service.port:
        return service.port
    return detect_port(service.command)


def service_env_key(name: str) -> str:
    normalized = re.sub(r"[^A-Z0-9]", "_", name.upper())
    return f"{ENV_PREFIX}_SERVICE_{normalized}_URL"


def resolve_endpoints(
    services: Mapping[str, ServiceConfig],
    port_map: Optional[Mapping[int, int]] = None,
) -> List[ServiceEndpoint]:
    """Resolve every service with a known port, sorted by name.

    Services whose port cannot be determined are skipped. When
    ``port_map`` (internal -> host) lacks an entry the internal port is
    used as is.
    """
    port_map = port_map or {}
    endpoints = []
    for name in sorted(services):
        service = services[name]
        internal = resolve_port(service)
        if internal == 0:
            logger.debug(f"Service {name} has no known port, skipping")
            continue
        external = port_map.get(internal, internal)
        endpoints.append(
            ServiceEndpoint(
                name=name,
                protocol=detect_protocol(name, service.command),
                internal_port=internal,
                external_port=external,
            )
        )
    return endpoints


def service_environment(endpoints: List[ServiceEndpoint]) -> Dict[str, str]:
    return {ep.env_key: ep.url for ep in endpoints}


def render_env_file(endpoints: List[ServiceEndpoint]) -> str:
    lines = [f"{ep.env_key}={ep.url}" for ep in endpoints]
    return "\n".join(lines) + "\n" if lines else ""


def write_env_file(worktree: Path, endpoints: List[ServiceEndpoint]) -> Path:
    """Persist the service URLs to ``<worktree>/.env`` and return its path.

    The file is only rewritten when its content changes.
    """
    path = worktree / ENV_FILE
    content = render_env_file(endpoints)
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return path
    path.write_text(content, encoding="utf-8")
    logger.info(f"Wrote {len(endpoints)} service URL(s) to {path}")
    return path


__all__ = [
    "ENV_PREFIX",
    "ServiceEndpoint",
    "detect_port",
    "detect_protocol",
    "render_env_file",
    "resolve_endpoints",
    "resolve_port",
    "service_env_key",
    "service_environment",
    "write_env_file",
]
