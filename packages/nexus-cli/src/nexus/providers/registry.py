"""Provider table: provider name -> implementation."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from ..core.process import Runner
from ..errors import UnknownProviderError
from .base import Provider
from .docker import DockerProvider
from .lxc import LxcProvider

_FACTORIES: Dict[str, Callable[..., Provider]] = {
    "docker": DockerProvider,
    "lxc": LxcProvider,
}

# Named so a config that asks for them gets a clear message.
_UNSUPPORTED = {
    "qemu": "VM sessions (qemu) are not supported",
}


def provider_names() -> List[str]:
    return sorted(_FACTORIES)


def is_known_provider(name: str) -> bool:
    return name.lower() in _FACTORIES


def get_provider(name: str, runner: Optional[Runner] = None) -> Provider:
    n = name.lower()
    if n in _FACTORIES:
        return _FACTORIES[n](runner=runner)
    if n in _UNSUPPORTED:
        raise UnknownProviderError(_UNSUPPORTED[n], operation="resolve provider", identity=name)
    raise UnknownProviderError(
        f"unknown provider (available: {', '.join(provider_names())})",
        operation="resolve provider",
        identity=name,
    )


__all__ = ["get_provider", "is_known_provider", "provider_names"]
