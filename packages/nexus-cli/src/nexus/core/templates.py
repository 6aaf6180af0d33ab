"""Hook point for generating agent configuration files into a worktree.

Template fetching and merging live outside this package. The controller
only calls ``generate`` and lets any exception propagate.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from .project import ProjectConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class AgentConfigGenerator(Protocol):
    """Writes derived configuration artifacts into a fresh worktree."""

    def generate(self, worktree: Path, config: ProjectConfig) -> None:
        ...


class NullAgentConfigGenerator:
    """Generator used when no template collaborator is configured."""

    def generate(self, worktree: Path, config: ProjectConfig) -> None:
        logger.debug(f"No agent config generator configured for {worktree}")


__all__ = ["AgentConfigGenerator", "NullAgentConfigGenerator"]
