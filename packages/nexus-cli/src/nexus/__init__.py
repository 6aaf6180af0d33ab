"""Nexus: branch-isolated development workspaces."""

__version__ = "0.1.0"
