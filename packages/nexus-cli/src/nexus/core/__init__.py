"""Workspace engine: project config, worktrees, environment and lifecycle."""
