"""Coordination server source package."""
