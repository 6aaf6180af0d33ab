"""Coordination server backend."""
