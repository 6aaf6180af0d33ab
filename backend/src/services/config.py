"""Coordination server configuration helpers."""

from __future__ import annotations

from functools import lru_cache
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AppConfig(BaseModel):
    """Runtime configuration loaded from environment variables."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="0.0.0.0", description="Bind address (COORD_HOST)")
    port: int = Field(default=3001, ge=1, le=65535, description="Listen port (COORD_PORT)")
    auth_token: Optional[str] = Field(
        default=None,
        description="Bearer token required on /api/v1/* when set (COORD_AUTH_TOKEN)",
    )
    node_stale_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds without a heartbeat before a node is reported stale",
    )
    node_offline_seconds: float = Field(
        default=180.0,
        gt=0,
        description="Seconds without a heartbeat before a node is reported offline",
    )
    command_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Default seconds before a pending command is reported timed out",
    )
    command_sweep_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="How often the background sweep expires pending commands",
    )
    command_history_limit: int = Field(
        default=1000,
        ge=1,
        description="Terminal commands retained in memory; pending ones are never dropped",
    )
    event_queue_size: int = Field(
        default=100,
        ge=1,
        description="Per-subscriber event buffer; the oldest event is dropped when full",
    )
    node_transport_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="HTTP timeout when pushing a command to a node",
    )
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="info")

    @field_validator("auth_token", mode="before")
    @classmethod
    def _ensure_token(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(
                "COORD_AUTH_TOKEN cannot be empty; unset the variable to disable auth"
            )
        if len(cleaned) < 16:
            raise ValueError("COORD_AUTH_TOKEN must be at least 16 characters")
        return cleaned

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Optional[str]) -> str:
        if value is None:
            return "info"
        v = str(value).lower().strip()
        allowed = {"critical", "error", "warning", "info", "debug"}
        if v not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {value!r}")
        return v

    @model_validator(mode="after")
    def _check_liveness_windows(self) -> "AppConfig":
        if self.node_offline_seconds < self.node_stale_seconds:
            raise ValueError("NODE_OFFLINE_SECONDS must be >= NODE_STALE_SECONDS")
        return self


def _read_env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(key, default)


def _read_float(key: str, default: float) -> float:
    raw = _read_env(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _read_int(key: str, default: int) -> int:
    raw = _read_env(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load and cache application configuration."""
    cors_raw = _read_env("CORS_ORIGINS", "*")
    cors_origins = [o.strip() for o in cors_raw.split(",") if o.strip()] or ["*"]

    return AppConfig(
        host=_read_env("COORD_HOST", "0.0.0.0"),
        port=_read_int("COORD_PORT", 3001),
        auth_token=_read_env("COORD_AUTH_TOKEN"),
        node_stale_seconds=_read_float("NODE_STALE_SECONDS", 60.0),
        node_offline_seconds=_read_float("NODE_OFFLINE_SECONDS", 180.0),
        command_timeout_seconds=_read_float("COMMAND_TIMEOUT_SECONDS", 300.0),
        command_sweep_interval_seconds=_read_float("COMMAND_SWEEP_INTERVAL_SECONDS", 10.0),
        command_history_limit=_read_int("COMMAND_HISTORY_LIMIT", 1000),
        event_queue_size=_read_int("EVENT_QUEUE_SIZE", 100),
        node_transport_timeout_seconds=_read_float("NODE_TRANSPORT_TIMEOUT_SECONDS", 10.0),
        cors_origins=cors_origins,
        log_level=_read_env("LOG_LEVEL", "info"),
    )


def reload_config() -> AppConfig:
    """Clear cached config (useful for tests) and reload."""
    get_config.cache_clear()
    return get_config()


__all__ = ["AppConfig", "get_config", "reload_config"]
