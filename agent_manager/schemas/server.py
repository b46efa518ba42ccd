"""Schemas for supervising the agent server process."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field


class ServerState(StrEnum):
    """Lifecycle states of the supervised server process."""

    STOPPED = "stopped"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RESTARTING = "restarting"
    FAILED = "failed"


class ServerStatus(BaseModel):
    state: ServerState = ServerState.STOPPED
    pid: int | None = None
    port: int = 5551
    version: str | None = None
    min_version: str = ""
    version_supported: bool = False
    last_startup_error: str | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ActionResult(BaseModel):
    """Generic result for start / stop / restart / reload."""

    success: bool
    message: str = ""
    output: str = ""


class HealthResult(BaseModel):
    healthy: bool
    state: ServerState


class StartupErrorResponse(BaseModel):
    error: str | None = None


class RollbackResult(BaseModel):
    success: bool
    message: str = ""
    config_name: str | None = None
    recovered_by: str | None = None  # restart | reset
