"""Settings request/response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agent_manager.schemas.credentials import GitCredentialInput, GitCredentialResponse, GitIdentity


class SettingsUpdate(BaseModel):
    """Partial preferences update — omitted fields are left alone."""

    git_credentials: list[GitCredentialInput] | None = None
    git_identity: GitIdentity | None = None
    extra: dict[str, Any] | None = None


class SettingsResponse(BaseModel):
    user_id: str
    git_credentials: list[GitCredentialResponse] = Field(default_factory=list)
    git_identity: GitIdentity = Field(default_factory=GitIdentity)
    extra: dict[str, Any] = Field(default_factory=dict)
    last_known_good_config: str | None = None
    server_restarted: bool = False


class ServerConfigUpsert(BaseModel):
    content: dict[str, Any]
    is_default: bool = False


class ServerConfigResponse(BaseModel):
    name: str
    content: dict[str, Any]
    is_default: bool
