"""SSH host-key verification schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class HostKeyOutcome(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"


class HostKeyRespondRequest(BaseModel):
    request_id: str
    response: HostKeyOutcome


class HostKeyRespondResult(BaseModel):
    success: bool
    error: str | None = None


class HostKeyStatus(BaseModel):
    success: bool = True
    pending_count: int = 0


class PendingVerification(BaseModel):
    """A host key waiting for a human decision."""

    request_id: str
    host: str  # host or host:port
    key_type: str
    public_key: str  # full known_hosts line from the scan
    created_at: datetime
    expires_at: datetime


class TrustedHostResponse(BaseModel):
    host: str
    key_type: str
    public_key: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TrustHostRequest(BaseModel):
    """Operator-initiated trust of a remote's current host key."""

    remote: str
