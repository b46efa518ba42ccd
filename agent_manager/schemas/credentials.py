"""Git credential and identity schemas."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class AuthKind(StrEnum):
    PAT = "pat"
    SSH = "ssh"


class GitCredential(BaseModel):
    """A stored credential as the Settings collaborator hands it out.

    SSH key material and passphrases are only ever present as ciphertext.
    """

    name: str
    host: str
    auth_kind: AuthKind = AuthKind.PAT
    token: str | None = None
    username: str | None = None
    ssh_private_key_encrypted: str | None = None
    passphrase_encrypted: str | None = None
    has_passphrase: bool = False


class GitCredentialInput(BaseModel):
    """Credential as submitted by a user — plaintext, encrypted before storage."""

    name: str = Field(..., min_length=1, max_length=128)
    host: str = Field(..., min_length=1, max_length=512)
    auth_kind: AuthKind = AuthKind.PAT
    token: str | None = None
    username: str | None = None
    ssh_private_key: str | None = None
    passphrase: str | None = None


class GitCredentialResponse(BaseModel):
    name: str
    host: str
    auth_kind: AuthKind
    username: str | None = None
    token_masked: str | None = None
    has_ssh_key: bool = False
    has_passphrase: bool = False
    # secrets are NEVER returned


class GitIdentity(BaseModel):
    name: str = ""
    email: str = ""


class GitHubUserInfo(BaseModel):
    login: str
    name: str | None = None
    email: str


class AuthDirective(BaseModel):
    """Inject ``directive`` as an extra HTTP header for URLs under ``scope``."""

    scope: str
    directive: str


class ConnectionTestRequest(BaseModel):
    remote: str = Field(..., min_length=1, max_length=1024)


class ConnectionTestResult(BaseModel):
    success: bool
    remote: str
    error: str | None = None
