"""Settings service — user preferences, git credentials and server configs.

SSH private keys and passphrases are encrypted before they reach the
database; only the environment builder decrypts them, in memory.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agent_manager.errors import NotFoundError, ProcessError, ValidationError
from agent_manager.models.server_config import ServerConfig
from agent_manager.models.user_settings import UserSettings
from agent_manager.schemas.credentials import (
    AuthKind,
    GitCredential,
    GitCredentialInput,
    GitCredentialResponse,
    GitIdentity,
)
from agent_manager.schemas.server import RollbackResult, ServerState
from agent_manager.schemas.settings import SettingsResponse, SettingsUpdate
from agent_manager.services.ssh_keys import is_valid_key_content
from agent_manager.utils.crypto import encrypt

if TYPE_CHECKING:
    from agent_manager.services.supervisor import ServerSupervisor

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "default"


def _mask_value(val: str) -> str:
    """Mask a secret value for display: show first 4 and last 4 chars."""
    if len(val) <= 12:
        return "****"
    return val[:4] + "****" + val[-4:]


# ── Preferences ──────────────────────────────────────────────────────


async def get_settings(db: AsyncSession, user_id: str = DEFAULT_USER_ID) -> UserSettings:
    row = await db.get(UserSettings, user_id)
    if row is None:
        row = UserSettings(user_id=user_id, preferences="{}")
        db.add(row)
        await db.commit()
        await db.refresh(row)
    return row


def _preferences(row: UserSettings) -> dict[str, Any]:
    try:
        return json.loads(row.preferences or "{}")
    except json.JSONDecodeError:
        logger.warning("Corrupt preferences for user %s, using defaults", row.user_id)
        return {}


async def get_git_credentials(db: AsyncSession, user_id: str = DEFAULT_USER_ID) -> list[GitCredential]:
    prefs = _preferences(await get_settings(db, user_id))
    return [GitCredential.model_validate(c) for c in prefs.get("git_credentials", [])]


async def get_git_identity(db: AsyncSession, user_id: str = DEFAULT_USER_ID) -> GitIdentity | None:
    prefs = _preferences(await get_settings(db, user_id))
    raw = prefs.get("git_identity")
    return GitIdentity.model_validate(raw) if raw else None


def _store_credential(data: GitCredentialInput, previous: GitCredential | None) -> GitCredential:
    """Turn submitted plaintext into the stored form (SSH secrets encrypted)."""
    cred = GitCredential(
        name=data.name,
        host=data.host,
        auth_kind=data.auth_kind,
        token=data.token,
        username=data.username,
    )
    if data.auth_kind != AuthKind.SSH:
        return cred

    if data.ssh_private_key:
        if not is_valid_key_content(data.ssh_private_key):
            raise ValidationError(f"Invalid SSH key format for credential {data.name!r}")
        cred.ssh_private_key_encrypted = encrypt(data.ssh_private_key.strip())
        if data.passphrase:
            cred.passphrase_encrypted = encrypt(data.passphrase)
            cred.has_passphrase = True
    elif previous is not None and previous.auth_kind == AuthKind.SSH:
        # Key not resubmitted: keep what is already stored
        cred.ssh_private_key_encrypted = previous.ssh_private_key_encrypted
        cred.passphrase_encrypted = previous.passphrase_encrypted
        cred.has_passphrase = previous.has_passphrase
    else:
        raise ValidationError(f"SSH credential {data.name!r} requires a private key")
    return cred


def _credential_fingerprint(creds: list[GitCredential]) -> list[tuple]:
    return [
        (c.name, c.host, c.auth_kind.value, c.token, c.username,
         c.ssh_private_key_encrypted, c.passphrase_encrypted)
        for c in creds
    ]


async def update_settings(
    db: AsyncSession, user_id: str, data: SettingsUpdate
) -> tuple[UserSettings, bool, bool]:
    """Apply a partial update; returns (row, credentials_changed, identity_changed)."""
    row = await get_settings(db, user_id)
    prefs = _preferences(row)

    credentials_changed = False
    identity_changed = False

    if data.git_credentials is not None:
        previous = {c.name: c for c in await get_git_credentials(db, user_id)}
        stored = [_store_credential(c, previous.get(c.name)) for c in data.git_credentials]
        credentials_changed = _credential_fingerprint(stored) != _credential_fingerprint(list(previous.values()))
        prefs["git_credentials"] = [c.model_dump(mode="json") for c in stored]

    if data.git_identity is not None:
        new_identity = data.git_identity.model_dump()
        identity_changed = new_identity != (prefs.get("git_identity") or {"name": "", "email": ""})
        prefs["git_identity"] = new_identity

    if data.extra is not None:
        prefs.setdefault("extra", {}).update(data.extra)

    row.preferences = json.dumps(prefs)
    await db.commit()
    await db.refresh(row)
    return row, credentials_changed, identity_changed


def to_response(row: UserSettings, *, server_restarted: bool = False) -> SettingsResponse:
    prefs = _preferences(row)
    creds = [GitCredential.model_validate(c) for c in prefs.get("git_credentials", [])]
    return SettingsResponse(
        user_id=row.user_id,
        git_credentials=[
            GitCredentialResponse(
                name=c.name,
                host=c.host,
                auth_kind=c.auth_kind,
                username=c.username,
                token_masked=_mask_value(c.token) if c.token else None,
                has_ssh_key=bool(c.ssh_private_key_encrypted),
                has_passphrase=c.has_passphrase,
            )
            for c in creds
        ],
        git_identity=GitIdentity.model_validate(prefs.get("git_identity") or {}),
        extra=prefs.get("extra", {}),
        last_known_good_config=row.last_known_good_config,
        server_restarted=server_restarted,
    )


async def apply_git_settings_change(supervisor: ServerSupervisor) -> str:
    """One supervisor operation per credential/identity change.

    New credentials only reach the server through its spawn environment,
    so this is a restart, degrading to a config reset if the restart fails.
    """
    logger.info("Git credentials or identity changed, restarting server")
    return await supervisor.restart_with_fallback()


# ── Server configurations ────────────────────────────────────────────


async def list_configs(db: AsyncSession, user_id: str = DEFAULT_USER_ID) -> list[ServerConfig]:
    stmt = select(ServerConfig).where(ServerConfig.user_id == user_id).order_by(ServerConfig.name)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _get_config(db: AsyncSession, user_id: str, name: str) -> ServerConfig | None:
    stmt = select(ServerConfig).where(ServerConfig.user_id == user_id, ServerConfig.name == name)
    return await db.scalar(stmt)


async def upsert_config(
    db: AsyncSession, user_id: str, name: str, content: dict[str, Any], *, is_default: bool = False
) -> ServerConfig:
    config = await _get_config(db, user_id, name)
    if config is None:
        config = ServerConfig(user_id=user_id, name=name)
        db.add(config)
    config.content = json.dumps(content)
    await db.flush()
    if is_default:
        await _mark_default(db, user_id, config)
    await db.commit()
    await db.refresh(config)
    return config


async def _mark_default(db: AsyncSession, user_id: str, config: ServerConfig) -> None:
    await db.execute(
        update(ServerConfig)
        .where(ServerConfig.user_id == user_id, ServerConfig.id != config.id)
        .values(is_default=False)
    )
    config.is_default = True


async def set_default_config(db: AsyncSession, user_id: str, name: str) -> ServerConfig:
    config = await _get_config(db, user_id, name)
    if config is None:
        raise NotFoundError(f"Config {name!r} not found")
    await _mark_default(db, user_id, config)
    await db.commit()
    await db.refresh(config)
    return config


async def get_default_config(db: AsyncSession, user_id: str = DEFAULT_USER_ID) -> ServerConfig | None:
    stmt = select(ServerConfig).where(ServerConfig.user_id == user_id, ServerConfig.is_default.is_(True))
    return await db.scalar(stmt)


async def write_default_config_to_disk(db: AsyncSession, path: Path, user_id: str = DEFAULT_USER_ID) -> bool:
    """Write the default config where the server reads it. False when there is none."""
    config = await get_default_config(db, user_id)
    if config is None:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(json.dumps(json.loads(config.content), indent=2) + "\n")
    os.replace(tmp, path)
    logger.info("Wrote config %r to %s", config.name, path)
    return True


# ── Last-known-good ──────────────────────────────────────────────────


async def record_healthy_config(
    db: AsyncSession, supervisor: ServerSupervisor, user_id: str = DEFAULT_USER_ID
) -> str | None:
    """Remember the current default config once the server is confirmed healthy."""
    if supervisor.state != ServerState.HEALTHY:
        return None
    config = await get_default_config(db, user_id)
    if config is None:
        return None
    row = await get_settings(db, user_id)
    if row.last_known_good_config != config.name:
        row.last_known_good_config = config.name
        await db.commit()
        logger.info("Recorded last-known-good config %r", config.name)
    return config.name


async def rollback_to_last_known_good(db: AsyncSession, user_id: str = DEFAULT_USER_ID) -> str | None:
    row = await get_settings(db, user_id)
    name = row.last_known_good_config
    if not name or await _get_config(db, user_id, name) is None:
        return None
    await set_default_config(db, user_id, name)
    return name


async def rollback_server_config(
    db: AsyncSession,
    supervisor: ServerSupervisor,
    config_path: Path,
    user_id: str = DEFAULT_USER_ID,
) -> RollbackResult:
    """Restore the last-known-good config and restart, deleting the file as a last resort.

    The database copy of the config is kept for manual recovery even when the
    on-disk file has to go.
    """
    name = await rollback_to_last_known_good(db, user_id)
    if name is None:
        raise NotFoundError("No previous working config available for rollback")
    await write_default_config_to_disk(db, config_path, user_id)
    logger.info("Rolled back to config %r", name)

    try:
        await supervisor.restart()
        return RollbackResult(
            success=True,
            message=f"Server restarted with previous working config: {name}",
            config_name=name,
            recovered_by="restart",
        )
    except ProcessError as exc:
        logger.error("Rollback config also failed to start server, attempting reset: %s", exc)

    await supervisor.hard_reset(config_path)
    return RollbackResult(
        success=True,
        message=(
            f"Server restarted after deleting problematic config. "
            f"Stored config {name!r} preserved for manual recovery."
        ),
        config_name=name,
        recovered_by="reset",
    )
