"""Environment for the supervised server, built from stored credentials.

Composes the git auth headers, commit identity, persistent SSH keys with a
generated ssh config, and the config-path override into a single overlay
that the supervisor applies on spawn.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_manager.config import Settings
from agent_manager.errors import ManagerError
from agent_manager.schemas.credentials import AuthKind, GitCredential, GitIdentity
from agent_manager.services import settings_service
from agent_manager.services.git_env import (
    build_git_env,
    build_identity_env,
    resolve_git_identity,
)
from agent_manager.services.ssh_keys import (
    SSHConfigEntry,
    SSHKeyManager,
    build_ssh_command_with_config,
    build_ssh_command_with_known_hosts,
    generate_ssh_config,
    parse_ssh_host,
)
from agent_manager.utils.crypto import decrypt

logger = logging.getLogger(__name__)

EnvProvider = Callable[[], Awaitable[dict[str, str]]]


async def materialize_ssh_credentials(
    credentials: list[GitCredential],
    key_manager: SSHKeyManager,
    *,
    decrypt_fn: Callable[[str], str] = decrypt,
) -> list[SSHConfigEntry]:
    """Write a persistent, passphrase-free key file per SSH credential.

    A credential that cannot be decrypted, validated or unlocked is logged and
    skipped so the remaining credentials still work.
    """
    entries: list[SSHConfigEntry] = []
    for index, cred in enumerate(credentials or []):
        if cred.auth_kind != AuthKind.SSH or not cred.ssh_private_key_encrypted:
            continue

        key_path: Path | None = None
        try:
            key_path = key_manager.write_persistent_key(
                decrypt_fn(cred.ssh_private_key_encrypted), f"{index}-{cred.name}",
            )
            if cred.has_passphrase and cred.passphrase_encrypted:
                await key_manager.strip_passphrase(key_path, decrypt_fn(cred.passphrase_encrypted))
        except (ManagerError, OSError) as exc:
            logger.warning("Skipping SSH credential %r: %s", cred.name, exc)
            if key_path is not None:
                key_manager.cleanup_key(key_path)
            continue

        conn = parse_ssh_host(cred.host)
        entries.append(SSHConfigEntry(hostname=conn.host, port=conn.port, key_path=key_path))
        logger.info("Prepared SSH key for credential %r (host=%s)", cred.name, conn.host)
    return entries


async def build_server_environment(
    credentials: list[GitCredential],
    identity: GitIdentity | None,
    *,
    settings: Settings,
    key_manager: SSHKeyManager,
    decrypt_fn: Callable[[str], str] = decrypt,
) -> dict[str, str]:
    """Environment overlay for the supervised server process."""
    env: dict[str, str] = {}
    env.update(build_git_env(credentials))

    resolved = await resolve_git_identity(identity, credentials)
    env.update(build_identity_env(resolved))

    entries = await materialize_ssh_credentials(credentials, key_manager, decrypt_fn=decrypt_fn)
    if entries:
        config_path = key_manager.write_ssh_config(generate_ssh_config(entries))
        env["GIT_SSH_COMMAND"] = build_ssh_command_with_config(config_path, settings.known_hosts_path)
    else:
        env["GIT_SSH_COMMAND"] = build_ssh_command_with_known_hosts(settings.known_hosts_path)

    env["OPENCODE_CONFIG"] = str(settings.server_config_path.resolve())
    env["XDG_DATA_HOME"] = str(settings.server_state_dir.resolve())
    return env


def make_env_provider(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    settings: Settings,
    key_manager: SSHKeyManager,
    user_id: str = settings_service.DEFAULT_USER_ID,
) -> EnvProvider:
    """Bind the settings store to :func:`build_server_environment` for the supervisor."""

    async def provider() -> dict[str, str]:
        async with session_factory() as db:
            credentials = await settings_service.get_git_credentials(db, user_id)
            identity = await settings_service.get_git_identity(db, user_id)
        return await build_server_environment(
            credentials, identity, settings=settings, key_manager=key_manager,
        )

    return provider
