"""Per-operation git environments and the remote connection check built on them.

SSH remotes go through the host trust gateway before anything connects, then
run with a single-use key file that is removed when the operation ends.
HTTPS remotes get the auth header of the matching token credential.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from agent_manager.errors import AuthenticationError, ConfigError
from agent_manager.schemas.credentials import AuthKind, ConnectionTestResult, GitCredential
from agent_manager.services.git_env import (
    build_git_env,
    credential_hostname,
    get_credential_for_host,
    get_ssh_credentials_for_host,
)
from agent_manager.services.host_keys import HostKeyGateway
from agent_manager.services.ssh_keys import (
    SSHKeyManager,
    build_ssh_command_with_known_hosts,
    normalize_host_port,
    parse_ssh_host,
)
from agent_manager.utils.crypto import decrypt
from agent_manager.utils.process import run_command

logger = logging.getLogger(__name__)


def is_http_remote(remote: str) -> bool:
    return remote.strip().lower().startswith(("http://", "https://"))


def https_operation_env(remote: str, credentials: list[GitCredential]) -> dict[str, str]:
    """Auth header env for the token credential matching the remote's host."""
    hostname = credential_hostname(remote) or ""
    tokens = [c for c in credentials or [] if c.auth_kind == AuthKind.PAT]
    cred = get_credential_for_host(tokens, hostname)
    return build_git_env([cred] if cred else [])


@asynccontextmanager
async def ssh_operation_env(
    remote: str,
    credentials: list[GitCredential],
    *,
    gateway: HostKeyGateway,
    key_manager: SSHKeyManager,
    decrypt_fn: Callable[[str], str] = decrypt,
) -> AsyncIterator[dict[str, str]]:
    """Yield the env for one git operation against an SSH remote.

    Raises ``AuthenticationError`` when the host key is not trusted and nobody
    accepts it. The ephemeral key, if any, is deleted on exit.
    """
    conn = parse_ssh_host(remote)
    host_key = normalize_host_port(conn.host, conn.port)
    if not await gateway.verify_host_key_before_operation(remote):
        raise AuthenticationError(f"Host key for {host_key} was not accepted")

    ssh_command = build_ssh_command_with_known_hosts(gateway.get_known_hosts_path(), conn.port)
    candidates = [
        c for c in get_ssh_credentials_for_host(credentials, host_key) if c.ssh_private_key_encrypted
    ]
    key_path: Path | None = None
    try:
        if candidates:
            cred = candidates[0]
            key_path = key_manager.write_ephemeral_key(decrypt_fn(cred.ssh_private_key_encrypted), cred.name)
            if cred.has_passphrase and cred.passphrase_encrypted:
                await key_manager.strip_passphrase(key_path, decrypt_fn(cred.passphrase_encrypted))
            ssh_command += f" -i {shlex.quote(str(key_path))} -o IdentitiesOnly=yes"
            logger.info("Using SSH credential %r for %s", cred.name, host_key)
        yield {"GIT_TERMINAL_PROMPT": "0", "GIT_SSH_COMMAND": ssh_command}
    finally:
        if key_path is not None:
            key_manager.cleanup_key(key_path)


async def _ls_remote(remote: str, env: dict[str, str], timeout: float) -> tuple[int, str]:
    rc, _, err = await run_command(["git", "ls-remote", "--heads", remote], timeout=timeout, env_extra=env)
    if rc == 127:
        raise ConfigError("git is not installed")
    return rc, err


async def check_connection(
    remote: str,
    credentials: list[GitCredential],
    *,
    gateway: HostKeyGateway,
    key_manager: SSHKeyManager,
    timeout: float = 30.0,
) -> ConnectionTestResult:
    """Run ``git ls-remote`` against the remote with the stored credentials."""
    remote = remote.strip()
    if is_http_remote(remote):
        rc, err = await _ls_remote(remote, https_operation_env(remote, credentials), timeout)
    else:
        async with ssh_operation_env(remote, credentials, gateway=gateway, key_manager=key_manager) as env:
            rc, err = await _ls_remote(remote, env, timeout)

    if rc != 0:
        logger.warning("Connection check failed for %s: %s", remote, err or f"exit {rc}")
        return ConnectionTestResult(success=False, remote=remote, error=err or "Authentication failed")
    logger.info("Connection check succeeded for %s", remote)
    return ConnectionTestResult(success=True, remote=remote)
