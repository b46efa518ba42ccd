"""SSH key material — on-disk keys, generated ssh config and remote parsing.

Keys live under a dedicated 0700 directory. Ephemeral keys (``key-*``) back a
single git operation; persistent keys (``persistent-*``) back the supervised
server for as long as it runs and are removed when it stops.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import shlex
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from agent_manager.errors import AuthenticationError, ConfigError, ValidationError
from agent_manager.utils.process import run_command

logger = logging.getLogger(__name__)

DEFAULT_SSH_USER = "git"
DEFAULT_SSH_PORT = "22"
EPHEMERAL_PREFIX = "key-"
PERSISTENT_PREFIX = "persistent-"

_PUBLIC_KEY_PREFIX = re.compile(
    r"^(ssh-rsa|ssh-ed25519|ecdsa-sha2-nistp256|ecdsa-sha2-nistp384|ecdsa-sha2-nistp521|ssh-dss)\s+"
)
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")

PassphraseStripper = Callable[[Path, str], Awaitable[None]]


# ── Remote references ────────────────────────────────────────────────


@dataclass(frozen=True)
class SSHConnectionInfo:
    user: str
    host: str
    port: str


def parse_ssh_host(remote: str) -> SSHConnectionInfo:
    """Split an SSH-style remote into user, host and port.

    Handles ``ssh://user@host:port/path``, scp-style ``git@host:org/repo.git``,
    ``git@host:2222/org/repo.git``, ``host:port`` and a bare ``host``.
    """
    remote = remote.strip()
    if remote.startswith("ssh://"):
        try:
            parsed = urlsplit(remote)
            if parsed.hostname:
                return SSHConnectionInfo(
                    user=parsed.username or DEFAULT_SSH_USER,
                    host=parsed.hostname,
                    port=str(parsed.port) if parsed.port else DEFAULT_SSH_PORT,
                )
        except ValueError:
            pass  # fall through to manual parsing

    cleaned = re.sub(r"^[a-z]+://", "", remote, flags=re.IGNORECASE)
    user, host, port = DEFAULT_SSH_USER, cleaned, DEFAULT_SSH_PORT

    if "@" in cleaned:
        user, _, host = cleaned.partition("@")

    if ":" in host:
        head, _, after = host.rpartition(":")
        if "/" in after:
            # scp-style path, possibly 'host:2222/path'
            first, _, rest = host.partition(":")
            port_part = rest.split("/", 1)[0]
            if port_part.isdigit() and 0 < int(port_part) <= 65535:
                port = port_part
            host = first or host
        elif after.isdigit() and 0 < int(after) <= 65535:
            port = after
            host = head or host
        else:
            host = host.split(":", 1)[0] or host

    host = host.split("/", 1)[0]
    return SSHConnectionInfo(user=user or DEFAULT_SSH_USER, host=host, port=port)


def normalize_host_port(host: str, port: str | None = None) -> str:
    """'host' for the default port, 'host:port' otherwise."""
    if port and port != DEFAULT_SSH_PORT:
        return f"{host}:{port}"
    return host


def parse_host_port(host_port: str) -> tuple[str, str]:
    if ":" in host_port:
        host, _, port = host_port.rpartition(":")
        return host, port
    return host_port, DEFAULT_SSH_PORT


def known_hosts_marker(host: str, port: str | None = None) -> str:
    """Host column of a known_hosts line — '[host]:port' for non-default ports."""
    if port and port != DEFAULT_SSH_PORT:
        return f"[{host}]:{port}"
    return host


# ── Key validation ───────────────────────────────────────────────────


def is_valid_key_content(content: str) -> bool:
    """True when the first line is a PEM header or a known public-key algorithm."""
    first_line = content.strip().split("\n", 1)[0] if content.strip() else ""
    if not first_line:
        return False
    if first_line.startswith("-----BEGIN"):
        return True
    return bool(_PUBLIC_KEY_PREFIX.match(first_line))


async def ssh_keygen_strip_passphrase(key_path: Path, passphrase: str) -> None:
    """Remove the passphrase from a private key in place via ssh-keygen."""
    rc, _, err = await run_command(
        ["ssh-keygen", "-p", "-P", passphrase, "-N", "", "-f", str(key_path)],
        timeout=30,
    )
    if rc == 127:
        raise ConfigError("ssh-keygen is not installed")
    if rc != 0:
        # stderr never contains the passphrase
        raise AuthenticationError(f"Failed to remove key passphrase: {err or f'exit {rc}'}")


# ── SSH client config ────────────────────────────────────────────────


@dataclass(frozen=True)
class SSHConfigEntry:
    hostname: str
    port: str
    key_path: Path


def generate_ssh_config(entries: list[SSHConfigEntry]) -> str:
    """One Host block per credential, pinned to its own identity file."""
    lines: list[str] = []
    for entry in entries:
        lines.append(f"Host {entry.hostname}")
        lines.append(f'  IdentityFile "{entry.key_path}"')
        lines.append("  IdentitiesOnly yes")
        if entry.port != DEFAULT_SSH_PORT:
            lines.append(f"  Port {entry.port}")
        lines.append("")
    return "\n".join(lines)


def build_ssh_command_with_config(config_path: Path, known_hosts_path: Path) -> str:
    return (
        f"ssh -T -F {shlex.quote(str(config_path))}"
        f" -o UserKnownHostsFile={shlex.quote(str(known_hosts_path))}"
        " -o StrictHostKeyChecking=yes -o PasswordAuthentication=no"
    )


def build_ssh_command_with_known_hosts(known_hosts_path: Path, port: str | None = None) -> str:
    port_option = f" -p {port}" if port and port != DEFAULT_SSH_PORT else ""
    return (
        f"ssh -T -o UserKnownHostsFile={shlex.quote(str(known_hosts_path))}"
        f" -o StrictHostKeyChecking=yes -o PasswordAuthentication=no{port_option}"
    )


# ── Key files ────────────────────────────────────────────────────────


class SSHKeyManager:
    """Owns the key directory and the generated ssh config file."""

    def __init__(
        self,
        keys_dir: Path,
        ssh_config_path: Path,
        passphrase_stripper: PassphraseStripper | None = None,
    ) -> None:
        self.keys_dir = Path(keys_dir)
        self.ssh_config_path = Path(ssh_config_path)
        self._strip = passphrase_stripper or ssh_keygen_strip_passphrase

    def _ensure_keys_dir(self) -> None:
        self.keys_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.keys_dir.chmod(0o700)

    def _key_path(self, file_name: str) -> Path:
        base = self.keys_dir.resolve()
        path = (base / file_name).resolve()
        if path.parent != base:
            raise ValidationError("Invalid key path")
        return path

    @staticmethod
    def _safe_id(identifier: str) -> str:
        safe = _UNSAFE_ID_CHARS.sub("_", identifier)
        if not safe:
            raise ValidationError("Key identifier is empty")
        return safe

    def _write_key(self, path: Path, content: str) -> Path:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w") as fh:
                fh.write(content.strip() + "\n")
            path.chmod(0o600)
            valid = is_valid_key_content(path.read_text())
        except OSError:
            path.unlink(missing_ok=True)
            raise
        if not valid:
            path.unlink(missing_ok=True)
            raise ValidationError("Invalid SSH key format")
        return path

    def write_ephemeral_key(self, content: str, identifier: str) -> Path:
        """Write a single-use key; the caller removes it with :meth:`cleanup_key`."""
        self._ensure_keys_dir()
        name = f"{EPHEMERAL_PREFIX}{self._safe_id(identifier)}-{secrets.token_hex(8)}"
        return self._write_key(self._key_path(name), content)

    def write_persistent_key(self, content: str, identifier: str) -> Path:
        """Write a key that lives until :meth:`cleanup_persistent`."""
        self._ensure_keys_dir()
        name = f"{PERSISTENT_PREFIX}{self._safe_id(identifier)}"
        return self._write_key(self._key_path(name), content)

    async def strip_passphrase(self, key_path: Path, passphrase: str) -> None:
        await self._strip(key_path, passphrase)

    def write_ssh_config(self, content: str) -> Path:
        self.ssh_config_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.ssh_config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        self.ssh_config_path.chmod(0o600)
        return self.ssh_config_path

    def cleanup_key(self, key_path: Path) -> None:
        try:
            Path(key_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to clean up SSH key %s: %s", key_path, exc)

    def cleanup_persistent(self) -> None:
        """Remove every persistent key and the generated ssh config."""
        if self.keys_dir.exists():
            for path in self.keys_dir.glob(f"{PERSISTENT_PREFIX}*"):
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Failed to clean up persistent SSH key %s: %s", path.name, exc)
        try:
            self.ssh_config_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove ssh config %s: %s", self.ssh_config_path, exc)

    def cleanup_all(self) -> None:
        shutil.rmtree(self.keys_dir, ignore_errors=True)
