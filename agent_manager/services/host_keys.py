"""SSH host trust — trust-on-first-use verification with a human in the loop.

An unknown host is scanned, announced on the notification channel, and the
calling git operation waits until somebody accepts or rejects the key (or the
wait times out, which counts as a rejection). Accepted keys are stored in the
database, which stays the source of truth; the known_hosts file handed to ssh
is rebuilt from it on startup.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_manager.errors import ConfigError, ManagerError, StoreError, ValidationError
from agent_manager.models.trusted_host import TrustedHost
from agent_manager.schemas.host_key import (
    HostKeyOutcome,
    HostKeyRespondResult,
    PendingVerification,
)
from agent_manager.services.events import (
    SSH_HOST_KEY_REQUEST,
    SSH_HOST_KEY_RESOLVED,
    EventBroadcaster,
)
from agent_manager.services.ssh_keys import (
    known_hosts_marker,
    normalize_host_port,
    parse_host_port,
    parse_ssh_host,
)
from agent_manager.utils.process import run_command

logger = logging.getLogger(__name__)

REQUEST_NOT_FOUND = "Request not found or expired"

KeyScanner = Callable[[str, str, float], Awaitable[str]]


class _HostRecord(Protocol):
    host: str
    public_key: str


# ── Key scanning ─────────────────────────────────────────────────────


async def scan_host_key(host: str, port: str, timeout: float) -> str:
    """Return the host's first key as a known_hosts line via ssh-keyscan.

    Raises ``ValidationError`` when the host yields no usable key (unreachable,
    unknown, refused). Cancelling the caller kills the scan.
    """
    port_args = ["-p", port] if port and port != "22" else []
    rc, out, err = await run_command(
        ["ssh-keyscan", "-T", str(max(int(timeout), 1)), "-t", "ed25519,rsa,ecdsa", *port_args, host],
        timeout=timeout + 5,
    )
    if rc == 127:
        raise ConfigError("ssh-keyscan is not installed")

    prefixes = (f"{host} ", f"{known_hosts_marker(host, port)} ")
    for line in out.splitlines():
        line = line.strip()
        if line and not line.startswith("#") and line.startswith(prefixes):
            return line
    raise ValidationError(f"No valid host keys found for {host} ({err or f'exit {rc}'})")


def render_known_hosts(records: Iterable[_HostRecord]) -> str:
    """known_hosts content for the given trusted hosts, ordered by host key.

    The host column is rebuilt from the record's host key so non-default
    ports always use the bracketed '[host]:port' form.
    """
    lines = []
    for record in sorted(records, key=lambda r: r.host):
        fields = record.public_key.split()
        if len(fields) < 3:
            logger.warning("Ignoring malformed trusted host entry for %s", record.host)
            continue
        host, port = parse_host_port(record.host)
        lines.append(" ".join([known_hosts_marker(host, port), *fields[1:]]))
    return "\n".join(lines) + "\n" if lines else ""


def _key_type(public_key_line: str) -> str:
    fields = public_key_line.split()
    return fields[1] if len(fields) > 1 else "UNKNOWN"


# ── Gateway ──────────────────────────────────────────────────────────


@dataclass
class _PendingEntry:
    request: PendingVerification
    future: asyncio.Future[bool]


class HostKeyGateway:
    """Owns the trusted-host store, the known_hosts file and pending decisions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        known_hosts_path: Path,
        *,
        timeout: float = 120.0,
        keyscan_timeout: float = 10.0,
        notifier: EventBroadcaster | None = None,
        key_scanner: KeyScanner | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.known_hosts_path = Path(known_hosts_path)
        self.timeout = timeout
        self.keyscan_timeout = keyscan_timeout
        self._notifier = notifier
        self._scan = key_scanner or scan_host_key
        self._pending: dict[str, _PendingEntry] = {}
        logger.info(
            "Host key gateway ready (timeout=%.0fs, known_hosts=%s)", timeout, self.known_hosts_path,
        )

    # ── Startup ──────────────────────────────────────────────────────

    async def initialize(self) -> None:
        self._ensure_known_hosts_file()
        await self.load_from_store()

    def _ensure_known_hosts_file(self) -> None:
        try:
            self.known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            if not self.known_hosts_path.exists():
                fd = os.open(self.known_hosts_path, os.O_WRONLY | os.O_CREAT, 0o600)
                os.close(fd)
                logger.info("Created known_hosts file at %s", self.known_hosts_path)
        except OSError as exc:
            logger.error("Failed to ensure known_hosts file: %s", exc)

    async def load_from_store(self) -> int:
        """Rebuild known_hosts entirely from the trusted-host store.

        Returns the number of hosts written; a store or file failure is
        logged and leaves the previous file in place.
        """
        try:
            records = await self._all_trusted_hosts()
        except StoreError as exc:
            logger.error("Failed to load trusted hosts from store: %s", exc)
            return 0

        content = render_known_hosts(records)
        try:
            self._write_known_hosts(content)
        except OSError as exc:
            logger.error("Failed to write known_hosts: %s", exc)
            return 0
        logger.info("Loaded %d trusted host(s) from store into known_hosts", len(records))
        return len(records)

    def _write_known_hosts(self, content: str) -> None:
        self.known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        tmp = self.known_hosts_path.with_name(f".{self.known_hosts_path.name}.tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        os.replace(tmp, self.known_hosts_path)
        self.known_hosts_path.chmod(0o600)

    def _upsert_known_hosts(self, host: str, public_key_line: str) -> None:
        """Replace the host's line in known_hosts, or add it when absent."""
        marker = known_hosts_marker(*parse_host_port(host))
        try:
            existing = self.known_hosts_path.read_text() if self.known_hosts_path.exists() else ""
            lines = [
                line for line in existing.splitlines()
                if line.strip() and line.split(maxsplit=1)[0] != marker
            ]
            lines.append(" ".join([marker, *public_key_line.split()[1:]]))
            self._write_known_hosts("\n".join(lines) + "\n")
            logger.info("Added host to known_hosts: %s", host)
        except OSError as exc:
            logger.error("Failed to add %s to known_hosts: %s", host, exc)

    # ── Store ────────────────────────────────────────────────────────

    async def _all_trusted_hosts(self) -> list[TrustedHost]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(TrustedHost).order_by(TrustedHost.host))
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    async def _get_trusted_host(self, host: str) -> TrustedHost | None:
        try:
            async with self._session_factory() as db:
                return await db.scalar(select(TrustedHost).where(TrustedHost.host == host))
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    async def _save_trusted_host(self, host: str, public_key_line: str) -> None:
        try:
            async with self._session_factory() as db:
                record = await db.scalar(select(TrustedHost).where(TrustedHost.host == host))
                if record is None:
                    db.add(TrustedHost(host=host, key_type=_key_type(public_key_line), public_key=public_key_line))
                    logger.info("Saved new trusted host: %s", host)
                else:
                    record.key_type = _key_type(public_key_line)
                    record.public_key = public_key_line
                    logger.info("Updated trusted host: %s", host)
                await db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    async def _is_trusted(self, host: str) -> bool:
        try:
            return await self._get_trusted_host(host) is not None
        except StoreError as exc:
            # Store outage: treat as unknown and ask again
            logger.error("Failed to look up trusted host %s: %s", host, exc)
            return False

    async def _persist_trusted_host(self, host: str, public_key_line: str) -> None:
        try:
            await self._save_trusted_host(host, public_key_line)
        except StoreError as exc:
            # key stays in known_hosts until the next rebuild from the store
            logger.error("Failed to save trusted host %s: %s", host, exc)

    async def _trust(self, host: str, public_key_line: str) -> None:
        self._upsert_known_hosts(host, public_key_line)
        await self._persist_trusted_host(host, public_key_line)

    async def list_trusted_hosts(self) -> list[TrustedHost]:
        return await self._all_trusted_hosts()

    async def get_trusted_host(self, remote: str) -> TrustedHost | None:
        conn = parse_ssh_host(remote)
        return await self._get_trusted_host(normalize_host_port(conn.host, conn.port))

    async def remove_trusted_host(self, host: str) -> bool:
        try:
            async with self._session_factory() as db:
                record = await db.scalar(select(TrustedHost).where(TrustedHost.host == host))
                if record is None:
                    return False
                await db.delete(record)
                await db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        logger.info("Removed trusted host: %s", host)
        await self.load_from_store()
        return True

    # ── Verification ─────────────────────────────────────────────────

    async def verify_host_key_before_operation(self, remote: str) -> bool:
        """Return True once the remote's host is trusted, False to abort the operation.

        Trusted hosts return immediately without scanning. Unknown hosts are
        scanned and announced; the call then waits for a decision. A failed
        scan or an unanswered request is a rejection.
        """
        conn = parse_ssh_host(remote)
        host_key = normalize_host_port(conn.host, conn.port)

        if await self._is_trusted(host_key):
            logger.info("Host %s already trusted, skipping verification", host_key)
            return True

        try:
            public_key = await self._scan(conn.host, conn.port, self.keyscan_timeout)
        except (ManagerError, OSError) as exc:
            logger.warning("Failed to fetch host key for %s, rejecting connection: %s", host_key, exc)
            return False
        logger.info("Fetched public key for %s", host_key)

        now = datetime.now(timezone.utc)
        request = PendingVerification(
            request_id=secrets.token_hex(16),
            host=host_key,
            key_type=_key_type(public_key),
            public_key=public_key,
            created_at=now,
            expires_at=now + timedelta(seconds=self.timeout),
        )
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = _PendingEntry(request=request, future=future)

        logger.info("Requesting SSH host key decision %s for host=%s", request.request_id, host_key)
        self._publish(SSH_HOST_KEY_REQUEST, {
            "requestId": request.request_id,
            "host": host_key,
            "keyType": request.key_type,
            "publicKey": public_key,
            "timestamp": int(now.timestamp() * 1000),
            "action": "verify",
        })

        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except TimeoutError:
            if future.done() and not future.cancelled():
                # decided in the same loop turn the deadline fired
                return future.result()
            logger.info("SSH host key request %s timed out, rejecting connection", request.request_id)
            self._publish(SSH_HOST_KEY_RESOLVED, {
                "requestId": request.request_id, "host": host_key, "outcome": "expired",
            })
            return False
        finally:
            self._pending.pop(request.request_id, None)

    async def respond(self, request_id: str, outcome: HostKeyOutcome) -> HostKeyRespondResult:
        """Deliver a human decision; unknown or already-resolved ids are reported, not raised.

        The waiting operation is resolved before anything is awaited, so a
        decision either reaches it or is reported as expired. An accepted key
        is in known_hosts by the time the operation resumes; the store write
        follows.
        """
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return HostKeyRespondResult(success=False, error=REQUEST_NOT_FOUND)

        host = entry.request.host
        accepted = outcome == HostKeyOutcome.ACCEPT
        if accepted:
            self._upsert_known_hosts(host, entry.request.public_key)
        entry.future.set_result(accepted)
        self._publish(SSH_HOST_KEY_RESOLVED, {
            "requestId": request_id, "host": host, "outcome": "accepted" if accepted else "rejected",
        })

        if accepted:
            await self._persist_trusted_host(host, entry.request.public_key)
            logger.info("Accepted SSH host key for %s", host)
        else:
            logger.info("Rejected SSH host key for %s", host)
        return HostKeyRespondResult(success=True)

    async def auto_accept_host_key(self, remote: str) -> None:
        """Trust the remote's current host key without asking (operator-initiated)."""
        conn = parse_ssh_host(remote)
        host_key = normalize_host_port(conn.host, conn.port)
        if await self._is_trusted(host_key):
            logger.info("Host %s already trusted, skipping auto-accept", host_key)
            return

        public_key = await self._scan(conn.host, conn.port, self.keyscan_timeout)
        await self._trust(host_key, public_key)
        logger.info("Auto-accepted SSH host key for %s", host_key)

    # ── Introspection ────────────────────────────────────────────────

    def get_pending_count(self) -> int:
        return len(self._pending)

    def pending_requests(self) -> list[PendingVerification]:
        return [entry.request for entry in self._pending.values()]

    def get_known_hosts_path(self) -> Path:
        return self.known_hosts_path

    def get_env(self) -> dict[str, str]:
        return {"KNOWN_HOSTS_PATH": str(self.known_hosts_path)}

    async def close(self) -> None:
        """Resolve every outstanding request as expired (shutdown)."""
        for request_id, entry in list(self._pending.items()):
            if not entry.future.done():
                entry.future.set_result(False)
                self._publish(SSH_HOST_KEY_RESOLVED, {
                    "requestId": request_id, "host": entry.request.host, "outcome": "expired",
                })
        self._pending.clear()

    def _publish(self, event_type: str, payload: dict) -> None:
        if self._notifier is not None:
            self._notifier.publish(event_type, payload)
