"""Agent server supervision — spawn, health, reload, restart and recovery.

One ``ServerSupervisor`` owns the single server process bound to the
configured port. Every lifecycle operation holds an internal lock, so
concurrent start / restart / reload requests are serialised instead of
racing spawns on the same port.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable
from pathlib import Path

import httpx

from agent_manager.config import Settings
from agent_manager.errors import HealthTimeoutError, ProcessError
from agent_manager.schemas.server import ServerState, ServerStatus
from agent_manager.services.events import SERVER_STATE_CHANGED, EventBroadcaster
from agent_manager.services.server_env import EnvProvider
from agent_manager.services.ssh_keys import SSHKeyManager
from agent_manager.utils.process import run_command
from agent_manager.utils.versions import compare_versions, parse_version

logger = logging.getLogger(__name__)

HttpClientFactory = Callable[[], httpx.AsyncClient]


def _exit_reason(code: int) -> str:
    if code < 0:
        try:
            return f"Process exited with signal {signal.Signals(-code).name}"
        except ValueError:
            return f"Process exited with signal {-code}"
    return f"Process exited with code {code}"


class ServerSupervisor:
    """Lifecycle owner of the external agent server process."""

    def __init__(
        self,
        settings: Settings,
        *,
        env_provider: EnvProvider | None = None,
        key_manager: SSHKeyManager | None = None,
        notifier: EventBroadcaster | None = None,
        http_client_factory: HttpClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self._env_provider = env_provider
        self._key_manager = key_manager
        self._notifier = notifier
        self._http_client_factory = http_client_factory

        self._lock = asyncio.Lock()
        self.state = ServerState.STOPPED
        self._process: asyncio.subprocess.Process | None = None
        self._pid: int | None = None
        self._owns_process = False
        self._stopping = False
        self._version: str | None = None
        self._last_startup_error: str | None = None
        self._output_tail = bytearray()
        self._reader_task: asyncio.Task | None = None
        self._watcher_task: asyncio.Task | None = None

    # ── Introspection ────────────────────────────────────────────────

    @property
    def port(self) -> int:
        return self.settings.server_port

    @property
    def pid(self) -> int | None:
        return self._pid

    def status(self) -> ServerStatus:
        return ServerStatus(
            state=self.state,
            pid=self._pid,
            port=self.port,
            version=self._version,
            min_version=self.settings.min_server_version,
            version_supported=self.is_version_supported(),
            last_startup_error=self._last_startup_error,
        )

    def get_version(self) -> str | None:
        return self._version

    def is_version_supported(self) -> bool:
        if not self._version:
            return False
        return compare_versions(self._version, self.settings.min_server_version) >= 0

    def get_last_startup_error(self) -> str | None:
        return self._last_startup_error

    def clear_startup_error(self) -> None:
        self._last_startup_error = None

    def get_output_tail(self) -> str:
        return self._output_tail.decode(errors="replace")

    def _set_state(self, state: ServerState) -> None:
        if state == self.state:
            return
        logger.info("Server state %s → %s", self.state.value, state.value)
        self.state = state
        if self._notifier is not None:
            self._notifier.publish(SERVER_STATE_CHANGED, {"state": state.value, "pid": self._pid})

    def _record_failure(self, message: str, tail: str = "") -> None:
        self._last_startup_error = f"{message}\n{tail}".strip() if tail else message

    # ── Probes ───────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        if self._http_client_factory is not None:
            return self._http_client_factory()
        return httpx.AsyncClient(
            base_url=self.settings.server_url, timeout=self.settings.health_probe_timeout,
        )

    async def check_health(self) -> bool:
        """Single liveness probe against the server's health endpoint."""
        try:
            async with self._client() as client:
                resp = await client.get(
                    self.settings.health_path, timeout=self.settings.health_probe_timeout,
                )
                return resp.is_success
        except httpx.HTTPError:
            return False

    async def fetch_version(self) -> str | None:
        rc, out, err = await run_command([self.settings.server_command, "--version"], timeout=10)
        version = parse_version(f"{out}\n{err}") if rc == 0 else None
        if version:
            self._version = version
        else:
            logger.warning("Failed to get server version (exit %d)", rc)
        return version

    async def _check_version(self) -> None:
        version = await self.fetch_version()
        if not version:
            return
        logger.info("Server version: %s", version)
        if not self.is_version_supported():
            logger.warning(
                "Server version %s is below minimum supported version %s; "
                "some features may not work correctly",
                version, self.settings.min_server_version,
            )

    async def find_processes_by_port(self, port: int) -> list[int]:
        """PIDs listening on ``port`` (empty when lsof is unavailable)."""
        rc, out, _ = await run_command(["lsof", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"], timeout=5)
        if rc != 0:
            return []
        pids = {int(line) for line in out.split() if line.strip().isdigit()}
        pids.discard(os.getpid())
        return sorted(pids)

    # ── Process output ───────────────────────────────────────────────

    def _append_output(self, chunk: bytes) -> None:
        self._output_tail.extend(chunk)
        overflow = len(self._output_tail) - self.settings.startup_log_limit
        if overflow > 0:
            del self._output_tail[:overflow]

    async def _capture_output(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(4096)
            if not chunk:
                break
            self._append_output(chunk)

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self._reader_task is not None:
            await asyncio.wait([self._reader_task], timeout=1.0)
        if self._process is not proc or self._stopping:
            return

        reason = _exit_reason(code)
        logger.warning("Server process %d: %s", proc.pid, reason)
        self._record_failure(reason, self.get_output_tail())
        if self.state == ServerState.HEALTHY:
            self._set_state(ServerState.UNHEALTHY)

    # ── Start ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the server (no-op if already healthy); raises ``ProcessError`` on failure."""
        async with self._lock:
            await self._start_locked()

    async def _start_locked(self) -> None:
        if self.state == ServerState.HEALTHY:
            logger.info("Server already running and healthy")
            return
        self._set_state(ServerState.STARTING)

        if await self._handle_existing_listener():
            return

        try:
            overlay = await self._env_provider() if self._env_provider else {}
        except Exception as exc:
            self._record_failure(f"Failed to build server environment: {exc}")
            self._set_state(ServerState.FAILED)
            raise ProcessError(self._last_startup_error or str(exc)) from exc

        env = os.environ.copy()
        env.update(overlay)
        cwd = self.settings.workspace_dir
        cwd.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.settings.server_command, "serve",
            "--port", str(self.port),
            "--hostname", self.settings.server_host,
        ]

        logger.info("Starting server: %s (cwd=%s)", " ".join(cmd), cwd)
        self._output_tail.clear()
        self._last_startup_error = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                env=env,
                cwd=str(cwd),
                start_new_session=True,  # own process group, killed as a whole
            )
        except OSError as exc:
            self._record_failure(f"Failed to spawn {cmd[0]}: {exc}")
            self._set_state(ServerState.FAILED)
            raise ProcessError(self._last_startup_error or str(exc)) from exc

        self._process = proc
        self._pid = proc.pid
        self._owns_process = True
        self._reader_task = asyncio.create_task(self._capture_output(proc))
        self._watcher_task = asyncio.create_task(self._watch_exit(proc))
        logger.info("Server started with PID %d", proc.pid)

        if not await self._wait_for_health(proc):
            error_cls = ProcessError
            if proc.returncode is None:
                error_cls = HealthTimeoutError
                message = (
                    f"Server failed to become healthy within {self.settings.health_timeout:g}s"
                )
                await self._terminate_owned(proc)
            else:
                message = _exit_reason(proc.returncode)
            await asyncio.wait([self._reader_task], timeout=1.0)
            tail = self.get_output_tail()
            self._record_failure(message, tail)
            self._clear_process()
            self._set_state(ServerState.FAILED)
            logger.error("Server failed to start: %s", self._last_startup_error)
            raise error_cls(self._last_startup_error or "Server failed to start", output=tail)

        self._last_startup_error = None
        self._set_state(ServerState.HEALTHY)
        logger.info("Server is healthy")
        await self._check_version()

    async def _handle_existing_listener(self) -> bool:
        """Deal with a process we did not spawn holding the port.

        Returns True when a healthy one was adopted instead of spawning.
        """
        existing = await self.find_processes_by_port(self.port)
        if not existing:
            return False

        logger.info("Server already listening on port %d (pids=%s)", self.port, existing)
        if await self.check_health():
            if self.settings.is_production:
                self._process = None
                self._pid = existing[0]
                self._owns_process = False
                self._last_startup_error = None
                self._set_state(ServerState.HEALTHY)
                await self._check_version()
                return True
            logger.warning("Development mode: killing existing server for hot reload")
            self._kill_pids(existing)
            await asyncio.sleep(self.settings.stop_grace_period)
        else:
            logger.warning("Killing unhealthy server on port %d", self.port)
            self._kill_pids(existing)
            await asyncio.sleep(self.settings.restart_settle_delay)
        return False

    @staticmethod
    def _kill_pids(pids: list[int]) -> None:
        for pid in pids:
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError as exc:
                logger.warning("Failed to kill process %d: %s", pid, exc)

    async def _wait_for_health(self, proc: asyncio.subprocess.Process) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.health_timeout
        while loop.time() < deadline:
            if proc.returncode is not None:
                return False
            if await self.check_health():
                return True
            await asyncio.sleep(self.settings.health_poll_interval)
        return False

    # ── Stop ─────────────────────────────────────────────────────────

    async def stop(self) -> None:
        """SIGTERM, grace period, SIGKILL; then remove persistent key material."""
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        pid = self._pid
        if pid is not None:
            logger.info("Stopping server (pid=%d)", pid)
            self._stopping = True
            try:
                self._signal(pid, signal.SIGTERM)
                if not await self._wait_exit(pid, self.settings.stop_grace_period):
                    logger.info("Server did not exit after SIGTERM, sending SIGKILL")
                    self._signal(pid, signal.SIGKILL)
                    await self._wait_exit(pid, self.settings.stop_grace_period)
            finally:
                self._stopping = False
            self._clear_process()

        if self._key_manager is not None:
            self._key_manager.cleanup_persistent()
        self._set_state(ServerState.STOPPED)

    def _signal(self, pid: int, sig: signal.Signals) -> None:
        try:
            if self._owns_process:
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            pass  # already gone
        except PermissionError as exc:
            logger.warning("Failed to send %s to %d: %s", sig.name, pid, exc)

    def _is_alive(self, pid: int) -> bool:
        if self._owns_process and self._process is not None:
            return self._process.returncode is None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def _wait_exit(self, pid: int, timeout: float) -> bool:
        if self._owns_process and self._process is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=timeout)
            except TimeoutError:
                return False
            return True
        await asyncio.sleep(timeout)
        return not self._is_alive(pid)

    async def _terminate_owned(self, proc: asyncio.subprocess.Process) -> None:
        self._stopping = True
        try:
            self._signal(proc.pid, signal.SIGKILL)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.settings.stop_grace_period)
            except TimeoutError:
                logger.warning("Server process %d did not exit after SIGKILL", proc.pid)
        finally:
            self._stopping = False

    def _clear_process(self) -> None:
        for task in (self._watcher_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
        self._watcher_task = None
        self._reader_task = None
        self._process = None
        self._pid = None
        self._owns_process = False

    # ── Restart / reload / reset ─────────────────────────────────────

    async def restart(self) -> None:
        """Full process replacement — used when credentials or identity change."""
        async with self._lock:
            await self._restart_locked()

    async def _restart_locked(self) -> None:
        logger.info("Restarting server")
        self._set_state(ServerState.RESTARTING)
        await self._stop_locked()
        await asyncio.sleep(self.settings.restart_settle_delay)
        await self._start_locked()

    async def reload_config(self) -> None:
        """Hot-reload the live configuration in place; raises ``ProcessError`` if unhealthy after."""
        async with self._lock:
            await self._reload_locked()

    async def _reload_locked(self) -> None:
        path = self.settings.config_api_path
        try:
            async with self._client() as client:
                resp = await client.get(path)
                resp.raise_for_status()
                live_config = resp.json()
                resp = await client.patch(path, json=live_config)
                resp.raise_for_status()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProcessError(f"Config reload failed: {exc}") from exc

        if not await self.check_health():
            self._set_state(ServerState.UNHEALTHY)
            raise ProcessError("Server is unhealthy after config reload")
        self._set_state(ServerState.HEALTHY)
        logger.info("Server configuration reloaded")

    async def hard_reset(self, config_path: Path | None = None) -> None:
        """Stop, delete the on-disk config, and start on whatever defaults remain."""
        async with self._lock:
            await self._hard_reset_locked(config_path)

    async def _hard_reset_locked(self, config_path: Path | None = None) -> None:
        path = config_path or self.settings.server_config_path
        await self._stop_locked()
        try:
            path.unlink(missing_ok=True)
            logger.info("Deleted server config %s", path)
        except OSError as exc:
            logger.warning("Failed to delete server config %s: %s", path, exc)
        await asyncio.sleep(self.settings.restart_settle_delay)
        await self._start_locked()

    async def reload_with_fallback(self) -> str:
        """Reload, else restart, else hard reset. Returns the tier that worked."""
        async with self._lock:
            try:
                await self._reload_locked()
                return "reload"
            except ProcessError as exc:
                logger.warning("Config reload failed, falling back to restart: %s", exc)
                self._record_failure(str(exc))
            return await self._restart_or_reset_locked()

    async def restart_with_fallback(self) -> str:
        """Restart, else hard reset. Returns the tier that worked."""
        async with self._lock:
            return await self._restart_or_reset_locked()

    async def _restart_or_reset_locked(self) -> str:
        try:
            await self._restart_locked()
            return "restart"
        except ProcessError as exc:
            logger.warning("Restart failed, falling back to config reset: %s", exc)

        try:
            await self._hard_reset_locked()
            return "reset"
        except ProcessError as exc:
            self._set_state(ServerState.FAILED)
            if not self._last_startup_error:
                self._record_failure(str(exc), exc.output)
            logger.error("Server recovery exhausted: %s", exc)
            raise
