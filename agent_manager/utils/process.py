"""Async subprocess helpers shared by the supervisor and the SSH services."""

from __future__ import annotations

import asyncio
import os


async def run_command(
    cmd: list[str],
    *,
    timeout: float = 120.0,
    env_extra: dict[str, str] | None = None,
    cwd: str | os.PathLike | None = None,
) -> tuple[int, str, str]:
    """Run a subprocess and return (returncode, stdout, stderr).

    The child is killed on timeout and when the awaiting task is cancelled.
    """
    env = os.environ.copy()
    if env_extra:
        env.update(env_extra)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env=env,
            cwd=cwd,
        )
    except FileNotFoundError:
        return (127, "", f"Command not found: {cmd[0]}")

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=timeout,
        )
    except TimeoutError:
        _kill_quietly(proc)
        await proc.wait()
        return (1, "", f"Command timed out after {timeout}s")
    except asyncio.CancelledError:
        _kill_quietly(proc)
        raise

    return (
        proc.returncode or 0,
        stdout_bytes.decode(errors="replace").strip(),
        stderr_bytes.decode(errors="replace").strip(),
    )


def _kill_quietly(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
