"""Supervised agent server control routes.

Start, stop, restart and reload report failures in an ``ActionResult``
(with the captured output tail) rather than as HTTP errors, so the UI can
show what the server printed before it died.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agent_manager.config import settings
from agent_manager.database import get_db
from agent_manager.dependencies import get_supervisor, http_error
from agent_manager.errors import ManagerError, ProcessError
from agent_manager.schemas.server import (
    ActionResult,
    HealthResult,
    RollbackResult,
    ServerStatus,
    StartupErrorResponse,
)
from agent_manager.services import settings_service
from agent_manager.services.supervisor import ServerSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Status ───────────────────────────────────────────────────────────


@router.get("/status", response_model=ServerStatus)
async def get_status(supervisor: ServerSupervisor = Depends(get_supervisor)):
    return supervisor.status()


@router.get("/health", response_model=HealthResult)
async def get_health(supervisor: ServerSupervisor = Depends(get_supervisor)):
    """Probe the server's health endpoint right now."""
    return HealthResult(healthy=await supervisor.check_health(), state=supervisor.state)


@router.get("/startup-error", response_model=StartupErrorResponse)
async def get_startup_error(supervisor: ServerSupervisor = Depends(get_supervisor)):
    return StartupErrorResponse(error=supervisor.get_last_startup_error())


@router.delete("/startup-error", response_model=StartupErrorResponse)
async def clear_startup_error(supervisor: ServerSupervisor = Depends(get_supervisor)):
    supervisor.clear_startup_error()
    return StartupErrorResponse(error=None)


# ── Control ──────────────────────────────────────────────────────────


@router.post("/start", response_model=ActionResult)
async def start_server(
    supervisor: ServerSupervisor = Depends(get_supervisor),
    db: AsyncSession = Depends(get_db),
):
    try:
        await supervisor.start()
    except ProcessError as exc:
        return ActionResult(success=False, message=str(exc).splitlines()[0], output=exc.output)
    await settings_service.record_healthy_config(db, supervisor)
    return ActionResult(success=True, message=f"Server running on port {supervisor.port}")


@router.post("/stop", response_model=ActionResult)
async def stop_server(supervisor: ServerSupervisor = Depends(get_supervisor)):
    await supervisor.stop()
    return ActionResult(success=True, message="Server stopped")


@router.post("/restart", response_model=ActionResult)
async def restart_server(
    supervisor: ServerSupervisor = Depends(get_supervisor),
    db: AsyncSession = Depends(get_db),
):
    try:
        await supervisor.restart()
    except ProcessError as exc:
        return ActionResult(success=False, message=str(exc).splitlines()[0], output=exc.output)
    await settings_service.record_healthy_config(db, supervisor)
    return ActionResult(success=True, message="Server restarted")


@router.post("/reload", response_model=ActionResult)
async def reload_server(
    supervisor: ServerSupervisor = Depends(get_supervisor),
    db: AsyncSession = Depends(get_db),
):
    """Write the default config to disk and apply it, escalating to restart or reset."""
    await settings_service.write_default_config_to_disk(db, settings.server_config_path)
    try:
        tier = await supervisor.reload_with_fallback()
    except ProcessError as exc:
        return ActionResult(success=False, message=str(exc).splitlines()[0], output=exc.output)
    await settings_service.record_healthy_config(db, supervisor)
    return ActionResult(success=True, message=f"Configuration applied via {tier}")


@router.post("/rollback", response_model=RollbackResult)
async def rollback_config(
    supervisor: ServerSupervisor = Depends(get_supervisor),
    db: AsyncSession = Depends(get_db),
):
    """Return to the last config the server was healthy with."""
    try:
        return await settings_service.rollback_server_config(
            db, supervisor, settings.server_config_path,
        )
    except ProcessError as exc:
        logger.error("Rollback failed: %s", exc)
        return RollbackResult(success=False, message=str(exc).splitlines()[0])
    except ManagerError as exc:
        raise http_error(exc) from exc
