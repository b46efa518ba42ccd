"""User settings routes — git credentials, identity and server configs."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agent_manager.config import settings
from agent_manager.database import get_db
from agent_manager.dependencies import get_supervisor, http_error
from agent_manager.errors import ManagerError, ProcessError
from agent_manager.models.server_config import ServerConfig
from agent_manager.schemas.settings import (
    ServerConfigResponse,
    ServerConfigUpsert,
    SettingsResponse,
    SettingsUpdate,
)
from agent_manager.services import settings_service
from agent_manager.services.settings_service import DEFAULT_USER_ID
from agent_manager.services.supervisor import ServerSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()


def _config_response(config: ServerConfig) -> ServerConfigResponse:
    return ServerConfigResponse(
        name=config.name, content=json.loads(config.content), is_default=config.is_default,
    )


@router.get("/", response_model=SettingsResponse)
async def get_settings(db: AsyncSession = Depends(get_db)):
    row = await settings_service.get_settings(db, DEFAULT_USER_ID)
    return settings_service.to_response(row)


@router.patch("/", response_model=SettingsResponse)
async def update_settings(
    body: SettingsUpdate,
    db: AsyncSession = Depends(get_db),
    supervisor: ServerSupervisor = Depends(get_supervisor),
):
    """Persist the update; credential or identity changes restart the server before responding."""
    try:
        row, creds_changed, identity_changed = await settings_service.update_settings(
            db, DEFAULT_USER_ID, body,
        )
    except ManagerError as exc:
        raise http_error(exc) from exc

    restarted = False
    if creds_changed or identity_changed:
        try:
            await settings_service.apply_git_settings_change(supervisor)
            restarted = True
        except ProcessError as exc:
            # Settings stay saved; details on /api/server/startup-error
            logger.error("Server restart after settings change failed: %s", exc)
    return settings_service.to_response(row, server_restarted=restarted)


@router.get("/configs", response_model=list[ServerConfigResponse])
async def list_configs(db: AsyncSession = Depends(get_db)):
    return [_config_response(c) for c in await settings_service.list_configs(db, DEFAULT_USER_ID)]


@router.put("/configs/{name}", response_model=ServerConfigResponse)
async def upsert_config(
    name: str,
    body: ServerConfigUpsert,
    db: AsyncSession = Depends(get_db),
    supervisor: ServerSupervisor = Depends(get_supervisor),
):
    """Save a named config; saving the default applies it to the running server."""
    config = await settings_service.upsert_config(
        db, DEFAULT_USER_ID, name, body.content, is_default=body.is_default,
    )
    if config.is_default:
        await _apply_default(db, supervisor)
    return _config_response(config)


@router.post("/configs/{name}/default", response_model=ServerConfigResponse)
async def set_default_config(
    name: str,
    db: AsyncSession = Depends(get_db),
    supervisor: ServerSupervisor = Depends(get_supervisor),
):
    try:
        config = await settings_service.set_default_config(db, DEFAULT_USER_ID, name)
    except ManagerError as exc:
        raise http_error(exc) from exc
    await _apply_default(db, supervisor)
    return _config_response(config)


async def _apply_default(db: AsyncSession, supervisor: ServerSupervisor) -> None:
    await settings_service.write_default_config_to_disk(db, settings.server_config_path)
    try:
        tier = await supervisor.reload_with_fallback()
    except ProcessError as exc:
        logger.error("Applying server config failed: %s", exc)
        return
    logger.info("Server config applied via %s", tier)
    await settings_service.record_healthy_config(db, supervisor)
