"""FastAPI application entrypoint."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_manager.config import settings
from agent_manager.database import async_session, init_db
from agent_manager.dependencies import gateway, key_manager, supervisor
from agent_manager.errors import ProcessError
from agent_manager.routers import events, server, settings as settings_router, ssh
from agent_manager.services import settings_service

# ── Logging setup ────────────────────────────────────────────────────
_log_level = os.environ.get("AGENT_MANAGER_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()
    await gateway.initialize()

    async with async_session() as db:
        await settings_service.write_default_config_to_disk(db, settings.server_config_path)

    if settings.auto_start:
        logger.info("Auto-starting agent server …")
        try:
            await supervisor.start()
        except ProcessError as exc:
            # Keep serving; details on /api/server/startup-error
            logger.error("Agent server auto-start failed: %s", exc)
        else:
            async with async_session() as db:
                await settings_service.record_healthy_config(db, supervisor)

    yield

    # Shutdown
    await gateway.close()
    if settings.auto_stop:
        logger.info("Stopping agent server …")
        await supervisor.stop()
        key_manager.cleanup_all()


app = FastAPI(
    title="Agent Manager",
    description="Supervises a coding-agent server and the git credentials and SSH trust it runs with",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(server.router, prefix="/api/server", tags=["server"])
app.include_router(ssh.router, prefix="/api/ssh", tags=["ssh"])
app.include_router(settings_router.router, prefix="/api/settings", tags=["settings"])
app.include_router(events.router, prefix="/api", tags=["events"])


@app.get("/health")
async def health():
    status = supervisor.status()
    return {
        "status": "ok",
        "service": "agent-manager",
        "server": {
            "state": status.state.value,
            "port": status.port,
            "version": status.version,
        },
        "pending_host_keys": gateway.get_pending_count(),
    }
