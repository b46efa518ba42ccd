"""Process-wide service instances and their FastAPI dependency accessors."""

from fastapi import HTTPException

from agent_manager.config import settings
from agent_manager.database import async_session
from agent_manager.errors import ManagerError
from agent_manager.services.events import broadcaster
from agent_manager.services.host_keys import HostKeyGateway
from agent_manager.services.server_env import make_env_provider
from agent_manager.services.ssh_keys import SSHKeyManager
from agent_manager.services.supervisor import ServerSupervisor

key_manager = SSHKeyManager(settings.ssh_keys_dir, settings.ssh_config_path)

gateway = HostKeyGateway(
    async_session,
    settings.known_hosts_path,
    timeout=settings.host_key_timeout,
    keyscan_timeout=settings.keyscan_timeout,
    notifier=broadcaster,
)

supervisor = ServerSupervisor(
    settings,
    env_provider=make_env_provider(async_session, settings=settings, key_manager=key_manager),
    key_manager=key_manager,
    notifier=broadcaster,
)


def get_supervisor() -> ServerSupervisor:
    return supervisor


def get_gateway() -> HostKeyGateway:
    return gateway


def get_key_manager() -> SSHKeyManager:
    return key_manager


def http_error(exc: ManagerError) -> HTTPException:
    """Translate a typed service error into an HTTP error carrying its payload."""
    return HTTPException(status_code=exc.http_status, detail=exc.payload())
