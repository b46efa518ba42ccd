from agent_manager.models.server_config import ServerConfig
from agent_manager.models.trusted_host import TrustedHost
from agent_manager.models.user_settings import UserSettings

__all__ = ["ServerConfig", "TrustedHost", "UserSettings"]
