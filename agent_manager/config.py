"""Agent manager configuration — loaded from environment / .env file."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="AGENT_MANAGER_", extra="ignore")

    env: str = "development"
    secret_key: str = ""
    database_url: str = "sqlite+aiosqlite:///./agent_manager.db"

    # Workspace shared with the supervised server
    workspace_dir: Path = Path("workspace")

    # Supervised agent server
    server_command: str = "opencode"
    server_host: str = "127.0.0.1"
    server_port: int = 5551
    health_path: str = "/doc"
    config_api_path: str = "/config"
    min_server_version: str = "1.0.137"

    # Supervisor timings (seconds)
    health_timeout: float = 30.0
    health_poll_interval: float = 0.5
    health_probe_timeout: float = 3.0
    stop_grace_period: float = 2.0
    restart_settle_delay: float = 1.0
    startup_log_limit: int = 10 * 1024

    # SSH host trust
    host_key_timeout: float = 120.0
    keyscan_timeout: float = 10.0

    github_api_url: str = "https://api.github.com"

    # Lifespan management
    auto_start: bool = True  # start the server on FastAPI startup
    auto_stop: bool = True  # stop the server on FastAPI shutdown

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def config_dir(self) -> Path:
        return self.workspace_dir / "config"

    @property
    def known_hosts_path(self) -> Path:
        return self.config_dir / "known_hosts"

    @property
    def ssh_config_path(self) -> Path:
        return self.config_dir / "ssh_config"

    @property
    def ssh_keys_dir(self) -> Path:
        return self.workspace_dir / ".ssh-keys"

    @property
    def server_config_path(self) -> Path:
        return self.config_dir / "opencode.json"

    @property
    def server_state_dir(self) -> Path:
        return self.workspace_dir / ".opencode" / "state"

    @property
    def server_url(self) -> str:
        # Server binds to 0.0.0.0 but we connect via localhost
        host = "127.0.0.1" if self.server_host == "0.0.0.0" else self.server_host
        return f"http://{host}:{self.server_port}"


settings = Settings()
