"""Shared fixtures — in-memory database, isolated workspace, stubbed supervisor."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import agent_manager.models  # noqa: F401  (register tables on Base.metadata)
from agent_manager.config import Settings, settings
from agent_manager.database import Base, get_db
from agent_manager.dependencies import get_gateway, get_key_manager, get_supervisor
from agent_manager.main import app
from agent_manager.schemas.server import ServerState, ServerStatus
from agent_manager.services.events import EventBroadcaster
from agent_manager.services.host_keys import HostKeyGateway
from agent_manager.services.ssh_keys import SSHKeyManager
from agent_manager.services.supervisor import ServerSupervisor

TEST_SECRET = "test-secret-key-for-encryption"


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    """Point the global settings at a throwaway workspace with a known secret."""
    monkeypatch.setattr(settings, "workspace_dir", tmp_path / "workspace")
    monkeypatch.setattr(settings, "secret_key", TEST_SECRET)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Fast supervisor timings for process tests."""
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET,
        workspace_dir=tmp_path / "workspace",
        health_timeout=0.5,
        health_poll_interval=0.01,
        stop_grace_period=0.05,
        restart_settle_delay=0,
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def key_scanner() -> AsyncMock:
    return AsyncMock(return_value="example.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExampleKey")


@pytest_asyncio.fixture
async def gateway(session_factory, tmp_path, notifier, key_scanner):
    gw = HostKeyGateway(
        session_factory,
        tmp_path / "config" / "known_hosts",
        timeout=5,
        keyscan_timeout=1,
        notifier=notifier,
        key_scanner=key_scanner,
    )
    await gw.initialize()
    yield gw
    await gw.close()


@pytest.fixture
def ssh_key_manager(tmp_path) -> SSHKeyManager:
    return SSHKeyManager(
        tmp_path / ".ssh-keys", tmp_path / "config" / "ssh_config", passphrase_stripper=AsyncMock(),
    )


@pytest.fixture
def fake_supervisor() -> MagicMock:
    sup = MagicMock(spec=ServerSupervisor)
    sup.state = ServerState.HEALTHY
    sup.port = 5551
    sup.status.return_value = ServerStatus(state=ServerState.HEALTHY, pid=1234, port=5551)
    sup.get_last_startup_error.return_value = None
    sup.check_health.return_value = True
    sup.reload_with_fallback.return_value = "reload"
    sup.restart_with_fallback.return_value = "restart"
    return sup


@pytest_asyncio.fixture
async def client(session_factory, gateway, fake_supervisor, ssh_key_manager):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_supervisor] = lambda: fake_supervisor
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_key_manager] = lambda: ssh_key_manager
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
