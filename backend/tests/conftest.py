import os

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

os.environ["DATABASE_URL"] = "sqlite:///./test_mcp_relay.db"
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

from mcp_relay.config.settings import AppSettings, get_settings
from mcp_relay.core.container import AppContainer, set_container
from mcp_relay.db.base import Base
from mcp_relay.db.models.mcp_log import MCPLog
from mcp_relay.db.models.mcp_server import MCPServer
from mcp_relay.db.session import get_engine, reset_db_state
from mcp_relay.main import create_app
from mcp_relay.mcp.config_store import SqlServerConfigStore
from mcp_relay.mcp.connection_manager import MCPConnectionManager
from tests.mocks.fake_clock import FakeClock
from tests.mocks.fake_mcp_server import FakeTransportFactory
from tests.mocks.memory_store import InMemoryConfigStore


@pytest.fixture(scope="session", autouse=True)
def test_env() -> None:
    get_settings.cache_clear()
    reset_db_state()
    engine = get_engine()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture
def clean_db() -> None:
    with get_engine().begin() as conn:
        conn.execute(MCPLog.__table__.delete())
        conn.execute(MCPServer.__table__.delete())


@pytest.fixture
def test_settings() -> AppSettings:
    # Health checks are driven explicitly through check_all() in tests.
    return AppSettings(
        mcp_health_check_interval_seconds=3600,
        mcp_liveness_timeout_seconds=0.2,
        mcp_shutdown_timeout_seconds=1.0,
    )


@pytest.fixture
def fake_servers() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryConfigStore:
    return InMemoryConfigStore()


@pytest.fixture
def make_manager(memory_store, fake_servers, fake_clock, test_settings):
    """Build a manager inside the running event loop of the calling test."""

    def _make(store=None) -> MCPConnectionManager:
        return MCPConnectionManager(
            store or memory_store,
            transport_factory=fake_servers,
            scheduler=fake_clock,
            settings=test_settings,
        )

    return _make


@pytest.fixture
def client(clean_db, fake_servers, fake_clock, test_settings):
    store = SqlServerConfigStore()
    manager = MCPConnectionManager(
        store, transport_factory=fake_servers, scheduler=fake_clock, settings=test_settings
    )
    set_container(AppContainer(config_store=store, mcp_connection_manager=manager))
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
    set_container(None)
