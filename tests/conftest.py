"""Shared pytest fixtures for storeproxy tests.

A single FastAPI app is created per test session. The lifespan hook does
not run under ASGITransport, so each test installs a fresh in-memory storage
backend on ``app.state`` itself.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from storeproxy.config import AuthConfig, ServerConfig, StorageConfig, StoreProxyConfig
from storeproxy.server import create_app
from storeproxy.storage.memory import MemoryStorageBackend

TEST_TOKEN = "test-token"


@pytest.fixture(scope="session")
def config() -> StoreProxyConfig:
    """Test config: memory backend, known token, metrics and health checks off."""
    return StoreProxyConfig(
        server=ServerConfig(host="127.0.0.1", port=8790),
        auth=AuthConfig(token=TEST_TOKEN),
        storage=StorageConfig(backend="memory"),
    )


@pytest.fixture(scope="session")
def app(config: StoreProxyConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
def storage() -> MemoryStorageBackend:
    """A fresh, empty in-memory bucket."""
    return MemoryStorageBackend()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Headers that satisfy the token predicate."""
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture
async def client(app, storage) -> AsyncClient:
    """Async test client bound to the session app and a fresh bucket."""
    old_storage = getattr(app.state, "storage", None)
    app.state.storage = storage

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.state.storage = old_storage
