"""Tests for the application factory, middleware and health checks."""

import logging
import re

import pytest
from httpx import ASGITransport, AsyncClient

from storeproxy.config import (
    ENV_OVERRIDES,
    ObservabilityConfig,
    StorageConfig,
    StoreProxyConfig,
)
from storeproxy.logging_config import request_id_var
from storeproxy.server import _create_storage_backend, create_app, create_app_from_env
from storeproxy.storage.aws import AWSGatewayBackend
from storeproxy.storage.backend import PART_SIZE, QUEUE_SIZE, StorageError
from storeproxy.storage.memory import MemoryStorageBackend


@pytest.fixture
def clean_env(monkeypatch):
    """Unset every STOREPROXY_* variable for the test."""
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCommonHeaders:
    """Every response carries a request id and the Server header."""

    async def test_request_id(self, client, auth_headers):
        resp = await client.put("/f.txt", content=b"x", headers=auth_headers)
        assert re.fullmatch(r"[0-9A-F]{16}", resp.headers["x-request-id"])

    async def test_request_ids_differ(self, client):
        first = await client.get("/a")
        second = await client.get("/a")
        assert first.headers["x-request-id"] != second.headers["x-request-id"]

    async def test_headers_on_errors(self, client):
        for resp in (
            await client.get("/missing"),
            await client.put("/f.txt", content=b"x"),
            await client.post("/f.txt"),
        ):
            assert resp.headers["server"] == "storeproxy"
            assert "x-request-id" in resp.headers

    async def test_no_openapi_routes(self, client):
        assert (await client.get("/docs")).status_code == 404
        assert (await client.get("/openapi.json")).status_code == 404

    async def test_request_logged(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="storeproxy.server"):
            await client.get("/missing.txt")
        record = next(r for r in caplog.records if r.name == "storeproxy.server")
        assert record.method == "GET"
        assert record.status == 404
        assert record.path == "/missing.txt"

    async def test_request_id_while_body_streams(self, app, auth_headers):
        seen = []

        class RecordingStorage(MemoryStorageBackend):
            async def get(self, key):
                obj = await super().get(key)
                inner = obj.body

                async def body():
                    async for chunk in inner:
                        seen.append(request_id_var.get())
                        yield chunk

                obj.body = body()
                return obj

        old_storage = getattr(app.state, "storage", None)
        app.state.storage = RecordingStorage()
        transport = ASGITransport(app=app)
        try:
            async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
                await ac.put("/f.txt", content=b"streamed", headers=auth_headers)
                resp = await ac.get("/f.txt", headers=auth_headers)
        finally:
            app.state.storage = old_storage
        assert resp.content == b"streamed"
        assert seen == [resp.headers["x-request-id"]]
        assert request_id_var.get() == "-"


class TestUnhandledErrors:
    """Unexpected exceptions become a plain 500."""

    async def test_internal_error(self, app, auth_headers):
        class BrokenStorage(MemoryStorageBackend):
            async def put(self, key, metadata, body):
                raise RuntimeError("bug")

        old_storage = getattr(app.state, "storage", None)
        app.state.storage = BrokenStorage()
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        try:
            async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
                resp = await ac.put("/k", content=b"x", headers=auth_headers)
        finally:
            app.state.storage = old_storage
        assert resp.status_code == 500
        assert resp.text == "Internal error"


class TestLifespan:
    """The lifespan hook owns the storage backend."""

    async def test_memory_backend_lifecycle(self):
        app = create_app(StoreProxyConfig(storage=StorageConfig(backend="memory")))
        async with app.router.lifespan_context(app):
            assert isinstance(app.state.storage, MemoryStorageBackend)

    async def test_authorizer_from_config(self, app):
        assert app.state.authorizer.token == "test-token"


class TestStorageFactory:
    """Tests for _create_storage_backend()."""

    def test_memory(self):
        config = StoreProxyConfig(storage=StorageConfig(backend="memory"))
        assert isinstance(_create_storage_backend(config), MemoryStorageBackend)

    def test_aws(self):
        config = StoreProxyConfig(
            storage=StorageConfig(backend="aws", aws_bucket="assets", aws_prefix="p/")
        )
        backend = _create_storage_backend(config)
        assert isinstance(backend, AWSGatewayBackend)
        assert backend.bucket_name == "assets"
        assert backend.prefix == "p/"

    def test_transfer_shape_defaults(self):
        assert PART_SIZE == 5 * 1024 * 1024
        assert QUEUE_SIZE == 4

        config = StoreProxyConfig(storage=StorageConfig(backend="aws", aws_bucket="assets"))
        backend = _create_storage_backend(config)
        assert backend.part_size == PART_SIZE
        assert backend.queue_size == QUEUE_SIZE

        memory = _create_storage_backend(StoreProxyConfig(storage=StorageConfig(backend="memory")))
        assert memory.part_size == PART_SIZE

    def test_aws_requires_bucket(self):
        with pytest.raises(ValueError, match="bucket"):
            _create_storage_backend(StoreProxyConfig())

    def test_unknown_backend(self):
        config = StoreProxyConfig(storage=StorageConfig(backend="ftp"))
        with pytest.raises(ValueError, match="Unknown storage backend"):
            _create_storage_backend(config)


class TestCreateAppFromEnv:
    """Tests for create_app_from_env()."""

    def test_reads_environment(self, clean_env, restore_root_logger):
        clean_env.setenv("STOREPROXY_BACKEND", "memory")
        clean_env.setenv("STOREPROXY_TOKEN", "env-token")
        clean_env.setenv("STOREPROXY_LOG_FORMAT", "json")

        app = create_app_from_env()

        assert app.state.config.storage.backend == "memory"
        assert app.state.authorizer.token == "env-token"
        assert app.state.config.server.log_format == "json"

    def test_defaults_without_environment(self, clean_env, restore_root_logger):
        app = create_app_from_env()
        assert app.state.config.storage.backend == "aws"
        assert app.state.authorizer.token == ""


class TestHealthChecks:
    """Tests for /healthz and /readyz when enabled."""

    @pytest.fixture
    def health_app(self):
        return create_app(
            StoreProxyConfig(
                storage=StorageConfig(backend="memory"),
                observability=ObservabilityConfig(health_check=True),
            )
        )

    async def test_health_endpoints(self, health_app):
        health_app.state.storage = MemoryStorageBackend()
        transport = ASGITransport(app=health_app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            healthz = await ac.get("/healthz")
            readyz = await ac.get("/readyz")
        assert healthz.status_code == 200
        assert healthz.content == b""
        assert readyz.status_code == 200

    async def test_not_ready_without_storage(self, health_app):
        transport = ASGITransport(app=health_app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            resp = await ac.get("/readyz")
        assert resp.status_code == 503

    async def test_not_ready_when_storage_check_fails(self, health_app):
        class UnreachableStorage(MemoryStorageBackend):
            async def check(self):
                raise StorageError("HeadBucket failed for assets")

        health_app.state.storage = UnreachableStorage()
        transport = ASGITransport(app=health_app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            readyz = await ac.get("/readyz")
            healthz = await ac.get("/healthz")
        assert readyz.status_code == 503
        assert readyz.content == b""
        assert healthz.status_code == 200

    async def test_object_routes_still_served(self, health_app):
        health_app.state.storage = MemoryStorageBackend()
        transport = ASGITransport(app=health_app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            resp = await ac.get("/nested/healthz")
        assert resp.status_code == 404
