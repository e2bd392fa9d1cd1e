"""FastAPI application factory and route setup for storeproxy."""

import logging
import secrets
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storeproxy.auth import TokenAuthorizer
from storeproxy.config import StoreProxyConfig, apply_env_overrides
from storeproxy.errors import MethodNotAllowed, StoreError
from storeproxy.handlers.object import ObjectHandler
from storeproxy.logging_config import configure_logging, request_id_var
from storeproxy.routing import FILENAME_ROUTE, RouteMatch, match_route, raw_request_path
from storeproxy.storage.backend import ObjectStore

logger = logging.getLogger(__name__)

# Every object route shares one pattern; the router classifies the raw path.
OBJECT_PATH = "/{path:path}"

# Methods answered with 405 on every path.
UNSUPPORTED_METHODS = ["HEAD", "POST", "OPTIONS", "TRACE", "CONNECT"]

# Module-level instrumentator so repeated create_app() calls in one process
# don't re-register the same Prometheus collectors.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: StoreProxyConfig) -> FastAPI:
    """Create and configure the storeproxy FastAPI application.

    The storage backend is created in the lifespan hook and placed on
    ``app.state.storage``; the authorization predicate is placed on
    ``app.state.authorizer``. Handlers only reach either through app.state.

    Args:
        config: The loaded storeproxy configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = _create_storage_backend(config)
        await storage.init()
        app.state.storage = storage
        logger.info("Storage backend initialized: %s", config.storage.backend)

        yield

        await storage.close()
        logger.info("Storage backend closed")

    app = FastAPI(
        title="storeproxy",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.authorizer = TokenAuthorizer(config.auth.token)

    _register_exception_handlers(app)
    _register_middleware(app, config)

    # /metrics must be registered before the catch-all object routes.
    if config.observability.metrics:
        import storeproxy.metrics as _metrics

        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="storeproxy").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


def create_app_from_env() -> FastAPI:
    """Build an app from defaults plus ``STOREPROXY_*`` environment variables.

    Intended for ``uvicorn --factory storeproxy.server:create_app_from_env``
    and other deployments without a config file.
    """
    config = apply_env_overrides(StoreProxyConfig())
    configure_logging(level=config.server.log_level, fmt=config.server.log_format)
    return create_app(config)


def _create_storage_backend(config: StoreProxyConfig) -> ObjectStore:
    """Create a storage backend instance based on configuration.

    Supports 'aws' (any S3-compatible service) and 'memory'.

    Raises:
        ValueError: On an unknown backend or a missing bucket name.
    """
    backend = config.storage.backend
    if backend == "memory":
        from storeproxy.storage.memory import MemoryStorageBackend

        return MemoryStorageBackend()
    elif backend == "aws":
        if not config.storage.aws_bucket:
            raise ValueError("storage.aws.bucket is required when backend is 'aws'")
        from storeproxy.storage.aws import AWSGatewayBackend

        return AWSGatewayBackend(
            bucket_name=config.storage.aws_bucket,
            region=config.storage.aws_region,
            prefix=config.storage.aws_prefix,
            endpoint_url=config.storage.aws_endpoint_url,
            use_path_style=config.storage.aws_use_path_style,
            access_key_id=config.storage.aws_access_key_id,
            secret_access_key=config.storage.aws_secret_access_key,
        )
    else:
        raise ValueError(f"Unknown storage backend: {backend}")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> Response:
        """Render a StoreError as a plain-text body with its status."""
        return PlainTextResponse(exc.message, status_code=exc.http_status)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
        """Render framework-level errors (e.g. exotic verbs) in the same format."""
        if exc.status_code == 405:
            return PlainTextResponse(MethodNotAllowed().message, status_code=405)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return 500."""
        logger.exception("Unhandled exception in request handler")
        return PlainTextResponse("Internal error", status_code=500)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _content_length(headers) -> int:
    try:
        return int(headers.get("content-length") or 0)
    except ValueError:
        return 0


def _register_middleware(app: FastAPI, config: StoreProxyConfig) -> None:
    """Register the request logging / common headers middleware."""

    metrics_enabled = config.observability.metrics

    # Health and scrape endpoints are not logged; without them these are object keys.
    quiet_paths = set()
    if metrics_enabled:
        quiet_paths.add("/metrics")
    if config.observability.health_check:
        quiet_paths.update({"/healthz", "/readyz"})

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Stamp request id and Server headers, log the request, count bytes.

        The request id is a 16-char uppercase hex string, also stored on
        request.state for handlers. call_next runs the endpoint, including
        its streamed body, in a task started while the id is set, so that
        task keeps the id after it is reset here.
        """
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            return await _serve(request, call_next, request_id)
        finally:
            request_id_var.reset(token)

    async def _serve(request: Request, call_next, request_id: str) -> Response:
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)

        response.headers["x-request-id"] = request_id
        response.headers["Server"] = "storeproxy"

        if metrics_enabled:
            import storeproxy.metrics as _m

            operation = getattr(request.state, "operation", None)
            if operation is not None:
                _m.record_operation(operation, response.status_code)
            _m.record_bytes(
                _content_length(request.headers), _content_length(response.headers)
            )

        if request.url.path not in quiet_paths:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                },
            )

        return response


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


async def _check_storage(app: FastAPI) -> bool:
    """Ask the storage backend whether it can still serve requests."""
    storage = getattr(app.state, "storage", None)
    if storage is None:
        return False
    try:
        await storage.check()
    except Exception as exc:
        logger.warning("Storage readiness check failed: %s", exc)
        return False
    return True



def _filename_route(request: Request) -> RouteMatch:
    """Match the request path, allowing only the single-segment route.

    Raises:
        MethodNotAllowed: For multi-segment paths, which are read-only.
    """
    match = match_route(raw_request_path(request))
    if match.route != FILENAME_ROUTE:
        raise MethodNotAllowed()
    return match


def _setup_routes(app: FastAPI, config: StoreProxyConfig) -> None:
    """Register the health checks and the object routes.

    Args:
        app: The FastAPI application to attach routes to.
        config: The storeproxy configuration.
    """
    object_handler = ObjectHandler(app)

    if config.observability.health_check:

        @app.get("/healthz")
        async def healthz() -> Response:
            """Liveness check. Returns 200 with empty body."""
            return Response(status_code=200)

        @app.get("/readyz")
        async def readyz() -> Response:
            """Readiness check. Returns 200 (empty) if storage answers, else 503."""
            ready = await _check_storage(app)
            return Response(status_code=200 if ready else 503)

    @app.get(OBJECT_PATH)
    async def handle_object_get(request: Request) -> Response:
        """Handle GET on any path.

        Single-segment paths and the catch-all path share the same read
        logic. ``?presign`` on a single-segment path returns a presigned URL
        instead of the object.
        """
        match = match_route(raw_request_path(request))
        if match.route == FILENAME_ROUTE and "presign" in request.query_params:
            request.state.operation = "PresignObject"
            return await object_handler.presign_object(request, match.raw_key)
        request.state.operation = "GetObject"
        return await object_handler.get_object(request, match.raw_key)

    @app.put(OBJECT_PATH)
    async def handle_object_put(request: Request) -> Response:
        """Handle PUT /{key} -- PutObject."""
        match = _filename_route(request)
        request.state.operation = "PutObject"
        return await object_handler.put_object(request, match.raw_key)

    @app.patch(OBJECT_PATH)
    async def handle_object_patch(request: Request) -> Response:
        """Handle PATCH /{key} -- metadata replacement."""
        match = _filename_route(request)
        request.state.operation = "UpdateMetadata"
        return await object_handler.patch_object(request, match.raw_key)

    @app.delete(OBJECT_PATH)
    async def handle_object_delete(request: Request) -> Response:
        """Handle DELETE /{key} -- DeleteObject."""
        match = _filename_route(request)
        request.state.operation = "DeleteObject"
        return await object_handler.delete_object(request, match.raw_key)

    @app.api_route(OBJECT_PATH, methods=UNSUPPORTED_METHODS)
    async def handle_unsupported(request: Request) -> Response:
        """Any other method on any path."""
        raise MethodNotAllowed()
