import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

import config
from app.errors import BackendError, RequestTimeoutError, StaticServeError
from app.models import ResolvedResponse
from app.services.content_resolver import ContentResolver
from app.services.response_cache import ResponseCache
from app.services.storage_manager import create_storage_backend
from config import Settings
from logger_config import setup_access_logger, setup_logger
from monitor import Monitor

# Logger setup
logger = setup_logger()
access_logger = setup_access_logger()

INTERNAL_ERROR_MESSAGE = "An internal server error occurred"
UVICORN_LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")


def error_response(status_code: int, message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=status_code, headers={"Cache-Control": "no-cache"})


def client_ip(request: Request) -> str:
    """Client address, preferring proxy headers over the peer address."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
        if ip:
            return ip
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "-"


def request_path(request: Request) -> str:
    """The request path as it came over the wire, still percent-encoded."""
    raw_path: Optional[bytes] = request.scope.get("raw_path")
    if raw_path is None:
        return request.url.path
    return raw_path.split(b"?", 1)[0].decode("utf-8", errors="replace")


def to_response(resolved: ResolvedResponse) -> Response:
    headers = dict(resolved.headers)
    if resolved.body is not None:
        return Response(content=resolved.body, headers=headers)
    return StreamingResponse(resolved.stream, headers=headers)


def create_app(settings: Settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Storage and cache live for the whole process
        storage = create_storage_backend(settings.static_path)
        policy = settings.serve_policy()
        cache = ResponseCache(policy.cache_capacity, policy.cache_ttl)
        app.state.storage = storage
        app.state.cache = cache
        app.state.resolver = ContentResolver(storage, cache, policy)
        app.state.monitor = Monitor(config.MONITOR_FAILURE_THRESHOLD, config.MONITOR_WINDOW_SECONDS)
        app.state.healthy = True
        logger.info(f"Static server ready, storage={settings.static_path} cache_size={settings.cache_capacity}")
        yield
        app.state.healthy = False
        logger.info("Shutting down, health check will report unhealthy")
        await storage.close()

    app = FastAPI(title="Static Serve", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings

    @app.exception_handler(StaticServeError)
    async def static_serve_error_handler(request: Request, exc: StaticServeError):
        if exc.status_code >= 500:
            logger.error(f"Error serving {request.url.path}: {exc}")
            return error_response(exc.status_code, INTERNAL_ERROR_MESSAGE)
        return error_response(exc.status_code, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error serving {request.method} {request.url.path}: {exc}", exc_info=True)
        return error_response(500, INTERNAL_ERROR_MESSAGE)

    @app.middleware("http")
    async def access_log_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        access_logger.info(
            f'{client_ip(request)} "{request.method} {request.url.path}" {response.status_code} '
            f'{response.headers.get("content-length", "-")} {duration_ms}ms '
            f'"{request.headers.get("user-agent", "-")}"'
        )
        return response

    if settings.compress_min_length > 0:
        app.add_middleware(GZipMiddleware, minimum_size=settings.compress_min_length)

    @app.get("/health")
    async def health_check(request: Request):
        monitor: Monitor = request.app.state.monitor
        headers = {"X-Backend-Failures": str(monitor.recent_failures)}
        if getattr(request.app.state, "healthy", False):
            return PlainTextResponse("healthy", headers=headers)
        return PlainTextResponse("unhealthy", status_code=500, headers=headers)

    @app.api_route("/{file_path:path}", methods=["GET", "HEAD"])
    async def serve(request: Request):
        """Serve the file the request path resolves to."""
        resolver: ContentResolver = request.app.state.resolver
        monitor: Monitor = request.app.state.monitor
        path = request_path(request)

        try:
            resolved = await asyncio.wait_for(resolver.resolve(path), timeout=settings.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"{request.method} {path} timed out after {settings.timeout}s")
            raise RequestTimeoutError() from e
        except BackendError as e:
            logger.error(f"Storage backend error for {path}: {e}")
            monitor.fail()
            raise
        monitor.pass_()

        for name, value in settings.response_header_overrides:
            resolved = resolved.with_header(name, value)
        return to_response(resolved)

    return app


# Create FastAPI app from the environment
app = create_app(Settings.from_env())


if __name__ == "__main__":
    settings: Settings = app.state.settings
    host, port = settings.host_port
    logger.info("Starting static file server...")
    logger.info(f"Storage: {settings.static_path}")
    logger.info(f"Listening on http://{host}:{port}")
    log_level = settings.log_level.lower()
    if log_level not in UVICORN_LOG_LEVELS:
        log_level = "info"
    uvicorn.run(app, host=host, port=port, log_level=log_level)
