"""FastAPI application entry point.

This module assembles all components and creates the main application.
"""

import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from mediadrop import __version__
from mediadrop.api import download, health, metrics, status
from mediadrop.core.config import Config, ConfigService, MonitoringConfig, SecurityConfig
from mediadrop.core.errors import APIError, global_exception_handler
from mediadrop.core.logging import configure_logging
from mediadrop.core.metrics import MetricsCollector, initialize_metrics
from mediadrop.core.rate_limiter import SlidingWindowRateLimiter
from mediadrop.middleware.request_context import RequestContextMiddleware
from mediadrop.services.job_registry import JobNotFoundError, JobRegistry
from mediadrop.services.process_runner import ProcessRunner
from mediadrop.services.transfer import TransferGateway
from mediadrop.testing.scripted_runner import ScriptedRunner

logger = structlog.get_logger(__name__)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics.

    Records request count and duration for all endpoints,
    using FastAPI route templates to normalize paths.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process request and record metrics."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Fixed label for unmatched routes keeps cardinality bounded
        route = request.scope.get("route")
        endpoint = route.path if route else "/unmatched"

        MetricsCollector.record_request(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
            duration=duration,
        )

        return response


def build_runner(config: Config) -> ProcessRunner:
    """Real yt-dlp runner, or the scripted one when the extractor is mocked."""
    downloads = config.downloads
    if config.testing.mock_extractor:
        logger.warning("mock_extractor_enabled", scratch_dir=downloads.scratch_path)
        return ScriptedRunner(downloads.scratch_path, max_file_size_mb=downloads.max_file_size_mb)
    return ProcessRunner(
        downloads.scratch_path,
        binary=downloads.ytdlp_binary,
        max_file_size_mb=downloads.max_file_size_mb,
    )


def build_registry(
    config: Config,
    runner: ProcessRunner,
    limiter: SlidingWindowRateLimiter,
) -> JobRegistry:
    """Job registry wired to the configured TTLs; each sweep also purges idle limiter keys."""
    downloads = config.downloads
    return JobRegistry(
        runner,
        downloads.scratch_path,
        active_ttl=timedelta(minutes=downloads.active_ttl_minutes),
        completed_ttl=timedelta(minutes=downloads.completed_ttl_minutes),
        cleanup_interval=downloads.cleanup_interval_minutes * 60.0,
        on_sweep=limiter.purge_idle,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown."""
    logger.info("Application starting", version=__version__)

    initialize_metrics(__version__)

    config_service = ConfigService()
    config = config_service.load()
    config_service.validate()

    configure_logging(config.logging.level, config.logging.format)

    logger.info(
        "Configuration loaded",
        server_port=config.server.port,
        scratch_dir=config.downloads.scratch_path,
        mock_extractor=config.testing.mock_extractor,
    )

    limiter = SlidingWindowRateLimiter(
        max_requests=config.rate_limiting.max_requests,
        window_seconds=config.rate_limiting.window_minutes * 60.0,
    )
    logger.info(
        "Rate limiter configured",
        max_requests=config.rate_limiting.max_requests,
        window_minutes=config.rate_limiting.window_minutes,
    )

    registry = build_registry(config, build_runner(config), limiter)
    gateway = TransferGateway(registry, chunk_size=config.downloads.chunk_size)

    app.state.config = config
    app.state.limiter = limiter
    app.state.registry = registry
    app.state.gateway = gateway

    await registry.start()

    logger.info("Application startup complete", version=__version__)

    yield

    logger.info("Application shutting down")

    await registry.stop()

    logger.info("Application shutdown complete")


def get_job_registry(request: Request) -> JobRegistry:
    """Get the job registry created by the lifespan."""
    return request.app.state.registry


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    """Get the submission rate limiter created by the lifespan."""
    return request.app.state.limiter


def get_transfer_gateway(request: Request) -> TransferGateway:
    """Get the transfer gateway created by the lifespan."""
    return request.app.state.gateway


def get_security_config(request: Request) -> SecurityConfig:
    """Get the loaded security config section."""
    return request.app.state.config.security


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="mediadrop",
        description="Single-use media downloads backed by yt-dlp",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Default ["*"] for development; override via APP_SECURITY_CORS_ORIGINS env var
    security_config = SecurityConfig()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=security_config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "Retry-After", "X-Request-ID"],
    )

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # Register global exception handlers
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(APIError, global_exception_handler)
    app.add_exception_handler(JobNotFoundError, global_exception_handler)
    app.add_exception_handler(RequestValidationError, global_exception_handler)

    # Override dependency injection for routers
    app.dependency_overrides[download.get_job_registry] = get_job_registry
    app.dependency_overrides[download.get_rate_limiter] = get_rate_limiter
    app.dependency_overrides[download.get_transfer_gateway] = get_transfer_gateway
    app.dependency_overrides[download.get_security_config] = get_security_config
    app.dependency_overrides[status.get_job_registry] = get_job_registry

    # Register routers
    app.include_router(health.router)
    app.include_router(download.router)
    app.include_router(status.router)
    if MonitoringConfig().metrics_enabled:
        app.include_router(metrics.router)

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn  # type: ignore[import-not-found]

    server_config = ConfigService().load().server
    uvicorn.run(app, host=server_config.host, port=server_config.port)  # nosec B104
