"""
Marketplace Analytics - FastAPI Application.

Session tracking, event capture, daily rollups and dashboard queries for the
vehicle marketplace. The analytics component is created in the lifespan and
attached to ``app.state.analytics``.

Architecture Layer: Infrastructure
Principles: 12-Factor App, Dependency Injection, Configuration Externalization
"""
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from .api import router as analytics_router
from .config import AnalyticsServiceConfig, Environment, get_config
from .middleware import DEFAULT_EXCLUDED_PATHS, AnalyticsMiddleware
from .service import AnalyticsService

logger = structlog.get_logger(__name__)


def configure_logging(config: AnalyticsServiceConfig) -> None:
    """Configure structlog for the service environment."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    log_format = config.observability.log_format
    if log_format is None:
        log_format = "console" if config.service.env == Environment.DEVELOPMENT else "json"
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.service.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _setup_prometheus(app: FastAPI, config: AnalyticsServiceConfig) -> None:
    """Configure Prometheus metrics instrumentation."""
    if not config.observability.prometheus_enabled:
        logger.info("prometheus_disabled")
        return

    try:
        from prometheus_fastapi_instrumentator import Instrumentator

        instrumentator = Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=True,
            should_respect_env_var=True,
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/health", "/ready", config.observability.prometheus_endpoint],
            inprogress_name="marketplace_analytics_http_requests_inprogress",
            inprogress_labels=True,
        )
        instrumentator.instrument(app).expose(
            app,
            endpoint=config.observability.prometheus_endpoint,
            include_in_schema=False,
        )
        logger.info("prometheus_enabled", endpoint=config.observability.prometheus_endpoint)
    except ImportError:
        logger.warning("prometheus_not_available", reason="prometheus-fastapi-instrumentator not installed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create, initialize and shut down the analytics component."""
    config: AnalyticsServiceConfig = app.state.config
    service: AnalyticsService | None = getattr(app.state, "analytics", None)
    if service is None:
        service = AnalyticsService(config)
        app.state.analytics = service

    logger.info(
        "analytics_service_starting",
        service=config.service.name,
        env=config.service.env.value,
        database_backend=config.database.backend,
    )
    await service.initialize()
    logger.info("analytics_service_ready")

    yield

    logger.info("analytics_service_stopping")
    await service.shutdown()


def create_app(
    config: AnalyticsServiceConfig | None = None,
    service: AnalyticsService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or (service.config if service is not None else get_config())
    is_production = config.is_production()

    app = FastAPI(
        title="Marketplace Analytics Service",
        description="Session tracking, event capture, daily rollups and dashboard queries",
        version=config.service.version,
        lifespan=lifespan,
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
    )
    app.state.config = config
    if service is not None:
        app.state.analytics = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if config.service.env == Environment.DEVELOPMENT else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        AnalyticsMiddleware,
        excluded_paths=(*DEFAULT_EXCLUDED_PATHS, config.observability.prometheus_endpoint),
    )

    _setup_prometheus(app, config)
    app.include_router(analytics_router)

    @app.get("/", tags=["health"])
    async def root():
        """Service information endpoint."""
        return {
            "service": config.service.name,
            "version": config.service.version,
            "status": "running",
            "environment": config.service.env.value,
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/ready", tags=["health"])
    async def ready():
        """Readiness check endpoint."""
        analytics: AnalyticsService | None = getattr(app.state, "analytics", None)
        if analytics is None:
            return {"status": "not_ready", "reason": "analytics_not_created"}
        if not analytics.is_initialized:
            return {"status": "not_ready", "reason": "analytics_not_initialized"}
        return {"status": "ready"}

    return app


def run() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    config = get_config()
    configure_logging(config)
    uvicorn.run(
        create_app(config),
        host=config.service.host,
        port=config.service.port,
        log_level=config.service.log_level.lower(),
    )


if __name__ == "__main__":
    run()
