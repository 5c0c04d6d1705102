"""
Tool Export Service - Main Application Entry Point
==================================================

This module initializes the FastAPI application with the export routes,
middleware, error handlers and the background services that outlive a
single request.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis import asyncio as aioredis

from toolexport import __version__
from toolexport.api.deps import ExportServices, build_export_services
from toolexport.api.v1.metrics import router as metrics_router
from toolexport.api.v1.router import api_router
from toolexport.core.config import settings
from toolexport.core.database import async_session_factory, create_db_and_tables, engine
from toolexport.middleware.exceptions import register_exception_handlers
from toolexport.middleware.prometheus import PrometheusMiddleware, StructuredLoggingMiddleware
from toolexport.middleware.rate_limiter import init_rate_limiter
from toolexport.middleware.request_id import RequestIdMiddleware


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    - Startup: create tables (outside tests), attach the rate limiter backend,
      settle jobs orphaned by a previous process, start the cleanup timer
    - Shutdown: stop the timer, let running exports wind down, close connections
    """
    services: ExportServices = app.state.export_services

    redis_client = None
    if settings.REDIS_URL:
        redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    init_rate_limiter(redis_client)

    if settings.APP_ENV != "test":
        try:
            await create_db_and_tables()
        except Exception as e:
            logger.warning(f"Could not create database tables: {e} - continuing without database")

    if settings.EXPORT_RECOVER_ON_STARTUP:
        try:
            recovered = await services.orchestrator.recover_orphaned_jobs()
        except Exception:
            logger.exception("Export job recovery failed at startup")
        else:
            if any(recovered.values()):
                logger.warning("Recovered orphaned export jobs: %s", recovered)

    if settings.EXPORT_CLEANUP_ENABLED and settings.APP_ENV != "test":
        await services.cleanup.start(settings.EXPORT_CLEANUP_INTERVAL_HOURS * 3600)

    yield

    await services.cleanup.stop()
    await services.runner.shutdown()
    if redis_client is not None:
        await redis_client.aclose()
    if settings.APP_ENV != "test":
        await engine.dispose()


def create_application(services: Optional[ExportServices] = None) -> FastAPI:
    """
    Application factory function.

    Args:
        services: Prebuilt export services (tests pass their own wiring)

    Returns:
        FastAPI: Configured application instance
    """
    logging.getLogger("toolexport").setLevel(settings.LOG_LEVEL.upper())

    app = FastAPI(
        title=settings.APP_NAME,
        description="Tool export jobs: generation, integrity-checked delivery and retention",
        version=__version__,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.export_services = services or build_export_services(async_session_factory, settings)

    register_exception_handlers(app)

    # ---------------------------------------------------------------------------
    # Middleware (order matters - last added runs first)
    # ---------------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "Content-Range", "X-Package-Size", "X-Package-Checksum", "X-Request-ID"],
    )

    # Structured logging middleware (JSON logs keyed by request ID)
    app.add_middleware(StructuredLoggingMiddleware, logger=logging.getLogger("toolexport.http"))

    # Prometheus metrics middleware (collects request/response metrics)
    app.add_middleware(PrometheusMiddleware)

    # Request ID middleware; outermost so every other layer sees the ID
    app.add_middleware(RequestIdMiddleware)

    # ---------------------------------------------------------------------------
    # Routes
    # ---------------------------------------------------------------------------

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Liveness probe for container orchestration."""
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "runningExports": app.state.export_services.runner.pending,
        }

    app.include_router(metrics_router, prefix="")
    app.include_router(api_router, prefix=settings.API_PREFIX)

    return app


# Create application instance
app = create_application()
