import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .api.v1.endpoints import configure_limits, limiter, router as consolidation_router
from .config import Settings, get_settings
from .dependencies import ServiceContainer
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

ContainerFactory = Callable[[Settings], ServiceContainer]


def create_app(settings: Optional[Settings] = None, container_factory: Optional[ContainerFactory] = None) -> FastAPI:
    """Build the FastAPI application around one ServiceContainer.

    ``container_factory`` lets tests supply a container wired to a mock
    transport; by default the container is built from ``settings``.
    """
    settings = settings or get_settings()
    factory = container_factory or ServiceContainer

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting data consolidation service...", extra={"event": "startup_begin"})
        try:
            container = factory(settings)
            await container.startup()
            app.state.container = container
            logger.info(
                "Data consolidation service started",
                extra={
                    "event": "startup_complete",
                    "enabled_sources": container.registry.enabled_ids(),
                    "areas": container.consolidator.area_keys(),
                }
            )
        except Exception as e:
            logger.error(
                "Failed to start data consolidation service",
                extra={"event": "startup_failed", "error_type": type(e).__name__},
                exc_info=True
            )
            raise

        yield  # App ready for traffic

        logger.info("Shutting down data consolidation service...", extra={"event": "shutdown_begin"})
        try:
            await container.shutdown()
            logger.info("Data consolidation service shut down", extra={"event": "shutdown_complete"})
        except Exception:
            logger.error("Error during shutdown", extra={"event": "shutdown_failed"}, exc_info=True)
        finally:
            app.state.container = None

    app = FastAPI(
        title="Pulse Data Consolidation Service",
        description="Consolidates humanitarian data sources into one versioned, quality-scored snapshot",
        version=__version__,
        lifespan=lifespan,
    )

    configure_limits(settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    cors_origins = settings.cors_origins_list or ["*"]
    logger.info(f"CORS configured for origins: {cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Origin", "Cache-Control", "X-Requested-With"],
        max_age=86400,
    )

    app.include_router(consolidation_router)
    return app


def run() -> None:
    """Console entry point: ``pulse-data-core``."""
    import uvicorn

    settings = get_settings()
    use_json = (settings.LOG_FORMAT == "json") if settings.LOG_FORMAT else None
    setup_logging(level=settings.LOG_LEVEL, use_json=use_json, service_name="pulse-data-core")
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT)
