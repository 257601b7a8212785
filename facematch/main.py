"""Main application module for the face matching service."""
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facematch.api import router as api_v1_router
from facematch.core.config import settings
from facematch.core.container import ServiceContainer, container
from facematch.core.logging import get_logger, setup_logging
from facematch.infrastructure.dependencies import get_container

setup_logging()
logger = get_logger(__name__)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI application around a service container.

    Args:
        services: Container to serve from (defaults to the global container)

    Returns:
        FastAPI: Configured application
    """
    services = services or container

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[Any, None]:
        """Handle application startup and shutdown events."""
        logger.info(
            "Starting up face matching service",
            version=settings.VERSION,
            environment=settings.ENVIRONMENT,
        )

        await services.initialize()
        logger.info("Initialized application services")

        yield

        logger.info("Shutting down face matching service")
        await services.cleanup()
        logger.info("Cleaned up application resources")

    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_v1_router, prefix=settings.API_V1_STR)
    if services is not container:
        application.dependency_overrides[get_container] = lambda: services

    @application.get("/health")
    async def health_check() -> dict:
        """Basic health check endpoint.

        Returns:
            dict: Health status
        """
        logger.debug("Health check requested")
        return {
            "status": "healthy" if services.initialized else "starting",
            "background_searches": (
                len(services.match_orchestrator.continuations) if services.match_orchestrator else 0
            ),
        }

    return application


app = create_app()
