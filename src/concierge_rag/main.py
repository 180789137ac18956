"""
Concierge RAG Application Entry Point

This module defines the FastAPI application instance, registers all routers,
configures global exception handling, and provides a test-friendly application
factory.

Design Goals
------------
- Deterministic startup
- Centralized router registration
- Domain errors mapped to structured responses
- Global exception safety net
- Test-friendly via create_app()
"""

from __future__ import annotations

import logging
from fastapi import FastAPI

from .config import settings
from .core.errors import (
    ConciergeError,
    concierge_error_handler,
    unhandled_exception_handler,
)

from .api import (
    chat_routes,
    health_routes,
    model_config_routes,
    provider_routes,
    search_routes,
    source_routes,
)


logger = logging.getLogger("concierge.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory pattern allows:
    - Clean test instantiation
    - Isolated app instances for integration tests
    - Controlled dependency overrides in pytest

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    app = FastAPI(
        title="concierge-rag",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # --------------------------------------------------------------
    # Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(ConciergeError, concierge_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(source_routes.router)
    app.include_router(search_routes.router)
    app.include_router(chat_routes.router)
    app.include_router(model_config_routes.router)
    app.include_router(provider_routes.router)

    # --------------------------------------------------------------
    # Startup Validation Hook
    # --------------------------------------------------------------

    @app.on_event("startup")
    async def _startup_validation() -> None:
        """
        Fail-fast validation at application startup.

        This ensures that critical configuration is present before the first
        request is ever served.
        """
        logger.info("Starting concierge-rag")

        # Touch the key-store secret to force validation now (not at first use)
        if not settings.encryption_key.get_secret_value():
            raise RuntimeError("ENCRYPTION_KEY must not be empty")

        logger.info("Configuration validated successfully")

    @app.on_event("shutdown")
    async def _shutdown_cleanup() -> None:
        logger.info("Shutting down concierge-rag")

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
