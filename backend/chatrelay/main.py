"""
Chat relay application.

FastAPI application exposing the streaming relay over a websocket,
with structured logging and error handling.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.api import chat_router, health_router
from chatrelay.config import get_settings
from chatrelay.core import get_logger, setup_logging
from chatrelay.core.middleware import RequestContextMiddleware, setup_exception_handlers
from chatrelay.db import dispose_engine, get_session_factory, verify_database_connection
from chatrelay.providers import ProviderRegistry
from chatrelay.services import RelayService

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting chat relay",
        data={
            "host": settings.host,
            "port": settings.port,
            "environment": settings.environment,
            "debug": settings.debug,
            "cors_origins": settings.cors_origins_list,
        },
    )

    # Verify database connectivity (does NOT run migrations)
    if verify_database_connection():
        logger.info("Database connection verified")
    else:
        logger.warning(
            "Database connection failed - run 'alembic upgrade head' to initialize"
        )

    _app.state.start_time = datetime.now(UTC)

    # Build the relay unless provided (useful in tests)
    if getattr(_app.state, "relay_service", None) is None:
        _app.state.relay_service = RelayService(
            settings, get_session_factory(), ProviderRegistry(settings)
        )

    yield

    # Shutdown
    logger.info("Shutting down chat relay")
    dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    show_docs = settings.debug and not settings.is_production

    app = FastAPI(
        title="Chat Relay",
        description="Streaming relay between chat clients and LLM providers",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
    )

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)

    # Request context (inject request ID, log requests)
    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(health_router)
    app.include_router(chat_router)

    return app


# Create application instance
app = create_app()


def run() -> None:
    """Serve the relay with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "chatrelay.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
