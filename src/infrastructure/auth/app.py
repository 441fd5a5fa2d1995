"""
FastAPI application for the storefront authentication API.

Wires configuration, the database, the notifier and the background
delivery queue into the auth router.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine

from src.infrastructure.config import Config, get_config
from src.infrastructure.database.connection import (
    ConnectionFactory,
    health_check,
    init_db,
)
from src.infrastructure.monitoring.logging import setup_structured_logging

from .background import BackgroundTaskQueue
from .endpoints import router
from .middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from .notifier import Notifier, SmtpNotifier

logger = logging.getLogger(__name__)


def create_app(
    config: Config | None = None,
    engine: Engine | None = None,
    notifier: Notifier | None = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Application configuration; read from the environment if omitted
        engine: Database engine; built from the configuration if omitted
        notifier: Email delivery; SMTP from the configuration if omitted
        configure_logging: Install the structured logging handlers
    """
    config = config or get_config()
    if configure_logging:
        setup_structured_logging(config.logging.level, config.logging.format_type)

    engine = engine or ConnectionFactory.create_engine(config.database)
    background = BackgroundTaskQueue()

    # Lifespan context manager for startup/shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting authentication service")
        init_db(engine)
        await background.start()

        yield

        logger.info("Shutting down authentication service")
        await background.stop()
        engine.dispose()

    app = FastAPI(
        title="Storefront Authentication API",
        description="Login, registration, account recovery and second-factor flows",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.engine = engine
    app.state.session_factory = ConnectionFactory.create_session_factory(engine)
    app.state.notifier = notifier or SmtpNotifier(config.email)
    app.state.background = background

    # Add middleware
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.links.client_uri],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        max_age=3600,
    )

    app.include_router(router)

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Database reachability and background queue counters."""
        database_ok = health_check(engine)
        return {
            "status": "healthy" if database_ok else "unhealthy",
            "database": database_ok,
            "background": background.get_stats(),
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level="info")
