"""FastAPI application entry point."""
from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response

from notarium import __version__
from notarium.bootstrap import Services, build_services
from notarium.infrastructure.config import get_settings
from notarium.infrastructure.logging import set_correlation_id, setup_logging
from notarium.presentation.api.routes import evidence, health
from notarium.presentation.exceptions import register_exception_handlers

logger = structlog.get_logger(__name__)


def create_app(services: Services | None = None, *, start_background: bool = True) -> FastAPI:
    """Build the API.

    With ``services`` given the caller owns their lifecycle; otherwise they
    are built from settings at startup and torn down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "services", None) is None
        if owned:
            settings = get_settings()
            setup_logging(settings.logging)
            app.state.services = build_services(settings)
        svc: Services = app.state.services
        await svc.database.init_schema()
        if start_background:
            svc.start_background()
        logger.info("api_started", environment=svc.settings.environment)
        try:
            yield
        finally:
            if owned:
                await svc.shutdown()
            elif start_background:
                await svc.runner.shutdown()
            logger.info("api_stopped")

    app = FastAPI(
        title="Notarium",
        description="Evidence integrity and attestation reconciliation engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def correlation_id_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_correlation_id(correlation_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(health.router, tags=["health"])
    app.include_router(evidence.router, prefix="/api/v1", tags=["evidence"])
    return app


def run() -> None:
    """CLI entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "notarium.presentation.api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
    )
