"""FastAPI application entry-point for the subscription billing service."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from billing_api import __version__
from billing_api.config import APISettings, PlatformEnv, load_api_settings
from billing_api.dependencies import (
    dispose_engine,
    dispose_side_effect_queue,
    get_session_factory,
    init_engine,
    init_side_effect_queue,
)
from billing_api.middleware import AuthenticationMiddleware, JSONFormatter, RequestLoggingMiddleware
from billing_api.routers import health, invoices, subscriptions, webhooks
from billing_api.services.errors import BillingError, StaleSubscriptionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use Alembic migrations).
    - Start the side-effect queue worker.

    On shutdown:
    - Drain and stop the side-effect queue.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    # Fail fast: refuse to start in production/staging without JWT_SECRET.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )

    # Structured JSON logging.
    if settings.structured_logging:
        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    # Database engine.
    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from billing_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if is_local else "dev auto-migration",
        )

    if not settings.stripe_secret_key.get_secret_value():
        logger.warning("API_STRIPE_SECRET_KEY not set; billing provider calls will return 503")

    init_side_effect_queue(settings, get_session_factory())
    logger.info("Side-effect queue started")

    yield

    # Shutdown.
    await dispose_side_effect_queue()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------


def _error_body(settings: APISettings, status: str, message: str, detail: Any = None) -> dict[str, Any]:
    """Build the error envelope shared by every handler.

    Internal detail is only attached outside production.
    """
    body: dict[str, Any] = {"status": status, "isActive": False, "message": message}
    if detail is not None and not settings.is_production:
        body["error"] = detail
    return body


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Subscription Billing API",
        description="Stripe subscription state, reconciliation and recovery.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (the last one added runs first) ---------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(settings, exc.status or "error", exc.message, type(exc).__name__),
        )

    @app.exception_handler(StaleSubscriptionError)
    async def stale_error_handler(request: Request, exc: StaleSubscriptionError) -> JSONResponse:
        logger.warning("Version conflict on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content=_error_body(settings, "error", "Subscription was modified concurrently; retry", str(exc)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(settings, "error", str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content=_error_body(settings, "error", str(exc)))

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=_error_body(settings, "error", "Internal database error", str(exc)),
        )

    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
