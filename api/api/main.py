"""FastAPI application entry-point for the DID control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from did_engine.errors import (
    ByonError,
    ConflictError,
    DependencyError,
    DidEngineError,
    InsufficientBalance,
    NotFoundError,
    PermissionDenied,
    SecurityError,
    ValidationError,
)
from did_engine.state.database import create_tables
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import dispose_engine, dispose_otp_client, init_engine, init_otp_client
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import balance, byon, dids, health, orders, webhooks

logger = logging.getLogger(__name__)

# Checked in order; the first matching family wins.
_STATUS_BY_FAMILY: tuple[tuple[type[DidEngineError], int], ...] = (
    (ValidationError, 400),
    (InsufficientBalance, 402),
    (PermissionDenied, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (DependencyError, 502),
)


def status_for(exc: DidEngineError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, ByonError):
        return exc.http_status
    if isinstance(exc, SecurityError):
        return 401
    for family, status in _STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return status
    return 500


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev and SQLite only;
      production schemas are migrated out of band).
    - Initialise the OTP provider HTTP client.

    On shutdown:
    - Close the OTP client.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_tables(engine)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    if not settings.webhook_secret.get_secret_value():
        logger.warning("API_WEBHOOK_SECRET is not set; billing webhooks will be refused")

    init_otp_client(settings)
    logger.info("OTP client initialised (%s)", settings.otp_base_url)

    yield

    await dispose_otp_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="DID Engine API",
        description="Inventory, balance-first billing and BYON verification for phone numbers.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "X-Correlation-ID",
            "X-Customer-ID",
            "X-Admin-ID",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(dids.router, prefix="/api/v1")
    app.include_router(balance.router, prefix="/api/v1")
    app.include_router(orders.router, prefix="/api/v1")
    app.include_router(byon.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(DidEngineError)
    async def domain_error_handler(request: Request, exc: DidEngineError) -> JSONResponse:
        status = status_for(exc)
        if isinstance(exc, SecurityError):
            # The reason is logged where it is raised; the caller learns nothing.
            return JSONResponse(status_code=401, content={"detail": "Unauthorized", "code": exc.code})
        if status >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message, exc_info=exc)
        else:
            logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(
            status_code=status,
            content=jsonable_encoder({**exc.details, "detail": exc.message, "code": exc.code}),
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
