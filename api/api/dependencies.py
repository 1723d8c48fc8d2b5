"""FastAPI dependency injection for settings, database sessions, clock and OTP client."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from did_engine.byon import OtpProvider
from did_engine.clock import Clock, SystemClock
from did_engine.state.database import get_engine
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.services.otp_client import VerifyApiClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` scoped to one request.

    The session commits on clean exit and rolls back on exception, so a
    domain error leaves no partial writes behind.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """Time source for all services; tests override it with a fixed clock."""
    return _clock


ClockDep = Annotated[Clock, Depends(get_clock)]

# ---------------------------------------------------------------------------
# OTP provider
# ---------------------------------------------------------------------------

_otp_client: VerifyApiClient | None = None


def init_otp_client(settings: APISettings) -> VerifyApiClient:
    """Create and cache the global :class:`VerifyApiClient`."""
    global _otp_client  # noqa: PLW0603
    _otp_client = VerifyApiClient(
        settings.otp_base_url,
        account_sid=settings.otp_account_sid,
        auth_token=settings.otp_auth_token.get_secret_value(),
        service_sid=settings.otp_verify_service_sid,
        timeout=settings.otp_timeout,
    )
    return _otp_client


async def dispose_otp_client() -> None:
    """Close the OTP client's underlying HTTP pool."""
    global _otp_client  # noqa: PLW0603
    if _otp_client is not None:
        await _otp_client.close()
        _otp_client = None


def get_otp_provider() -> OtpProvider:
    """Return the cached OTP client singleton."""
    if _otp_client is None:
        raise RuntimeError(
            "OTP client has not been initialised. Ensure init_otp_client() is called during application startup."
        )
    return _otp_client


OtpDep = Annotated[OtpProvider, Depends(get_otp_provider)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_customer_id(x_customer_id: Annotated[int | None, Header()] = None) -> int:
    """Customer the request acts for, asserted by the upstream gateway."""
    if x_customer_id is None:
        raise HTTPException(status_code=401, detail="Missing X-Customer-ID header")
    return x_customer_id


CustomerDep = Annotated[int, Depends(get_customer_id)]


def get_admin_id(x_admin_id: Annotated[str | None, Header()] = None) -> str:
    """Administrator performing the request, asserted by the upstream gateway."""
    if not x_admin_id:
        raise HTTPException(status_code=403, detail="Administrator access required")
    return x_admin_id


AdminDep = Annotated[str, Depends(get_admin_id)]
