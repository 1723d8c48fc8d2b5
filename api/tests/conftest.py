"""Shared fixtures for DID API tests.

Requests run through the real FastAPI application over ``ASGITransport``
(no lifespan, so no production engine or OTP client is created).  The
database dependency is overridden with an in-memory SQLite engine shared
across sessions via ``StaticPool``, the clock is frozen and the OTP
provider is an in-memory fake.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from did_engine.byon import OtpCheckResult, OtpSendResult
from did_engine.clock import FixedClock
from did_engine.state.database import enable_sqlite_savepoints
from did_engine.state.repository import CustomerRepository, DidRepository
from did_engine.state.tables import Base, BillingMode
from did_engine.webhooks import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_signature
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from api.config import APISettings
from api.dependencies import get_clock, get_db_session, get_otp_provider, get_settings
from api.main import create_app

WEBHOOK_SECRET = "whsec_api_tests"
NOW = datetime(2026, 3, 15, 10, 0, 0, tzinfo=UTC)


def _patch_columns_for_sqlite() -> None:
    """Make ``DateTime(timezone=True)`` columns come back UTC-aware from SQLite."""

    class _UTCAwareDateTime(TypeDecorator):
        """SQLAlchemy TypeDecorator that ensures datetimes are always UTC-aware."""

        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeOtp:
    """OTP provider accepting ``123456`` for every number."""

    code = "123456"

    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send_verification(self, e164: str) -> OtpSendResult:
        self.sent.append(e164)
        return OtpSendResult(success=True, session_id=f"VE{len(self.sent)}")

    async def check_verification(self, e164: str, code: str) -> OtpCheckResult:
        approved = code == self.code
        return OtpCheckResult(success=True, approved=approved, error=None if approved else "Invalid code")


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    return APISettings(
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        webhook_secret=SecretStr(WEBHOOK_SECRET),
        byon_default_limit=5,
    )


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture()
def otp() -> FakeOtp:
    return FakeOtp()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_factory, test_settings, clock, otp) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client wired to the app with test dependencies."""
    app = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    app.dependency_overrides[get_db_session] = _session
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_otp_provider] = lambda: otp

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def seed(session_factory) -> dict[str, Any]:
    """A prepaid customer (50.00), a postpaid customer and one priced DID."""
    async with session_factory() as session:
        customers = CustomerRepository(session)
        prepaid = await customers.create("Acme Telecom", balance=Decimal("50.00"))
        postpaid = await customers.create("Globex", billing_mode=BillingMode.POSTPAID)
        did = await DidRepository(session).create(
            "+34910000001",
            national_number="910000001",
            setup_price=Decimal("2.00"),
            monthly_price=Decimal("10.00"),
        )
        await session.commit()
        return {"prepaid": prepaid.id, "postpaid": postpaid.id, "did": did.id, "e164": did.e164}


@pytest.fixture()
def sign(clock):
    """Build signed webhook headers for a JSON payload."""

    def _sign(payload: dict[str, Any], *, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(payload).encode()
        timestamp = str(int(clock.now().timestamp()))
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_signature(secret, timestamp, body),
            TIMESTAMP_HEADER: timestamp,
        }
        return body, headers

    return _sign
